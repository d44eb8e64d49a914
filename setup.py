"""Setup script for the billing ledger service."""

from setuptools import setup, find_packages

setup(
    name="billing-ledger",
    version="1.0.0",
    description="Stripe webhook reconciliation and affiliate commission ledger",
    python_requires=">=3.10",
    packages=find_packages(include=["billing_ledger", "billing_ledger.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#")
    ],
    extras_require={
        "test": [
            "pytest>=8.0.0",
            "pytest-asyncio>=0.24.0",
            "pytest-mock>=3.12.0",
            "httpx>=0.27.0",
            "aiosqlite>=0.20.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "billing-ledger-api=billing_ledger.api.main:run",
            "billing-ledger-payout-worker=billing_ledger.workers.payout_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
