# setup.py - Sleeve ledger package
from setuptools import setup, find_packages

setup(
    name="sleeve_ledger",
    version="0.1.0",
    description="Deterministic identity and resolution-state persistence for MEP sleeves",
    packages=find_packages(include=["sleeve_ledger", "sleeve_ledger.*"]),
    python_requires=">=3.9",
    install_requires=[
        "duckdb>=1.1",
        "numpy>=1.24",
    ],
    extras_require={
        "test": ["pytest>=7"],
    },
)
