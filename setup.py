# setup.py - Package build
from setuptools import setup, find_packages

setup(
    name="cooccur",
    version="0.1.0",
    packages=find_packages(include=["cooccur", "cooccur.*"]),
    python_requires=">=3.9",
    install_requires=[
        "numpy",
        "duckdb",
        "python-graphblas",
    ],
    extras_require={
        "test": ["pytest"],
    },
)
