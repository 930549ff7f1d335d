"""Setup script for sqltransfer."""

from setuptools import find_packages, setup

setup(
    name="sqltransfer",
    version="0.1.0",
    description="Incremental table migration engine for relational databases",
    author="sqltransfer Team",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "sqlalchemy>=2.0.0",  # Source/destination access and run recording
        "duckdb>=1.2.0",  # Watermark state backend
        "pandas>=2.0.0",  # Batch frames
        "numpy>=1.24.0",  # Scalar conversion of batch values
        "typer>=0.9.0",  # CLI framework
        "rich>=13.0.0",  # CLI output
        "psycopg2-binary>=2.9.0",  # PostgreSQL driver
        "pyyaml>=6.0",  # Configuration handling
    ],
    package_data={
        "sqltransfer": ["py.typed"],
    },
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.1.0",
            "black>=22.1.0",
            "isort>=5.10.1",
            "flake8>=4.0.1",
            "mypy>=1.0.0",
        ],
        "test": [
            "pytest>=7.0.0",
            "pytest-cov>=4.1.0",
            "mock>=5.0.0",  # For mocking in tests
        ],
    },
    entry_points={
        "console_scripts": [
            "sqltransfer=sqltransfer.cli.main:cli",
        ],
    },
    python_requires=">=3.9",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Database",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
)
