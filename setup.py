"""Setup script for cellcluster."""

from pathlib import Path
from setuptools import setup, find_packages

# Read the contents of README.md
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text()

# Read version from version.py
version_file = this_directory / "cellcluster" / "version.py"
version_dict = {}
with open(version_file) as f:
    exec(f.read(), version_dict)
version = version_dict["__version__"]

# Core requirements
install_requires = [
    # Core
    "pandas>=1.5.0",
    "numpy>=1.23.0",
    "rich>=12.0.0",
    "typer>=0.7.0",
    "python-dotenv>=1.0.0",
    "pydantic>=2.0.0",

    # Bioinformatics
    "scanpy>=1.9.3",
    "scipy>=1.10.0",
    "scikit-learn>=1.5.0",
    "anndata>=0.9.0",
    "leidenalg>=0.9.0",
    "igraph>=0.10.4",
]

# Development requirements
dev_requires = [
    "pytest>=7.0.0",
    "pytest-cov>=4.0.0",
    "pytest-mock>=3.10.0",
    "factory-boy>=3.2.0",
]

setup(
    name="cellcluster",
    version=version,
    description="Unsupervised clustering and marker discovery for single-cell RNA-seq count data",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*", "docs", "docs.*"]),
    include_package_data=True,
    install_requires=install_requires,
    extras_require={
        "dev": dev_requires,
        "all": install_requires + dev_requires,
    },
    entry_points={
        "console_scripts": [
            "cellcluster=cellcluster.cli:app",
        ],
    },
    python_requires=">=3.10",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
        "Environment :: Console",
    ],
    keywords="bioinformatics, single-cell, RNA-seq, clustering, scanpy, leiden",
)
