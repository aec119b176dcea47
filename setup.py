# File: setup.py

"""
Setup configuration for GPHIK: Gaussian Process classification with Histogram Intersection Kernels
"""

import os
from setuptools import setup, find_packages

# Read long description from README
def read_long_description():
    """Read the README file for long description."""
    here = os.path.abspath(os.path.dirname(__file__))
    readme_path = os.path.join(here, "README.md")

    if os.path.exists(readme_path):
        with open(readme_path, "r", encoding="utf-8") as fh:
            return fh.read()
    else:
        return "GPHIK: fast Gaussian Process classification with histogram intersection kernels"

# Read requirements
def read_requirements():
    """Read requirements from requirements.txt."""
    here = os.path.abspath(os.path.dirname(__file__))
    requirements_path = os.path.join(here, "requirements.txt")

    requirements = []
    if os.path.exists(requirements_path):
        with open(requirements_path, "r", encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if line and not line.startswith("#"):
                    requirements.append(line)
    else:
        # Fallback to minimal requirements
        requirements = [
            "numpy>=1.21.0",
            "scipy>=1.12.0",
            "scikit-learn>=1.0.0",
            "numba>=0.56.0",
            "psutil>=5.8.0",
        ]

    return requirements

# Package metadata
PACKAGE_NAME = "gphik"
VERSION = "1.0.0"
AUTHOR = "GPHIK Developers"
DESCRIPTION = "Gaussian Process classification with fast histogram intersection kernels"
LICENSE = "MIT"

# Classifiers for PyPI
CLASSIFIERS = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "License :: OSI Approved :: MIT License",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3.9",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Topic :: Scientific/Engineering :: Artificial Intelligence",
    "Topic :: Scientific/Engineering :: Mathematics",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

# Keywords for PyPI search
KEYWORDS = [
    "machine learning", "gaussian process", "histogram intersection kernel",
    "incremental learning", "classification", "regression", "kernel methods",
]

# Development dependencies
DEV_REQUIREMENTS = [
    "pytest>=6.0.0",
    "pytest-cov>=2.0.0",
    "black>=22.0.0",
    "flake8>=4.0.0",
]

setup(
    name=PACKAGE_NAME,
    version=VERSION,
    author=AUTHOR,
    description=DESCRIPTION,
    long_description=read_long_description(),
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests*", "docs*", "examples*"]),
    classifiers=CLASSIFIERS,
    keywords=" ".join(KEYWORDS),
    license=LICENSE,
    python_requires=">=3.9",

    # Dependencies
    install_requires=read_requirements(),

    # Optional dependencies
    extras_require={
        "dev": DEV_REQUIREMENTS,
        "test": [
            "pytest>=6.0.0",
            "pytest-cov>=2.0.0",
        ],
    },

    zip_safe=False,
    platforms=["any"],
)
