"""
Setup script for the Land Cover Change Detection pipeline.

Install in development mode:
    pip install -e .
"""

from setuptools import setup, find_packages

setup(
    name="landchange",
    version="1.0.0",
    author="PhD Research",
    author_email="your.email@university.edu",
    description="Two-period Landsat land cover classification and area change accounting",
    long_description=open("README.md", encoding="utf-8").read(),
    long_description_content_type="text/markdown",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering :: GIS",
    ],
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.24.0",
        "pandas>=2.0.0",
        "rasterio>=1.3.0",
        "affine<3.0",
        "geopandas>=1.0.0",
        "shapely>=2.0.0",
        "scikit-learn>=1.3.0",
        "pyyaml>=6.0",
        "tqdm>=4.65.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.3.0",
            "black>=23.3.0",
            "flake8>=6.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "landchange-run=landchange.cli:main",
        ],
    },
)
