"""
Setup configuration for LakeView core package
Enables installation and proper module importing
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="lakeview",
    version="1.0.0",
    author="LakeView PH Development Team",
    description="Lake water-quality, spatial layer and population-exposure tooling for the Philippines",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["lakeview_core", "lakeview_core.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: Science/Research",
        "Topic :: Scientific/Engineering :: GIS",
        "Topic :: Scientific/Engineering :: Hydrology",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.9",
    install_requires=[
        "numpy>=1.24.0",
        "pandas>=2.0.0",
        "scipy>=1.11.0",
        "folium>=0.14.0",
        "geopandas>=0.13.0",
        "shapely>=2.1.0",
        "pyproj>=3.6.0",
        "requests>=2.31.0",
        "urllib3>=1.26.0",
        "python-dateutil>=2.8.0",
        "openpyxl>=3.1.0",
    ],
    extras_require={
        "tests": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "lakeview=lakeview_core.__main__:main",
        ],
    },
)
