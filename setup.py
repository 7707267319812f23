"""fieldlink setup - offline-first advisory glue."""
from setuptools import setup, find_packages

setup(
    name="fieldlink",
    version="0.1.0",
    description="fieldlink: offline-first glue for a crop and livestock advisory client",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.10",
    install_requires=[
        "click>=8.0",
        "blake3>=0.3",
        "Pillow>=9.1",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "fieldlink=fieldlink.cli.main:cli",
        ],
    },
)
