"""Setup configuration for opctl."""

from setuptools import setup, find_packages

setup(
    name="opctl",
    version="1.0.0",
    description="Tracking engine and CLI for long-running API operations",
    author="Your Name",
    packages=find_packages(include=["opctl", "opctl.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
    ],
    extras_require={
        "test": ["pytest>=7.4"],
    },
    entry_points={
        "console_scripts": [
            "opctl=opctl.cli:cli",
        ],
    },
    python_requires=">=3.8",
)
