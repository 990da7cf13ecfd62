"""Setup configuration for chainctl."""

from setuptools import setup, find_packages

setup(
    name="chainctl",
    version="1.0.0",
    description="Configuration-driven chains of batch and queueable background jobs",
    packages=find_packages(exclude=["tests", "tests.*"]),
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
            "chainctl=chainctl.cli:cli",
        ],
    },
    python_requires=">=3.8",
)
