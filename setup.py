"""
Setup configuration for buildstory package.
"""

from setuptools import setup, find_packages

setup(
    name="buildstory",
    version="0.1.0",
    description="Persona-targeted storyboards with Thompson Sampling section bandits",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "supabase>=2.0",
        "pydantic>=2.0",
        "numpy>=1.22",
        "python-dotenv>=1.0",
        "tenacity>=8.0",
        "logfire>=0.30",
        "click>=8.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "buildstory=buildstory.cli.main:cli",
        ],
    },
)
