from setuptools import setup, find_packages

setup(
    name="speclock",
    version="0.1.0",
    description="speclock — verify Python functions against specification-section contracts",
    packages=find_packages(include=["speclock", "speclock.*"]),
    python_requires=">=3.10",
    install_requires=[
        "z3-solver>=4.12.0",
        "pyyaml>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "hypothesis>=6.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "speclock=speclock.cli:main",
        ],
    },
)
