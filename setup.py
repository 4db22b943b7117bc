"""Setup script for the process supervisor."""

from setuptools import setup, find_packages

setup(
    name="process-supervisor",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["process_supervisor_main"],
    install_requires=[
        "psutil>=5.9.0",
        "pyyaml>=6.0.1",
        "prometheus-client>=0.17.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "process-supervisor=process_supervisor_main:main",
        ],
    },
    python_requires=">=3.8",
)
