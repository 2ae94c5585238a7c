"""Setup script for taskmaster-realtime-sync."""

from setuptools import setup, find_packages
import os

def get_version():
    """Read version from __init__.py."""
    init_py = os.path.join(os.path.dirname(__file__), "taskmaster_sync", "__init__.py")
    if os.path.exists(init_py):
        with open(init_py, "r", encoding="utf-8") as f:
            for line in f:
                if line.startswith("__version__"):
                    delim = '"' if '"' in line else "'"
                    return line.split(delim)[1]
    return "0.1.0"

def get_long_description():
    """Read long description from README.md."""
    readme = os.path.join(os.path.dirname(__file__), "README.md")
    if os.path.exists(readme):
        with open(readme, "r", encoding="utf-8") as f:
            return f.read()
    return ""

setup(
    name="taskmaster-realtime-sync",
    version=get_version(),
    description="Real-time WebSocket broadcast of TaskMaster tasks.json changes",
    long_description=get_long_description(),
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "watchdog>=4.0",
        "fastapi>=0.100",
        "uvicorn>=0.23",
    ],
    extras_require={
        "speedups": ["orjson>=3.9"],
        "test": ["pytest>=7.0", "httpx>=0.24"],
    },
    entry_points={
        "console_scripts": [
            "taskmaster-sync=taskmaster_sync.main:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.8",
)
