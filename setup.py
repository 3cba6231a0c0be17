"""Setup script for live-rebuild.

Installs the ``live_rebuild`` package, its bundled live-reload client script,
and the ``live-rebuild`` console command.
"""

from setuptools import setup, find_packages
import os

def get_version():
    """Read version from __init__.py."""
    init_py = os.path.join(os.path.dirname(__file__), "live_rebuild", "__init__.py")
    if os.path.exists(init_py):
        with open(init_py, "r", encoding="utf-8") as f:
            for line in f:
                if line.startswith("__version__"):
                    delim = '"' if '"' in line else "'"
                    return line.split(delim)[1]
    return "0.1.0"

setup(
    name="live-rebuild",
    version=get_version(),
    description="Dev-mode build orchestrator: watch, compile, bundle and live-reload the browser",
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_data={"live_rebuild": ["static/*.js"]},
    install_requires=[
        "watchdog>=4.0",
        "tomli>=2.0",
    ],
    extras_require={
        "fast": ["orjson>=3.9"],
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "live-rebuild=live_rebuild.main:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.8",
)
