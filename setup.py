#!/usr/bin/env python3
"""
Build pipekit as a Python package.

Pure Python; there are no extension modules.
"""
from setuptools import setup, find_packages

setup(
    name="pipekit",
    version="0.1",
    description="Launch processes and pipelines with log redirection",
    packages=find_packages(include=["pipekit"]),
    python_requires=">=3.6",
)
