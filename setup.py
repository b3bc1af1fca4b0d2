#!/usr/bin/env python3
"""
Setup script for kube-deploy.
This is a lightweight installation that only installs the kubedeploy package.
"""

from setuptools import setup, find_packages

# Most configuration is in pyproject.toml
# This file exists for compatibility with older pip versions

setup(
    packages=find_packages(include=["kubedeploy", "kubedeploy.*"]),
)
