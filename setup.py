#!/usr/bin/env python3
"""
Setup script for tsdb-shipper.
Installs only the shipper package, not the tests.
"""

from setuptools import setup, find_packages

# Most configuration is in pyproject.toml
# This file exists for compatibility with older pip versions

setup(
    packages=find_packages(include=["tsdb_shipper", "tsdb_shipper.*"]),
)
