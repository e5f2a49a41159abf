# SPDX-License-Identifier: MPL-2.0
"""Setuptools shim for veracity-audit.

Project metadata lives in pyproject.toml; this file only serves tools that
still invoke setup.py directly.
"""
from setuptools import setup

if __name__ == "__main__":
    setup()
