# SPDX-License-Identifier: MPL-2.0
"""
Veracity - Main entry point for the CLI.

This module allows running the command-line interface as ``python -m veracity``.
"""

from veracity.cli.main import cli

if __name__ == "__main__":
    cli()
