"""
Entry point for running taskloop as a module.

Allows running as: python -m taskloop
"""

from taskloop.cli import cli_main

if __name__ == "__main__":
    cli_main()
