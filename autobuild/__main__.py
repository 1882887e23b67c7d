"""
Entry point for running autobuild as a module.

Allows running as: python -m autobuild
"""

from autobuild.cli import cli_main

if __name__ == "__main__":
    cli_main()
