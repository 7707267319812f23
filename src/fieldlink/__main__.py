"""
Entry point for running fieldlink as a module.

Usage:
    python -m fieldlink [command] [options]

Example:
    python -m fieldlink queue status
    python -m fieldlink cache pin <key>
    python -m fieldlink connectivity classify 120 140 900 --json
"""

from fieldlink.cli.main import cli

if __name__ == "__main__":
    cli()
