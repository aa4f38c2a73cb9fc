"""Run the offsync CLI with ``python -m offsync``."""

from offsync.cli.app import app

if __name__ == "__main__":
    app()
