"""offsync command line interface."""

from offsync.cli.app import app

__all__ = ["app"]
