"""Main entry point for ``python -m notesync``."""

from notesync.cli import app

if __name__ == "__main__":
    app()
