"""Local-first note storage with server synchronization and account migration."""

__version__ = "0.1.0"
