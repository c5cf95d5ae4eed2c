"""pbsync — migrate the full state of one PocketBase instance to another."""

__version__ = "0.1.0"
