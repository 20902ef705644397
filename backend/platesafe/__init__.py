"""PlateSafe trust-and-safety backend."""

__version__ = "0.1.0"
