"""Door access code manager for full and day pass members."""

__version__ = "0.1.0"
