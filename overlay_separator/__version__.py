"""Version information for overlay-separator."""

__version__ = "1.2.0"
