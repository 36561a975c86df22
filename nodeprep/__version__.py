"""Version information for nodeprep."""

__version__ = "1.0.0"
