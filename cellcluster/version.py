"""Version information for cellcluster."""

__version__ = "0.1.0"
