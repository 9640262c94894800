"""Version information for sccluster."""

__version__ = "0.3.1"
