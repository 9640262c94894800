"""Configuration for sccluster runs."""
