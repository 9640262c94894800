"""Utility helpers shared by the sccluster services."""
