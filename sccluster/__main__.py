"""
Entry point for running sccluster as a module.

Allows execution via: python -m sccluster
"""

from sccluster.cli import app

if __name__ == "__main__":
    app()
