"""
Application settings and configuration.

This module centralizes environment-driven settings (log level, workspace
location, default seed) so that containers and CI runs can be configured
without touching pipeline configuration files.
"""

import os
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv


class Settings:
    """
    Application settings with environment variable support.

    Values fall back to sensible defaults and can be overridden through
    environment variables or a ``.env`` file in the working directory.
    """

    def __init__(self):
        """Initialize application settings."""
        load_dotenv()

        self.BASE_DIR = Path(__file__).resolve().parent.parent

        # Logging settings
        self.LOG_LEVEL = os.environ.get("SCCLUSTER_LOG_LEVEL", "INFO").upper()

        # Where checkpoints and run configs are written
        self.WORKSPACE = Path(
            os.environ.get("SCCLUSTER_WORKSPACE", ".sccluster_workspace")
        ).expanduser()

        # Reproducibility
        self.RANDOM_STATE = int(os.environ.get("SCCLUSTER_RANDOM_STATE", "0"))

        # Parallelism for neighbor search (-1 = all cores)
        self.N_JOBS = int(os.environ.get("SCCLUSTER_N_JOBS", "1"))

    def get_all_settings(self) -> Dict[str, Any]:
        """Return all settings as a dictionary."""
        return {
            "LOG_LEVEL": self.LOG_LEVEL,
            "WORKSPACE": str(self.WORKSPACE),
            "RANDOM_STATE": self.RANDOM_STATE,
            "N_JOBS": self.N_JOBS,
        }


_settings = None


def get_settings() -> Settings:
    """Get the process-wide settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
