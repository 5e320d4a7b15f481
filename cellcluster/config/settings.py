"""
Application settings and configuration.

This module centralizes environment-driven settings for the command line
interface and the default values of the randomized pipeline stages.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv


class Settings:
    """
    Application settings with environment variable support.

    Values are read from the process environment, after loading a ``.env``
    file from the working directory when present.
    """

    def __init__(self):
        """Initialize application settings."""
        load_dotenv()

        # Base directories
        self.BASE_DIR = Path(__file__).resolve().parent.parent

        # Logging settings
        self.LOG_LEVEL = os.environ.get("CELLCLUSTER_LOG_LEVEL", "INFO").upper()

        # Data processing settings
        self.DEFAULT_CLUSTER_RESOLUTION = float(
            os.environ.get("CELLCLUSTER_DEFAULT_RESOLUTION", "0.8")
        )
        self.DEFAULT_SEED = self._optional_int("CELLCLUSTER_DEFAULT_SEED")

    @staticmethod
    def _optional_int(name: str) -> Optional[int]:
        value = os.environ.get(name, "").strip()
        if not value or value.lower() == "none":
            return None
        return int(value)

    def get_all_settings(self) -> Dict[str, Any]:
        """
        Get all settings as a dictionary.

        Returns:
            dict: All settings
        """
        settings_dict = {}
        for attr in dir(self):
            if not attr.startswith("_") and not callable(getattr(self, attr)):
                settings_dict[attr] = getattr(self, attr)
        return settings_dict

    def get_setting(self, name: str, default: Any = None) -> Any:
        """
        Get a specific setting.

        Args:
            name: Setting name
            default: Default value if setting doesn't exist

        Returns:
            Value of the setting or default
        """
        return getattr(self, name, default)


# Create singleton instance
settings = Settings()


def get_settings() -> Settings:
    """
    Get the application settings.

    Returns:
        Settings: Application settings
    """
    return settings
