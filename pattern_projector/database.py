"""
Database abstraction layer for the pattern projector.
Provides abstract interface and JSON file-based implementation.
"""

from abc import ABC, abstractmethod
import json
import os
import re
from typing import Dict, List, Optional, Any
import logging


logger = logging.getLogger(__name__)

POINTS_KEY = 'points'
CALIBRATION_KEY = 'calibration'
DISPLAY_SETTINGS_KEY = 'display_settings'
LINES_KEY = 'lines'
LOCAL_TRANSFORM_KEY = 'local_transform'

_KEY_PATTERN = re.compile(r'^[A-Za-z0-9_\-]+$')


class DB_interface(ABC):
    """Abstract durable key-value store for projector state."""

    @abstractmethod
    def save(self, key: str, data: Any) -> bool:
        """Store a JSON-serialisable blob under key."""
        pass

    @abstractmethod
    def load(self, key: str) -> Optional[Any]:
        """Load the blob stored under key, or None."""
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete the blob stored under key."""
        pass

    @abstractmethod
    def list_keys(self) -> List[str]:
        """List all stored keys."""
        pass

    def save_points(self, points: List[Dict[str, float]]) -> bool:
        """Save the 4 calibration corner points ([{x, y} x 4])."""
        return self.save(POINTS_KEY, points)

    def load_points(self) -> Optional[List[Dict[str, float]]]:
        """Load the calibration corner points blob."""
        return self.load(POINTS_KEY)

    def save_calibration(self, calibration_data: Dict[str, Any]) -> bool:
        """Save the calibration record (points, dimensions, unit)."""
        return self.save(CALIBRATION_KEY, calibration_data)

    def load_calibration(self) -> Optional[Dict[str, Any]]:
        """Load the calibration record."""
        return self.load(CALIBRATION_KEY)

    def save_display_settings(self, settings: Dict[str, Any]) -> bool:
        return self.save(DISPLAY_SETTINGS_KEY, settings)

    def load_display_settings(self) -> Optional[Dict[str, Any]]:
        return self.load(DISPLAY_SETTINGS_KEY)

    def save_lines(self, lines: List[List[Dict[str, float]]]) -> bool:
        """Save measurement lines (content space)."""
        return self.save(LINES_KEY, lines)

    def load_lines(self) -> Optional[List[List[Dict[str, float]]]]:
        return self.load(LINES_KEY)


class FileBasedDB(DB_interface):
    """JSON file-based database implementation."""

    def __init__(self, base_path: str = "config"):
        self.base_path = base_path
        self.state_dir = os.path.join(base_path, "state")
        self.settings_file = os.path.join(base_path, "settings.json")

        # Create directories if they don't exist
        os.makedirs(self.state_dir, exist_ok=True)

    def _key_path(self, key: str) -> str:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return os.path.join(self.state_dir, f"{key}.json")

    def _save_json(self, filepath: str, data: Any) -> bool:
        """Save data to JSON file."""
        try:
            with open(filepath, 'w') as f:
                json.dump(data, f, indent=2)
            return True
        except Exception:
            logger.exception("Error saving to %s", filepath)
            return False

    def _load_json(self, filepath: str) -> Optional[Any]:
        """Load data from JSON file."""
        try:
            if os.path.exists(filepath):
                with open(filepath, 'r') as f:
                    return json.load(f)
            return None
        except Exception:
            logger.exception("Error loading from %s", filepath)
            return None

    def save(self, key: str, data: Any) -> bool:
        return self._save_json(self._key_path(key), data)

    def load(self, key: str) -> Optional[Any]:
        return self._load_json(self._key_path(key))

    def delete(self, key: str) -> bool:
        try:
            filepath = self._key_path(key)
            if os.path.exists(filepath):
                os.remove(filepath)
                return True
            return False
        except Exception:
            logger.exception("Error deleting key %s", key)
            return False

    def list_keys(self) -> List[str]:
        try:
            files = [f for f in os.listdir(self.state_dir) if f.endswith('.json')]
            return sorted(f[:-5] for f in files)  # Remove .json extension
        except Exception:
            logger.exception("Error listing keys")
            return []

    # ===== Settings helpers =====
    def load_settings(self) -> Dict[str, Any]:
        """Return config/settings.json merged over the defaults."""
        settings = default_settings()
        stored = self._load_json(self.settings_file)
        if isinstance(stored, dict):
            for section, values in stored.items():
                if isinstance(values, dict) and isinstance(settings.get(section), dict):
                    settings[section].update(values)
                else:
                    settings[section] = values
        return settings

    def save_settings(self, settings: Dict[str, Any]) -> bool:
        return self._save_json(self.settings_file, settings)


def default_settings() -> Dict[str, Any]:
    return {
        "server": {
            "host": "0.0.0.0",
            "port": 5670,
            "debug": False
        },
        "projector": {
            "default_width": 1920,
            "default_height": 1080
        },
        "calibration": {
            "width": 24,
            "height": 18,
            "unit": "in"
        }
    }
