# Author: Omi Shrestha

import json
import os
from typing import Optional

from config import PREFS_PATH, SHARED_PREFS_KEY


class DeviceRegistry:
    """
    Small JSON-backed key-value store for the remembered device.

    Every set() rewrites the file through a temporary file and os.replace,
    so a crash never leaves a half-written preferences file behind.
    """

    def __init__(self, path: str = PREFS_PATH):
        self.path = path
        self._values = self._load()

    def _load(self):
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                values = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            print(f"[PREFS] Could not read {self.path}: {e}")
            return {}
        if not isinstance(values, dict):
            print(f"[PREFS] Ignoring malformed preferences in {self.path}")
            return {}
        return values

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._values.get(key, default)

    def set(self, key: str, value: Optional[str]):
        self._values[key] = value
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = self.path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._values, f, indent=2)
        os.replace(tmp_path, self.path)

    @property
    def remembered_device_id(self) -> Optional[str]:
        return self.get(SHARED_PREFS_KEY) or None

    def remember_device(self, device_id: str):
        self.set(SHARED_PREFS_KEY, device_id)
        print(f"[PREFS] Remembered device {device_id}")
