# Author: Omi Shrestha

import os

# Scanning
SCAN_PERIOD = float(os.environ.get("POLAR_HR_SCAN_PERIOD", "10.0"))  # seconds
DEVICE_NAME_MARKER = "Polar H10"

# Connection
CONNECT_TIMEOUT = 20.0  # seconds
RESOLVE_TIMEOUT = 10.0  # seconds, Polar device id -> BLE address lookup

# Remembered device
SHARED_PREFS_KEY = "polar_device_id"
PREFS_PATH = os.environ.get(
    "POLAR_HR_PREFS",
    os.path.join(os.path.expanduser("~"), ".polar_hr", "preferences.json"),
)

# HTTP API
API_HOST = os.environ.get("POLAR_HR_HOST", "0.0.0.0")
API_PORT = int(os.environ.get("POLAR_HR_PORT", "5000"))
