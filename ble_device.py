# Author: Omi Shrestha

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


@dataclass
class DiscoveredDevice:
    """A device seen during a scan session. Unique by address."""
    address: str
    name: Optional[str] = None
    rssi: Optional[int] = None
    discovered_at: float = field(default_factory=time.time)

    def to_dict(self):
        return {
            "address": self.address,
            "name": self.name,
            "rssi": self.rssi,
            "discovered_at": self.discovered_at,
        }


@dataclass
class DeviceInfo:
    """Identity of the device a transport callback refers to."""
    device_id: str
    address: str = ""
    name: str = ""
    rssi: Optional[int] = None     # from the advertisement used to find it


@dataclass
class HrSample:
    """One decoded Heart Rate Measurement notification."""
    hr: int
    rrs_ms: List[int] = field(default_factory=list)   # RR intervals, milliseconds
    contact_status: bool = False
    contact_status_supported: bool = False
    rr_available: bool = False


class Feature(Enum):
    """Transport features reported through feature_ready()"""
    ONLINE_STREAMING = "online_streaming"
    BATTERY_INFO = "battery_info"
    DEVICE_INFO = "device_info"


class ConnectionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STREAMING = "streaming"
    DISCONNECTED = "disconnected"
