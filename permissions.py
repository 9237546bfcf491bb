# Author: Omi Shrestha

"""
Runtime permission gate.

Desktop Bluetooth stacks grant access up front, so the default gate reports
everything as granted. Screens still go through check/request so a stricter
gate (or a test double) can refuse.
"""

from typing import Callable, Dict, Iterable, Optional

BLUETOOTH_SCAN = "bluetooth_scan"
BLUETOOTH_CONNECT = "bluetooth_connect"

ALL_PERMISSIONS = (BLUETOOTH_SCAN, BLUETOOTH_CONNECT)


class Permissions:
    def __init__(self, granted: Iterable[str] = ALL_PERMISSIONS,
                 requester: Optional[Callable[[list], bool]] = None):
        """
        Args:
            granted: permissions held from the start
            requester: asked to grant the missing permissions; returns True
                to grant. Without one, requests are denied.
        """
        self.granted = set(granted)
        self.requester = requester

    def is_granted(self, permission: str) -> bool:
        return permission in self.granted

    def all_granted(self, permissions: Iterable[str]) -> bool:
        return all(self.is_granted(p) for p in permissions)

    def request(self, permissions: Iterable[str],
                on_result: Callable[[Dict[str, bool]], None]):
        """Ask for the missing permissions and report one result per permission."""
        permissions = list(permissions)
        missing = [p for p in permissions if not self.is_granted(p)]
        if missing:
            print(f"[PERM] Requesting {', '.join(missing)}")
            if self.requester is not None and self.requester(missing):
                self.granted.update(missing)
        on_result({p: self.is_granted(p) for p in permissions})


def check_and_request(permissions: Permissions, needed, on_result) -> bool:
    """Return True when every permission is held, otherwise request them."""
    if permissions.all_granted(needed):
        return True
    permissions.request(needed, on_result)
    return False
