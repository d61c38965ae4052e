"""
Spotify Connect device selection.

resolve_device() picks the playback target from the device list Spotify
reports, first match wins:
  1. exact id
  2. case-insensitive exact name (only when a name is given)
  3. the currently active device (first one if several claim it)

The list is always fetched fresh by the caller; availability changes between
polls so nothing here is cached.
"""

from dataclasses import dataclass, field


class NoDeviceAvailable(Exception):
    """No reported device matched the request and none is active."""


@dataclass(frozen=True)
class Device:
    id: str
    name: str = ""
    is_active: bool = False
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_api(cls, data) -> "Device | None":
        """Decode one entry of /me/player/devices. Entries without an id are skipped."""
        if not isinstance(data, dict) or not data.get("id"):
            return None
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            is_active=bool(data.get("is_active")),
            raw=data,
        )

    def to_dict(self) -> dict:
        return self.raw or {"id": self.id, "name": self.name, "is_active": self.is_active}


def parse_devices(payload) -> list[Device]:
    """Decode the body of /me/player/devices defensively."""
    if not isinstance(payload, dict):
        return []
    entries = payload.get("devices")
    if not isinstance(entries, list):
        return []
    devices = []
    for entry in entries:
        device = Device.from_api(entry)
        if device is not None:
            devices.append(device)
    return devices


def resolve_device(devices, requested_id=None, requested_name=None) -> Device:
    """Pick the device to target. Raises NoDeviceAvailable if nothing fits."""
    if requested_id:
        for d in devices:
            if d.id == str(requested_id):
                return d

    if requested_name:
        wanted = str(requested_name).lower()
        for d in devices:
            if d.name.lower() == wanted:
                return d

    for d in devices:
        if d.is_active:
            return d

    raise NoDeviceAvailable("No device available to transfer.")
