"""
Atomic storage for the Spotify credential record.

Holds exactly one record (access token, refresh token, expiry in epoch ms) in
a JSON file.  Writes are atomic (temp file + rename) so a crash mid-write
never leaves a partial record for readers.  A file missing any of the three
fields is treated as no record at all.

Storage locations (first existing, else first writable dir wins):
  1. /etc/kioskdash/spotify_token.json  (deployed install)
  2. <services>/spotify_token.json      (dev fallback)
"""

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass

log = logging.getLogger(__name__)

SERVICES_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

STORE_PATHS = [
    "/etc/kioskdash/spotify_token.json",
    os.path.join(SERVICES_DIR, "spotify_token.json"),
]


@dataclass(frozen=True)
class CredentialRecord:
    access_token: str
    refresh_token: str
    expires_at: int  # epoch milliseconds

    @classmethod
    def from_dict(cls, data) -> "CredentialRecord | None":
        """Build a record from stored JSON, or None if any field is missing."""
        if not isinstance(data, dict):
            return None
        access = data.get("access_token")
        refresh = data.get("refresh_token")
        expires = data.get("expires_at")
        if not access or not refresh or not isinstance(expires, (int, float)):
            return None
        return cls(access_token=access, refresh_token=refresh, expires_at=int(expires))

    def to_dict(self) -> dict:
        return asdict(self)


def _find_store_path():
    """Find the best token store path (first existing, or first writable)."""
    for path in STORE_PATHS:
        if os.path.exists(path):
            return path
    for path in STORE_PATHS:
        d = os.path.dirname(path)
        if os.path.isdir(d) and os.access(d, os.W_OK):
            return path
    return STORE_PATHS[-1]


class TokenStore:
    """File-backed home of the single credential record."""

    def __init__(self, path: str | None = None):
        self.path = path or _find_store_path()

    def load(self) -> CredentialRecord | None:
        """Load the record from disk. Returns None if absent or incomplete."""
        try:
            with open(self.path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            log.warning("Token file %s is not valid JSON: %s", self.path, e)
            return None

        record = CredentialRecord.from_dict(data)
        if record is None:
            log.warning("Token file %s is incomplete, ignoring", self.path)
        return record

    def save(self, record: CredentialRecord):
        """Atomically replace the stored record."""
        d = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(d, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=d, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(record.to_dict(), f, indent=2)
                f.write("\n")
            os.replace(tmp, self.path)
        except Exception:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def delete(self) -> bool:
        """Delete the stored record. Returns False if there was nothing to delete."""
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            return False
        log.info("Deleted token file: %s", self.path)
        return True
