"""
Thin pass-through to the Spotify Web API.

Every call gets its bearer token from SpotifyAuth.  Responses are handed back
as data, errors included: non-2xx statuses are logged and returned, 204 comes
back with no data, and a body that is not JSON is wrapped as {"raw": text}
instead of failing the call.  Nothing is retried.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any

from aiohttp import ClientSession

from lib.devices import Device, parse_devices
from lib.spotify_auth import SpotifyAuth

log = logging.getLogger(__name__)

SPOTIFY_API = "https://api.spotify.com/v1"


@dataclass
class UpstreamResponse:
    status: int
    data: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def decode_body(text: str):
    """JSON-decode an upstream body; None when empty, {"raw": text} when not JSON."""
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return {"raw": text}


def _device_params(device_id=None, **params) -> dict:
    if device_id:
        params["device_id"] = device_id
    return params


class SpotifyAPI:
    """Authenticated calls against the Spotify Web API."""

    def __init__(self, auth: SpotifyAuth, session: ClientSession, api_root: str = SPOTIFY_API):
        self.auth = auth
        self.session = session
        self.api_root = api_root

    async def call(self, endpoint, method="GET", json_body=None, params=None,
                   headers=None) -> UpstreamResponse:
        token = await self.auth.ensure_access_token()
        if not token:
            return UpstreamResponse(401, {"error": "Not authenticated"})

        req_headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        if headers:
            req_headers.update(headers)

        url = f"{self.api_root}{endpoint}"
        async with self.session.request(method, url, headers=req_headers,
                                        params=params, json=json_body) as resp:
            if resp.status == 204:
                return UpstreamResponse(204, None)
            text = await resp.text()
            result = UpstreamResponse(resp.status, decode_body(text))

        if not result.ok:
            log.warning("Spotify API error %d on %s %s: %s",
                        result.status, method, endpoint, str(result.data)[:200])
        return result

    # ── Playback helpers used by more than one route ──

    async def get_devices(self) -> tuple[UpstreamResponse, list[Device]]:
        resp = await self.call("/me/player/devices")
        devices = parse_devices(resp.data) if resp.status == 200 else []
        return resp, devices

    async def transfer(self, device_id, play=False) -> UpstreamResponse:
        return await self.call("/me/player", "PUT",
                               json_body={"device_ids": [device_id], "play": play})

    async def play(self, device_id=None) -> UpstreamResponse:
        return await self.call("/me/player/play", "PUT", params=_device_params(device_id))

    async def pause(self, device_id=None) -> UpstreamResponse:
        return await self.call("/me/player/pause", "PUT", params=_device_params(device_id))

    async def next_track(self, device_id=None) -> UpstreamResponse:
        return await self.call("/me/player/next", "POST", params=_device_params(device_id))

    async def previous_track(self, device_id=None) -> UpstreamResponse:
        return await self.call("/me/player/previous", "POST", params=_device_params(device_id))

    async def wake(self, device_id) -> UpstreamResponse:
        """Transfer to a dormant device without autoplay, then start it.

        Some targets refuse a play command until playback has been
        transferred to them, so the play is only sent once the transfer
        succeeds; a failed transfer is returned as is.
        """
        transfer = await self.transfer(device_id, play=False)
        if transfer.status >= 400:
            return transfer
        return await self.play(device_id)
