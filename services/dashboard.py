#!/usr/bin/env python3
"""
kioskdash backend (kioskdash)

Spotify + weather proxy for the kiosk front-end.  Handles the OAuth
authorization-code login once, keeps the credential record on disk and
relays now-playing queries and playback commands.  Upstream status codes are
mirrored back; only 400 (missing parameter), 401 (not authenticated) and 404
(no device / unknown location) are produced locally.

Port: 3001
"""

import asyncio
import json
import logging
import math
import os
import secrets
import sys
from collections import deque

from aiohttp import ClientError, web

# Shared library
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from lib.config import cfg, secret
from lib.devices import NoDeviceAvailable, resolve_device
from lib.http_utils import relay
from lib.service_base import ServiceBase
from lib.spotify_api import SPOTIFY_API, SpotifyAPI
from lib.spotify_auth import (
    AUTHORIZE_URL, TOKEN_URL, RefreshFailed, SpotifyAuth, TokenExchangeFailed,
)
from lib.token_store import TokenStore
from lib.weather import (
    FORECAST_URL, GEOCODE_URL, LocationNotFound, WeatherCache, WeatherLookupFailed,
)

log = logging.getLogger('kioskdash')

CLIENT_URL = "http://localhost:5173"
MAX_PENDING_LOGINS = 16

DEFAULT_ENDPOINTS = {
    "api_root": SPOTIFY_API,
    "token_url": TOKEN_URL,
    "authorize_url": AUTHORIZE_URL,
    "forecast_url": FORECAST_URL,
    "geocode_url": GEOCODE_URL,
}


def _number(value, default):
    try:
        num = float(value if value is not None else default)
    except (TypeError, ValueError, OverflowError):
        return float(default)
    return num if math.isfinite(num) else float(default)


def _text(value):
    """Body field as a string; None when missing or empty."""
    if value is None or value == "" or isinstance(value, (dict, list)):
        return None
    return str(value)


def _ids_param(ids):
    if isinstance(ids, (list, tuple)):
        return ",".join(str(i) for i in ids)
    return str(ids or "")


class DashboardService(ServiceBase):
    """HTTP surface: OAuth flow, Spotify pass-through, weather."""

    name = "kioskdash"

    def __init__(self, store: TokenStore | None = None, *,
                 endpoints: dict | None = None, clock=None):
        super().__init__(
            cors_origin=cfg("client_url", default=CLIENT_URL),
            timeout=cfg("http", "timeout", default=10),
        )
        self.host = cfg("host", default="0.0.0.0")
        self.port = int(cfg("port", default=3001))
        self.client_url = cfg("client_url", default=CLIENT_URL)
        self.device_name = cfg("spotify", "device_name", default="")
        self.store = store or TokenStore(cfg("spotify", "token_path"))
        self.endpoints = {**DEFAULT_ENDPOINTS, **(endpoints or {})}
        self._clock_kw = {"clock": clock} if clock else {}
        self._oauth_states = deque(maxlen=MAX_PENDING_LOGINS)

        self.auth: SpotifyAuth | None = None
        self.api: SpotifyAPI | None = None
        self.weather: WeatherCache | None = None

    async def on_start(self):
        client_id = secret("SPOTIFY_CLIENT_ID", "spotify", "client_id")
        client_secret = secret("SPOTIFY_CLIENT_SECRET", "spotify", "client_secret")
        if not client_id or not client_secret:
            log.warning("Spotify client credentials not configured, login will fail")

        self.auth = SpotifyAuth(
            self.store, self._http_session,
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=secret("SPOTIFY_REDIRECT_URI", "spotify", "redirect_uri"),
            token_url=self.endpoints["token_url"],
            authorize_url=self.endpoints["authorize_url"],
            **self._clock_kw,
        )
        self.api = SpotifyAPI(self.auth, self._http_session, self.endpoints["api_root"])
        self.weather = WeatherCache(
            self._http_session,
            latitude=cfg("weather", "latitude"),
            longitude=cfg("weather", "longitude"),
            postal_code=cfg("weather", "postal_code", default=""),
            city=cfg("weather", "city", default=""),
            country=cfg("weather", "country", default="CA"),
            forecast_url=self.endpoints["forecast_url"],
            geocode_url=self.endpoints["geocode_url"],
            **self._clock_kw,
        )
        log.info("Token store: %s", self.store.path)

    # ── Routes ──

    def add_routes(self, app):
        r = app.router
        r.add_get('/login', self._handle_login)
        r.add_get('/callback', self._handle_callback)
        r.add_get('/status', self._handle_status)
        r.add_get('/token', self._handle_token)
        r.add_delete('/token', self._handle_clear_token)

        r.add_get('/now-playing', self._handle_now_playing)
        r.add_get('/player', self._passthrough("/me/player"))
        r.add_get('/queue', self._passthrough("/me/player/queue"))
        r.add_get('/recently-played',
                  self._passthrough("/me/player/recently-played", {"limit": 1}))
        r.add_get('/devices', self._handle_devices)
        r.add_put('/transfer', self._handle_transfer)
        r.add_put('/play', self._handle_play)
        r.add_put('/pause', self._handle_pause)
        r.add_put('/wake', self._handle_wake)
        r.add_post('/next', self._handle_next)
        r.add_post('/previous', self._handle_previous)
        r.add_put('/seek', self._handle_seek)
        r.add_put('/shuffle', self._handle_shuffle)
        r.add_put('/repeat', self._handle_repeat)
        r.add_put('/volume', self._handle_volume)
        r.add_get('/artist/{id}', self._handle_artist)
        r.add_get('/me/tracks/contains', self._handle_tracks_contains)
        r.add_put('/me/tracks', self._handle_save_tracks)
        r.add_delete('/me/tracks', self._handle_remove_tracks)

        r.add_get('/weather', self._handle_weather)
        r.add_get('/health', self._handle_health)

    def error_response(self, request, exc):
        if isinstance(exc, RefreshFailed):
            log.error("Token refresh failed on %s: HTTP %d", request.path, exc.status)
            return self.json({"error": "Token refresh failed"}, status=500)
        if isinstance(exc, NoDeviceAvailable):
            return self.json({"error": str(exc)}, status=404)
        if isinstance(exc, LocationNotFound):
            log.warning("Weather location not found: %s", exc)
            return self.json({"error": "Location not found."}, status=404)
        if isinstance(exc, WeatherLookupFailed):
            log.error("Weather error: %s", exc)
            return self.json({"error": "Weather lookup failed."}, status=500)
        if isinstance(exc, (ClientError, asyncio.TimeoutError)):
            log.error("Upstream request failed on %s: %s", request.path, exc)
            return self.json({"error": "Upstream request failed"}, status=502)
        return None

    # ── Helpers ──

    def _relay(self, resp):
        return relay(resp.status, resp.data, headers=self._cors_headers())

    @staticmethod
    async def _body(request) -> dict:
        """JSON request body as a dict; empty or malformed bodies read as {}."""
        if not request.can_read_body:
            return {}
        try:
            data = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    def _passthrough(self, endpoint, params=None):
        async def handler(request):
            return self._relay(await self.api.call(endpoint, params=params))
        return handler

    # ── OAuth ──

    async def _handle_login(self, request):
        state = secrets.token_urlsafe(16)
        self._oauth_states.append(state)
        log.info("OAuth: redirecting to Spotify")
        raise web.HTTPFound(self.auth.build_authorize_url(state))

    async def _handle_callback(self, request):
        error = request.query.get('error')
        if error:
            return web.Response(text=f'Spotify authorization failed: {error}', status=400)

        code = request.query.get('code', '')
        if not code:
            return web.Response(text='Missing Spotify code.', status=400)

        state = request.query.get('state')
        if state is not None:
            if state not in self._oauth_states:
                return web.Response(text='Unknown or expired login state.', status=400)
            self._oauth_states.remove(state)

        try:
            await self.auth.exchange_code(code)
        except (TokenExchangeFailed, ClientError, asyncio.TimeoutError) as e:
            log.error("Callback error: %s", e)
            return web.Response(text='Spotify authentication failed.', status=500)

        raise web.HTTPFound(self.client_url)

    async def _handle_status(self, request):
        record = await self.auth.load_record()
        return self.json({
            'authenticated': record is not None,
            'expires_at': record.expires_at if record else None,
        })

    async def _handle_token(self, request):
        try:
            token = await self.auth.ensure_access_token()
        except (RefreshFailed, ClientError, asyncio.TimeoutError) as e:
            log.error("Token error: %s", e)
            return self.json({'error': 'Token fetch failed'}, status=500)
        if not token:
            return self.json({'error': 'Not authenticated'}, status=401)
        return self.json({'access_token': token})

    async def _handle_clear_token(self, request):
        cleared = await self.auth.clear()
        return self.json({'cleared': cleared})

    # ── Playback state ──

    async def _handle_now_playing(self, request):
        resp = await self.api.call("/me/player/currently-playing")
        if resp.status == 204:
            return self.json({'is_playing': False})
        return self._relay(resp)

    async def _handle_devices(self, request):
        resp, devices = await self.api.get_devices()
        if resp.status == 200:
            log.info("Devices: %s",
                     [(d.name, d.id[:8], d.is_active) for d in devices])
        return self._relay(resp)

    async def _handle_artist(self, request):
        artist_id = request.match_info['id']
        return self._relay(await self.api.call(f"/artists/{artist_id}"))

    # ── Playback control ──

    async def _handle_transfer(self, request):
        body = await self._body(request)
        resp, devices = await self.api.get_devices()
        if resp.status != 200:
            return self._relay(resp)

        device = resolve_device(
            devices,
            requested_id=_text(body.get('deviceId')),
            requested_name=_text(body.get('deviceName')) or self.device_name,
        )
        log.info("Transferring playback to %s (%s)", device.name, device.id[:8])
        result = await self.api.transfer(device.id, play=False)
        data = result.data if isinstance(result.data, dict) else {}
        return relay(result.status, {**data, 'device': device.to_dict()},
                     headers=self._cors_headers())

    async def _handle_wake(self, request):
        body = await self._body(request)
        device_id = _text(body.get('deviceId'))
        if not device_id:
            return self.json({'error': 'deviceId required'}, status=400)
        log.info("Waking device %s", device_id[:8])
        return self._relay(await self.api.wake(device_id))

    async def _handle_play(self, request):
        body = await self._body(request)
        return self._relay(await self.api.play(_text(body.get('deviceId'))))

    async def _handle_pause(self, request):
        body = await self._body(request)
        return self._relay(await self.api.pause(_text(body.get('deviceId'))))

    async def _handle_next(self, request):
        body = await self._body(request)
        return self._relay(await self.api.next_track(_text(body.get('deviceId'))))

    async def _handle_previous(self, request):
        body = await self._body(request)
        return self._relay(await self.api.previous_track(_text(body.get('deviceId'))))

    async def _player_setting(self, body, endpoint, **params):
        device_id = _text(body.get('deviceId'))
        if device_id:
            params['device_id'] = device_id
        return self._relay(await self.api.call(endpoint, "PUT", params=params))

    async def _handle_seek(self, request):
        body = await self._body(request)
        position = max(0, int(_number(body.get('positionMs'), 0)))
        return await self._player_setting(body, "/me/player/seek", position_ms=position)

    async def _handle_shuffle(self, request):
        body = await self._body(request)
        state = "true" if body.get('state') else "false"
        return await self._player_setting(body, "/me/player/shuffle", state=state)

    async def _handle_repeat(self, request):
        body = await self._body(request)
        mode = _text(body.get('state')) or "off"
        return await self._player_setting(body, "/me/player/repeat", state=mode)

    async def _handle_volume(self, request):
        body = await self._body(request)
        volume = int(max(0, min(100, _number(body.get('volume'), 50))))
        return await self._player_setting(body, "/me/player/volume", volume_percent=volume)

    # ── Library ──

    async def _handle_tracks_contains(self, request):
        ids = request.query.get('ids')
        if not ids:
            return self.json({'error': 'ids query required'}, status=400)
        return self._relay(await self.api.call("/me/tracks/contains", params={'ids': ids}))

    async def _library_update(self, request, method):
        body = await self._body(request)
        ids = _ids_param(body.get('ids'))
        if not ids:
            return self.json({'error': 'ids required'}, status=400)
        return self._relay(await self.api.call("/me/tracks", method, params={'ids': ids}))

    async def _handle_save_tracks(self, request):
        return await self._library_update(request, "PUT")

    async def _handle_remove_tracks(self, request):
        return await self._library_update(request, "DELETE")

    # ── Weather / health ──

    async def _handle_weather(self, request):
        return self.json(await self.weather.get_weather())

    async def _handle_health(self, request):
        return self.json({'ok': True})


def main():
    level = logging.INFO if cfg("logs_enabled", default=True) else logging.ERROR
    logging.basicConfig(
        level=level,
        format="[%(asctime)s] %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    service = DashboardService()
    asyncio.run(service.run())


if __name__ == '__main__':
    main()
