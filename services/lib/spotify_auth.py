"""
Spotify credential lifecycle — authorization-code exchange and on-demand refresh.

SpotifyAuth is the only thing that reads or writes the access token.  Every
upstream call goes through ensure_access_token(), which returns the stored
token while it is comfortably valid and refreshes it (Basic auth with the
client id/secret) once it is within EXPIRY_MARGIN_MS of expiring.

Refreshes are serialised by a lock: concurrent callers that see an expired
token wait for the one in-flight refresh and then reuse its result.
"""

import asyncio
import base64
import json
import logging
import time
import urllib.parse

from aiohttp import ClientSession

from lib.token_store import CredentialRecord, TokenStore

log = logging.getLogger(__name__)

AUTHORIZE_URL = "https://accounts.spotify.com/authorize"
TOKEN_URL = "https://accounts.spotify.com/api/token"

SCOPES = " ".join([
    "streaming",
    "user-read-email",
    "user-read-private",
    "user-read-playback-state",
    "user-modify-playback-state",
    "user-read-currently-playing",
    "user-read-recently-played",
    "user-library-read",
    "user-library-modify",
    "playlist-read-private",
])

EXPIRY_MARGIN_MS = 60_000


class RefreshFailed(Exception):
    """The authorization server rejected a refresh-token grant."""

    def __init__(self, status: int, body: str):
        super().__init__(f"Refresh token failed: {status} {body}")
        self.status = status
        self.body = body


class TokenExchangeFailed(Exception):
    """The authorization server rejected an authorization-code grant."""

    def __init__(self, status: int, body: str):
        super().__init__(f"Token exchange failed: {status} {body}")
        self.status = status
        self.body = body


def now_ms() -> int:
    return int(time.time() * 1000)


def is_expired(record: CredentialRecord, now: int) -> bool:
    """True once we are inside the safety margin before expires_at."""
    return now >= record.expires_at - EXPIRY_MARGIN_MS


class SpotifyAuth:
    """Owns the credential record and keeps its access token fresh."""

    def __init__(self, store: TokenStore, session: ClientSession, *,
                 client_id: str, client_secret: str, redirect_uri: str,
                 token_url: str = TOKEN_URL, authorize_url: str = AUTHORIZE_URL,
                 clock=now_ms):
        self.store = store
        self.session = session
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.token_url = token_url
        self.authorize_url = authorize_url
        self._clock = clock
        self._lock = asyncio.Lock()

    # ── Store access (blocking file I/O off the event loop) ──

    async def load_record(self) -> CredentialRecord | None:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.store.load)

    async def _save_record(self, record: CredentialRecord):
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.store.save, record)

    async def clear(self) -> bool:
        loop = asyncio.get_running_loop()
        async with self._lock:
            return await loop.run_in_executor(None, self.store.delete)

    # ── Authorization-code flow ──

    def build_authorize_url(self, state: str) -> str:
        params = urllib.parse.urlencode({
            "response_type": "code",
            "client_id": self.client_id,
            "scope": SCOPES,
            "redirect_uri": self.redirect_uri,
            "state": state,
        })
        return f"{self.authorize_url}?{params}"

    def _basic_auth_header(self) -> str:
        creds = base64.b64encode(
            f"{self.client_id}:{self.client_secret}".encode()).decode()
        return f"Basic {creds}"

    async def _token_request(self, form: dict):
        """POST a grant to the token endpoint. Returns (status, text)."""
        headers = {
            "Authorization": self._basic_auth_header(),
            "Content-Type": "application/x-www-form-urlencoded",
        }
        async with self.session.post(self.token_url, data=form, headers=headers) as resp:
            return resp.status, await resp.text()

    async def exchange_code(self, code: str) -> CredentialRecord:
        """Trade an authorization code for a credential record and persist it."""
        status, text = await self._token_request({
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.redirect_uri,
        })
        if not 200 <= status < 300:
            raise TokenExchangeFailed(status, text)

        data = _decode_token_body(text, TokenExchangeFailed, status)
        if not data.get("refresh_token"):
            raise TokenExchangeFailed(status, "No refresh token received")
        record = CredentialRecord(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=self._clock() + int(data["expires_in"]) * 1000,
        )
        async with self._lock:
            await self._save_record(record)
        log.info("Spotify token stored (expires in %ds)", data["expires_in"])
        return record

    # ── Refresh ──

    async def ensure_access_token(self) -> str | None:
        """Return a usable access token, refreshing it first if needed.

        None means there is no credential record (not authenticated).
        """
        record = await self.load_record()
        if record is None:
            return None
        if not is_expired(record, self._clock()):
            return record.access_token

        async with self._lock:
            # Another caller may have refreshed while we waited for the lock
            record = await self.load_record()
            if record is None:
                return None
            if not is_expired(record, self._clock()):
                return record.access_token

            refreshed = await self._refresh(record)
            await self._save_record(refreshed)
            return refreshed.access_token

    async def _refresh(self, record: CredentialRecord) -> CredentialRecord:
        status, text = await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": record.refresh_token,
        })
        if not 200 <= status < 300:
            log.error("Spotify token refresh failed (HTTP %d): %s", status, text[:200])
            raise RefreshFailed(status, text)

        data = _decode_token_body(text, RefreshFailed, status)
        log.info("Access token refreshed (expires in %ds)", data["expires_in"])
        if data.get("refresh_token"):
            log.info("Refresh token rotated")
        return CredentialRecord(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or record.refresh_token,
            expires_at=self._clock() + int(data["expires_in"]) * 1000,
        )


def _decode_token_body(text: str, error_cls, status: int) -> dict:
    """Parse a token endpoint success body, raising error_cls if unusable."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        raise error_cls(status, text)
    if not isinstance(data, dict) or not data.get("access_token") \
            or "expires_in" not in data:
        raise error_cls(status, text)
    return data
