"""Shared HTTP utilities for the kioskdash backend."""

from aiohttp import web


def cors_headers(origin: str = "*") -> dict:
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type",
    }


def relay(status: int, data, headers: dict | None = None) -> web.Response:
    """Mirror an upstream status/body back to the client.

    204 must not carry a body, so it is answered empty.
    """
    if status == 204:
        return web.Response(status=204, headers=headers)
    return web.json_response(data, status=status, headers=headers)
