"""
Configuration for the kioskdash backend.

One JSON object, read once and cached.  The first readable file wins:
  - $KIOSKDASH_CONFIG, when set
  - /etc/kioskdash/config.json
  - ./config.json
  - config/default.json at the repo root

Spotify client credentials and the redirect URI normally come from the
environment (SPOTIFY_CLIENT_ID, SPOTIFY_CLIENT_SECRET, SPOTIFY_REDIRECT_URI);
secret() only looks in the file when the variable is unset or empty.

    from lib.config import cfg, secret

    port      = int(cfg("port", default=3001))
    kitchen   = cfg("spotify", "device_name", default="")
    client_id = secret("SPOTIFY_CLIENT_ID", "spotify", "client_id")
"""

import json
import logging
import os

logger = logging.getLogger(__name__)

CONFIG_ENV = "KIOSKDASH_CONFIG"

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/kioskdash/config.json",
    "config.json",
    os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
]


def _candidates() -> list[str]:
    override = os.environ.get(CONFIG_ENV)
    return ([override] if override else []) + list(_SEARCH_PATHS)


def _read(path: str) -> dict | None:
    """Parse one config file; None if it is missing or unusable."""
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except json.JSONDecodeError as e:
        logger.error("Invalid JSON in %s: %s", path, e)
        return None
    if not isinstance(data, dict):
        logger.error("Config %s is not a JSON object, skipping", path)
        return None
    return data


def load_config() -> dict:
    """The active config dict (read on first use)."""
    global _config
    if _config is None:
        for path in _candidates():
            data = _read(path)
            if data is not None:
                logger.info("Config loaded from %s", path)
                _validate(data)
                _config = data
                break
        else:
            logger.warning("No usable config file, running on defaults")
            _config = {}
    return _config


def _validate(config: dict):
    """Warn about settings the dashboard cannot work without."""
    spotify = config.get("spotify") if isinstance(config.get("spotify"), dict) else {}
    for env_name, key in (("SPOTIFY_CLIENT_ID", "client_id"),
                          ("SPOTIFY_CLIENT_SECRET", "client_secret")):
        if not os.environ.get(env_name) and not spotify.get(key):
            logger.warning("Config missing spotify.%s (and %s not set)", key, env_name)

    weather = config.get("weather") if isinstance(config.get("weather"), dict) else {}
    has_coords = weather.get("latitude") not in (None, "") and \
        weather.get("longitude") not in (None, "")
    if not has_coords and not weather.get("postal_code") and not weather.get("city"):
        logger.warning("Config missing weather location (latitude/longitude, "
                       "postal_code or city)")


def cfg(section: str, key: str | None = None, *, default=None):
    """Top-level value, or one key of a section dict.

    A missing (or null) value gives `default`; so does asking for a key of a
    section that is not an object.
    """
    val = load_config().get(section)
    if key is not None:
        val = val.get(key) if isinstance(val, dict) else None
    return default if val is None else val


def secret(env_name: str, section: str, key: str, *, default=""):
    """Read a secret from the environment, falling back to the config file."""
    return os.environ.get(env_name) or cfg(section, key, default=default)


def reload_config():
    """Drop the cached config and read it again."""
    global _config
    _config = None
    return load_config()
