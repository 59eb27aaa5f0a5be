"""Environment-driven configuration for nodetop."""

import os
import secrets
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 7369
DEFAULT_INTERVAL = 1.0
DEFAULT_WINDOW = 60.0
DEFAULT_MAX_WORKERS = 8
DEFAULT_NODE_NAME = "node"
DEFAULT_COOKIE_FILE = Path.home() / ".nodetop.cookie"


def parse_address(value: str) -> tuple[str, int]:
    """Parse "host:port" (or a bare ":port") into a (host, port) tuple."""
    host, sep, port = value.rpartition(":")
    if not sep:
        raise ValueError(f"address must be host:port, got {value!r}")
    try:
        port_number = int(port)
    except ValueError:
        raise ValueError(f"invalid port in address {value!r}") from None
    if not 0 <= port_number <= 65535:
        raise ValueError(f"port out of range in address {value!r}")
    return host.strip("[]") or DEFAULT_HOST, port_number


def _cookie_path(environ: Mapping[str, str]) -> Path:
    return Path(environ.get("NODETOP_COOKIE_FILE") or DEFAULT_COOKIE_FILE).expanduser()


def load_cookie(environ: Mapping[str, str] | None = None) -> bytes | None:
    """Return the shared secret from NODETOP_COOKIE or the cookie file, if any."""
    environ = os.environ if environ is None else environ
    cookie = environ.get("NODETOP_COOKIE")
    if cookie:
        return cookie.encode()
    path = _cookie_path(environ)
    if path.is_file():
        content = path.read_text().strip()
        return content.encode() if content else None
    return None


def ensure_cookie(environ: Mapping[str, str] | None = None) -> bytes:
    """Return the configured cookie, creating the cookie file when none exists."""
    environ = os.environ if environ is None else environ
    cookie = load_cookie(environ)
    if cookie is not None:
        return cookie
    path = _cookie_path(environ)
    secret = secrets.token_urlsafe(32)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(secret)
    path.chmod(0o400)
    return secret.encode()


def _float(environ: Mapping[str, str], key: str, default: float | None) -> float | None:
    raw = environ.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{key} must be positive, got {raw!r}")
    return value


@dataclass(slots=True, frozen=True)
class Settings:
    """Resolved nodetop settings."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    cookie: bytes | None = None
    interval: float = DEFAULT_INTERVAL
    window: float = DEFAULT_WINDOW
    timeout: float | None = None  # None waits forever
    max_workers: int = DEFAULT_MAX_WORKERS
    node_name: str = DEFAULT_NODE_NAME

    @property
    def address(self) -> tuple[str, int]:
        return (self.host, self.port)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from NODETOP_* environment variables."""
        environ = os.environ if environ is None else environ

        host, port = DEFAULT_HOST, DEFAULT_PORT
        if environ.get("NODETOP_ADDRESS"):
            host, port = parse_address(environ["NODETOP_ADDRESS"])

        max_workers = DEFAULT_MAX_WORKERS
        if environ.get("NODETOP_MAX_WORKERS"):
            try:
                max_workers = int(environ["NODETOP_MAX_WORKERS"])
            except ValueError:
                raise ValueError("NODETOP_MAX_WORKERS must be an integer") from None
            if max_workers < 1:
                raise ValueError("NODETOP_MAX_WORKERS must be at least 1")

        return cls(
            host=host,
            port=port,
            cookie=load_cookie(environ),
            interval=_float(environ, "NODETOP_INTERVAL", DEFAULT_INTERVAL),
            window=_float(environ, "NODETOP_WINDOW", DEFAULT_WINDOW),
            timeout=_float(environ, "NODETOP_TIMEOUT", None),
            max_workers=max_workers,
            node_name=environ.get("NODETOP_NODE_NAME") or DEFAULT_NODE_NAME,
        )
