import os
from dataclasses import dataclass
from typing import Optional


def _parse_csv(raw: str) -> tuple[str, ...]:
    return tuple(entry.strip() for entry in raw.split(",") if entry.strip())


def _default_ws_url(upstream_url: str) -> str:
    if upstream_url.startswith("https://"):
        return "wss://" + upstream_url[len("https://"):] + "/ws"
    if upstream_url.startswith("http://"):
        return "ws://" + upstream_url[len("http://"):] + "/ws"
    return upstream_url + "/ws"


SERVICE_NAME = os.getenv("SERVICE_NAME", "adfree-proxy")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "5555"))

UPSTREAM_URL = os.environ.get("UPSTREAM_URL", "https://open.spotify.com").rstrip("/")
UPSTREAM_WS_URL = os.environ.get("UPSTREAM_WS_URL", _default_ws_url(UPSTREAM_URL))
# Public-facing base URL used when rewriting absolute upstream URLs
PUBLIC_URL = os.environ.get("PUBLIC_URL", "").rstrip("/")
PROXY_TIMEOUT = float(os.environ.get("PROXY_TIMEOUT", "60"))
USER_AGENT = os.environ.get(
    "USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
)

BLOCKLIST_URL = os.environ.get(
    "BLOCKLIST_URL",
    "https://raw.githubusercontent.com/Jigsaw88/Spotify-Ad-List/refs/heads/main/Spotify%20Adblock.txt",
)
BLOCKLIST_REFRESH_INTERVAL = int(
    os.environ.get("BLOCKLIST_REFRESH_INTERVAL", str(6 * 60 * 60))
)
BLOCKLIST_FETCH_TIMEOUT = float(os.environ.get("BLOCKLIST_FETCH_TIMEOUT", "30"))
# How long startup waits for the first refresh; 0 starts serving immediately
BLOCKLIST_STARTUP_TIMEOUT = float(os.environ.get("BLOCKLIST_STARTUP_TIMEOUT", "10"))
STATIC_BLOCK_PATHS = _parse_csv(
    os.environ.get(
        "STATIC_BLOCK_PATHS", "/ads/,/ad-logic/,/gabo-receiver-service/,/pagead/"
    )
)
BLOCKED_KEYWORDS = _parse_csv(
    os.environ.get("BLOCKED_KEYWORDS", "advertising,tracking,analytics,doubleclick")
)

COOKIE_STORE_PATH = os.environ.get("COOKIE_STORE_PATH", "cookies.txt")

WEBSOCKET_PATH = os.environ.get("WEBSOCKET_PATH", "/ws")
MANIFEST_MARKER = os.environ.get("MANIFEST_MARKER", "manifest")
REWRITE_MAX_BYTES = int(os.environ.get("REWRITE_MAX_BYTES", str(5 * 1024 * 1024)))

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")


@dataclass(frozen=True)
class ProxyConfig:
    """Read-only settings handed to the pipeline components."""

    upstream_url: str = UPSTREAM_URL
    upstream_ws_url: str = UPSTREAM_WS_URL
    public_url: str = PUBLIC_URL
    proxy_timeout: float = PROXY_TIMEOUT
    user_agent: str = USER_AGENT
    blocklist_url: str = BLOCKLIST_URL
    blocklist_refresh_interval: float = BLOCKLIST_REFRESH_INTERVAL
    blocklist_fetch_timeout: float = BLOCKLIST_FETCH_TIMEOUT
    blocklist_startup_timeout: float = BLOCKLIST_STARTUP_TIMEOUT
    static_block_paths: tuple[str, ...] = STATIC_BLOCK_PATHS
    blocked_keywords: tuple[str, ...] = BLOCKED_KEYWORDS
    cookie_store_path: Optional[str] = COOKIE_STORE_PATH
    websocket_path: str = WEBSOCKET_PATH
    manifest_marker: str = MANIFEST_MARKER
    rewrite_max_bytes: int = REWRITE_MAX_BYTES
    service_name: str = SERVICE_NAME
