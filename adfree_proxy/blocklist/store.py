import asyncio
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

import httpx
from opentelemetry import trace

from adfree_proxy.errors import BlocklistFetchError

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)([a-z0-9_](?:[a-z0-9_-]{0,61}[a-z0-9_])?)(?:\.[a-z0-9_](?:[a-z0-9_-]{0,61}[a-z0-9_])?)*$"
)
# Leading addresses used by hosts-file formatted lists
_SINK_ADDRESSES = {"0.0.0.0", "127.0.0.1", "::", "::1"}


@dataclass(frozen=True)
class BlocklistSnapshot:
    """One published state of the filter. Never mutated after creation."""

    domains: frozenset[str] = frozenset()
    paths: frozenset[str] = frozenset()
    keywords: frozenset[str] = frozenset()
    fetched_at: Optional[datetime] = None

    def to_domains_view(self) -> dict:
        domains = sorted(self.domains)
        return {
            "count": len(domains),
            "lastUpdated": self.fetched_at,
            "domains": domains,
        }

    def to_patterns_view(self) -> dict:
        return {
            "domains": sorted(self.domains),
            "paths": sorted(self.paths),
            "keywords": sorted(self.keywords),
            "lastUpdated": self.fetched_at,
        }


def parse_blocklist(text: str) -> frozenset[str]:
    """
    Parse a newline-delimited hostname list.

    Comments (``#``), blank lines and lines that are not hostnames are
    skipped. Hosts-file lines such as ``0.0.0.0 ads.example.com`` contribute
    their hostname.

    Raises:
        BlocklistFetchError: if the payload has content but no valid hostname
    """
    domains: set[str] = set()
    skipped = 0
    for raw_line in text.splitlines():
        line = raw_line.split("#", 1)[0].strip().lower()
        if not line:
            continue
        tokens = line.split()
        if len(tokens) == 2 and tokens[0] in _SINK_ADDRESSES:
            candidate = tokens[1]
        elif len(tokens) == 1:
            candidate = tokens[0]
        else:
            skipped += 1
            continue
        candidate = candidate.rstrip(".")
        if _HOSTNAME_RE.match(candidate):
            domains.add(candidate)
        else:
            skipped += 1

    if skipped:
        logger.debug(f"[Blocklist] Skipped {skipped} lines that are not hostnames")
    if not domains and skipped:
        raise BlocklistFetchError(
            f"Blocklist payload is malformed: {skipped} lines and no valid hostname"
        )
    return frozenset(domains)


@dataclass
class _ErrorChannel:
    handlers: list[Callable[[BlocklistFetchError], None]] = field(default_factory=list)

    def publish(self, error: BlocklistFetchError) -> None:
        for handler in list(self.handlers):
            try:
                handler(error)
            except Exception as exc:
                logger.warning(f"[Blocklist] Error handler failed: {exc}")


class BlocklistStore:
    """
    Holds the current blocklist snapshot and replaces it from a remote list.

    Readers call ``current_snapshot()`` and keep the returned object for the
    whole evaluation; a refresh publishes a new snapshot with a single
    reference assignment so no reader ever sees a half-built set.
    """

    def __init__(
        self,
        source_url: str,
        *,
        static_paths: Iterable[str] = (),
        keywords: Iterable[str] = (),
        client: Optional[httpx.AsyncClient] = None,
        fetch_timeout: float = 30.0,
    ):
        self.source_url = source_url
        self._client = client
        self._fetch_timeout = fetch_timeout
        self._snapshot = BlocklistSnapshot(
            paths=frozenset(p for p in static_paths if p),
            keywords=frozenset(k.lower() for k in keywords if k),
        )
        # Serializes refreshes against each other; readers never touch it
        self._refresh_lock = asyncio.Lock()
        self._errors = _ErrorChannel()
        self.last_error: Optional[BlocklistFetchError] = None

    def current_snapshot(self) -> BlocklistSnapshot:
        return self._snapshot

    def on_error(self, handler: Callable[[BlocklistFetchError], None]) -> None:
        """Register a callback invoked with every refresh failure."""
        self._errors.handlers.append(handler)

    async def refresh(self) -> BlocklistSnapshot:
        """
        Fetch the remote list and publish a new snapshot.

        Failures are reported through the error channel and leave the
        previous snapshot in place; the current snapshot is returned either way.
        """
        async with self._refresh_lock:
            with tracer.start_as_current_span("blocklist_refresh") as span:
                span.set_attribute("blocklist.url", self.source_url)
                try:
                    payload = await self._fetch()
                    domains = parse_blocklist(payload)
                except BlocklistFetchError as exc:
                    span.set_attribute("blocklist.error", exc.message)
                    self._report(exc)
                    return self._snapshot

                snapshot = replace(
                    self._snapshot,
                    domains=domains,
                    fetched_at=datetime.now(timezone.utc),
                )
                self._snapshot = snapshot
                self.last_error = None
                span.set_attribute("blocklist.count", len(domains))
                logger.info(
                    f"[Blocklist] Ad servers updated at {snapshot.fetched_at.isoformat()}. "
                    f"Total: {len(domains)}"
                )
                return snapshot

    async def _fetch(self) -> str:
        logger.info(f"[Blocklist] Fetching updated ad server list from {self.source_url}")
        try:
            if self._client is not None:
                response = await self._client.get(
                    self.source_url, timeout=self._fetch_timeout
                )
            else:
                async with httpx.AsyncClient(
                    timeout=httpx.Timeout(self._fetch_timeout), follow_redirects=True
                ) as client:
                    response = await client.get(self.source_url)
            response.raise_for_status()
            return response.text
        except httpx.HTTPStatusError as exc:
            raise BlocklistFetchError(
                f"Blocklist source returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise BlocklistFetchError(
                f"Failed to fetch blocklist: {type(exc).__name__}: {exc}"
            ) from exc

    def _report(self, error: BlocklistFetchError) -> None:
        self.last_error = error
        logger.error(
            f"[Blocklist] Failed to update ad servers, keeping previous list: {error.message}"
        )
        self._errors.publish(error)
