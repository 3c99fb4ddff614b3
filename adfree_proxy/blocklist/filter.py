from dataclasses import dataclass
from enum import Enum
from typing import Optional

from adfree_proxy.blocklist.store import BlocklistSnapshot, BlocklistStore

API_MARKER = "/api/"
API_AD_MARKERS = ("/ad/", "/promo/", "/sponsored/")


class BlockReason(str, Enum):
    DOMAIN_MATCH = "DomainMatch"
    PATH_MATCH = "PathMatch"
    KEYWORD_MATCH = "KeywordMatch"
    API_PATTERN_MATCH = "ApiPatternMatch"


BLOCK_MESSAGES = {
    BlockReason.DOMAIN_MATCH: "Ad blocked",
    BlockReason.PATH_MATCH: "Ad content blocked",
    BlockReason.KEYWORD_MATCH: "Ad content blocked",
    BlockReason.API_PATTERN_MATCH: "Ad content blocked",
}


@dataclass(frozen=True)
class FilterDecision:
    allowed: bool
    reason: Optional[BlockReason] = None
    # The blocklist entry that triggered the block, for diagnostics
    matched: Optional[str] = None

    @classmethod
    def allow(cls) -> "FilterDecision":
        return cls(allowed=True)

    @classmethod
    def block(cls, reason: BlockReason, matched: str) -> "FilterDecision":
        return cls(allowed=False, reason=reason, matched=matched)

    @property
    def blocked(self) -> bool:
        return not self.allowed

    @property
    def message(self) -> str:
        return BLOCK_MESSAGES[self.reason] if self.reason else "Allowed"


def normalize_host(host: Optional[str]) -> str:
    """Lower-case a Host header value and strip any port."""
    if not host:
        return ""
    host = host.strip().lower()
    if host.startswith("["):
        # [ipv6]:port
        end = host.find("]")
        return host[: end + 1] if end != -1 else host
    if host.count(":") == 1:
        host = host.split(":", 1)[0]
    return host.rstrip(".")


def evaluate(
    snapshot: BlocklistSnapshot, host: Optional[str], path: str, raw_url: str
) -> FilterDecision:
    """Evaluate one request against a snapshot. First match wins."""
    normalized_host = normalize_host(host)
    if normalized_host and normalized_host in snapshot.domains:
        return FilterDecision.block(BlockReason.DOMAIN_MATCH, normalized_host)

    for blocked_path in snapshot.paths:
        if blocked_path in path or blocked_path in raw_url:
            return FilterDecision.block(BlockReason.PATH_MATCH, blocked_path)

    lowered_url = raw_url.lower()
    for keyword in snapshot.keywords:
        if keyword in lowered_url:
            return FilterDecision.block(BlockReason.KEYWORD_MATCH, keyword)

    if API_MARKER in raw_url:
        for marker in API_AD_MARKERS:
            if marker in raw_url:
                return FilterDecision.block(BlockReason.API_PATTERN_MATCH, marker)

    return FilterDecision.allow()


class RequestFilter:
    """Evaluates requests against the store's latest snapshot."""

    def __init__(self, store: BlocklistStore):
        self._store = store

    def evaluate(self, host: Optional[str], path: str, raw_url: str) -> FilterDecision:
        return evaluate(self._store.current_snapshot(), host, path, raw_url)
