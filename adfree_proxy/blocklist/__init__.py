from .store import BlocklistSnapshot, BlocklistStore, parse_blocklist
from .filter import BlockReason, FilterDecision, RequestFilter, evaluate
from .refresher import BlocklistRefresher

__all__ = [
    "BlocklistSnapshot",
    "BlocklistStore",
    "BlocklistRefresher",
    "BlockReason",
    "FilterDecision",
    "RequestFilter",
    "evaluate",
    "parse_blocklist",
]
