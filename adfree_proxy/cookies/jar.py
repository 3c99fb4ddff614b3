import logging
import os
import threading
import time
from typing import Iterable, Optional

from opentelemetry import trace

from adfree_proxy.cookies.cookie import Cookie, parse_set_cookie
from adfree_proxy.cookies.cookie_file import (
    parse_cookie_file,
    serialize_netscape,
    write_atomic,
)
from adfree_proxy.errors import CookieParseError, CookieStoreWriteError
from adfree_proxy.utils import value_fingerprint

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)


class CookieJar:
    """
    Server-side session store for the upstream's cookies.

    Cookies are grouped per domain in insertion order. Each group is an
    immutable tuple that writers replace under ``_write_lock``; readers only
    ever iterate a tuple they already hold, so ``get`` never waits on a write
    or on disk persistence.
    """

    def __init__(self, store_path: Optional[str] = None):
        self.store_path = store_path
        self.persistence_enabled = bool(store_path)
        self._cookies: dict[str, tuple[Cookie, ...]] = {}
        self._write_lock = threading.Lock()
        self.last_write_error: Optional[CookieStoreWriteError] = None

    def load(self, source: Optional[str] = None, default_domain: str = "") -> int:
        """
        Populate the jar from a cookie file.

        Malformed lines are skipped with a warning. Returns the number of
        cookies loaded.
        """
        path = source or self.store_path
        if not path:
            return 0
        self._check_store_writable()
        try:
            with open(path, "r", encoding="utf-8") as handle:
                text = handle.read()
        except FileNotFoundError:
            logger.info(f"[CookieJar] No cookie store at {path}, starting empty")
            return 0
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning(f"[CookieJar] Could not read cookie store {path}: {exc}")
            return 0

        cookies, errors = parse_cookie_file(text, default_domain)
        for error in errors:
            logger.warning(f"[CookieJar] Skipping malformed cookie line: {error.message}")

        now = time.time()
        with self._write_lock:
            for cookie in cookies:
                if not cookie.is_expired(now):
                    self._upsert(cookie, now)
        logger.info(f"[CookieJar] Loaded {len(cookies)} cookies from {path}")
        return len(cookies)

    def get(self, domain: str, path: Optional[str] = None) -> str:
        """Build a Cookie header for requests to ``domain``; empty if none apply."""
        now = time.time()
        pairs = []
        for cookies in list(self._cookies.values()):
            for cookie in cookies:
                if not cookie.is_expired(now) and cookie.applies_to(domain, path):
                    pairs.append(f"{cookie.name}={cookie.value}")
        return "; ".join(pairs)

    def set(self, domain: str, set_cookie_headers: Iterable[str]) -> list[Cookie]:
        """
        Store cookies from the upstream's Set-Cookie headers.

        The whole jar is persisted once after the batch. A persistence failure
        is logged; the in-memory jar stays authoritative.
        """
        now = time.time()
        parsed: list[Cookie] = []
        for header in set_cookie_headers:
            try:
                parsed.append(parse_set_cookie(header, domain, now))
            except CookieParseError as exc:
                logger.warning(f"[CookieJar] Ignoring Set-Cookie from {domain}: {exc.message}")
        if not parsed:
            return []

        with tracer.start_as_current_span("cookie_jar_set") as span:
            span.set_attribute("cookies.domain", domain)
            span.set_attribute("cookies.count", len(parsed))
            with self._write_lock:
                for cookie in parsed:
                    self._upsert(cookie, now)
                    logger.debug(
                        f"[CookieJar] Stored {cookie.name} for {cookie.domain}{cookie.path} "
                        f"({value_fingerprint(cookie.value)})"
                    )
                self._evict_expired_locked(now)
                self._persist_locked()
        return parsed

    def cookies(self) -> list[Cookie]:
        now = time.time()
        return [
            cookie
            for cookies in list(self._cookies.values())
            for cookie in cookies
            if not cookie.is_expired(now)
        ]

    def evict_expired(self) -> int:
        with self._write_lock:
            removed = self._evict_expired_locked(time.time())
            if removed:
                self._persist_locked()
        return removed

    def _upsert(self, cookie: Cookie, now: float) -> None:
        existing = self._cookies.get(cookie.domain, ())
        updated = []
        replaced = False
        for current in existing:
            if current.key == cookie.key:
                replaced = True
                # An expired cookie is the server deleting this key
                if not cookie.is_expired(now):
                    updated.append(cookie)
            else:
                updated.append(current)
        if not replaced and not cookie.is_expired(now):
            updated.append(cookie)

        if updated:
            self._cookies[cookie.domain] = tuple(updated)
        else:
            self._cookies.pop(cookie.domain, None)

    def _evict_expired_locked(self, now: float) -> int:
        removed = 0
        for domain, cookies in list(self._cookies.items()):
            alive = tuple(c for c in cookies if not c.is_expired(now))
            removed += len(cookies) - len(alive)
            if not alive:
                del self._cookies[domain]
            elif len(alive) != len(cookies):
                self._cookies[domain] = alive
        return removed

    def _persist_locked(self) -> None:
        if not self.persistence_enabled:
            return
        try:
            write_atomic(self.store_path, serialize_netscape(self.cookies()))
            self.last_write_error = None
        except CookieStoreWriteError as exc:
            self.last_write_error = exc
            logger.warning(f"[CookieJar] {exc.message}; keeping cookies in memory")

    def _check_store_writable(self) -> None:
        if not self.persistence_enabled:
            return
        # Missing directories are created on first write, so check the
        # nearest existing ancestor
        target = os.path.abspath(self.store_path)
        while not os.path.exists(target):
            parent = os.path.dirname(target)
            if parent == target:
                break
            target = parent
        if not os.access(target, os.W_OK):
            self.persistence_enabled = False
            logger.error(
                f"[CookieJar] Cookie store {self.store_path} is not writable, "
                "continuing without persistence"
            )
