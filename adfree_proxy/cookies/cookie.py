import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from http.cookies import CookieError, SimpleCookie
from typing import Optional

from adfree_proxy.errors import CookieParseError


def domain_matches(host: str, domain: str) -> bool:
    """True if ``host`` equals ``domain`` or is a subdomain of it."""
    return host == domain or host.endswith("." + domain)


def path_matches(request_path: str, cookie_path: str) -> bool:
    if request_path == cookie_path:
        return True
    if request_path.startswith(cookie_path):
        return cookie_path.endswith("/") or request_path[len(cookie_path)] == "/"
    return False


@dataclass
class Cookie:
    name: str
    value: str
    domain: str
    path: str = "/"
    secure: bool = False
    http_only: bool = False
    # Unix timestamp; None for session cookies
    expiry: Optional[float] = None
    creation: float = field(default_factory=time.time)
    # False when the cookie also applies to subdomains of ``domain``
    host_only: bool = True

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.domain, self.path, self.name)

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expiry is None:
            return False
        return self.expiry <= (time.time() if now is None else now)

    def applies_to(self, host: str, path: Optional[str] = None) -> bool:
        host = host.lower()
        if self.host_only:
            if host != self.domain:
                return False
        elif not domain_matches(host, self.domain):
            return False
        return path is None or path_matches(path, self.path)

    def to_dict(self) -> dict:
        expires = None
        if self.expiry is not None:
            expires = datetime.fromtimestamp(self.expiry, tz=timezone.utc).isoformat()
        return {
            "key": self.name,
            "value": self.value,
            "domain": self.domain,
            "path": self.path,
            "expires": expires,
            "secure": self.secure,
            "httpOnly": self.http_only,
        }


# Attributes SimpleCookie understands; anything else would be read as a new cookie
_KNOWN_ATTRIBUTES = {
    "expires",
    "path",
    "comment",
    "domain",
    "max-age",
    "secure",
    "httponly",
    "version",
    "samesite",
}


def _drop_unknown_attributes(header: str) -> str:
    pair, *attributes = header.split(";")
    kept = [pair.strip()]
    for attribute in attributes:
        name = attribute.split("=", 1)[0].strip().lower()
        if name in _KNOWN_ATTRIBUTES:
            kept.append(attribute.strip())
    return "; ".join(kept)


def _parse_expiry(morsel, now: float) -> Optional[float]:
    max_age = morsel["max-age"]
    if max_age:
        try:
            return now + int(max_age)
        except ValueError:
            pass
    expires = morsel["expires"]
    if expires:
        try:
            parsed = parsedate_to_datetime(expires)
        except (TypeError, ValueError):
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    return None


def parse_set_cookie(header: str, request_host: str, now: Optional[float] = None) -> Cookie:
    """
    Parse one Set-Cookie header received from ``request_host``.

    Raises:
        CookieParseError: if the header holds no cookie or its Domain
            attribute does not cover ``request_host``
    """
    now = time.time() if now is None else now
    parsed = SimpleCookie()
    try:
        parsed.load(_drop_unknown_attributes(header))
    except CookieError as exc:
        raise CookieParseError(f"Invalid Set-Cookie header: {exc}", line=header) from exc
    if not parsed:
        raise CookieParseError("Set-Cookie header contains no cookie", line=header)

    # A Set-Cookie header carries exactly one cookie
    morsel = next(iter(parsed.values()))
    request_host = request_host.lower()
    domain_attr = (morsel["domain"] or "").strip().lstrip(".").lower()
    if domain_attr:
        if not domain_matches(request_host, domain_attr):
            raise CookieParseError(
                f"Cookie domain {domain_attr} does not cover {request_host}", line=header
            )
        domain, host_only = domain_attr, False
    else:
        domain, host_only = request_host, True

    path = morsel["path"] or "/"
    if not path.startswith("/"):
        path = "/"

    return Cookie(
        name=morsel.key,
        value=morsel.value,
        domain=domain,
        path=path,
        secure=bool(morsel["secure"]),
        http_only=bool(morsel["httponly"]),
        expiry=_parse_expiry(morsel, now),
        creation=now,
        host_only=host_only,
    )
