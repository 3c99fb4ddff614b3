"""
Durable cookie storage.

Two line formats are read:

* Netscape cookie files: ``domain<TAB>flag<TAB>path<TAB>secure<TAB>expiry<TAB>name<TAB>value``,
  with the ``#HttpOnly_`` domain prefix used by curl and browsers.
* One ``name=value`` cookie per line, bound to the default domain.

The jar is always written back in Netscape format.
"""

import os
import time
from typing import Iterable, Optional

from adfree_proxy.cookies.cookie import Cookie
from adfree_proxy.errors import CookieParseError, CookieStoreWriteError

NETSCAPE_HEADER = "# Netscape HTTP Cookie File"
HTTP_ONLY_PREFIX = "#HttpOnly_"


def _parse_flag(value: str, line: str) -> bool:
    upper = value.strip().upper()
    if upper not in ("TRUE", "FALSE"):
        raise CookieParseError(f"Expected TRUE or FALSE, got {value!r}", line=line)
    return upper == "TRUE"


def _parse_netscape(fields: list[str], line: str, http_only: bool, now: float) -> Cookie:
    domain, subdomains, path, secure, expiry, name, value = fields
    if not domain or not name:
        raise CookieParseError("Cookie line is missing a domain or name", line=line)
    try:
        expiry_value = int(expiry.strip())
    except ValueError as exc:
        raise CookieParseError(f"Invalid expiry {expiry!r}", line=line) from exc
    include_subdomains = _parse_flag(subdomains, line)
    return Cookie(
        name=name,
        value=value,
        domain=domain.strip().lstrip(".").lower(),
        path=path or "/",
        secure=_parse_flag(secure, line),
        http_only=http_only,
        # 0 marks a session cookie
        expiry=float(expiry_value) if expiry_value > 0 else None,
        creation=now,
        host_only=not include_subdomains and not domain.startswith("."),
    )


def parse_cookie_line(line: str, default_domain: str, now: Optional[float] = None) -> Optional[Cookie]:
    """
    Parse one line of a cookie file.

    Returns None for blank lines and comments.

    Raises:
        CookieParseError: if the line is in neither supported format
    """
    now = time.time() if now is None else now
    stripped = line.rstrip("\r\n")
    http_only = False
    if stripped.startswith(HTTP_ONLY_PREFIX):
        http_only = True
        stripped = stripped[len(HTTP_ONLY_PREFIX):]
    elif not stripped.strip() or stripped.lstrip().startswith("#"):
        return None

    if "\t" in stripped:
        fields = stripped.split("\t")
        if len(fields) != 7:
            raise CookieParseError(
                f"Expected 7 tab-separated fields, got {len(fields)}", line=line
            )
        return _parse_netscape(fields, line, http_only, now)

    name, sep, value = stripped.strip().partition("=")
    name = name.strip()
    if not sep or not name or ";" in name or " " in name:
        raise CookieParseError("Expected a name=value pair", line=line)
    return Cookie(
        name=name,
        value=value.strip(),
        domain=default_domain.lower(),
        creation=now,
        host_only=False,
    )


def parse_cookie_file(
    text: str, default_domain: str, now: Optional[float] = None
) -> tuple[list[Cookie], list[CookieParseError]]:
    cookies: list[Cookie] = []
    errors: list[CookieParseError] = []
    for line in text.splitlines():
        try:
            cookie = parse_cookie_line(line, default_domain, now)
        except CookieParseError as exc:
            errors.append(exc)
            continue
        if cookie is not None:
            cookies.append(cookie)
    return cookies, errors


def serialize_netscape(cookies: Iterable[Cookie]) -> str:
    lines = [NETSCAPE_HEADER, ""]
    for cookie in cookies:
        if any(ch in cookie.value for ch in "\t\r\n"):
            continue
        domain = cookie.domain if cookie.host_only else "." + cookie.domain
        if cookie.http_only:
            domain = HTTP_ONLY_PREFIX + domain
        lines.append(
            "\t".join(
                [
                    domain,
                    "FALSE" if cookie.host_only else "TRUE",
                    cookie.path,
                    "TRUE" if cookie.secure else "FALSE",
                    str(int(cookie.expiry)) if cookie.expiry is not None else "0",
                    cookie.name,
                    cookie.value,
                ]
            )
        )
    return "\n".join(lines) + "\n"


def write_atomic(path: str, text: str) -> None:
    """
    Replace ``path`` with ``text`` in one step.

    Raises:
        CookieStoreWriteError: if the temporary file cannot be written or moved
    """
    tmp_path = f"{path}.tmp"
    try:
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except OSError as exc:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise CookieStoreWriteError(f"Failed to write cookie store {path}: {exc}") from exc
