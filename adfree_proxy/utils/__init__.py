import hashlib
from typing import Optional


def mask_cookie_header(header: Optional[str]) -> str:
    """Render a Cookie header for logs with every value masked."""
    if not header:
        return "<empty>"
    masked = []
    for pair in header.split(";"):
        name, sep, value = pair.strip().partition("=")
        if not name:
            continue
        masked.append(f"{name}={value[:4]}****" if sep else name)
    return "; ".join(masked)


def value_fingerprint(value: Optional[str]) -> str:
    """Provide a stable, low-leak identifier for cookie values in logs."""
    if not value:
        return "<empty>"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]
    return f"len={len(value)} sha256={digest}"
