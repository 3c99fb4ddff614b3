"""
Response body rewriting.

HTML ad stripping is best-effort text substitution, not markup parsing:
unmatched or malformed markup is left as it is. Every transform fails open
and hands back the original bytes when anything goes wrong.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional, Sequence
from urllib.parse import urlsplit

from opentelemetry import trace

from adfree_proxy.errors import ContentRewriteError
from adfree_proxy.utils.exception_logging import format_exception_message

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

AD_DIV_PATTERN = re.compile(
    r"<div\b[^>]*\bclass\s*=\s*([\"'])[^\"']*\bad-[^\"']*\1[^>]*>.*?</div\s*>",
    re.IGNORECASE | re.DOTALL,
)
AD_SCRIPT_PATTERN = re.compile(
    r"<script\b[^>]*\bsrc\s*=\s*([\"'])[^\"']*\bads[^\"']*\1[^>]*>.*?</script\s*>",
    re.IGNORECASE | re.DOTALL,
)
AD_IFRAME_PATTERN = re.compile(
    r"<iframe\b[^>]*\bsrc\s*=\s*([\"'])[^\"']*\bads[^\"']*\1[^>]*?(?:/>|>.*?</iframe\s*>)",
    re.IGNORECASE | re.DOTALL,
)
AD_FRAGMENT_PATTERNS = (AD_DIV_PATTERN, AD_SCRIPT_PATTERN, AD_IFRAME_PATTERN)
# Removing one fragment can expose another; stop after this many passes
MAX_STRIP_PASSES = 8

MANIFEST_URL_FIELDS = ("start_url", "scope")
MANIFEST_EXTENSIONS = (".json", ".webmanifest")


@dataclass(frozen=True)
class RewriteContext:
    # Request path plus query string as the client sent it
    raw_url: str
    # Scheme and host the client used to reach the proxy
    proxy_base: str
    manifest_marker: str = "manifest"
    # host[:port] of the upstream; only its absolute URLs are rebased
    upstream_netloc: str = ""


@dataclass(frozen=True)
class RewriteRule:
    name: str
    applies: Callable[[str, RewriteContext], bool]
    transform: Callable[[bytes, str, RewriteContext], bytes]


def _charset(content_type: str) -> str:
    for param in content_type.split(";")[1:]:
        key, _, value = param.partition("=")
        if key.strip().lower() == "charset" and value.strip():
            return value.strip().strip("\"'")
    return "utf-8"


def strip_ad_fragments(html: str) -> str:
    for _ in range(MAX_STRIP_PASSES):
        stripped = html
        for pattern in AD_FRAGMENT_PATTERNS:
            stripped = pattern.sub("", stripped)
        if stripped == html:
            break
        html = stripped
    return html


def rewrite_html(body: bytes, content_type: str, context: RewriteContext) -> bytes:
    charset = _charset(content_type)
    try:
        text = body.decode(charset)
    except (UnicodeDecodeError, LookupError) as exc:
        raise ContentRewriteError(f"Cannot decode HTML as {charset}: {exc}") from exc
    stripped = strip_ad_fragments(text)
    if stripped == text:
        return body
    return stripped.encode(charset)


def _rebase_url(value: str, proxy_base: str, upstream_netloc: str) -> str:
    parts = urlsplit(value)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return value
    if parts.netloc.lower() != upstream_netloc.lower():
        return value
    rebased = proxy_base + (parts.path or "/")
    if parts.query:
        rebased += f"?{parts.query}"
    if parts.fragment:
        rebased += f"#{parts.fragment}"
    return rebased


def rewrite_manifest(body: bytes, content_type: str, context: RewriteContext) -> bytes:
    """Point the manifest's upstream-absolute start_url/scope at the proxy."""
    try:
        manifest = json.loads(body)
    except (ValueError, UnicodeDecodeError) as exc:
        logger.error(f"[Rewrite] Manifest at {context.raw_url} is not valid JSON: {exc}")
        return body
    if not isinstance(manifest, dict):
        return body

    changed = False
    for field_name in MANIFEST_URL_FIELDS:
        value = manifest.get(field_name)
        if isinstance(value, str):
            rebased = _rebase_url(value, context.proxy_base, context.upstream_netloc)
            if rebased != value:
                manifest[field_name] = rebased
                changed = True
    if not changed:
        return body
    return json.dumps(manifest, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _is_manifest(content_type: str, context: RewriteContext) -> bool:
    if not context.manifest_marker or context.manifest_marker not in context.raw_url:
        return False
    content_type = content_type.lower()
    if "text/html" in content_type:
        return False
    path = context.raw_url.split("?", 1)[0].lower()
    return "json" in content_type or path.endswith(MANIFEST_EXTENSIONS)


def _is_html(content_type: str, context: RewriteContext) -> bool:
    return "text/html" in content_type.lower()


def default_rules() -> list[RewriteRule]:
    return [
        RewriteRule("manifest", _is_manifest, rewrite_manifest),
        RewriteRule("html", _is_html, rewrite_html),
    ]


class ResponseRewriter:
    """Applies the first matching rule; responses no rule claims stream untouched."""

    def __init__(
        self,
        rules: Optional[Sequence[RewriteRule]] = None,
        max_buffer_bytes: int = 5 * 1024 * 1024,
    ):
        self._rules = list(rules) if rules is not None else default_rules()
        self._max_buffer_bytes = max_buffer_bytes

    def select(self, content_type: str, context: RewriteContext) -> Optional[RewriteRule]:
        content_type = content_type or ""
        for rule in self._rules:
            try:
                if rule.applies(content_type, context):
                    return rule
            except Exception as exc:
                logger.warning(f"[Rewrite] Rule {rule.name} predicate failed: {exc}")
        return None

    def rewrite(self, content_type: str, body: bytes, context: RewriteContext) -> bytes:
        rule = self.select(content_type, context)
        if rule is None:
            return body
        return self._apply(rule, content_type or "", body, context)

    async def stream(
        self,
        content_type: str,
        chunks: AsyncIterator[bytes],
        context: RewriteContext,
    ) -> AsyncIterator[bytes]:
        """
        Rewrite a streamed body.

        Only bodies with a matching rule are buffered, and only up to
        ``max_buffer_bytes``; past that the buffered prefix and the rest of
        the body are passed through unmodified.
        """
        rule = self.select(content_type, context)
        if rule is None:
            async for chunk in chunks:
                yield chunk
            return

        buffer = bytearray()
        async for chunk in chunks:
            buffer.extend(chunk)
            if len(buffer) > self._max_buffer_bytes:
                logger.warning(
                    f"[Rewrite] {context.raw_url} exceeds {self._max_buffer_bytes} bytes, "
                    "passing through unmodified"
                )
                yield bytes(buffer)
                async for rest in chunks:
                    yield rest
                return
        yield self._apply(rule, content_type or "", bytes(buffer), context)

    def _apply(
        self, rule: RewriteRule, content_type: str, body: bytes, context: RewriteContext
    ) -> bytes:
        with tracer.start_as_current_span("response_rewrite") as span:
            span.set_attribute("rewrite.rule", rule.name)
            span.set_attribute("rewrite.input_bytes", len(body))
            try:
                result = rule.transform(body, content_type, context)
            except Exception as exc:
                error = exc if isinstance(exc, ContentRewriteError) else ContentRewriteError(
                    format_exception_message(exc)
                )
                span.set_attribute("rewrite.error", error.message)
                logger.warning(
                    f"[Rewrite] {rule.name} rewrite of {context.raw_url} failed, "
                    f"returning original body: {error.message}"
                )
                return body
            span.set_attribute("rewrite.output_bytes", len(result))
            return result
