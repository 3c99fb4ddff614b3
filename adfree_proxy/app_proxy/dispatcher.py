import asyncio
import contextlib
import http.cookiejar
import logging
from typing import AsyncIterator, Dict, Optional
from urllib.parse import urljoin, urlparse

import aiohttp
import httpx
from fastapi import HTTPException, Request, WebSocket
from fastapi.responses import JSONResponse, Response, StreamingResponse
from opentelemetry import trace
from starlette.background import BackgroundTask
from starlette.websockets import WebSocketState

from adfree_proxy.blocklist.filter import FilterDecision, RequestFilter
from adfree_proxy.cookies.jar import CookieJar
from adfree_proxy.errors import UpstreamConnectError
from adfree_proxy.metrics import ProxyMetrics
from adfree_proxy.rewrite.rewriter import ResponseRewriter, RewriteContext
from adfree_proxy.utils import mask_cookie_header
from adfree_proxy.utils.exception_logging import log_exception_with_details
from adfree_proxy.utils.traced_requests import traced_request
from adfree_proxy.vars import ProxyConfig

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Headers that would reveal the proxy to the upstream
FORWARDED_HEADERS = {
    "forwarded",
    "x-forwarded-for",
    "x-forwarded-host",
    "x-forwarded-proto",
    "x-forwarded-prefix",
    "x-real-ip",
    "x-scheme",
    "via",
}

# Recomputed by httpx for the upstream connection
CLIENT_ONLY_HEADERS = {"host", "content-length", "cookie", "accept-encoding"}

# Encodings httpx can decode without optional packages; rewritten bodies
# are always decoded before transformation
UPSTREAM_ACCEPT_ENCODING = "gzip, deflate"

WS_CLIENT_ONLY_HEADERS = {
    "host",
    "cookie",
    "origin",
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
}

# WebSocket close codes
WS_POLICY_VIOLATION = 1008
WS_INTERNAL_ERROR = 1011


class RejectAllCookiePolicy(http.cookiejar.DefaultCookiePolicy):
    """Keeps httpx from storing upstream cookies; CookieJar is the only store."""

    def set_ok(self, cookie, request):
        return False


def raw_url_of(request) -> str:
    """Path plus query string, as the client sent it."""
    query = str(request.url.query)
    return f"{request.url.path}?{query}" if query else request.url.path


def merge_cookie_headers(jar_header: str, client_header: Optional[str]) -> str:
    """
    Combine jar cookies with the client's own.

    The jar is canonical: a client cookie is only kept when the jar holds no
    cookie of the same name.
    """
    if not client_header:
        return jar_header
    jar_names = {
        pair.split("=", 1)[0].strip() for pair in jar_header.split(";") if pair.strip()
    }
    extra = [
        pair.strip()
        for pair in client_header.split(";")
        if pair.strip() and pair.split("=", 1)[0].strip() not in jar_names
    ]
    return "; ".join(p for p in [jar_header, *extra] if p)


class ProxyDispatcher:
    """
    Runs one request through the mediation pipeline:
    filter, cookie injection, upstream dispatch, cookie capture, rewrite.
    """

    def __init__(
        self,
        config: ProxyConfig,
        request_filter: RequestFilter,
        cookie_jar: CookieJar,
        rewriter: ResponseRewriter,
        client: httpx.AsyncClient,
        metrics: Optional[ProxyMetrics] = None,
    ):
        self.config = config
        self._filter = request_filter
        self._jar = cookie_jar
        self._rewriter = rewriter
        self._client = client
        # httpx keeps a raw stdlib jar as-is, policy included
        self._client.cookies = http.cookiejar.CookieJar(policy=RejectAllCookiePolicy())
        self._metrics = metrics
        upstream = urlparse(config.upstream_url)
        self.upstream_origin = f"{upstream.scheme}://{upstream.netloc}"
        self.upstream_netloc = upstream.netloc
        self.upstream_host = (upstream.hostname or "").lower()

    def target_url(self, request: Request) -> str:
        """Construct the upstream URL from the request path."""
        path = request.url.path
        if not path.startswith("/"):
            path = "/" + path
        query_string = str(request.url.query)
        if query_string:
            path = f"{path}?{query_string}"
        return urljoin(self.config.upstream_url + "/", path.lstrip("/"))

    def proxy_base(self, request) -> str:
        if self.config.public_url:
            return self.config.public_url
        host = request.headers.get("host") or (
            request.client.host if request.client else "localhost"
        )
        return f"{request.url.scheme}://{host}"

    def prepare_headers(self, request: Request) -> Dict[str, str]:
        """
        Prepare headers for the upstream.

        Hop-by-hop and proxy-revealing headers are dropped and the request is
        made to look like it came from a browser on the upstream origin.
        """
        headers = {}
        for name, value in request.headers.items():
            name_lower = name.lower()
            if (
                name_lower in HOP_BY_HOP_HEADERS
                or name_lower in FORWARDED_HEADERS
                or name_lower in CLIENT_ONLY_HEADERS
            ):
                continue
            headers[name_lower] = value

        headers.setdefault("user-agent", self.config.user_agent)
        headers.setdefault("accept-language", "en-US,en;q=0.9")
        headers["accept-encoding"] = UPSTREAM_ACCEPT_ENCODING
        if "origin" in headers:
            headers["origin"] = self.upstream_origin
        if "referer" in headers:
            headers["referer"] = self._to_upstream(headers["referer"])

        cookie_header = merge_cookie_headers(
            self._jar.get(self.upstream_host, request.url.path),
            request.headers.get("cookie"),
        )
        if cookie_header:
            headers["cookie"] = cookie_header
        return headers

    def rewrite_location_header(self, location: str, request) -> str:
        """Point redirects at the upstream back through the proxy."""
        if not location:
            return location
        parsed = urlparse(location)
        if parsed.netloc and parsed.netloc.lower() == self.upstream_netloc.lower():
            query = f"?{parsed.query}" if parsed.query else ""
            fragment = f"#{parsed.fragment}" if parsed.fragment else ""
            return f"{self.proxy_base(request)}{parsed.path or '/'}{query}{fragment}"
        return location

    def response_headers(
        self, response: httpx.Response, request, rewritten: bool
    ) -> list[tuple[str, str]]:
        """Client-facing headers: never any Set-Cookie, the jar keeps those."""
        headers = []
        for name, value in response.headers.multi_items():
            name_lower = name.lower()
            if name_lower in HOP_BY_HOP_HEADERS or name_lower == "set-cookie":
                continue
            if rewritten and name_lower in ("content-length", "content-encoding"):
                continue
            if name_lower == "location":
                value = self.rewrite_location_header(value, request)
            headers.append((name_lower, value))
        return headers

    def blocked_response(self, decision: FilterDecision, raw_url: str) -> Response:
        logger.info(
            f"[Proxy] Blocked {raw_url} ({decision.reason.value}: {decision.matched})"
        )
        if self._metrics:
            self._metrics.blocked_requests.labels(reason=decision.reason.value).inc()
        return JSONResponse(
            status_code=403,
            content={"detail": decision.message, "reason": decision.reason.value},
        )

    async def dispatch(self, request: Request) -> Response:
        raw_url = raw_url_of(request)
        host = request.headers.get("host")
        with traced_request(
            tracer,
            operation="proxy_request",
            method=request.method,
            raw_url=raw_url,
            host=host,
            start_message=f"[Proxy] {request.method} {raw_url}",
        ) as span:
            decision = self._filter.evaluate(host, request.url.path, raw_url)
            span.set_attribute(
                "proxy.decision", decision.reason.value if decision.blocked else "Allow"
            )
            if decision.blocked:
                return self.blocked_response(decision, raw_url)

            target_url = self.target_url(request)
            span.set_attribute("proxy.target_url", target_url)
            headers = self.prepare_headers(request)
            logger.debug(
                f"[Proxy] {request.method} {raw_url} -> {target_url} "
                f"cookies={mask_cookie_header(headers.get('cookie'))}"
            )
            body = await request.body()

            try:
                upstream_response = await self._send(request.method, target_url, headers, body)
            except UpstreamConnectError as exc:
                span.set_attribute("proxy.error", exc.kind)
                if self._metrics:
                    self._metrics.upstream_errors.labels(kind=exc.kind).inc()
                raise HTTPException(status_code=exc.status_code, detail=exc.message)

            span.set_attribute("proxy.status_code", upstream_response.status_code)
            try:
                await self._store_cookies(upstream_response)
                return self._build_response(upstream_response, request, raw_url)
            except BaseException:
                await upstream_response.aclose()
                raise

    async def _send(
        self, method: str, url: str, headers: Dict[str, str], body: bytes
    ) -> httpx.Response:
        upstream_request = self._client.build_request(
            method, url, headers=headers, content=body
        )
        try:
            return await self._client.send(upstream_request, stream=True)
        except httpx.TimeoutException as e:
            logger.error(f"[Proxy] Upstream timeout for {url}: {e}")
            raise UpstreamConnectError("Bad gateway - upstream timed out", kind="timeout")
        except httpx.ConnectError as e:
            logger.error(f"[Proxy] Failed to connect to upstream {url}: {e}")
            raise UpstreamConnectError(
                "Bad gateway - cannot connect to upstream", kind="connect"
            )
        except httpx.HTTPError as e:
            log_exception_with_details(logger, f"[Proxy] Upstream error for {url}", e)
            raise UpstreamConnectError(f"Bad gateway: {e}", kind="transport")

    async def _store_cookies(self, response: httpx.Response) -> None:
        set_cookies = response.headers.get_list("set-cookie")
        if not set_cookies:
            return
        try:
            await asyncio.to_thread(self._jar.set, self.upstream_host, set_cookies)
        except Exception as exc:
            log_exception_with_details(logger, "[CookieJar] Failed to store cookies", exc)

    def _build_response(
        self, upstream_response: httpx.Response, request: Request, raw_url: str
    ) -> StreamingResponse:
        content_type = upstream_response.headers.get("content-type", "")
        context = RewriteContext(
            raw_url=raw_url,
            proxy_base=self.proxy_base(request),
            manifest_marker=self.config.manifest_marker,
            upstream_netloc=self.upstream_netloc,
        )
        rule = None
        if request.method != "HEAD" and upstream_response.status_code not in (204, 304):
            rule = self._rewriter.select(content_type, context)
        if rule is not None:
            if self._metrics:
                self._metrics.rewritten_responses.labels(rule=rule.name).inc()
            chunks = self._rewriter.stream(
                content_type, upstream_response.aiter_bytes(), context
            )
        else:
            # Raw bytes keep the upstream Content-Encoding valid
            chunks = upstream_response.aiter_raw()

        response = StreamingResponse(
            self._relay(upstream_response, chunks, raw_url),
            status_code=upstream_response.status_code,
            background=BackgroundTask(upstream_response.aclose),
        )
        for name, value in self.response_headers(
            upstream_response, request, rewritten=rule is not None
        ):
            response.headers.append(name, value)
        return response

    async def _relay(
        self, upstream_response: httpx.Response, chunks: AsyncIterator[bytes], raw_url: str
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in chunks:
                yield chunk
        except httpx.HTTPError as exc:
            logger.warning(f"[Proxy] Upstream stream for {raw_url} aborted: {exc}")
            raise
        finally:
            # Also reached when the client disconnects mid-stream
            await upstream_response.aclose()

    def _to_upstream(self, url: str) -> str:
        parsed = urlparse(url)
        if not parsed.netloc:
            return url
        query = f"?{parsed.query}" if parsed.query else ""
        return f"{self.upstream_origin}{parsed.path or '/'}{query}"

    def websocket_target_url(self, websocket: WebSocket) -> str:
        query = str(websocket.url.query)
        url = self.config.upstream_ws_url
        return f"{url}?{query}" if query else url

    def websocket_headers(self, websocket: WebSocket) -> Dict[str, str]:
        headers = {}
        for name, value in websocket.headers.items():
            name_lower = name.lower()
            if (
                name_lower in HOP_BY_HOP_HEADERS
                or name_lower in FORWARDED_HEADERS
                or name_lower in WS_CLIENT_ONLY_HEADERS
            ):
                continue
            headers[name_lower] = value
        headers.setdefault("user-agent", self.config.user_agent)
        headers["origin"] = self.upstream_origin
        ws_host = (urlparse(self.config.upstream_ws_url).hostname or self.upstream_host).lower()
        cookie_header = merge_cookie_headers(
            self._jar.get(ws_host), websocket.headers.get("cookie")
        )
        if cookie_header:
            headers["cookie"] = cookie_header
        return headers

    async def relay_websocket(self, websocket: WebSocket) -> None:
        """Filter an upgrade, then relay frames both ways until either side closes."""
        raw_url = raw_url_of(websocket)
        host = websocket.headers.get("host")
        decision = self._filter.evaluate(host, websocket.url.path, raw_url)
        if decision.blocked:
            logger.info(
                f"[Proxy] Blocked WebSocket {raw_url} ({decision.reason.value}: {decision.matched})"
            )
            if self._metrics:
                self._metrics.blocked_requests.labels(reason=decision.reason.value).inc()
            await websocket.close(code=WS_POLICY_VIOLATION, reason=decision.message)
            return

        target_url = self.websocket_target_url(websocket)
        protocol_header = websocket.headers.get("sec-websocket-protocol", "")
        protocols = tuple(p.strip() for p in protocol_header.split(",") if p.strip())

        with tracer.start_as_current_span("proxy_websocket") as span:
            span.set_attribute("proxy.target_url", target_url)
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None)
            ) as session:
                try:
                    upstream = await asyncio.wait_for(
                        session.ws_connect(
                            target_url,
                            headers=self.websocket_headers(websocket),
                            protocols=protocols,
                        ),
                        timeout=self.config.proxy_timeout,
                    )
                except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                    logger.error(f"[Proxy] WebSocket upstream {target_url} failed: {exc}")
                    span.set_attribute("proxy.error", type(exc).__name__)
                    if self._metrics:
                        self._metrics.upstream_errors.labels(kind="websocket").inc()
                    await websocket.close(code=WS_INTERNAL_ERROR, reason="Bad gateway")
                    return

                async with upstream:
                    await websocket.accept(subprotocol=upstream.protocol)
                    logger.info(f"[Proxy] WebSocket relay open {raw_url} -> {target_url}")
                    await relay_frames(websocket, upstream)
                    logger.info(f"[Proxy] WebSocket relay closed {raw_url}")


async def pump_client_to_upstream(websocket: WebSocket, upstream) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
        if message.get("text") is not None:
            await upstream.send_str(message["text"])
        elif message.get("bytes") is not None:
            await upstream.send_bytes(message["bytes"])


async def pump_upstream_to_client(upstream, websocket: WebSocket) -> None:
    async for message in upstream:
        if message.type == aiohttp.WSMsgType.TEXT:
            await websocket.send_text(message.data)
        elif message.type == aiohttp.WSMsgType.BINARY:
            await websocket.send_bytes(message.data)
        elif message.type == aiohttp.WSMsgType.ERROR:
            logger.warning(f"[Proxy] WebSocket upstream error: {message.data}")
            return


async def relay_frames(websocket: WebSocket, upstream) -> None:
    """Run both pumps; when one side finishes, stop the other and close both."""
    tasks = {
        asyncio.create_task(pump_client_to_upstream(websocket, upstream)),
        asyncio.create_task(pump_upstream_to_client(upstream, websocket)),
    }
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
    for task in done:
        if task.cancelled():
            continue
        exc = task.exception()
        if exc is not None:
            log_exception_with_details(
                logger, "[Proxy] WebSocket relay", exc, level=logging.WARNING
            )

    if not upstream.closed:
        await upstream.close()
    if (
        websocket.application_state == WebSocketState.CONNECTED
        and websocket.client_state == WebSocketState.CONNECTED
    ):
        with contextlib.suppress(RuntimeError):
            await websocket.close()
