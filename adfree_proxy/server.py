import logging
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import urlparse

import httpx
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from adfree_proxy.app_proxy.dispatcher import ProxyDispatcher
from adfree_proxy.app_proxy.route import router as proxy_router, websocket_proxy
from adfree_proxy.blocklist import (
    BlocklistRefresher,
    BlocklistStore,
    RequestFilter,
)
from adfree_proxy.cookies import CookieJar
from adfree_proxy.cors import cors_middleware
from adfree_proxy.metrics import ProxyMetrics
from adfree_proxy.rewrite import ResponseRewriter
from adfree_proxy.routes import router
from adfree_proxy.tracing import configure_tracing
from adfree_proxy.vars import ProxyConfig

logger = logging.getLogger("uvicorn.error")


def create_app(
    config: Optional[ProxyConfig] = None,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    blocklist_client: Optional[httpx.AsyncClient] = None,
    refresh_blocklist: bool = True,
) -> FastAPI:
    """
    Build the proxy app with its own blocklist store, cookie jar and upstream client.

    ``http_client`` and ``blocklist_client`` are owned by the caller when given;
    otherwise the app creates and closes its own.
    """
    config = config or ProxyConfig()
    upstream_host = (urlparse(config.upstream_url).hostname or "").lower()

    metrics = ProxyMetrics()
    metrics.app_info.info({"app_name": config.service_name, "upstream": config.upstream_url})

    blocklist = BlocklistStore(
        config.blocklist_url,
        static_paths=config.static_block_paths,
        keywords=config.blocked_keywords,
        client=blocklist_client,
        fetch_timeout=config.blocklist_fetch_timeout,
    )
    blocklist.on_error(lambda _error: metrics.blocklist_refresh_failures.inc())
    metrics.blocklist_domains.set_function(
        lambda: len(blocklist.current_snapshot().domains)
    )
    refresher = BlocklistRefresher(
        blocklist,
        config.blocklist_refresh_interval,
        logger,
        startup_timeout=config.blocklist_startup_timeout,
    )
    cookie_jar = CookieJar(config.cookie_store_path)
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(
        timeout=httpx.Timeout(config.proxy_timeout),
        follow_redirects=False,  # Handle redirects manually for rewriting
    )
    dispatcher = ProxyDispatcher(
        config,
        RequestFilter(blocklist),
        cookie_jar,
        ResponseRewriter(max_buffer_bytes=config.rewrite_max_bytes),
        client,
        metrics=metrics,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cookie_jar.load(default_domain=upstream_host)
        if refresh_blocklist:
            await refresher.start()
        logger.info(
            f"[Server] Proxying {config.upstream_url}; blocklist refresh every "
            f"{config.blocklist_refresh_interval}s"
        )
        try:
            yield
        finally:
            await refresher.stop()
            if owns_client:
                await client.aclose()

    app = FastAPI(title=config.service_name, lifespan=lifespan)
    app.state.config = config
    app.state.blocklist = blocklist
    app.state.refresher = refresher
    app.state.cookie_jar = cookie_jar
    app.state.dispatcher = dispatcher
    app.state.metrics = metrics

    app.middleware("http")(cors_middleware)
    app.include_router(router)
    Instrumentator(registry=metrics.registry).instrument(app).expose(app)
    app.add_api_websocket_route(config.websocket_path, websocket_proxy)
    # The catch-all must stay last
    app.include_router(proxy_router)
    configure_tracing(app, config.service_name)
    return app
