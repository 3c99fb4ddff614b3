import logging
from typing import List

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from adfree_proxy.models import (
    BlockedDomainsResponse,
    BlockedPatternsResponse,
    StoredCookie,
)
from adfree_proxy.utils.exception_logging import (
    format_exception_message,
    log_exception_with_details,
)

router = APIRouter()
logger = logging.getLogger("uvicorn.error")


@router.get("/blocked-domains", response_model=BlockedDomainsResponse)
async def blocked_domains(request: Request):
    snapshot = request.app.state.blocklist.current_snapshot()
    return snapshot.to_domains_view()


@router.get("/blocked-patterns", response_model=BlockedPatternsResponse)
async def blocked_patterns(request: Request):
    snapshot = request.app.state.blocklist.current_snapshot()
    return snapshot.to_patterns_view()


@router.get("/cookies", response_model=List[StoredCookie])
async def stored_cookies(request: Request):
    try:
        return [cookie.to_dict() for cookie in request.app.state.cookie_jar.cookies()]
    except Exception as e:
        log_exception_with_details(logger, "[Cookies]", e)
        return JSONResponse(
            status_code=500,
            content={"error": f"Failed to read cookies: {format_exception_message(e)}"},
        )
