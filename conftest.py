# Ensure tests import the package from this checkout rather than an
# installed copy.
import inspect
import os
import sys

import httpx
import pytest

SERVICE_ROOT = os.path.dirname(__file__)
if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)


class NetworkStream(httpx.AsyncByteStream):
    """Unread response body, as a real connection hands it to the client."""

    def __init__(self, body):
        self._body = body

    async def __aiter__(self):
        async for chunk in self._body:
            yield chunk


def as_network_response(response: httpx.Response) -> httpx.Response:
    # Responses built with content= are read on construction; the proxy
    # relays raw upstream bytes, which needs an unread stream
    return httpx.Response(
        response.status_code,
        headers=response.headers.multi_items(),
        stream=NetworkStream(response.stream),
    )


@pytest.fixture
def cookie_store_path(tmp_path):
    """Location for a durable cookie store inside the test's temp dir."""
    return str(tmp_path / "cookies.txt")


@pytest.fixture
def mock_transport_client():
    """Build an AsyncClient whose requests are answered by ``handler``."""

    def _create(handler):
        def network_handler(request):
            response = handler(request)
            if inspect.isawaitable(response):
                # MockTransport awaits coroutine results from async handlers
                async def wrap():
                    return as_network_response(await response)

                return wrap()
            return as_network_response(response)

        return httpx.AsyncClient(transport=httpx.MockTransport(network_handler))

    return _create
