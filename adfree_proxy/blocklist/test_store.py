import asyncio

import httpx
import pytest

from adfree_proxy.blocklist.store import (
    BlocklistSnapshot,
    BlocklistStore,
    parse_blocklist,
)
from adfree_proxy.errors import BlocklistFetchError

BLOCKLIST_URL = "https://lists.example.org/ads.txt"

BLOCKLIST_PAYLOAD = """# Spotify ad servers
adclick.g.doubleclick.net

audio-ak-spotify-com.akamaized.net
0.0.0.0 pubads.g.doubleclick.net
Spclient.Wg.Spotify.com  # trailing comment
"""


def make_store(mock_transport_client, handler, **kwargs):
    return BlocklistStore(
        BLOCKLIST_URL,
        static_paths=kwargs.pop("static_paths", ["/ads/"]),
        keywords=kwargs.pop("keywords", ["Tracking"]),
        client=mock_transport_client(handler),
        **kwargs,
    )


class TestParseBlocklist:
    def test_skips_comments_and_blank_lines(self):
        domains = parse_blocklist(BLOCKLIST_PAYLOAD)
        assert domains == frozenset(
            {
                "adclick.g.doubleclick.net",
                "audio-ak-spotify-com.akamaized.net",
                "pubads.g.doubleclick.net",
                "spclient.wg.spotify.com",
            }
        )

    def test_only_comments_is_an_empty_list(self):
        assert parse_blocklist("# nothing here\n\n") == frozenset()

    def test_invalid_lines_are_skipped(self):
        domains = parse_blocklist("ads.example.com\nnot a hostname at all\n<bad>\n")
        assert domains == frozenset({"ads.example.com"})

    def test_payload_without_hostnames_is_malformed(self):
        with pytest.raises(BlocklistFetchError):
            parse_blocklist("<html><body>Rate limited</body></html>")


class TestBlocklistStore:
    def test_initial_snapshot_is_empty_but_valid(self, mock_transport_client):
        store = make_store(mock_transport_client, lambda r: httpx.Response(200))
        snapshot = store.current_snapshot()

        assert snapshot.domains == frozenset()
        assert snapshot.paths == frozenset({"/ads/"})
        # Keywords are matched against a lower-cased URL
        assert snapshot.keywords == frozenset({"tracking"})
        assert snapshot.fetched_at is None

    @pytest.mark.asyncio
    async def test_refresh_publishes_new_snapshot(self, mock_transport_client):
        store = make_store(
            mock_transport_client, lambda r: httpx.Response(200, text=BLOCKLIST_PAYLOAD)
        )
        before = store.current_snapshot()

        snapshot = await store.refresh()

        assert snapshot is store.current_snapshot()
        assert snapshot is not before
        assert "pubads.g.doubleclick.net" in snapshot.domains
        assert snapshot.paths == before.paths
        assert snapshot.fetched_at is not None
        # The old snapshot was not mutated
        assert before.domains == frozenset()

    @pytest.mark.asyncio
    async def test_network_failure_keeps_previous_snapshot(self, mock_transport_client):
        responses = [httpx.Response(200, text=BLOCKLIST_PAYLOAD)]

        def handler(request):
            if responses:
                return responses.pop()
            raise httpx.ConnectError("connection refused", request=request)

        store = make_store(mock_transport_client, handler)
        errors = []
        store.on_error(errors.append)
        good = await store.refresh()

        result = await store.refresh()

        assert result is good
        assert store.current_snapshot() is good
        assert store.current_snapshot() == good
        assert isinstance(store.last_error, BlocklistFetchError)
        assert len(errors) == 1

    @pytest.mark.asyncio
    async def test_non_2xx_is_a_soft_error(self, mock_transport_client):
        store = make_store(mock_transport_client, lambda r: httpx.Response(503))
        before = store.current_snapshot()

        await store.refresh()

        assert store.current_snapshot() is before
        assert "503" in store.last_error.message

    @pytest.mark.asyncio
    async def test_malformed_payload_keeps_previous_snapshot(self, mock_transport_client):
        store = make_store(
            mock_transport_client, lambda r: httpx.Response(200, text="<html>oops</html>")
        )
        before = store.current_snapshot()

        await store.refresh()

        assert store.current_snapshot() is before
        assert store.last_error is not None

    @pytest.mark.asyncio
    async def test_successful_refresh_clears_last_error(self, mock_transport_client):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(500)
            return httpx.Response(200, text=BLOCKLIST_PAYLOAD)

        store = make_store(mock_transport_client, handler)
        await store.refresh()
        assert store.last_error is not None

        await store.refresh()
        assert store.last_error is None

    @pytest.mark.asyncio
    async def test_failing_error_handler_does_not_break_refresh(self, mock_transport_client):
        store = make_store(mock_transport_client, lambda r: httpx.Response(500))

        def broken_handler(error):
            raise RuntimeError("handler bug")

        store.on_error(broken_handler)
        snapshot = await store.refresh()

        assert snapshot is store.current_snapshot()

    @pytest.mark.asyncio
    async def test_readers_never_see_a_mixed_snapshot(self, mock_transport_client):
        old_list = "\n".join(f"old{i}.example.com" for i in range(200))
        new_list = "\n".join(f"new{i}.example.com" for i in range(200))
        payloads = [new_list, old_list]

        async def handler(request):
            await asyncio.sleep(0)
            return httpx.Response(200, text=payloads.pop())

        store = make_store(mock_transport_client, handler)
        await store.refresh()
        observed = []

        async def reader():
            for _ in range(50):
                observed.append(store.current_snapshot().domains)
                await asyncio.sleep(0)

        await asyncio.gather(reader(), store.refresh(), reader())

        for domains in observed:
            prefixes = {d[:3] for d in domains}
            assert len(prefixes) == 1
            assert len(domains) == 200


def test_views_report_consistent_counts():
    snapshot = BlocklistSnapshot(
        domains=frozenset({"b.example.com", "a.example.com"}),
        paths=frozenset({"/ads/"}),
        keywords=frozenset({"tracking"}),
    )

    view = snapshot.to_domains_view()
    assert view["count"] == len(view["domains"]) == 2
    assert view["domains"] == ["a.example.com", "b.example.com"]

    patterns = snapshot.to_patterns_view()
    assert patterns["paths"] == ["/ads/"]
    assert patterns["keywords"] == ["tracking"]
    assert patterns["lastUpdated"] is None
