import pytest

from adfree_proxy.blocklist.filter import (
    BlockReason,
    FilterDecision,
    RequestFilter,
    evaluate,
    normalize_host,
)
from adfree_proxy.blocklist.store import BlocklistSnapshot, BlocklistStore

SNAPSHOT = BlocklistSnapshot(
    domains=frozenset({"ads.example.com", "pubads.g.doubleclick.net"}),
    paths=frozenset({"/ad-logic/", "/gabo-receiver-service/"}),
    keywords=frozenset({"advertising", "analytics"}),
)


class TestNormalizeHost:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("ads.example.com", "ads.example.com"),
            ("ADS.Example.COM", "ads.example.com"),
            ("ads.example.com:443", "ads.example.com"),
            ("ads.example.com.", "ads.example.com"),
            ("[::1]:5555", "[::1]"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_host(raw) == expected


class TestEvaluate:
    @pytest.mark.parametrize("host", sorted(SNAPSHOT.domains))
    @pytest.mark.parametrize("path", ["/", "/index.html", "/api/v1/user"])
    def test_every_listed_host_is_blocked(self, host, path):
        decision = evaluate(SNAPSHOT, host, path, path)
        assert decision == FilterDecision.block(BlockReason.DOMAIN_MATCH, host)

    def test_host_with_port_is_blocked(self):
        decision = evaluate(SNAPSHOT, "ads.example.com:8443", "/", "/")
        assert decision.reason == BlockReason.DOMAIN_MATCH

    @pytest.mark.parametrize("host", ["localhost:5555", "open.spotify.com", None])
    def test_path_match_is_independent_of_host(self, host):
        decision = evaluate(SNAPSHOT, host, "/ad-logic/state", "/ad-logic/state?x=1")
        assert decision.reason == BlockReason.PATH_MATCH
        assert decision.matched == "/ad-logic/"

    def test_path_match_checks_query_string(self):
        decision = evaluate(
            SNAPSHOT, "localhost", "/redirect", "/redirect?to=/gabo-receiver-service/v3"
        )
        assert decision.reason == BlockReason.PATH_MATCH

    def test_path_match_is_case_sensitive(self):
        decision = evaluate(SNAPSHOT, "localhost", "/AD-LOGIC/state", "/AD-LOGIC/state")
        assert decision.allowed

    def test_keyword_match_is_case_insensitive(self):
        decision = evaluate(SNAPSHOT, "localhost", "/x", "/x?source=AdVertising")
        assert decision.reason == BlockReason.KEYWORD_MATCH
        assert decision.matched == "advertising"

    @pytest.mark.parametrize(
        "raw_url", ["/api/ad/slot", "/api/v2/promo/banner", "/v1/api/sponsored/list"]
    )
    def test_api_ad_patterns(self, raw_url):
        decision = evaluate(SNAPSHOT, "localhost", raw_url, raw_url)
        assert decision.reason == BlockReason.API_PATTERN_MATCH

    def test_ad_marker_without_api_is_allowed(self):
        decision = evaluate(SNAPSHOT, "localhost", "/promo/banner", "/promo/banner")
        assert decision.allowed

    def test_first_match_wins(self):
        # Matches every rule; the domain check runs first
        raw_url = "/api/ad/ad-logic/?advertising"
        decision = evaluate(SNAPSHOT, "ads.example.com", raw_url, raw_url)
        assert decision.reason == BlockReason.DOMAIN_MATCH

        decision = evaluate(SNAPSHOT, "localhost", "/ad-logic/api/ad/", "/ad-logic/api/ad/?analytics")
        assert decision.reason == BlockReason.PATH_MATCH

        decision = evaluate(SNAPSHOT, "localhost", "/api/ad/", "/api/ad/?analytics")
        assert decision.reason == BlockReason.KEYWORD_MATCH

    def test_ordinary_request_is_allowed(self):
        decision = evaluate(SNAPSHOT, "localhost:5555", "/album/42", "/album/42?si=abc")
        assert decision == FilterDecision.allow()
        assert decision.reason is None
        assert not decision.blocked

    def test_empty_snapshot_allows_everything(self):
        decision = evaluate(BlocklistSnapshot(), "ads.example.com", "/ads/", "/ads/")
        assert decision.allowed


def test_block_messages():
    assert FilterDecision.block(BlockReason.DOMAIN_MATCH, "x").message == "Ad blocked"
    assert FilterDecision.block(BlockReason.PATH_MATCH, "x").message == "Ad content blocked"


def test_request_filter_reads_latest_snapshot():
    store = BlocklistStore("https://lists.example.org/ads.txt")
    request_filter = RequestFilter(store)
    assert request_filter.evaluate("ads.example.com", "/", "/").allowed

    # Simulate a published refresh
    store._snapshot = SNAPSHOT

    decision = request_filter.evaluate("ads.example.com", "/", "/")
    assert decision.reason == BlockReason.DOMAIN_MATCH
