import pytest
import requests

from data_sources import dashboard
from data_sources.dashboard import fetch_nodes_summary, parse_nodes_summary
from services.errors import UpstreamUnavailable


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


RAW_NODE = {
    "nodeId": "abc",
    "nodeName": "alpha",
    "client": "6.3.0",
    "peersCount": 4,
    "averagePing": 31.5,
    "uptime": 120000,
    "finalizedBlockHeight": 500,
    "consensusRunning": True,
    "consensusBakerId": 12,
    "peersList": ["def"],
}


@pytest.fixture(autouse=True)
def no_retry_delay(monkeypatch):
    monkeypatch.setattr(dashboard, "RETRY_DELAY_SECONDS", 0)


def test_parse_maps_camel_case_fields():
    nodes = parse_nodes_summary([RAW_NODE])

    node = nodes[0]
    assert node.node_id == "abc"
    assert node.average_ping == 31.5
    assert node.consensus_baker_id == 12
    assert node.peers_list == ["def"]


def test_parse_skips_malformed_and_duplicate_records():
    nodes = parse_nodes_summary([RAW_NODE, {"nodeName": "no id"}, dict(RAW_NODE, nodeName="dup")])

    assert [n.node_name for n in nodes] == ["alpha"]


def test_parse_rejects_non_list_payload():
    with pytest.raises(UpstreamUnavailable):
        parse_nodes_summary({"error": "maintenance"})


def test_fetch_returns_nodes(monkeypatch):
    monkeypatch.setattr(dashboard.requests, "get", lambda url, headers=None, timeout=None: FakeResponse([RAW_NODE]))

    nodes = fetch_nodes_summary(url="http://dashboard.test/nodesSummary")

    assert len(nodes) == 1


def test_fetch_retries_then_raises(monkeypatch):
    calls = []

    def fake_get(url, headers=None, timeout=None):
        calls.append(url)
        return FakeResponse(None, status=500)

    monkeypatch.setattr(dashboard.requests, "get", fake_get)

    with pytest.raises(UpstreamUnavailable):
        fetch_nodes_summary(url="http://dashboard.test/nodesSummary")
    assert len(calls) == dashboard.REQUEST_RETRIES


def test_fetch_with_empty_list_is_upstream_error(monkeypatch):
    monkeypatch.setattr(dashboard.requests, "get", lambda url, headers=None, timeout=None: FakeResponse([]))

    with pytest.raises(UpstreamUnavailable) as exc_info:
        fetch_nodes_summary(url="http://dashboard.test/nodesSummary")
    assert exc_info.value.message == "No nodes returned from API"
