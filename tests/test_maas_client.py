"""Tests for the MAAS REST client."""
from __future__ import annotations

import json
from typing import Any

import pytest
import requests

from maasflow.models import NodeStatus
from maasflow.providers.maas import MaasAuthError, MaasClient, MaasError, parse_api_key


class FakeResponse:
    """Minimal stand-in for :class:`requests.Response`."""

    def __init__(self, status_code: int = 200, payload: object = None, text: str | None = None):
        """Serialise *payload* as the body unless raw *text* is given."""
        self.status_code = status_code
        if text is None:
            text = "" if payload is None else json.dumps(payload)
        self.text = text
        self.content = text.encode("utf-8")

    def json(self) -> Any:
        """Decode the body."""
        return json.loads(self.text)


class FakeSession:
    """Records requests and replays queued responses."""

    def __init__(self, *responses: FakeResponse | Exception) -> None:
        """Queue the responses to return in order."""
        self.responses = list(responses)
        self.requests: list[dict[str, Any]] = []
        self.headers: dict[str, str] = {}

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        """Record the call and pop the next response."""
        self.requests.append({"method": method, "url": url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(*responses: FakeResponse | Exception) -> tuple[MaasClient, FakeSession]:
    session = FakeSession(*responses)
    client = MaasClient(
        "http://maas.example/MAAS/",
        "consumer:token:secret",
        session=session,  # type: ignore[arg-type]
        timeout=5.0,
    )
    return client, session


def test_parse_api_key() -> None:
    """The key splits into its three OAuth components."""
    assert parse_api_key("c:t:s") == ("c", "t", "s")


@pytest.mark.parametrize("key", ["", "only-one", "a:b", ":t:s", "a:b:c:d"])
def test_parse_api_key_rejects_malformed(key: str) -> None:
    """Malformed keys are rejected before any request is made."""
    with pytest.raises(MaasAuthError):
        parse_api_key(key)


def test_list_machines_decodes_nodes() -> None:
    """The node listing becomes Machine snapshots."""
    client, session = _client(
        FakeResponse(
            payload=[
                {"system_id": "abc", "hostname": "node-1", "zone": {"name": "default"},
                 "status": 4, "substatus": 4},
            ]
        )
    )

    machines = client.list_machines()

    assert [m.hostname for m in machines] == ["node-1"]
    assert machines[0].lifecycle_status is NodeStatus.READY
    request = session.requests[0]
    assert request["method"] == "GET"
    assert request["url"] == "http://maas.example/MAAS/api/1.0/nodes/"
    assert request["params"] == {"op": "list"}
    assert request["timeout"] == 5.0
    assert session.headers["Accept"] == "application/json"


def test_requests_are_signed_with_plaintext_oauth() -> None:
    """Every request carries an OAuth PLAINTEXT authorization header."""
    client, session = _client(FakeResponse(payload={"version": "1.9"}))

    assert client.check_connection() == {"version": "1.9"}

    header = session.requests[0]["headers"]["Authorization"]
    assert header.startswith('OAuth realm=""')
    assert 'oauth_signature_method="PLAINTEXT"' in header
    assert 'oauth_consumer_key="consumer"' in header
    assert 'oauth_token="token"' in header
    assert 'oauth_signature="%26secret"' in header


def test_collection_operation_posts_to_nodes() -> None:
    """Operations without a system id target the nodes collection."""
    client, session = _client(FakeResponse(payload={"system_id": "abc"}))

    client.invoke(None, "acquire", {"name": "node-1"})

    request = session.requests[0]
    assert request["method"] == "POST"
    assert request["url"].endswith("/api/1.0/nodes/")
    assert request["params"] == {"op": "acquire"}
    assert request["data"] == {"name": "node-1"}


def test_node_operation_posts_to_node() -> None:
    """Node operations target the node resource."""
    client, session = _client(FakeResponse())

    assert client.invoke("abc", "start") is None

    request = session.requests[0]
    assert request["url"].endswith("/api/1.0/nodes/abc/")
    assert request["params"] == {"op": "start"}


def test_update_is_a_put() -> None:
    """Hostname updates are sent as a PUT on the node."""
    client, session = _client(FakeResponse(payload={}))

    client.invoke("abc", "update", {"hostname": "compute-1"})

    request = session.requests[0]
    assert request["method"] == "PUT"
    assert request["data"] == {"hostname": "compute-1"}


def test_update_requires_system_id() -> None:
    """An update without a node is rejected locally."""
    client, session = _client()
    with pytest.raises(MaasError):
        client.invoke(None, "update", {"hostname": "x"})
    assert session.requests == []


def test_auth_failures_raise_auth_error() -> None:
    """401 and 403 responses are reported as credential problems."""
    client, _ = _client(FakeResponse(status_code=401, text="denied"))
    with pytest.raises(MaasAuthError):
        client.check_connection()


def test_http_errors_include_body_excerpt() -> None:
    """Other HTTP failures surface the server message."""
    client, _ = _client(FakeResponse(status_code=409, text="Node cannot be started"))
    with pytest.raises(MaasError, match="HTTP 409.*Node cannot be started"):
        client.invoke("abc", "start")


def test_transport_errors_wrapped() -> None:
    """Connection problems become MaasError."""
    client, _ = _client(requests.ConnectionError("refused"))
    with pytest.raises(MaasError, match="refused"):
        client.list_machines()


def test_listing_must_be_a_list() -> None:
    """Unexpected listing payloads are rejected."""
    client, _ = _client(FakeResponse(payload={"nodes": []}))
    with pytest.raises(MaasError, match="expected a list"):
        client.list_machines()


def test_undecodable_node_rejected() -> None:
    """Entries without identifiers fail the whole listing."""
    client, _ = _client(FakeResponse(payload=[{"hostname": "x"}]))
    with pytest.raises(MaasError, match="system_id"):
        client.list_machines()


def test_non_json_body_returned_as_text() -> None:
    """Plain-text responses are passed through."""
    client, _ = _client(FakeResponse(text="OK"))
    assert client.invoke("abc", "commission") == "OK"
