import json

import httpx
import pytest

from cdc_replicator.errors import UpstreamFetchError
from cdc_replicator.source_api import SourceApiClient

pytestmark = pytest.mark.unit


def _client(handler):
    return SourceApiClient(http_client=httpx.Client(transport=httpx.MockTransport(handler)))


def test_get_json_passes_params_headers_and_auth():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["trace"] = request.headers.get("X-Trace")
        return httpx.Response(200, json={"ok": True})

    body = _client(handler).get_json(
        "https://source.test/items",
        params={"page": "2"},
        headers={"X-Trace": "t1"},
        auth=("key", "secret"),
    )

    assert body == {"ok": True}
    assert seen["url"] == "https://source.test/items?page=2"
    assert seen["auth"].startswith("Basic ")
    assert seen["trace"] == "t1"


@pytest.mark.parametrize("status", [400, 401, 404, 429, 500, 503])
def test_non_success_status_raises_with_status(status):
    client = _client(lambda request: httpx.Response(status))

    with pytest.raises(UpstreamFetchError) as excinfo:
        client.get_json("https://source.test/items")

    assert excinfo.value.status == status
    assert excinfo.value.url == "https://source.test/items"


def test_timeout_raises_upstream_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(UpstreamFetchError, match="timed out") as excinfo:
        _client(handler).get_json("https://source.test/slow")
    assert excinfo.value.status is None


def test_transport_error_raises_upstream_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UpstreamFetchError, match="connection refused"):
        _client(handler).get_json("https://source.test/down")


def test_non_json_body_raises_upstream_error():
    client = _client(lambda request: httpx.Response(200, text="<html>"))

    with pytest.raises(UpstreamFetchError, match="non-JSON"):
        client.get_json("https://source.test/html")


def test_request_posts_json_body():
    captured = []

    def handler(request):
        captured.append(request.read())
        return httpx.Response(201)

    response = _client(handler).request("POST", "https://source.test/hook", json={"a": 1})

    assert response.status_code == 201
    assert [json.loads(body) for body in captured] == [{"a": 1}]


def test_injected_client_is_not_closed():
    http_client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200, json=[])))
    with SourceApiClient(http_client=http_client) as client:
        client.get_json("https://source.test/")

    assert not http_client.is_closed
