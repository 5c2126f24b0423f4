"""Tests for the Tixr API client pagination, signing and retry behaviour."""

from __future__ import annotations

import httpx
import pytest

from integrations.tixr.client import TixrApiError
from integrations.tixr.signing import build_signed_query


def _page(page: int, size: int):
    return [{"id": f"{page}-{i}"} for i in range(size)]


@pytest.mark.asyncio
async def test_pagination_stops_on_short_page(make_api_client):
    sizes = {1: 100, 2: 100, 3: 37}
    pages = []

    def handler(request: httpx.Request) -> httpx.Response:
        page = int(request.url.params["page_number"])
        pages.append(page)
        assert request.url.params["page_size"] == "100"
        return httpx.Response(200, json=_page(page, sizes[page]))

    client = make_api_client(handler, page_delay=0.25)
    events = await client.list_events()
    await client.aclose()

    assert len(events) == 237
    assert pages == [1, 2, 3]
    assert client._sleep.calls == [0.25, 0.25]


@pytest.mark.asyncio
async def test_pagination_stops_on_empty_page(make_api_client):
    def handler(request: httpx.Request) -> httpx.Response:
        page = int(request.url.params["page_number"])
        return httpx.Response(200, json={"data": _page(page, 100) if page == 1 else []})

    client = make_api_client(handler, page_delay=0)
    events = await client.list_events()
    await client.aclose()

    assert len(events) == 100


@pytest.mark.asyncio
async def test_requests_are_signed_with_cpk_timestamp_and_hash(make_api_client):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": 42, "name": "Show"})

    client = make_api_client(handler)
    event = await client.get_event(42)
    await client.aclose()

    assert event == {"id": 42, "name": "Show"}
    request = seen[0]
    assert request.url.path == "/v1/groups/77/events/42"
    params = dict(request.url.params)
    signature = params.pop("hash")
    assert params["cpk"] == "public-key-1234"
    assert params["t"].isdigit()
    assert signature == build_signed_query("/v1/groups/77/events/42", params, "s3cret").signature


@pytest.mark.asyncio
async def test_single_entity_list_payload_returns_first_item(make_api_client):
    client = make_api_client(lambda request: httpx.Response(200, json=[{"id": 1}, {"id": 2}]))
    assert await client.get_event(1) == {"id": 1}
    await client.aclose()


@pytest.mark.asyncio
async def test_request_retries_and_succeeds_on_server_errors(make_api_client):
    responses = iter(
        [
            httpx.Response(503, json={"error": "unavailable"}),
            httpx.Response(429, json={"error": "slow down"}),
            httpx.Response(200, json={"id": "u1"}),
        ]
    )
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.params["t"])
        return next(responses)

    client = make_api_client(handler)
    fan = await client.get_fan("u1")
    await client.aclose()

    assert fan == {"id": "u1"}
    assert len(calls) == 3
    assert client._sleep.calls == [1.0, 2.0]


@pytest.mark.asyncio
async def test_request_does_not_retry_non_retryable_status(make_api_client):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400, json={"code": "bad_request", "message": "nope"}, headers={"X-Request-ID": "r-1"})

    client = make_api_client(handler)
    with pytest.raises(TixrApiError) as exc:
        await client.get_fan("u1")
    await client.aclose()

    assert exc.value.status == 400
    assert exc.value.code == "bad_request"
    assert exc.value.request_id == "r-1"
    assert exc.value.transient is False
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_timeouts_are_retried_then_raised_as_transient(make_api_client):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ReadTimeout("timed out", request=request)

    client = make_api_client(handler, max_retries=3)
    with pytest.raises(TixrApiError) as exc:
        await client.get_attendance(9, "S1")
    await client.aclose()

    assert exc.value.transient is True
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_attendance_404_means_not_found(make_api_client):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/events/9/attendance/S1"
        return httpx.Response(404, json={"error": "not found"})

    client = make_api_client(handler)
    assert await client.get_attendance(9, "S1") is None
    await client.aclose()


@pytest.mark.asyncio
async def test_partial_policy_returns_pages_collected_before_failure(make_api_client):
    def handler(request: httpx.Request) -> httpx.Response:
        page = int(request.url.params["page_number"])
        if page == 1:
            return httpx.Response(200, json=_page(1, 100))
        return httpx.Response(500, json={"error": "boom"})

    client = make_api_client(handler, page_delay=0)
    fans = await client.list_event_fans(9)
    await client.aclose()

    assert len(fans) == 100


@pytest.mark.asyncio
async def test_event_orders_raise_after_linear_backoff(make_api_client):
    statuses = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["status"] == "COMPLETE"
        statuses.append(502)
        return httpx.Response(502)

    client = make_api_client(handler, max_retries=3)
    with pytest.raises(TixrApiError) as exc:
        await client.list_event_orders(9)
    await client.aclose()

    assert exc.value.status == 502
    assert len(statuses) == 3
    assert client._sleep.calls == [2.0, 4.0]


@pytest.mark.asyncio
async def test_invalid_json_raises(make_api_client):
    client = make_api_client(lambda request: httpx.Response(200, content=b"<html>"))
    with pytest.raises(TixrApiError, match="Invalid JSON"):
        await client.get_order("o1")
    await client.aclose()


def test_mask_token_hides_most_of_the_key(make_api_client):
    client = make_api_client(lambda request: httpx.Response(200))
    assert client._mask_token("public-key-1234") == "publ***1234"
    assert client._mask_token("") == "<empty>"
