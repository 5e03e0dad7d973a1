import asyncio
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from hero_loops.errors import (
    FetchCancelledError,
    FetchError,
    FetchUnavailableError,
    InvalidPaginationError,
)
from hero_loops.models.infrastructure import ActivityType, GISClassification
from hero_loops.models.route import ProgressPhase
from hero_loops.services.gis_client import (
    fetch_remote_feature_service,
    fetch_remote_feature_service_sync,
    normalize_feature_service_url,
)


LAYER_URL = "https://gis.example.org/arcgis/rest/services/Bike/FeatureServer/0"


def esri_feature(at, i):
    return {
        "attributes": {"OBJECTID": i, "highway": "cycleway"},
        "geometry": {"paths": [[at(0, i * 50), at(100, i * 50)]]},
    }


def page_server(pages, calls=None):
    """MockTransport handler serving pages by resultOffset / resultRecordCount."""
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        offset = int(request.url.params["resultOffset"])
        size = int(request.url.params["resultRecordCount"])
        index = offset // size
        return httpx.Response(200, json=pages[index])
    return handler


def run_fetch(handler, on_progress=None, **kwargs):
    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await fetch_remote_feature_service(
                LAYER_URL,
                GISClassification(activity=ActivityType.CYCLING),
                on_progress,
                client=client,
                retry_delay=0,
                **kwargs,
            )
    return asyncio.run(main())


def test_normalize_appends_query_and_defaults():
    url = normalize_feature_service_url(LAYER_URL + "/")
    parts = urlsplit(url)
    assert parts.path.endswith("/FeatureServer/0/query")
    params = parse_qs(parts.query)
    assert params["where"] == ["1=1"]
    assert params["outFields"] == ["*"]
    assert params["f"] == ["geojson"]
    assert params["outSR"] == ["4326"]


def test_normalize_keeps_existing_query():
    url = normalize_feature_service_url(LAYER_URL + "/query?where=TYPE%3D2&f=json")
    params = parse_qs(urlsplit(url).query)
    assert params["where"] == ["TYPE=2"]
    assert params["f"] == ["json"]
    assert urlsplit(url).path.count("/query") == 1


def test_normalize_rejects_non_http():
    with pytest.raises(FetchUnavailableError):
        normalize_feature_service_url("ftp://gis.example.org/layer")


def test_paginates_until_flag_clears(at):
    pages = [
        {"features": [esri_feature(at, 0), esri_feature(at, 1)], "exceededTransferLimit": True},
        {"features": [esri_feature(at, 2)], "exceededTransferLimit": False},
    ]
    calls = []
    result = run_fetch(page_server(pages, calls), page_size=2)

    assert result.pages == 2
    assert result.features_seen == 3
    assert len(result.segments) == 3
    assert [s.external_id for s in result.segments] == ["0", "1", "2"]
    assert len({s.id for s in result.segments}) == 3
    assert all(s.id.startswith(f"gis_example_org-{result.ingestion_id}-") for s in result.segments)
    assert not result.truncated
    assert [r.url.params["resultOffset"] for r in calls] == ["0", "2"]
    assert all(r.url.path.endswith("/query") for r in calls)


def test_empty_last_page_ends_fetch_without_error(at):
    pages = [
        {"type": "FeatureCollection", "features": [esri_feature(at, 0), esri_feature(at, 1)],
         "properties": {"exceededTransferLimit": True}},
        {"type": "FeatureCollection", "features": [], "properties": {"exceededTransferLimit": False}},
    ]
    result = run_fetch(page_server(pages), page_size=2)
    assert result.pages == 2
    assert len(result.segments) == 2


def test_empty_page_ends_fetch_even_if_flag_says_more(at):
    pages = [
        {"features": [esri_feature(at, 0)], "exceededTransferLimit": True},
        {"features": [], "exceededTransferLimit": True},
    ]
    result = run_fetch(page_server(pages), page_size=1)
    assert result.pages == 2
    assert len(result.segments) == 1


def test_full_page_without_flag_means_more(at):
    pages = [
        {"features": [esri_feature(at, 0), esri_feature(at, 1)]},
        {"features": [esri_feature(at, 2)]},
    ]
    result = run_fetch(page_server(pages), page_size=2)
    assert result.pages == 2
    assert len(result.segments) == 3


def test_page_cap_stops_runaway_service(at):
    def handler(request):
        return httpx.Response(200, json={"features": [esri_feature(at, 0)], "exceededTransferLimit": True})
    result = run_fetch(handler, page_size=1, max_pages=3)
    assert result.pages == 3
    assert result.truncated


def test_last_page_at_the_cap_is_not_truncated(at):
    pages = [
        {"features": [esri_feature(at, 0)], "exceededTransferLimit": True},
        {"features": [esri_feature(at, 1)], "exceededTransferLimit": False},
    ]
    result = run_fetch(page_server(pages), page_size=1, max_pages=2)
    assert result.pages == 2
    assert not result.truncated


def test_geojson_pages_are_accepted(at):
    page = {
        "type": "FeatureCollection",
        "features": [{"type": "Feature", "properties": {"highway": "cycleway"},
                      "geometry": {"type": "LineString", "coordinates": [at(0, 0), at(100, 0)]}}],
    }
    result = run_fetch(page_server([page]), page_size=10)
    assert len(result.segments) == 1


def test_malformed_feature_in_page_is_skipped(at):
    bad = {"attributes": {}, "geometry": {"paths": [[at(0, 0)]]}}
    pages = [{"features": [esri_feature(at, 0), bad], "exceededTransferLimit": False}]
    result = run_fetch(page_server(pages), page_size=10)
    assert len(result.segments) == 1
    assert result.skipped_features == 1


def test_progress_after_every_page(at):
    pages = [
        {"features": [esri_feature(at, 0)], "exceededTransferLimit": True},
        {"features": [esri_feature(at, 1)], "exceededTransferLimit": True},
        {"features": [esri_feature(at, 2)], "exceededTransferLimit": False},
    ]
    updates = []
    run_fetch(page_server(pages), on_progress=updates.append, page_size=1)

    fetch_updates = [u for u in updates if u.phase == ProgressPhase.FETCH]
    assert [u.features_so_far for u in fetch_updates] == [1, 2, 3]
    assert all(0 <= u.percent <= 100 for u in updates)
    assert updates[-1].phase == ProgressPhase.DONE


def test_failing_progress_callback_does_not_abort(at):
    def explode(update):
        raise RuntimeError("ui went away")

    pages = [{"features": [esri_feature(at, 0)], "exceededTransferLimit": False}]
    result = run_fetch(page_server(pages), on_progress=explode, page_size=10)
    assert len(result.segments) == 1


def test_transient_errors_are_retried(at):
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"features": [esri_feature(at, 0)], "exceededTransferLimit": False})

    result = run_fetch(handler, max_retries=2, page_size=10)
    assert len(attempts) == 3
    assert len(result.segments) == 1


def test_unavailable_after_retries(at):
    attempts = []

    def handler(request):
        attempts.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(FetchUnavailableError) as excinfo:
        run_fetch(handler, max_retries=1, page_size=10)
    assert len(attempts) == 2
    assert excinfo.value.url.endswith("/query")


def test_client_error_is_not_retried():
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(404)

    with pytest.raises(FetchUnavailableError) as excinfo:
        run_fetch(handler, max_retries=3, page_size=10)
    assert len(attempts) == 1
    assert excinfo.value.status_code == 404


def test_partial_pages_are_discarded_on_failure(at):
    def handler(request):
        if request.url.params["resultOffset"] == "0":
            return httpx.Response(200, json={"features": [esri_feature(at, 0)], "exceededTransferLimit": True})
        return httpx.Response(500)

    with pytest.raises(FetchError):
        run_fetch(handler, max_retries=0, page_size=1)


def test_error_body_is_unavailable():
    def handler(request):
        return httpx.Response(200, json={"error": {"code": 498, "message": "Invalid token"}})

    with pytest.raises(FetchUnavailableError, match="Invalid token"):
        run_fetch(handler, page_size=10)


@pytest.mark.parametrize("body", [
    {"features": {"not": "a list"}},
    ["a", "list"],
])
def test_invalid_pagination_state(body):
    def handler(request):
        return httpx.Response(200, json=body)

    with pytest.raises(InvalidPaginationError):
        run_fetch(handler, page_size=10)


def test_non_json_page_is_invalid():
    def handler(request):
        return httpx.Response(200, text="<html>maintenance</html>")

    with pytest.raises(InvalidPaginationError):
        run_fetch(handler, page_size=10)


def test_cancellation_stops_before_next_page(at):
    calls = []

    async def main():
        cancel = asyncio.Event()

        def handler(request):
            calls.append(request)
            cancel.set()
            return httpx.Response(200, json={"features": [esri_feature(at, 0)], "exceededTransferLimit": True})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await fetch_remote_feature_service(
                LAYER_URL,
                GISClassification(),
                client=client,
                cancel_event=cancel,
                page_size=1,
            )

    with pytest.raises(FetchCancelledError):
        asyncio.run(main())
    assert len(calls) == 1


def test_sync_wrapper(monkeypatch, at):
    pages = [{"features": [esri_feature(at, 0)], "exceededTransferLimit": False}]
    transport = httpx.MockTransport(page_server(pages))
    real_client = httpx.AsyncClient

    def patched_client(*args, **kwargs):
        return real_client(*args, transport=transport, **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", patched_client)
    result = fetch_remote_feature_service_sync(LAYER_URL, GISClassification(), page_size=10)
    assert len(result.segments) == 1


def test_two_layers_on_one_host_get_distinct_ids(at):
    pages = [{"features": [esri_feature(at, 0)], "exceededTransferLimit": False}]
    first = run_fetch(page_server(pages), page_size=10)
    second = run_fetch(page_server(pages), page_size=10)
    assert first.segments[0].source_name == second.segments[0].source_name
    assert first.segments[0].id != second.segments[0].id
