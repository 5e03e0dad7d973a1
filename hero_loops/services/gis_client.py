"""Paginated fetch from a remote (ArcGIS-style) line-feature service."""

import asyncio
import logging
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from hero_loops.config import settings
from hero_loops.errors import FetchCancelledError, FetchUnavailableError, InvalidPaginationError
from hero_loops.models.infrastructure import GISClassification, InfrastructureSegment
from hero_loops.models.route import IngestionResult, ProgressPhase
from hero_loops.services.gis_parser import features_to_segments, new_ingestion_id
from hero_loops.services.progress import ProgressCallback, report_progress


logger = logging.getLogger(__name__)

DEFAULT_QUERY_PARAMS = {
    "where": "1=1",
    "outFields": "*",
    "f": "geojson",
    "outSR": "4326",
}

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def normalize_feature_service_url(raw_url: str) -> str:
    """Point a layer URL at its /query endpoint with default query params."""
    parts = urlsplit(raw_url.strip())
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise FetchUnavailableError(f"Not an HTTP(S) feature service URL: {raw_url!r}", url=raw_url)

    path = parts.path.rstrip("/")
    if not path.lower().endswith("/query"):
        path = f"{path}/query"

    params = dict(parse_qsl(parts.query, keep_blank_values=True))
    for key, value in DEFAULT_QUERY_PARAMS.items():
        params.setdefault(key, value)

    return urlunsplit((parts.scheme, parts.netloc, path, urlencode(params), ""))


def _exceeded_limit(data: dict) -> bool | None:
    """The server's "more records remain" flag, if it sent one."""
    if "exceededTransferLimit" in data:
        return bool(data["exceededTransferLimit"])
    props = data.get("properties")
    if isinstance(props, dict) and "exceededTransferLimit" in props:
        return bool(props["exceededTransferLimit"])
    return None


async def _get_page(
    client: httpx.AsyncClient,
    url: str,
    params: dict,
    max_retries: int,
    retry_delay: float,
    timeout: float,
) -> dict:
    """GET one page, retrying transient failures."""
    last_error: str = ""
    last_status: int | None = None

    for attempt in range(max_retries + 1):
        if attempt:
            await asyncio.sleep(retry_delay * attempt)
        try:
            response = await client.get(url, params=params, timeout=timeout)
        except httpx.TransportError as e:
            last_error = f"network error: {e}"
            logger.warning("Attempt %d/%d for %s failed: %s", attempt + 1, max_retries + 1, url, e)
            continue

        if response.status_code in RETRYABLE_STATUS:
            last_status = response.status_code
            last_error = f"HTTP {response.status_code}"
            logger.warning("Attempt %d/%d for %s returned %d", attempt + 1, max_retries + 1, url, response.status_code)
            continue

        if not response.is_success:
            raise FetchUnavailableError(
                f"Feature service returned HTTP {response.status_code}",
                url=url,
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise InvalidPaginationError(f"Page is not JSON: {e}", url=url) from e

        if not isinstance(data, dict):
            raise InvalidPaginationError("Page is not a JSON object", url=url)
        if "error" in data:
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else error
            raise FetchUnavailableError(f"Feature service error: {message}", url=url)
        return data

    raise FetchUnavailableError(
        f"Feature service unavailable after {max_retries + 1} attempts ({last_error})",
        url=url,
        status_code=last_status,
    )


async def fetch_remote_feature_service(
    endpoint_url: str,
    classification: GISClassification,
    on_progress: ProgressCallback | None = None,
    *,
    authority_id: str = "",
    source_name: str | None = None,
    ingestion_id: str | None = None,
    client: httpx.AsyncClient | None = None,
    cancel_event: asyncio.Event | None = None,
    page_size: int | None = None,
    max_pages: int | None = None,
    max_retries: int | None = None,
    retry_delay: float | None = None,
    timeout: float | None = None,
) -> IngestionResult:
    """Fetch every line feature from a paginated feature service.

    Pagination continues while the server sets exceededTransferLimit (or,
    when it never sends the flag, while pages come back full). An empty
    page always ends it. Progress is reported after every page.

    Reaching max_pages while the server still reports more records marks
    the result ``truncated``.

    Any fatal failure raises a FetchError and discards the pages already
    downloaded; a partial segment list is never returned.
    """
    page_size = page_size if page_size is not None else settings.feature_service_page_size
    max_pages = max_pages if max_pages is not None else settings.feature_service_max_pages
    max_retries = max_retries if max_retries is not None else settings.feature_service_retries
    retry_delay = retry_delay if retry_delay is not None else settings.feature_service_retry_delay_s
    timeout = timeout if timeout is not None else settings.feature_service_timeout_s
    source_name = source_name or urlsplit(endpoint_url).netloc or "feature service"
    ingestion_id = ingestion_id or new_ingestion_id()

    url = normalize_feature_service_url(endpoint_url)
    base_url, _, query = url.partition("?")
    base_params = dict(parse_qsl(query, keep_blank_values=True))

    segments: list[InfrastructureSegment] = []
    features_seen = 0
    skipped = 0
    page = 0
    truncated = False

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient()

    try:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise FetchCancelledError(
                    f"Fetch cancelled after {page} pages", url=base_url
                )
            if page >= max_pages:
                logger.warning("Reached %d-page limit for %s, result is incomplete", max_pages, base_url)
                truncated = True
                break

            params = {
                **base_params,
                "resultOffset": str(page * page_size),
                "resultRecordCount": str(page_size),
            }
            data = await _get_page(client, base_url, params, max_retries, retry_delay, timeout)

            features = data.get("features")
            if features is None:
                features = []
            if not isinstance(features, list):
                raise InvalidPaginationError("Page 'features' is not a list", url=base_url)

            page += 1
            page_segments, page_skipped = features_to_segments(
                features, classification, authority_id, source_name,
                start_index=features_seen, ingestion_id=ingestion_id,
            )
            segments.extend(page_segments)
            features_seen += len(features)
            skipped += page_skipped

            report_progress(
                on_progress,
                ProgressPhase.FETCH,
                f"Downloaded page {page} ({features_seen} features so far)",
                min(90, page * 10),
                features_so_far=features_seen,
            )

            if not features:
                break
            more = _exceeded_limit(data)
            if more is None:
                more = len(features) >= page_size
            if not more:
                break
    finally:
        if owns_client:
            await client.aclose()

    logger.info(
        "Fetched %d features in %d pages from %s (%d skipped)",
        features_seen, page, base_url, skipped,
    )
    report_progress(
        on_progress,
        ProgressPhase.DONE,
        f"Loaded {len(segments)} segments",
        100,
        features_so_far=features_seen,
    )

    return IngestionResult(
        segments=segments,
        features_seen=features_seen,
        skipped_features=skipped,
        pages=page,
        ingestion_id=ingestion_id,
        truncated=truncated,
    )


def fetch_remote_feature_service_sync(
    endpoint_url: str,
    classification: GISClassification,
    on_progress: ProgressCallback | None = None,
    **kwargs,
) -> IngestionResult:
    """Synchronous version for callers without an event loop."""
    return asyncio.run(
        fetch_remote_feature_service(endpoint_url, classification, on_progress, **kwargs)
    )
