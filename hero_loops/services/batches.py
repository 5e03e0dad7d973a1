"""Batch identifiers and the persistence contract for bulk writes.

Every ingested segment set and every generated route set is written as one
batch so it can be listed, replaced or deleted as a unit.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Protocol, Sequence, TypeVar

from hero_loops.models.infrastructure import ActivityType, InfrastructureSegment
from hero_loops.models.route import BatchSummary, CuratedRoute, GenerationResult
from hero_loops.services.gis_parser import slugify


logger = logging.getLogger(__name__)

Record = TypeVar("Record", InfrastructureSegment, CuratedRoute)

SEGMENT_KIND = "segment"
CURATED_KIND = "curated"


def new_batch_id(source_name: str, now: datetime | None = None) -> str:
    """Collision-resistant id: sanitized source, UTC timestamp, random suffix."""
    now = now or datetime.now(timezone.utc)
    slug = slugify(source_name, max_length=32) or "batch"
    return f"{slug}_{now:%Y%m%dT%H%M%S}_{uuid.uuid4().hex[:8]}"


def tag_batch(records: Iterable[Record], batch_id: str, source_name: str) -> list[Record]:
    """Copies of the records stamped with batch metadata."""
    tagged = []
    for record in records:
        if isinstance(record, CuratedRoute):
            update = {"import_batch_id": batch_id, "import_source_name": source_name}
        else:
            update = {"import_batch_id": batch_id, "source_name": source_name}
        tagged.append(record.model_copy(update=update))
    return tagged


class BatchStore(Protocol):
    """What the engine needs from a persistence collaborator."""

    def insert(
        self,
        records: Sequence[InfrastructureSegment | CuratedRoute],
        batch_id: str,
        source_name: str,
        *,
        authority_id: str | None = None,
        activity_type: ActivityType | None = None,
        kind: str = SEGMENT_KIND,
    ) -> BatchSummary: ...

    def list_batches(self, authority_id: str | None = None, kind: str | None = None) -> list[BatchSummary]: ...

    def delete_batch(self, batch_id: str) -> int: ...

    def delete_where(self, predicate: Callable[[BatchSummary], bool]) -> int: ...


@dataclass
class _StoredBatch:
    summary: BatchSummary
    sequence: int
    records: list = field(default_factory=list)


class InMemoryBatchStore:
    """Dict-backed BatchStore, safe to share between worker threads."""

    def __init__(self):
        self._batches: dict[str, _StoredBatch] = {}
        self._sequence = 0
        self._lock = threading.Lock()

    def insert(
        self,
        records,
        batch_id,
        source_name,
        *,
        authority_id=None,
        activity_type=None,
        kind=SEGMENT_KIND,
    ) -> BatchSummary:
        summary = BatchSummary(
            batch_id=batch_id,
            source_name=source_name,
            count=len(records),
            created_at=datetime.now(timezone.utc),
            authority_id=authority_id,
            activity_type=activity_type,
            kind=kind,
        )
        with self._lock:
            if batch_id in self._batches:
                raise ValueError(f"Batch {batch_id} already exists")
            self._sequence += 1
            self._batches[batch_id] = _StoredBatch(summary, self._sequence, list(records))
        logger.info("Inserted %s batch %s (%d records)", kind, batch_id, len(records))
        return summary

    def list_batches(self, authority_id=None, kind=None) -> list[BatchSummary]:
        """Newest first."""
        with self._lock:
            stored = sorted(self._batches.values(), key=lambda b: b.sequence, reverse=True)
        return [
            b.summary for b in stored
            if (authority_id is None or b.summary.authority_id == authority_id)
            and (kind is None or b.summary.kind == kind)
        ]

    def records(self, batch_id: str | None = None) -> list:
        """Stored records, of one batch or of all batches in insertion order."""
        with self._lock:
            if batch_id is not None:
                stored = self._batches.get(batch_id)
                return list(stored.records) if stored else []
            ordered = sorted(self._batches.values(), key=lambda b: b.sequence)
            return [r for b in ordered for r in b.records]

    def delete_batch(self, batch_id: str) -> int:
        with self._lock:
            stored = self._batches.pop(batch_id, None)
        if stored is None:
            return 0
        logger.info("Deleted batch %s (%d records)", batch_id, len(stored.records))
        return len(stored.records)

    def delete_where(self, predicate: Callable[[BatchSummary], bool]) -> int:
        with self._lock:
            doomed = [bid for bid, b in self._batches.items() if predicate(b.summary)]
            removed = sum(len(self._batches.pop(bid).records) for bid in doomed)
        if doomed:
            logger.info("Deleted %d batches (%d records)", len(doomed), removed)
        return removed


def replace_curated_routes(
    store: BatchStore,
    authority_id: str,
    activity_type: ActivityType,
    result: GenerationResult,
    source_name: str = "hero loop generation",
) -> int:
    """Swap the stored curated set for (authority, activity) with a new one.

    Every earlier curated batch for the pair is deleted, never merged with
    the new routes. Returns the number of records deleted.
    """
    activity_type = ActivityType(activity_type)
    batch_id = result.batch_id or new_batch_id(source_name)
    routes = tag_batch(result.routes, batch_id, source_name)

    deleted = store.delete_where(
        lambda b: b.kind == CURATED_KIND
        and b.authority_id == authority_id
        and b.activity_type == activity_type
    )
    if routes:
        store.insert(
            routes,
            batch_id,
            source_name,
            authority_id=authority_id,
            activity_type=activity_type,
            kind=CURATED_KIND,
        )
    else:
        logger.info("No curated routes for %s/%s, nothing inserted", authority_id, activity_type.value)
    return deleted
