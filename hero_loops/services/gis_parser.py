"""Local GIS container parsing.

Turns raw bytes (GeoJSON, Esri JSON, gzip, or a ZIP holding either) into
InfrastructureSegments. Format is sniffed from content; the caller's file
name is never consulted.
"""

import gzip
import io
import json
import logging
import re
import uuid
import zipfile
from typing import Any, Iterable

from pydantic import ValidationError

from hero_loops.errors import MalformedGeometryError, UnsupportedFormatError
from hero_loops.models.facility import Facility, FacilityType
from hero_loops.models.infrastructure import (
    GISClassification,
    InfrastructureMode,
    InfrastructureSegment,
    default_mode_for,
)
from hero_loops.models.route import IngestionResult


logger = logging.getLogger(__name__)

ZIP_MAGIC = b"PK\x03\x04"
GZIP_MAGIC = b"\x1f\x8b"

LINE_TYPES = {"LineString", "MultiLineString"}
SHAPEFILE_SUFFIXES = (".shp", ".shx", ".dbf", ".prj", ".cpg")

# Attribute fields that commonly carry the path type in municipal / OSM exports
MODE_FIELDS = ("highway", "path_type", "route_type", "type", "road_type", "sug_dereh")
CYCLING_KEYWORDS = ("cycleway", "bicycle", "bike", "cycle", "ofanaim", "אופניים")
PEDESTRIAN_KEYWORDS = ("footway", "pedestrian", "sidewalk", "footpath", "holchei_regel", "הולכי רגל", "מדרכה")
SHARED_KEYWORDS = ("path", "shared", "track", "shared_use", "meshutaf", "משותף")

NAME_FIELDS = ("t_name", "shem_rehov", "name", "label", "street_name", "shem", "route_name")
ID_FIELDS = ("objectid", "fid", "id", "globalid")
STEP_FIELDS = ("number_of_steps", "numberofsteps", "num_steps", "steps", "madregot")


def _lookup(props: dict, field_name: str) -> Any:
    """Case-insensitive attribute lookup."""
    if field_name in props:
        return props[field_name]
    lowered = field_name.lower()
    for key, value in props.items():
        if isinstance(key, str) and key.lower() == lowered:
            return value
    return None


def detect_infrastructure_mode(props: dict, classification: GISClassification) -> InfrastructureMode:
    """Mode for a feature: explicit classification, then attributes, then activity."""
    if classification.mode is not None:
        return classification.mode

    candidates = []
    for field_name in MODE_FIELDS:
        value = _lookup(props, field_name)
        if value:
            candidates.append(str(value).lower())

    is_cycling = is_pedestrian = is_shared = False
    for value in candidates:
        if any(k in value for k in CYCLING_KEYWORDS):
            is_cycling = True
        if any(k in value for k in PEDESTRIAN_KEYWORDS):
            is_pedestrian = True
        # Whole-token match so "footpath" does not read as a shared "path"
        if any(k in SHARED_KEYWORDS for k in re.split(r"[^\w]+", value)):
            is_shared = True

    if is_cycling and is_pedestrian:
        return InfrastructureMode.SHARED
    if is_shared:
        return InfrastructureMode.SHARED
    if is_cycling:
        return InfrastructureMode.CYCLING
    if is_pedestrian:
        return InfrastructureMode.PEDESTRIAN
    return default_mode_for(classification.activity)


def slugify(text: str, max_length: int = 40) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")
    return slug[:max_length].rstrip("_")


def new_ingestion_id() -> str:
    """Short random id that keeps segment ids of separate imports apart."""
    return uuid.uuid4().hex[:8]


def _feature_name(props: dict, index: int) -> str:
    for field_name in NAME_FIELDS:
        value = _lookup(props, field_name)
        if value:
            return str(value)
    return f"Segment {index + 1}"


def _feature_external_id(feature: dict, props: dict) -> str | None:
    for field_name in ID_FIELDS:
        value = _lookup(props, field_name)
        if value is not None and value != "":
            return str(value)
    if feature.get("id") is not None:
        return str(feature["id"])
    return None


def _step_count(props: dict) -> int | None:
    for field_name in STEP_FIELDS:
        value = _lookup(props, field_name)
        if value is None or value == "":
            continue
        try:
            return max(0, int(float(value)))
        except (TypeError, ValueError, OverflowError):
            return None
    return None


def line_parts(geometry: Any) -> list[list] | None:
    """Coordinate arrays of a line geometry, or None if it is not a line.

    Handles GeoJSON LineString / MultiLineString and the Esri encoding
    where parts are nested under "paths".
    """
    if not isinstance(geometry, dict):
        return None
    if "paths" in geometry:
        paths = geometry["paths"]
        return list(paths) if isinstance(paths, list) else None

    geom_type = geometry.get("type")
    coords = geometry.get("coordinates")
    if geom_type not in LINE_TYPES or not isinstance(coords, list):
        return None
    if geom_type == "LineString":
        return [coords]
    return list(coords)


def features_to_segments(
    features: Iterable[Any],
    classification: GISClassification,
    authority_id: str,
    source_name: str,
    start_index: int = 0,
    ingestion_id: str | None = None,
) -> tuple[list[InfrastructureSegment], int]:
    """Convert raw features to segments.

    Returns (segments, skipped). A feature is skipped when its attributes
    are not an object, when it is not a line, or when every part of it is
    degenerate (non-finite, out of range, or zero length). Bad parts of an
    otherwise usable multi-line are dropped silently.

    Segment ids are ``<source slug>-<ingestion_id>-<index>``; callers
    ingesting several sources must give each its own ingestion_id.
    """
    segments: list[InfrastructureSegment] = []
    skipped = 0
    prefix = slugify(source_name) or "segment"
    if ingestion_id:
        prefix = f"{prefix}-{ingestion_id}"

    for offset, feature in enumerate(features):
        index = start_index + offset
        if not isinstance(feature, dict):
            skipped += 1
            continue

        props = feature.get("properties") or feature.get("attributes") or {}
        if not isinstance(props, dict):
            logger.debug("Skipping feature %d with non-object attributes", index)
            skipped += 1
            continue
        parts = line_parts(feature.get("geometry"))
        if not parts:
            skipped += 1
            continue

        mode = detect_infrastructure_mode(props, classification)
        name = _feature_name(props, index)
        external_id = _feature_external_id(feature, props)

        produced = 0
        for part_no, coords in enumerate(parts):
            seg_id = f"{prefix}-{index:05d}"
            if len(parts) > 1:
                seg_id = f"{seg_id}-{part_no}"
            try:
                segment = InfrastructureSegment(
                    id=seg_id,
                    authority_id=authority_id,
                    path=coords,
                    mode=mode,
                    source_name=source_name,
                    name=name,
                    external_id=external_id,
                )
            except (ValidationError, TypeError) as e:
                logger.debug("Dropping part %d of feature %d: %s", part_no, index, e)
                continue
            segments.append(segment)
            produced += 1

        if produced == 0:
            skipped += 1

    return segments, skipped


def _archive_features(raw: bytes) -> list:
    """Features of every GeoJSON member of a ZIP archive."""
    try:
        archive = zipfile.ZipFile(io.BytesIO(raw))
    except zipfile.BadZipFile as e:
        raise UnsupportedFormatError(f"Corrupt ZIP archive: {e}") from e

    json_members = []
    has_shapefile = False
    with archive:
        for info in archive.infolist():
            path = info.filename
            base = path.rsplit("/", 1)[-1]
            if info.is_dir() or "__macosx" in path.lower() or base.startswith("."):
                continue
            lowered = base.lower()
            if lowered.endswith((".geojson", ".json")):
                json_members.append(info)
            elif lowered.endswith(SHAPEFILE_SUFFIXES):
                has_shapefile = True

        if not json_members:
            if has_shapefile:
                raise UnsupportedFormatError(
                    "Shapefile archives are not supported; export the layer as GeoJSON"
                )
            raise UnsupportedFormatError("ZIP archive holds no GeoJSON member")

        documents = [_decode_json(archive.read(info)) for info in sorted(json_members, key=lambda i: i.filename)]

    features = []
    for doc in documents:
        features.extend(_extract_features(doc))
    return features


def _decode_json(raw: bytes) -> Any:
    try:
        return json.loads(raw.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise UnsupportedFormatError(f"Not a JSON feature container: {e}") from e


def _extract_features(doc: Any) -> list:
    """Normalize any supported JSON document to a list of features."""
    if not isinstance(doc, dict):
        raise UnsupportedFormatError("Feature container must be a JSON object")

    features = doc.get("features")
    if isinstance(features, list):
        return features

    doc_type = doc.get("type")
    if doc_type == "Feature":
        return [doc]
    if doc_type in LINE_TYPES or doc_type == "Point" or "paths" in doc:
        return [{"type": "Feature", "properties": {}, "geometry": doc}]

    raise UnsupportedFormatError("JSON document is not a feature collection")


def load_features(raw: bytes) -> list:
    """Sniff the container type and return its raw features."""
    if not raw:
        raise UnsupportedFormatError("Empty input")

    if raw.startswith(GZIP_MAGIC):
        try:
            raw = gzip.decompress(raw)
        except (OSError, EOFError) as e:
            raise UnsupportedFormatError(f"Corrupt gzip stream: {e}") from e

    if raw.startswith(ZIP_MAGIC):
        return _archive_features(raw)

    return _extract_features(_decode_json(raw))


def parse_local_feature_collection(
    raw: bytes,
    classification: GISClassification,
    authority_id: str = "",
    source_name: str = "GIS Import",
    ingestion_id: str | None = None,
) -> IngestionResult:
    """Parse an uploaded line-feature container into segments.

    Raises UnsupportedFormatError when the bytes are not a recognised
    container, and MalformedGeometryError when the container has features
    but none of them is a usable line.
    """
    ingestion_id = ingestion_id or new_ingestion_id()
    features = load_features(raw)
    segments, skipped = features_to_segments(
        features, classification, authority_id, source_name, ingestion_id=ingestion_id
    )

    if features and not segments:
        raise MalformedGeometryError(
            f"None of the {len(features)} features is a valid line geometry"
        )
    if skipped:
        logger.info("Skipped %d of %d features from %s", skipped, len(features), source_name)

    return IngestionResult(
        segments=segments,
        features_seen=len(features),
        skipped_features=skipped,
        pages=1,
        ingestion_id=ingestion_id,
    )


def parse_facility_collection(
    raw: bytes,
    facility_type: FacilityType,
    source_name: str = "facilities",
) -> list[Facility]:
    """Read Point features from a container into a facility catalog."""
    facilities = []
    prefix = slugify(source_name) or "facility"
    for index, feature in enumerate(load_features(raw)):
        if not isinstance(feature, dict):
            continue
        geometry = feature.get("geometry") or {}
        props = feature.get("properties") or feature.get("attributes") or {}
        if not isinstance(geometry, dict) or not isinstance(props, dict):
            logger.debug("Dropping malformed facility feature %d", index)
            continue

        if geometry.get("type") == "Point":
            coordinate = geometry.get("coordinates")
        elif "x" in geometry and "y" in geometry:
            coordinate = [geometry["x"], geometry["y"]]
        else:
            continue

        name = _lookup(props, "name") or _lookup(props, "label") or f"{facility_type.value} {index + 1}"
        try:
            facilities.append(Facility(
                id=_feature_external_id(feature, props) or f"{prefix}-{index:05d}",
                coordinate=coordinate,
                facility_type=facility_type,
                name=str(name),
                number_of_steps=_step_count(props),
            ))
        except ValidationError:
            logger.debug("Dropping facility feature %d with bad coordinate", index)
    return facilities
