"""
PoC report transform.

Ingest files are gzip-compressed newline-delimited JSON, one verified PoC
report per line:

    {"poc_id": ..., "beacon_report": {...},
     "selected_witnesses": [...], "unselected_witnesses": [...]}

Each report becomes a beacon document, one hotspot document per participant
and one beacon->witness edge document per witness. Every document carries a
natural key so replays are idempotent. Asserted locations are h3 cells; their
centre, polygon and resolution-5 parent are added as geo fields.

A hotspot is written once per report that mentions it, so its collection has
a merge rule: the most recently seen document wins and poc_ids accumulate.
"""

import gzip
import json
import math
import zlib
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import h3

from poc_etl.domain import FileDescriptor, MergeRule, Record, from_millis, to_millis, to_utc
from poc_etl.errors import TransformError
from poc_etl.utils.logging_utils import log_warning

BEACON_COLLECTION = "beacons"
HOTSPOT_COLLECTION = "hotspots"
WITNESS_EDGE_COLLECTION = "witnesses"
FILES_COLLECTION = "files"

EARTH_RADIUS_KM = 6371.0088
PARENT_RESOLUTION = 5

MERGE_RULES = {HOTSPOT_COLLECTION: MergeRule("last_seen_unix", ("poc_ids",))}


def _parse_timestamp(value: Any, field: str) -> datetime:
    """Accept unix millis or an ISO-8601 string."""
    if isinstance(value, bool):
        raise ValueError(f"{field}: not a timestamp")
    if isinstance(value, (int, float)):
        return from_millis(int(value))
    if isinstance(value, str):
        return to_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    raise ValueError(f"{field}: not a timestamp")


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


def calc_distance(
    lat1: Optional[float],
    lng1: Optional[float],
    lat2: Optional[float],
    lng2: Optional[float],
) -> Optional[float]:
    """
    Great-circle distance in km, or None when either position is unknown.
    """
    if None in (lat1, lng1, lat2, lng2):
        return None
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = phi2 - phi1
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def _h3_cell(location: Any, field: str) -> Optional[str]:
    """Normalise an asserted location (h3 index as int or hex string)."""
    if location is None or location == "":
        return None
    if isinstance(location, bool):
        raise ValueError(f"{field}: not an h3 index")
    try:
        cell = h3.int_to_str(location) if isinstance(location, int) else str(location)
        valid = h3.is_valid_cell(cell)
    except (ValueError, TypeError):
        valid = False
    if not valid:
        raise ValueError(f"{field}: invalid h3 index {location!r}")
    return cell


def cell_polygon(cell: str) -> Dict[str, Any]:
    """GeoJSON polygon of an h3 cell (lng/lat order, closed ring)."""
    ring = [[lng, lat] for lat, lng in h3.cell_to_boundary(cell)]
    ring.append(ring[0])
    return {"type": "Polygon", "coordinates": [ring]}


def location_fields(location: Any, field: str = "location") -> Dict[str, Any]:
    """
    Geo fields derived from an h3 location: the cell's centre and polygon,
    and the same for its resolution-5 parent.
    """
    fields: Dict[str, Any] = {
        "location": None,
        "geo": None,
        "parent_location": None,
        "parent_latitude": None,
        "parent_longitude": None,
        "parent_geo": None,
    }
    cell = _h3_cell(location, field)
    if cell is None:
        return fields

    fields["location"] = cell
    fields["geo"] = cell_polygon(cell)
    if h3.get_resolution(cell) >= PARENT_RESOLUTION:
        parent = h3.cell_to_parent(cell, PARENT_RESOLUTION)
        parent_lat, parent_lng = h3.cell_to_latlng(parent)
        fields.update(
            {
                "parent_location": parent,
                "parent_latitude": parent_lat,
                "parent_longitude": parent_lng,
                "parent_geo": cell_polygon(parent),
            }
        )
    return fields


def _participant(report: Dict[str, Any], field: str) -> Dict[str, Any]:
    """Common fields of a beacon or witness report."""
    if not isinstance(report, dict):
        raise ValueError(f"{field}: expected an object")
    pub_key = report.get("pub_key")
    if not pub_key:
        raise ValueError(f"{field}: missing pub_key")
    received = _parse_timestamp(report.get("received_timestamp"), f"{field}.received_timestamp")
    loc = location_fields(report.get("location"), f"{field}.location")

    latitude = _optional_float(report.get("latitude"))
    longitude = _optional_float(report.get("longitude"))
    if loc["location"] and (latitude is None or longitude is None):
        latitude, longitude = h3.cell_to_latlng(loc["location"])

    participant = {
        "pub_key": str(pub_key),
        "ingest_time": received.isoformat(),
        "ingest_time_unix": to_millis(received),
        "latitude": latitude,
        "longitude": longitude,
        "gain": int(report.get("gain", 0)),
        "elevation": int(report.get("elevation", 0)),
        "hex_scale": _optional_float(report.get("hex_scale")),
        "reward_unit": _optional_float(report.get("reward_unit")),
        "frequency": int(report.get("frequency", 0)),
        "timestamp": report.get("timestamp"),
        "tmst": report.get("tmst"),
    }
    participant.update(loc)
    return participant


def _witness(report: Dict[str, Any], selected: bool) -> Dict[str, Any]:
    witness = _participant(report, "witness")
    witness.update(
        {
            "signal": int(report.get("signal", 0)),
            "snr": int(report.get("snr", 0)),
            "verification_status": report.get("status"),
            "invalid_reason": report.get("invalid_reason"),
            "participant_side": report.get("participant_side"),
            "selected": selected,
            "distance": 0.0,
        }
    )
    return witness


def _hotspot(participant: Dict[str, Any], last_seen: int, poc_ids: Sequence[str] = ()) -> Record:
    doc = {
        "_key": participant["pub_key"],
        "location": participant["location"],
        "latitude": participant["latitude"],
        "longitude": participant["longitude"],
        "geo": participant["geo"],
        "gain": participant["gain"],
        "elevation": participant["elevation"],
        "last_seen_unix": last_seen,
        "poc_ids": list(poc_ids),
    }
    return Record(HOTSPOT_COLLECTION, participant["pub_key"], doc)


def report_to_records(report: Dict[str, Any]) -> List[Record]:
    """
    Transform one decoded PoC report into documents.

    Reports without selected witnesses are ignored and yield no records.

    Raises:
        ValueError/TypeError/KeyError: If a required field is missing or malformed
    """
    if not isinstance(report, dict):
        raise ValueError("report: expected an object")

    selected = report.get("selected_witnesses") or []
    if not selected:
        return []

    poc_id = report.get("poc_id")
    if not poc_id:
        raise ValueError("missing poc_id")
    poc_id = str(poc_id)

    beacon_report = report.get("beacon_report")
    beacon = _participant(beacon_report, "beacon_report")
    beacon.update(
        {
            "_key": poc_id,
            "poc_id": poc_id,
            "channel": beacon_report.get("channel"),
            "tx_power": beacon_report.get("tx_power"),
        }
    )

    witnesses = [_witness(w, True) for w in selected]
    witnesses += [_witness(w, False) for w in report.get("unselected_witnesses") or []]

    records: List[Record] = [_hotspot(beacon, beacon["ingest_time_unix"], [poc_id])]
    for witness in witnesses:
        distance = calc_distance(
            beacon["latitude"], beacon["longitude"], witness["latitude"], witness["longitude"]
        )
        witness["distance"] = distance if distance is not None else 0.0

        records.append(_hotspot(witness, witness["ingest_time_unix"]))

        edge_key = f"{poc_id}_{witness['pub_key']}"
        records.append(
            Record(
                WITNESS_EDGE_COLLECTION,
                edge_key,
                {
                    "_key": edge_key,
                    "_from": f"{HOTSPOT_COLLECTION}/{beacon['pub_key']}",
                    "_to": f"{HOTSPOT_COLLECTION}/{witness['pub_key']}",
                    "poc_id": poc_id,
                    "selected": witness["selected"],
                    "distance": witness["distance"],
                    "witness_snr": witness["snr"],
                    "witness_signal": witness["signal"],
                    "ingest_latency": witness["ingest_time_unix"] - beacon["ingest_time_unix"],
                },
            )
        )

    beacon["witnesses"] = witnesses
    records.append(Record(BEACON_COLLECTION, poc_id, beacon))
    return records


def decode_file(file: FileDescriptor, data: bytes) -> List[Dict[str, Any]]:
    """
    Decompress and split a file into decoded report objects.

    Lines that are not valid JSON are skipped with a warning.

    Raises:
        TransformError: If the payload is not gzip or not UTF-8 text
    """
    try:
        text = gzip.decompress(data).decode("utf-8")
    except (OSError, EOFError, zlib.error, UnicodeDecodeError) as e:
        raise TransformError(f"{file.key}: cannot decode file: {e}") from e

    reports = []
    for line_number, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            reports.append(json.loads(line))
        except json.JSONDecodeError as e:
            log_warning("Transform", f"{file.key}:{line_number}: skipping report: {e}")
    return reports


def transform_file(file: FileDescriptor, data: bytes) -> List[Record]:
    """
    Turn one fetched file into the records to load.

    Malformed reports are skipped with a warning.

    Raises:
        TransformError: If the file as a whole cannot be decoded
    """
    records: List[Record] = []
    for index, report in enumerate(decode_file(file, data), start=1):
        try:
            records.extend(report_to_records(report))
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            log_warning("Transform", f"{file.key}: skipping report #{index}: {e}")
    return records


def file_record(file: FileDescriptor) -> Record:
    """Ledger document marking a file as loaded."""
    return Record(
        FILES_COLLECTION,
        file.key,
        {
            "_key": file.key,
            "timestamp": file.timestamp.isoformat(),
            "unix_ts": to_millis(file.timestamp),
            "size": file.size,
            "done": True,
        },
    )
