from __future__ import annotations

import csv
import logging
import math
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import gpxpy
import gpxpy.gpx
import numpy as np
from fitparse import FitFile, FitParseError

from eg_gain import (
    VARIANTS,
    ComparisonRow,
    IntervalSummary,
    Trace,
    VARIANT_LABELS,
    corpus_from_traces,
)


EARTH_RADIUS_M = 6_371_000.0
SEMICIRCLE_TO_DEG = 180.0 / 2 ** 31

OFFICIAL_NAME_COLUMN = "filename"
OFFICIAL_GAIN_COLUMN = "official_elevation_gain_m"

SUPPORTED_SUFFIXES = (".gpx", ".fit")

_VARIANT_COLUMN_PREFIX = {
    "baseline": "baseline",
    "quality_adjusted": "quality",
    "combined": "combined",
}
_VARIANT_METRIC_COLUMNS = (
    "score",
    "98_102",
    "95_105",
    "90_110",
    "outside_80_120",
    "median_acc",
    "worst_acc",
)

SUMMARY_COLUMNS: Tuple[str, ...] = (
    ("interval_m",)
    + tuple(
        f"{_VARIANT_COLUMN_PREFIX[v.value]}_{metric}"
        for v in VARIANTS
        for metric in _VARIANT_METRIC_COLUMNS
    )
    + ("quality_vs_baseline", "combined_vs_baseline")
)

COMPARISON_COLUMNS: Tuple[str, ...] = (
    "variant",
    "interval_m",
    "score",
    "98_102",
    "95_105",
    "90_110",
    "outside_80_120",
    "median_acc",
    "worst_acc",
    "success_pct",
)


# -----------------
# Distances
# -----------------

def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in meters."""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(delta_lat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def cumulative_distances(points: Sequence[Tuple[float, float]]) -> List[float]:
    if not points:
        return []
    out = [0.0]
    for (lat1, lon1), (lat2, lon2) in zip(points[:-1], points[1:]):
        out.append(out[-1] + haversine_m(lat1, lon1, lat2, lon2))
    return out


def _elapsed_seconds(stamps: Sequence[Optional[Any]], n: int) -> List[float]:
    # Without a complete set of timestamps fall back to one second per sample.
    if len(stamps) != n or any(ts is None for ts in stamps):
        return [float(i) for i in range(n)]
    t0 = stamps[0]
    out = [float((ts - t0).total_seconds()) for ts in stamps]
    for i in range(1, n):
        if out[i] < out[i - 1]:
            logging.debug("Non-monotonic timestamps; using sample index as time")
            return [float(i) for i in range(n)]
    return out


# -----------------
# Official gains
# -----------------

def load_official_gains(path: str) -> Dict[str, float]:
    """Read ``filename,official_elevation_gain_m`` rows keyed by lowercased filename."""
    lookup: Dict[str, float] = {}
    with open(path, "r", newline="", encoding="utf-8-sig") as fh:
        reader = csv.DictReader(fh)
        required = {OFFICIAL_NAME_COLUMN, OFFICIAL_GAIN_COLUMN}
        missing = required - set(reader.fieldnames or [])
        if missing:
            raise ValueError(f"{path}: missing columns {sorted(missing)}")
        for row_no, raw in enumerate(reader, start=2):
            name = (raw.get(OFFICIAL_NAME_COLUMN) or "").strip()
            try:
                gain = float(raw.get(OFFICIAL_GAIN_COLUMN) or "")
            except ValueError:
                logging.warning("%s:%d: unparseable official gain %r", path, row_no, raw.get(OFFICIAL_GAIN_COLUMN))
                continue
            if not name:
                logging.warning("%s:%d: row without filename", path, row_no)
                continue
            lookup[name.lower()] = gain
    logging.info("Loaded %d official elevation record(s) from %s", len(lookup), path)
    return lookup


def official_gain_for(name: str, official: Optional[Mapping[str, float]]) -> float:
    if not official:
        return 0.0
    return float(official.get(name.lower(), 0.0))


# -----------------
# Track loaders
# -----------------

def load_gpx_trace(path: str, official: Optional[Mapping[str, float]] = None) -> Trace:
    name = os.path.basename(path)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            gpx = gpxpy.parse(fh)
    except (OSError, gpxpy.gpx.GPXException) as exc:
        raise ValueError(f"{name}: failed to read GPX: {exc}") from exc

    coords: List[Tuple[float, float]] = []
    elevations: List[float] = []
    stamps: List[Optional[Any]] = []

    def _collect(point) -> None:
        if point.elevation is None:
            return
        coords.append((point.latitude, point.longitude))
        elevations.append(float(point.elevation))
        stamps.append(point.time)

    for track in gpx.tracks:
        for segment in track.segments:
            for point in segment.points:
                _collect(point)
    if not coords:
        for route in gpx.routes:
            for point in route.points:
                _collect(point)
    if not coords:
        raise ValueError(f"{name}: no track or route points with elevation")

    return Trace.from_sequences(
        name,
        elevations,
        cumulative_distances(coords),
        _elapsed_seconds(stamps, len(coords)),
        official_gain=official_gain_for(name, official),
    )


def load_fit_trace(path: str, official: Optional[Mapping[str, float]] = None) -> Trace:
    name = os.path.basename(path)
    try:
        fit = FitFile(path)
        fit.parse()
    except (OSError, FitParseError) as exc:
        raise ValueError(f"{name}: failed to read FIT: {exc}") from exc

    elevations: List[float] = []
    coords: List[Optional[Tuple[float, float]]] = []
    device_dist: List[Optional[float]] = []
    stamps: List[Optional[Any]] = []
    for msg in fit.get_messages("record"):
        vals = msg.get_values()
        alt = vals.get("enhanced_altitude")
        if alt is None:
            alt = vals.get("altitude")
        if alt is None:
            continue
        lat = vals.get("position_lat")
        lon = vals.get("position_long")
        if lat is not None and lon is not None:
            coords.append((float(lat) * SEMICIRCLE_TO_DEG, float(lon) * SEMICIRCLE_TO_DEG))
        else:
            coords.append(None)
        dist = vals.get("distance")
        device_dist.append(float(dist) if dist is not None else None)
        elevations.append(float(alt))
        stamps.append(vals.get("timestamp"))

    if not elevations:
        raise ValueError(f"{name}: no records with altitude")

    # Prefer the device odometer; otherwise derive distance from positions.
    if all(d is not None for d in device_dist):
        distances = list(np.maximum.accumulate(np.asarray(device_dist, dtype=np.float64)))
    elif all(c is not None for c in coords):
        distances = cumulative_distances(coords)  # type: ignore[arg-type]
    else:
        raise ValueError(f"{name}: records lack both distance and position fields")

    return Trace.from_sequences(
        name,
        elevations,
        distances,
        _elapsed_seconds(stamps, len(elevations)),
        official_gain=official_gain_for(name, official),
    )


def load_trace(path: str, official: Optional[Mapping[str, float]] = None) -> Trace:
    suffix = Path(path).suffix.lower()
    if suffix == ".gpx":
        return load_gpx_trace(path, official)
    if suffix == ".fit":
        return load_fit_trace(path, official)
    raise ValueError(f"{os.path.basename(path)}: unsupported track format {suffix or '(none)'}")


def expand_track_paths(paths: Iterable[str]) -> List[str]:
    out: List[str] = []
    for raw in paths:
        p = Path(raw)
        if p.is_dir():
            out.extend(
                str(child)
                for child in sorted(p.iterdir())
                if child.is_file() and child.suffix.lower() in SUPPORTED_SUFFIXES
            )
        else:
            out.append(str(p))
    return out


def load_corpus(
    paths: Sequence[str],
    official: Optional[Mapping[str, float]] = None,
    workers: int = 0,
) -> Dict[str, Trace]:
    logging.info("Reading %d track file(s)...", len(paths))
    traces: List[Optional[Trace]] = [None] * len(paths)

    def _load(path: str) -> Optional[Trace]:
        try:
            return load_trace(path, official)
        except ValueError as exc:
            logging.warning("Skipping %s", exc)
            return None

    if workers != 1 and len(paths) > 1:
        max_workers = workers if workers and workers > 0 else min(len(paths), max(1, (os.cpu_count() or 1)))
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_map = {}
            for idx, path in enumerate(paths):
                logging.debug("Parsing: %s", path)
                future_map[executor.submit(_load, path)] = idx
            for future in as_completed(future_map):
                traces[future_map[future]] = future.result()
    else:
        for idx, path in enumerate(paths):
            logging.debug("Parsing: %s", path)
            traces[idx] = _load(path)

    corpus = corpus_from_traces(t for t in traces if t is not None)
    logging.info("Loaded %d trace(s)", len(corpus))
    return corpus


# -----------------
# Report sink
# -----------------

def summary_row(summary: IntervalSummary) -> List[Any]:
    row: List[Any] = [f"{summary.interval:.2f}"]
    for variant in VARIANTS:
        vs = summary.variant(variant)
        row.extend([
            f"{vs.weighted_score:.0f}",
            vs.band_98_102,
            vs.band_95_105,
            vs.band_90_110,
            vs.outside_80_120,
            f"{vs.median_accuracy:.1f}",
            f"{vs.worst_accuracy:.1f}",
        ])
    row.append(f"{summary.delta_quality_adjusted:+.0f}")
    row.append(f"{summary.delta_combined:+.0f}")
    return row


def write_summary_csv(path: str, summaries: Sequence[IntervalSummary]) -> None:
    with open(path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(SUMMARY_COLUMNS)
        for summary in summaries:
            writer.writerow(summary_row(summary))
    logging.info("Wrote: %s", path)


def write_comparison_csv(path: str, rows: Sequence[ComparisonRow]) -> None:
    with open(path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(COMPARISON_COLUMNS)
        for row in rows:
            vs = row.summary
            writer.writerow([
                VARIANT_LABELS[row.variant],
                f"{row.interval:.2f}",
                f"{vs.weighted_score:.0f}",
                vs.band_98_102,
                vs.band_95_105,
                vs.band_90_110,
                vs.outside_80_120,
                f"{vs.median_accuracy:.1f}",
                f"{vs.worst_accuracy:.1f}",
                f"{vs.success_rate:.1f}",
            ])
    logging.info("Wrote: %s", path)
