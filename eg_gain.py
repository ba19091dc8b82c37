from __future__ import annotations

import itertools
import logging
import math
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy.signal import fftconvolve


# -----------------
# Constants
# -----------------

MIN_RESAMPLE_INTERVAL_M = 0.1
MAX_RESAMPLE_POINTS = 1_000_000

GAP_THRESHOLD_S = 10.0
IDEAL_SPACING_M = 10.0
SPACING_TOLERANCE_M = 50.0

MIN_OUTLIER_SAMPLES = 10
OUTLIER_IQR_FACTOR = 2.0

ELEVATION_VARIATION_TOL_M = 0.1

BAND_TIGHT = (98.0, 102.0)
BAND_CLOSE = (95.0, 105.0)
BAND_WIDE = (90.0, 110.0)
FAILURE_BAND = (80.0, 120.0)

# Weights: tight band, close-only, wide-only, penalty outside the failure band.
SCORE_WEIGHTS = (10.0, 6.0, 3.0, 5.0)

DEFAULT_SWEEP_START_M = 0.05
DEFAULT_SWEEP_STOP_M = 8.0
DEFAULT_SWEEP_STEP_M = 0.05


class _StageProfiler:
    def __init__(self, enabled: bool) -> None:
        self.enabled = enabled
        self._last = time.perf_counter()

    def lap(self, label: str) -> None:
        if not self.enabled:
            return
        now = time.perf_counter()
        logging.info("Profile %-18s %.3fs", label, now - self._last)
        self._last = now


def _setup_logging(verbose: bool, log_file: Optional[str] = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(message)s"
    datefmt = "%H:%M:%S"
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt)
    if log_file:
        fh = logging.FileHandler(log_file, mode="w")
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(fmt, datefmt))
        logging.getLogger().addHandler(fh)
    # Suppress very chatty third-party DEBUG logs (e.g., matplotlib findfont)
    logging.getLogger("matplotlib").setLevel(logging.WARNING)
    logging.getLogger("matplotlib.font_manager").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.INFO)
    logging.getLogger("fontTools").setLevel(logging.INFO)


def _assert_monotonic_non_decreasing(values: Sequence[float], *, name: str, tol: float = 1e-6) -> None:
    if not logging.getLogger().isEnabledFor(logging.DEBUG):
        return
    if len(values) == 0:
        return
    prev = float(values[0])
    for idx in range(1, len(values)):
        current = float(values[idx])
        if current + tol < prev:
            raise AssertionError(
                f"{name} violates monotonicity at index {idx}: {current:.6f} < {prev:.6f}"
            )
        if current > prev:
            prev = current


def _format_gain(value_m: float) -> str:
    if not math.isfinite(value_m):
        return "--"
    return f"{value_m:.0f} m"


# -----------------
# Data structures
# -----------------

def _frozen_array(values: Iterable[float]) -> np.ndarray:
    arr = np.array(values, dtype=np.float64)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class Trace:
    name: str
    elevations: np.ndarray
    distances: np.ndarray
    times: np.ndarray
    official_gain: float = 0.0

    @classmethod
    def from_sequences(
        cls,
        name: str,
        elevations: Sequence[float],
        distances: Sequence[float],
        times: Optional[Sequence[float]] = None,
        official_gain: float = 0.0,
    ) -> "Trace":
        elev = _frozen_array(elevations)
        dist = _frozen_array(distances)
        if times is None:
            tms = _frozen_array(np.arange(elev.size, dtype=np.float64))
        else:
            tms = _frozen_array(times)
        if elev.ndim != 1 or elev.size == 0:
            raise ValueError(f"{name}: a trace needs at least one elevation sample")
        if dist.shape != elev.shape or tms.shape != elev.shape:
            raise ValueError(
                f"{name}: elevation/distance/time lengths differ "
                f"({elev.size}/{dist.size}/{tms.size})"
            )
        _assert_monotonic_non_decreasing(dist, name=f"{name} distances")
        _assert_monotonic_non_decreasing(tms, name=f"{name} times")
        gain = float(official_gain) if official_gain and math.isfinite(official_gain) else 0.0
        return cls(name=name, elevations=elev, distances=dist, times=tms, official_gain=gain)

    @property
    def n_samples(self) -> int:
        return int(self.elevations.size)

    @property
    def total_distance(self) -> float:
        if self.distances.size < 2:
            return 0.0
        return float(self.distances[-1] - self.distances[0])

    @property
    def has_ground_truth(self) -> bool:
        return self.official_gain > 0.0

    def has_elevation_variation(self, tol: float = ELEVATION_VARIATION_TOL_M) -> bool:
        if self.elevations.size == 0:
            return False
        return bool(np.any(np.abs(self.elevations - self.elevations[0]) > tol))

    def with_elevations(self, elevations: Sequence[float]) -> "Trace":
        return Trace.from_sequences(
            self.name,
            elevations,
            self.distances,
            self.times,
            official_gain=self.official_gain,
        )


class TerrainClass(str, Enum):
    FLAT = "flat"
    ROLLING = "rolling"
    HILLY = "hilly"
    MOUNTAINOUS = "mountainous"


@dataclass(frozen=True)
class TerrainParams:
    window_m: float
    max_gradient_pct: float
    deadband_m: float


# Ordered (upper bound in m/km, class, parameters); the first bound the
# gain/distance ratio falls strictly below wins.
TERRAIN_TABLE: Tuple[Tuple[float, TerrainClass, TerrainParams], ...] = (
    (12.0, TerrainClass.FLAT, TerrainParams(window_m=900.0, max_gradient_pct=6.0, deadband_m=3.0)),
    (30.0, TerrainClass.ROLLING, TerrainParams(window_m=450.0, max_gradient_pct=12.0, deadband_m=4.0)),
    (60.0, TerrainClass.HILLY, TerrainParams(window_m=210.0, max_gradient_pct=18.0, deadband_m=6.0)),
    (math.inf, TerrainClass.MOUNTAINOUS, TerrainParams(window_m=150.0, max_gradient_pct=25.0, deadband_m=8.0)),
)


@dataclass(frozen=True)
class EstimateDetails:
    terrain: TerrainClass
    params: TerrainParams
    raw_gain_m: float
    gain_per_km: float
    requested_interval_m: float
    effective_interval_m: float
    resampled_points: int
    gain_m: float


@dataclass(frozen=True)
class QualityProfile:
    average_spacing_m: float
    sampling_frequency_hz: float
    noise_ratio: float
    gap_count: int
    consistency: float
    score: float

    @classmethod
    def degenerate(cls) -> "QualityProfile":
        return cls(
            average_spacing_m=0.0,
            sampling_frequency_hz=0.0,
            noise_ratio=1.0,
            gap_count=0,
            consistency=0.0,
            score=0.0,
        )

    @property
    def is_degenerate(self) -> bool:
        return self.score == 0.0 and self.noise_ratio == 1.0


@dataclass(frozen=True)
class CorrectionConfig:
    """Empirical multipliers applied to low-quality traces.

    Calibrated against a validation corpus of official route gains; they are
    tunables, not physical constants. ``sampling_factors`` apply when the
    sampling frequency is strictly below the bound, ``noise_factors`` when the
    noise ratio is strictly above it. The first matching entry wins.
    """

    quality_threshold: float = 50.0
    sampling_factors: Tuple[Tuple[float, float], ...] = ((0.5, 1.20), (1.0, 1.10))
    noise_factors: Tuple[Tuple[float, float], ...] = ((0.5, 1.15), (0.3, 1.08))


DEFAULT_CORRECTIONS = CorrectionConfig()


class Variant(str, Enum):
    BASELINE = "baseline"
    QUALITY_ADJUSTED = "quality_adjusted"
    COMBINED = "combined"


VARIANTS: Tuple[Variant, ...] = (Variant.BASELINE, Variant.QUALITY_ADJUSTED, Variant.COMBINED)

VARIANT_LABELS = {
    Variant.BASELINE: "Baseline",
    Variant.QUALITY_ADJUSTED: "Quality adjusted",
    Variant.COMBINED: "Combined",
}


@dataclass(frozen=True)
class AccuracyRecord:
    interval: float
    trace_id: str
    variant: Variant
    accuracy: float


@dataclass(frozen=True)
class VariantSummary:
    total: int
    band_98_102: int
    band_95_105: int
    band_90_110: int
    outside_80_120: int
    weighted_score: float
    median_accuracy: float
    worst_accuracy: float

    @property
    def success_rate(self) -> float:
        if self.total <= 0:
            return 0.0
        return self.band_90_110 / self.total * 100.0


@dataclass(frozen=True)
class IntervalSummary:
    interval: float
    baseline: VariantSummary
    quality_adjusted: VariantSummary
    combined: VariantSummary

    def variant(self, variant: Variant) -> VariantSummary:
        return getattr(self, variant.value)

    @property
    def delta_quality_adjusted(self) -> float:
        return self.quality_adjusted.weighted_score - self.baseline.weighted_score

    @property
    def delta_combined(self) -> float:
        return self.combined.weighted_score - self.baseline.weighted_score


@dataclass(frozen=True)
class ComparisonRow:
    variant: Variant
    interval: float
    summary: VariantSummary


@dataclass
class EvaluationReport:
    summaries: List[IntervalSummary]
    by_interval: List[IntervalSummary]
    excluded: List[Tuple[str, str]] = field(default_factory=list)
    n_traces: int = 0
    n_units: int = 0
    n_skipped_units: int = 0
    elapsed_s: float = 0.0

    def best_by_variant(self) -> Dict[Variant, IntervalSummary]:
        best: Dict[Variant, IntervalSummary] = {}
        if not self.by_interval:
            return best
        for variant in VARIANTS:
            best[variant] = max(self.by_interval, key=lambda s: s.variant(variant).weighted_score)
        return best

    def comparison_at_combined_optimum(self) -> List[ComparisonRow]:
        best = self.best_by_variant()
        if Variant.COMBINED not in best:
            return []
        anchor = best[Variant.COMBINED]
        return [ComparisonRow(variant=v, interval=anchor.interval, summary=anchor.variant(v)) for v in VARIANTS]


# -----------------
# Terrain-adaptive estimation
# -----------------

def raw_gain(elevations: Sequence[float]) -> float:
    elev = np.asarray(elevations, dtype=np.float64)
    if elev.size < 2:
        return 0.0
    dz = np.diff(elev)
    return float(np.sum(dz[dz > 0]))


def gain_per_km(elevations: Sequence[float], distances: Sequence[float]) -> float:
    dist = np.asarray(distances, dtype=np.float64)
    if dist.size < 2:
        return 0.0
    span_km = float(dist[-1] - dist[0]) / 1000.0
    if span_km <= 0:
        return 0.0
    return raw_gain(elevations) / span_km


def classify_terrain(
    ratio_m_per_km: float,
    table: Sequence[Tuple[float, TerrainClass, TerrainParams]] = TERRAIN_TABLE,
) -> Tuple[TerrainClass, TerrainParams]:
    for upper, terrain, params in table:
        if ratio_m_per_km < upper:
            return terrain, params
    _, terrain, params = table[-1]
    return terrain, params


def resample_uniform(
    elevations: np.ndarray,
    distances: np.ndarray,
    interval: float,
) -> Tuple[np.ndarray, np.ndarray, float]:
    """Linearly interpolate elevations onto a regular distance grid.

    Returns (grid distances, grid elevations, effective step). The step is
    floored at MIN_RESAMPLE_INTERVAL_M and coarsened when the grid would
    exceed MAX_RESAMPLE_POINTS.
    """
    step = max(float(interval), MIN_RESAMPLE_INTERVAL_M)
    # Repeated distances (stationary fixes) keep their first sample.
    keep = np.concatenate(([True], np.diff(distances) > 0))
    dist = distances[keep]
    elev = elevations[keep]
    span = float(dist[-1] - dist[0])
    if span <= 0:
        return dist[:1].copy(), elev[:1].copy(), step
    n_points = int(math.floor(span / step)) + 1
    if n_points > MAX_RESAMPLE_POINTS:
        coarse = span / (MAX_RESAMPLE_POINTS - 1)
        logging.warning(
            "Resampling %.1fm at %.3fm would need %d points; coarsening to %.3fm",
            span,
            step,
            n_points,
            coarse,
        )
        step = coarse
        n_points = MAX_RESAMPLE_POINTS
    grid = float(dist[0]) + np.arange(n_points, dtype=np.float64) * step
    grid = grid[grid <= float(dist[-1]) + 1e-9]
    return grid, np.interp(grid, dist, elev), step


def median_despike(values: np.ndarray) -> np.ndarray:
    out = np.array(values, dtype=np.float64)
    if out.size < 3:
        return out
    triples = np.stack((values[:-2], values[1:-1], values[2:]))
    out[1:-1] = np.median(triples, axis=0)
    return out


def gaussian_kernel(width: int) -> np.ndarray:
    half = max(0, int(width) // 2)
    sigma = max(float(width) / 6.0, 1e-9)
    offsets = np.arange(-half, half + 1, dtype=np.float64)
    return np.exp(-0.5 * (offsets / sigma) ** 2)


def gaussian_smooth(values: np.ndarray, width: int) -> np.ndarray:
    """Gaussian-weighted moving average, renormalised at the edges."""
    if values.size < 2 or width < 2:
        return np.array(values, dtype=np.float64)
    kernel = gaussian_kernel(width)
    weighted = fftconvolve(values, kernel, mode="same")
    norm = fftconvolve(np.ones_like(values), kernel, mode="same")
    return weighted / norm


def capped_deltas(values: np.ndarray, step: float, max_gradient_pct: float) -> np.ndarray:
    deltas = np.diff(values)
    limit = max(0.0, float(max_gradient_pct)) / 100.0 * float(step)
    return np.clip(deltas, -limit, limit)


def deadband_gain(deltas: np.ndarray, deadband_m: float) -> float:
    """Sum the rises of contiguous climbs whose total exceeds ``deadband_m``.

    Shorter climbs are treated as noise; descents never contribute.
    """
    if deltas.size == 0:
        return 0.0
    pos = deltas > 0
    if not np.any(pos):
        return 0.0
    starts = pos & ~np.concatenate(([False], pos[:-1]))
    run_ids = np.cumsum(starts) - 1
    rises = np.bincount(run_ids[pos], weights=deltas[pos])
    return float(np.sum(rises[rises > deadband_m]))


def _validate_elevation_inputs(elevations, distances) -> Tuple[np.ndarray, np.ndarray]:
    elev = np.asarray(elevations, dtype=np.float64)
    dist = np.asarray(distances, dtype=np.float64)
    if elev.ndim != 1 or dist.ndim != 1:
        raise ValueError("elevations and distances must be one-dimensional")
    if elev.shape != dist.shape:
        raise ValueError(
            f"elevations and distances must have the same length ({elev.size} != {dist.size})"
        )
    return elev, dist


class TerrainAdaptiveEstimator:
    """Resample, despike, smooth and deadband an elevation trace.

    Smoothing window, gradient cap and deadband are chosen from the terrain
    table by the trace's raw gain per kilometre.
    """

    def __init__(self, terrain_table: Sequence[Tuple[float, TerrainClass, TerrainParams]] = TERRAIN_TABLE) -> None:
        if not terrain_table:
            raise ValueError("terrain_table must contain at least one entry")
        self.terrain_table = tuple(terrain_table)

    def estimate(self, elevations: Sequence[float], distances: Sequence[float], interval: float) -> float:
        return self.estimate_with_details(elevations, distances, interval).gain_m

    def estimate_with_details(
        self,
        elevations: Sequence[float],
        distances: Sequence[float],
        interval: float,
    ) -> EstimateDetails:
        elev, dist = _validate_elevation_inputs(elevations, distances)
        if not math.isfinite(interval) or interval <= 0:
            raise ValueError(f"interval must be positive, got {interval!r}")

        ratio = gain_per_km(elev, dist)
        terrain, params = classify_terrain(ratio, self.terrain_table)
        raw = raw_gain(elev)
        if elev.size < 2 or dist[-1] - dist[0] <= 0:
            return EstimateDetails(terrain, params, raw, ratio, float(interval), float(interval), int(elev.size), 0.0)

        _, grid_elev, step = resample_uniform(elev, dist, interval)
        despiked = median_despike(grid_elev)
        width = max(3, int(round(params.window_m / step)))
        smoothed = gaussian_smooth(despiked, width)
        deltas = capped_deltas(smoothed, step, params.max_gradient_pct)
        gain = deadband_gain(deltas, params.deadband_m)
        return EstimateDetails(
            terrain=terrain,
            params=params,
            raw_gain_m=raw,
            gain_per_km=ratio,
            requested_interval_m=float(interval),
            effective_interval_m=step,
            resampled_points=int(grid_elev.size),
            gain_m=max(0.0, gain),
        )


# -----------------
# GPS quality
# -----------------

def _sign_reversal_ratio(deltas: np.ndarray) -> float:
    if deltas.size < 2:
        return 0.0
    reversals = np.count_nonzero(deltas[:-1] * deltas[1:] < 0)
    return float(reversals) / float(deltas.size - 1)


def spacing_fitness(spacing_m: float) -> float:
    return max(0.0, 1.0 - abs(spacing_m - IDEAL_SPACING_M) / SPACING_TOLERANCE_M)


def quality_score(spacing_m: float, frequency_hz: float, noise_ratio: float, consistency: float) -> float:
    terms = (
        spacing_fitness(spacing_m),
        max(0.0, min(frequency_hz, 1.0)),
        max(0.0, 1.0 - noise_ratio),
        max(0.0, consistency),
    )
    return float(min(100.0, 25.0 * sum(terms)))


class GpsQualityAnalyzer:
    def __init__(self, gap_threshold_s: float = GAP_THRESHOLD_S) -> None:
        self.gap_threshold_s = float(gap_threshold_s)

    def analyze(self, trace: Trace) -> QualityProfile:
        n = trace.n_samples
        if n < 2:
            return QualityProfile.degenerate()
        spacing = trace.total_distance / (n - 1)
        total_time = float(trace.times[-1] - trace.times[0])
        frequency = (n - 1) / total_time if total_time > 0 else 0.0
        dz = np.diff(trace.elevations)
        noise = _sign_reversal_ratio(dz)
        gaps = int(np.count_nonzero(np.diff(trace.times) > self.gap_threshold_s))
        consistency = 1.0 / (1.0 + math.sqrt(float(np.var(dz))))
        return QualityProfile(
            average_spacing_m=float(spacing),
            sampling_frequency_hz=float(frequency),
            noise_ratio=noise,
            gap_count=gaps,
            consistency=consistency,
            score=quality_score(spacing, frequency, noise, consistency),
        )


def _factor_below(value: float, table: Sequence[Tuple[float, float]]) -> float:
    for bound, factor in table:
        if value < bound:
            return factor
    return 1.0


def _factor_above(value: float, table: Sequence[Tuple[float, float]]) -> float:
    for bound, factor in table:
        if value > bound:
            return factor
    return 1.0


class QualityAdjustedEstimator:
    def __init__(
        self,
        base: Optional[TerrainAdaptiveEstimator] = None,
        analyzer: Optional[GpsQualityAnalyzer] = None,
        corrections: CorrectionConfig = DEFAULT_CORRECTIONS,
    ) -> None:
        self.base = base or TerrainAdaptiveEstimator()
        self.analyzer = analyzer or GpsQualityAnalyzer()
        self.corrections = corrections

    def correction_factor(self, profile: QualityProfile) -> float:
        cfg = self.corrections
        if profile.score >= cfg.quality_threshold:
            return 1.0
        sampling = _factor_below(profile.sampling_frequency_hz, cfg.sampling_factors)
        noise = _factor_above(profile.noise_ratio, cfg.noise_factors)
        return sampling * noise

    def estimate(self, trace: Trace, interval: float, profile: Optional[QualityProfile] = None) -> float:
        if profile is None:
            profile = self.analyzer.analyze(trace)
        gain = self.base.estimate(trace.elevations, trace.distances, interval)
        return gain * self.correction_factor(profile)


# -----------------
# Gradient outliers
# -----------------

def quartiles_by_index(values: np.ndarray) -> Tuple[float, float]:
    # Positional lookup (len/4, 3*len/4) into the sorted values, no interpolation.
    ordered = np.sort(values)
    n = ordered.size
    return float(ordered[n // 4]), float(ordered[(n * 3) // 4])


class GradientOutlierFilter:
    def __init__(self, iqr_factor: float = OUTLIER_IQR_FACTOR, min_samples: int = MIN_OUTLIER_SAMPLES) -> None:
        self.iqr_factor = float(iqr_factor)
        self.min_samples = int(min_samples)

    def bounds(self, gradients: np.ndarray) -> Tuple[float, float]:
        q1, q3 = quartiles_by_index(gradients)
        iqr = q3 - q1
        return q1 - self.iqr_factor * iqr, q3 + self.iqr_factor * iqr

    def clean(self, elevations: Sequence[float], distances: Sequence[float]) -> np.ndarray:
        elev, dist = _validate_elevation_inputs(elevations, distances)
        cleaned = elev.copy()
        n = elev.size
        if n < self.min_samples:
            return cleaned

        dd = np.diff(dist)
        dz = np.diff(elev)
        moving = dd > 0
        gradients = dz[moving] / dd[moving] * 100.0
        m = gradients.size
        if m == 0:
            return cleaned
        lower, upper = self.bounds(gradients)
        valid = (gradients >= lower) & (gradients <= upper)
        valid_idx = np.flatnonzero(valid)

        limit = min(n - 1, m)
        # Sample i is judged by the gradient that precedes it (index i - 1).
        suspects = np.flatnonzero(~valid[: max(0, limit - 1)]) + 1
        replaced = 0
        for i in suspects:
            pos = int(np.searchsorted(valid_idx, i, side="left"))
            prev = int(valid_idx[pos - 1]) if pos > 0 else 0
            nxt = int(valid_idx[pos]) + 1 if pos < valid_idx.size else m
            if nxt <= prev:
                continue
            weight = (i - prev) / (nxt - prev)
            cleaned[i] = cleaned[prev] * (1.0 - weight) + cleaned[nxt] * weight
            replaced += 1
        if replaced:
            logging.debug(
                "Gradient outliers: %d/%d samples interpolated (bounds %.1f%%..%.1f%%)",
                replaced,
                n,
                lower,
                upper,
            )
        return cleaned


class CombinedEstimator:
    def __init__(
        self,
        outlier_filter: Optional[GradientOutlierFilter] = None,
        adjusted: Optional[QualityAdjustedEstimator] = None,
    ) -> None:
        self.outlier_filter = outlier_filter or GradientOutlierFilter()
        self.adjusted = adjusted or QualityAdjustedEstimator()

    def estimate(self, trace: Trace, interval: float, profile: Optional[QualityProfile] = None) -> float:
        # The profile always describes the uncleaned trace.
        if profile is None:
            profile = self.adjusted.analyzer.analyze(trace)
        cleaned = trace.with_elevations(self.outlier_filter.clean(trace.elevations, trace.distances))
        return self.adjusted.estimate(cleaned, interval, profile)


# -----------------
# Accuracy scoring
# -----------------

def accuracy_ratio(estimate_m: float, official_m: float) -> Optional[float]:
    if official_m is None or official_m <= 0:
        return None
    return float(estimate_m) / float(official_m) * 100.0


def _count_within(accs: np.ndarray, band: Tuple[float, float]) -> int:
    lo, hi = band
    return int(np.count_nonzero((accs >= lo) & (accs <= hi)))


def band_counts(accuracies: Sequence[float]) -> Tuple[int, int, int, int]:
    accs = np.asarray(accuracies, dtype=np.float64)
    lo, hi = FAILURE_BAND
    outside = int(np.count_nonzero((accs < lo) | (accs > hi)))
    return _count_within(accs, BAND_TIGHT), _count_within(accs, BAND_CLOSE), _count_within(accs, BAND_WIDE), outside


def weighted_score(tight: int, close: int, wide: int, outside: int) -> float:
    w_tight, w_close, w_wide, w_fail = SCORE_WEIGHTS
    return (
        w_tight * tight
        + w_close * (close - tight)
        + w_wide * (wide - close)
        - w_fail * outside
    )


def median_accuracy(accuracies: Sequence[float]) -> float:
    ordered = sorted(float(a) for a in accuracies)
    n = len(ordered)
    if n == 0:
        return 0.0
    mid = n // 2
    if n % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2.0
    return ordered[mid]


def worst_accuracy(accuracies: Sequence[float]) -> float:
    worst: Optional[float] = None
    worst_key = -1
    for acc in accuracies:
        # Deviations are compared at milli-percent resolution.
        key = int(abs(float(acc) - 100.0) * 1000.0)
        if key > worst_key:
            worst_key = key
            worst = float(acc)
    return worst if worst is not None else 0.0


def summarize_accuracies(accuracies: Sequence[float]) -> VariantSummary:
    accs = [float(a) for a in accuracies]
    if not accs:
        return VariantSummary(0, 0, 0, 0, 0, 0.0, 0.0, 0.0)
    tight, close, wide, outside = band_counts(accs)
    return VariantSummary(
        total=len(accs),
        band_98_102=tight,
        band_95_105=close,
        band_90_110=wide,
        outside_80_120=outside,
        weighted_score=weighted_score(tight, close, wide, outside),
        median_accuracy=median_accuracy(accs),
        worst_accuracy=worst_accuracy(accs),
    )


# -----------------
# Comparative evaluation
# -----------------

def default_interval_sweep(
    start: float = DEFAULT_SWEEP_START_M,
    stop: float = DEFAULT_SWEEP_STOP_M,
    step: float = DEFAULT_SWEEP_STEP_M,
) -> List[float]:
    if step <= 0:
        raise ValueError("sweep step must be positive")
    if start <= 0 or stop < start:
        raise ValueError(f"invalid sweep range {start}..{stop}")
    count = int(math.floor((stop - start) / step + 1e-6)) + 1
    return _unique_intervals(start + i * step for i in range(count))


def _interval_key(interval: float) -> float:
    return round(float(interval), 2)


def _unique_intervals(intervals: Iterable[float]) -> List[float]:
    # Intervals are reported at centimetre resolution; a finer step collapses.
    out: List[float] = []
    seen = set()
    for interval in intervals:
        key = _interval_key(interval)
        if key not in seen:
            seen.add(key)
            out.append(key)
    return out


def corpus_from_traces(traces: Iterable[Trace]) -> Dict[str, Trace]:
    corpus: Dict[str, Trace] = {}
    for trace in traces:
        if trace.name in corpus:
            logging.warning("Duplicate trace name %s; keeping the last one", trace.name)
        corpus[trace.name] = trace
    return corpus


class ComparativeEvaluationHarness:
    """Sweep processing intervals over a corpus and score three estimator variants.

    Every (interval, trace) pair is an independent work item evaluated on a
    thread pool against a read-only corpus. Results are collected by item
    position and aggregated only after the pool drains, so summaries do not
    depend on completion order.
    """

    def __init__(
        self,
        baseline: Optional[TerrainAdaptiveEstimator] = None,
        adjusted: Optional[QualityAdjustedEstimator] = None,
        combined: Optional[CombinedEstimator] = None,
        analyzer: Optional[GpsQualityAnalyzer] = None,
        workers: int = 0,
        progress_every: int = 500,
    ) -> None:
        self.baseline = baseline or TerrainAdaptiveEstimator()
        self.analyzer = analyzer or GpsQualityAnalyzer()
        self.adjusted = adjusted or QualityAdjustedEstimator(base=self.baseline, analyzer=self.analyzer)
        self.combined = combined or CombinedEstimator(adjusted=self.adjusted)
        self.workers = int(workers)
        self.progress_every = max(1, int(progress_every))

    def filter_corpus(self, corpus: Mapping[str, Trace]) -> Tuple[List[str], List[Tuple[str, str]]]:
        usable: List[str] = []
        excluded: List[Tuple[str, str]] = []
        for trace_id in sorted(corpus):
            trace = corpus[trace_id]
            if not trace.has_ground_truth:
                logging.debug("Excluding %s - no official gain", trace_id)
                excluded.append((trace_id, "no official gain"))
                continue
            if not trace.has_elevation_variation():
                logging.info("Excluding %s - no elevation variation detected", trace_id)
                excluded.append((trace_id, "no elevation variation"))
                continue
            usable.append(trace_id)
        return usable, excluded

    def evaluate_unit(
        self,
        corpus: Mapping[str, Trace],
        profiles: Mapping[str, QualityProfile],
        interval: float,
        trace_id: str,
    ) -> Optional[Tuple[AccuracyRecord, ...]]:
        trace = corpus.get(trace_id)
        if trace is None or not trace.has_ground_truth:
            return None
        profile = profiles.get(trace_id)
        if profile is None:
            profile = self.analyzer.analyze(trace)
        try:
            base_gain = self.baseline.estimate(trace.elevations, trace.distances, interval)
            if self.adjusted.base is self.baseline:
                adjusted_gain = base_gain * self.adjusted.correction_factor(profile)
            else:
                adjusted_gain = self.adjusted.estimate(trace, interval, profile)
            gains = (
                base_gain,
                adjusted_gain,
                self.combined.estimate(trace, interval, profile),
            )
        except ValueError as exc:
            logging.warning("Skipping %s at %.2fm: %s", trace_id, interval, exc)
            return None
        records = []
        for variant, gain in zip(VARIANTS, gains):
            acc = accuracy_ratio(gain, trace.official_gain)
            if acc is None:
                return None
            records.append(AccuracyRecord(interval=interval, trace_id=trace_id, variant=variant, accuracy=acc))
        return tuple(records)

    def _run_units(
        self,
        corpus: Mapping[str, Trace],
        profiles: Mapping[str, QualityProfile],
        work_items: Sequence[Tuple[float, str]],
    ) -> List[Optional[Tuple[AccuracyRecord, ...]]]:
        total = len(work_items)
        completed = itertools.count(1)
        start = time.perf_counter()

        def _unit(item: Tuple[float, str]) -> Optional[Tuple[AccuracyRecord, ...]]:
            interval, trace_id = item
            result = self.evaluate_unit(corpus, profiles, interval, trace_id)
            done = next(completed)
            if done % self.progress_every == 0 or done == total:
                elapsed = max(time.perf_counter() - start, 1e-9)
                rate = done / elapsed
                remaining = (total - done) / rate if rate > 0 else 0.0
                logging.info(
                    "Progress: %d/%d (%.1f%%) - %.0f items/sec - ETA: %.0fs",
                    done,
                    total,
                    done / total * 100.0,
                    rate,
                    remaining,
                )
            return result

        results: List[Optional[Tuple[AccuracyRecord, ...]]] = [None] * total
        if self.workers != 1 and total > 1:
            max_workers = self.workers if self.workers > 0 else max(1, os.cpu_count() or 1)
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                future_map = {}
                for idx, item in enumerate(work_items):
                    future_map[executor.submit(_unit, item)] = idx
                for future in as_completed(future_map):
                    results[future_map[future]] = future.result()
        else:
            for idx, item in enumerate(work_items):
                results[idx] = _unit(item)
        return results

    @staticmethod
    def aggregate(
        records: Iterable[AccuracyRecord],
        interval_sweep: Sequence[float],
    ) -> List[IntervalSummary]:
        grouped: Dict[float, Dict[Variant, List[float]]] = {}
        for rec in records:
            per_variant = grouped.setdefault(_interval_key(rec.interval), {v: [] for v in VARIANTS})
            per_variant[rec.variant].append(rec.accuracy)

        summaries: List[IntervalSummary] = []
        seen = set()
        for interval in interval_sweep:
            key = _interval_key(interval)
            if key in seen:
                continue
            seen.add(key)
            per_variant = grouped.get(key, {v: [] for v in VARIANTS})
            summaries.append(
                IntervalSummary(
                    interval=key,
                    baseline=summarize_accuracies(per_variant[Variant.BASELINE]),
                    quality_adjusted=summarize_accuracies(per_variant[Variant.QUALITY_ADJUSTED]),
                    combined=summarize_accuracies(per_variant[Variant.COMBINED]),
                )
            )
        return summaries

    @staticmethod
    def rank(summaries: Sequence[IntervalSummary]) -> List[IntervalSummary]:
        return sorted(summaries, key=lambda s: -s.combined.weighted_score)

    def evaluate(
        self,
        corpus: Mapping[str, Trace],
        interval_sweep: Optional[Sequence[float]] = None,
        profiler: Optional[_StageProfiler] = None,
    ) -> EvaluationReport:
        t0 = time.perf_counter()
        sweep = list(interval_sweep) if interval_sweep is not None else default_interval_sweep()
        for interval in sweep:
            if not math.isfinite(interval) or interval <= 0:
                raise ValueError(f"sweep intervals must be positive, got {interval!r}")
        requested = len(sweep)
        sweep = _unique_intervals(sweep)
        if len(sweep) < requested:
            logging.warning(
                "Collapsed %d duplicate sweep interval(s) at 0.01m resolution",
                requested - len(sweep),
            )

        usable, excluded = self.filter_corpus(corpus)
        logging.info(
            "Evaluating %d trace(s) over %d interval(s); %d excluded",
            len(usable),
            len(sweep),
            len(excluded),
        )
        profiles = {trace_id: self.analyzer.analyze(corpus[trace_id]) for trace_id in usable}
        for trace_id, profile in profiles.items():
            logging.debug(
                "%s quality %.1f (spacing %.1fm, %.2fHz, noise %.2f, gaps %d)",
                trace_id,
                profile.score,
                profile.average_spacing_m,
                profile.sampling_frequency_hz,
                profile.noise_ratio,
                profile.gap_count,
            )
        if profiler:
            profiler.lap("quality")

        work_items = [(interval, trace_id) for interval in sweep for trace_id in usable]
        logging.info(
            "Processing %d intervals x %d files x %d variants = %d calculations",
            len(sweep),
            len(usable),
            len(VARIANTS),
            len(work_items) * len(VARIANTS),
        )
        results = self._run_units(corpus, profiles, work_items)
        if profiler:
            profiler.lap("sweep")

        records = [rec for unit in results if unit is not None for rec in unit]
        skipped = sum(1 for unit in results if unit is None)
        by_interval = self.aggregate(records, sweep)
        ranked = self.rank(by_interval)
        if profiler:
            profiler.lap("aggregate")

        return EvaluationReport(
            summaries=ranked,
            by_interval=by_interval,
            excluded=excluded,
            n_traces=len(usable),
            n_units=len(work_items),
            n_skipped_units=skipped,
            elapsed_s=time.perf_counter() - t0,
        )
