from __future__ import annotations

# CLI orchestration for elevgain. Estimation and evaluation live in eg_gain,
# file formats and report writing in eg_io, plots in eg_plotting.

import logging
import os
from typing import List, Optional

import typer

from eg_gain import (
    VARIANTS,
    VARIANT_LABELS,
    ComparativeEvaluationHarness,
    CombinedEstimator,
    GpsQualityAnalyzer,
    QualityAdjustedEstimator,
    TerrainAdaptiveEstimator,
    _StageProfiler,
    _format_gain,
    _setup_logging,
    accuracy_ratio,
    default_interval_sweep,
)
from eg_io import (
    expand_track_paths,
    load_corpus,
    load_official_gains,
    load_trace,
    write_comparison_csv,
    write_summary_csv,
)
from eg_plotting import _plot_score_sweep


def _run_sweep(
    track_files: List[str],
    official_path: Optional[str],
    output: str,
    comparison_output: Optional[str] = None,
    min_interval: float = 0.05,
    max_interval: float = 8.0,
    step: float = 0.05,
    workers: int = 0,
    load_workers: int = 0,
    png: Optional[str] = None,
    no_plot: bool = False,
    verbose: bool = False,
    log_file: Optional[str] = None,
    profile: bool = False,
) -> int:
    _setup_logging(verbose, log_file=log_file)
    profiler = _StageProfiler(profile)

    try:
        sweep = default_interval_sweep(min_interval, max_interval, step)
        official = load_official_gains(official_path) if official_path else {}
        paths = expand_track_paths(track_files)
        corpus = load_corpus(paths, official, workers=load_workers)
    except (OSError, ValueError) as e:
        logging.error(str(e))
        return 2
    if not official:
        logging.warning("No official elevation data loaded; every trace will be excluded")
    profiler.lap("load")

    harness = ComparativeEvaluationHarness(workers=workers)
    report = harness.evaluate(corpus, sweep, profiler=profiler)
    if report.n_traces == 0:
        logging.error("No traces with official gain and elevation variation; nothing to evaluate.")
        return 3
    logging.info(
        "Evaluated %d unit(s) in %.1fs (%d skipped)",
        report.n_units,
        report.elapsed_s,
        report.n_skipped_units,
    )

    try:
        write_summary_csv(output, report.summaries)
        rows = report.comparison_at_combined_optimum()
        if comparison_output is None:
            root, _ = os.path.splitext(output)
            comparison_output = f"{root}_comparison.csv"
        write_comparison_csv(comparison_output, rows)
    except OSError as e:
        logging.error(f"Failed to write report: {e}")
        return 2

    best = report.best_by_variant()
    logging.info("Optimal interval by variant:")
    for variant in VARIANTS:
        opt = best[variant]
        vs = opt.variant(variant)
        logging.info(
            "  %-17s %5.2fm  score %5.0f  98-102%% %3d  90-110%% %3d  outside %3d  success %5.1f%%",
            VARIANT_LABELS[variant],
            opt.interval,
            vs.weighted_score,
            vs.band_98_102,
            vs.band_90_110,
            vs.outside_80_120,
            vs.success_rate,
        )
    if rows:
        logging.info("Comparison at combined optimum (%.2fm):", rows[0].interval)
        for row in rows:
            vs = row.summary
            logging.info(
                "  %-17s score %5.0f  median %6.1f%%  worst %6.1f%%",
                VARIANT_LABELS[row.variant],
                vs.weighted_score,
                vs.median_accuracy,
                vs.worst_accuracy,
            )

    if not no_plot:
        png_path = png or f"{os.path.splitext(output)[0]}.png"
        try:
            _plot_score_sweep(report.by_interval, png_path, best=best)
        except (RuntimeError, OSError) as e:
            logging.warning(f"Plot generation failed: {e}")
    profiler.lap("report")
    return 0


def _run_estimate(
    track_file: str,
    interval: float,
    official_path: Optional[str] = None,
    verbose: bool = False,
) -> int:
    _setup_logging(verbose)
    try:
        official = load_official_gains(official_path) if official_path else {}
        trace = load_trace(track_file, official)
        baseline = TerrainAdaptiveEstimator()
        analyzer = GpsQualityAnalyzer()
        adjusted = QualityAdjustedEstimator(base=baseline, analyzer=analyzer)
        combined = CombinedEstimator(adjusted=adjusted)
        details = baseline.estimate_with_details(trace.elevations, trace.distances, interval)
    except (OSError, ValueError) as e:
        logging.error(str(e))
        return 2

    profile = analyzer.analyze(trace)
    gains = {
        VARIANTS[0]: details.gain_m,
        VARIANTS[1]: adjusted.estimate(trace, interval, profile),
        VARIANTS[2]: combined.estimate(trace, interval, profile),
    }
    logging.info(
        "%s: %d samples, %.2f km, raw gain %s (%.1f m/km, %s)",
        trace.name,
        trace.n_samples,
        trace.total_distance / 1000.0,
        _format_gain(details.raw_gain_m),
        details.gain_per_km,
        details.terrain.value,
    )
    logging.info(
        "Interval %.2fm (effective %.2fm, %d points); window %.0fm, cap %.0f%%, deadband %.1fm",
        details.requested_interval_m,
        details.effective_interval_m,
        details.resampled_points,
        details.params.window_m,
        details.params.max_gradient_pct,
        details.params.deadband_m,
    )
    logging.info("GPS quality score %.1f/100", profile.score)
    for variant, gain in gains.items():
        acc = accuracy_ratio(gain, trace.official_gain)
        acc_text = f" ({acc:.1f}% of official {_format_gain(trace.official_gain)})" if acc is not None else ""
        logging.info("  %-17s %s%s", VARIANT_LABELS[variant], _format_gain(gain), acc_text)
    return 0


def _run_quality(track_files: List[str], verbose: bool = False) -> int:
    _setup_logging(verbose)
    paths = expand_track_paths(track_files)
    if not paths:
        logging.error("No track files given.")
        return 2
    analyzer = GpsQualityAnalyzer()
    failures = 0
    for path in paths:
        try:
            trace = load_trace(path)
        except (OSError, ValueError) as e:
            logging.error(str(e))
            failures += 1
            continue
        p = analyzer.analyze(trace)
        logging.info(
            "%s: score %.1f  spacing %.1fm  %.2fHz  noise %.2f  gaps %d  consistency %.3f",
            trace.name,
            p.score,
            p.average_spacing_m,
            p.sampling_frequency_hz,
            p.noise_ratio,
            p.gap_count,
            p.consistency,
        )
    return 2 if failures == len(paths) else 0


def _build_typer_app():  # pragma: no cover
    app = typer.Typer(add_completion=False, help="Elevation gain estimation and interval sweep evaluation.")

    @app.command()
    def sweep(
        track_files: List[str] = typer.Argument(..., help="Track files (.gpx/.fit) or directories containing them"),
        official: Optional[str] = typer.Option(None, "--official", help="CSV with filename,official_elevation_gain_m"),
        output: str = typer.Option("interval_sweep.csv", "--output", "-o", help="Summary CSV path"),
        comparison_output: Optional[str] = typer.Option(None, "--comparison-output", help="Cross-variant table CSV (defaults next to the summary)"),
        min_interval: float = typer.Option(0.05, "--min-interval", help="First processing interval (m)"),
        max_interval: float = typer.Option(8.0, "--max-interval", help="Last processing interval (m)"),
        step: float = typer.Option(0.05, "--step", help="Interval step (m)"),
        workers: int = typer.Option(0, "--workers", help="Worker threads for the sweep (0=auto, 1=serial)"),
        load_workers: int = typer.Option(0, "--load-workers", help="Worker threads for track parsing (0=auto, 1=serial)"),
        png: Optional[str] = typer.Option(None, "--png", help="Optional output PNG path (defaults next to CSV)"),
        no_plot: bool = typer.Option(False, "--no-plot", help="Disable PNG generation"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
        log_file: Optional[str] = typer.Option(None, "--log-file", help="Optional log file path for diagnostics"),
        profile: bool = typer.Option(False, "--profile/--no-profile", help="Log stage timings for performance profiling"),
    ) -> None:
        """Sweep processing intervals over a corpus and rank the estimator variants."""
        code = _run_sweep(
            track_files,
            official,
            output,
            comparison_output=comparison_output,
            min_interval=min_interval,
            max_interval=max_interval,
            step=step,
            workers=workers,
            load_workers=load_workers,
            png=png,
            no_plot=no_plot,
            verbose=verbose,
            log_file=log_file,
            profile=profile,
        )
        if code != 0:
            raise typer.Exit(code)

    @app.command()
    def estimate(
        track_file: str = typer.Argument(..., help="Track file (.gpx/.fit)"),
        interval: float = typer.Option(1.0, "--interval", "-i", help="Processing interval (m)"),
        official: Optional[str] = typer.Option(None, "--official", help="CSV with filename,official_elevation_gain_m"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
    ) -> None:
        """Estimate elevation gain of one track with all three variants."""
        code = _run_estimate(track_file, interval, official_path=official, verbose=verbose)
        if code != 0:
            raise typer.Exit(code)

    @app.command()
    def quality(
        track_files: List[str] = typer.Argument(..., help="Track files (.gpx/.fit) or directories containing them"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
    ) -> None:
        """Report the GPS quality profile of each track."""
        code = _run_quality(track_files, verbose=verbose)
        if code != 0:
            raise typer.Exit(code)

    return app


def main_cli() -> int:
    app = _build_typer_app()
    app()
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main_cli())
