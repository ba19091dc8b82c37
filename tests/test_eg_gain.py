from __future__ import annotations

import unittest

import numpy as np

import eg_gain


def _zigzag_ramp(name: str = "ramp.gpx", official_gain: float = 50.0) -> eg_gain.Trace:
    # 5 km at 100 m spacing: a 1 m/sample climb with +/-0.5 m alternating noise.
    # Raw deltas alternate 0 and 2 m, i.e. 50 m raw gain or 10 m/km.
    idx = np.arange(51, dtype=np.float64)
    elev = 100.0 + idx + 0.5 * (-1.0) ** idx
    dist = idx * 100.0
    return eg_gain.Trace.from_sequences(name, elev, dist, idx * 10.0, official_gain=official_gain)


class TestTrace(unittest.TestCase):
    def test_from_sequences_defaults_times_to_sample_index(self) -> None:
        trace = eg_gain.Trace.from_sequences("t", [1.0, 2.0, 3.0], [0.0, 5.0, 10.0])
        self.assertEqual(list(trace.times), [0.0, 1.0, 2.0])
        self.assertEqual(trace.n_samples, 3)
        self.assertAlmostEqual(trace.total_distance, 10.0)
        self.assertFalse(trace.has_ground_truth)

    def test_arrays_are_read_only(self) -> None:
        trace = eg_gain.Trace.from_sequences("t", [1.0, 2.0], [0.0, 5.0])
        with self.assertRaises(ValueError):
            trace.elevations[0] = 5.0

    def test_rejects_empty_and_mismatched(self) -> None:
        with self.assertRaises(ValueError):
            eg_gain.Trace.from_sequences("empty", [], [])
        with self.assertRaises(ValueError):
            eg_gain.Trace.from_sequences("bad", [1.0, 2.0], [0.0])

    def test_elevation_variation(self) -> None:
        flat = eg_gain.Trace.from_sequences("c", [50.0, 50.05, 49.95], [0.0, 1.0, 2.0])
        self.assertFalse(flat.has_elevation_variation())
        self.assertTrue(_zigzag_ramp().has_elevation_variation())


class TestTerrainClassification(unittest.TestCase):
    def test_boundaries_are_exclusive_upper(self) -> None:
        cases = [
            (0.0, eg_gain.TerrainClass.FLAT),
            (11.99, eg_gain.TerrainClass.FLAT),
            (12.0, eg_gain.TerrainClass.ROLLING),
            (29.99, eg_gain.TerrainClass.ROLLING),
            (30.0, eg_gain.TerrainClass.HILLY),
            (59.99, eg_gain.TerrainClass.HILLY),
            (60.0, eg_gain.TerrainClass.MOUNTAINOUS),
            (250.0, eg_gain.TerrainClass.MOUNTAINOUS),
        ]
        for ratio, expected in cases:
            terrain, _ = eg_gain.classify_terrain(ratio)
            self.assertEqual(terrain, expected, msg=f"ratio {ratio}")

    def test_flat_parameters(self) -> None:
        _, params = eg_gain.classify_terrain(5.0)
        self.assertEqual(params, eg_gain.TerrainParams(window_m=900.0, max_gradient_pct=6.0, deadband_m=3.0))

    def test_gain_per_km(self) -> None:
        trace = _zigzag_ramp()
        self.assertAlmostEqual(eg_gain.raw_gain(trace.elevations), 50.0)
        self.assertAlmostEqual(eg_gain.gain_per_km(trace.elevations, trace.distances), 10.0)


class TestPipelineSteps(unittest.TestCase):
    def test_deadband_discards_short_runs(self) -> None:
        self.assertEqual(eg_gain.deadband_gain(np.array([1.0, -1.0, 1.0, -1.0]), 3.0), 0.0)
        self.assertAlmostEqual(eg_gain.deadband_gain(np.array([2.0, 2.0, -1.0, 1.0]), 3.0), 4.0)
        # A run must exceed the deadband, not merely reach it.
        self.assertEqual(eg_gain.deadband_gain(np.array([1.5, 1.5]), 3.0), 0.0)

    def test_capped_deltas(self) -> None:
        deltas = eg_gain.capped_deltas(np.array([0.0, 5.0, 5.5, 0.0]), step=10.0, max_gradient_pct=25.0)
        np.testing.assert_allclose(deltas, [2.5, 0.5, -2.5])

    def test_median_despike_keeps_endpoints(self) -> None:
        out = eg_gain.median_despike(np.array([0.0, 0.0, 9.0, 0.0, 5.0]))
        np.testing.assert_allclose(out, [0.0, 0.0, 0.0, 5.0, 5.0])

    def test_gaussian_smooth_preserves_constant(self) -> None:
        values = np.full(200, 42.0)
        np.testing.assert_allclose(eg_gain.gaussian_smooth(values, 31), values, rtol=0, atol=1e-9)

    def test_resample_drops_repeated_distances(self) -> None:
        grid, elev, step = eg_gain.resample_uniform(
            np.array([0.0, 7.0, 10.0]), np.array([0.0, 0.0, 10.0]), 5.0
        )
        np.testing.assert_allclose(grid, [0.0, 5.0, 10.0])
        np.testing.assert_allclose(elev, [0.0, 5.0, 10.0])
        self.assertEqual(step, 5.0)

    def test_resample_floors_interval(self) -> None:
        grid, _, step = eg_gain.resample_uniform(np.array([0.0, 1.0]), np.array([0.0, 1.0]), 0.01)
        self.assertAlmostEqual(step, eg_gain.MIN_RESAMPLE_INTERVAL_M)
        self.assertEqual(grid.size, 11)


class TestTerrainAdaptiveEstimator(unittest.TestCase):
    def setUp(self) -> None:
        self.estimator = eg_gain.TerrainAdaptiveEstimator()

    def test_flat_trace_close_to_official(self) -> None:
        trace = _zigzag_ramp()
        for interval in (1.0, 5.0, 10.0):
            gain = self.estimator.estimate(trace.elevations, trace.distances, interval)
            acc = eg_gain.accuracy_ratio(gain, trace.official_gain)
            self.assertGreaterEqual(acc, 80.0, msg=f"interval {interval}")
            self.assertLessEqual(acc, 120.0, msg=f"interval {interval}")

    def test_details_report_terrain_and_grid(self) -> None:
        trace = _zigzag_ramp()
        details = self.estimator.estimate_with_details(trace.elevations, trace.distances, 5.0)
        self.assertEqual(details.terrain, eg_gain.TerrainClass.FLAT)
        self.assertAlmostEqual(details.effective_interval_m, 5.0)
        self.assertEqual(details.resampled_points, 1001)
        self.assertAlmostEqual(details.raw_gain_m, 50.0)

    def test_oscillation_below_deadband_gives_zero(self) -> None:
        dist = np.arange(51, dtype=np.float64) * 100.0
        elev = np.array([float(i % 2) for i in range(51)])
        self.assertEqual(self.estimator.estimate(elev, dist, 1.0), 0.0)

    def test_descent_gives_zero(self) -> None:
        dist = np.arange(51, dtype=np.float64) * 100.0
        elev = 200.0 - dist / 50.0
        self.assertEqual(self.estimator.estimate(elev, dist, 2.0), 0.0)

    def test_degenerate_inputs(self) -> None:
        self.assertEqual(self.estimator.estimate([100.0], [0.0], 1.0), 0.0)
        self.assertEqual(self.estimator.estimate([100.0, 120.0], [5.0, 5.0], 1.0), 0.0)

    def test_invalid_inputs_raise(self) -> None:
        with self.assertRaises(ValueError):
            self.estimator.estimate([1.0, 2.0], [0.0, 1.0], 0.0)
        with self.assertRaises(ValueError):
            self.estimator.estimate([1.0, 2.0], [0.0, 1.0], -1.0)
        with self.assertRaises(ValueError):
            self.estimator.estimate([1.0, 2.0, 3.0], [0.0, 1.0], 1.0)


class TestGpsQuality(unittest.TestCase):
    def test_short_trace_is_degenerate(self) -> None:
        profile = eg_gain.GpsQualityAnalyzer().analyze(eg_gain.Trace.from_sequences("one", [5.0], [0.0]))
        self.assertEqual(profile.score, 0.0)
        self.assertEqual(profile.noise_ratio, 1.0)
        self.assertTrue(profile.is_degenerate)

    def test_ideal_trace_scores_full(self) -> None:
        idx = np.arange(20, dtype=np.float64)
        trace = eg_gain.Trace.from_sequences("ideal", 0.5 * idx, 10.0 * idx, idx)
        profile = eg_gain.GpsQualityAnalyzer().analyze(trace)
        self.assertAlmostEqual(profile.average_spacing_m, 10.0)
        self.assertAlmostEqual(profile.sampling_frequency_hz, 1.0)
        self.assertEqual(profile.noise_ratio, 0.0)
        self.assertEqual(profile.gap_count, 0)
        self.assertAlmostEqual(profile.consistency, 1.0)
        self.assertAlmostEqual(profile.score, 100.0)

    def test_gaps_and_noise(self) -> None:
        trace = eg_gain.Trace.from_sequences(
            "gappy", [0.0, 1.0, 0.0, 1.0, 0.0], [0.0, 10.0, 20.0, 30.0, 40.0], [0.0, 1.0, 2.0, 20.0, 21.0]
        )
        profile = eg_gain.GpsQualityAnalyzer().analyze(trace)
        self.assertEqual(profile.gap_count, 1)
        self.assertEqual(profile.noise_ratio, 1.0)
        self.assertGreaterEqual(profile.score, 0.0)
        self.assertLessEqual(profile.score, 100.0)


class TestQualityAdjustedEstimator(unittest.TestCase):
    @staticmethod
    def _profile(score: float, freq: float, noise: float) -> eg_gain.QualityProfile:
        return eg_gain.QualityProfile(
            average_spacing_m=10.0,
            sampling_frequency_hz=freq,
            noise_ratio=noise,
            gap_count=0,
            consistency=0.5,
            score=score,
        )

    def test_correction_factors(self) -> None:
        est = eg_gain.QualityAdjustedEstimator()
        self.assertEqual(est.correction_factor(self._profile(50.0, 0.1, 0.9)), 1.0)
        self.assertAlmostEqual(est.correction_factor(self._profile(40.0, 0.3, 0.6)), 1.20 * 1.15)
        self.assertAlmostEqual(est.correction_factor(self._profile(40.0, 0.8, 0.4)), 1.10 * 1.08)
        # Both thresholds are strict.
        self.assertEqual(est.correction_factor(self._profile(40.0, 1.0, 0.3)), 1.0)

    def test_estimate_applies_factor(self) -> None:
        trace = _zigzag_ramp()
        est = eg_gain.QualityAdjustedEstimator()
        base = est.base.estimate(trace.elevations, trace.distances, 2.0)
        adjusted = est.estimate(trace, 2.0, self._profile(10.0, 0.3, 0.6))
        self.assertAlmostEqual(adjusted, base * 1.20 * 1.15)


class TestGradientOutlierFilter(unittest.TestCase):
    def _series(self):
        idx = np.arange(30, dtype=np.float64)
        # Gradients cycle 6 %, 6 %, 3 %.
        elev = 0.5 * idx + 0.1 * (idx % 3)
        return elev, idx * 10.0

    def test_quartiles_by_index(self) -> None:
        self.assertEqual(eg_gain.quartiles_by_index(np.array([4.0, 1.0, 3.0, 2.0])), (2.0, 4.0))

    def test_spike_is_interpolated(self) -> None:
        elev, dist = self._series()
        spiked = elev.copy()
        spiked[15] += 20.0
        cleaned = eg_gain.GradientOutlierFilter().clean(spiked, dist)
        self.assertAlmostEqual(cleaned[15], (elev[13] + elev[17]) / 2.0)
        self.assertGreater(cleaned[15], elev[13])
        self.assertLess(cleaned[15], elev[17])
        np.testing.assert_allclose(cleaned[:15], elev[:15])
        self.assertLess(float(np.max(np.abs(cleaned - elev))), 1.0)
        # Input is left untouched.
        self.assertAlmostEqual(spiked[15], elev[15] + 20.0)

    def test_clean_series_unchanged(self) -> None:
        elev, dist = self._series()
        np.testing.assert_allclose(eg_gain.GradientOutlierFilter().clean(elev, dist), elev)

    def test_short_series_unchanged(self) -> None:
        elev = np.array([0.0, 50.0, 0.0, 1.0])
        dist = np.array([0.0, 1.0, 2.0, 3.0])
        np.testing.assert_allclose(eg_gain.GradientOutlierFilter().clean(elev, dist), elev)


class TestCombinedEstimator(unittest.TestCase):
    def test_matches_adjusted_when_no_outliers(self) -> None:
        trace = _zigzag_ramp()
        adjusted = eg_gain.QualityAdjustedEstimator()
        combined = eg_gain.CombinedEstimator(adjusted=adjusted)
        self.assertAlmostEqual(combined.estimate(trace, 2.0), adjusted.estimate(trace, 2.0))

    def test_correction_uses_profile_of_uncleaned_trace(self) -> None:
        # 100 m spacing at 0.5 Hz: only elevation noise moves the quality score,
        # so the spike pushes the raw trace below the correction threshold.
        idx = np.arange(30, dtype=np.float64)
        elev = 0.5 * idx + 0.1 * (idx % 3)
        elev[15] += 20.0
        trace = eg_gain.Trace.from_sequences("spiked", elev, idx * 100.0, idx * 2.0, official_gain=15.0)

        adjusted = eg_gain.QualityAdjustedEstimator()
        combined = eg_gain.CombinedEstimator(adjusted=adjusted)
        cleaned = combined.outlier_filter.clean(trace.elevations, trace.distances)
        raw_profile = adjusted.analyzer.analyze(trace)
        cleaned_profile = adjusted.analyzer.analyze(trace.with_elevations(cleaned))
        self.assertLess(raw_profile.score, 50.0)
        self.assertGreaterEqual(cleaned_profile.score, 50.0)

        factor = adjusted.correction_factor(raw_profile)
        self.assertAlmostEqual(factor, 1.10)
        cleaned_gain = adjusted.base.estimate(cleaned, trace.distances, 5.0)
        self.assertGreater(cleaned_gain, 0.0)
        self.assertAlmostEqual(combined.estimate(trace, 5.0), cleaned_gain * factor)


class TestScoring(unittest.TestCase):
    def test_bands_and_score(self) -> None:
        summary = eg_gain.summarize_accuracies([100.0, 99.0, 96.0, 91.0, 70.0])
        self.assertEqual(
            (summary.band_98_102, summary.band_95_105, summary.band_90_110, summary.outside_80_120),
            (2, 3, 4, 1),
        )
        self.assertAlmostEqual(summary.weighted_score, 10 * 2 + 6 * 1 + 3 * 1 - 5 * 1)
        self.assertAlmostEqual(summary.median_accuracy, 96.0)
        self.assertAlmostEqual(summary.worst_accuracy, 70.0)
        self.assertAlmostEqual(summary.success_rate, 80.0)

    def test_median(self) -> None:
        self.assertAlmostEqual(eg_gain.median_accuracy([80.0, 100.0, 120.0]), 100.0)
        self.assertAlmostEqual(eg_gain.median_accuracy([80.0, 100.0]), 90.0)

    def test_worst_ties_keep_first(self) -> None:
        self.assertEqual(eg_gain.worst_accuracy([90.0, 110.0]), 90.0)
        self.assertEqual(eg_gain.worst_accuracy([110.0, 90.0]), 110.0)

    def test_empty_summary(self) -> None:
        summary = eg_gain.summarize_accuracies([])
        self.assertEqual(summary.total, 0)
        self.assertEqual(summary.weighted_score, 0.0)
        self.assertEqual(summary.worst_accuracy, 0.0)
        self.assertEqual(summary.success_rate, 0.0)

    def test_accuracy_ratio_requires_positive_official(self) -> None:
        self.assertIsNone(eg_gain.accuracy_ratio(10.0, 0.0))
        self.assertAlmostEqual(eg_gain.accuracy_ratio(45.0, 50.0), 90.0)


class TestComparativeEvaluationHarness(unittest.TestCase):
    def _corpus(self):
        traces = [
            _zigzag_ramp("a_ramp.gpx", official_gain=50.0),
            _zigzag_ramp("b_unofficial.gpx", official_gain=0.0),
            eg_gain.Trace.from_sequences("c_const.gpx", [20.0] * 5, [0.0, 1.0, 2.0, 3.0, 4.0], official_gain=10.0),
        ]
        return eg_gain.corpus_from_traces(traces)

    def test_default_sweep(self) -> None:
        sweep = eg_gain.default_interval_sweep()
        self.assertEqual(len(sweep), 160)
        self.assertEqual(sweep[0], 0.05)
        self.assertEqual(sweep[-1], 8.0)

    def test_sweep_finer_than_centimetre_collapses(self) -> None:
        self.assertEqual(eg_gain.default_interval_sweep(1.0, 1.01, 0.002), [1.0, 1.01])

    def test_duplicate_intervals_count_each_trace_once(self) -> None:
        report = eg_gain.ComparativeEvaluationHarness(workers=2).evaluate(
            self._corpus(), [1.0, 1.002, 1.004, 1.01, 1.008]
        )
        self.assertEqual([s.interval for s in report.by_interval], [1.0, 1.01])
        self.assertEqual(report.n_units, 2)
        for summary in report.by_interval:
            for variant in eg_gain.VARIANTS:
                self.assertEqual(summary.variant(variant).total, 1)

    def test_baseline_runs_once_on_raw_trace_per_unit(self) -> None:
        calls = []

        class _CountingEstimator(eg_gain.TerrainAdaptiveEstimator):
            def estimate(self, elevations, distances, interval):
                calls.append(np.array(elevations))
                return super().estimate(elevations, distances, interval)

        corpus = self._corpus()
        trace = corpus["a_ramp.gpx"]
        baseline = _CountingEstimator()
        harness = eg_gain.ComparativeEvaluationHarness(baseline=baseline, workers=1)
        profile = harness.analyzer.analyze(trace)
        records = harness.evaluate_unit(corpus, {"a_ramp.gpx": profile}, 2.0, "a_ramp.gpx")
        # One pass on the raw trace and one on the outlier-cleaned trace.
        self.assertEqual(len(calls), 2)

        base_gain = eg_gain.TerrainAdaptiveEstimator().estimate(trace.elevations, trace.distances, 2.0)
        expected = eg_gain.accuracy_ratio(
            base_gain * harness.adjusted.correction_factor(profile), trace.official_gain
        )
        self.assertEqual(records[1].variant, eg_gain.Variant.QUALITY_ADJUSTED)
        self.assertAlmostEqual(records[1].accuracy, expected)

    def test_filter_corpus(self) -> None:
        harness = eg_gain.ComparativeEvaluationHarness(workers=1)
        usable, excluded = harness.filter_corpus(self._corpus())
        self.assertEqual(usable, ["a_ramp.gpx"])
        self.assertEqual(
            excluded,
            [("b_unofficial.gpx", "no official gain"), ("c_const.gpx", "no elevation variation")],
        )

    def test_evaluate_is_deterministic_across_worker_counts(self) -> None:
        corpus = self._corpus()
        sweep = [1.0, 2.0, 4.0]
        serial = eg_gain.ComparativeEvaluationHarness(workers=1).evaluate(corpus, sweep)
        threaded = eg_gain.ComparativeEvaluationHarness(workers=4).evaluate(corpus, sweep)
        self.assertEqual(serial.by_interval, threaded.by_interval)
        self.assertEqual([s.interval for s in serial.summaries], [s.interval for s in threaded.summaries])
        self.assertEqual([s.interval for s in serial.by_interval], sweep)
        self.assertEqual(serial.n_traces, 1)
        self.assertEqual(serial.n_units, 3)
        self.assertEqual(serial.n_skipped_units, 0)
        for summary in serial.by_interval:
            for variant in eg_gain.VARIANTS:
                self.assertEqual(summary.variant(variant).total, 1)
            self.assertEqual(summary.baseline.outside_80_120, 0)

    def test_evaluate_rejects_bad_interval(self) -> None:
        with self.assertRaises(ValueError):
            eg_gain.ComparativeEvaluationHarness(workers=1).evaluate(self._corpus(), [1.0, 0.0])

    def test_evaluate_unit_missing_trace(self) -> None:
        harness = eg_gain.ComparativeEvaluationHarness(workers=1)
        self.assertIsNone(harness.evaluate_unit({}, {}, 1.0, "missing.gpx"))

    def test_aggregate_and_rank(self) -> None:
        records = []
        for trace_id, accs in (("t1", (100.0, 100.0, 100.0)), ("t2", (70.0, 92.0, 99.0))):
            for variant, acc in zip(eg_gain.VARIANTS, accs):
                records.append(eg_gain.AccuracyRecord(1.0, trace_id, variant, acc))
        for variant, acc in zip(eg_gain.VARIANTS, (100.0, 100.0, 75.0)):
            records.append(eg_gain.AccuracyRecord(2.0, "t1", variant, acc))

        summaries = eg_gain.ComparativeEvaluationHarness.aggregate(records, [1.0, 2.0, 3.0])
        self.assertEqual([s.interval for s in summaries], [1.0, 2.0, 3.0])
        first = summaries[0]
        self.assertEqual(first.baseline.total, 2)
        self.assertAlmostEqual(first.baseline.weighted_score, 10.0 - 5.0)
        self.assertAlmostEqual(first.quality_adjusted.weighted_score, 10.0 + 3.0)
        self.assertAlmostEqual(first.combined.weighted_score, 20.0)
        self.assertAlmostEqual(first.delta_combined, 15.0)
        self.assertEqual(summaries[2].combined.total, 0)

        ranked = eg_gain.ComparativeEvaluationHarness.rank(summaries)
        self.assertEqual([s.interval for s in ranked], [1.0, 3.0, 2.0])

    def test_best_by_variant_and_comparison(self) -> None:
        def _summary(interval, scores):
            parts = [
                eg_gain.VariantSummary(1, 0, 0, 0, 0, score, 100.0, 100.0) for score in scores
            ]
            return eg_gain.IntervalSummary(interval, *parts)

        by_interval = [_summary(1.0, (5.0, 1.0, 3.0)), _summary(2.0, (5.0, 2.0, 3.0)), _summary(3.0, (1.0, 0.0, 4.0))]
        report = eg_gain.EvaluationReport(summaries=by_interval, by_interval=by_interval)
        best = report.best_by_variant()
        self.assertEqual(best[eg_gain.Variant.BASELINE].interval, 1.0)
        self.assertEqual(best[eg_gain.Variant.QUALITY_ADJUSTED].interval, 2.0)
        self.assertEqual(best[eg_gain.Variant.COMBINED].interval, 3.0)
        rows = report.comparison_at_combined_optimum()
        self.assertEqual([r.variant for r in rows], list(eg_gain.VARIANTS))
        self.assertTrue(all(r.interval == 3.0 for r in rows))
        self.assertEqual(rows[0].summary.weighted_score, 1.0)


if __name__ == "__main__":
    unittest.main()
