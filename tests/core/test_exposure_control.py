"""
Tests for conditional exposure control.

Tests cover:
- Eligibility probabilities: alpha == 0, ratio, clamping, bounds property
- Bernoulli eligibility draws
- Ability-interval lookup (upper edge exclusive, last interval unbounded)
- Counter dimension validation
- ExposureUsageStore: increments, snapshots, rates, reset, thread safety
- Snapshots, solver soft-eligibility vectors and counter updates
"""

import logging
import threading

import numpy as np
import pytest

from shadowcat.core.cat.errors import CATConfigurationError
from shadowcat.core.cat.exposure_control import (
    EligibilitySnapshot,
    ExposureControlConfig,
    ExposureControlType,
    ExposureUsageStore,
    ThetaRange,
    build_eligibility_snapshot,
    calc_eligibility_probabilities,
    controlled_entity_ids,
    find_theta_interval,
    overall_theta_range,
    record_examinee_exposure,
    sample_eligibility,
    soft_eligibility,
    theta_interval_points,
    validate_counter_dimensions,
)

OVERALL = ThetaRange(minimum=-8.0, maximum=8.0)


class TestEligibilityProbabilities:
    """Tests for calc_eligibility_probabilities."""

    def test_unseen_entities_are_fully_eligible(self):
        """alpha == 0 gives exactly 1.0 regardless of epsilon."""
        probabilities = calc_eligibility_probabilities(
            np.array([[0.0, 0.0]]), np.array([[0.0, 5.0]]), 0.3
        )
        assert probabilities.tolist() == [[1.0, 1.0]]

    def test_ratio(self):
        """r_max * epsilon / alpha when alpha > 0."""
        probabilities = calc_eligibility_probabilities(
            np.array([[10.0, 4.0]]), np.array([[5.0, 1.0]]), 0.4
        )
        assert probabilities.tolist() == pytest.approx([[0.2, 0.1]])

    def test_clamped_to_one(self):
        """Ratios above 1 are clamped."""
        probabilities = calc_eligibility_probabilities(
            np.array([[1.0]]), np.array([[10.0]]), 1.0
        )
        assert probabilities.tolist() == [[1.0]]

    def test_bounds_over_random_counters(self):
        """Any non-negative counters and r_max in [0, 1] give values in [0, 1]."""
        rng = np.random.default_rng(5)
        for _ in range(50):
            alpha = rng.integers(0, 20, size=(3, 15)).astype(float)
            epsilon = rng.integers(0, 40, size=(3, 15)).astype(float)
            probabilities = calc_eligibility_probabilities(alpha, epsilon, rng.random())
            assert np.all(probabilities >= 0.0)
            assert np.all(probabilities <= 1.0)
            assert np.all(probabilities[alpha == 0] == 1.0)

    def test_rejects_shape_mismatch(self):
        """alpha and epsilon must have the same shape."""
        with pytest.raises(ValueError, match="shape"):
            calc_eligibility_probabilities(np.zeros((1, 3)), np.zeros((1, 2)), 0.5)

    def test_rejects_negative_counts(self):
        """Counters are non-negative."""
        with pytest.raises(ValueError, match="non-negative"):
            calc_eligibility_probabilities(np.array([[-1.0]]), np.array([[0.0]]), 0.5)

    @pytest.mark.parametrize("r_max", [-0.1, 1.5])
    def test_rejects_r_max_out_of_range(self, r_max):
        """r_max must be a rate."""
        with pytest.raises(ValueError, match="r_max"):
            calc_eligibility_probabilities(np.zeros((1, 1)), np.zeros((1, 1)), r_max)


class TestSampleEligibility:
    """Tests for sample_eligibility."""

    def test_certain_outcomes(self):
        """Probability 1 is always eligible, probability 0 never."""
        rng = np.random.default_rng(0)
        draws = sample_eligibility(np.array([[1.0, 0.0] * 50]), rng)
        assert draws[0, ::2].all()
        assert not draws[0, 1::2].any()

    def test_frequency_matches_probability(self):
        """Long-run eligibility rate approaches the probability."""
        rng = np.random.default_rng(1)
        draws = sample_eligibility(np.full((1, 20000), 0.3), rng)
        assert draws.mean() == pytest.approx(0.3, abs=0.02)


class TestThetaInterval:
    """Tests for interval lookup."""

    RANGES = (
        ThetaRange(minimum=-8.0, maximum=-1.0),
        ThetaRange(minimum=-1.0, maximum=1.0),
        ThetaRange(minimum=1.0, maximum=8.0),
    )

    def test_points_are_upper_bounds_except_last(self):
        """The last range contributes no boundary."""
        assert theta_interval_points(self.RANGES) == [-1.0, 1.0]

    @pytest.mark.parametrize(
        "theta,expected",
        [(-9.0, 0), (-2.0, 0), (-1.0, 1), (0.0, 1), (0.999, 1), (1.0, 2), (20.0, 2)],
    )
    def test_lookup(self, theta, expected):
        """Lower edges are inclusive, upper edges exclusive, last unbounded."""
        points = theta_interval_points(self.RANGES)
        assert find_theta_interval(points, theta) == expected

    def test_single_interval(self):
        """With one range every theta maps to interval 0."""
        assert find_theta_interval([], -100.0) == 0
        assert find_theta_interval([], 100.0) == 0

    def test_default_overall_range(self):
        """The overall range defaults to [-8, 8]."""
        overall = overall_theta_range()
        assert (overall.minimum, overall.maximum) == (-8.0, 8.0)

    def test_rejects_inverted_range(self):
        """Range bounds must be ordered."""
        with pytest.raises(ValueError):
            ThetaRange(minimum=1.0, maximum=0.0)


class TestValidateCounterDimensions:
    """Tests for counter dimension validation."""

    def test_accepts_matching_shapes(self):
        """Matching shapes pass silently."""
        validate_counter_dimensions(np.zeros((2, 4)), np.zeros((2, 4)), 2, 4)

    def test_interval_mismatch(self, caplog):
        """Wrong number of intervals is a configuration error and is logged."""
        with caplog.at_level(logging.ERROR):
            with pytest.raises(CATConfigurationError, match="interval"):
                validate_counter_dimensions(np.zeros((1, 4)), np.zeros((1, 4)), 2, 4)
        assert "intervals" in caplog.text

    def test_no_entities(self):
        """Zero controlled entities is a configuration error."""
        with pytest.raises(CATConfigurationError, match="no controlled entities"):
            validate_counter_dimensions(np.zeros((1, 0)), np.zeros((1, 0)), 1, 0)

    def test_entity_mismatch(self):
        """Counters must cover the whole pool."""
        with pytest.raises(CATConfigurationError, match="pool size"):
            validate_counter_dimensions(np.zeros((1, 3)), np.zeros((1, 3)), 1, 4)


class TestExposureUsageStore:
    """Tests for ExposureUsageStore."""

    def test_counters_start_at_zero(self):
        """Unseen entities have zero counts."""
        store = ExposureUsageStore()
        assert store.get_alpha(OVERALL, "i1") == 0
        assert store.get_epsilon(OVERALL, "i1") == 0

    def test_increments(self):
        """increase_alpha/increase_epsilon add one each."""
        store = ExposureUsageStore()
        store.increase_alpha(OVERALL, "i1")
        store.increase_alpha(OVERALL, "i1")
        store.increase_epsilon(OVERALL, "i1")
        assert store.get_alpha(OVERALL, "i1") == 2
        assert store.get_epsilon(OVERALL, "i1") == 1

    def test_ranges_are_independent(self):
        """Counters are keyed by range as well as entity."""
        store = ExposureUsageStore()
        other = ThetaRange(minimum=0.0, maximum=8.0)
        store.increase_alpha(OVERALL, "i1")
        assert store.get_alpha(other, "i1") == 0

    def test_counter_arrays(self):
        """Arrays are shaped (ranges, entities) in the given order."""
        store = ExposureUsageStore()
        store.increase_alpha(OVERALL, "b")
        store.increase_epsilon(OVERALL, "a")
        alpha, epsilon = store.counter_arrays([OVERALL], ["a", "b", "c"])
        assert alpha.tolist() == [[0.0, 1.0, 0.0]]
        assert epsilon.tolist() == [[1.0, 0.0, 0.0]]

    def test_exposure_rates(self):
        """Rate is alpha divided by the number of examinees."""
        store = ExposureUsageStore()
        for _ in range(3):
            store.increase_alpha(OVERALL, "a")
        rates = store.exposure_rates(OVERALL, ["a", "b"], 10)
        assert rates == {"a": pytest.approx(0.3), "b": 0.0}

    def test_exposure_rates_rejects_zero_examinees(self):
        """Rates need at least one examinee."""
        with pytest.raises(ValueError, match="n_examinees"):
            ExposureUsageStore().exposure_rates(OVERALL, ["a"], 0)

    def test_reset(self):
        """reset() clears every counter."""
        store = ExposureUsageStore()
        store.increase_alpha(OVERALL, "a")
        store.reset()
        assert store.get_alpha(OVERALL, "a") == 0

    def test_concurrent_updates_are_not_lost(self):
        """Many threads incrementing the same counters lose no updates."""
        store = ExposureUsageStore()
        n_threads, n_increments = 8, 2000

        def worker():
            for i in range(n_increments):
                store.increase_alpha(OVERALL, f"item-{i % 4}")
                store.increase_epsilon(OVERALL, f"item-{i % 4}")

        threads = [threading.Thread(target=worker) for _ in range(n_threads)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        for k in range(4):
            expected = n_threads * n_increments // 4
            assert store.get_alpha(OVERALL, f"item-{k}") == expected
            assert store.get_epsilon(OVERALL, f"item-{k}") == expected


class TestBuildEligibilitySnapshot:
    """Tests for build_eligibility_snapshot."""

    def _config(self, ranges=(OVERALL,), r_max=1.0):
        return ExposureControlConfig(
            exposure_type=ExposureControlType.ITEM,
            theta_ranges=ranges,
            overall_range=OVERALL,
            r_max=r_max,
        )

    def test_fresh_store_everything_eligible(self, rng):
        """With no history every entity is eligible."""
        snapshot = build_eligibility_snapshot(
            ExposureUsageStore(), self._config(), ["a", "b", "c"], 0.0, rng
        )
        assert snapshot.eligible == (True, True, True)
        assert snapshot.interval == 0
        assert snapshot.entity_ids == ("a", "b", "c")

    def test_overexposed_entity_is_ineligible(self, rng):
        """alpha > 0 and epsilon == 0 gives probability 0."""
        store = ExposureUsageStore()
        for _ in range(5):
            store.increase_alpha(OVERALL, "a")
        snapshot = build_eligibility_snapshot(store, self._config(), ["a", "b"], 0.0, rng)
        assert snapshot.eligible == (False, True)
        assert snapshot.eligible_ids() == {"b"}
        assert not snapshot.is_eligible("a")

    def test_reports_interval_of_theta(self, rng):
        """The snapshot is taken from the interval containing theta."""
        low = ThetaRange(minimum=-8.0, maximum=0.0)
        high = ThetaRange(minimum=0.0, maximum=8.0)
        config = self._config(ranges=(low, high))

        at_low = build_eligibility_snapshot(ExposureUsageStore(), config, ["a"], -1.0, rng)
        at_high = build_eligibility_snapshot(ExposureUsageStore(), config, ["a"], 1.0, rng)
        assert at_low.interval == 0
        assert at_high.interval == 1

    @pytest.mark.parametrize("theta", [-0.5, 0.5])
    def test_recorded_exposure_applies_to_every_interval(self, discrete_pool, rng, theta):
        """Counters recorded under the overall range control every interval."""
        low = ThetaRange(minimum=-8.0, maximum=0.0)
        high = ThetaRange(minimum=0.0, maximum=8.0)
        config = self._config(ranges=(low, high), r_max=0.2)
        ids = tuple(discrete_pool.item_ids)
        overexposed = ids[0]
        store = ExposureUsageStore()
        snapshot = EligibilitySnapshot(
            ExposureControlType.ITEM, 1, ids, tuple(i != overexposed for i in ids)
        )
        for _ in range(50):
            record_examinee_exposure(
                store, snapshot, [overexposed], discrete_pool, config.overall_range
            )

        result = build_eligibility_snapshot(store, config, list(ids), theta, rng)
        assert not result.is_eligible(overexposed)
        assert all(result.is_eligible(i) for i in ids[1:])

    def test_no_entities_is_configuration_error(self, rng):
        """An empty entity list cannot be controlled."""
        with pytest.raises(CATConfigurationError):
            build_eligibility_snapshot(ExposureUsageStore(), self._config(), [], 0.0, rng)


class TestSoftEligibility:
    """Tests for the solver soft-eligibility vectors."""

    def test_none_everything_eligible(self, passage_pool):
        """No snapshot means no exposure restriction."""
        items, passages = soft_eligibility(None, passage_pool, [])
        assert items.all()
        assert passages.all()

    def test_item_level(self, passage_pool):
        """Item snapshot drives items; passages stay eligible; administered forced."""
        eligible = tuple(i % 2 == 0 for i in range(len(passage_pool)))
        snapshot = EligibilitySnapshot(
            ExposureControlType.ITEM, 0, tuple(passage_pool.item_ids), eligible
        )
        items, passages = soft_eligibility(snapshot, passage_pool, [1])
        assert items[0] and items[1] and not items[3]
        assert passages.all()

    def test_passage_level(self, passage_pool):
        """Passage snapshot drives passages; administered passages forced."""
        snapshot = EligibilitySnapshot(
            ExposureControlType.PASSAGE, 0, ("P1", "P2"), (False, False)
        )
        items, passages = soft_eligibility(snapshot, passage_pool, [0])
        assert items.all()
        assert passages.tolist() == [True, False]

    def test_controlled_entities(self, passage_pool):
        """Passage-level control works on passage ids."""
        item_config = ExposureControlConfig(exposure_type=ExposureControlType.ITEM)
        passage_config = ExposureControlConfig(exposure_type=ExposureControlType.PASSAGE)
        assert controlled_entity_ids(item_config, passage_pool) == passage_pool.item_ids
        assert controlled_entity_ids(passage_config, passage_pool) == ["P1", "P2"]


class TestRecordExamineeExposure:
    """Tests for the post-test counter update."""

    def test_item_level_update(self, discrete_pool):
        """Eligible items get epsilon, administered items get alpha."""
        store = ExposureUsageStore()
        ids = tuple(discrete_pool.item_ids)
        eligible = tuple(i < 5 for i in range(len(ids)))
        snapshot = EligibilitySnapshot(ExposureControlType.ITEM, 0, ids, eligible)

        record_examinee_exposure(store, snapshot, [ids[0], ids[7]], discrete_pool, OVERALL)

        assert [store.get_epsilon(OVERALL, i) for i in ids] == [1] * 5 + [0] * 5
        assert store.get_alpha(OVERALL, ids[0]) == 1
        assert store.get_alpha(OVERALL, ids[7]) == 1
        assert store.get_alpha(OVERALL, ids[1]) == 0

    def test_passage_level_counts_each_passage_once(self, passage_pool):
        """Three items of one passage add one administration."""
        store = ExposureUsageStore()
        snapshot = EligibilitySnapshot(
            ExposureControlType.PASSAGE, 0, ("P1", "P2"), (True, False)
        )
        record_examinee_exposure(
            store, snapshot, ["P1-1", "P1-2", "P1-3", "D1"], passage_pool, OVERALL
        )
        assert store.get_alpha(OVERALL, "P1") == 1
        assert store.get_alpha(OVERALL, "P2") == 0
        assert store.get_epsilon(OVERALL, "P1") == 1
        assert store.get_epsilon(OVERALL, "P2") == 0

    def test_no_control_is_no_op(self, discrete_pool):
        """Exposure type NONE never touches the counters."""
        store = ExposureUsageStore()
        ids = tuple(discrete_pool.item_ids)
        snapshot = EligibilitySnapshot(
            ExposureControlType.NONE, 0, ids, (True,) * len(ids)
        )
        record_examinee_exposure(store, snapshot, [ids[0]], discrete_pool, OVERALL)
        assert store.get_alpha(OVERALL, ids[0]) == 0
