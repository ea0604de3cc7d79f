"""
Conditional exposure control for shadow-test CAT (van der Linden & Veldkamp, 2007).

Each item (or passage) carries two counters per ability interval k:

    alpha[k][i]   - examinees who were administered i while theta fell in k
    epsilon[k][i] - examinees for whom i was eligible while theta fell in k

Before each solve, entity i is eligible with probability

    P(E_i | k) = min(1, r_max * epsilon[k][i] / alpha[k][i])   (1.0 if alpha == 0)

and one Bernoulli draw per (k, i) decides its soft eligibility for the stage.
Ineligible entities are not removed from the pool; the solver is charged a
bigM penalty for selecting them, so infeasibility is never caused by
exposure control alone.

Key components:
    - ExposureUsageStore: thread-safe process-wide counters, injected into the engine
    - build_eligibility_snapshot(): steps 1-3 (probabilities, draws, interval lookup)
    - soft_eligibility(): item/passage vectors handed to the solver
    - record_examinee_exposure(): counter update after an examinee's test

References:
    - van der Linden, W.J., & Veldkamp, B.P. (2007). Conditional item-exposure
      control in adaptive testing using item-ineligibility probabilities.
"""

import bisect
import enum
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Self, Sequence, Set, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, model_validator

from shadowcat.core.cat.errors import CATConfigurationError
from shadowcat.core.cat.item_pool import ItemPool
from shadowcat.core.config import settings

logger = logging.getLogger(__name__)

# Rate used for an entity that has never been administered in an interval
UNSEEN_ELIGIBILITY_PROBABILITY = 1.0


class ExposureControlType(str, enum.Enum):
    """Level at which exposure is controlled."""

    NONE = "none"
    ITEM = "item"
    PASSAGE = "passage"


class ThetaRange(BaseModel):
    """A closed ability interval used to condition exposure counters."""

    model_config = ConfigDict(frozen=True)

    minimum: float
    maximum: float

    @model_validator(mode="after")
    def validate_bounds(self) -> Self:
        if self.minimum >= self.maximum:
            raise ValueError(
                f"minimum ({self.minimum}) must be less than maximum ({self.maximum})"
            )
        return self


def overall_theta_range() -> ThetaRange:
    """The single global interval the counters are keyed to by default."""
    return ThetaRange(
        minimum=settings.CAT_EXPOSURE_THETA_MIN,
        maximum=settings.CAT_EXPOSURE_THETA_MAX,
    )


class ExposureControlConfig(BaseModel):
    """Exposure-control parameters of a test."""

    model_config = ConfigDict(frozen=True)

    exposure_type: ExposureControlType = ExposureControlType.NONE
    theta_ranges: Tuple[ThetaRange, ...] = Field(
        default_factory=lambda: (overall_theta_range(),), min_length=1
    )
    overall_range: ThetaRange = Field(default_factory=overall_theta_range)
    r_max: float = Field(default=1.0, ge=0.0, le=1.0)

    @property
    def enabled(self) -> bool:
        return self.exposure_type is not ExposureControlType.NONE


@dataclass(frozen=True)
class EligibilitySnapshot:
    """Soft eligibility of every controlled entity at one ability interval."""

    exposure_type: ExposureControlType
    interval: int
    entity_ids: Tuple[str, ...]
    eligible: Tuple[bool, ...]

    def eligible_ids(self) -> Set[str]:
        return {eid for eid, ok in zip(self.entity_ids, self.eligible) if ok}

    def is_eligible(self, entity_id: str) -> bool:
        return entity_id in self.eligible_ids()


class ExposureItemUsage:
    """Counters for one (interval, entity) pair, updated under their own lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._alpha = 0
        self._epsilon = 0

    def increase_alpha(self, amount: int = 1) -> None:
        with self._lock:
            self._alpha += amount

    def increase_epsilon(self, amount: int = 1) -> None:
        with self._lock:
            self._epsilon += amount

    @property
    def alpha(self) -> int:
        with self._lock:
            return self._alpha

    @property
    def epsilon(self) -> int:
        with self._lock:
            return self._epsilon


class ExposureUsageStore:
    """
    Process-wide exposure counters shared by concurrently running examinees.

    Thread-safe. Each (theta range, entity) pair owns an ExposureItemUsage
    with its own lock, so updates for different items never contend; the
    store-level lock only guards creation of new counters.

    Counters accumulate for the lifetime of the store. The engine never
    clears them; call reset() from management code.

    Example usage:
        store = ExposureUsageStore()
        engine = CATEngine(blueprint, solver, usage_store=store)
        ...
        rates = store.exposure_rates(overall_theta_range(), pool.item_ids, n_examinees)
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._usage: Dict[Tuple[ThetaRange, str], ExposureItemUsage] = {}

    def _get(self, theta_range: ThetaRange, entity_id: str) -> ExposureItemUsage:
        key = (theta_range, entity_id)
        usage = self._usage.get(key)
        if usage is None:
            with self._lock:
                usage = self._usage.setdefault(key, ExposureItemUsage())
        return usage

    def increase_alpha(self, theta_range: ThetaRange, entity_id: str) -> None:
        self._get(theta_range, entity_id).increase_alpha()

    def increase_epsilon(self, theta_range: ThetaRange, entity_id: str) -> None:
        self._get(theta_range, entity_id).increase_epsilon()

    def get_alpha(self, theta_range: ThetaRange, entity_id: str) -> int:
        return self._get(theta_range, entity_id).alpha

    def get_epsilon(self, theta_range: ThetaRange, entity_id: str) -> int:
        return self._get(theta_range, entity_id).epsilon

    def counter_arrays(
        self, theta_ranges: Sequence[ThetaRange], entity_ids: Sequence[str]
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Snapshot alpha and epsilon as (n_ranges, n_entities) arrays.

        Individual cells are read atomically; the snapshot as a whole is not,
        which is acceptable for probabilistic eligibility.
        """
        alpha = np.zeros((len(theta_ranges), len(entity_ids)), dtype=float)
        epsilon = np.zeros_like(alpha)
        for k, theta_range in enumerate(theta_ranges):
            for i, entity_id in enumerate(entity_ids):
                usage = self._get(theta_range, entity_id)
                alpha[k, i] = usage.alpha
                epsilon[k, i] = usage.epsilon
        return alpha, epsilon

    def exposure_rates(
        self, theta_range: ThetaRange, entity_ids: Iterable[str], n_examinees: int
    ) -> Dict[str, float]:
        """
        Administration rate alpha / n_examinees per entity.

        Raises:
            ValueError: If n_examinees is not positive.
        """
        if n_examinees <= 0:
            raise ValueError(f"n_examinees must be positive, got {n_examinees}")
        return {
            entity_id: self.get_alpha(theta_range, entity_id) / n_examinees
            for entity_id in entity_ids
        }

    def reset(self) -> None:
        """Drop all counters."""
        with self._lock:
            self._usage.clear()
        logger.info("Exposure usage counters reset")


def validate_counter_dimensions(
    alpha: np.ndarray,
    epsilon: np.ndarray,
    num_intervals: int,
    num_entities: int,
) -> None:
    """
    Check that counter arrays are shaped (num_intervals, num_entities).

    Raises:
        CATConfigurationError: On any dimension mismatch.
    """
    for name, counts in (("alpha", alpha), ("epsilon", epsilon)):
        if counts.ndim != 2 or counts.shape[0] != num_intervals:
            logger.error(
                f"Exposure {name} has {counts.shape[0] if counts.ndim else 0} "
                f"intervals, expected {num_intervals}"
            )
            raise CATConfigurationError(
                f"Exposure {name} interval dimension does not match theta ranges",
                context={"shape": counts.shape, "num_intervals": num_intervals},
            )
        if counts.shape[1] == 0 or num_entities == 0:
            logger.error(f"Exposure {name} has no controlled entities")
            raise CATConfigurationError(
                f"Exposure {name} has no controlled entities",
                context={"shape": counts.shape},
            )
        if counts.shape[1] != num_entities:
            logger.error(
                f"Exposure {name} covers {counts.shape[1]} entities, "
                f"expected {num_entities}"
            )
            raise CATConfigurationError(
                f"Exposure {name} entity dimension does not match pool size",
                context={"shape": counts.shape, "num_entities": num_entities},
            )


def calc_eligibility_probabilities(
    alpha: np.ndarray, epsilon: np.ndarray, r_max: float
) -> np.ndarray:
    """
    Eligibility probability per (interval, entity).

    Args:
        alpha: Administration counts, shape (K, I).
        epsilon: Eligibility counts, shape (K, I).
        r_max: Target maximum exposure rate in [0, 1].

    Returns:
        Probabilities in [0, 1]; exactly 1.0 wherever alpha == 0.

    Raises:
        ValueError: If shapes differ, counts are negative or r_max is out of range.
    """
    alpha = np.asarray(alpha, dtype=float)
    epsilon = np.asarray(epsilon, dtype=float)
    if alpha.shape != epsilon.shape:
        raise ValueError(
            f"alpha shape {alpha.shape} does not match epsilon shape {epsilon.shape}"
        )
    if (alpha < 0).any() or (epsilon < 0).any():
        raise ValueError("Exposure counters must be non-negative")
    if not 0.0 <= r_max <= 1.0:
        raise ValueError(f"r_max must be in [0, 1], got {r_max}")

    probabilities = np.full(alpha.shape, UNSEEN_ELIGIBILITY_PROBABILITY)
    np.divide(r_max * epsilon, alpha, out=probabilities, where=alpha > 0)
    return np.clip(probabilities, 0.0, 1.0)


def sample_eligibility(
    probabilities: np.ndarray, rng: np.random.Generator
) -> np.ndarray:
    """One independent Bernoulli draw per cell."""
    return rng.random(probabilities.shape) < probabilities


def theta_interval_points(theta_ranges: Sequence[ThetaRange]) -> List[float]:
    """Upper bounds of every range but the last (which is unbounded above)."""
    return [r.maximum for r in theta_ranges[:-1]]


def find_theta_interval(points: Sequence[float], theta: float) -> int:
    """
    Index of the interval containing theta.

    Interval k covers [points[k-1], points[k]); interval 0 is unbounded
    below and the last interval unbounded above.
    """
    return bisect.bisect_right(points, theta)


def controlled_entity_ids(config: ExposureControlConfig, pool: ItemPool) -> List[str]:
    """Ids of the entities whose exposure is controlled under ``config``."""
    if config.exposure_type is ExposureControlType.PASSAGE:
        return pool.passage_ids
    return pool.item_ids


def build_eligibility_snapshot(
    store: ExposureUsageStore,
    config: ExposureControlConfig,
    entity_ids: Sequence[str],
    theta: float,
    rng: np.random.Generator,
) -> EligibilitySnapshot:
    """
    Sample soft eligibility for the interval containing theta.

    Counters are only ever updated under ``config.overall_range``, so every
    interval row is filled from those counters. Probabilities and draws are
    computed for every interval, then the interval containing theta is
    selected.

    Raises:
        CATConfigurationError: If the counters do not match the configured
            intervals and entities.
    """
    ranges = config.theta_ranges
    alpha, epsilon = store.counter_arrays([config.overall_range] * len(ranges), entity_ids)
    validate_counter_dimensions(alpha, epsilon, len(ranges), len(entity_ids))

    probabilities = calc_eligibility_probabilities(alpha, epsilon, config.r_max)
    indicators = sample_eligibility(probabilities, rng)
    interval = find_theta_interval(theta_interval_points(ranges), theta)

    snapshot = EligibilitySnapshot(
        exposure_type=config.exposure_type,
        interval=interval,
        entity_ids=tuple(entity_ids),
        eligible=tuple(bool(v) for v in indicators[interval]),
    )
    logger.debug(
        f"Exposure eligibility at theta={theta:.3f} (interval {interval}): "
        f"{sum(snapshot.eligible)}/{len(entity_ids)} eligible"
    )
    return snapshot


def soft_eligibility(
    snapshot: Optional[EligibilitySnapshot],
    pool: ItemPool,
    administered_rows: Sequence[int],
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Item and passage soft-eligibility vectors for the solver request.

    Under item-level control passages are all eligible, and vice versa.
    Administered items, and the passages they belong to, are always eligible
    so the solver can keep them in the shadow test.
    """
    item_eligible = np.ones(len(pool), dtype=bool)
    passage_eligible = np.ones(len(pool.passages), dtype=bool)

    if snapshot is None or snapshot.exposure_type is ExposureControlType.NONE:
        return item_eligible, passage_eligible

    if snapshot.exposure_type is ExposureControlType.ITEM:
        item_eligible = np.array(snapshot.eligible, dtype=bool)
        item_eligible[list(administered_rows)] = True
    elif snapshot.exposure_type is ExposureControlType.PASSAGE:
        passage_eligible = np.array(snapshot.eligible, dtype=bool)
        for row in administered_rows:
            passage_id = pool.items[row].passage_id
            if passage_id is not None:
                passage_eligible[pool.passage_row(passage_id)] = True

    return item_eligible, passage_eligible


def record_examinee_exposure(
    store: ExposureUsageStore,
    snapshot: EligibilitySnapshot,
    administered_item_ids: Sequence[str],
    pool: ItemPool,
    theta_range: ThetaRange,
) -> None:
    """
    Update counters after an examinee's test.

    Every entity eligible in ``snapshot`` gets epsilon += 1 and every
    administered entity gets alpha += 1, both keyed to ``theta_range``.
    Under passage-level control each administered passage counts once.
    """
    if snapshot.exposure_type is ExposureControlType.NONE:
        return

    for entity_id in snapshot.eligible_ids():
        store.increase_epsilon(theta_range, entity_id)

    if snapshot.exposure_type is ExposureControlType.PASSAGE:
        administered: List[str] = []
        for item_id in administered_item_ids:
            passage_id = pool.item(item_id).passage_id
            if passage_id is not None and passage_id not in administered:
                administered.append(passage_id)
    else:
        administered = list(administered_item_ids)

    for entity_id in administered:
        store.increase_alpha(theta_range, entity_id)

    logger.debug(
        f"Recorded exposure: {len(administered)} administered, "
        f"{sum(snapshot.eligible)} eligible"
    )
