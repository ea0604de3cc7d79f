"""
CATEngine: stateless orchestrator for one adaptive stage of a shadow-test CAT.

Each call to run_stage() performs:
    1. Completion check (completed items == test length)
    2. Ability estimation (initial theta at stage 0, EAP afterwards)
    3. Selection criteria, randomized during the first L stages
    4. Exposure-control eligibility (when enabled)
    5. Passage hard eligibility
    6. Shadow-test solve through the injected solver
    7. Infeasibility check
    8. Post-solve passage ordering

The engine keeps no per-examinee state. Everything a stage needs travels in
an immutable StageInput, and the next one is built with
build_next_stage_input(). The only shared mutable object is the injected
ExposureUsageStore, which synchronizes its own updates.
"""
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Sequence, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from shadowcat.core.cat.ability_estimation import (
    INITIAL_STANDARD_ERROR,
    AbilityEstimate,
    EAPConfig,
    estimate_ability_eap,
)
from shadowcat.core.cat.errors import CATConfigurationError, InfeasibleTestConfigError
from shadowcat.core.cat.exposure_control import (
    EligibilitySnapshot,
    ExposureControlConfig,
    ExposureUsageStore,
    build_eligibility_snapshot,
    controlled_entity_ids,
    record_examinee_exposure,
    soft_eligibility,
)
from shadowcat.core.cat.irt_model import item_parameter_arrays, response_probability
from shadowcat.core.cat.item_pool import Blueprint, ItemPool
from shadowcat.core.cat.item_selection import (
    ItemSelectionMethod,
    apply_randomization,
    compute_selection_criteria,
)
from shadowcat.core.cat.passage_management import (
    get_eligible_passage_items,
    passage_index_sequence,
    prep_shadow_test,
)
from shadowcat.core.cat.solver import (
    ShadowTestRequest,
    ShadowTestResponse,
    ShadowTestSolver,
    SolverItemInput,
    SolverPassageInput,
    SolverStatus,
)
from shadowcat.core.config import settings

logger = logging.getLogger(__name__)


class ScoringMethod(str, enum.Enum):
    """Ability scoring method."""

    EAP = "eap"


class CATConfig(BaseModel):
    """Per-test adaptive configuration."""

    model_config = ConfigDict(frozen=True)

    initial_theta: float = Field(default_factory=lambda: settings.CAT_INITIAL_THETA)
    scoring_method: ScoringMethod = ScoringMethod.EAP
    eap: EAPConfig = Field(default_factory=EAPConfig)
    item_selection_method: ItemSelectionMethod = ItemSelectionMethod.MAX_FISHER_INFORMATION
    # Number of initial stages whose criteria are randomized
    l_value: int = Field(default=0, ge=0)
    exposure_control: ExposureControlConfig = Field(default_factory=ExposureControlConfig)
    default_big_m: float = Field(
        default_factory=lambda: settings.CAT_DEFAULT_BIG_M, ge=0.0
    )
    big_m_multiplier: float = Field(
        default_factory=lambda: settings.CAT_BIG_M_MULTIPLIER, ge=0.0
    )
    items_per_stage: int = Field(default=1, ge=1)


@dataclass(frozen=True)
class ItemResponse:
    """A scored response to an administered item."""

    item_id: str
    score: int  # 0 or 1
    probability: float  # model probability of a correct response


@dataclass(frozen=True)
class StageInput:
    """Immutable input of one adaptive stage."""

    config: CATConfig
    stage: int = 0
    responses: Tuple[ItemResponse, ...] = ()
    administered_item_ids: Tuple[str, ...] = ()
    shadow_test_item_ids: FrozenSet[str] = frozenset()
    previous_estimate: Optional[AbilityEstimate] = None
    # Passage rows of administered items, consecutive repeats collapsed
    passage_sequence: Tuple[int, ...] = ()
    eligibility: Optional[EligibilitySnapshot] = None

    @property
    def completed_count(self) -> int:
        return len(self.administered_item_ids)


@dataclass(frozen=True)
class StageTimings:
    """Wall-clock milliseconds spent in each phase of a stage."""

    estimation_ms: float = 0.0
    selection_ms: float = 0.0
    eligibility_ms: float = 0.0
    solver_ms: float = 0.0
    ordering_ms: float = 0.0
    total_ms: float = 0.0


@dataclass(frozen=True)
class StageOutput:
    """Result of one adaptive stage."""

    stage: int
    estimate: AbilityEstimate
    # Not-yet-administered shadow-test items, highest priority first
    items_to_administer: Tuple[str, ...]
    items_administered: Tuple[str, ...]
    shadow_test_item_ids: Tuple[str, ...] = ()
    eligibility: Optional[EligibilitySnapshot] = None
    solver_response: Optional[ShadowTestResponse] = None
    complete: bool = False
    timings: StageTimings = field(default_factory=StageTimings)


def initial_stage_input(config: CATConfig) -> StageInput:
    """StageInput for stage 0 of a new examinee."""
    return StageInput(config=config)


def build_next_stage_input(
    stage_input: StageInput,
    output: StageOutput,
    scores: Sequence[int],
    pool: ItemPool,
    probabilities: Optional[Sequence[float]] = None,
) -> StageInput:
    """
    Build the input of the following stage.

    The first ``len(scores)`` items of ``output.items_to_administer`` are
    recorded as administered with the given scores.

    Args:
        stage_input: Input of the stage that produced ``output``.
        output: Output of that stage.
        scores: 0/1 scores of the administered items, in order.
        pool: Item pool.
        probabilities: Probability of a correct response for each scored
            item. Defaults to the model probability at the stage estimate.

    Returns:
        A new StageInput with the stage index advanced by one.

    Raises:
        CATConfigurationError: If the test is complete, the number of
            scores does not fit the stage, or explicit probabilities do not
            pair up with the scores.
    """
    if output.complete:
        raise CATConfigurationError(
            "Cannot advance a completed test", context={"stage": output.stage}
        )
    config = stage_input.config
    n_scored = len(scores)
    if not 1 <= n_scored <= min(config.items_per_stage, len(output.items_to_administer)):
        raise CATConfigurationError(
            "Number of scores does not match items administered this stage",
            context={
                "scores": n_scored,
                "items_per_stage": config.items_per_stage,
                "available": len(output.items_to_administer),
            },
        )

    administered_now = output.items_to_administer[:n_scored]
    if probabilities is None:
        items = [pool.item(item_id) for item_id in administered_now]
        a, b, c, d = item_parameter_arrays(items)
        probabilities = response_probability(a, b, c, d, output.estimate.theta).tolist()
    elif len(probabilities) != n_scored:
        raise CATConfigurationError(
            "Number of probabilities does not match scores",
            context={"probabilities": len(probabilities), "scores": n_scored},
        )

    new_responses = tuple(
        ItemResponse(item_id=item_id, score=int(score), probability=float(prob))
        for item_id, score, prob in zip(administered_now, scores, probabilities)
    )
    administered = stage_input.administered_item_ids + tuple(administered_now)

    return StageInput(
        config=config,
        stage=stage_input.stage + 1,
        responses=stage_input.responses + new_responses,
        administered_item_ids=administered,
        shadow_test_item_ids=frozenset(output.shadow_test_item_ids),
        previous_estimate=output.estimate,
        passage_sequence=tuple(passage_index_sequence(administered, pool)),
        eligibility=output.eligibility,
    )


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


class CATEngine:
    """
    Runs adaptive stages for any number of examinees.

    Stateless between calls: the blueprint, the solver and the usage store are
    shared, and every per-stage array is local to run_stage(). Safe to call
    concurrently from several threads provided the solver is.

    Args:
        blueprint: Test definition (pool, test length, constraints).
        solver: Shadow-test solver.
        usage_store: Exposure counters; required when exposure control is on.
    """

    def __init__(
        self,
        blueprint: Blueprint,
        solver: ShadowTestSolver,
        usage_store: Optional[ExposureUsageStore] = None,
    ):
        self.blueprint = blueprint
        self.pool = blueprint.pool
        self.solver = solver
        self.usage_store = usage_store

    @property
    def test_length(self) -> int:
        return self.blueprint.test_length

    def run_stage(
        self, stage_input: StageInput, rng: Optional[np.random.Generator] = None
    ) -> StageOutput:
        """
        Process one adaptive stage.

        Args:
            stage_input: Immutable state of the examinee's test.
            rng: Generator for randomization and eligibility draws.

        Returns:
            StageOutput with the ordered items to administer, or a complete
            output once the test length is reached.

        Raises:
            CATConfigurationError: On configuration misuse (before solving).
            InfeasibleTestConfigError: If the solver finds no shadow test.
        """
        if rng is None:
            rng = np.random.default_rng()
        start = time.perf_counter()
        config = stage_input.config
        self._validate(stage_input)

        if stage_input.completed_count == self.test_length:
            return self._complete_output(stage_input, start)

        phase = time.perf_counter()
        estimate = self._estimate_ability(stage_input)
        estimation_ms = _elapsed_ms(phase)

        phase = time.perf_counter()
        a, b, c, d = item_parameter_arrays(self.pool.items)
        criteria = compute_selection_criteria(
            config.item_selection_method, a, b, c, d, estimate.theta, estimate.se
        )
        criteria = apply_randomization(criteria, stage_input.stage, config.l_value, rng)
        selection_ms = _elapsed_ms(phase)

        phase = time.perf_counter()
        administered = list(stage_input.administered_item_ids)
        administered_rows = [self.pool.item_row(item_id) for item_id in administered]
        snapshot = self._eligibility(config.exposure_control, estimate.theta, rng)
        item_soft, passage_soft = soft_eligibility(snapshot, self.pool, administered_rows)
        item_hard = get_eligible_passage_items(administered, self.pool)
        eligibility_ms = _elapsed_ms(phase)

        big_m = (
            config.big_m_multiplier * float(np.max(criteria))
            if config.exposure_control.enabled
            else config.default_big_m
        )
        request = self._build_request(
            stage_input, estimate, criteria, item_soft, item_hard, passage_soft, big_m
        )

        phase = time.perf_counter()
        response = self.solver.solve(request)
        solver_ms = _elapsed_ms(phase)

        if response.status is SolverStatus.INFEASIBLE or not response.selected_item_ids:
            logger.error(
                f"Stage {stage_input.stage}: no feasible shadow test "
                f"(status={response.status.value}, "
                f"selected={len(response.selected_item_ids)})",
                extra={"stage": stage_input.stage, "solver_status": response.status.value},
            )
            raise InfeasibleTestConfigError(
                "Shadow test is infeasible",
                context={
                    "stage": stage_input.stage,
                    "status": response.status.value,
                    "test_length": self.test_length,
                },
            )

        phase = time.perf_counter()
        ordered = prep_shadow_test(
            administered,
            response.selected_item_rows,
            criteria,
            self.pool,
            response.passage_sequence,
        )
        ordering_ms = _elapsed_ms(phase)

        timings = StageTimings(
            estimation_ms=estimation_ms,
            selection_ms=selection_ms,
            eligibility_ms=eligibility_ms,
            solver_ms=solver_ms,
            ordering_ms=ordering_ms,
            total_ms=_elapsed_ms(start),
        )
        logger.info(
            f"Stage {stage_input.stage}: theta={estimate.theta:.3f} "
            f"SE={estimate.se:.3f}, next={ordered[:config.items_per_stage]}",
            extra={"stage": stage_input.stage, "duration_ms": timings.total_ms},
        )

        return StageOutput(
            stage=stage_input.stage,
            estimate=estimate,
            items_to_administer=tuple(ordered),
            items_administered=tuple(administered),
            shadow_test_item_ids=response.selected_item_ids,
            eligibility=snapshot,
            solver_response=response,
            complete=False,
            timings=timings,
        )

    def next_stage_input(
        self,
        stage_input: StageInput,
        output: StageOutput,
        scores: Sequence[int],
        probabilities: Optional[Sequence[float]] = None,
    ) -> StageInput:
        """Shortcut for build_next_stage_input() with this engine's pool."""
        return build_next_stage_input(
            stage_input, output, scores, self.pool, probabilities
        )

    def final_estimate(self, stage_input: StageInput) -> AbilityEstimate:
        """Ability estimate over every response of ``stage_input``."""
        if not stage_input.responses:
            return AbilityEstimate(stage_input.config.initial_theta, INITIAL_STANDARD_ERROR)
        return self._score(stage_input)

    def record_exposure(
        self,
        eligibility: Optional[EligibilitySnapshot],
        administered: Sequence[str],
        config: CATConfig,
    ) -> None:
        """
        Add one examinee's test to the exposure counters.

        ``eligibility`` is the snapshot of the examinee's last solved stage.
        """
        if not config.exposure_control.enabled or eligibility is None:
            return
        if self.usage_store is None:
            raise CATConfigurationError("Exposure control requires a usage store")
        record_examinee_exposure(
            self.usage_store,
            eligibility,
            administered,
            self.pool,
            config.exposure_control.overall_range,
        )

    def _validate(self, stage_input: StageInput) -> None:
        administered = stage_input.administered_item_ids
        if stage_input.completed_count > self.test_length:
            logger.error(
                f"Completed count {stage_input.completed_count} exceeds "
                f"test length {self.test_length}"
            )
            raise CATConfigurationError(
                "Completed count exceeds test length",
                context={
                    "completed": stage_input.completed_count,
                    "test_length": self.test_length,
                },
            )
        if len(set(administered)) != len(administered):
            raise CATConfigurationError(
                "Administered items contain duplicates",
                context={"administered": administered},
            )
        if len(stage_input.responses) != len(administered):
            raise CATConfigurationError(
                "Responses do not match administered items",
                context={
                    "responses": len(stage_input.responses),
                    "administered": len(administered),
                },
            )
        if stage_input.stage < 0:
            raise CATConfigurationError(
                "Stage index must be non-negative", context={"stage": stage_input.stage}
            )
        # Every completed stage administers between 1 and items_per_stage items
        per_stage = stage_input.config.items_per_stage
        completed = stage_input.completed_count
        if not stage_input.stage <= completed <= stage_input.stage * per_stage:
            raise CATConfigurationError(
                "Stage index does not match completed count",
                context={
                    "stage": stage_input.stage,
                    "completed": completed,
                    "items_per_stage": per_stage,
                },
            )

    def _complete_output(self, stage_input: StageInput, start: float) -> StageOutput:
        estimate = stage_input.previous_estimate or AbilityEstimate(
            stage_input.config.initial_theta, INITIAL_STANDARD_ERROR
        )
        logger.info(
            f"Stage {stage_input.stage}: test complete after "
            f"{stage_input.completed_count} items",
            extra={"stage": stage_input.stage},
        )
        return StageOutput(
            stage=stage_input.stage,
            estimate=estimate,
            items_to_administer=(),
            items_administered=stage_input.administered_item_ids,
            shadow_test_item_ids=tuple(sorted(stage_input.shadow_test_item_ids)),
            eligibility=stage_input.eligibility,
            complete=True,
            timings=StageTimings(total_ms=_elapsed_ms(start)),
        )

    def _estimate_ability(self, stage_input: StageInput) -> AbilityEstimate:
        if stage_input.stage == 0 or not stage_input.responses:
            return AbilityEstimate(stage_input.config.initial_theta, INITIAL_STANDARD_ERROR)
        return self._score(stage_input)

    def _score(self, stage_input: StageInput) -> AbilityEstimate:
        config = stage_input.config
        if config.scoring_method is ScoringMethod.EAP:
            items = [self.pool.item(r.item_id) for r in stage_input.responses]
            a, b, c, d = item_parameter_arrays(items)
            scores = [r.score for r in stage_input.responses]
            return estimate_ability_eap(a, b, c, d, scores, config.eap)

        logger.error(f"Unsupported scoring method: {config.scoring_method!r}")
        raise CATConfigurationError(
            "Unsupported scoring method", context={"method": config.scoring_method}
        )

    def _eligibility(
        self, exposure: ExposureControlConfig, theta: float, rng: np.random.Generator
    ) -> Optional[EligibilitySnapshot]:
        if not exposure.enabled:
            return None
        if self.usage_store is None:
            logger.error("Exposure control is enabled but no usage store was injected")
            raise CATConfigurationError("Exposure control requires a usage store")
        return build_eligibility_snapshot(
            self.usage_store,
            exposure,
            controlled_entity_ids(exposure, self.pool),
            theta,
            rng,
        )

    def _build_request(
        self,
        stage_input: StageInput,
        estimate: AbilityEstimate,
        criteria: np.ndarray,
        item_soft: np.ndarray,
        item_hard: np.ndarray,
        passage_soft: np.ndarray,
        big_m: float,
    ) -> ShadowTestRequest:
        administered = set(stage_input.administered_item_ids)
        previous = stage_input.shadow_test_item_ids
        items = tuple(
            SolverItemInput(
                item_id=item.item_id,
                information=float(criteria[row]),
                administered=item.item_id in administered,
                eligible=bool(item_soft[row]),
                eligible_hard=bool(item_hard[row]),
                in_previous_shadow_test=item.item_id in previous,
            )
            for row, item in enumerate(self.pool.items)
        )
        passages = tuple(
            SolverPassageInput(passage_id=p.passage_id, eligible=bool(passage_soft[row]))
            for row, p in enumerate(self.pool.passages)
        )
        return ShadowTestRequest(
            stage=stage_input.stage,
            items=items,
            passages=passages,
            theta=estimate.theta,
            big_m=big_m,
            exposure_type=stage_input.config.exposure_control.exposure_type,
            administered_passage_sequence=stage_input.passage_sequence,
        )
