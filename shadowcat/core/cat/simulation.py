"""
Monte Carlo simulation harness for the shadow-test CAT engine.

Drives simulated examinees with known true ability through the stage loop:

    1. Draw true_theta from N(theta_mean, theta_sd)
    2. run_stage() -> administer the first item(s) of the output
    3. Simulate a 3PL response for each administered item
    4. Build the next StageInput and repeat until the test is complete
    5. Record the examinee's exposure with the last solved stage's eligibility

Examinees run concurrently on a thread pool. Each gets an independent
numpy Generator spawned from one SeedSequence, so results are reproducible
for a fixed seed regardless of scheduling (exposure counters aside, which
depend on completion order when exposure control is on).
"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from shadowcat.core.cat.engine import (
    CATConfig,
    CATEngine,
    StageOutput,
    initial_stage_input,
)
from shadowcat.core.cat.exposure_control import (
    EligibilitySnapshot,
    controlled_entity_ids,
)
from shadowcat.core.cat.irt_model import response_probability
from shadowcat.core.cat.item_pool import Item
from shadowcat.core.config import settings
from shadowcat.core.logging_config import examinee_id_context, setup_logging

logger = logging.getLogger(__name__)


@dataclass
class SimulationConfig:
    """Configuration for a simulation run."""

    n_examinees: int = 100
    theta_mean: float = 0.0
    theta_sd: float = 1.0
    seed: int = field(default_factory=lambda: settings.SIMULATION_SEED)
    max_workers: int = field(default_factory=lambda: settings.SIMULATION_MAX_WORKERS)
    # Fixed true abilities; overrides the normal draw when given
    true_thetas: Optional[List[float]] = None
    # Install the package logging configuration before running
    configure_logging: bool = False


@dataclass
class ExamineeResult:
    """Results for a single simulated examinee."""

    examinee_id: int
    true_theta: float
    estimated_theta: float
    final_se: float
    bias: float
    administered_item_ids: List[str]
    scores: List[int]
    stage_outputs: List[StageOutput]

    @property
    def shadow_tests(self) -> List[Tuple[str, ...]]:
        """Shadow test of every solved stage."""
        return [o.shadow_test_item_ids for o in self.stage_outputs if not o.complete]


@dataclass
class SimulationResult:
    """Aggregate simulation results."""

    config: SimulationConfig
    examinee_results: List[ExamineeResult]
    mean_bias: float
    rmse: float
    mean_se: float
    # Administration rate per controlled entity (items, or passages)
    exposure_rates: Dict[str, float]


def simulate_response(
    item: Item, true_theta: float, rng: np.random.Generator
) -> Tuple[int, float]:
    """
    Generate a simulated 0/1 response under the 3PL model.

    Returns:
        Tuple of (score, probability of a correct response).
    """
    probability = float(response_probability(item.a, item.b, item.c, item.d, true_theta))
    return int(rng.random() < probability), probability


def run_examinee(
    engine: CATEngine,
    cat_config: CATConfig,
    examinee_id: int,
    true_theta: float,
    rng: np.random.Generator,
) -> ExamineeResult:
    """
    Run one simulated examinee through the full test.

    Raises:
        InfeasibleTestConfigError: If any stage has no feasible shadow test.
    """
    token = examinee_id_context.set(examinee_id)
    try:
        stage_input = initial_stage_input(cat_config)
        outputs: List[StageOutput] = []
        scores: List[int] = []
        last_eligibility: Optional[EligibilitySnapshot] = None

        while True:
            output = engine.run_stage(stage_input, rng)
            outputs.append(output)
            if output.complete:
                break
            last_eligibility = output.eligibility

            n_items = min(
                cat_config.items_per_stage,
                engine.test_length - stage_input.completed_count,
                len(output.items_to_administer),
            )
            stage_scores: List[int] = []
            probabilities: List[float] = []
            for item_id in output.items_to_administer[:n_items]:
                score, probability = simulate_response(
                    engine.pool.item(item_id), true_theta, rng
                )
                stage_scores.append(score)
                probabilities.append(probability)
            scores.extend(stage_scores)

            stage_input = engine.next_stage_input(
                stage_input, output, stage_scores, probabilities
            )

        final = engine.final_estimate(stage_input)
        administered = list(stage_input.administered_item_ids)
        engine.record_exposure(last_eligibility, administered, cat_config)
    finally:
        examinee_id_context.reset(token)

    return ExamineeResult(
        examinee_id=examinee_id,
        true_theta=true_theta,
        estimated_theta=final.theta,
        final_se=final.se,
        bias=final.theta - true_theta,
        administered_item_ids=administered,
        scores=scores,
        stage_outputs=outputs,
    )


def run_simulation(
    engine: CATEngine,
    cat_config: CATConfig,
    config: SimulationConfig,
) -> SimulationResult:
    """
    Run a Monte Carlo simulation over ``config.n_examinees`` examinees.

    Args:
        engine: Engine with its solver and (if needed) usage store.
        cat_config: Adaptive configuration applied to every examinee.
        config: Simulation configuration.

    Returns:
        SimulationResult with per-examinee results and aggregate metrics.

    Raises:
        ValueError: If n_examinees is not positive or true_thetas has the
            wrong length.
        InfeasibleTestConfigError: Propagated from the first failing examinee.
    """
    if config.n_examinees <= 0:
        raise ValueError(f"n_examinees must be positive, got {config.n_examinees}")
    if config.true_thetas is not None and len(config.true_thetas) != config.n_examinees:
        raise ValueError(
            f"true_thetas has {len(config.true_thetas)} values, "
            f"expected {config.n_examinees}"
        )

    if config.configure_logging:
        setup_logging()

    logger.info(
        f"Starting CAT simulation: N={config.n_examinees}, "
        f"test length={engine.test_length}, workers={config.max_workers}"
    )

    seeds = np.random.SeedSequence(config.seed).spawn(config.n_examinees + 1)
    if config.true_thetas is not None:
        true_thetas: Sequence[float] = config.true_thetas
    else:
        theta_rng = np.random.default_rng(seeds[0])
        true_thetas = theta_rng.normal(
            loc=config.theta_mean, scale=config.theta_sd, size=config.n_examinees
        ).tolist()

    with ThreadPoolExecutor(max_workers=config.max_workers) as executor:
        futures = [
            executor.submit(
                run_examinee,
                engine,
                cat_config,
                examinee_id,
                float(true_theta),
                np.random.default_rng(seeds[examinee_id]),
            )
            for examinee_id, true_theta in enumerate(true_thetas, start=1)
        ]
        examinee_results = [future.result() for future in futures]

    biases = [r.bias for r in examinee_results]
    mean_bias = float(np.mean(biases))
    rmse = math.sqrt(float(np.mean(np.square(biases))))
    mean_se = float(np.mean([r.final_se for r in examinee_results]))

    exposure_rates = _exposure_rates(engine, cat_config, examinee_results)

    logger.info(
        f"Simulation complete: bias={mean_bias:.4f}, RMSE={rmse:.4f}, "
        f"mean SE={mean_se:.4f}"
    )

    return SimulationResult(
        config=config,
        examinee_results=examinee_results,
        mean_bias=mean_bias,
        rmse=rmse,
        mean_se=mean_se,
        exposure_rates=exposure_rates,
    )


def _exposure_rates(
    engine: CATEngine,
    cat_config: CATConfig,
    examinee_results: List[ExamineeResult],
) -> Dict[str, float]:
    exposure = cat_config.exposure_control
    n_examinees = len(examinee_results)
    entity_ids = controlled_entity_ids(exposure, engine.pool)

    if exposure.enabled and engine.usage_store is not None:
        return engine.usage_store.exposure_rates(
            exposure.overall_range, entity_ids, n_examinees
        )

    # Without exposure control the counters are not kept; count directly
    counts = dict.fromkeys(entity_ids, 0)
    for result in examinee_results:
        for entity_id in result.administered_item_ids:
            counts[entity_id] += 1
    return {entity_id: count / n_examinees for entity_id, count in counts.items()}
