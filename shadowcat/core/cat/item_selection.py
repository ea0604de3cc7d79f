"""
Item selection criteria for shadow-test assembly.

Two interchangeable criteria rank every pool item at the current ability
estimate; the shadow-test solver maximizes their sum:

    - Maximum Fisher Information (MFI): I_i(theta_hat)
    - Efficiency Balanced Information (EBI; Han, 2012): information integrated
      over theta_hat +/- 2 SE, scaled by (1 + 1 / max_theta I_i(theta))

During the first L stages the criteria are blended with uniform noise so
early shadow tests are less predictable:

    criterion' = w * criterion + (1 - w) * U(min(criteria), max(criteria)),
    w = stage / (L + 1)
"""

import enum
import logging
from typing import Optional

import numpy as np
from numpy.typing import ArrayLike

from shadowcat.core.cat.errors import CATConfigurationError
from shadowcat.core.cat.irt_model import fisher_information
from shadowcat.core.config import settings

logger = logging.getLogger(__name__)

# Width of the EBI integration window in standard errors on each side
EBI_WINDOW_SE = 2.0


class ItemSelectionMethod(str, enum.Enum):
    """Per-item ranking criterion."""

    MAX_FISHER_INFORMATION = "mfi"
    EFFICIENCY_BALANCED_INFORMATION = "ebi"


def max_fisher_information(a, b, c, d, theta: float) -> np.ndarray:
    """Information of every item at theta."""
    return np.asarray(fisher_information(a, b, c, d, theta), dtype=float)


def theta_at_max_information(a: ArrayLike, b: ArrayLike, c: ArrayLike):
    """
    Peak-information ability used to scale EBI (Birnbaum, 1968).

        theta_max = b + ln((1 + sqrt(1 + 8c)) / 2) / a

    The scaling constant D is not applied here, so for D != 1 this is the
    reference point of the EBI normalization rather than the exact peak.
    """
    a, b, c = (np.asarray(v, dtype=float) for v in (a, b, c))
    return b + np.log((1.0 + np.sqrt(1.0 + 8.0 * c)) / 2.0) / a


def efficiency_balanced_information(
    a: ArrayLike,
    b: ArrayLike,
    c: ArrayLike,
    d: ArrayLike,
    theta: float,
    se: float,
    steps: Optional[int] = None,
) -> np.ndarray:
    """
    Compute the EBI criterion for every item.

    The integral of I_i over [theta - 2SE, theta + 2SE] is approximated with
    a midpoint sum of ``steps`` equal-width cells.

    Args:
        a, b, c, d: Item parameter arrays.
        theta: Current ability estimate.
        se: Standard error of the current estimate.
        steps: Number of integration cells (defaults to CAT_EBI_STEPS).

    Returns:
        Array of EBI values, one per item.

    Raises:
        ValueError: If steps is not positive or se is negative.
    """
    if steps is None:
        steps = settings.CAT_EBI_STEPS
    if steps <= 0:
        raise ValueError(f"steps must be positive, got {steps}")
    if se < 0:
        raise ValueError(f"se must be non-negative, got {se}")

    a, b, c, d = (np.atleast_1d(np.asarray(v, dtype=float)) for v in (a, b, c, d))

    max_info = fisher_information(a, b, c, d, theta_at_max_information(a, b, c))

    interval = 2.0 * EBI_WINDOW_SE * se / steps
    start = theta - EBI_WINDOW_SE * se
    midpoints = start + (np.arange(steps) + 0.5) * interval

    # (steps, n_items) information grid
    info_grid = fisher_information(a, b, c, d, midpoints[:, np.newaxis])
    ebi = np.sum(info_grid * interval, axis=0)

    return ebi * (1.0 + 1.0 / max_info)


def compute_selection_criteria(
    method: ItemSelectionMethod,
    a: ArrayLike,
    b: ArrayLike,
    c: ArrayLike,
    d: ArrayLike,
    theta: float,
    se: float,
) -> np.ndarray:
    """
    Dispatch to the configured criterion.

    Raises:
        CATConfigurationError: If the method is not supported.
    """
    try:
        method = ItemSelectionMethod(method)
    except ValueError:
        logger.error(f"Unsupported item selection method: {method!r}")
        raise CATConfigurationError(
            "Unsupported item selection method", context={"method": method}
        ) from None

    if method is ItemSelectionMethod.MAX_FISHER_INFORMATION:
        return max_fisher_information(a, b, c, d, theta)
    if method is ItemSelectionMethod.EFFICIENCY_BALANCED_INFORMATION:
        return efficiency_balanced_information(a, b, c, d, theta, se)

    logger.error(f"Unsupported item selection method: {method!r}")
    raise CATConfigurationError(
        "Unsupported item selection method", context={"method": method}
    )


def apply_randomization(
    criteria: np.ndarray,
    stage: int,
    l_value: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Blend criteria with uniform noise during the first ``l_value`` stages.

    Args:
        criteria: Per-item criterion values.
        stage: Current stage index (0-based).
        l_value: Number of randomized stages (0 disables randomization).
        rng: Random generator for the uniform draws.

    Returns:
        A new array of blended criteria, or the input unchanged when
        stage >= l_value.
    """
    if stage >= l_value or len(criteria) == 0:
        return criteria

    weight = stage / (l_value + 1)
    low, high = float(np.min(criteria)), float(np.max(criteria))
    noise = rng.uniform(low, high, size=len(criteria))

    logger.debug(
        f"Randomizing criteria at stage {stage} (L={l_value}, weight={weight:.3f})"
    )

    return weight * criteria + (1.0 - weight) * noise
