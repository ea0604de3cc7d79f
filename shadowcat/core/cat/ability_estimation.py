"""
EAP (Expected A Posteriori) ability estimation for shadow-test CAT.

Implements Bayesian posterior mean estimation of ability (theta) by numerical
quadrature over the 3PL IRT model, with a Normal or Uniform prior.

Formula:
    theta_hat = sum(X_q * L(X_q) * W(X_q)) / sum(L(X_q) * W(X_q))
    SE        = sqrt(sum((X_q - theta_hat)^2 * L(X_q) * W(X_q)) / sum(L(X_q) * W(X_q)))

Where X_q are Q equally spaced quadrature points, W is the prior density
normalized to sum to 1 over the points, and L is the product over
administered items of P^u * (1 - P)^(1 - u).

The likelihood is a plain product (not log-space). With long tests or
extreme patterns every L(X_q) can underflow to 0; the estimate is then NaN
and a warning is logged. The value is not clamped.
"""

import logging
from typing import Annotated, Literal, NamedTuple, Self, Union

import numpy as np
from numpy.typing import ArrayLike
from pydantic import BaseModel, ConfigDict, Field, model_validator
from scipy.stats import norm

from shadowcat.core.cat.irt_model import response_probability
from shadowcat.core.config import settings

logger = logging.getLogger(__name__)

# SE reported before any response has been scored
INITIAL_STANDARD_ERROR = 1.0


class AbilityEstimate(NamedTuple):
    """Posterior ability estimate and its standard error."""

    theta: float
    se: float


class NormalPrior(BaseModel):
    """Gaussian prior on theta."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["normal"] = "normal"
    mean: float = 0.0
    sd: float = Field(default=1.0, gt=0.0)

    def density(self, points: np.ndarray) -> np.ndarray:
        return norm.pdf(points, loc=self.mean, scale=self.sd)


class UniformPrior(BaseModel):
    """Uniform prior on theta over [minimum, maximum]."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["uniform"] = "uniform"
    minimum: float = -4.0
    maximum: float = 4.0

    @model_validator(mode="after")
    def validate_bounds(self) -> Self:
        if self.minimum >= self.maximum:
            raise ValueError(
                f"minimum ({self.minimum}) must be less than maximum ({self.maximum})"
            )
        return self

    def density(self, points: np.ndarray) -> np.ndarray:
        inside = (points >= self.minimum) & (points <= self.maximum)
        return np.where(inside, 1.0 / (self.maximum - self.minimum), 0.0)


PriorDistribution = Annotated[
    Union[NormalPrior, UniformPrior], Field(discriminator="kind")
]


class EAPConfig(BaseModel):
    """Quadrature and prior settings for EAP scoring."""

    model_config = ConfigDict(frozen=True)

    num_quad: int = Field(default_factory=lambda: settings.CAT_QUADRATURE_POINTS, ge=2)
    min_quad: float = Field(default_factory=lambda: settings.CAT_QUADRATURE_MIN)
    max_quad: float = Field(default_factory=lambda: settings.CAT_QUADRATURE_MAX)
    prior: PriorDistribution = Field(default_factory=NormalPrior)

    @model_validator(mode="after")
    def validate_range(self) -> Self:
        if self.min_quad >= self.max_quad:
            raise ValueError(
                f"min_quad ({self.min_quad}) must be less than max_quad ({self.max_quad})"
            )
        return self


def quadrature_points(config: EAPConfig) -> np.ndarray:
    """Return the Q equally spaced quadrature points of the config."""
    q = np.arange(config.num_quad, dtype=float)
    return q * (config.max_quad - config.min_quad) / (config.num_quad - 1) + config.min_quad


def estimate_ability_eap(
    a: ArrayLike,
    b: ArrayLike,
    c: ArrayLike,
    d: ArrayLike,
    scores: ArrayLike,
    config: EAPConfig,
) -> AbilityEstimate:
    """
    Estimate ability using Expected A Posteriori (EAP) with numerical quadrature.

    Args:
        a: Discrimination of each administered item.
        b: Difficulty of each administered item.
        c: Guessing parameter of each administered item.
        d: Scaling constant of each administered item.
        scores: 0/1 score for each administered item, same order as the
            parameter arrays.
        config: Quadrature points, range and prior.

    Returns:
        AbilityEstimate(theta, se): posterior mean and posterior SD.

    Raises:
        ValueError: If the parameter and score arrays differ in length or a
            score is not 0 or 1.
    """
    a, b, c, d = (np.atleast_1d(np.asarray(v, dtype=float)) for v in (a, b, c, d))
    scores = np.atleast_1d(np.asarray(scores, dtype=float))

    n_items = len(scores)
    if not all(len(v) == n_items for v in (a, b, c, d)):
        raise ValueError(
            f"Item parameter arrays must all have length {n_items} to match scores"
        )
    if not np.isin(scores, (0.0, 1.0)).all():
        raise ValueError("Scores must be 0 or 1")

    points = quadrature_points(config)
    prior = config.prior.density(points)
    prior = prior / prior.sum()

    # (Q, n_items) probability matrix
    p = response_probability(a, b, c, d, points[:, np.newaxis])
    likelihood = np.prod(p**scores * (1.0 - p) ** (1.0 - scores), axis=1)

    weights = likelihood * prior
    denominator = weights.sum()
    if denominator == 0.0:
        logger.warning(
            f"EAP posterior vanished over all {config.num_quad} quadrature points "
            f"({n_items} responses); estimate is undefined"
        )

    with np.errstate(divide="ignore", invalid="ignore"):
        theta = float(np.sum(points * weights) / denominator)
        se = float(np.sqrt(np.sum((points - theta) ** 2 * weights) / denominator))

    logger.debug(f"EAP estimate: theta={theta:.4f}, SE={se:.4f} ({n_items} items)")

    return AbilityEstimate(theta=theta, se=se)
