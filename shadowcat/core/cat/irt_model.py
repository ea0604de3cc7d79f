"""
Three-parameter logistic (3PL) item response model.

    P(theta) = c + (1 - c) / (1 + exp(-D * a * (theta - b)))
    I(theta) = D^2 * a^2 * (Q / P) * ((P - c) / (1 - c))^2

All functions broadcast over numpy arrays, so a whole pool can be evaluated
at one theta (or one item over a theta grid) in a single call.

c == 1 is not supported: the information formula divides by (1 - c) and the
result is NaN.
"""
from typing import Sequence, Tuple

import numpy as np
from numpy.typing import ArrayLike

from shadowcat.core.cat.item_pool import Item


def response_probability(
    a: ArrayLike, b: ArrayLike, c: ArrayLike, d: ArrayLike, theta: ArrayLike
):
    """Probability of a correct response under the 3PL model."""
    a, b, c, d, theta = (np.asarray(v, dtype=float) for v in (a, b, c, d, theta))
    return c + (1.0 - c) / (1.0 + np.exp(-d * a * (theta - b)))


def fisher_information(
    a: ArrayLike, b: ArrayLike, c: ArrayLike, d: ArrayLike, theta: ArrayLike
):
    """
    Fisher information of a 3PL item at theta.

    Args:
        a: Discrimination.
        b: Difficulty.
        c: Guessing (lower asymptote), must be < 1.
        d: Scaling constant (1.0 logistic metric, 1.702 normal-ogive metric).
        theta: Ability level(s).

    Returns:
        Information value(s), broadcast over the inputs.
    """
    a, b, c, d, theta = (np.asarray(v, dtype=float) for v in (a, b, c, d, theta))
    p = response_probability(a, b, c, d, theta)
    q = 1.0 - p
    return d**2 * a**2 * (q / p) * ((p - c) / (1.0 - c)) ** 2


def item_parameter_arrays(
    items: Sequence[Item],
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Return (a, b, c, d) column arrays for a sequence of items."""
    a = np.array([item.a for item in items], dtype=float)
    b = np.array([item.b for item in items], dtype=float)
    c = np.array([item.c for item in items], dtype=float)
    d = np.array([item.d for item in items], dtype=float)
    return a, b, c, d
