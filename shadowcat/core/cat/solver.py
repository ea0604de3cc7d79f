"""
Request/response contract between the stage engine and a shadow-test solver.

A solver assembles a full-length test satisfying every hard constraint of the
blueprint while maximizing total criterion value. The engine only sees this
narrow boundary; any MIP backend can sit behind it.
"""
import enum
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple, runtime_checkable

from shadowcat.core.cat.exposure_control import ExposureControlType


class SolverStatus(str, enum.Enum):
    """Outcome of a shadow-test solve."""

    OPTIMAL = "optimal"
    FEASIBLE = "feasible"  # stopped before proving optimality
    INFEASIBLE = "infeasible"
    UNBOUNDED = "unbounded"
    TIME_LIMIT = "time_limit"
    ERROR = "error"


@dataclass(frozen=True)
class SolverItemInput:
    """Per-item values for one solve, in pool row order."""

    item_id: str
    information: float
    administered: bool
    eligible: bool  # soft: selecting an ineligible item costs big_m
    eligible_hard: bool  # hard: ineligible items must not be selected
    in_previous_shadow_test: bool


@dataclass(frozen=True)
class SolverPassageInput:
    """Per-passage values for one solve, in pool row order."""

    passage_id: str
    eligible: bool


@dataclass(frozen=True)
class ShadowTestRequest:
    """Everything a solver needs for one stage."""

    stage: int
    items: Tuple[SolverItemInput, ...]
    passages: Tuple[SolverPassageInput, ...]
    theta: float
    big_m: float
    exposure_type: ExposureControlType
    administered_passage_sequence: Tuple[int, ...] = ()


@dataclass(frozen=True)
class ShadowTestResponse:
    """Solver result for one stage."""

    status: SolverStatus
    selected_item_ids: Tuple[str, ...] = ()
    selected_item_rows: Tuple[int, ...] = ()
    selected_passage_ids: Tuple[str, ...] = ()
    selected_passage_rows: Tuple[int, ...] = ()
    # Passage rows in the order they should be administered, if constrained
    passage_sequence: Optional[Tuple[int, ...]] = None
    objective: Optional[float] = None
    solve_time_secs: float = 0.0


@runtime_checkable
class ShadowTestSolver(Protocol):
    """
    Protocol for shadow-test solvers.

    Implementations must be safe to call from several threads at once, or be
    given one instance per worker.
    """

    def solve(self, request: ShadowTestRequest) -> ShadowTestResponse:
        ...
