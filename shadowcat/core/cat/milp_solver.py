"""
Reference shadow-test solver on scipy's MILP interface (HiGHS).

Decision variables are one binary per item (x_i) followed by one binary per
passage (z_p). The model is:

    maximize   sum_i info_i * x_i - bigM * (sum_{i soft-ineligible} x_i
                                           + sum_{p soft-ineligible} z_p)
    subject to sum_i x_i = test length
               x_i = 1                      for administered items
               x_i = 0                      for hard-ineligible items
               n_min * z_p <= sum_{i in p} x_i <= n_max * z_p
               passage count bounds on sum_p z_p
               blueprint content constraints

A fresh model is built for every request, so one instance can serve many
threads.
"""
import logging
import time
from typing import List, Optional, Tuple

import numpy as np
from scipy.optimize import Bounds, LinearConstraint, milp

from shadowcat.core.cat.errors import CATConfigurationError
from shadowcat.core.cat.item_pool import Blueprint, ConstraintType, ContentConstraint
from shadowcat.core.cat.solver import (
    ShadowTestRequest,
    ShadowTestResponse,
    SolverStatus,
)
from shadowcat.core.config import settings

logger = logging.getLogger(__name__)

# scipy.optimize.milp status codes
_MILP_OPTIMAL = 0
_MILP_LIMIT_REACHED = 1
_MILP_INFEASIBLE = 2
_MILP_UNBOUNDED = 3

# Values above this are treated as selected
_SELECTION_THRESHOLD = 0.5


class _RowBuilder:
    """Accumulates linear constraint rows over the item and passage variables."""

    def __init__(self, n_vars: int):
        self.n_vars = n_vars
        self.rows: List[np.ndarray] = []
        self.lower: List[float] = []
        self.upper: List[float] = []

    def add(
        self, coefficients: np.ndarray, lower: Optional[float], upper: Optional[float]
    ) -> None:
        self.rows.append(coefficients)
        self.lower.append(-np.inf if lower is None else lower)
        self.upper.append(np.inf if upper is None else upper)

    def row(self) -> np.ndarray:
        return np.zeros(self.n_vars)

    def build(self) -> LinearConstraint:
        return LinearConstraint(np.vstack(self.rows), self.lower, self.upper)


class MilpShadowTestSolver:
    """
    Shadow-test solver backed by ``scipy.optimize.milp``.

    Args:
        blueprint: Test definition (pool, length, passage bounds, constraints).
        time_limit_secs: Wall-clock limit per solve.
        mip_rel_gap: Relative optimality gap at which HiGHS may stop.
    """

    def __init__(
        self,
        blueprint: Blueprint,
        time_limit_secs: Optional[float] = None,
        mip_rel_gap: Optional[float] = None,
    ):
        self.blueprint = blueprint
        self.time_limit_secs = (
            settings.SOLVER_TIME_LIMIT_SECS if time_limit_secs is None else time_limit_secs
        )
        self.mip_rel_gap = (
            settings.SOLVER_MIP_REL_GAP if mip_rel_gap is None else mip_rel_gap
        )

    def solve(self, request: ShadowTestRequest) -> ShadowTestResponse:
        pool = self.blueprint.pool
        n_items, n_passages = len(pool), len(pool.passages)
        if len(request.items) != n_items or len(request.passages) != n_passages:
            raise CATConfigurationError(
                "Solver request does not match the blueprint pool",
                context={
                    "request_items": len(request.items),
                    "pool_items": n_items,
                    "request_passages": len(request.passages),
                    "pool_passages": n_passages,
                },
            )

        n_vars = n_items + n_passages
        objective, lower, upper = self._objective_and_bounds(request, n_vars)
        constraints = self._constraints(n_vars)

        start = time.perf_counter()
        result = milp(
            c=objective,
            integrality=np.ones(n_vars),
            bounds=Bounds(lower, upper),
            constraints=constraints,
            options={
                "time_limit": self.time_limit_secs,
                "mip_rel_gap": self.mip_rel_gap,
                "disp": False,
            },
        )
        elapsed = time.perf_counter() - start

        status = self._map_status(result.status, result.x)
        logger.debug(
            f"Stage {request.stage} MILP solve: {status.value} in {elapsed:.3f}s "
            f"({result.message})"
        )

        if result.x is None or status in (SolverStatus.INFEASIBLE, SolverStatus.ERROR):
            return ShadowTestResponse(status=status, solve_time_secs=elapsed)

        selected = result.x > _SELECTION_THRESHOLD
        item_rows = tuple(int(r) for r in np.flatnonzero(selected[:n_items]))
        passage_rows = tuple(int(r) for r in np.flatnonzero(selected[n_items:]))

        return ShadowTestResponse(
            status=status,
            selected_item_ids=tuple(pool.items[r].item_id for r in item_rows),
            selected_item_rows=item_rows,
            selected_passage_ids=tuple(pool.passages[r].passage_id for r in passage_rows),
            selected_passage_rows=passage_rows,
            passage_sequence=self._passage_sequence(passage_rows),
            objective=-float(result.fun),
            solve_time_secs=elapsed,
        )

    def _objective_and_bounds(
        self, request: ShadowTestRequest, n_vars: int
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        n_items = len(request.items)
        objective = np.zeros(n_vars)
        lower = np.zeros(n_vars)
        upper = np.ones(n_vars)

        for row, item in enumerate(request.items):
            # milp minimizes
            objective[row] = -item.information
            if not item.eligible:
                objective[row] += request.big_m
            if item.administered:
                lower[row] = 1.0
            elif not item.eligible_hard:
                upper[row] = 0.0

        for offset, passage in enumerate(request.passages):
            if not passage.eligible:
                objective[n_items + offset] += request.big_m

        return objective, lower, upper

    def _constraints(self, n_vars: int) -> LinearConstraint:
        blueprint = self.blueprint
        pool = blueprint.pool
        n_items = len(pool)
        rows = _RowBuilder(n_vars)

        length_row = rows.row()
        length_row[:n_items] = 1.0
        rows.add(length_row, blueprint.test_length, blueprint.test_length)

        if pool.has_passages:
            passage_vars = rows.row()
            passage_vars[n_items:] = 1.0
            for p_row, passage in enumerate(pool.passages):
                member_rows = [
                    r for r, item in enumerate(pool.items)
                    if item.passage_id == passage.passage_id
                ]
                n_min, n_max = blueprint.items_per_passage_bounds or (1, len(member_rows))

                at_most = rows.row()
                at_most[member_rows] = 1.0
                at_most[n_items + p_row] = -float(n_max)
                rows.add(at_most, None, 0.0)

                at_least = rows.row()
                at_least[member_rows] = 1.0
                at_least[n_items + p_row] = -float(n_min)
                rows.add(at_least, 0.0, None)

            if blueprint.passage_count_bounds is not None:
                low, high = blueprint.passage_count_bounds
                rows.add(passage_vars, low, high)

        for constraint in blueprint.constraints:
            self._add_content_constraint(rows, constraint)

        return rows.build()

    def _add_content_constraint(
        self, rows: _RowBuilder, constraint: ContentConstraint
    ) -> None:
        pool = self.blueprint.pool
        matched = constraint.matching_rows(pool)
        kind = constraint.constraint_type

        if kind in (ConstraintType.INCLUDE, ConstraintType.EXCLUDE):
            value = 1.0 if kind is ConstraintType.INCLUDE else 0.0
            for item_row in matched:
                coefficients = rows.row()
                coefficients[item_row] = 1.0
                rows.add(coefficients, value, value)
        elif kind is ConstraintType.ALL_OR_NONE:
            for first, second in zip(matched, matched[1:]):
                coefficients = rows.row()
                coefficients[first] = 1.0
                coefficients[second] = -1.0
                rows.add(coefficients, 0.0, 0.0)
        elif kind is ConstraintType.ENEMY:
            coefficients = rows.row()
            coefficients[matched] = 1.0
            rows.add(coefficients, None, 1.0)
        elif kind is ConstraintType.COUNT:
            coefficients = rows.row()
            coefficients[matched] = 1.0
            rows.add(coefficients, constraint.lower, constraint.upper)
        elif kind is ConstraintType.SUM:
            if constraint.sum_attribute is None:
                raise CATConfigurationError(
                    "SUM constraint requires sum_attribute",
                    context={"constraint_id": constraint.constraint_id},
                )
            coefficients = rows.row()
            for item_row in matched:
                value = pool.items[item_row].attributes.get(constraint.sum_attribute, 0.0)
                coefficients[item_row] = float(value)
            rows.add(coefficients, constraint.lower, constraint.upper)
        else:
            raise CATConfigurationError(
                "Unsupported constraint type",
                context={"constraint_id": constraint.constraint_id, "type": kind},
            )

    def _passage_sequence(self, passage_rows: Tuple[int, ...]) -> Optional[Tuple[int, ...]]:
        if self.blueprint.passage_order is None:
            return None
        selected = set(passage_rows)
        pool = self.blueprint.pool
        return tuple(
            row
            for row in (pool.passage_row(pid) for pid in self.blueprint.passage_order)
            if row in selected
        )

    @staticmethod
    def _map_status(code: int, solution: Optional[np.ndarray]) -> SolverStatus:
        if code == _MILP_OPTIMAL:
            return SolverStatus.OPTIMAL
        if code == _MILP_LIMIT_REACHED:
            return SolverStatus.FEASIBLE if solution is not None else SolverStatus.TIME_LIMIT
        if code == _MILP_INFEASIBLE:
            return SolverStatus.INFEASIBLE
        if code == _MILP_UNBOUNDED:
            return SolverStatus.UNBOUNDED
        return SolverStatus.ERROR
