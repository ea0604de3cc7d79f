"""
Shadow-test computerized adaptive testing (CAT) engine.

This module provides the per-stage decision core (ability estimation, item
selection criteria, exposure control, passage handling and the stage
controller), the solver contract with a reference MILP binding, and a
simulation harness.
"""

from .ability_estimation import (
    AbilityEstimate,
    EAPConfig,
    NormalPrior,
    UniformPrior,
    estimate_ability_eap,
)
from .engine import (
    CATConfig,
    CATEngine,
    ItemResponse,
    ScoringMethod,
    StageInput,
    StageOutput,
    StageTimings,
    build_next_stage_input,
    initial_stage_input,
)
from .errors import CATConfigurationError, CATError, InfeasibleTestConfigError
from .exposure_control import (
    EligibilitySnapshot,
    ExposureControlConfig,
    ExposureControlType,
    ExposureUsageStore,
    ThetaRange,
    overall_theta_range,
)
from .irt_model import fisher_information, response_probability
from .item_pool import (
    Blueprint,
    ConstraintType,
    ContentConstraint,
    Item,
    ItemPool,
    Passage,
)
from .item_selection import ItemSelectionMethod
from .milp_solver import MilpShadowTestSolver
from .passage_management import get_eligible_passage_items, prep_shadow_test
from .simulation import SimulationConfig, SimulationResult, run_simulation
from .solver import (
    ShadowTestRequest,
    ShadowTestResponse,
    ShadowTestSolver,
    SolverStatus,
)

__all__ = [
    # Ability estimation
    "AbilityEstimate",
    "EAPConfig",
    "NormalPrior",
    "UniformPrior",
    "estimate_ability_eap",
    # Engine
    "CATConfig",
    "CATEngine",
    "ItemResponse",
    "ScoringMethod",
    "StageInput",
    "StageOutput",
    "StageTimings",
    "build_next_stage_input",
    "initial_stage_input",
    # Errors
    "CATConfigurationError",
    "CATError",
    "InfeasibleTestConfigError",
    # Exposure control
    "EligibilitySnapshot",
    "ExposureControlConfig",
    "ExposureControlType",
    "ExposureUsageStore",
    "ThetaRange",
    "overall_theta_range",
    # IRT model
    "fisher_information",
    "response_probability",
    # Item pool
    "Blueprint",
    "ConstraintType",
    "ContentConstraint",
    "Item",
    "ItemPool",
    "Passage",
    # Selection
    "ItemSelectionMethod",
    # Solver
    "MilpShadowTestSolver",
    "ShadowTestRequest",
    "ShadowTestResponse",
    "ShadowTestSolver",
    "SolverStatus",
    # Passages
    "get_eligible_passage_items",
    "prep_shadow_test",
    # Simulation
    "SimulationConfig",
    "SimulationResult",
    "run_simulation",
]
