"""Batch factor-graph estimation.

- Optimization vector layout and immutable Trial bundles
- Retraction of solver steps (with bias folding and re-integration)
- Inertial, GNSS, wheel-speed and lane factor blocks
- Gauss-Newton, Levenberg-Marquardt and dogleg trust-region solvers
- BatchOptimizer orchestrating the fusion modes
"""

from lanefusion.estimators.factors import (
    BlockAssembler,
    FactorBlock,
    gnss_block,
    inertial_block,
    prior_block,
    stack_blocks,
    wheel_speed_block,
)
from lanefusion.estimators.lane_factors import (
    ForwardDifference,
    JacobianStrategy,
    anchor_residual,
    lane_anchor_block,
    lane_measurement_block,
    measurement_residual,
)
from lanefusion.estimators.optimizer import BatchCost, BatchOptimizer, build_cost
from lanefusion.estimators.retraction import retract
from lanefusion.estimators.solvers import (
    CostFunction,
    SolverResult,
    analyze_singularity,
    detect_oscillation,
    dogleg,
    gauss_newton,
    information_summary,
    levenberg_marquardt,
    trust_region,
)
from lanefusion.estimators.state import FusionProblem, Trial, VariableLayout

__all__ = [
    # State
    "VariableLayout",
    "Trial",
    "FusionProblem",
    "retract",
    # Factors
    "FactorBlock",
    "BlockAssembler",
    "prior_block",
    "inertial_block",
    "gnss_block",
    "wheel_speed_block",
    "stack_blocks",
    "JacobianStrategy",
    "ForwardDifference",
    "measurement_residual",
    "anchor_residual",
    "lane_measurement_block",
    "lane_anchor_block",
    # Solvers
    "CostFunction",
    "SolverResult",
    "gauss_newton",
    "levenberg_marquardt",
    "trust_region",
    "dogleg",
    "detect_oscillation",
    "analyze_singularity",
    "information_summary",
    # Orchestration
    "BatchCost",
    "BatchOptimizer",
    "build_cost",
]
