"""
Batch INS/GNSS/WSS optimization with an adaptive arc-spline lane model.

Stages:
    1. Pre-integrate every IMU cluster and dead-reckon the initial states
       from the first GNSS fix.
    2. Solve the vehicle-only problem (basic, partial) or, with lanes,
       build the arc-spline map and solve jointly.
    3. Lane modes alternate joint solves with map validation; invalid
       segments get their worst sub-segment split and the problem is
       re-solved with the enlarged lane parameter block.

    basic    : prior + inertial + GNSS
    partial  : basic + wheel speed (with wheel scale factors)
    full     : partial + lane factors, map built from the INS states
    2-phase  : partial solved first, map built from the optimized states
"""

import logging
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy import sparse

from lanefusion.config import (
    BiasThresholds,
    FusionMode,
    NoiseCovariances,
    SolverOptions,
    VehicleParams,
    capabilities_for,
)
from lanefusion.estimators.factors import (
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
    lane_anchor_block,
    lane_measurement_block,
)
from lanefusion.estimators.retraction import retract
from lanefusion.estimators.solvers import (
    SOLVERS,
    CostFunction,
    SolverResult,
    information_summary,
)
from lanefusion.estimators.state import FusionProblem, Trial, VariableLayout
from lanefusion.mapping.arc_map import ArcMap, SegmentSeed
from lanefusion.sensors.ins import initial_state_from_gnss, propagate_states
from lanefusion.sensors.preintegration import preintegrate_all
from lanefusion.sensors.types import (
    Bias,
    GnssFixes,
    ImuCluster,
    LaneMeasurements,
    WheelSpeed,
)

# Iteration limits of the first lane solve and of the validation rounds
FIRST_LANE_ITERATIONS = 100
LANE_ROUND_ITERATIONS = 50


class BatchCost(CostFunction):
    """Stacked whitened residual of every active factor family.

    Args:
        layout: Variable layout of the solve.
        problem: Fixed inputs.
        lane_phase: Add lane measurement and anchor blocks.
        include_internal: Anchor internal sub-segment boundaries too.
        measurement_strategy: Jacobian strategy of the lane measurements.
        anchor_strategy: Jacobian strategy of the lane anchors.
    """

    def __init__(
        self,
        layout: VariableLayout,
        problem: FusionProblem,
        lane_phase: bool = False,
        include_internal: bool = False,
        measurement_strategy: Optional[JacobianStrategy] = None,
        anchor_strategy: Optional[JacobianStrategy] = None,
    ):
        if lane_phase and not layout.lane_active:
            raise ValueError("Lane factors need a layout with lane parameters")
        self.layout = layout
        self.problem = problem
        self.lane_phase = lane_phase
        self.include_internal = include_internal
        self.measurement_strategy = measurement_strategy or ForwardDifference(1e-8)
        self.anchor_strategy = anchor_strategy or ForwardDifference(1e-6)
        self.blocks: List[FactorBlock] = []

    @property
    def size(self) -> int:
        return self.layout.size

    @property
    def domain_violations(self) -> int:
        """Clamped lane residuals in the last evaluation."""
        return sum(b.domain_violations for b in self.blocks)

    def build_blocks(self, trial: Trial) -> List[FactorBlock]:
        caps = self.problem.capabilities
        layout, problem = self.layout, self.problem
        blocks = [
            prior_block(trial, layout, problem),
            inertial_block(trial, layout, problem),
            gnss_block(trial, layout, problem),
        ]
        if caps.wheel_speed:
            blocks.append(wheel_speed_block(trial, layout, problem))
        if caps.lane and self.lane_phase:
            blocks.append(
                lane_measurement_block(trial, layout, problem, self.measurement_strategy)
            )
            blocks.append(
                lane_anchor_block(
                    trial, layout, problem, self.include_internal, self.anchor_strategy
                )
            )
        return blocks

    def __call__(self, trial, delta, final=False):
        trial = retract(trial, delta, self.layout, self.problem, final=final)
        self.blocks = self.build_blocks(trial)
        residual, jacobian = stack_blocks(self.blocks, self.layout.size)
        return trial, residual, jacobian


def build_cost(
    trial: Trial,
    problem: FusionProblem,
    lane_phase: bool = False,
    include_internal: bool = False,
) -> Tuple[np.ndarray, sparse.csr_matrix, Dict[str, FactorBlock]]:
    """Evaluate every active factor block at ``trial`` without moving it.

    Returns:
        (residual, jacobian, blocks by name).
    """
    layout = VariableLayout.for_trial(trial, problem.capabilities, lane_active=lane_phase)
    cost = BatchCost(layout, problem, lane_phase, include_internal)
    _, residual, jacobian = cost(trial, np.zeros(layout.size))
    return residual, jacobian, {b.name: b for b in cost.blocks}


class BatchOptimizer:
    """
    Batch sensor-fusion optimizer.

    Args:
        imu: IMU cluster per state interval.
        gnss: GNSS fixes with their state indices.
        lane: Lane measurements (required by lane modes).
        wheel: Wheel speeds (required by every mode but basic).
        imu_bias: Initial IMU bias estimate, applied to every state.
        covs: Noise covariances.
        mode: 'basic', 'partial', 'full' or '2-phase'.
        options: Solver options.
        seeds: Initial lane segment partitions (required by lane modes).
        params: Vehicle geometry.
        thresholds: Bias delta norms that trigger re-integration.
        max_map_rounds: Upper bound on validate/re-solve rounds.
        logger: Logger for progress messages.

    Attributes (after optimize):
        result: SolverResult of the last solve.
        arc_map: ArcMap of lane modes.
        information: Information matrix JᵀJ at the solution.
        covariance: Its inverse.
    """

    def __init__(
        self,
        imu: Sequence[ImuCluster],
        gnss: GnssFixes,
        lane: Optional[LaneMeasurements],
        wheel: Optional[WheelSpeed],
        imu_bias: Bias,
        covs: NoiseCovariances,
        mode="partial",
        options: Optional[SolverOptions] = None,
        seeds: Optional[Sequence[SegmentSeed]] = None,
        params: Optional[VehicleParams] = None,
        thresholds: Optional[BiasThresholds] = None,
        max_map_rounds: int = 10,
        logger: Optional[logging.Logger] = None,
    ):
        self.logger = logger or logging.getLogger(__name__)
        self.imu = tuple(imu)
        self.gnss = gnss
        self.lane = lane
        self.wheel = wheel
        self.covs = covs
        self.options = options or SolverOptions()
        self.seeds = list(seeds) if seeds is not None else None
        self.params = params or VehicleParams()
        self.thresholds = thresholds or BiasThresholds()
        self.max_map_rounds = max_map_rounds
        self.update_mode(mode)

        n_states = len(self.imu) + 1
        bias0 = Bias(bg=imu_bias.gyro, ba=imu_bias.accel)
        biases = tuple(bias0 for _ in range(n_states))
        preintegrated = preintegrate_all(self.imu, biases, covs.imu)
        R0, V0, P0 = initial_state_from_gnss(gnss)
        wsf = 1.0 if self.capabilities.wheel_scale else None
        states = propagate_states(preintegrated, R0, V0, P0, wsf=wsf)

        self.initial = Trial(states, biases, preintegrated)
        self.trial = self.initial
        self.result: Optional[SolverResult] = None
        self.arc_map: Optional[ArcMap] = None
        self.information = None
        self.covariance = None
        self.logger.info("Initialized %d states in '%s' mode", n_states, self.mode.value)

    def update_mode(self, mode) -> None:
        """Switch the fusion mode; raises ValueError for an unknown mode."""
        self.mode = FusionMode.parse(mode)
        self.capabilities = capabilities_for(self.mode)
        if self.capabilities.lane and not self.seeds:
            raise ValueError(f"Mode '{self.mode.value}' requires lane segment seeds")

    def build_problem(self) -> FusionProblem:
        """Fixed inputs of the current mode, with the initial estimate as prior."""
        s0, b0 = self.initial.states[0], self.initial.biases[0]
        return FusionProblem(
            imu=self.imu,
            gnss=self.gnss,
            covs=self.covs,
            capabilities=self.capabilities,
            prior_state=s0,
            prior_bias=b0,
            wheel=self.wheel,
            lane=self.lane,
            thresholds=self.thresholds,
            params=self.params,
        )

    def _solve(
        self,
        trial: Trial,
        problem: FusionProblem,
        lane_phase: bool,
        include_internal: bool = False,
        iter_thres: Optional[int] = None,
    ) -> SolverResult:
        layout = VariableLayout.for_trial(trial, problem.capabilities, lane_active=lane_phase)
        cost = BatchCost(layout, problem, lane_phase, include_internal)
        options = self.options
        if iter_thres is not None:
            options = replace(options, iter_thres=iter_thres)

        self.logger.info("Solving with %s over %r", options.algorithm, layout)
        lane_offset = layout.lane_base if layout.lane_active else None
        result = SOLVERS[options.algorithm](
            cost, trial, options, lane_offset=lane_offset, logger=self.logger
        )

        if cost.domain_violations:
            self.logger.warning(
                "%d lane residuals clamped at the solution", cost.domain_violations
            )
        return result

    def _lane_loop(self, trial: Trial, problem: FusionProblem) -> SolverResult:
        self.arc_map = ArcMap(trial.states, self.lane, self.seeds)
        trial = replace(trial, segments=self.arc_map.segments)
        result = self._solve(
            trial, problem, True, include_internal=True, iter_thres=FIRST_LANE_ITERATIONS
        )

        for round_idx in range(self.max_map_rounds):
            valid, segments = self.arc_map.validate(result.trial.states, result.trial.segments)
            if valid:
                self.logger.info("Lane map valid after %d validation rounds", round_idx + 1)
                return replace(result, trial=replace(result.trial, segments=segments))
            trial = replace(result.trial, segments=segments)
            result = self._solve(trial, problem, True, iter_thres=LANE_ROUND_ITERATIONS)

        self.logger.warning(
            "Lane map still invalid after %d validation rounds", self.max_map_rounds
        )
        return result

    def optimize(self) -> SolverResult:
        """Run the solve sequence of the current mode."""
        problem = self.build_problem()
        wsf = 1.0 if self.capabilities.wheel_scale else None
        trial = replace(
            self.initial, states=tuple(replace(s, wsf=wsf) for s in self.initial.states)
        )

        if not self.capabilities.lane:
            result = self._solve(trial, problem, lane_phase=False)
        else:
            if self.capabilities.staged:
                self.logger.info("Phase 1: vehicle states without lane factors")
                trial = self._solve(trial, problem, lane_phase=False).trial
            result = self._lane_loop(trial, problem)

        self.result = result
        self.trial = result.trial
        self.information, self.covariance = information_summary(result.jacobian)
        return result

    @property
    def states(self):
        return self.trial.states

    @property
    def biases(self):
        return self.trial.biases

    @property
    def segments(self):
        return self.trial.segments

    @property
    def wsf(self) -> Optional[np.ndarray]:
        """Wheel scale factor per state, or None without wheel scale."""
        if not self.capabilities.wheel_scale:
            return None
        return np.array([s.wsf for s in self.trial.states])

    @property
    def jacobian(self):
        return None if self.result is None else self.result.jacobian
