"""Lane-aware batch sensor fusion for ground vehicles.

This package estimates vehicle pose, velocity and IMU biases by fusing
inertial, GNSS, wheel-speed and lane-detection measurements in a batch
sparse nonlinear least-squares problem, while refining a piecewise-arc
model of the lane boundaries:
- coords: SO(3) manifold operations and geodetic transformations
- sensors: Sensor input containers and IMU pre-integration
- estimators: Factor blocks, retraction, batch solvers and orchestration
- mapping: Arc-spline lane model, adaptive fitting and validation
"""

__version__ = "0.1.0"
