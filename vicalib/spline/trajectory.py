from __future__ import annotations

import numpy as np
import pyceres
import pycolmap
from scipy.spatial.transform import Rotation, Slerp

from .. import logger
from ..config.options import CalibratorOptions, OptOptions
from ..structs.measurements import CornerObservation
from .residuals import (
    AccelerometerCost,
    GyroscopeCost,
    NumericDiffCostFunction,
    RollingShutterReprojectionCost,
)
from .uniform import (
    SPLINE_ORDER,
    KnotGrid,
    r3_segment_value,
    so3_segment_rotation,
    so3_segment_velocity,
)


def _seed_rotations(
    times: np.ndarray, rotations: Rotation, query: np.ndarray
) -> np.ndarray:
    if len(times) == 1:
        return np.repeat(rotations.as_quat()[:1], len(query), axis=0)
    query = np.clip(query, times[0], times[-1])
    return Slerp(times, rotations)(query).as_quat()


def _seed_positions(
    times: np.ndarray, positions: np.ndarray, query: np.ndarray
) -> np.ndarray:
    # np.interp holds the end values outside the sampled range
    return np.stack(
        [np.interp(query, times, positions[:, k]) for k in range(3)], axis=1
    )


class SplineTrajectory:
    """Continuous-time world_from_imu trajectory on split SO3 x R3 splines.

    Owns the knot vectors, the calibration parameters (imu_from_cam,
    gravity, biases, line delay) and every residual block registered on
    the pyceres problem. Knots are allocated once in `init_knots` and the
    vectors never grow afterwards.

    Gravity is the world-frame specific force of gravity, i.e. the reading
    of a resting accelerometer rotated into the world frame.
    """

    def __init__(self, options: CalibratorOptions | None = None):
        self.options = options or CalibratorOptions()
        self.clear()

    def clear(self) -> None:
        """Drop knots, parameters and residuals."""
        self.start_ns = 0
        self.so3_grid: KnotGrid | None = None
        self.r3_grid: KnotGrid | None = None
        self.so3_knots: list[np.ndarray] = []
        self.r3_knots: list[np.ndarray] = []

        self.imu_from_cam_quat = np.array([0.0, 0.0, 0.0, 1.0])
        self.imu_from_cam_t = np.zeros(3)
        self.gravity = np.zeros(3)
        self.accel_bias = np.zeros(3)
        self.gyro_bias = np.zeros(3)
        self.line_delay = np.zeros(1)
        self.camera: pycolmap.Camera | None = None

        self.camera_residuals: list[RollingShutterReprojectionCost] = []
        self.accel_residuals: list[AccelerometerCost] = []
        self.gyro_residuals: list[GyroscopeCost] = []

        self.problem = pyceres.Problem()
        self._loss = pyceres.TrivialLoss()
        self._blocks: dict[int, np.ndarray] = {}
        self._configured: set[int] = set()
        self._manifolds: list = []

    # Setup, must happen before any measurement is added
    def init_times(
        self,
        start_ns: int,
        end_ns: int,
        dt_so3_ns: int,
        dt_r3_ns: int,
    ) -> None:
        self.start_ns = int(start_ns)
        duration_ns = int(end_ns) - self.start_ns
        self.so3_grid = KnotGrid.spanning(duration_ns, dt_so3_ns)
        self.r3_grid = KnotGrid.spanning(duration_ns, dt_r3_ns)

    def set_camera(self, camera: pycolmap.Camera) -> None:
        self.camera = camera

    def set_initial_line_delay(self, line_delay_s: float) -> None:
        self.line_delay[0] = line_delay_s

    def set_imu_from_cam(self, imu_from_cam: pycolmap.Rigid3d) -> None:
        self.imu_from_cam_quat[:] = imu_from_cam.rotation.quat
        self.imu_from_cam_t[:] = imu_from_cam.translation

    def set_gravity(self, gravity: np.ndarray) -> None:
        self.gravity[:] = gravity

    def init_knots(self, world_from_imu: dict[int, pycolmap.Rigid3d]) -> None:
        """Seed every knot from timestamped (ns) body poses."""
        if self.so3_grid is None or self.r3_grid is None:
            raise RuntimeError("init_times() must precede init_knots()")
        if not world_from_imu:
            raise RuntimeError("No body poses available to seed the spline")
        if self.so3_knots or self.r3_knots:
            raise RuntimeError("Spline knots are already initialized")

        stamps = sorted(world_from_imu)
        times = np.array([t - self.start_ns for t in stamps], dtype=np.float64)
        poses = [world_from_imu[t] for t in stamps]
        rotations = Rotation.from_quat([p.rotation.quat for p in poses])
        positions = np.array([p.translation for p in poses], dtype=np.float64)

        so3_times = self.so3_grid.knot_times_ns()
        r3_times = self.r3_grid.knot_times_ns()
        self.so3_knots = [
            np.array(q, dtype=np.float64)
            for q in _seed_rotations(times, rotations, so3_times)
        ]
        self.r3_knots = [
            np.array(p, dtype=np.float64)
            for p in _seed_positions(times, positions, r3_times)
        ]
        logger.info(f"Initializing {len(self.so3_knots)} SO3 knots.")
        logger.info(f"Initializing {len(self.r3_knots)} R3 knots.")

    def is_initialized(self) -> bool:
        return bool(self.so3_knots) and bool(self.r3_knots)

    # Residual registration
    def add_corners_measurement(
        self,
        observation: CornerObservation,
        t_ns: int,
    ) -> RollingShutterReprojectionCost:
        if self.camera is None:
            raise RuntimeError("A camera is required for corner measurements")
        t_rel = self._relative_time(t_ns)

        readout_ns = 0
        if self.options.cam.calibrate_line_delay:
            readout_ns = int(round(1e9 / self.options.spline.cam_fps))
            readout_ns = max(0, min(readout_ns, self._max_time_ns - t_rel))

        so3_first, so3_last = self._segment_range(
            self.so3_grid, t_rel, t_rel + readout_ns
        )
        r3_first, r3_last = self._segment_range(
            self.r3_grid, t_rel, t_rel + readout_ns
        )
        so3_blocks = self.so3_knots[so3_first : so3_last + SPLINE_ORDER]
        r3_blocks = self.r3_knots[r3_first : r3_last + SPLINE_ORDER]

        cost = RollingShutterReprojectionCost(
            so3_blocks
            + r3_blocks
            + [self.imu_from_cam_quat, self.imu_from_cam_t, self.line_delay],
            observation,
            self.camera,
            frame_time_ns=t_rel,
            readout_ns=readout_ns,
            so3_grid=self.so3_grid,
            so3_first=so3_first,
            num_so3=len(so3_blocks),
            r3_grid=self.r3_grid,
            r3_first=r3_first,
            num_r3=len(r3_blocks),
            feature_std=self.options.cam.feature_std,
        )
        self._add_residual(cost)
        self.camera_residuals.append(cost)
        return cost

    def add_accel_measurement(
        self,
        measurement: np.ndarray,
        t_ns: int,
        weight: float,
    ) -> AccelerometerCost:
        t_rel = self._relative_time(t_ns)
        so3_segments, u_so3 = self.so3_grid.locate(t_rel)
        r3_segments, u_r3 = self.r3_grid.locate(t_rel)
        s, r = int(so3_segments[0]), int(r3_segments[0])

        cost = AccelerometerCost(
            self.so3_knots[s : s + SPLINE_ORDER]
            + self.r3_knots[r : r + SPLINE_ORDER]
            + [self.gravity, self.accel_bias],
            measurement,
            u_so3=float(u_so3[0]),
            u_r3=float(u_r3[0]),
            dt_r3_s=self.r3_grid.dt_s,
            weight=weight,
        )
        self._add_residual(cost)
        self.accel_residuals.append(cost)
        return cost

    def add_gyro_measurement(
        self,
        measurement: np.ndarray,
        t_ns: int,
        weight: float,
    ) -> GyroscopeCost:
        t_rel = self._relative_time(t_ns)
        segments, u = self.so3_grid.locate(t_rel)
        s = int(segments[0])

        cost = GyroscopeCost(
            self.so3_knots[s : s + SPLINE_ORDER] + [self.gyro_bias],
            measurement,
            u=float(u[0]),
            dt_s=self.so3_grid.dt_s,
            weight=weight,
        )
        self._add_residual(cost)
        self.gyro_residuals.append(cost)
        return cost

    def _add_residual(self, cost: NumericDiffCostFunction) -> None:
        self.problem.add_residual_block(
            cost, self._loss, cost.parameter_blocks
        )
        for block in cost.parameter_blocks:
            self._blocks[id(block)] = block

    # Optimization
    def optimize(
        self,
        options: OptOptions | None = None,
        callbacks: list | None = None,
    ) -> pyceres.SolverSummary:
        """Run the solver in place on the knots and calibration parameters."""
        if not self.is_initialized():
            raise RuntimeError("Spline is not initialized")
        options = options or self.options.optim
        self._setup_manifolds_and_constraints()

        solver_options = pyceres.SolverOptions()
        solver_options.max_num_iterations = options.max_num_iterations
        solver_options.minimizer_progress_to_stdout = (
            options.minimizer_progress_to_stdout
        )
        solver_options.update_state_every_iteration = (
            options.update_state_every_iteration
        )
        solver_options.num_threads = options.num_threads
        solver_options.function_tolerance = options.function_tolerance
        if callbacks:
            solver_options.callbacks = callbacks

        summary = pyceres.SolverSummary()
        pyceres.solve(solver_options, self.problem, summary)
        logger.info(summary.BriefReport())
        return summary

    def _setup_manifolds_and_constraints(self) -> None:
        """Setup manifolds and parameter constraints"""
        cam_options = self.options.cam
        imu_options = self.options.imu

        for knot in self.so3_knots:
            self._set_manifold(knot, pyceres.EigenQuaternionManifold())
        self._set_manifold(
            self.imu_from_cam_quat, pyceres.EigenQuaternionManifold()
        )
        if imu_options.optimize_gravity and imu_options.gravity_magnitude > 0:
            self._set_manifold(self.gravity, pyceres.SphereManifold(3))

        # Apply optimization constraints based on configuration
        if not imu_options.reestimate_biases:
            self._set_constant(self.accel_bias)
            self._set_constant(self.gyro_bias)
        if not imu_options.optimize_gravity:
            self._set_constant(self.gravity)
        if not cam_options.calibrate_line_delay:
            self._set_constant(self.line_delay)
        if not cam_options.optimize_imu_from_cam:
            self._set_constant(self.imu_from_cam_quat)
            self._set_constant(self.imu_from_cam_t)

    def _set_manifold(self, block: np.ndarray, manifold) -> None:
        key = id(block)
        if key not in self._blocks or key in self._configured:
            return
        self.problem.set_manifold(block, manifold)
        self._manifolds.append(manifold)
        self._configured.add(key)

    def _set_constant(self, block: np.ndarray) -> None:
        if id(block) in self._blocks:
            self.problem.set_parameter_block_constant(block)

    # Evaluation
    def mean_reprojection_error(self, rolling_shutter: bool = True) -> float:
        """Mean pixel error over all registered corners.

        Without rolling shutter every corner is evaluated at its frame time.
        """
        if not self.camera_residuals:
            return float("nan")
        line_delay_s = None if rolling_shutter else 0.0
        errors = [
            cost.reprojection_errors(line_delay_s)
            for cost in self.camera_residuals
        ]
        return float(np.mean(np.concatenate(errors)))

    def rotation(self, t_ns: int) -> Rotation:
        segment, u = self._locate(self.so3_grid, t_ns)
        return so3_segment_rotation(self._so3_window(segment), u)[0]

    def position(self, t_ns: int) -> np.ndarray:
        segment, u = self._locate(self.r3_grid, t_ns)
        return r3_segment_value(self._r3_window(segment), u)[0]

    def pose(self, t_ns: int) -> pycolmap.Rigid3d:
        """world_from_imu at t_ns, valid inside the built window only."""
        return pycolmap.Rigid3d(
            pycolmap.Rotation3d(self.rotation(t_ns).as_quat()),
            self.position(t_ns),
        )

    def angular_velocity_body(self, t_ns: int) -> np.ndarray:
        segment, u = self._locate(self.so3_grid, t_ns)
        return so3_segment_velocity(
            self._so3_window(segment), u, self.so3_grid.dt_s
        )[0]

    def linear_acceleration_world(self, t_ns: int) -> np.ndarray:
        segment, u = self._locate(self.r3_grid, t_ns)
        return r3_segment_value(
            self._r3_window(segment), u, derivative=2, dt_s=self.r3_grid.dt_s
        )[0]

    @property
    def imu_from_cam(self) -> pycolmap.Rigid3d:
        quat = self.imu_from_cam_quat / np.linalg.norm(self.imu_from_cam_quat)
        return pycolmap.Rigid3d(
            pycolmap.Rotation3d(quat), self.imu_from_cam_t.copy()
        )

    def so3_knot_quats(self) -> np.ndarray:
        return np.array(self.so3_knots)

    def r3_knot_positions(self) -> np.ndarray:
        return np.array(self.r3_knots)

    # Helpers
    @property
    def _max_time_ns(self) -> int:
        return min(self.so3_grid.max_time_ns, self.r3_grid.max_time_ns)

    def _relative_time(self, t_ns: int) -> int:
        if not self.is_initialized():
            raise RuntimeError("Spline knots must be initialized first")
        t_rel = int(t_ns) - self.start_ns
        if not (
            self.so3_grid.supports(t_rel) and self.r3_grid.supports(t_rel)
        ):
            raise ValueError(
                f"Time {t_ns} ns is outside the spline range "
                f"[{self.start_ns}, {self.start_ns + self._max_time_ns}]"
            )
        return t_rel

    def _locate(self, grid: KnotGrid, t_ns: int) -> tuple[int, np.ndarray]:
        segments, u = grid.locate(self._relative_time(t_ns))
        return int(segments[0]), u

    @staticmethod
    def _segment_range(grid: KnotGrid, t0_rel, t1_rel) -> tuple[int, int]:
        segments, _ = grid.locate([t0_rel, t1_rel])
        return int(segments[0]), int(segments[1])

    def _so3_window(self, segment: int) -> np.ndarray:
        return np.stack(self.so3_knots[segment : segment + SPLINE_ORDER])

    def _r3_window(self, segment: int) -> np.ndarray:
        return np.stack(self.r3_knots[segment : segment + SPLINE_ORDER])
