from __future__ import annotations

import numpy as np
import pyceres
import pycolmap
from scipy.spatial.transform import Rotation

from ..structs.measurements import CornerObservation
from .uniform import (
    SPLINE_ORDER,
    KnotGrid,
    r3_segment_value,
    so3_segment_rotation,
    so3_segment_velocity,
)


class NumericDiffCostFunction(pyceres.CostFunction):
    """Cost function with central-difference Jacobians.

    Subclasses implement `evaluate(params)` returning the residual vector.
    The parameter blocks the cost was built on are kept so the residual
    can be re-evaluated at the current state after solving.
    """

    step_size = 1e-6

    def __init__(self, num_residuals: int, parameter_blocks: list[np.ndarray]):
        pyceres.CostFunction.__init__(self)
        self.parameter_blocks = list(parameter_blocks)
        self._num_residuals = num_residuals
        self.set_num_residuals(num_residuals)
        self.set_parameter_block_sizes(
            [block.size for block in self.parameter_blocks]
        )

    def evaluate(self, params: list[np.ndarray]) -> np.ndarray:
        raise NotImplementedError

    def Evaluate(self, parameters, residuals, jacobians):
        params = [np.array(p, dtype=np.float64) for p in parameters]
        value = self.evaluate(params)
        if not np.all(np.isfinite(value)):
            return False
        residuals[:] = value

        if jacobians is None:
            return True
        for index, jacobian in enumerate(jacobians):
            # constant blocks come without a jacobian buffer
            if jacobian is None or np.size(jacobian) == 0:
                continue
            jac = self._numeric_jacobian(params, index)
            np.copyto(jacobian, jac.reshape(np.shape(jacobian)))
        return True

    def _numeric_jacobian(
        self, params: list[np.ndarray], index: int
    ) -> np.ndarray:
        block = params[index]
        jac = np.empty((self._num_residuals, block.size))
        for k in range(block.size):
            original = block[k]
            h = self.step_size * max(abs(original), 1.0)
            block[k] = original + h
            forward = self.evaluate(params)
            block[k] = original - h
            backward = self.evaluate(params)
            block[k] = original
            jac[:, k] = (forward - backward) / (2.0 * h)
        return jac


class GyroscopeCost(NumericDiffCostFunction):
    """weight * (omega_body(t) + b_g - measurement)

    Parameter blocks: 4 rotation knots, gyroscope bias.
    """

    def __init__(
        self,
        parameter_blocks: list[np.ndarray],
        measurement: np.ndarray,
        u: float,
        dt_s: float,
        weight: float,
    ):
        super().__init__(3, parameter_blocks)
        self.measurement = np.asarray(measurement, dtype=np.float64)
        self.u = u
        self.dt_s = dt_s
        self.weight = weight

    def evaluate(self, params):
        knots = np.stack(params[:SPLINE_ORDER])
        bias = params[SPLINE_ORDER]
        omega = so3_segment_velocity(knots, self.u, self.dt_s)[0]
        return self.weight * (omega + bias - self.measurement)


class AccelerometerCost(NumericDiffCostFunction):
    """weight * (R_w_i(t)^T (a_w(t) + g) + b_a - measurement)

    Parameter blocks: 4 rotation knots, 4 translation knots, gravity,
    accelerometer bias.
    """

    def __init__(
        self,
        parameter_blocks: list[np.ndarray],
        measurement: np.ndarray,
        u_so3: float,
        u_r3: float,
        dt_r3_s: float,
        weight: float,
    ):
        super().__init__(3, parameter_blocks)
        self.measurement = np.asarray(measurement, dtype=np.float64)
        self.u_so3 = u_so3
        self.u_r3 = u_r3
        self.dt_r3_s = dt_r3_s
        self.weight = weight

    def evaluate(self, params):
        so3 = np.stack(params[:SPLINE_ORDER])
        r3 = np.stack(params[SPLINE_ORDER : 2 * SPLINE_ORDER])
        gravity, bias = params[2 * SPLINE_ORDER :]
        world_from_imu = so3_segment_rotation(so3, self.u_so3)
        accel_world = r3_segment_value(
            r3, self.u_r3, derivative=2, dt_s=self.dt_r3_s
        )[0]
        accel_imu = world_from_imu.inv().apply(accel_world + gravity)[0]
        return self.weight * (accel_imu + bias - self.measurement)


class RollingShutterReprojectionCost(NumericDiffCostFunction):
    """Reprojection of pattern corners at their row-dependent capture time.

    Corner k is captured at t_frame + row_k * line_delay, clamped to
    [t_frame, t_frame + readout]. The knot windows cover every segment
    reachable in that interval.

    Parameter blocks: rotation knots, translation knots, imu_from_cam
    rotation (quaternion), imu_from_cam translation, line delay (seconds).
    """

    def __init__(
        self,
        parameter_blocks: list[np.ndarray],
        observation: CornerObservation,
        camera: pycolmap.Camera,
        frame_time_ns: int,
        readout_ns: int,
        so3_grid: KnotGrid,
        so3_first: int,
        num_so3: int,
        r3_grid: KnotGrid,
        r3_first: int,
        num_r3: int,
        feature_std: float = 1.0,
    ):
        super().__init__(2 * len(observation), parameter_blocks)
        self.observation = observation
        self.camera = camera
        self.frame_time_ns = frame_time_ns
        self.readout_ns = readout_ns
        self.so3_grid = so3_grid
        self.so3_first = so3_first
        self.num_so3 = num_so3
        self.r3_grid = r3_grid
        self.r3_first = r3_first
        self.num_r3 = num_r3
        self.feature_std = feature_std

    def evaluate(self, params):
        residual = self.project(params) - self.observation.corners
        return (residual / self.feature_std).ravel()

    def reprojection_errors(
        self, line_delay_s: float | None = None
    ) -> np.ndarray:
        """Per-corner pixel errors at the current state.

        line_delay_s overrides the line delay, 0 gives global shutter.
        """
        params = [block.copy() for block in self.parameter_blocks]
        projected = self.project(params, line_delay_s)
        return np.linalg.norm(projected - self.observation.corners, axis=1)

    def capture_times_ns(self, line_delay_s: float) -> np.ndarray:
        t = self.frame_time_ns + self.observation.rows * (line_delay_s * 1e9)
        return np.clip(
            t, self.frame_time_ns, self.frame_time_ns + self.readout_ns
        )

    def project(self, params, line_delay_s: float | None = None) -> np.ndarray:
        m, k = self.num_so3, self.num_r3
        so3 = np.stack(params[:m])
        r3 = np.stack(params[m : m + k])
        imu_from_cam_quat, imu_from_cam_t, line_delay = params[m + k :]
        if line_delay_s is None:
            line_delay_s = float(line_delay[0])

        t = self.capture_times_ns(line_delay_s)
        world_from_imu = self._rotations(so3, t)
        world_from_imu_t = self._positions(r3, t)

        world_from_cam = world_from_imu * Rotation.from_quat(imu_from_cam_quat)
        world_from_cam_t = (
            world_from_imu.apply(imu_from_cam_t) + world_from_imu_t
        )
        points_cam = world_from_cam.inv().apply(
            self.observation.points3D - world_from_cam_t
        )
        projected = self.camera.img_from_cam(points_cam)
        return np.asarray(projected, dtype=np.float64)

    def _rotations(self, so3: np.ndarray, t: np.ndarray) -> Rotation:
        segments, u = self.so3_grid.locate(t)
        quats = np.empty((len(t), 4))
        for segment in np.unique(segments):
            mask = segments == segment
            first = segment - self.so3_first
            knots = so3[first : first + SPLINE_ORDER]
            quats[mask] = so3_segment_rotation(knots, u[mask]).as_quat()
        return Rotation.from_quat(quats)

    def _positions(self, r3: np.ndarray, t: np.ndarray) -> np.ndarray:
        segments, u = self.r3_grid.locate(t)
        positions = np.empty((len(t), 3))
        for segment in np.unique(segments):
            mask = segments == segment
            first = segment - self.r3_first
            knots = r3[first : first + SPLINE_ORDER]
            positions[mask] = r3_segment_value(knots, u[mask])
        return positions
