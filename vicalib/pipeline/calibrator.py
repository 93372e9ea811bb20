from __future__ import annotations

from dataclasses import dataclass, replace

import numpy as np
import pyceres
import pycolmap
from tqdm import tqdm

from .. import logger
from ..config.options import CalibratorOptions
from ..config.pipeline import CalibrationConfig
from ..spline.trajectory import SplineTrajectory
from ..structs.measurements import (
    CalibrationWindow,
    CornerObservation,
    ImuSample,
    ImuStream,
    MeasurementStore,
    TimedCameraId,
)
from ..structs.telemetry import CameraTelemetry
from ..structs.trajectory import Trajectory
from ..utils.timestamps import as_vector3, seconds_to_ns
from .callback import KnotUpdateCallback
from .gravity import initialize_gravity
from .ingest import add_reconstruction_to_store, add_telemetry_to_store


@dataclass
class OptimizationResult:
    """Mean reprojection errors (pixels) at the solver's final state."""

    global_shutter_error: float
    rolling_shutter_error: float
    summary: pyceres.SolverSummary
    callback: KnotUpdateCallback | None = None


class ImuCameraCalibrator:
    """Joint spline fit of camera poses and IMU streams.

    Lifecycle: add measurements, init_spline, optimize (any number of
    times), export, clear. A run is non-reentrant.
    """

    def __init__(
        self,
        options: CalibratorOptions | None = None,
        time_offset_imu_to_cam: float = 0.0,
    ):
        self.options = options or CalibratorOptions()
        self.default_time_offset = float(time_offset_imu_to_cam)
        self.store = MeasurementStore()
        self.trajectory = SplineTrajectory(self.options)
        self._reset_run_state()

    @classmethod
    def from_config(cls, config: CalibrationConfig) -> ImuCameraCalibrator:
        return cls(
            config.calibrator_options, config.time_offset_imu_to_cam
        )

    def _reset_run_state(self) -> None:
        self.window: CalibrationWindow | None = None
        self.imu_from_cam_guess = pycolmap.Rigid3d()
        self.time_offset_imu_to_cam = self.default_time_offset
        self.accel_bias_prior = np.zeros(3)
        self.gyro_bias_prior = np.zeros(3)
        self.gravity_initialized = False
        self.registered_samples: dict[ImuStream, list[ImuSample]] = {
            stream: [] for stream in ImuStream
        }
        self._optimizing = False

    # Inputs
    def initialize_extrinsic_guess(
        self, imu_from_cam: pycolmap.Rigid3d
    ) -> None:
        self.imu_from_cam_guess = imu_from_cam

    def add_camera_observation(
        self,
        tcid: TimedCameraId,
        observation: CornerObservation,
        world_from_cam: pycolmap.Rigid3d | None = None,
    ) -> bool:
        return self.store.add_camera_observation(
            tcid, observation, world_from_cam
        )

    def add_reconstruction(
        self,
        reconstruction: pycolmap.Reconstruction,
        timestamps: dict[int, float],
        camera_index: int = 0,
    ) -> int:
        return add_reconstruction_to_store(
            self.store, reconstruction, timestamps, camera_index
        )

    def add_imu_sample(
        self, stream: ImuStream, timestamp_s: float, measurement
    ) -> None:
        self.store.add_imu_sample(stream, timestamp_s, measurement)

    def add_telemetry(self, telemetry: CameraTelemetry) -> None:
        add_telemetry_to_store(self.store, telemetry)

    # Initialization
    def init_spline(
        self,
        camera: pycolmap.Camera,
        time_offset_imu_to_cam: float | None = None,
        gyro_bias=None,
        accl_bias=None,
    ) -> None:
        """Build the spline and register every in-window measurement.

        Args:
            camera: Intrinsics used by the reprojection residuals.
            time_offset_imu_to_cam (float): Added to IMU timestamps to
                express them in the camera clock (seconds).
            gyro_bias, accl_bias: Additive corrections applied to the raw
                readings before registration.
        """
        if self.trajectory.is_initialized():
            raise RuntimeError("Spline already initialized, call clear()")
        if time_offset_imu_to_cam is not None:
            self.time_offset_imu_to_cam = float(time_offset_imu_to_cam)
        if gyro_bias is not None:
            self.gyro_bias_prior = as_vector3(gyro_bias, "gyro_bias")
        if accl_bias is not None:
            self.accel_bias_prior = as_vector3(accl_bias, "accl_bias")

        try:
            self._build_spline(camera)
        except Exception:
            self._discard_partial_run()
            raise

    def _build_spline(self, camera: pycolmap.Camera) -> None:
        spline_options = self.options.spline
        imu_options = self.options.imu

        self.window = CalibrationWindow.from_timestamps(
            self.store.camera_timestamps_ns
        )
        self.trajectory.init_times(
            self.window.start_ns,
            self.window.end_ns,
            seconds_to_ns(spline_options.dt_so3),
            seconds_to_ns(spline_options.dt_r3),
        )

        self.trajectory.set_camera(camera)
        if self.options.cam.calibrate_line_delay:
            line_delay = 1.0 / spline_options.cam_fps / camera.height
            logger.info(f"Initializing line delay to {line_delay:.3e} s.")
        else:
            line_delay = 0.0
        self.trajectory.set_initial_line_delay(line_delay)
        self.trajectory.set_imu_from_cam(self.imu_from_cam_guess)

        body_poses = self.store.derive_body_poses(
            self.imu_from_cam_guess, self.window
        )
        self.trajectory.init_knots(
            {tcid.timestamp_ns: pose for tcid, pose in body_poses.items()}
        )

        for tcid, observation in tqdm(
            self.store.corners_in_window(self.window),
            desc="Adding corner residuals",
        ):
            self.trajectory.add_corners_measurement(
                observation, tcid.timestamp_ns
            )

        if imu_options.use_accelerometer:
            weight = spline_options.accel_weight
            for sample in tqdm(
                self._register_samples(ImuStream.ACCELEROMETER),
                desc="Adding accelerometer residuals",
            ):
                self.trajectory.add_accel_measurement(
                    sample.measurement, sample.timestamp_ns, weight
                )

        if imu_options.use_gyroscope:
            weight = spline_options.gyro_weight
            for sample in tqdm(
                self._register_samples(ImuStream.GYROSCOPE),
                desc="Adding gyroscope residuals",
            ):
                self.trajectory.add_gyro_measurement(
                    sample.measurement, sample.timestamp_ns, weight
                )

        logger.info(
            f"Registered {len(self.trajectory.camera_residuals)} camera, "
            f"{len(self.trajectory.accel_residuals)} accelerometer and "
            f"{len(self.trajectory.gyro_residuals)} gyroscope residuals."
        )

        if imu_options.use_accelerometer:
            self.initialize_gravity()

    def _discard_partial_run(self) -> None:
        """Drop the spline of a rejected run, measurements are kept."""
        self.trajectory.clear()
        self.window = None
        self.gravity_initialized = False
        self.registered_samples = {stream: [] for stream in ImuStream}

    def _register_samples(self, stream: ImuStream) -> list[ImuSample]:
        """Bias-corrected in-window samples, timestamps in the camera clock."""
        bias = (
            self.accel_bias_prior
            if stream == ImuStream.ACCELEROMETER
            else self.gyro_bias_prior
        )
        registered = []
        for sample in self.store.samples(stream):
            timestamp_s = sample.timestamp_s + self.time_offset_imu_to_cam
            if not self.window.contains(seconds_to_ns(timestamp_s)):
                continue
            registered.append(
                ImuSample(timestamp_s, sample.measurement + bias)
            )

        num_dropped = len(self.store.samples(stream)) - len(registered)
        if num_dropped:
            logger.debug(
                f"Dropped {num_dropped} {stream.value} samples outside "
                "the calibration window."
            )
        if not registered:
            raise RuntimeError(
                f"No {stream.value} samples inside the calibration window"
            )
        self.registered_samples[stream] = registered
        return registered

    def initialize_gravity(self) -> np.ndarray:
        gravity = initialize_gravity(
            self.store.body_poses,
            self.store.samples(ImuStream.ACCELEROMETER),
            self.time_offset_imu_to_cam,
            self.accel_bias_prior,
            self.options.imu.gravity_time_tolerance,
        )
        if gravity is None:
            raise RuntimeError(
                "Gravity could not be initialized: no accelerometer sample "
                "is aligned with a camera frame"
            )
        magnitude = self.options.imu.gravity_magnitude
        if magnitude > 0:
            gravity = gravity / np.linalg.norm(gravity) * magnitude
        self.trajectory.set_gravity(gravity)
        self.gravity_initialized = True
        return gravity

    # Optimization
    def optimize(self, iterations: int | None = None) -> OptimizationResult:
        """Solve for up to `iterations` steps and report reprojection errors.

        Hitting the iteration cap is not an error, the solver summary is
        returned for the caller to inspect.
        """
        if self._optimizing:
            raise RuntimeError("An optimization is already running")
        if not self.trajectory.is_initialized():
            raise RuntimeError("init_spline() must be called first")
        if self.trajectory.accel_residuals and not self.gravity_initialized:
            raise RuntimeError("Gravity is not initialized")

        optim_options = self.options.optim
        if iterations is not None:
            optim_options = replace(
                optim_options, max_num_iterations=int(iterations)
            )
        callback = None
        if optim_options.use_callback:
            callback = KnotUpdateCallback(
                self.trajectory.so3_knots, self.trajectory.r3_knots
            )

        self._optimizing = True
        try:
            summary = self.trajectory.optimize(
                optim_options, [callback] if callback is not None else None
            )
        finally:
            self._optimizing = False

        result = OptimizationResult(
            global_shutter_error=self.trajectory.mean_reprojection_error(
                rolling_shutter=False
            ),
            rolling_shutter_error=self.trajectory.mean_reprojection_error(
                rolling_shutter=True
            ),
            summary=summary,
            callback=callback,
        )
        logger.info(
            f"Mean reprojection error: {result.global_shutter_error:.4f} px "
            f"(global shutter), {result.rolling_shutter_error:.4f} px "
            "(rolling shutter)"
        )
        return result

    # Outputs
    def export_trajectory(self) -> Trajectory:
        """Spline pose at every camera timestamp, window end included."""
        if not self.trajectory.is_initialized():
            raise RuntimeError("init_spline() must be called first")
        timestamps = sorted(set(self.store.camera_timestamps_ns))
        return Trajectory.from_world_from_imu(
            [(t, self.trajectory.pose(t)) for t in timestamps]
        )

    def export_reconstruction(
        self,
        reconstruction: pycolmap.Reconstruction,
        camera_id: int,
    ) -> pycolmap.Reconstruction:
        """Write the exported poses as registered frames of `camera_id`.

        The camera is the rig reference sensor, so each frame stores
        cam_from_imu * imu_from_world rather than the bare spline pose.
        """
        return self.export_trajectory().add_estimate_poses_to_reconstruction(
            reconstruction,
            camera_id,
            cam_from_imu=self.imu_from_cam.inverse(),
        )

    @property
    def imu_from_cam(self) -> pycolmap.Rigid3d:
        return self.trajectory.imu_from_cam

    @property
    def line_delay(self) -> float:
        return float(self.trajectory.line_delay[0])

    @property
    def gravity(self) -> np.ndarray:
        return self.trajectory.gravity.copy()

    @property
    def accel_bias(self) -> np.ndarray:
        """Total additive correction, corrected = raw + accel_bias."""
        return self.accel_bias_prior - self.trajectory.accel_bias

    @property
    def gyro_bias(self) -> np.ndarray:
        """Total additive correction, corrected = raw + gyro_bias."""
        return self.gyro_bias_prior - self.trajectory.gyro_bias

    def clear(self) -> None:
        """Drop measurements, poses and the spline, keeping the options."""
        if self._optimizing:
            raise RuntimeError("Cannot clear while an optimization is running")
        self.store.clear()
        self.trajectory.clear()
        self._reset_run_state()
