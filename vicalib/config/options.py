from __future__ import annotations

from dataclasses import dataclass, field, replace

from omegaconf import OmegaConf

from .helpers import _require_positive, _structured_merge_to_obj


# Spline knot spacing and IMU residual weighting
@dataclass(slots=True)
class SplineWeightingOptions:
    dt_so3: float = 0.1  # seconds between rotation knots
    dt_r3: float = 0.1  # seconds between translation knots
    var_so3: float = 0.1  # gyroscope residuals are scaled by 1 / var_so3
    var_r3: float = 0.5  # accelerometer residuals are scaled by 1 / var_r3
    cam_fps: float = 30.0

    def __post_init__(self):
        _require_positive(
            self, "dt_so3", "dt_r3", "var_so3", "var_r3", "cam_fps"
        )

    @property
    def gyro_weight(self) -> float:
        return 1.0 / self.var_so3

    @property
    def accel_weight(self) -> float:
        return 1.0 / self.var_r3

    @classmethod
    def load(cls, cfg: OmegaConf | None = None) -> SplineWeightingOptions:
        if cfg is None:
            return cls()

        return _structured_merge_to_obj(cls, cfg)


# Optimization options
@dataclass(slots=True)
class OptCamOptions:
    feature_std: float = 1.0  # in pixels
    calibrate_line_delay: bool = True
    optimize_imu_from_cam: bool = True


@dataclass(slots=True)
class OptIMUOptions:
    reestimate_biases: bool = True
    optimize_gravity: bool = True
    # seeded gravity is rescaled to this norm, 0 keeps the rotated raw
    # reading as the seed and leaves gravity a free 3-vector
    gravity_magnitude: float = 9.81
    use_accelerometer: bool = True
    use_gyroscope: bool = True
    gravity_time_tolerance: float = 1.0 / 30.0  # seconds


@dataclass(slots=True)
class OptOptions:
    use_callback: bool = False
    max_num_iterations: int = 30
    minimizer_progress_to_stdout: bool = False
    update_state_every_iteration: bool = True
    num_threads: int = 1
    function_tolerance: float = 1e-8


@dataclass(slots=True)
class CalibratorOptions:
    spline: SplineWeightingOptions = field(
        default_factory=SplineWeightingOptions
    )
    cam: OptCamOptions = field(default_factory=OptCamOptions)
    imu: OptIMUOptions = field(default_factory=OptIMUOptions)
    optim: OptOptions = field(default_factory=OptOptions)

    @classmethod
    def load(cls, cfg: OmegaConf | None = None) -> CalibratorOptions:
        if cfg is None:
            return cls()

        base = cls()
        spline = SplineWeightingOptions.load(cfg.get("spline"))
        cam = _structured_merge_to_obj(OptCamOptions, cfg.get("cam"))
        imu = _structured_merge_to_obj(OptIMUOptions, cfg.get("imu"))
        optim = _structured_merge_to_obj(OptOptions, cfg.get("general"))

        return replace(
            base,
            spline=spline,
            cam=cam,
            imu=imu,
            optim=optim,
        )
