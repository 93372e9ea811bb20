import numpy as np
import pycolmap
from scipy.spatial.transform import Rotation

from vicalib.config.options import (
    CalibratorOptions,
    OptCamOptions,
    OptIMUOptions,
    OptOptions,
    SplineWeightingOptions,
)
from vicalib.structs.measurements import (
    CornerObservation,
    ImuStream,
    TimedCameraId,
)
from vicalib.utils.timestamps import seconds_to_ns

YAW_STEP = np.deg2rad(30.0)
YAW_FRAME_TIMES = (0.0, 0.1, 0.2)


def pinhole_camera(camera_id: int = 1) -> pycolmap.Camera:
    return pycolmap.Camera(
        camera_id=camera_id,
        model="PINHOLE",
        width=640,
        height=480,
        params=[500.0, 500.0, 320.0, 240.0],
    )


def pattern_points(depth: float = 2.0, size: int = 5) -> np.ndarray:
    xs = np.linspace(-0.5, 0.5, size)
    grid = np.array([[x, y, depth] for y in xs for x in xs])
    return grid


def rigid(rotvec=(0.0, 0.0, 0.0), translation=(0.0, 0.0, 0.0)):
    quat = Rotation.from_rotvec(rotvec).as_quat()
    return pycolmap.Rigid3d(
        pycolmap.Rotation3d(quat), np.asarray(translation, dtype=np.float64)
    )


def observe(
    camera: pycolmap.Camera,
    world_from_cam: pycolmap.Rigid3d,
    points: np.ndarray,
) -> CornerObservation:
    rotation = world_from_cam.rotation.matrix()
    points_cam = (points - world_from_cam.translation) @ rotation
    corners = np.asarray(camera.img_from_cam(points_cam))
    return CornerObservation(corners, points, tuple(range(len(points))))


def yaw_options(**optim) -> CalibratorOptions:
    """Gyroscope-only fit with a fixed extrinsic and no line delay."""
    return CalibratorOptions(
        spline=SplineWeightingOptions(dt_so3=0.05, dt_r3=0.05),
        cam=OptCamOptions(
            calibrate_line_delay=False, optimize_imu_from_cam=False
        ),
        imu=OptIMUOptions(use_accelerometer=False),
        optim=OptOptions(max_num_iterations=100, **optim),
    )


def add_yaw_scenario(calibrator, gyro_rate_hz: float = 200.0):
    """Frames 30 deg apart in pure yaw, exact gyroscope readings."""
    camera = pinhole_camera()
    points = pattern_points()
    for k, t in enumerate(YAW_FRAME_TIMES):
        world_from_cam = rigid([0.0, 0.0, k * YAW_STEP])
        calibrator.add_camera_observation(
            TimedCameraId(seconds_to_ns(t)),
            observe(camera, world_from_cam, points),
            world_from_cam,
        )

    rate = YAW_STEP / (YAW_FRAME_TIMES[1] - YAW_FRAME_TIMES[0])
    num_samples = int(round(YAW_FRAME_TIMES[-1] * gyro_rate_hz)) + 1
    for k in range(num_samples):
        calibrator.add_imu_sample(
            ImuStream.GYROSCOPE, k / gyro_rate_hz, [0.0, 0.0, rate]
        )
    return camera


def angle_between(a: Rotation, b: Rotation) -> float:
    return float((a.inv() * b).magnitude())
