import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from vicalib.config.options import (
    CalibratorOptions,
    OptCamOptions,
    OptOptions,
    SplineWeightingOptions,
)
from vicalib.pipeline.calibrator import ImuCameraCalibrator
from vicalib.spline.trajectory import SplineTrajectory
from vicalib.structs.measurements import ImuStream, TimedCameraId
from vicalib.utils.timestamps import seconds_to_ns

from helpers import (
    angle_between,
    observe,
    pattern_points,
    pinhole_camera,
    rigid,
)

DURATION = 0.6
GRAVITY = np.array([0.0, 0.0, 9.81])


def _options() -> CalibratorOptions:
    return CalibratorOptions(
        spline=SplineWeightingOptions(dt_so3=0.1, dt_r3=0.1),
        cam=OptCamOptions(calibrate_line_delay=False),
        optim=OptOptions(max_num_iterations=50),
    )


def _ground_truth(options: CalibratorOptions) -> SplineTrajectory:
    dt_ns = seconds_to_ns(options.spline.dt_so3)
    truth = SplineTrajectory(options)
    truth.init_times(0, seconds_to_ns(DURATION), dt_ns, dt_ns)
    js = np.arange(truth.so3_grid.num_knots, dtype=np.float64)
    rotvecs = np.stack(
        [0.1 * np.sin(js), 0.2 * np.cos(0.7 * js), 0.3 * js], axis=1
    )
    positions = np.stack(
        [0.1 * js, 0.01 * np.sin(js), 0.005 * js**2], axis=1
    )
    truth.so3_knots = list(Rotation.from_rotvec(rotvecs).as_quat())
    truth.r3_knots = [p.copy() for p in positions]
    return truth


@pytest.fixture(scope="module")
def round_trip():
    options = _options()
    truth = _ground_truth(options)
    imu_from_cam = rigid([0.05, -0.03, 0.1], [0.02, -0.01, 0.03])

    calibrator = ImuCameraCalibrator(options)
    camera = pinhole_camera()
    points = pattern_points(depth=3.0)
    for t in np.arange(0.0, DURATION + 1e-9, 0.05):
        t_ns = seconds_to_ns(t)
        world_from_cam = truth.pose(t_ns) * imu_from_cam
        calibrator.add_camera_observation(
            TimedCameraId(t_ns),
            observe(camera, world_from_cam, points),
            world_from_cam,
        )

    for t in np.arange(0.0, DURATION, 0.02):
        t_ns = seconds_to_ns(t)
        world_from_imu = truth.rotation(t_ns)
        accel = world_from_imu.inv().apply(
            truth.linear_acceleration_world(t_ns) + GRAVITY
        )
        calibrator.add_imu_sample(ImuStream.ACCELEROMETER, t, accel)
        calibrator.add_imu_sample(
            ImuStream.GYROSCOPE, t, truth.angular_velocity_body(t_ns)
        )

    calibrator.initialize_extrinsic_guess(imu_from_cam)
    calibrator.init_spline(camera)
    result = calibrator.optimize()
    return calibrator, result, imu_from_cam, truth


def test_round_trip_reprojection_error(round_trip):
    _, result, _, _ = round_trip
    assert result.rolling_shutter_error < 0.05
    assert result.global_shutter_error == result.rolling_shutter_error


def test_round_trip_recovers_extrinsic(round_trip):
    calibrator, _, imu_from_cam, _ = round_trip
    estimate = calibrator.imu_from_cam
    rotation_error = angle_between(
        Rotation.from_quat(estimate.rotation.quat),
        Rotation.from_quat(imu_from_cam.rotation.quat),
    )
    assert rotation_error < 1e-3
    np.testing.assert_allclose(
        estimate.translation, imu_from_cam.translation, atol=1e-3
    )


def test_round_trip_recovers_gravity_and_biases(round_trip):
    calibrator, _, _, _ = round_trip
    np.testing.assert_allclose(calibrator.gravity, GRAVITY, atol=1e-2)
    assert np.linalg.norm(calibrator.gyro_bias) < 1e-2
    assert np.linalg.norm(calibrator.accel_bias) < 5e-2


def test_round_trip_trajectory(round_trip):
    calibrator, _, _, truth = round_trip
    for t in [0.05, 0.3, 0.55]:
        t_ns = seconds_to_ns(t)
        assert angle_between(
            calibrator.trajectory.rotation(t_ns), truth.rotation(t_ns)
        ) < 1e-3
        np.testing.assert_allclose(
            calibrator.trajectory.position(t_ns),
            truth.position(t_ns),
            atol=1e-3,
        )
