import numpy as np

from vicalib.pipeline.gravity import initialize_gravity
from vicalib.structs.measurements import ImuSample, TimedCameraId

from helpers import rigid


def _sample(t: float, measurement) -> ImuSample:
    return ImuSample(t, np.asarray(measurement, dtype=np.float64))


def _body_poses():
    return {
        TimedCameraId(100_000_000): rigid([0.0, 0.0, np.pi / 2]),
        TimedCameraId(0): rigid(),
    }


def test_earliest_camera_wins_over_closer_match():
    samples = [
        _sample(0.1, [0.0, 0.0, 1.0]),  # exact match for the later frame
        _sample(0.02, [1.0, 0.0, 0.0]),
    ]
    gravity = initialize_gravity(_body_poses(), samples)
    np.testing.assert_allclose(gravity, [1.0, 0.0, 0.0])


def test_first_sample_in_stream_order():
    samples = [
        _sample(0.01, [0.0, 2.0, 0.0]),
        _sample(0.0, [0.0, 3.0, 0.0]),
    ]
    gravity = initialize_gravity(_body_poses(), samples)
    np.testing.assert_allclose(gravity, [0.0, 2.0, 0.0])


def test_reading_is_rotated_into_world():
    body_poses = {TimedCameraId(0): rigid([0.0, 0.0, np.pi / 2])}
    gravity = initialize_gravity(body_poses, [_sample(0.0, [1.0, 0.0, 0.0])])
    np.testing.assert_allclose(gravity, [0.0, 1.0, 0.0], atol=1e-12)


def test_time_offset_and_bias_are_applied():
    samples = [_sample(-0.5, [0.0, 0.0, 9.0])]
    assert initialize_gravity(_body_poses(), samples) is None

    gravity = initialize_gravity(
        _body_poses(),
        samples,
        time_offset_imu_to_cam=0.5,
        accel_bias=np.array([0.0, 0.0, 0.5]),
    )
    np.testing.assert_allclose(gravity, [0.0, 0.0, 9.5])


def test_samples_outside_tolerance_are_ignored():
    samples = [_sample(0.25, [0.0, 0.0, 1.0])]
    assert initialize_gravity(_body_poses(), samples, tolerance=0.1) is None
    assert initialize_gravity(_body_poses(), samples, tolerance=0.2) is not None
    assert initialize_gravity(_body_poses(), []) is None
