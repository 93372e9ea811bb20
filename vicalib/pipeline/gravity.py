import numpy as np
import pycolmap

from .. import logger
from ..structs.measurements import ImuSample, TimedCameraId
from ..utils.timestamps import ns_to_seconds


def initialize_gravity(
    body_poses: dict[TimedCameraId, pycolmap.Rigid3d],
    accel_samples: list[ImuSample],
    time_offset_imu_to_cam: float = 0.0,
    accel_bias: np.ndarray | None = None,
    tolerance: float = 1.0 / 30.0,
) -> np.ndarray | None:
    """Seed world-frame gravity from the first aligned accelerometer sample.

    Camera instants are visited in ascending order. For each, the first
    accelerometer sample (in stream order) with |t_acc - t_cam| < tolerance
    is rotated into the world frame with that instant's body pose and
    returned. Later instants are never examined once a match is found.

    Args:
        body_poses: world_from_imu per camera instant.
        accel_samples: Raw accelerometer stream, IMU clock.
        time_offset_imu_to_cam (float): Added to IMU timestamps (seconds).
        accel_bias: Additive correction applied to each reading.
        tolerance (float): Maximum time difference in seconds.

    Returns:
        The gravity specific force in the world frame, or None if no
        sample is within tolerance of any camera instant.
    """
    bias = np.zeros(3) if accel_bias is None else np.asarray(accel_bias)
    accel_times = np.array(
        [s.timestamp_s + time_offset_imu_to_cam for s in accel_samples]
    )
    if len(accel_times) == 0:
        return None

    for tcid in sorted(body_poses):
        t_cam = ns_to_seconds(tcid.timestamp_ns)
        matches = np.flatnonzero(np.abs(accel_times - t_cam) < tolerance)
        if len(matches) == 0:
            continue

        sample = accel_samples[matches[0]]
        rotation = body_poses[tcid].rotation.matrix()
        gravity = rotation @ (sample.measurement + bias)
        logger.info(
            f"Gravity initialized from camera time {t_cam:.6f}s: "
            f"{np.array2string(gravity, precision=4)}"
        )
        return gravity

    logger.warning("No accelerometer sample is aligned with a camera frame.")
    return None
