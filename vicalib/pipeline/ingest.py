import numpy as np
import pycolmap
from tqdm import tqdm

from .. import logger
from ..structs.measurements import (
    CornerObservation,
    ImuStream,
    MeasurementStore,
    TimedCameraId,
)
from ..structs.telemetry import CameraTelemetry
from ..utils.timestamps import seconds_to_ns
from ..utils.transformation import world_from_cam_from_reconstruction


def corners_from_image(
    reconstruction: pycolmap.Reconstruction,
    image: pycolmap.Image,
) -> CornerObservation:
    """Pattern corners of an image: its 2D points with a triangulated track.

    The point3D id identifies the pattern point and its position is the
    pattern point in the reconstruction frame.
    """
    corners, points3D, track_ids = [], [], []
    for point2D in image.points2D:
        if not point2D.has_point3D():
            continue
        corners.append(point2D.xy)
        points3D.append(reconstruction.points3D[point2D.point3D_id].xyz)
        track_ids.append(point2D.point3D_id)

    return CornerObservation(
        corners=np.array(corners, dtype=np.float64).reshape(-1, 2),
        points3D=np.array(points3D, dtype=np.float64).reshape(-1, 3),
        track_ids=tuple(track_ids),
    )


def add_reconstruction_to_store(
    store: MeasurementStore,
    reconstruction: pycolmap.Reconstruction,
    timestamps: dict[int, float],
    camera_index: int = 0,
) -> int:
    """Add every registered, timestamped image of a reconstruction.

    Args:
        timestamps: Capture time in seconds (camera clock) per image id.

    Returns:
        The number of observations added.
    """
    num_added = 0
    for image_id in tqdm(
        sorted(reconstruction.reg_image_ids()),
        desc="Adding camera observations",
    ):
        if image_id not in timestamps:
            logger.debug(f"Image {image_id} has no timestamp, skipping")
            continue

        image = reconstruction.images[image_id]
        observation = corners_from_image(reconstruction, image)
        if len(observation) == 0:
            logger.debug(f"Image {image_id} has no pattern corners, skipping")
            continue

        t_ns = seconds_to_ns(timestamps[image_id])
        tcid = TimedCameraId(t_ns, camera_index)
        world_from_cam = world_from_cam_from_reconstruction(
            image.cam_from_world()
        )
        num_added += store.add_camera_observation(
            tcid, observation, world_from_cam
        )

    logger.info(f"Added {num_added} camera observations.")
    return num_added


def add_telemetry_to_store(
    store: MeasurementStore,
    telemetry: CameraTelemetry,
) -> None:
    """Append both IMU streams, timestamps converted from ms to seconds."""
    for stream, data in [
        (ImuStream.ACCELEROMETER, telemetry.accelerometer),
        (ImuStream.GYROSCOPE, telemetry.gyroscope),
    ]:
        for t, measurement in zip(
            data.timestamps_s(), data.measurement, strict=True
        ):
            store.add_imu_sample(stream, t, measurement)
        logger.info(f"Added {len(data)} {stream.value} samples.")
