import numpy as np
import pycolmap
from tqdm import tqdm

from ..utils.transformation import rig_from_world_for_reconstruction


class Trajectory:
    """
    Timestamped IMU poses sampled from a fitted spline.

    Poses are stored as rig_from_world (the IMU is the rig) to
    satisfy the COLMAP format, i.e. the orientation is the transpose
    of the spline's world_from_imu orientation.

    Attributes:
        timestamps (list[int]): Sample times in nanoseconds.
        poses (list[pycolmap.Rigid3d]): imu_from_world per sample.
    """

    def __init__(self) -> None:
        self._timestamps: list[int] = []
        self._poses: list[pycolmap.Rigid3d] = []

    @classmethod
    def from_world_from_imu(
        cls,
        samples: list[tuple[int, pycolmap.Rigid3d]],
    ) -> "Trajectory":
        self = cls()
        for timestamp, world_from_imu in samples:
            self.append(timestamp, world_from_imu)
        return self

    def append(self, timestamp: int, world_from_imu: pycolmap.Rigid3d) -> None:
        self._timestamps.append(int(timestamp))
        self._poses.append(rig_from_world_for_reconstruction(world_from_imu))

    def add_estimate_poses_to_reconstruction(
        self,
        reconstruction: pycolmap.Reconstruction,
        camera_id: int,
        cam_from_imu: pycolmap.Rigid3d | None = None,
    ) -> pycolmap.Reconstruction:
        """
        Adds one registered frame with a single image per pose.

        A new rig with `camera_id` as reference sensor is created, so
        the frames carry cam_from_world = cam_from_imu * imu_from_world.
        Images are named by their nanosecond timestamp.
        """
        self._ensure_loaded()
        if cam_from_imu is None:
            cam_from_imu = pycolmap.Rigid3d()

        rig_id = max(reconstruction.rigs.keys(), default=0) + 1
        rig = pycolmap.Rig(rig_id=rig_id)
        rig.add_ref_sensor(reconstruction.cameras[camera_id].sensor_id)
        reconstruction.add_rig(rig)

        frame_id = max(reconstruction.frames.keys(), default=0) + 1
        image_id = max(reconstruction.images.keys(), default=0) + 1
        for timestamp, pose in tqdm(
            self.as_tuples(),
            total=len(self),
            desc="Adding images to reconstruction",
        ):
            frame = pycolmap.Frame()
            frame.rig_id = rig.rig_id
            frame.frame_id = frame_id
            frame.rig_from_world = cam_from_imu * pose

            im = pycolmap.Image(
                str(timestamp),
                pycolmap.Point2DList(),
                camera_id,
                image_id,
            )
            im.frame_id = frame.frame_id
            frame.add_data_id(im.data_id)

            reconstruction.add_frame(frame)
            reconstruction.add_image(im)
            reconstruction.register_frame(frame.frame_id)
            frame_id += 1
            image_id += 1

        return reconstruction

    @property
    def timestamps(self) -> list[int]:
        self._ensure_loaded()
        return self._timestamps

    @property
    def poses(self) -> list[pycolmap.Rigid3d]:
        self._ensure_loaded()
        return self._poses

    @property
    def positions(self) -> np.ndarray:
        """Returns Nx3 numpy array of positions in the world frame."""
        self._ensure_loaded()
        return np.array([p.inverse().translation for p in self._poses])

    @property
    def orientations(self) -> np.ndarray:
        """Returns Nx4 world_from_imu quaternions (x, y, z, w)."""
        self._ensure_loaded()
        return np.array([p.inverse().rotation.quat for p in self._poses])

    def as_tuples(self) -> list[tuple[int, pycolmap.Rigid3d]]:
        """Return a list of (timestamp, pose) tuples."""
        self._ensure_loaded()
        return list(zip(self._timestamps, self._poses, strict=True))

    def as_dict(self) -> dict[int, pycolmap.Rigid3d]:
        """Return a dict mapping timestamp to pose."""
        self._ensure_loaded()
        return dict(zip(self._timestamps, self._poses, strict=True))

    def __len__(self) -> int:
        return len(self._timestamps)

    def _ensure_loaded(self) -> None:
        if not self._timestamps or not self._poses:
            raise RuntimeError("Trajectory is empty. Export it first.")
