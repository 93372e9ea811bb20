from __future__ import annotations

import enum
from dataclasses import dataclass, field

import numpy as np
import pycolmap

from ..utils.timestamps import as_vector3, filter_to_window, seconds_to_ns


@dataclass(frozen=True, order=True, slots=True)
class TimedCameraId:
    """Identifies one camera observation instant."""

    timestamp_ns: int
    camera_index: int = 0


@dataclass(frozen=True, slots=True, eq=False)
class CornerObservation:
    """Detected pattern corners of one frame.

    Attributes:
        corners (np.ndarray): Nx2 pixel positions (x = column, y = row).
        points3D (np.ndarray): Nx3 positions of the matching pattern
            points in the reconstruction frame.
        track_ids (tuple[int, ...]): Pattern point identity of each corner.
    """

    corners: np.ndarray
    points3D: np.ndarray
    track_ids: tuple[int, ...] = ()

    def __post_init__(self):
        corners = np.array(self.corners, dtype=np.float64).reshape(-1, 2)
        points3D = np.array(self.points3D, dtype=np.float64).reshape(-1, 3)
        if len(corners) != len(points3D):
            raise ValueError(
                f"Got {len(corners)} corners for {len(points3D)} points"
            )
        track_ids = tuple(int(t) for t in self.track_ids)
        if track_ids and len(track_ids) != len(corners):
            raise ValueError("One track id per corner is required")
        corners.setflags(write=False)
        points3D.setflags(write=False)
        object.__setattr__(self, "corners", corners)
        object.__setattr__(self, "points3D", points3D)
        object.__setattr__(self, "track_ids", track_ids)

    @property
    def rows(self) -> np.ndarray:
        return self.corners[:, 1]

    def __len__(self) -> int:
        return len(self.corners)


class ImuStream(enum.Enum):
    ACCELEROMETER = "accelerometer"
    GYROSCOPE = "gyroscope"


@dataclass(frozen=True, slots=True, eq=False)
class ImuSample:
    timestamp_s: float
    measurement: np.ndarray

    @property
    def timestamp_ns(self) -> int:
        return seconds_to_ns(self.timestamp_s)


@dataclass(frozen=True, slots=True)
class CalibrationWindow:
    """Half-open interval [start_ns, end_ns) with full spline support."""

    start_ns: int
    end_ns: int

    @classmethod
    def from_timestamps(cls, timestamps_ns) -> CalibrationWindow:
        timestamps_ns = list(timestamps_ns)
        if not timestamps_ns:
            raise RuntimeError(
                "Cannot build a window without camera timestamps"
            )
        window = cls(min(timestamps_ns), max(timestamps_ns))
        if window.duration_ns <= 0:
            raise RuntimeError(
                "Camera timestamps span a zero-length calibration window"
            )
        return window

    @property
    def duration_ns(self) -> int:
        return self.end_ns - self.start_ns

    def contains(self, t_ns: int) -> bool:
        return self.start_ns <= t_ns < self.end_ns

    def filter(self, items, key=lambda item: item) -> list:
        return filter_to_window(items, self.start_ns, self.end_ns, key)


@dataclass
class MeasurementStore:
    """Camera observations, initial poses and raw IMU streams of one run.

    Camera poses are kept as world_from_cam and the derived body poses as
    world_from_imu. IMU timestamps are stored in the IMU clock, the time
    offset to the camera clock is applied at registration.
    """

    camera_timestamps_ns: list[int] = field(default_factory=list)
    corners: dict[TimedCameraId, CornerObservation] = field(
        default_factory=dict
    )
    camera_poses: dict[TimedCameraId, pycolmap.Rigid3d] = field(
        default_factory=dict
    )
    body_poses: dict[TimedCameraId, pycolmap.Rigid3d] = field(
        default_factory=dict
    )
    imu_samples: dict[ImuStream, list[ImuSample]] = field(
        default_factory=lambda: {stream: [] for stream in ImuStream}
    )

    def add_camera_observation(
        self,
        tcid: TimedCameraId,
        observation: CornerObservation,
        world_from_cam: pycolmap.Rigid3d | None = None,
    ) -> bool:
        """Insert unless the id is already present. Returns True if added."""
        if tcid in self.corners:
            return False
        self.corners[tcid] = observation
        self.camera_timestamps_ns.append(tcid.timestamp_ns)
        self.camera_timestamps_ns.sort()
        if world_from_cam is not None:
            self.camera_poses[tcid] = world_from_cam
        return True

    def add_imu_sample(
        self,
        stream: ImuStream,
        timestamp_s: float,
        measurement,
    ) -> None:
        self.imu_samples[stream].append(
            ImuSample(float(timestamp_s), as_vector3(measurement, stream.value))
        )

    def samples(self, stream: ImuStream) -> list[ImuSample]:
        return self.imu_samples[stream]

    def derive_body_poses(
        self,
        imu_from_cam: pycolmap.Rigid3d,
        window: CalibrationWindow,
    ) -> dict[TimedCameraId, pycolmap.Rigid3d]:
        """world_from_imu = world_from_cam * imu_from_cam^-1 per frame."""
        cam_from_imu = imu_from_cam.inverse()
        self.body_poses = {
            tcid: self.camera_poses[tcid] * cam_from_imu
            for tcid in sorted(self.camera_poses)
            if window.contains(tcid.timestamp_ns)
        }
        return self.body_poses

    def corners_in_window(
        self, window: CalibrationWindow
    ) -> list[tuple[TimedCameraId, CornerObservation]]:
        return [
            (tcid, self.corners[tcid])
            for tcid in sorted(self.corners)
            if window.contains(tcid.timestamp_ns)
        ]

    def is_empty(self) -> bool:
        return not self.corners and not any(self.imu_samples.values())

    def clear(self) -> None:
        self.camera_timestamps_ns.clear()
        self.corners.clear()
        self.camera_poses.clear()
        self.body_poses.clear()
        for samples in self.imu_samples.values():
            samples.clear()
