from dataclasses import dataclass, field

import numpy as np
import pycolmap
import pytest

from vicalib.pipeline.ingest import add_reconstruction_to_store
from vicalib.structs.measurements import MeasurementStore, TimedCameraId
from vicalib.structs.trajectory import Trajectory

from helpers import pinhole_camera, rigid


@dataclass
class _Point2D:
    xy: np.ndarray
    point3D_id: int | None = None

    def has_point3D(self) -> bool:
        return self.point3D_id is not None


@dataclass
class _Point3D:
    xyz: np.ndarray


@dataclass
class _Image:
    points2D: list
    pose: pycolmap.Rigid3d

    def cam_from_world(self) -> pycolmap.Rigid3d:
        return self.pose


@dataclass
class _Reconstruction:
    images: dict = field(default_factory=dict)
    points3D: dict = field(default_factory=dict)

    def reg_image_ids(self):
        return list(self.images)


def _reconstruction() -> _Reconstruction:
    recon = _Reconstruction()
    recon.points3D = {
        7: _Point3D(np.array([0.0, 0.0, 2.0])),
        8: _Point3D(np.array([0.5, 0.0, 2.0])),
    }
    points2D = [
        _Point2D(np.array([320.0, 240.0]), 7),
        _Point2D(np.array([10.0, 10.0])),
        _Point2D(np.array([445.0, 240.0]), 8),
    ]
    cam_from_world = rigid([0.0, 0.0, 0.3], [0.1, -0.2, 0.5])
    recon.images = {
        2: _Image(points2D, cam_from_world),
        1: _Image(points2D[:1], rigid()),
        3: _Image(points2D, rigid()),
    }
    return recon


def test_ingest_keeps_triangulated_corners():
    store = MeasurementStore()
    timestamps = {1: 0.5, 2: 0.25}  # image 3 has no timestamp
    num_added = add_reconstruction_to_store(
        store, _reconstruction(), timestamps
    )

    assert num_added == 2
    assert store.camera_timestamps_ns == [250_000_000, 500_000_000]

    observation = store.corners[TimedCameraId(250_000_000)]
    assert observation.track_ids == (7, 8)
    np.testing.assert_array_equal(
        observation.corners, [[320.0, 240.0], [445.0, 240.0]]
    )
    np.testing.assert_array_equal(
        observation.points3D, [[0.0, 0.0, 2.0], [0.5, 0.0, 2.0]]
    )


def test_ingest_converts_to_world_from_cam():
    store = MeasurementStore()
    add_reconstruction_to_store(store, _reconstruction(), {2: 0.25})

    cam_from_world = rigid([0.0, 0.0, 0.3], [0.1, -0.2, 0.5])
    world_from_cam = store.camera_poses[TimedCameraId(250_000_000)]
    rotation = cam_from_world.rotation.matrix()
    np.testing.assert_allclose(
        world_from_cam.rotation.matrix(), rotation.T, atol=1e-12
    )
    np.testing.assert_allclose(
        world_from_cam.translation,
        -rotation.T @ cam_from_world.translation,
        atol=1e-12,
    )


def test_trajectory_stores_rig_from_world():
    world_from_imu = rigid([0.2, 0.0, 0.0], [1.0, 2.0, 3.0])
    trajectory = Trajectory.from_world_from_imu([(5, world_from_imu)])

    assert trajectory.timestamps == [5]
    np.testing.assert_allclose(trajectory.positions, [[1.0, 2.0, 3.0]])
    np.testing.assert_allclose(
        trajectory.poses[0].rotation.matrix(),
        world_from_imu.rotation.matrix().T,
        atol=1e-12,
    )
    assert set(trajectory.as_dict()) == {5}


def test_empty_trajectory_raises():
    with pytest.raises(RuntimeError):
        Trajectory().as_tuples()


def test_export_adds_registered_frames():
    reconstruction = pycolmap.Reconstruction()
    reconstruction.add_camera(pinhole_camera(camera_id=1))
    world_from_imu = [
        rigid([0.0, 0.0, 0.1], [0.0, 0.0, 0.0]),
        rigid([0.0, 0.0, 0.2], [1.0, 0.0, 0.0]),
    ]
    trajectory = Trajectory.from_world_from_imu(
        list(zip([0, 100_000_000], world_from_imu))
    )
    cam_from_imu = rigid([0.0, 0.1, 0.0], [0.0, 0.05, 0.0])
    trajectory.add_estimate_poses_to_reconstruction(
        reconstruction, camera_id=1, cam_from_imu=cam_from_imu
    )

    assert reconstruction.num_images() == 2
    names = sorted(image.name for image in reconstruction.images.values())
    assert names == ["0", "100000000"]

    frame = reconstruction.frames[2]
    expected = cam_from_imu * world_from_imu[1].inverse()
    np.testing.assert_allclose(
        frame.rig_from_world.translation, expected.translation, atol=1e-12
    )
    np.testing.assert_allclose(
        frame.rig_from_world.rotation.matrix(),
        expected.rotation.matrix(),
        atol=1e-12,
    )
