"""Rigid transform conventions at the reconstruction boundary.

pycolmap stores image poses as cam_from_world (and frames as
rig_from_world), whose rotation matrix is the transpose of the
world_from_cam orientation the spline works with. Every conversion
between the two happens here, once at ingest and once at export.
"""

import pycolmap


def world_from_cam_from_reconstruction(
    cam_from_world: pycolmap.Rigid3d,
) -> pycolmap.Rigid3d:
    """R_w_c = R_c_w^T, t_w_c = -R_c_w^T t_c_w"""
    return cam_from_world.inverse()


def rig_from_world_for_reconstruction(
    world_from_rig: pycolmap.Rigid3d,
) -> pycolmap.Rigid3d:
    """R_r_w = R_w_r^T, t_r_w = -R_w_r^T t_w_r"""
    return world_from_rig.inverse()