"""Uniform cubic B-splines on R3 and on SO3 (cumulative form).

A segment s covers [s * dt, (s + 1) * dt) relative to the spline start and
is blended from knots s, ..., s + 3 with the local parameter u in [0, 1].
Rotation knots are quaternions stored (x, y, z, w), the order used by
scipy, pycolmap and Eigen.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.spatial.transform import Rotation

SPLINE_ORDER = 4

# B(u) = BLENDING_MATRIX @ [1, u, u^2, u^3]
BLENDING_MATRIX = (
    np.array(
        [
            [1.0, -3.0, 3.0, -1.0],
            [4.0, 0.0, -6.0, 3.0],
            [1.0, 3.0, 3.0, -3.0],
            [0.0, 0.0, 0.0, 1.0],
        ]
    )
    / 6.0
)

# row j holds the sum of rows j..3 of BLENDING_MATRIX
CUMULATIVE_BLENDING_MATRIX = np.cumsum(BLENDING_MATRIX[::-1], axis=0)[::-1]


def _powers(u: np.ndarray, derivative: int) -> np.ndarray:
    one = np.ones_like(u)
    zero = np.zeros_like(u)
    if derivative == 0:
        cols = [one, u, u**2, u**3]
    elif derivative == 1:
        cols = [zero, one, 2.0 * u, 3.0 * u**2]
    elif derivative == 2:
        cols = [zero, zero, 2.0 * one, 6.0 * u]
    else:
        raise ValueError(f"Unsupported derivative order {derivative}")
    return np.stack(cols, axis=1)


def basis(u, derivative: int = 0, cumulative: bool = False) -> np.ndarray:
    """Nx4 blending weights (or their derivatives w.r.t. u)."""
    u = np.atleast_1d(np.asarray(u, dtype=np.float64))
    matrix = CUMULATIVE_BLENDING_MATRIX if cumulative else BLENDING_MATRIX
    return _powers(u, derivative) @ matrix.T


def num_knots(duration_ns: int, dt_ns: int) -> int:
    """ceil(duration / dt) + (order - 1) knots cover [0, duration)."""
    if dt_ns <= 0:
        raise ValueError(f"Knot spacing must be positive, got {dt_ns} ns")
    return -(-int(duration_ns) // int(dt_ns)) + SPLINE_ORDER - 1


@dataclass(frozen=True, slots=True)
class KnotGrid:
    """Uniform knot layout of one spline, times relative to its start."""

    dt_ns: int
    num_knots: int

    @classmethod
    def spanning(cls, duration_ns: int, dt_ns: int) -> KnotGrid:
        return cls(int(dt_ns), num_knots(duration_ns, dt_ns))

    @property
    def dt_s(self) -> float:
        return self.dt_ns * 1e-9

    @property
    def num_segments(self) -> int:
        return self.num_knots - SPLINE_ORDER + 1

    @property
    def max_time_ns(self) -> int:
        return self.num_segments * self.dt_ns

    def knot_times_ns(self) -> np.ndarray:
        # knot j dominates the curve at the start of segment j - 1
        return (np.arange(self.num_knots, dtype=np.float64) - 1) * self.dt_ns

    def supports(self, t_rel_ns) -> bool:
        return 0 <= t_rel_ns <= self.max_time_ns

    def locate(self, t_rel_ns) -> tuple[np.ndarray, np.ndarray]:
        """Segment indices and local parameters for relative times.

        Times are clamped to the supported range, the end of the last
        segment maps to u = 1.
        """
        t = np.atleast_1d(np.asarray(t_rel_ns, dtype=np.float64))
        x = t / self.dt_ns
        segments = np.clip(np.floor(x), 0, self.num_segments - 1)
        u = np.clip(x - segments, 0.0, 1.0)
        return segments.astype(np.int64), u


def knot_deltas(knots: np.ndarray) -> np.ndarray:
    """Rotation vectors Log(R_j^-1 R_{j+1}) between consecutive knots."""
    rots = Rotation.from_quat(knots)
    return (rots[:-1].inv() * rots[1:]).as_rotvec()


def so3_segment_rotation(knots: np.ndarray, u) -> Rotation:
    """R(u) = R_0 * prod_j Exp(lambda_j(u) * d_j) for 4 quaternion knots."""
    lam = basis(u, cumulative=True)
    deltas = knot_deltas(knots)
    rot = Rotation.from_quat(np.repeat(knots[:1], len(lam), axis=0))
    for j in range(1, SPLINE_ORDER):
        rot = rot * Rotation.from_rotvec(lam[:, j, None] * deltas[j - 1])
    return rot


def so3_segment_velocity(knots: np.ndarray, u, dt_s: float) -> np.ndarray:
    """Nx3 angular velocity in the body frame, rad/s."""
    lam = basis(u, cumulative=True)
    dlam = basis(u, derivative=1, cumulative=True) / dt_s
    deltas = knot_deltas(knots)
    omega = np.zeros((len(lam), 3))
    for j in range(1, SPLINE_ORDER):
        step = Rotation.from_rotvec(lam[:, j, None] * deltas[j - 1])
        omega = step.inv().apply(omega) + dlam[:, j, None] * deltas[j - 1]
    return omega


def r3_segment_value(
    knots: np.ndarray,
    u,
    derivative: int = 0,
    dt_s: float = 1.0,
) -> np.ndarray:
    """Nx3 position (or velocity/acceleration) from 4 translation knots."""
    weights = basis(u, derivative=derivative)
    return weights @ knots / dt_s**derivative
