import numpy as np
import pyceres
from scipy.spatial.transform import Rotation

from .. import logger


class KnotUpdateCallback(pyceres.IterationCallback):
    """Logs knot updates and stops once they settle.

    Requires update_state_every_iteration so the knot arrays hold the
    current iterate when the callback runs.
    """

    def __init__(
        self,
        so3_knots: list[np.ndarray],
        r3_knots: list[np.ndarray],
        min_knot_change: tuple[float, float] = (0.001, 0.000001),
        min_iterations: int = 2,
    ):
        pyceres.IterationCallback.__init__(self)
        self.so3_knots = so3_knots
        self.r3_knots = r3_knots
        self.so3_previous = np.array(so3_knots)
        self.r3_previous = np.array(r3_knots)
        self.min_knot_change = min_knot_change
        self.min_iterations = min_iterations
        self.knot_changes = []

    def __call__(self, summary: pyceres.IterationSummary):
        if not summary.step_is_successful:
            return pyceres.CallbackReturnType.SOLVER_CONTINUE
        so3_current = np.array(self.so3_knots)
        r3_current = np.array(self.r3_knots)
        dr = np.rad2deg(
            (
                Rotation.from_quat(self.so3_previous).inv()
                * Rotation.from_quat(so3_current)
            ).magnitude()
        )
        dt = np.linalg.norm(r3_current - self.r3_previous, axis=1)
        self.so3_previous = so3_current
        self.r3_previous = r3_current

        q = [0.5, 0.99, 1.0]
        med_r, q99_r, max_r = np.quantile(dr, q)
        med_t, q99_t, max_t = np.quantile(dt, q)
        logger.info(
            f"{summary.iteration:d} Knot update: "
            f"med/q99/max dR={med_r:.3f}/{q99_r:.3f}/{max_r:.3f} deg, "
            f"dt={med_t * 1e2:.3f}/{q99_t * 1e2:.3f}/{max_t * 1e2:.3f} cm"
        )
        self.knot_changes.append(((med_r, med_t), (q99_r, q99_t)))
        if (
            summary.iteration >= self.min_iterations
            and q99_r <= self.min_knot_change[0]
            and q99_t <= self.min_knot_change[1]
        ):
            return pyceres.CallbackReturnType.SOLVER_TERMINATE_SUCCESSFULLY
        return pyceres.CallbackReturnType.SOLVER_CONTINUE
