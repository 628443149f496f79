"""
Weighted Least-Squares Refinement

A small refinement service: any object exposing observed / calculated /
weight vectors and the derivative of the calculated vector with respect to
each of its parameters can be refined in place.

Problem protocol:
- lsq_parameters(): sequence of (name, lower, upper); use -inf / inf when unbounded
- lsq_obs(), lsq_weight(): observed values and weights, shape (M,)
- lsq_calc(): calculated values for the current parameters, shape (M,)
- lsq_deriv(name): derivative of lsq_calc() with respect to one parameter
- get_lsq_values() / set_lsq_values(x): current parameter values
"""

import logging
from collections import namedtuple

import numpy as np
from scipy.optimize import least_squares

logger = logging.getLogger(__name__)

LSQResult = namedtuple("LSQResult", ["x", "cost", "nfev", "message", "success"])


class LeastSquaresRefiner:
    """Trust-region least squares with an analytic Jacobian.

    Args:
        xtol, ftol: Convergence tolerances handed to scipy
    """

    def __init__(self, xtol=1e-12, ftol=1e-12):
        self.xtol = xtol
        self.ftol = ftol

    def refine(self, problem, n_cycles=10):
        """Refine the parameters of a problem in place.

        Args:
            problem: Object following the module's problem protocol
            n_cycles: Approximate number of refinement cycles

        Returns:
            LSQResult; on failure the starting values are restored
        """
        params = list(problem.lsq_parameters())
        names = [p[0] for p in params]
        lower = np.array([p[1] for p in params], dtype=np.float64)
        upper = np.array([p[2] for p in params], dtype=np.float64)
        x0 = np.asarray(problem.get_lsq_values(), dtype=np.float64)
        obs = np.asarray(problem.lsq_obs(), dtype=np.float64)
        sw = np.sqrt(np.asarray(problem.lsq_weight(), dtype=np.float64))

        if obs.size == 0 or not names:
            return LSQResult(x0, 0.0, 0, "nothing to refine", False)
        if np.any(lower >= upper):
            raise ValueError("Every refined parameter needs lower < upper")
        x0 = np.clip(x0, lower, upper)

        def residuals(x):
            problem.set_lsq_values(x)
            return sw * (np.asarray(problem.lsq_calc()) - obs)

        def jacobian(x):
            problem.set_lsq_values(x)
            return sw[:, None] * np.column_stack([problem.lsq_deriv(name) for name in names])

        try:
            res = least_squares(residuals, x0, jac=jacobian, bounds=(lower, upper), method="trf",
                                x_scale="jac", xtol=self.xtol, ftol=self.ftol,
                                max_nfev=max(1, 4 * n_cycles))
        except (ValueError, np.linalg.LinAlgError) as exc:
            logger.warning("Least-squares refinement failed: %s", exc)
            problem.set_lsq_values(x0)
            return LSQResult(x0, np.inf, 0, str(exc), False)

        if not np.all(np.isfinite(res.x)):
            problem.set_lsq_values(x0)
            return LSQResult(x0, np.inf, res.nfev, "non-finite parameters", False)
        problem.set_lsq_values(res.x)
        logger.debug("LSQ: %d observations, %d parameters, cost %.3e after %d evaluations",
                     obs.size, len(names), res.cost, res.nfev)
        return LSQResult(res.x, float(res.cost), int(res.nfev), res.message, bool(res.success))
