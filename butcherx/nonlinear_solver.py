# nonlinear_solver.py
# Copyright (C) 2025 Tobias Bode
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.

"""
Newton and Broyden solvers for nonlinear systems g(y) = 0, used for the implicit stage equations.

Both solvers work on dense numpy arrays, factorize with scipy and raise an exception from
`butcherx.exceptions` if they fail. The counters of the last solve are kept on the solver instance.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from butcherx.exceptions import (DivergenceError, JacobianDegradedError, MaxFunctionEvaluationsExceeded,
                                 MaxIterationsExceeded, MaxJacobianEvaluationsExceeded, SingularJacobianError)
from butcherx.utility import as_vector, lu_factor_checked, lu_solve


@dataclass
class NonlinearSolverResult:
    """
    Result of a converged nonlinear solve.

    Attributes:
      root (np.ndarray): The computed solution.
      converged (bool): Convergence flag.
      iterations (int): Number of updates performed.
      function_evaluations (int): Number of residual evaluations.
      jacobian_evaluations (int): Number of Jacobian evaluations.
      relaxations (int): Number of step length reductions.
      residual_norm (float): Norm of the last evaluated residual.
      residual_history (list): Residual norms, one per evaluated iterate.
    """
    root: np.ndarray
    converged: bool
    iterations: int
    function_evaluations: int
    jacobian_evaluations: int
    relaxations: int
    residual_norm: float
    residual_history: list = field(default_factory=list)


class NonlinearSolver(ABC):
    """
    Base class of the nonlinear solvers.

    Args:
      tolerance (float): Converged if the residual norm or the update norm falls below this value.
      max_iterations (int): Maximum number of iterations.
      max_function_evaluations (int): Maximum number of residual evaluations.
      max_jacobian_evaluations (int): Maximum number of Jacobian evaluations.
      max_relaxations (int): Maximum number of step length reductions per iteration.
      alpha (float): Step length reduction factor in (0, 1).
      damped (bool): Use the relaxed (damped) update if True, the full update otherwise.
      verbose (int): If >= 2, prints the residual norm of each iteration.
    """

    name = 'NonlinearSolver'

    def __init__(self,
                 tolerance=1e-10,
                 max_iterations=50,
                 max_function_evaluations=100,
                 max_jacobian_evaluations=100,
                 max_relaxations=10,
                 alpha=0.5,
                 damped=True,
                 verbose=0):
        if not tolerance > 0:
            raise ValueError("tolerance has to be positive.")
        if not 0 < alpha < 1:
            raise ValueError("alpha has to lie in (0, 1).")
        self.tolerance = tolerance
        self.max_iterations = max_iterations
        self.max_function_evaluations = max_function_evaluations
        self.max_jacobian_evaluations = max_jacobian_evaluations
        self.max_relaxations = max_relaxations
        self.alpha = alpha
        self.damped = damped
        self.verbose = verbose
        self.reset()

    def reset(self):
        """Clears the counters of the last solve."""
        self.iterations = 0
        self.function_evaluations = 0
        self.jacobian_evaluations = 0
        self.relaxations = 0
        self.residuals = []
        self.converged = False
        self.iterate = None

    @abstractmethod
    def solve(self, fun, jac, y0):
        """
        Solves fun(y) = 0 starting from y0.

        Args:
          fun (callable): Residual function.
          jac (callable): Jacobian of fun.
          y0 (array_like): Initial guess.

        Returns:
          NonlinearSolverResult: The converged result.
        """

    ## evaluations with budget checks

    def _evaluate(self, fun, y, allow_nonfinite=False):
        if self.function_evaluations >= self.max_function_evaluations:
            raise MaxFunctionEvaluationsExceeded(
                f"{self.name}: maximum number of function evaluations ({self.max_function_evaluations}) reached.",
                iterate=y, iterations=self.iterations)
        self.function_evaluations += 1
        g = np.asarray(fun(y), dtype=np.float64).reshape(-1)
        if not allow_nonfinite and not np.all(np.isfinite(g)):
            raise DivergenceError(f"{self.name}: residual contains NaN or Inf.", iterate=y,
                                  iterations=self.iterations)
        return g

    def _evaluate_jacobian(self, jac, y):
        if self.jacobian_evaluations >= self.max_jacobian_evaluations:
            raise MaxJacobianEvaluationsExceeded(
                f"{self.name}: maximum number of Jacobian evaluations ({self.max_jacobian_evaluations}) reached.",
                iterate=y, iterations=self.iterations)
        self.jacobian_evaluations += 1
        return np.asarray(jac(y), dtype=np.float64)

    def _factorize(self, mat, y):
        try:
            return lu_factor_checked(mat)
        except SingularJacobianError as err:
            raise SingularJacobianError(f"{self.name}: {err}", iterate=y, iterations=self.iterations) from err

    ## globalization

    def _relax(self, fun, y, g, delta):
        """
        Applies the update y + tau * delta with tau = 1, alpha, alpha^2, ...

        Returns:
          tuple: (y_new, g_new, decreased), decreased is False if no step length reduced the residual norm.
        """
        if not self.damped:
            y_new = y + delta
            return y_new, self._evaluate(fun, y_new), True

        norm_old = np.linalg.norm(g)
        tau = 1.0
        for relaxation in range(self.max_relaxations + 1):
            y_new = y + tau * delta
            g_new = self._evaluate(fun, y_new, allow_nonfinite=True)
            finite = np.all(np.isfinite(g_new))
            if finite and np.linalg.norm(g_new) < norm_old:
                return y_new, g_new, True
            if relaxation == self.max_relaxations:
                break
            tau *= self.alpha
            self.relaxations += 1

        if not finite:
            raise DivergenceError(f"{self.name}: residual contains NaN or Inf after {self.max_relaxations} relaxations.",
                                  iterate=y, iterations=self.iterations)
        return y_new, g_new, False

    def _record(self, g):
        res = float(np.linalg.norm(g))
        self.residuals.append(res)
        if self.verbose >= 2:
            print(f"{self.name}: residual after iteration {self.iterations}: {res:.6e}")
        return res

    def _finish(self, y):
        self.converged = True
        self.iterate = y
        if self.verbose >= 2:
            print(f"{self.name}: converged after {self.iterations} iterations "
                  f"({self.function_evaluations} function and {self.jacobian_evaluations} Jacobian evaluations).")
        return NonlinearSolverResult(root=y,
                                     converged=True,
                                     iterations=self.iterations,
                                     function_evaluations=self.function_evaluations,
                                     jacobian_evaluations=self.jacobian_evaluations,
                                     relaxations=self.relaxations,
                                     residual_norm=self.residuals[-1],
                                     residual_history=list(self.residuals))

    def _finish_update(self, fun, y):
        # the reported residual belongs to the returned root
        self._record(self._evaluate(fun, y))
        return self._finish(y)

    def _too_many_iterations(self, y):
        self.iterate = y
        if self.verbose >= 1:
            print(f"Warning: {self.name} scheme could not converge! Residual: {self.residuals[-1]:.6e}")
        return MaxIterationsExceeded(
            f"{self.name}: no convergence within {self.max_iterations} iterations "
            f"(residual norm {self.residuals[-1]:.3e}).", iterate=y, iterations=self.iterations)


class Newton(NonlinearSolver):
    """
    (Damped) Newton-Raphson solver.

    Each iteration solves J(y_k) delta = -g(y_k) with a dense LU factorization. In damped mode the step
    length is reduced by alpha until the residual norm decreases. If no step length achieves a
    decrease within max_relaxations reductions, the last trial is accepted.
    """

    name = 'Newton'

    def solve(self, fun, jac, y0):
        self.reset()
        y = as_vector(y0)
        g = self._evaluate(fun, y)
        res = self._record(g)
        if res < self.tolerance:
            return self._finish(y)

        while self.iterations < self.max_iterations:
            factors = self._factorize(self._evaluate_jacobian(jac, y), y)
            delta = -lu_solve(factors, g)
            self.iterations += 1

            if np.linalg.norm(delta) < self.tolerance:
                return self._finish_update(fun, y + delta)

            y, g, _ = self._relax(fun, y, g, delta)
            res = self._record(g)
            if res < self.tolerance:
                return self._finish(y)

        raise self._too_many_iterations(y)


class BroydenMode(Enum):
    """Update formula for the inverse Jacobian approximation."""
    GOOD = 'good'
    BAD = 'bad'
    COMBINED = 'combined'


class Broyden(NonlinearSolver):
    """
    Broyden's quasi-Newton solver.

    The Jacobian is evaluated once at the initial guess. Its inverse is then updated from consecutive
    pairs (dy, dg) by the good, bad or combined (Martinez) rank-one formula. If the approximation stops
    producing descent directions or an update is undefined, `JacobianDegradedError` is raised with the
    last iterate so that the caller can decide to restart with a fresh Jacobian.

    Args:
      mode (BroydenMode or str): Update formula, combined by default.
      **kwargs: See `NonlinearSolver`.
    """

    name = 'Broyden'

    def __init__(self, mode=BroydenMode.COMBINED, **kwargs):
        super().__init__(**kwargs)
        self.mode = BroydenMode(mode)

    def enable_good_mode(self):
        self.mode = BroydenMode.GOOD

    def enable_bad_mode(self):
        self.mode = BroydenMode.BAD

    def enable_combined_mode(self):
        self.mode = BroydenMode.COMBINED

    def _degraded(self, y, reason):
        self.iterate = y
        if self.verbose >= 1:
            print(f"{self.name}: Jacobian approximation degraded ({reason}).")
        return JacobianDegradedError(f"{self.name}: Jacobian approximation degraded ({reason}).", iterate=y,
                                     iterations=self.iterations)

    def _update(self, jac_inv, dy, dg, dy_old, dg_old, y):
        jdg = jac_inv @ dg
        mode = self.mode
        if mode is BroydenMode.COMBINED:
            if dy_old is None:
                mode = BroydenMode.GOOD
            else:
                dg_dg = dg @ dg
                lhs = abs(dy @ dy_old) / max(abs(dy @ jdg), np.finfo(float).tiny)
                rhs = abs(dg @ dg_old) / max(dg_dg, np.finfo(float).tiny)
                mode = BroydenMode.GOOD if lhs < rhs else BroydenMode.BAD

        match mode:
            case BroydenMode.GOOD:
                v = jac_inv.T @ dy
                denominator = v @ dg
                if abs(denominator) <= np.finfo(float).eps * np.linalg.norm(v) * np.linalg.norm(dg):
                    raise self._degraded(y, "vanishing denominator of the good update")
                return jac_inv - np.outer(jdg - dy, v) / denominator
            case BroydenMode.BAD:
                denominator = dg @ dg
                if denominator == 0.0:
                    raise self._degraded(y, "vanishing residual change")
                return jac_inv - np.outer(jdg - dy, dg) / denominator

    def solve(self, fun, jac, y0):
        self.reset()
        y = as_vector(y0)
        g = self._evaluate(fun, y)
        res = self._record(g)
        if res < self.tolerance:
            return self._finish(y)

        # Inverse of the initial Jacobian
        factors = self._factorize(self._evaluate_jacobian(jac, y), y)
        jac_inv = lu_solve(factors, np.eye(y.shape[0]))

        dy_old, dg_old = None, None
        while self.iterations < self.max_iterations:
            delta = -jac_inv @ g
            self.iterations += 1

            if np.linalg.norm(delta) < self.tolerance:
                return self._finish_update(fun, y + delta)

            y_new, g_new, decreased = self._relax(fun, y, g, delta)
            if not decreased:
                raise self._degraded(y, "no descent along the quasi-Newton direction")
            dy, dg = y_new - y, g_new - g
            y, g = y_new, g_new
            res = self._record(g)
            if res < self.tolerance:
                return self._finish(y)

            jac_inv = self._update(jac_inv, dy, dg, dy_old, dg_old, y)
            dy_old, dg_old = dy, dg

        raise self._too_many_iterations(y)
