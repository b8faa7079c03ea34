# runge_kutta.py
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

"""Runge-Kutta engine for explicit, implicit, semi-explicit and linear systems with invariant projection."""

import time
from contextlib import contextmanager
from dataclasses import dataclass

import numpy as np
from flax.core import FrozenDict

from butcherx.exceptions import (DivergenceError, DomainError, JacobianDegradedError, NonlinearSolverError,
                                 SingularJacobianError, StepSizeUnderflowError)
from butcherx.nonlinear_solver import Broyden, BroydenMode, Newton
from butcherx.settings import DEFAULT_SETTINGS, validate_settings
from butcherx.solution import Solution
from butcherx.systems import ImplicitSystem
from butcherx.tableau import Tableau
from butcherx.tableaus import get_tableau
from butcherx.utility import as_matrix, as_vector, lu_factor_checked, lu_solve, max_norm, weighted_rms_norm


## results

@dataclass
class StepInfo:
  """
  Diagnostics of one step (or of all attempts of one advance).

  Attributes:
    t (float): Time at the beginning of the step.
    h (float): Attempted step size (negative in reverse mode).
    error (float): Scaled local error estimate, None without embedded weights.
    nonlinear_solves (int): Number of nonlinear (stage) solves.
    iterations (int): Nonlinear solver iterations.
    function_evaluations (int): Residual evaluations of the nonlinear solver.
    jacobian_evaluations (int): Jacobian evaluations of the nonlinear solver.
    broyden_resets (int): Restarts of Broyden's method with a fresh Jacobian.
    rejections (int): Rejected attempts (advance only).
    projection_converged (bool): False if the projection onto the invariants failed.
    failure (str): Reason of a failed attempt.
  """
  t: float
  h: float
  error: float = None
  nonlinear_solves: int = 0
  iterations: int = 0
  function_evaluations: int = 0
  jacobian_evaluations: int = 0
  broyden_resets: int = 0
  rejections: int = 0
  projection_converged: bool = True
  failure: str = None

  def merge(self, other):
    """Adds the counters of other and takes its error and failure."""
    self.nonlinear_solves += other.nonlinear_solves
    self.iterations += other.iterations
    self.function_evaluations += other.function_evaluations
    self.jacobian_evaluations += other.jacobian_evaluations
    self.broyden_resets += other.broyden_resets
    self.error = other.error
    self.failure = other.failure


@dataclass
class StepResult:
  """
  Outcome of `RungeKutta.step`. Unpacks as (x, h_next, accepted, info).

  Attributes:
    x (np.ndarray): New state if accepted, the old state otherwise.
    h_next (float): Suggested next step size.
    accepted (bool): Acceptance flag.
    info (StepInfo): Diagnostics.
  """
  x: np.ndarray
  h_next: float
  accepted: bool
  info: StepInfo

  def __iter__(self):
    return iter((self.x, self.h_next, self.accepted, self.info))


@dataclass
class ProjectionResult:
  """
  Outcome of a projection onto the invariant manifold.

  If the projection fails, x is the unprojected input and converged is False.
  """
  x: np.ndarray
  converged: bool
  iterations: int
  residual_norm: float


def _option(name, doc):
  def getter(self):
    return self._settings[name]

  def setter(self, value):
    self.update_settings({name: value})

  return property(getter, setter, doc=doc)


## engine

class RungeKutta:
  """
  Runge-Kutta integrator bound to a Butcher tableau and (optionally) a system.

  The stage equations are solved depending on the tableau type and the system form:

  - explicit tableau, explicit system: closed form stage derivatives, no nonlinear solve
  - explicit tableau, implicit system: one nonlinear solve per stage for the stage derivative
  - diagonally implicit tableau: one nonlinear solve per stage
  - implicit tableau: one joint nonlinear solve for all stages

  Args:
    tableau (Tableau or str): Butcher tableau or catalog name (see `butcherx.tableaus`).
    system (ImplicitSystem): System to integrate, can be attached later.
    settings (dict): Options, see `butcherx.settings.DEFAULT_SETTINGS`.
    **options: Options overriding settings.
  """

  absolute_tolerance = _option('absolute_tolerance', "Absolute tolerance of the local error control.")
  relative_tolerance = _option('relative_tolerance', "Relative tolerance of the local error control.")
  min_step = _option('min_step', "Lower bound of the step size magnitude.")
  max_step = _option('max_step', "Upper bound of the step size magnitude.")
  safety_factor = _option('safety_factor', "Safety factor of the step size control.")
  min_safety_factor = _option('min_safety_factor', "Smallest step size reduction factor.")
  max_safety_factor = _option('max_safety_factor', "Largest step size growth factor.")
  max_substeps = _option('max_substeps', "Maximum number of rejections (or halvings) per advanced step.")
  projection_tolerance = _option('projection_tolerance', "Tolerance on the invariants after projection.")
  max_projection_iterations = _option('max_projection_iterations', "Maximum number of projection iterations.")
  solver_choice = _option('solver_choice', "Nonlinear stage solver, 'newton' or 'broyden'.")
  broyden_mode = _option('broyden_mode', "Update formula of Broyden's method.")
  max_broyden_resets = _option('max_broyden_resets', "Restarts of Broyden's method after degradation.")
  adaptive_mode = _option('enable_adaptive_mode', "Adaptive step size control.")
  projection = _option('enable_projection', "Projection onto the invariant manifold.")
  reverse_mode = _option('enable_reverse_mode', "Integration backward in time.")
  verbose = _option('enable_verbose_mode', "Verbosity level.")

  def __init__(self, tableau, system=None, settings=None, **options):
    if isinstance(tableau, str):
      tableau = get_tableau(tableau)
    if not isinstance(tableau, Tableau):
      raise TypeError(f"Expected a Tableau or a catalog name, got {type(tableau).__name__}.")
    self.tableau = tableau
    self._settings = validate_settings({**(settings or {}), **options})
    self._newton = Newton()
    self._broyden = Broyden()
    self._configure_solvers()
    self.step_callback = None
    self._system = None
    if system is not None:
      self.attach_system(system)

  ## configuration

  @property
  def settings(self):
    """Snapshot of all options."""
    return FrozenDict(self._settings)

  def update_settings(self, settings):
    """
    Changes options after validation.

    Args:
      settings (dict): Options to change.

    Raises:
      ValueError: For unknown options or invalid values.
    """
    self._settings = validate_settings(settings, self._settings)
    self._configure_solvers()

  def reset_settings(self):
    """Restores the default options."""
    self._settings = dict(DEFAULT_SETTINGS)
    self._configure_solvers()

  @contextmanager
  def temporary_settings(self, **options):
    """Context manager that applies options and restores the previous ones on exit."""
    saved = dict(self._settings)
    self.update_settings(options)
    try:
      yield self
    finally:
      self._settings = saved
      self._configure_solvers()

  def _configure_solvers(self):
    self._newton.verbose = self.verbose
    self._broyden.verbose = self.verbose
    self._broyden.mode = BroydenMode(self.broyden_mode)

  @property
  def nonlinear_solver(self):
    """Solver instance used for the stage equations."""
    match self.solver_choice:
      case 'newton':
        return self._newton
      case 'broyden':
        return self._broyden

  def enable_adaptive_mode(self):
    self.adaptive_mode = True

  def disable_adaptive_mode(self):
    self.adaptive_mode = False

  def enable_projection(self):
    self.projection = True

  def disable_projection(self):
    self.projection = False

  def enable_reverse_mode(self):
    self.reverse_mode = True

  def disable_reverse_mode(self):
    self.reverse_mode = False

  def enable_verbose_mode(self, level=1):
    self.verbose = level

  def disable_verbose_mode(self):
    self.verbose = 0

  def use_newton(self):
    self.solver_choice = 'newton'

  def use_broyden(self, mode=None):
    settings = {'solver_choice': 'broyden'}
    if mode is not None:
      settings['broyden_mode'] = mode
    self.update_settings(settings)

  ## system

  def attach_system(self, system):
    if not isinstance(system, ImplicitSystem):
      raise TypeError(f"Expected an ImplicitSystem (or subclass), got {type(system).__name__}.")
    self._system = system

  def detach_system(self):
    self._system = None

  def has_system(self):
    return self._system is not None

  @property
  def system(self):
    if self._system is None:
      raise ValueError("No system attached to the Runge-Kutta integrator.")
    return self._system

  def _functions(self, reverse):
    # F, JF_x, JF_x_dot and f (None for implicit systems) in the integration direction
    s = self.system
    if reverse:
      return (s.F_reverse, s.JF_x_reverse, s.JF_x_dot_reverse, s.f_reverse if s.is_explicit else None)
    return (s.F, s.JF_x, s.JF_x_dot, s.f if s.is_explicit else None)

  def _check_domain(self, x, t):
    if not self.system.in_domain(x, t):
      raise DomainError(f"{self.system.name}: state left the domain at t = {t}.", x=x, t=t)

  def _invariants(self, x, t):
    if self.system.invariants_number == 0:
      return None
    return as_vector(self.system.h(x, t), self.system.invariants_number, "h")

  ## stage solving

  def _nonlinear_solve(self, fun, jac, guess, info):
    """Solves one stage system, restarting Broyden's method with a fresh Jacobian if it degrades."""
    solver = self.nonlinear_solver
    resets = 0
    while True:
      try:
        result = solver.solve(fun, jac, guess)
        break
      except JacobianDegradedError as err:
        if resets >= self.max_broyden_resets or err.iterate is None:
          raise
        resets += 1
        guess = err.iterate
        if self.verbose >= 2:
          print(f"Restarting {solver.name} with a fresh Jacobian ({resets}/{self.max_broyden_resets}).")
      finally:
        info.iterations += solver.iterations
        info.function_evaluations += solver.function_evaluations
        info.jacobian_evaluations += solver.jacobian_evaluations
    info.nonlinear_solves += 1
    info.broyden_resets += resets
    return result.root

  def _erk_explicit_stages(self, x, t, h, f):
    A, c = self.tableau.A, self.tableau.c
    N = x.shape[0]
    K = np.zeros((self.tableau.stages, N))
    for i in range(self.tableau.stages):
      x_i = x + h * (A[i, :i] @ K[:i])
      K[i] = as_vector(f(x_i, t + c[i] * h), N, "f")
      if not np.all(np.isfinite(K[i])):
        raise DivergenceError(f"Stage {i} of the explicit step is not finite.")
    return K

  def _erk_implicit_stages(self, x, t, h, F, JF_x_dot, info):
    A, c = self.tableau.A, self.tableau.c
    N = x.shape[0]
    K = np.zeros((self.tableau.stages, N))
    for i in range(self.tableau.stages):
      x_i = x + h * (A[i, :i] @ K[:i])
      t_i = t + c[i] * h

      def fun(k):
        return F(x_i, k, t_i)

      def jac(k):
        return JF_x_dot(x_i, k, t_i)

      K[i] = self._nonlinear_solve(fun, jac, K[i - 1] if i > 0 else K[0], info)
    return K

  def _dirk_stages(self, x, t, h, F, JF_x, JF_x_dot, info):
    A, c = self.tableau.A, self.tableau.c
    N = x.shape[0]
    K = np.zeros((self.tableau.stages, N))
    for i in range(self.tableau.stages):
      x_base = x + h * (A[i, :i] @ K[:i])
      a_ii = A[i, i]
      t_i = t + c[i] * h

      def fun(k):
        return F(x_base + h * a_ii * k, k, t_i)

      def jac(k):
        x_i = x_base + h * a_ii * k
        return h * a_ii * np.asarray(JF_x(x_i, k, t_i)) + np.asarray(JF_x_dot(x_i, k, t_i))

      K[i] = self._nonlinear_solve(fun, jac, K[i - 1] if i > 0 else K[0], info)
    return K

  def _irk_stages(self, x, t, h, F, JF_x, JF_x_dot, info):
    A, c = self.tableau.A, self.tableau.c
    S, N = self.tableau.stages, x.shape[0]

    def fun(K_flat):
      K = K_flat.reshape(S, N)
      X = x + h * (A @ K)
      return np.concatenate([np.asarray(F(X[i], K[i], t + c[i] * h), dtype=np.float64).reshape(-1) for i in range(S)])

    def jac(K_flat):
      K = K_flat.reshape(S, N)
      X = x + h * (A @ K)
      J = np.zeros((S * N, S * N))
      for i in range(S):
        t_i = t + c[i] * h
        JF_x_i = np.asarray(JF_x(X[i], K[i], t_i), dtype=np.float64)
        for j in range(S):
          J[i * N:(i + 1) * N, j * N:(j + 1) * N] = h * A[i, j] * JF_x_i
        J[i * N:(i + 1) * N, i * N:(i + 1) * N] += np.asarray(JF_x_dot(X[i], K[i], t_i), dtype=np.float64)
      return J

    K_flat = self._nonlinear_solve(fun, jac, np.zeros(S * N), info)
    return K_flat.reshape(S, N)

  def stages(self, x, t, h, reverse=False, info=None):
    """
    Computes the stage derivatives k_i of one step.

    Args:
      x (np.ndarray): State at the beginning of the step.
      t (float): Time (in the integration direction) at the beginning of the step.
      h (float): Positive step size in the integration direction.
      reverse (bool): Use the time reversed system.
      info (StepInfo): Collects the nonlinear solver statistics.

    Returns:
      np.ndarray: Stage derivatives (s x N).

    Raises:
      NonlinearSolverError: If a stage equation could not be solved.
    """
    info = info if info is not None else StepInfo(t=t, h=h)
    F, JF_x, JF_x_dot, f = self._functions(reverse)
    if self.tableau.is_explicit and f is not None:
      return self._erk_explicit_stages(x, t, h, f)
    if self.tableau.is_explicit:
      return self._erk_implicit_stages(x, t, h, F, JF_x_dot, info)
    if self.tableau.is_diagonally_implicit:
      return self._dirk_stages(x, t, h, F, JF_x, JF_x_dot, info)
    return self._irk_stages(x, t, h, F, JF_x, JF_x_dot, info)

  ## step size control

  def estimate_step(self, x_new, x_hat, x_old, h):
    """
    Step size controller based on the embedded error estimate.

    The error is the root mean square of (x_new - x_hat) / (atol + rtol * max(|x_old|, |x_new|)). The
    step is scaled by safety_factor * error^(-1/(q+1)), q = min(order, order_hat) (order if the tableau has
    no embedded weights), limited to [min_safety_factor, max_safety_factor] and to [min_step, max_step] in
    magnitude.

    Returns:
      tuple: (error, factor, h_new).
    """
    error = weighted_rms_norm(x_new - x_hat, x_old, x_new, self.absolute_tolerance, self.relative_tolerance)
    q = min(self.tableau.order, self.tableau.order_hat) if self.tableau.is_embedded else self.tableau.order
    if error == 0.0:
      factor = self.max_safety_factor
    else:
      factor = self.safety_factor * error**(-1.0 / (q + 1))
      factor = min(self.max_safety_factor, max(self.min_safety_factor, factor))
    return error, factor, self._clamp_step(h * factor)

  def _clamp_step(self, h):
    return float(np.sign(h) * min(self.max_step, max(self.min_step, abs(h))))

  ## stepping

  def _direction(self, h):
    if h == 0.0 or not np.isfinite(h):
      raise ValueError(f"Step size has to be finite and nonzero, got {h}.")
    if h < 0.0 and not self.reverse_mode:
      raise ValueError("Negative step sizes require enable_reverse_mode.")
    return h < 0.0

  def _step(self, x, tau, h, reverse):
    # tau and h > 0 are measured in the integration direction
    t = -tau if reverse else tau
    info = StepInfo(t=t, h=-h if reverse else h)
    self._check_domain(x, t)

    try:
      K = self.stages(x, tau, h, reverse, info)
      x_new = x + h * (self.tableau.b @ K)
      if not np.all(np.isfinite(x_new)):
        raise DivergenceError("Updated state is not finite.")
    except NonlinearSolverError as err:
      info.failure = str(err)
      if self.verbose >= 1:
        print(f"Step at t = {t:.6e} with h = {info.h:.6e} failed: {err}")
      factor = max(self.min_safety_factor, 0.5)
      h_next = self._clamp_step(h * factor) if self.adaptive_mode else h
      return StepResult(x, h_next, False, info)

    accepted, h_next = True, h
    if self.tableau.is_embedded:
      x_hat = x + h * (self.tableau.b_hat @ K)
      info.error, _, h_est = self.estimate_step(x_new, x_hat, x, h)
      if self.adaptive_mode:
        accepted = info.error <= 1.0
        h_next = h_est
        if not accepted:
          info.failure = f"error estimate {info.error:.3e} > 1"
          if self.verbose >= 1:
            print(f"Step at t = {t:.6e} with h = {info.h:.6e} rejected, error estimate {info.error:.3e}.")

    if accepted:
      self._check_domain(x_new, -(tau + h) if reverse else tau + h)
    return StepResult(x_new if accepted else x, h_next, accepted, info)

  def step(self, x_n, t_n, h):
    """
    Performs one step from (x_n, t_n) with step size h.

    A negative h integrates backward in time and requires the reverse mode.

    Args:
      x_n (array_like): Current state.
      t_n (float): Current time.
      h (float): Step size.

    Returns:
      StepResult: (x_next, h_next, accepted, info). If rejected, x_next is x_n.

    Raises:
      DomainError: If (x_n, t_n) or the accepted state is outside the domain of the system.
    """
    reverse = self._direction(h)
    x = as_vector(x_n, self.system.equations_number, "x_n")
    if reverse:
      result = self._step(x, -t_n, -h, True)
      result.h_next = -result.h_next
      return result
    return self._step(x, t_n, h, False)

  def _fixed_advance(self, x, tau, h, reverse, info):
    # Fixed step: on failure, cover [tau, tau + h] by 2, 4, ... equal substeps
    result = self._step(x, tau, h, reverse)
    info.merge(result.info)
    if result.accepted:
      return result.x
    for level in range(1, self.max_substeps + 1):
      info.rejections += 1
      substeps = 2**level
      h_sub = h / substeps
      x_sub = x
      for k in range(substeps):
        result = self._step(x_sub, tau + k * h_sub, h_sub, reverse)
        info.merge(result.info)
        if not result.accepted:
          break
        x_sub = result.x
      else:
        if self.verbose >= 2:
          print(f"Fixed step h = {h:.6e} completed with {substeps} substeps.")
        return x_sub
    t = -tau if reverse else tau
    raise StepSizeUnderflowError(
        f"Step at t = {t} could not be completed with {2**self.max_substeps} substeps: {info.failure}",
        x=x, t=t, h=-h if reverse else h)

  def _advance(self, x, tau, h, reverse):
    # Returns x_new, h_taken, h_next, info in the integration direction
    t = -tau if reverse else tau
    info = StepInfo(t=t, h=-h if reverse else h)

    if self.adaptive_mode:
      while True:
        result = self._step(x, tau, h, reverse)
        info.merge(result.info)
        if result.accepted:
          break
        info.rejections += 1
        if info.rejections > self.max_substeps or h <= self.min_step * (1.0 + 1e-12):
          raise StepSizeUnderflowError(
              f"Step at t = {t} rejected {info.rejections} times, last h = {h:.3e}: {result.info.failure}",
              x=x, t=t, h=-h if reverse else h)
        h = min(result.h_next, h)
      x_new, h_next = result.x, result.h_next
    else:
      x_new, h_next = self._fixed_advance(x, tau, h, reverse, info), h

    info.h = -h if reverse else h
    t_new = -(tau + h) if reverse else tau + h
    if self.projection and self.system.invariants_number > 0:
      projected = self._project(x_new, t_new)
      info.projection_converged = projected.converged
      if not projected.converged and self.verbose >= 0:
        print(f"Warning: projection onto the invariants failed at t = {t_new:.6e} "
              f"(residual {projected.residual_norm:.3e}), continuing with the unprojected state.")
      x_new = projected.x
    return x_new, h, h_next, info

  def advance(self, x_n, t_n, h):
    """
    Advances one accepted step, retrying rejected attempts and projecting the result.

    In adaptive mode, rejected attempts are retried with reduced step sizes up to max_substeps times.
    In fixed step mode, a failed step is covered by 2, 4, ..., 2^max_substeps substeps.

    Returns:
      tuple: (x_new, t_new, h_taken, h_next, info).

    Raises:
      StepSizeUnderflowError: If no attempt was accepted.
      DomainError: If the state leaves the domain of the system.
    """
    reverse = self._direction(h)
    x = as_vector(x_n, self.system.equations_number, "x_n")
    if reverse:
      x_new, h_taken, h_next, info = self._advance(x, -t_n, -h, True)
      return x_new, t_n - h_taken, -h_taken, -h_next, info
    x_new, h_taken, h_next, info = self._advance(x, t_n, h, False)
    return x_new, t_n + h_taken, h_taken, h_next, info

  ## integration loops

  def _march(self, x, tau, tau_end, h, reverse, solution, record_steps):
    # Integrates from tau to tau_end (tau < tau_end), returns x, h and a stop flag
    while tau < tau_end:
      remaining = tau_end - tau
      if h >= remaining or remaining - h <= 1e-12 * h:
        h_try = remaining
      elif self.adaptive_mode and remaining - h < self.min_step:
        # Avoid a final step below min_step
        h_try = remaining / 2 if remaining / 2 >= self.min_step else remaining
      else:
        h_try = h

      x, h_taken, h_next, info = self._advance(x, tau, h_try, reverse)
      tau = tau_end if h_taken == remaining else tau + h_taken
      solution.num_accepted += 1
      solution.num_rejected += info.rejections
      solution.num_projection_failures += 0 if info.projection_converged else 1
      if self.adaptive_mode:
        h = h_next

      if record_steps:
        t = -tau if reverse else tau
        solution.append(t, x, -h_taken if reverse else h_taken, self._invariants(x, t))
        if self.verbose >= 1:
          print(f"Accepted step {solution.num_accepted}: t = {t:.6e}, h = {h_taken:.3e}, error: {info.error}, "
                f"iterations: {info.iterations}")
        if self.step_callback is not None and self.step_callback(solution.num_accepted, x, t) is False:
          return x, h, True
    return x, h, False

  def _prepare(self, x0, t0, t1):
    if t1 == t0:
      raise ValueError("Initial and final time coincide.")
    reverse = t1 < t0
    if reverse and not self.reverse_mode:
      raise ValueError("Integration backward in time requires enable_reverse_mode.")
    x = as_vector(x0, self.system.equations_number, "x0")
    self._check_domain(x, t0)
    return x, reverse

  def _progress(self, t, t0, t1, solution):
    if self.verbose >= 1:
      progress = 100.0 * (t - t0) / (t1 - t0)
      print(f"Progress: {progress:.0f}%, Time: {t:.2e}, accepted steps: {solution.num_accepted}, "
            f"rejected steps: {solution.num_rejected}")

  def solve(self, x0, t0, t1, initial_h=None, solution=None):
    """
    Integrates from t0 to t1 and records every accepted step.

    Args:
      x0 (array_like): Initial state.
      t0 (float): Initial time.
      t1 (float): Final time. t1 < t0 integrates backward and requires the reverse mode.
      initial_h (float): Initial (adaptive mode) or fixed step size magnitude. Defaults to |t1 - t0| / 100.
      solution (Solution): Container to append to. A new one is created if None.

    Returns:
      Solution: Trajectory with the initial point followed by all accepted steps.

    Raises:
      StepSizeUnderflowError: If a step could not be completed.
      DomainError: If the state leaves the domain of the system.
    """
    x, reverse = self._prepare(x0, t0, t1)
    tau0, tau1 = (-t0, -t1) if reverse else (t0, t1)
    h = abs(initial_h) if initial_h is not None else (tau1 - tau0) / 100
    if h == 0.0 or not np.isfinite(h):
      raise ValueError(f"initial_h has to be finite and nonzero, got {initial_h}.")
    if self.adaptive_mode:
      h = self._clamp_step(h)

    if solution is None:
      solution = Solution(self.system.equations_number, self.system.invariants_number)
    solution.append(t0, x, 0.0, self._invariants(x, t0))

    start = time.time()
    x, h, stopped = self._march(x, tau0, tau1, h, reverse, solution, record_steps=True)
    if self.verbose >= 1:
      self._progress(solution.t_final, t0, t1, solution)
      print(f"Integration {'stopped by the step callback' if stopped else 'finished'} after "
            f"{time.time() - start:.3f} s.")
    return solution

  def solve_on_mesh(self, t_mesh, x0, solution=None):
    """
    Integrates over a time mesh and records the state at each mesh point.

    In adaptive mode, every mesh interval is integrated with as many substeps as the error control
    requires. In fixed step mode, each interval is one step (with substepping on failure). The step
    callback is called once per mesh point.

    Args:
      t_mesh (array_like): Strictly monotonic times. Decreasing times require the reverse mode.
      x0 (array_like): State at t_mesh[0].
      solution (Solution): Container to append to. A new one is created if None.

    Returns:
      Solution: States at the mesh points (h holds the mesh increments).
    """
    t_mesh = as_vector(t_mesh, name="t_mesh")
    if t_mesh.shape[0] < 2:
      raise ValueError("t_mesh needs at least two points.")
    increments = np.diff(t_mesh)
    if not (np.all(increments > 0) or np.all(increments < 0)):
      raise ValueError("t_mesh has to be strictly monotonic.")
    x, reverse = self._prepare(x0, t_mesh[0], t_mesh[-1])
    tau_mesh = -t_mesh if reverse else t_mesh

    if solution is None:
      solution = Solution(self.system.equations_number, self.system.invariants_number, capacity=t_mesh.shape[0])
    solution.append(t_mesh[0], x, 0.0, self._invariants(x, t_mesh[0]))

    start = time.time()
    h = tau_mesh[1] - tau_mesh[0]
    for k in range(t_mesh.shape[0] - 1):
      h_mesh = tau_mesh[k + 1] - tau_mesh[k]
      h = min(h, h_mesh) if self.adaptive_mode else h_mesh
      x, h, _ = self._march(x, tau_mesh[k], tau_mesh[k + 1], h, reverse, solution, record_steps=False)
      solution.append(t_mesh[k + 1], x, increments[k], self._invariants(x, t_mesh[k + 1]))
      if self.verbose >= 2:
        self._progress(t_mesh[k + 1], t_mesh[0], t_mesh[-1], solution)
      if self.step_callback is not None and self.step_callback(k + 1, x, t_mesh[k + 1]) is False:
        break
    if self.verbose >= 1:
      print(f"Integration on {t_mesh.shape[0]} mesh points finished after {time.time() - start:.3f} s.")
    return solution

  ## projection

  def _project(self, x, t, equations=None, invariants=None):
    N, M = self.system.equations_number, self.system.invariants_number
    x = as_vector(x, N, "x")
    eq = np.arange(N) if equations is None else np.unique(np.asarray(equations, dtype=int))
    inv = np.arange(M) if invariants is None else np.unique(np.asarray(invariants, dtype=int))
    if M == 0 or inv.size == 0 or eq.size == 0:
      return ProjectionResult(x, True, 0, 0.0)

    n, m = eq.size, inv.size
    x_k = x.copy()
    residual = max_norm(as_vector(self.system.h(x_k, t), M, "h")[inv])
    for iteration in range(self.max_projection_iterations + 1):
      if residual < self.projection_tolerance:
        return ProjectionResult(x_k, True, iteration, residual)
      if iteration == self.max_projection_iterations:
        break
      h_k = as_vector(self.system.h(x_k, t), M, "h")[inv]
      Jh = as_matrix(self.system.Jh_x(x_k, t), (M, N), "Jh_x")[np.ix_(inv, eq)]

      # Closest point to x on the linearized manifold: [[I, Jh^T], [Jh, 0]] [dx; lambda] = [x - x_k; -h]
      kkt = np.zeros((n + m, n + m))
      kkt[:n, :n] = np.eye(n)
      kkt[:n, n:] = Jh.T
      kkt[n:, :n] = Jh
      rhs = np.concatenate([x[eq] - x_k[eq], -h_k])
      try:
        dx = lu_solve(lu_factor_checked(kkt), rhs)[:n]
      except SingularJacobianError:
        break
      x_k[eq] += dx
      if not np.all(np.isfinite(x_k)):
        break
      residual = max_norm(as_vector(self.system.h(x_k, t), M, "h")[inv])

    return ProjectionResult(x, False, iteration, residual)

  def project(self, x, t):
    """
    Projects x onto the invariant manifold h(x, t) = 0 (closest point in the Euclidean norm).

    Returns:
      ProjectionResult: Projected state, or the unchanged state with converged False on failure.
    """
    return self._project(x, t)

  def project_ics(self, x, t, projected_equations=None, projected_invariants=None):
    """
    Projects initial conditions onto a subset of the invariants, changing only selected states.

    Args:
      x (array_like): Initial state.
      t (float): Initial time.
      projected_equations (sequence of int): Indices of the states that may change. All if None.
      projected_invariants (sequence of int): Indices of the invariants to satisfy. All if None.

    Returns:
      ProjectionResult: Projected state, or the unchanged state with converged False on failure.
    """
    return self._project(x, t, projected_equations, projected_invariants)

  ## convergence study

  def estimate_order(self, t_meshes, x0, exact_solution):
    """
    Estimates the order of convergence from integrations on several meshes.

    Each mesh is integrated with fixed steps, the maximum error against exact_solution over the mesh
    points is computed, and the slope of log(error) over log(h) is fitted by least squares.

    Args:
      t_meshes (sequence of array_like): At least two meshes.
      x0 (array_like): Initial state at the first time of every mesh.
      exact_solution (callable): Exact solution x(t).

    Returns:
      float: Estimated order.
    """
    if len(t_meshes) < 2:
      raise ValueError("At least two meshes are required to estimate the order.")
    steps, errors = [], []
    with self.temporary_settings(enable_adaptive_mode=False):
      for t_mesh in t_meshes:
        solution = self.solve_on_mesh(t_mesh, x0)
        error = max(max_norm(solution.x[k] - as_vector(exact_solution(solution.t[k]))) for k in range(len(solution)))
        steps.append(np.max(np.abs(np.diff(as_vector(t_mesh)))))
        errors.append(error)
        if self.verbose >= 1:
          print(f"{self.tableau.name}: h = {steps[-1]:.3e}, error = {error:.3e}")
    errors = np.maximum(np.asarray(errors), np.finfo(float).tiny)
    return float(np.polyfit(np.log(steps), np.log(errors), 1)[0])

  ## information

  def info(self):
    """Returns a human readable summary of the integrator."""
    lines = [f"Runge-Kutta integrator '{self.tableau.name}' ({self.tableau.rk_type.value}, order "
             f"{self.tableau.order}{', embedded order ' + str(self.tableau.order_hat) if self.tableau.is_embedded else ''})",
             f"  system: {self._system!r}" if self._system is not None else "  system: none"]
    for name, value in self._settings.items():
      lines.append(f"  {name}: {value}")
    return "\n".join(lines)

  def __repr__(self):
    return f"RungeKutta(tableau={self.tableau.name!r}, system={self._system!r})"
