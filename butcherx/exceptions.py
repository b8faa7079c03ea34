# exceptions.py
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

"""Exceptions raised by tableaus, nonlinear solvers and the Runge-Kutta engine."""


class ButcherXError(Exception):
  """Base exception for all butcherx errors.

  Args:
    message (str): The error message.
  """

  def __init__(self, message):
    super().__init__(message)


class MalformedTableauError(ButcherXError, ValueError):
  """Raised when Butcher coefficients are inconsistent (shapes, row sums, weights)."""


class DomainError(ButcherXError):
  """Raised when the state leaves the domain of the system.

  Not retried by step size reduction, since it signals a modeling error.

  Args:
    message (str): The error message.
    x: State that failed the domain check.
    t (float): Time of the failed check.
  """

  def __init__(self, message, x=None, t=None):
    super().__init__(message)
    self.x = x
    self.t = t


class StepSizeUnderflowError(ButcherXError):
  """Raised when a step could not be completed within the substep budget or above the minimum step.

  Args:
    message (str): The error message.
    x: State at the start of the last attempted step.
    t (float): Time at the start of the last attempted step.
    h (float): Last attempted step size.
  """

  def __init__(self, message, x=None, t=None, h=None):
    super().__init__(message)
    self.x = x
    self.t = t
    self.h = h


## nonlinear solver errors

class NonlinearSolverError(ButcherXError):
  """Base exception for failures of the nonlinear solvers.

  Args:
    message (str): The error message.
    iterate: Last iterate of the solver, if available.
    iterations (int): Number of iterations performed before failing.
  """

  def __init__(self, message, iterate=None, iterations=0):
    super().__init__(message)
    self.iterate = iterate
    self.iterations = iterations


class SingularJacobianError(NonlinearSolverError):
  """Raised when the (stage) Jacobian can not be factorized."""


class MaxIterationsExceeded(NonlinearSolverError):
  """Raised when the iteration budget is exhausted."""


class MaxFunctionEvaluationsExceeded(NonlinearSolverError):
  """Raised when the residual evaluation budget is exhausted."""


class MaxJacobianEvaluationsExceeded(NonlinearSolverError):
  """Raised when the Jacobian evaluation budget is exhausted."""


class DivergenceError(NonlinearSolverError):
  """Raised when the residual becomes NaN or Inf."""


class JacobianDegradedError(NonlinearSolverError):
  """Raised by quasi-Newton solvers when the approximate Jacobian no longer yields descent.

  The solver does not re-evaluate the Jacobian itself; callers may restart from `iterate`.
  """
