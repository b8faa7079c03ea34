# systems.py
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
Dynamical systems consumed by the Runge-Kutta engine.

Every system is written in implicit form F(x, x_dot, t) = 0 and carries a type tag that the engine
uses to select the stage solving strategy:

- `ImplicitSystem`: general F(x, x_dot, t) = 0
- `ExplicitSystem`: x_dot = f(x, t)
- `SemiExplicitSystem`: A(x, t) x_dot = b(x, t)
- `LinearSystem`: E(t) x_dot = A(t) x + b(t)

Jacobians that are not implemented by a subclass are obtained with jax.jacfwd of the corresponding
function, which therefore has to be written with jax.numpy. Optional invariants h(x, t) = 0 are used
for the projection onto the invariant manifold.
"""

from abc import ABC, abstractmethod
from enum import Enum

import numpy as np

from butcherx.exceptions import SingularJacobianError
from butcherx.utility import jit_jacfwd, lu_factor_checked, lu_solve


class SystemType(Enum):
  """Structural form of a system, fixed at construction."""
  IMPLICIT = 'implicit'
  EXPLICIT = 'explicit'
  SEMIEXPLICIT = 'semi-explicit'
  LINEAR = 'linear'


## implicit systems

class ImplicitSystem(ABC):
  """
  Implicit system F(x, x_dot, t) = 0 with optional invariants h(x, t) = 0.

  Subclasses implement `F` and may implement `JF_x`, `JF_x_dot`, `h`, `Jh_x` and `in_domain`.

  Args:
    equations_number (int): Number of states N.
    invariants_number (int): Number of invariants M.
    name (str): Name of the system.
  """
  system_type = SystemType.IMPLICIT

  def __init__(self, equations_number, invariants_number=0, name=None):
    if equations_number < 1:
      raise ValueError("equations_number has to be positive.")
    if invariants_number < 0:
      raise ValueError("invariants_number must not be negative.")
    self.equations_number = int(equations_number)
    self.invariants_number = int(invariants_number)
    self.name = name if name is not None else type(self).__name__
    self._autodiff = {}

  def _autodiff_jacobian(self, key, fun, argnums=0):
    # Compiled once per instance and function
    if key not in self._autodiff:
      self._autodiff[key] = jit_jacfwd(fun, argnums)
    return self._autodiff[key]

  @property
  def is_explicit(self):
    return self.system_type in (SystemType.EXPLICIT, SystemType.SEMIEXPLICIT)

  @property
  def is_implicit(self):
    return not self.is_explicit

  @property
  def is_semiexplicit(self):
    return self.system_type is SystemType.SEMIEXPLICIT

  @property
  def is_linear(self):
    return self.system_type is SystemType.LINEAR

  @abstractmethod
  def F(self, x, x_dot, t):
    """Residual F(x, x_dot, t) of size N."""

  def JF_x(self, x, x_dot, t):
    """Jacobian of F with respect to x (N x N)."""
    return self._autodiff_jacobian('JF_x', self.F, 0)(x, x_dot, t)

  def JF_x_dot(self, x, x_dot, t):
    """Jacobian of F with respect to x_dot (N x N)."""
    return self._autodiff_jacobian('JF_x_dot', self.F, 1)(x, x_dot, t)

  def h(self, x, t):
    """Invariants h(x, t) of size M. No invariants by default."""
    return np.zeros(self.invariants_number)

  def Jh_x(self, x, t):
    """Jacobian of the invariants with respect to x (M x N)."""
    if self.invariants_number == 0:
      return np.zeros((0, self.equations_number))
    return self._autodiff_jacobian('Jh_x', self.h, 0)(x, t)

  def in_domain(self, x, t):
    """True if (x, t) lies in the domain of the system."""
    return True

  ## time reversed system, tau = -t

  def F_reverse(self, x, x_dot, t):
    return -np.asarray(self.F(x, -x_dot, -t), dtype=np.float64)

  def JF_x_reverse(self, x, x_dot, t):
    return -np.asarray(self.JF_x(x, -x_dot, -t), dtype=np.float64)

  def JF_x_dot_reverse(self, x, x_dot, t):
    return np.asarray(self.JF_x_dot(x, -x_dot, -t), dtype=np.float64)

  def __repr__(self):
    return (f"{type(self).__name__}(name={self.name!r}, type={self.system_type.value}, "
            f"N={self.equations_number}, M={self.invariants_number})")


class LinearSystem(ImplicitSystem):
  """
  Linear system E(t) x_dot = A(t) x + b(t).

  Subclasses implement `E`, `A` and `b`.
  """
  system_type = SystemType.LINEAR

  @abstractmethod
  def E(self, t):
    """Mass matrix (N x N)."""

  @abstractmethod
  def A(self, t):
    """System matrix (N x N)."""

  @abstractmethod
  def b(self, t):
    """Source vector (N)."""

  def F(self, x, x_dot, t):
    return self.E(t) @ x_dot - self.A(t) @ x - self.b(t)

  def JF_x(self, x, x_dot, t):
    return -np.asarray(self.A(t), dtype=np.float64)

  def JF_x_dot(self, x, x_dot, t):
    return np.asarray(self.E(t), dtype=np.float64)


## explicit systems

class ExplicitSystem(ImplicitSystem):
  """
  Explicit system x_dot = f(x, t), i.e. F = x_dot - f(x, t).

  Subclasses implement `f` and may implement `Jf_x`.
  """
  system_type = SystemType.EXPLICIT

  @abstractmethod
  def f(self, x, t):
    """Right-hand side f(x, t) of size N."""

  def Jf_x(self, x, t):
    """Jacobian of f with respect to x (N x N)."""
    return self._autodiff_jacobian('Jf_x', self.f, 0)(x, t)

  def F(self, x, x_dot, t):
    return x_dot - self.f(x, t)

  def JF_x(self, x, x_dot, t):
    return -np.asarray(self.Jf_x(x, t), dtype=np.float64)

  def JF_x_dot(self, x, x_dot, t):
    return np.eye(self.equations_number)

  def f_reverse(self, x, t):
    return -np.asarray(self.f(x, -t), dtype=np.float64)

  def Jf_x_reverse(self, x, t):
    return -np.asarray(self.Jf_x(x, -t), dtype=np.float64)


class SemiExplicitSystem(ExplicitSystem):
  """
  Semi-explicit system A(x, t) x_dot = b(x, t), solved for x_dot = A(x, t)^-1 b(x, t).

  Subclasses implement `A` and `b` and may implement `TA_x` and `Jb_x`.
  """
  system_type = SystemType.SEMIEXPLICIT

  @abstractmethod
  def A(self, x, t):
    """Mass matrix (N x N)."""

  @abstractmethod
  def b(self, x, t):
    """Right-hand side (N)."""

  def TA_x(self, x, t):
    """Derivative of the mass matrix, TA_x[i] = dA/dx_i (N x N x N)."""
    jac = self._autodiff_jacobian('TA_x', self.A, 0)(x, t)
    return np.moveaxis(jac, -1, 0)

  def Jb_x(self, x, t):
    """Jacobian of b with respect to x (N x N)."""
    return self._autodiff_jacobian('Jb_x', self.b, 0)(x, t)

  def _mass_factors(self, x, t):
    try:
      return lu_factor_checked(np.asarray(self.A(x, t), dtype=np.float64))
    except SingularJacobianError as err:
      raise SingularJacobianError(f"{self.name}: singular mass matrix A detected at t = {t}.") from err

  def _TA_x_times(self, x, t, v):
    # (TA_x v)[:, i] = dA/dx_i @ v
    return np.einsum('ijk,k->ji', np.asarray(self.TA_x(x, t), dtype=np.float64), v)

  def F(self, x, x_dot, t):
    return self.A(x, t) @ x_dot - self.b(x, t)

  def JF_x(self, x, x_dot, t):
    x_dot = np.asarray(x_dot, dtype=np.float64)
    return self._TA_x_times(x, t, x_dot) - np.asarray(self.Jb_x(x, t), dtype=np.float64)

  def JF_x_dot(self, x, x_dot, t):
    return np.asarray(self.A(x, t), dtype=np.float64)

  def f(self, x, t):
    return lu_solve(self._mass_factors(x, t), np.asarray(self.b(x, t), dtype=np.float64))

  def Jf_x(self, x, t):
    factors = self._mass_factors(x, t)
    x_dot = lu_solve(factors, np.asarray(self.b(x, t), dtype=np.float64))
    return lu_solve(factors, np.asarray(self.Jb_x(x, t), dtype=np.float64) - self._TA_x_times(x, t, x_dot))


## wrappers around plain functions

class _WrapperMixin:

  def _set_invariants(self, h, Jh_x, in_domain):
    self._h = h
    self._Jh_x = Jh_x
    self._in_domain = in_domain
    if self.invariants_number > 0 and h is None:
      raise ValueError("An invariant function h is required if invariants_number > 0.")

  def h(self, x, t):
    if self._h is None:
      return np.zeros(self.invariants_number)
    return self._h(x, t)

  def Jh_x(self, x, t):
    if self._Jh_x is None:
      return super().Jh_x(x, t)
    return self._Jh_x(x, t)

  def in_domain(self, x, t):
    if self._in_domain is None:
      return True
    return bool(self._in_domain(x, t))


class ImplicitWrapper(_WrapperMixin, ImplicitSystem):
  """
  Implicit system built from functions.

  Args:
    equations_number (int): Number of states N.
    F (callable): F(x, x_dot, t).
    JF_x (callable): Jacobian with respect to x. Automatic differentiation of F if None.
    JF_x_dot (callable): Jacobian with respect to x_dot. Automatic differentiation of F if None.
    invariants_number (int): Number of invariants M.
    h (callable): Invariants h(x, t), required if M > 0.
    Jh_x (callable): Jacobian of the invariants. Automatic differentiation of h if None.
    in_domain (callable): Domain predicate in_domain(x, t). Always True if None.
    name (str): Name of the system.
  """

  def __init__(self, equations_number, F, JF_x=None, JF_x_dot=None, invariants_number=0, h=None, Jh_x=None,
               in_domain=None, name='ImplicitWrapper'):
    super().__init__(equations_number, invariants_number, name)
    self._F = F
    self._JF_x = JF_x
    self._JF_x_dot = JF_x_dot
    self._set_invariants(h, Jh_x, in_domain)

  def F(self, x, x_dot, t):
    return self._F(x, x_dot, t)

  def JF_x(self, x, x_dot, t):
    if self._JF_x is None:
      return super().JF_x(x, x_dot, t)
    return self._JF_x(x, x_dot, t)

  def JF_x_dot(self, x, x_dot, t):
    if self._JF_x_dot is None:
      return super().JF_x_dot(x, x_dot, t)
    return self._JF_x_dot(x, x_dot, t)


class ExplicitWrapper(_WrapperMixin, ExplicitSystem):
  """
  Explicit system x_dot = f(x, t) built from functions.

  Args:
    equations_number (int): Number of states N.
    f (callable): f(x, t).
    Jf_x (callable): Jacobian of f. Automatic differentiation of f if None.
    invariants_number (int): Number of invariants M.
    h (callable): Invariants h(x, t), required if M > 0.
    Jh_x (callable): Jacobian of the invariants. Automatic differentiation of h if None.
    in_domain (callable): Domain predicate in_domain(x, t). Always True if None.
    name (str): Name of the system.
  """

  def __init__(self, equations_number, f, Jf_x=None, invariants_number=0, h=None, Jh_x=None, in_domain=None,
               name='ExplicitWrapper'):
    super().__init__(equations_number, invariants_number, name)
    self._f = f
    self._Jf_x = Jf_x
    self._set_invariants(h, Jh_x, in_domain)

  def f(self, x, t):
    return self._f(x, t)

  def Jf_x(self, x, t):
    if self._Jf_x is None:
      return super().Jf_x(x, t)
    return self._Jf_x(x, t)
