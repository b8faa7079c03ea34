# tableau.py
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

"""Butcher tableaus: validation, classification and order conditions."""

from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from butcherx.exceptions import MalformedTableauError


## classification

class RKType(Enum):
  """Stage coupling pattern of a Runge-Kutta method."""
  ERK = 'explicit'
  DIRK = 'diagonally implicit'
  IRK = 'implicit'


def classify(A):
  """
  Determines the Runge-Kutta type from the zero pattern of A.

  Args:
    A (ndarray): Butcher matrix of stage coefficients (s x s).

  Returns:
    RKType: ERK if A is strictly lower triangular, DIRK if it is lower triangular with
    a nonzero diagonal entry and IRK otherwise.
  """
  A = np.asarray(A)
  if np.all(np.triu(A) == 0):
    return RKType.ERK
  if np.all(np.triu(A, k=1) == 0):
    return RKType.DIRK
  return RKType.IRK


## order conditions

ORDER_TOLERANCE = np.finfo(np.float64).eps**(2.0 / 3.0)


def _order_conditions(A, b, c):
  # Tree conditions of Butcher (2008), grouped by order
  Ac = A @ c
  c2, c3, c4 = c**2, c**3, c**4
  return {
      1: ((np.sum(b), 1.0),),
      2: ((b @ c, 1.0 / 2.0),),
      3: ((b @ c2, 1.0 / 3.0), (b @ Ac, 1.0 / 6.0)),
      4: ((b @ c3, 1.0 / 4.0), (b @ (c * Ac), 1.0 / 8.0), (b @ (A @ c2), 1.0 / 12.0), (b @ (A @ Ac), 1.0 / 24.0)),
      5: ((b @ c4, 1.0 / 5.0), (b @ (c2 * Ac), 1.0 / 10.0), (b @ (c * (A @ c2)), 1.0 / 15.0),
          (b @ (c * (A @ Ac)), 1.0 / 30.0), (b @ (Ac * Ac), 1.0 / 20.0), (b @ (A @ c3), 1.0 / 20.0),
          (b @ (A @ (c * Ac)), 1.0 / 40.0), (b @ (A @ (A @ c2)), 1.0 / 60.0), (b @ (A @ (A @ Ac)), 1.0 / 120.0)),
  }


def compute_order(A, b, c, verbose=0, name='tableau'):
  """
  Computes the highest order (up to 5) whose order conditions are satisfied by (A, b, c).

  Args:
    A (ndarray): Butcher matrix (s x s).
    b (ndarray): Weights (s).
    c (ndarray): Nodes (s).
    verbose (int): If >= 1, the first violated condition is printed.
    name (str): Name used in the printed messages.

  Returns:
    int: Order of the method, 0 if the row sum precheck fails. Orders above 5 are reported as 5.
  """
  A = np.asarray(A, dtype=np.float64)
  b = np.asarray(b, dtype=np.float64)
  c = np.asarray(c, dtype=np.float64)

  precheck = np.max(np.abs(A.sum(axis=1) - c))
  if precheck > ORDER_TOLERANCE:
    if verbose >= 1:
      print(f"{name}: precheck failed, ||A*1 - c|| = {precheck}.")
    return 0

  order = 0
  for p, conditions in _order_conditions(A, b, c).items():
    for number, (value, target) in enumerate(conditions, start=1):
      if abs(value - target) > ORDER_TOLERANCE:
        if verbose >= 1:
          print(f"{name}: order {p} condition {number} failed, {value} != {target}.")
        return order
    order = p
  return order


## tableau

def _readonly(array):
  array = np.array(array, dtype=np.float64)
  array.setflags(write=False)
  return array


@dataclass(frozen=True, eq=False)
class Tableau:
  """
  Immutable Butcher tableau of a Runge-Kutta method.

  Args:
    name (str): Name of the method.
    A (array_like): Stage coefficients (s x s).
    b (array_like): Weights of the step update (s).
    c (array_like): Stage nodes (s).
    order (int): Order of the update with weights b.
    b_hat (array_like): Embedded weights (s) or None.
    order_hat (int): Order of the embedded update, -1 if not embedded.

  Raises:
    MalformedTableauError: If shapes do not match, entries are not finite, the row sums of A
      differ from c or the weights do not sum up to one.
  """
  name: str
  A: np.ndarray
  b: np.ndarray
  c: np.ndarray
  order: int
  b_hat: np.ndarray = None
  order_hat: int = -1
  rk_type: RKType = field(init=False)
  tolerance: float = field(default=1e-12, repr=False)

  def __post_init__(self):
    A = _readonly(self.A)
    b = _readonly(self.b).reshape(-1)
    c = _readonly(self.c).reshape(-1)
    b_hat = None if self.b_hat is None else _readonly(self.b_hat).reshape(-1)

    if A.ndim != 2 or A.shape[0] != A.shape[1] or A.shape[0] < 1:
      raise MalformedTableauError(f"{self.name}: A must be a non-empty square matrix, got shape {A.shape}.")
    s = A.shape[0]
    if b.shape[0] != s or c.shape[0] != s:
      raise MalformedTableauError(f"{self.name}: b and c must have {s} entries, got {b.shape[0]} and {c.shape[0]}.")
    if b_hat is not None and b_hat.shape[0] != s:
      raise MalformedTableauError(f"{self.name}: b_hat must have {s} entries, got {b_hat.shape[0]}.")
    for label, array in (('A', A), ('b', b), ('c', c), ('b_hat', b_hat)):
      if array is not None and not np.all(np.isfinite(array)):
        raise MalformedTableauError(f"{self.name}: {label} contains non-finite entries.")

    row_sums = A.sum(axis=1)
    if np.max(np.abs(row_sums - c)) > self.tolerance * max(1.0, np.max(np.abs(c))):
      raise MalformedTableauError(f"{self.name}: consistency violated, sum(A[i,:]) = {row_sums} != c = {c}.")
    if abs(b.sum() - 1.0) > self.tolerance:
      raise MalformedTableauError(f"{self.name}: weights b sum up to {b.sum()} instead of 1.")
    if b_hat is not None and abs(b_hat.sum() - 1.0) > self.tolerance:
      raise MalformedTableauError(f"{self.name}: embedded weights b_hat sum up to {b_hat.sum()} instead of 1.")
    if int(self.order) < 1:
      raise MalformedTableauError(f"{self.name}: order must be positive, got {self.order}.")
    if b_hat is not None and int(self.order_hat) < 1:
      raise MalformedTableauError(f"{self.name}: embedded pair requires a positive order_hat.")

    object.__setattr__(self, 'A', A)
    object.__setattr__(self, 'b', b)
    object.__setattr__(self, 'c', c)
    object.__setattr__(self, 'b_hat', b_hat)
    object.__setattr__(self, 'order', int(self.order))
    object.__setattr__(self, 'order_hat', int(self.order_hat) if b_hat is not None else -1)
    object.__setattr__(self, 'rk_type', classify(A))

  @property
  def stages(self):
    return self.A.shape[0]

  @property
  def is_embedded(self):
    return self.b_hat is not None

  @property
  def is_explicit(self):
    return self.rk_type is RKType.ERK

  @property
  def is_diagonally_implicit(self):
    return self.rk_type is RKType.DIRK

  @property
  def is_implicit(self):
    return self.rk_type is RKType.IRK

  @property
  def error_weights(self):
    """Weights b - b_hat of the local error estimate, None if not embedded."""
    if self.b_hat is None:
      return None
    return self.b - self.b_hat

  def check(self, verbose=0):
    """
    Verifies the declared orders against the order conditions.

    Declared orders above 5 only require the conditions up to order 5.

    Args:
      verbose (int): If >= 1, mismatches are printed.

    Returns:
      bool: True if the declared order (and embedded order) is confirmed.
    """
    ok = True
    computed = compute_order(self.A, self.b, self.c, verbose, self.name)
    if computed != min(self.order, 5):
      if verbose >= 1:
        print(f"{self.name}: order check failed, {computed} != {self.order}.")
      ok = False
    if self.is_embedded:
      computed_hat = compute_order(self.A, self.b_hat, self.c, verbose, self.name + " (embedded)")
      if computed_hat != min(self.order_hat, 5):
        if verbose >= 1:
          print(f"{self.name}: embedded order check failed, {computed_hat} != {self.order_hat}.")
        ok = False
    return ok

  def info(self):
    """Returns a human readable summary of the tableau."""
    with np.printoptions(precision=6, suppress=True, linewidth=120):
      lines = [
          f"Butcher tableau '{self.name}'",
          f"  type: {self.rk_type.value}, stages: {self.stages}, order: {self.order}"
          + (f", embedded order: {self.order_hat}" if self.is_embedded else ""),
          f"  A =\n{self.A}",
          f"  b = {self.b}",
          f"  c = {self.c}",
      ]
      if self.is_embedded:
        lines.append(f"  b_hat = {self.b_hat}")
    return "\n".join(lines)

  def __repr__(self):
    return f"Tableau(name={self.name!r}, type={self.rk_type.name}, stages={self.stages}, order={self.order})"
