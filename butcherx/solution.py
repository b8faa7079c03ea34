# solution.py
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

"""Trajectory container filled by the Runge-Kutta engine."""

import numpy as np

from butcherx.utility import as_vector


class Solution:
  """
  Accepted steps of an integration, stored time-first.

  Entry k holds the time t[k], the states x[k] (N), the step h[k] that produced it (0 for the initial
  point) and the invariants invariants[k] (M). Entries are appended in order; the buffer grows
  geometrically.

  Args:
    equations_number (int): Number of states N.
    invariants_number (int): Number of invariants M.
    capacity (int): Number of entries to preallocate.
    names (sequence of str): Optional state names used by `state` and `as_dict`.
  """

  def __init__(self, equations_number, invariants_number=0, capacity=16, names=None):
    self.equations_number = int(equations_number)
    self.invariants_number = int(invariants_number)
    if names is not None and len(names) != self.equations_number:
      raise ValueError(f"Expected {self.equations_number} state names, got {len(names)}.")
    self.names = tuple(names) if names is not None else None
    self._size = 0
    self._allocate(max(int(capacity), 1))
    self.num_accepted = 0
    self.num_rejected = 0
    self.num_projection_failures = 0

  def _allocate(self, capacity, keep=0):
    t = np.zeros(capacity)
    x = np.zeros((capacity, self.equations_number))
    h = np.zeros(capacity)
    inv = np.zeros((capacity, self.invariants_number))
    if keep > 0:
      t[:keep] = self._t[:keep]
      x[:keep] = self._x[:keep]
      h[:keep] = self._h[:keep]
      inv[:keep] = self._invariants[:keep]
    self._t, self._x, self._h, self._invariants = t, x, h, inv

  ## views on the filled part

  @property
  def t(self):
    return self._t[:self._size]

  @property
  def x(self):
    return self._x[:self._size]

  @property
  def h(self):
    return self._h[:self._size]

  @property
  def invariants(self):
    return self._invariants[:self._size]

  @property
  def t_final(self):
    if self.is_empty():
      raise IndexError("Solution is empty.")
    return float(self._t[self._size - 1])

  @property
  def x_final(self):
    if self.is_empty():
      raise IndexError("Solution is empty.")
    return self._x[self._size - 1].copy()

  ## modification

  def append(self, t, x, h=0.0, invariants=None):
    """Appends one entry, growing the buffer if needed."""
    if self._size == self._t.shape[0]:
      self._allocate(2 * self._t.shape[0], keep=self._size)
    k = self._size
    self._t[k] = t
    self._x[k] = as_vector(x, self.equations_number, "x")
    self._h[k] = h
    if self.invariants_number > 0:
      inv = np.zeros(self.invariants_number) if invariants is None else invariants
      self._invariants[k] = as_vector(inv, self.invariants_number, "invariants")
    self._size += 1

  def resize(self, size):
    """Discards all entries and provides size zero-initialized entries."""
    self._allocate(max(int(size), 1))
    self._size = int(size)

  def conservative_resize(self, size):
    """Changes the number of entries, keeping the first min(size, len(self)) of them."""
    size = int(size)
    keep = min(size, self._size)
    self._allocate(max(size, 1), keep=keep)
    self._size = size

  def clear(self):
    """Removes all entries and resets the statistics."""
    self._size = 0
    self.num_accepted = 0
    self.num_rejected = 0
    self.num_projection_failures = 0

  def is_empty(self):
    return self._size == 0

  def size(self):
    return self._size

  def __len__(self):
    return self._size

  ## accessors

  def _index(self, state):
    if isinstance(state, str):
      if self.names is None or state not in self.names:
        raise KeyError(f"Unknown state name {state!r}.")
      return self.names.index(state)
    return int(state)

  def state(self, state):
    """Time history of one state, given by index or name."""
    return self.x[:, self._index(state)]

  def invariant(self, index):
    """Time history of one invariant."""
    return self.invariants[:, int(index)]

  def as_dict(self):
    """Dictionary with 't', 'h' and one entry per state (by name if names were given)."""
    keys = self.names if self.names is not None else tuple(f"x{i}" for i in range(self.equations_number))
    data = {'t': self.t.copy(), 'h': self.h.copy()}
    for i, key in enumerate(keys):
      data[key] = self.x[:, i].copy()
    for j in range(self.invariants_number):
      data[f"h{j}"] = self.invariants[:, j].copy()
    return data

  def __repr__(self):
    return (f"Solution(size={self._size}, N={self.equations_number}, M={self.invariants_number}, "
            f"accepted={self.num_accepted}, rejected={self.num_rejected})")
