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

import numpy as np
import pytest

from butcherx.solution import Solution


def test_append_grows_buffer():
  solution = Solution(2, invariants_number=1, capacity=2)
  assert solution.is_empty()
  for k in range(5):
    solution.append(0.1 * k, [k, -k], h=0.1 if k > 0 else 0.0, invariants=[1e-3 * k])

  assert len(solution) == 5 and solution.size() == 5
  assert solution.x.shape == (5, 2)
  assert np.allclose(solution.t, 0.1 * np.arange(5))
  assert np.allclose(solution.state(1), -np.arange(5))
  assert np.allclose(solution.invariant(0), 1e-3 * np.arange(5))
  assert solution.h[0] == 0.0
  assert np.isclose(solution.t_final, 0.4)
  assert np.allclose(solution.x_final, [4.0, -4.0])


def test_wrong_state_size():
  solution = Solution(2)
  with pytest.raises(ValueError):
    solution.append(0.0, [1.0, 2.0, 3.0])


def test_resize_and_clear():
  solution = Solution(1)
  for k in range(4):
    solution.append(float(k), [float(k)])
  solution.num_accepted = 3

  solution.conservative_resize(2)
  assert np.allclose(solution.t, [0.0, 1.0])
  solution.conservative_resize(3)
  assert np.allclose(solution.x[:, 0], [0.0, 1.0, 0.0])

  solution.resize(2)
  assert len(solution) == 2
  assert np.allclose(solution.x, 0.0)

  solution.clear()
  assert solution.is_empty()
  assert solution.num_accepted == 0
  with pytest.raises(IndexError):
    solution.t_final
  with pytest.raises(IndexError):
    solution.x_final


def test_named_states():
  solution = Solution(2, names=('position', 'velocity'))
  solution.append(0.0, [1.0, 0.0])
  solution.append(0.5, [0.9, -0.4], h=0.5)
  assert np.allclose(solution.state('velocity'), [0.0, -0.4])
  with pytest.raises(KeyError):
    solution.state('acceleration')

  data = solution.as_dict()
  assert set(data) == {'t', 'h', 'position', 'velocity'}
  assert np.allclose(data['h'], [0.0, 0.5])
  assert "size=2" in repr(solution)

  with pytest.raises(ValueError):
    Solution(2, names=('position',))
