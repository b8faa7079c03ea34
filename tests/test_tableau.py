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

from butcherx import tableaus
from butcherx.exceptions import MalformedTableauError
from butcherx.tableau import RKType, Tableau, classify, compute_order


def test_classification():
  assert tableaus.rk4().rk_type is RKType.ERK
  assert tableaus.implicit_euler().rk_type is RKType.DIRK
  assert tableaus.crouzeix(3).rk_type is RKType.DIRK
  assert tableaus.kvaerno(5).rk_type is RKType.DIRK
  assert tableaus.gauss_legendre(2).rk_type is RKType.IRK
  assert tableaus.radau_iia5().rk_type is RKType.IRK
  assert classify(np.zeros((3, 3))) is RKType.ERK
  assert classify([[0.0, 0.0], [0.5, 0.5]]) is RKType.DIRK


def test_malformed_tableaus():
  with pytest.raises(MalformedTableauError):
    Tableau("nonsquare", A=[[0.0, 0.0]], b=[1.0], c=[0.0], order=1)
  with pytest.raises(MalformedTableauError):
    Tableau("short b", A=[[0.0, 0.0], [1.0, 0.0]], b=[1.0], c=[0.0, 1.0], order=1)
  with pytest.raises(MalformedTableauError):
    Tableau("row sums", A=[[0.0, 0.0], [1.0, 0.0]], b=[0.5, 0.5], c=[0.0, 0.5], order=2)
  with pytest.raises(MalformedTableauError):
    Tableau("weights", A=[[0.0]], b=[0.9], c=[0.0], order=1)
  with pytest.raises(MalformedTableauError):
    Tableau("nan", A=[[np.nan]], b=[1.0], c=[0.0], order=1)
  with pytest.raises(MalformedTableauError):
    Tableau("order", A=[[0.0]], b=[1.0], c=[0.0], order=0)
  with pytest.raises(MalformedTableauError):
    Tableau("embedded", A=[[0.0, 0.0], [1.0, 0.0]], b=[0.5, 0.5], c=[0.0, 1.0], order=2, b_hat=[1.0, 0.0])

  # Also a ValueError for callers that do not know the package exceptions
  with pytest.raises(ValueError):
    Tableau("empty", A=np.zeros((0, 0)), b=[], c=[], order=1)


def test_tableau_is_immutable():
  tableau = tableaus.rk4()
  with pytest.raises(ValueError):
    tableau.A[1, 0] = 1.0
  with pytest.raises(AttributeError):
    tableau.order = 5


ALL_TABLEAUS = [tableaus.get_tableau(name) for name in tableaus.available_tableaus()]
ALL_TABLEAUS += [tableaus.explicit_runge_kutta(6), tableaus.explicit_runge_kutta(7)]


@pytest.mark.parametrize("tableau", ALL_TABLEAUS, ids=lambda tableau: tableau.name)
def test_declared_orders(tableau):
  assert tableau.check(verbose=1), f"Order check failed for {tableau.name}"


def test_compute_order():
  rk4 = tableaus.rk4()
  assert compute_order(rk4.A, rk4.b, rk4.c) == 4
  dp = tableaus.dormand_prince54()
  assert compute_order(dp.A, dp.b, dp.c) == 5
  assert compute_order(dp.A, dp.b_hat, dp.c) == 4

  # Inconsistent nodes fail the precheck
  assert compute_order(rk4.A, rk4.b, rk4.c + 0.1) == 0

  # Wrong declared order is detected
  wrong = Tableau("wrong", A=rk4.A, b=rk4.b, c=rk4.c, order=3)
  assert not wrong.check()


def test_embedded_properties():
  dp = tableaus.dormand_prince54()
  assert dp.is_embedded and dp.is_explicit
  assert dp.stages == 7
  assert dp.order == 5 and dp.order_hat == 4
  assert np.isclose(dp.error_weights.sum(), 0.0)
  assert tableaus.rk4().error_weights is None
  assert tableaus.rk4().order_hat == -1
  assert "DormandPrince54" in dp.info()


def test_catalog():
  names = tableaus.available_tableaus()
  assert 'RK4' in names and 'RadauIIA5' in names
  for name in names:
    assert tableaus.get_tableau(name).name == name
  with pytest.raises(ValueError):
    tableaus.get_tableau('NoSuchMethod')
  with pytest.raises(ValueError):
    tableaus.explicit_runge_kutta(5)
