# tableaus.py
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

"""Catalog of explicit, diagonally implicit and fully implicit Butcher tableaus."""

import numpy as np

from butcherx.tableau import Tableau


## explicit methods

def explicit_euler():
  return Tableau("ExplicitEuler", A=[[0.0]], b=[1.0], c=[0.0], order=1)


def heun2():
  return Tableau("Heun2", A=[[0.0, 0.0], [1.0, 0.0]], b=[1 / 2, 1 / 2], c=[0.0, 1.0], order=2)


def heun3():
  return Tableau("Heun3",
                 A=[[0, 0, 0], [1 / 3, 0, 0], [0, 2 / 3, 0]],
                 b=[1 / 4, 0, 3 / 4],
                 c=[0, 1 / 3, 2 / 3],
                 order=3)


def ralston2():
  return Tableau("Ralston2", A=[[0, 0], [2 / 3, 0]], b=[1 / 4, 3 / 4], c=[0, 2 / 3], order=2)


def ralston3():
  return Tableau("Ralston3",
                 A=[[0, 0, 0], [1 / 2, 0, 0], [0, 3 / 4, 0]],
                 b=[2 / 9, 1 / 3, 4 / 9],
                 c=[0, 1 / 2, 3 / 4],
                 order=3)


def ralston4():
  """Ralston's fourth order method with minimal truncation error bound."""
  s5 = np.sqrt(5.0)
  a21 = 2 / 5
  a31 = (357 / 256) * s5 - 2889 / 1024
  a32 = 3785 / 1024 - (405 / 256) * s5
  a41 = (1047 / 3020) * s5 - 673 / 1208
  a42 = -975 / 2552 - (1523 / 1276) * s5
  a43 = 93408 / 48169 + (203968 / 240845) * s5
  b = [263 / 1812 + (2 / 151) * s5,
       125 / 3828 - (250 / 957) * s5,
       3426304 / 5924787 + (553984 / 1974929) * s5,
       10 / 41 - (4 / 123) * s5]
  A = [[0, 0, 0, 0], [a21, 0, 0, 0], [a31, a32, 0, 0], [a41, a42, a43, 0]]
  return Tableau("Ralston4", A=A, b=b, c=np.sum(A, axis=1), order=4)


def rk4():
  return Tableau("RK4",
                 A=[[0, 0, 0, 0], [1 / 2, 0, 0, 0], [0, 1 / 2, 0, 0], [0, 0, 1, 0]],
                 b=[1 / 6, 1 / 3, 1 / 3, 1 / 6],
                 c=[0, 1 / 2, 1 / 2, 1],
                 order=4)


def ssprk22():
  """Strong stability preserving method, 2 stages, order 2."""
  return Tableau("SSPRK22", A=[[0, 0], [1, 0]], b=[1 / 2, 1 / 2], c=[0, 1], order=2)


def ssprk33():
  return Tableau("SSPRK33",
                 A=[[0, 0, 0], [1, 0, 0], [1 / 4, 1 / 4, 0]],
                 b=[1 / 6, 1 / 6, 2 / 3],
                 c=[0, 1, 1 / 2],
                 order=3)


def ssprk43():
  return Tableau("SSPRK43",
                 A=[[0, 0, 0, 0], [1 / 2, 0, 0, 0], [1 / 2, 1 / 2, 0, 0], [1 / 6, 1 / 6, 1 / 6, 0]],
                 b=[1 / 6, 1 / 6, 1 / 6, 1 / 2],
                 c=[0, 1 / 2, 1, 1 / 2],
                 order=3)


def ssprk104():
  """Ketcheson's ten stage strong stability preserving method of order 4."""
  A = np.zeros((10, 10))
  for i in range(1, 5):
    A[i, :i] = 1 / 6
  for i in range(5, 10):
    A[i, :5] = 1 / 15
    A[i, 5:i] = 1 / 6
  return Tableau("SSPRK104", A=A, b=np.full(10, 1 / 10), c=A.sum(axis=1), order=4)


def chebyshev51():
  """Five stage first order Runge-Kutta-Chebyshev method with extended stability interval."""
  return Tableau("Chebyshev51",
                 A=[[0, 0, 0, 0, 0],
                    [1 / 25, 0, 0, 0, 0],
                    [2 / 25, 2 / 25, 0, 0, 0],
                    [3 / 25, 4 / 25, 2 / 25, 0, 0],
                    [4 / 25, 6 / 25, 4 / 25, 2 / 25, 0]],
                 b=[1 / 5, 8 / 25, 6 / 25, 4 / 25, 2 / 25],
                 c=[0, 1 / 25, 4 / 25, 9 / 25, 16 / 25],
                 order=1)


def explicit_runge_kutta(num_stages):
  """Explicit Runge-Kutta method.

  Args:
    num_stages (int): Number of stages (1, 2, 3, 4, 6, 7).
  """
  match num_stages:  # From JC Butcher 2008: Numerical Methods for Ordinary Differential Equations, ISBN: 978-0-470-72335-7
    case 1:
      return explicit_euler()
    case 2:
      return heun2()
    case 3:  # Kutta's third-order method
      return Tableau("Kutta3",
                     A=[[0, 0, 0], [1 / 2, 0, 0], [-1, 2, 0]],
                     b=[1 / 6, 2 / 3, 1 / 6],
                     c=[0, 1 / 2, 1],
                     order=3)
    case 4:
      return rk4()
    case 6:
      return Tableau("Butcher6",
                     A=[[0, 0, 0, 0, 0, 0], [1 / 4, 0, 0, 0, 0, 0], [1 / 8, 1 / 8, 0, 0, 0, 0],
                        [0, 0, 1 / 2, 0, 0, 0], [3 / 16, -3 / 8, 3 / 8, 9 / 16, 0, 0],
                        [-3 / 7, 8 / 7, 6 / 7, -12 / 7, 8 / 7, 0]],
                     b=[7 / 90, 0, 16 / 45, 2 / 15, 16 / 45, 7 / 90],
                     c=[0, 1 / 4, 1 / 4, 1 / 2, 3 / 4, 1],
                     order=5)
    case 7:
      return Tableau("Butcher7",
                     A=[[0, 0, 0, 0, 0, 0, 0], [1 / 3, 0, 0, 0, 0, 0, 0], [0, 2 / 3, 0, 0, 0, 0, 0],
                        [1 / 12, 1 / 3, -1 / 12, 0, 0, 0, 0], [25 / 48, -55 / 24, 35 / 48, 15 / 8, 0, 0, 0],
                        [3 / 20, -11 / 24, -1 / 8, 1 / 2, 1 / 10, 0, 0],
                        [-261 / 260, 33 / 13, 43 / 156, -118 / 39, 32 / 195, 80 / 39, 0]],
                     b=[13 / 200, 0, 11 / 40, 11 / 40, 4 / 25, 4 / 25, 13 / 200],
                     c=[0, 1 / 3, 2 / 3, 1 / 3, 5 / 6, 1 / 6, 1],
                     order=6)
    case _:
      raise ValueError("num_stages not supported for explicit_runge_kutta. Supported: 1, 2, 3, 4, 6, 7")


## explicit embedded pairs

def fehlberg45():
  """Runge-Kutta-Fehlberg pair, fourth order update with fifth order embedded solution."""
  A = [[0, 0, 0, 0, 0, 0],
       [1 / 4, 0, 0, 0, 0, 0],
       [3 / 32, 9 / 32, 0, 0, 0, 0],
       [1932 / 2197, -7200 / 2197, 7296 / 2197, 0, 0, 0],
       [439 / 216, -8, 3680 / 513, -845 / 4104, 0, 0],
       [-8 / 27, 2, -3544 / 2565, 1859 / 4104, -11 / 40, 0]]
  return Tableau("Fehlberg45",
                 A=A,
                 b=[25 / 216, 0, 1408 / 2565, 2197 / 4104, -1 / 5, 0],
                 c=[0, 1 / 4, 3 / 8, 12 / 13, 1, 1 / 2],
                 order=4,
                 b_hat=[16 / 135, 0, 6656 / 12825, 28561 / 56430, -9 / 50, 2 / 55],
                 order_hat=5)


def dormand_prince54():
  """Dormand-Prince pair, fifth order update with fourth order embedded solution (first same as last)."""
  A = [[0, 0, 0, 0, 0, 0, 0], [1 / 5, 0, 0, 0, 0, 0, 0], [3 / 40, 9 / 40, 0, 0, 0, 0, 0],
       [44 / 45, -56 / 15, 32 / 9, 0, 0, 0, 0],
       [19372 / 6561, -25360 / 2187, 64448 / 6561, -212 / 729, 0, 0, 0],
       [9017 / 3168, -355 / 33, 46732 / 5247, 49 / 176, -5103 / 18656, 0, 0],
       [35 / 384, 0, 500 / 1113, 125 / 192, -2187 / 6784, 11 / 84, 0]]
  return Tableau("DormandPrince54",
                 A=A,
                 b=[35 / 384, 0, 500 / 1113, 125 / 192, -2187 / 6784, 11 / 84, 0],
                 c=[0, 1 / 5, 3 / 10, 4 / 5, 8 / 9, 1, 1],
                 order=5,
                 b_hat=[5179 / 57600, 0, 7571 / 16695, 393 / 640, -92097 / 339200, 187 / 2100, 1 / 40],
                 order_hat=4)


## diagonally implicit methods

def implicit_euler():
  return Tableau("ImplicitEuler", A=[[1.0]], b=[1.0], c=[1.0], order=1)


def implicit_midpoint():
  """Implicit midpoint rule (one stage Gauss-Legendre, symplectic)."""
  return Tableau("ImplicitMidpoint", A=[[1 / 2]], b=[1.0], c=[1 / 2], order=2)


def crouzeix(num_stages):
  """Crouzeix's diagonally implicit methods.

  Args:
    num_stages (int): Number of stages (2: third order, 3: fourth order).
  """
  match num_stages:  # From JC Butcher 2008: Numerical Methods for Ordinary Differential Equations, ISBN: 978-0-470-72335-7
    case 2:
      gamma = 1 / 2 + np.sqrt(3) / 6
      return Tableau("Crouzeix3",
                     A=[[gamma, 0], [-np.sqrt(3) / 3, gamma]],
                     b=[1 / 2, 1 / 2],
                     c=[gamma, 1 / 2 - np.sqrt(3) / 6],
                     order=3)
    case 3:
      alpha = 2 * np.cos(np.pi / 18) / np.sqrt(3)
      A = [[(1 + alpha) / 2, 0, 0], [-alpha / 2, (1 + alpha) / 2, 0], [1 + alpha, -(1 + 2 * alpha), (1 + alpha) / 2]]
      return Tableau("Crouzeix4",
                     A=A,
                     b=[1 / (6 * alpha**2), 1 - 1 / (3 * alpha**2), 1 / (6 * alpha**2)],
                     c=np.sum(A, axis=1),
                     order=4)
    case _:
      raise ValueError("num_stages not supported for crouzeix. Supported: 2, 3")


def sspirk33():
  """Strong stability preserving diagonally implicit method, 3 stages, order 3."""
  t2 = np.sqrt(2.0) / 4
  t4 = 1 / 2 - t2
  return Tableau("SSPIRK33",
                 A=[[t4, 0, 0], [t2, t4, 0], [t2, t2, t4]],
                 b=[1 / 3, 1 / 3, 1 / 3],
                 c=[t4, 1 / 2, 1 / 2 + t2],
                 order=3)


def lobatto_iiia2():
  """Trapezoidal rule written as two stage Lobatto IIIA method."""
  return Tableau("LobattoIIIA2", A=[[0, 0], [1 / 2, 1 / 2]], b=[1 / 2, 1 / 2], c=[0, 1], order=2)


def kvaerno(order):
  """Kvaerno method (explicit first stage diagonally implicit Runge-Kutta with embedded error estimation).

  Args:
    order (int): Order of the method (3, 5).
  """
  match order:  # Kvaerno (2004), BIT Numerical Mathematics 44, 489-502
    case 3:
      gamma = 0.43586652150
      a31 = (-4 * gamma**2 + 6 * gamma - 1) / (4 * gamma)
      a32 = (-2 * gamma + 1) / (4 * gamma)
      a41 = (6 * gamma - 1) / (12 * gamma)
      a42 = -1 / ((24 * gamma - 12) * gamma)
      a43 = (-6 * gamma**2 + 6 * gamma - 1) / (6 * gamma - 3)
      A = [[0, 0, 0, 0], [gamma, gamma, 0, 0], [a31, a32, gamma, 0], [a41, a42, a43, gamma]]
      return Tableau("Kvaerno3",
                     A=A,
                     b=[a41, a42, a43, gamma],
                     c=np.sum(A, axis=1),
                     order=3,
                     b_hat=[a31, a32, gamma, 0],
                     order_hat=2)
    case 5:
      gamma = 0.26
      A = [[0, 0, 0, 0, 0, 0, 0],
           [gamma, gamma, 0, 0, 0, 0, 0],
           [0.13, 0.84033320996790809, gamma, 0, 0, 0, 0],
           [0.22371961478320505, 0.47675532319799699, -0.06470895363112615, gamma, 0, 0, 0],
           [0.16648564323248321, 0.10450018841591720, 0.03631482272098715, -0.13090704451073998, gamma, 0, 0],
           [0.13855640231268224, 0, -0.04245337201752043, 0.02446657898003141, 0.61943039072480676, gamma, 0],
           [0.13659751177640291, 0, -0.05496908796538376, -0.04118626728321046, 0.62993304899016403,
            0.06962479448202728, gamma]]
      return Tableau("Kvaerno5",
                     A=A,
                     b=A[6],
                     c=np.sum(A, axis=1),
                     order=5,
                     b_hat=A[5],
                     order_hat=4)
    case _:
      raise ValueError("order not supported for kvaerno. Supported: 3, 5")


## fully implicit methods

def gauss_legendre(num_stages):
  """Gauss-Legendre Runge-Kutta method (fully implicit).

  Args:
    num_stages (int): Number of stages.

  Accuracy: 2 * num_stages.
  """
  s = num_stages
  if s < 1:
    raise ValueError("num_stages has to be positive.")

  # Gauss-Legendre nodes and weights on [-1, 1], scaled to [0, 1]
  nodes, weights = np.polynomial.legendre.leggauss(s)
  c = 0.5 * (nodes + 1)
  b = 0.5 * weights

  # A[i, j] is the integral of the j-th Lagrange polynomial from 0 to c_i
  A = np.zeros((s, s))
  for j in range(s):
    L_j = np.poly1d([1.0])
    for k in range(s):
      if k != j:
        L_j = np.poly1d(np.convolve(L_j.coeffs, [1.0, -c[k]])) / (c[j] - c[k])
    Lj_int = np.polyint(L_j)
    for i in range(s):
      A[i, j] = Lj_int(c[i]) - Lj_int(0.0)

  # Row sums equal c up to round-off, use them as nodes for exact consistency
  return Tableau(f"GaussLegendre{2 * s}", A=A, b=b, c=A.sum(axis=1), order=2 * s)


def radau_iia3():
  return Tableau("RadauIIA3",
                 A=[[5 / 12, -1 / 12], [3 / 4, 1 / 4]],
                 b=[3 / 4, 1 / 4],
                 c=[1 / 3, 1],
                 order=3)


def radau_iia5():
  s6 = np.sqrt(6.0)
  A = [[11 / 45 - 7 * s6 / 360, 37 / 225 - 169 * s6 / 1800, -2 / 225 + s6 / 75],
       [37 / 225 + 169 * s6 / 1800, 11 / 45 + 7 * s6 / 360, -2 / 225 - s6 / 75],
       [4 / 9 - s6 / 36, 4 / 9 + s6 / 36, 1 / 9]]
  return Tableau("RadauIIA5", A=A, b=A[2], c=np.sum(A, axis=1), order=5)


## lookup by name

_CATALOG = {
    'ExplicitEuler': explicit_euler,
    'Heun2': heun2,
    'Heun3': heun3,
    'Ralston2': ralston2,
    'Ralston3': ralston3,
    'Ralston4': ralston4,
    'Kutta3': lambda: explicit_runge_kutta(3),
    'RK4': rk4,
    'SSPRK22': ssprk22,
    'SSPRK33': ssprk33,
    'SSPRK43': ssprk43,
    'SSPRK104': ssprk104,
    'Chebyshev51': chebyshev51,
    'Fehlberg45': fehlberg45,
    'DormandPrince54': dormand_prince54,
    'ImplicitEuler': implicit_euler,
    'ImplicitMidpoint': implicit_midpoint,
    'Crouzeix3': lambda: crouzeix(2),
    'Crouzeix4': lambda: crouzeix(3),
    'SSPIRK33': sspirk33,
    'LobattoIIIA2': lobatto_iiia2,
    'Kvaerno3': lambda: kvaerno(3),
    'Kvaerno5': lambda: kvaerno(5),
    'GaussLegendre2': lambda: gauss_legendre(1),
    'GaussLegendre4': lambda: gauss_legendre(2),
    'GaussLegendre6': lambda: gauss_legendre(3),
    'RadauIIA3': radau_iia3,
    'RadauIIA5': radau_iia5,
}


def available_tableaus():
  """Names accepted by get_tableau."""
  return tuple(_CATALOG.keys())


def get_tableau(name):
  """
  Builds a catalog tableau by name, e.g. 'RK4' or 'RadauIIA5'.

  Raises:
    ValueError: If the name is unknown.
  """
  try:
    return _CATALOG[name]()
  except KeyError:
    raise ValueError(f"Unknown tableau {name!r}. Available: {', '.join(_CATALOG)}.") from None
