# utility.py
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
This module contains some useful functions, including:

- Conversion of user data to float64 vectors and matrices
- Norms used for error control and convergence checks
- Checked dense LU factorization
- Compiled forward mode Jacobians returning numpy arrays
"""

import warnings

import jax
import jax.numpy as jnp
import numpy as np
import scipy as scp

from butcherx.exceptions import SingularJacobianError


### Array conversion

def as_vector(x, size=None, name="x"):
    """
    Converts x into a one-dimensional float64 numpy array (copy).

    Args:
      x (array_like): Input data.
      size (int): Expected length. Not checked if None.
      name (str): Name used in error messages.

    Returns:
      np.ndarray: Vector of shape (size,).
    """
    vec = np.array(x, dtype=np.float64).reshape(-1)
    if size is not None and vec.shape[0] != size:
        raise ValueError(f"{name} has length {vec.shape[0]}, expected {size}.")
    return vec


def as_matrix(a, shape, name="matrix"):
    """
    Converts a into a two-dimensional float64 numpy array of the given shape.

    A zero-sized shape (e.g. (0, n)) is accepted for systems without invariants.
    """
    mat = np.array(a, dtype=np.float64)
    if mat.size == 0 and 0 in shape:
        return np.zeros(shape)
    if mat.ndim != 2 or mat.shape != tuple(shape):
        raise ValueError(f"{name} has shape {mat.shape}, expected {tuple(shape)}.")
    return mat


def jit_jacfwd(fun, argnums=0):
    """
    Forward mode Jacobian of fun with respect to argument argnums, compiled once with jax.jit.

    The returned function accepts numpy arrays and returns a float64 numpy array.
    fun has to be traceable by jax (use jax.numpy inside).
    """
    jac = jax.jit(jax.jacfwd(fun, argnums=argnums))

    def wrapper(*args):
        args = tuple(jnp.asarray(arg) for arg in args)
        return np.asarray(jac(*args), dtype=np.float64)
    return wrapper


### Norms

def max_norm(vec):
    """Infinity norm, 0 for empty vectors."""
    vec = np.asarray(vec)
    if vec.size == 0:
        return 0.0
    return float(np.max(np.abs(vec)))


def weighted_rms_norm(error, x_old, x_new, atol, rtol):
    """
    Hairer norm of an error estimate.

    Each component is scaled by atol + rtol * max(|x_old|, |x_new|) and the root mean square of the
    scaled vector is returned. A value <= 1 means the error is within tolerance.

    Args:
      error (np.ndarray): Local error estimate, e.g. x_new - x_hat.
      x_old (np.ndarray): State at the beginning of the step.
      x_new (np.ndarray): State at the end of the step.
      atol (float): Absolute tolerance.
      rtol (float): Relative tolerance.

    Returns:
      float: Scaled error norm.
    """
    scale = atol + rtol * np.maximum(np.abs(x_old), np.abs(x_new))
    scaled_error = np.abs(error) / scale
    if scaled_error.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(scaled_error**2)))


### Linear algebra

def lu_factor_checked(mat, pivot_tolerance=1e-14):
    """
    Dense LU factorization that raises SingularJacobianError instead of returning useless factors.

    Args:
      mat (np.ndarray): Square matrix.
      pivot_tolerance (float): A pivot smaller than pivot_tolerance times the largest pivot counts as zero.

    Returns:
      tuple: (lu, piv) as returned by scipy.linalg.lu_factor.
    """
    mat = np.asarray(mat, dtype=np.float64)
    if not np.all(np.isfinite(mat)):
        raise SingularJacobianError("Matrix contains NaN or Inf entries.")
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", scp.linalg.LinAlgWarning)
        lu, piv = scp.linalg.lu_factor(mat, check_finite=False)
    pivots = np.abs(np.diag(lu))
    if pivots.size > 0 and (pivots.min() <= pivot_tolerance * max(pivots.max(), np.finfo(float).tiny)):
        raise SingularJacobianError(f"Matrix is singular to working precision (smallest pivot {pivots.min():.3e}).")
    return lu, piv


def lu_solve(factors, rhs):
    """Solves a system with factors from lu_factor_checked."""
    return scp.linalg.lu_solve(factors, rhs, check_finite=False)
