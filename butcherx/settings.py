# settings.py
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

"""Recognized options of the Runge-Kutta engine, their defaults and validation."""

import math
import numbers

from flax.core import FrozenDict


DEFAULT_SETTINGS = FrozenDict({
    'absolute_tolerance': 1e-6,
    'relative_tolerance': 1e-3,
    'min_step': 1e-10,
    'max_step': math.inf,
    'safety_factor': 0.9,
    'min_safety_factor': 0.2,
    'max_safety_factor': 5.0,
    'max_substeps': 10,
    'enable_adaptive_mode': True,
    'enable_projection': True,
    'projection_tolerance': 1e-10,
    'max_projection_iterations': 5,
    'enable_reverse_mode': False,
    'enable_verbose_mode': 0,
    'solver_choice': 'newton',
    'broyden_mode': 'combined',
    'max_broyden_resets': 2,
})

RECOGNIZED_OPTIONS = tuple(DEFAULT_SETTINGS.keys())


def _check_positive(name, value, allow_inf=False):
  try:
    value = float(value)
  except (TypeError, ValueError) as err:
    raise ValueError(f"'{name}' must be a positive number, got {value!r}.") from err
  if not (value > 0.0) or (math.isinf(value) and not allow_inf) or math.isnan(value):
    raise ValueError(f"'{name}' must be a positive number, got {value}.")
  return value


def _check_count(name, value, minimum=0):
  try:
    invalid = isinstance(value, bool) or int(value) != value or value < minimum
  except (TypeError, ValueError) as err:
    raise ValueError(f"'{name}' must be an integer >= {minimum}, got {value!r}.") from err
  if invalid:
    raise ValueError(f"'{name}' must be an integer >= {minimum}, got {value}.")
  return int(value)


def validate_option(name, value):
  """
  Checks a single option and returns its normalized value.

  Args:
    name (str): One of RECOGNIZED_OPTIONS.
    value: Proposed value.

  Returns:
    The value converted to its canonical type.
  """
  match name:
    case 'absolute_tolerance' | 'relative_tolerance' | 'projection_tolerance' | 'min_step':
      return _check_positive(name, value)
    case 'max_step':
      return _check_positive(name, value, allow_inf=True)
    case 'safety_factor':
      value = _check_positive(name, value)
      if value > 1.0:
        raise ValueError(f"'safety_factor' must lie in (0, 1], got {value}.")
      return value
    case 'min_safety_factor':
      value = _check_positive(name, value)
      if value >= 1.0:
        raise ValueError(f"'min_safety_factor' must lie in (0, 1), got {value}.")
      return value
    case 'max_safety_factor':
      value = _check_positive(name, value, allow_inf=True)
      if value <= 1.0:
        raise ValueError(f"'max_safety_factor' must be larger than 1, got {value}.")
      return value
    case 'max_substeps' | 'max_projection_iterations':
      return _check_count(name, value, minimum=1)
    case 'max_broyden_resets':
      return _check_count(name, value)
    case 'enable_adaptive_mode' | 'enable_projection' | 'enable_reverse_mode':
      return bool(value)
    case 'enable_verbose_mode':
      # bool or integer verbosity level
      if not isinstance(value, numbers.Integral):
        raise ValueError(f"'enable_verbose_mode' must be a bool or an integer level, got {value!r}.")
      return int(value)
    case 'solver_choice':
      if value not in ('newton', 'broyden'):
        raise ValueError(f"'solver_choice' must be 'newton' or 'broyden', got {value!r}.")
      return value
    case 'broyden_mode':
      if value not in ('good', 'bad', 'combined'):
        raise ValueError(f"'broyden_mode' must be 'good', 'bad' or 'combined', got {value!r}.")
      return value
    case _:
      raise ValueError(f"Unknown option {name!r}. Recognized options: {', '.join(RECOGNIZED_OPTIONS)}.")


def validate_settings(settings, base=DEFAULT_SETTINGS):
  """
  Merges settings into base after validating every entry.

  Args:
    settings (dict): Options to change.
    base (Mapping): Current options, defaults if not given.

  Returns:
    dict: Mutable dictionary with all recognized options.
  """
  merged = dict(base)
  for name, value in dict(settings).items():
    merged[name] = validate_option(name, value)
  if merged['min_step'] > merged['max_step']:
    raise ValueError(f"'min_step' ({merged['min_step']}) is larger than 'max_step' ({merged['max_step']}).")
  if merged['min_safety_factor'] > merged['safety_factor']:
    raise ValueError("'min_safety_factor' must not exceed 'safety_factor'.")
  return merged
