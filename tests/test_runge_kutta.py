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

import jax
import jax.numpy as jnp
import numpy as np
import pytest
from flax.core import FrozenDict

from butcherx import tableaus
from butcherx.exceptions import DomainError, StepSizeUnderflowError
from butcherx.nonlinear_solver import Broyden, BroydenMode, Newton
from butcherx.runge_kutta import RungeKutta
from butcherx.systems import ExplicitWrapper, ImplicitWrapper

jax.config.update("jax_enable_x64", True)


def decay():
  return ExplicitWrapper(1, lambda x, t: -x, Jf_x=lambda x, t: -np.eye(1), name='decay')


def oscillator(invariant=False):
  # Harmonic oscillator, optionally with the energy invariant x0^2 + x1^2 = 1
  kwargs = {}
  if invariant:
    kwargs = dict(invariants_number=1, h=lambda x, t: jnp.stack([x[0]**2 + x[1]**2 - 1.0]))
  return ExplicitWrapper(2, lambda x, t: jnp.stack([x[1], -x[0]]), **kwargs)


def test_explicit_step_without_nonlinear_solves():
  engine = RungeKutta('RK4', decay())
  x, h_next, accepted, info = engine.step(np.ones(1), 0.0, 0.1)
  assert accepted
  assert info.nonlinear_solves == 0 and info.iterations == 0
  assert h_next == 0.1
  assert info.error is None
  assert np.allclose(x, np.exp(-0.1), atol=1e-7)


@pytest.mark.parametrize("name", tableaus.available_tableaus())
def test_zero_vector_field_keeps_state(name):
  system = ExplicitWrapper(2, lambda x, t: jnp.zeros_like(x))
  engine = RungeKutta(name, system)
  x0 = np.array([1.5, -0.5])
  result = engine.step(x0, 0.0, 0.1)
  assert result.accepted
  assert np.array_equal(result.x, x0), f"{name} changed a constant state"


def test_implicit_system_with_explicit_tableau():
  # ERK tableau on an implicit system solves one equation per stage for the stage derivative
  system = ImplicitWrapper(1, lambda x, x_dot, t: 2.0 * x_dot + 2.0 * x)
  engine = RungeKutta('RK4', system)
  result = engine.step(np.ones(1), 0.0, 0.1)
  assert result.accepted
  assert result.info.nonlinear_solves == 4
  assert np.allclose(result.x, np.exp(-0.1), atol=1e-7)


def test_embedded_error_estimate_scaling():
  engine = RungeKutta('DormandPrince54', decay(), enable_adaptive_mode=False)
  errors = [engine.step(np.ones(1), 0.0, h).info.error for h in (0.1, 0.05)]
  assert errors[1] < errors[0]
  assert 20.0 < errors[0] / errors[1] < 45.0, 'Local error estimate should scale like h^5'


def test_rejected_step_keeps_state():
  engine = RungeKutta('DormandPrince54', decay())
  x0 = np.ones(1)
  result = engine.step(x0, 0.0, 5.0)
  assert not result.accepted
  assert result.info.error > 1.0
  assert np.array_equal(result.x, x0)
  assert 5.0 * engine.min_safety_factor <= result.h_next < 5.0

  # Accepted steps propose a larger step when the error is small
  result = engine.step(x0, 0.0, 1e-3)
  assert result.accepted and result.h_next > 1e-3


def test_estimate_step_limits():
  engine = RungeKutta('DormandPrince54', decay(), max_step=0.5)
  x = np.ones(3)
  error, factor, h_new = engine.estimate_step(x, x, x, 0.2)
  assert error == 0.0
  assert factor == engine.max_safety_factor
  assert h_new == 0.5

  error, factor, h_new = engine.estimate_step(x, x + 1e6, x, 0.2)
  assert error > 1.0
  assert factor == engine.min_safety_factor
  assert np.isclose(h_new, 0.2 * engine.min_safety_factor)


def test_estimate_step_without_embedded_weights():
  # The controller exponent falls back to the order of the method
  engine = RungeKutta('RK4', decay())
  assert not engine.tableau.is_embedded
  x = np.ones(1)
  error, factor, h_new = engine.estimate_step(x, x + 1e-3, x, 0.1)
  assert np.isfinite(error) and error > 0.0
  assert np.isclose(factor, engine.safety_factor * error**(-1.0 / 5.0))
  assert np.isclose(h_new, 0.1 * factor)


def test_adaptive_solve_hits_final_time():
  engine = RungeKutta('DormandPrince54', decay(), max_step=0.1)
  solution = engine.solve(np.ones(1), 0.0, 2.0)
  assert solution.t_final == 2.0
  assert np.all(np.diff(solution.t) > 0.0)
  assert np.all(solution.h[1:] <= 0.1 + 1e-14)
  assert np.all(solution.h[1:] >= engine.min_step)
  assert solution.h[0] == 0.0
  assert solution.num_accepted == len(solution) - 1
  assert np.allclose(solution.x_final, np.exp(-2.0), atol=1e-4)


def test_fixed_step_solve():
  engine = RungeKutta('RK4', oscillator(), enable_adaptive_mode=False)
  solution = engine.solve(np.array([1.0, 0.0]), 0.0, 1.0, initial_h=0.1)
  assert len(solution) == 11
  assert np.allclose(solution.t, np.linspace(0.0, 1.0, 11))
  assert np.allclose(solution.x_final, [np.cos(1.0), -np.sin(1.0)], atol=1e-5)


def test_reverse_integration_returns_to_initial_state():
  engine = RungeKutta('RK4', oscillator(), enable_adaptive_mode=False)
  x0 = np.array([1.0, 0.0])
  forward = engine.solve(x0, 0.0, 1.0, initial_h=0.01)

  with pytest.raises(ValueError):
    engine.solve(forward.x_final, 1.0, 0.0, initial_h=0.01)

  engine.enable_reverse_mode()
  backward = engine.solve(forward.x_final, 1.0, 0.0, initial_h=0.01)
  assert backward.t_final == 0.0
  assert np.all(backward.h[1:] < 0.0)
  assert np.all(np.diff(backward.t) < 0.0)
  assert np.allclose(backward.x_final, x0, atol=1e-8), 'Reverse integration did not return to the initial state'


def test_reverse_step():
  engine = RungeKutta('DormandPrince54', decay(), enable_reverse_mode=True)
  result = engine.step(np.ones(1), 0.0, -0.1)
  assert result.accepted
  assert result.info.h == -0.1
  assert result.h_next < 0.0
  assert np.allclose(result.x, np.exp(0.1), atol=1e-7)

  engine.disable_reverse_mode()
  with pytest.raises(ValueError):
    engine.step(np.ones(1), 0.0, -0.1)
  with pytest.raises(ValueError):
    engine.step(np.ones(1), 0.0, 0.0)


def test_projection():
  engine = RungeKutta('RK4', oscillator(invariant=True))
  x = np.array([1.1, 0.2])
  projected = engine.project(x, 0.0)
  assert projected.converged
  assert abs(projected.x @ projected.x - 1.0) < 1e-10
  assert np.allclose(projected.x, x / np.linalg.norm(x)), 'Projection is not the closest point on the circle'

  again = engine.project(projected.x, 0.0)
  assert again.converged and again.iterations == 0
  assert np.array_equal(again.x, projected.x)


def test_projection_failure_returns_input():
  engine = RungeKutta('RK4', oscillator(invariant=True))
  # Jh_x vanishes at the origin
  result = engine.project(np.zeros(2), 0.0)
  assert not result.converged
  assert np.array_equal(result.x, np.zeros(2))


def test_project_initial_conditions():
  system = ExplicitWrapper(2, lambda x, t: jnp.zeros_like(x), invariants_number=1,
                           h=lambda x, t: jnp.stack([x[0] + x[1] - 1.0]))
  engine = RungeKutta('RK4', system)
  result = engine.project_ics(np.array([0.3, 0.3]), 0.0, projected_equations=[1], projected_invariants=[0])
  assert result.converged
  assert np.allclose(result.x, [0.3, 0.7])


def test_projection_keeps_invariant():
  x0 = np.array([1.0, 0.0])

  engine = RungeKutta('ExplicitEuler', oscillator(invariant=True), enable_adaptive_mode=False)
  solution = engine.solve(x0, 0.0, 1.0, initial_h=0.01)
  assert np.max(np.abs(solution.invariants)) < 1e-10
  assert solution.num_projection_failures == 0

  engine.disable_projection()
  solution = engine.solve(x0, 0.0, 1.0, initial_h=0.01)
  assert np.max(np.abs(solution.invariants)) > 1e-3, 'Explicit Euler should drift off the invariant'


def test_implicit_tableau_with_projection():
  system = ImplicitWrapper(2, lambda x, x_dot, t: x_dot - jnp.stack([x[1], -x[0]]), invariants_number=1,
                           h=lambda x, t: jnp.stack([x[0]**2 + x[1]**2 - 1.0]))
  engine = RungeKutta(tableaus.gauss_legendre(2), system, enable_adaptive_mode=False)
  solution = engine.solve(np.array([1.0, 0.0]), 0.0, 2.0, initial_h=0.1)
  assert np.max(np.abs(solution.invariants)) < 1e-10
  assert np.allclose(solution.x_final, [np.cos(2.0), -np.sin(2.0)], atol=1e-6)


@pytest.mark.parametrize("tableau", [
    tableaus.implicit_euler(), tableaus.heun2(), tableaus.implicit_midpoint(), tableaus.crouzeix(2),
    tableaus.radau_iia3(), tableaus.rk4(), tableaus.gauss_legendre(2)
])
def test_convergence_order(tableau):
  engine = RungeKutta(tableau, decay())
  meshes = [np.linspace(0.0, 1.0, n + 1) for n in (10, 20, 40)]
  order = engine.estimate_order(meshes, np.ones(1), lambda t: np.exp(-t))
  assert abs(order - tableau.order) < 0.3, f"{tableau.name}: estimated order {order}"
  assert engine.adaptive_mode, 'Settings have to be restored after the order estimation'


@pytest.mark.parametrize("name", ['ImplicitEuler', 'RadauIIA3', 'RadauIIA5', 'Kvaerno5'])
def test_stiff_problem_with_implicit_tableaus(name):
  system = ExplicitWrapper(1, lambda x, t: -1000.0 * (x - jnp.cos(t)))
  engine = RungeKutta(name, system, enable_adaptive_mode=False)
  solution = engine.solve(np.zeros(1), 0.0, 1.0, initial_h=0.05)
  assert np.isfinite(solution.x_final).all()
  assert np.allclose(solution.x_final, np.cos(1.0), atol=2e-3)


def test_broyden_solver_in_engine():
  system = ExplicitWrapper(1, lambda x, t: -x**3)
  newton = RungeKutta('RadauIIA5', system, enable_adaptive_mode=False)
  broyden = RungeKutta('RadauIIA5', system, enable_adaptive_mode=False, solver_choice='broyden')
  assert isinstance(newton.nonlinear_solver, Newton)
  assert isinstance(broyden.nonlinear_solver, Broyden)

  x0 = np.ones(1)
  result_newton = newton.step(x0, 0.0, 0.1)
  result_broyden = broyden.step(x0, 0.0, 0.1)
  assert result_broyden.accepted
  assert np.allclose(result_broyden.x, result_newton.x, atol=1e-8)
  info = result_broyden.info
  assert info.jacobian_evaluations == info.nonlinear_solves + info.broyden_resets


def test_broyden_reset_after_degraded_jacobian():
  # The first Jacobian has the wrong sign, so the first Broyden solve cannot descend
  calls = []

  def Jf_x(x, t):
    calls.append(t)
    return np.eye(1) * (20.0 if len(calls) == 1 else -1.0)

  system = ExplicitWrapper(1, lambda x, t: -x, Jf_x=Jf_x)
  engine = RungeKutta('ImplicitEuler', system, enable_adaptive_mode=False, solver_choice='broyden')
  result = engine.step(np.ones(1), 0.0, 0.1)
  assert result.accepted
  assert result.info.broyden_resets == 1
  assert result.info.nonlinear_solves == 1
  assert result.info.jacobian_evaluations == 2
  assert np.allclose(result.x, 1.0 / 1.1)


def test_broyden_resets_exhausted():
  system = ExplicitWrapper(1, lambda x, t: -x, Jf_x=lambda x, t: 20.0 * np.eye(1))
  engine = RungeKutta('ImplicitEuler', system, enable_adaptive_mode=False, solver_choice='broyden')
  x0 = np.ones(1)

  result = engine.step(x0, 0.0, 0.1)
  assert not result.accepted
  assert "degraded" in result.info.failure
  assert result.info.jacobian_evaluations == engine.max_broyden_resets + 1
  assert np.array_equal(result.x, x0)
  assert result.h_next == 0.1

  engine.update_settings({'max_broyden_resets': 0})
  result = engine.step(x0, 0.0, 0.1)
  assert not result.accepted
  assert result.info.jacobian_evaluations == 1


def test_fixed_step_substepping():
  # Heun's second stage leaves the region where f is defined for h > 1
  system = ExplicitWrapper(1, lambda x, t: jnp.where(x < 0.0, jnp.nan, -x))
  engine = RungeKutta('Heun2', system, enable_adaptive_mode=False)
  result = engine.step(np.ones(1), 0.0, 1.5)
  assert not result.accepted and result.info.failure is not None

  x_new, t_new, h_taken, h_next, info = engine.advance(np.ones(1), 0.0, 1.5)
  assert t_new == 1.5 and h_taken == 1.5
  assert info.rejections == 1
  assert np.allclose(x_new, (1.0 - 0.75 + 0.75**2 / 2)**2)


def test_step_size_underflow():
  system = ExplicitWrapper(1, lambda x, t: jnp.full_like(x, jnp.nan))
  engine = RungeKutta('Heun2', system, max_substeps=3)
  with pytest.raises(StepSizeUnderflowError) as err:
    engine.advance(np.ones(1), 0.0, 0.1)
  assert err.value.t == 0.0
  assert np.allclose(err.value.x, 1.0)
  assert err.value.h < 0.1

  engine.disable_adaptive_mode()
  with pytest.raises(StepSizeUnderflowError):
    engine.advance(np.ones(1), 0.0, 0.1)


def test_domain_error():
  system = ExplicitWrapper(1, lambda x, t: -jnp.ones_like(x), in_domain=lambda x, t: x[0] > 0.0)
  engine = RungeKutta('ExplicitEuler', system, enable_adaptive_mode=False)
  with pytest.raises(DomainError):
    engine.step(-np.ones(1), 0.0, 0.1)
  with pytest.raises(DomainError) as err:
    engine.solve(np.array([0.45]), 0.0, 1.0, initial_h=0.1)
  assert err.value.t > 0.0


def test_step_callback_stops_integration():
  engine = RungeKutta('RK4', decay(), enable_adaptive_mode=False)
  calls = []

  def callback(step_number, x, t):
    calls.append((step_number, t))
    return step_number < 3

  engine.step_callback = callback
  solution = engine.solve(np.ones(1), 0.0, 1.0, initial_h=0.1)
  assert len(solution) == 4
  assert [n for n, _ in calls] == [1, 2, 3]
  assert np.isclose(solution.t_final, 0.3)


def test_solve_on_mesh():
  engine = RungeKutta('DormandPrince54', decay())
  mesh = np.array([0.0, 0.5, 1.0, 2.0])
  solution = engine.solve_on_mesh(mesh, np.ones(1))
  assert np.array_equal(solution.t, mesh)
  assert np.allclose(solution.state(0), np.exp(-mesh), atol=1e-3)
  assert solution.num_accepted >= 3

  with pytest.raises(ValueError):
    engine.solve_on_mesh(np.array([0.0, 1.0, 0.5]), np.ones(1))


def test_settings():
  engine = RungeKutta('RK4', decay(), settings={'absolute_tolerance': 1e-8}, relative_tolerance=1e-6)
  assert isinstance(engine.settings, FrozenDict)
  assert engine.absolute_tolerance == 1e-8
  assert engine.relative_tolerance == 1e-6

  with pytest.raises(ValueError):
    RungeKutta('RK4', decay(), no_such_option=1)
  with pytest.raises(ValueError):
    engine.safety_factor = 1.5
  with pytest.raises(ValueError):
    engine.update_settings({'solver_choice': 'secant'})
  with pytest.raises(ValueError):
    engine.update_settings({'min_step': 1.0, 'max_step': 0.1})
  for name in ('enable_verbose_mode', 'absolute_tolerance', 'max_substeps'):
    with pytest.raises(ValueError):
      engine.update_settings({name: None})
  with pytest.raises(ValueError):
    engine.update_settings({'max_step': 'large'})

  engine.use_broyden('bad')
  assert isinstance(engine.nonlinear_solver, Broyden)
  assert engine.nonlinear_solver.mode is BroydenMode.BAD
  engine.use_newton()
  assert isinstance(engine.nonlinear_solver, Newton)

  with engine.temporary_settings(enable_projection=False, max_substeps=2):
    assert not engine.projection and engine.max_substeps == 2
  assert engine.projection and engine.max_substeps == 10

  engine.disable_adaptive_mode()
  assert not engine.settings['enable_adaptive_mode']
  engine.reset_settings()
  assert engine.adaptive_mode and engine.absolute_tolerance == 1e-6


def test_system_attachment():
  engine = RungeKutta(tableaus.rk4())
  assert not engine.has_system()
  with pytest.raises(ValueError):
    engine.step(np.ones(1), 0.0, 0.1)
  engine.attach_system(decay())
  assert engine.has_system()
  assert "decay" in repr(engine)
  assert "RK4" in engine.info()
  engine.detach_system()
  assert not engine.has_system()

  with pytest.raises(TypeError):
    engine.attach_system(lambda x, t: -x)
  with pytest.raises(TypeError):
    RungeKutta(42)
