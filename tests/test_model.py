import numpy as np
import pytest

from atomistic_llg import Model, Solution
from atomistic_llg.fields import DemagSolver
from atomistic_llg.minimizers import _angles_to_M, _M_to_angles
from conftest import neighbours, random_spins


def macrospin(alpha=0.1, B=1.0):
    model = Model(1, np.full(6, -1))
    model.alpha[:] = alpha
    model.add_B(0, [0.0, 0.0, B])
    return model


def ring_model(n=4):
    """Ferromagnetic ring along x with easy axis and field along z."""
    model = Model(n, neighbours(n, 1, 1, xperiodic=True))
    model.add_exchange(1.0)
    model.add_anis(-1, 0.5, [0.0, 0.0, 1.0])
    model.add_B(-1, [0.0, 0.0, 0.1])
    return model


def lattice_model(nx=4, ny=4):
    model = Model(nx * ny, neighbours(nx, ny, 1, True, True))
    model.add_exchange(1.0)
    model.add_anis(-1, 0.2, [0.0, 0.0, 1.0])
    model.add_dmi_bulk(0.3)
    model.add_B(-1, [0.05, 0.0, 0.1])
    return model


def test_macrospin_damped_precession():
    alpha, B, theta0 = 0.1, 1.0, 1.0
    model = macrospin(alpha, B)
    S0 = [np.sin(theta0), 0.0, np.cos(theta0)]
    t = np.linspace(0.0, 20.0, 11)

    sol = model.solve_LLG(20.0, S0, t_eval=t, rtol=1e-9, atol=1e-11)

    theta = 2 * np.arctan(np.tan(theta0 / 2) * np.exp(-alpha * B * t / (1 + alpha ** 2)))
    phi = B * t / (1 + alpha ** 2)
    expected = np.column_stack([np.sin(theta) * np.cos(phi), np.sin(theta) * np.sin(phi), np.cos(theta)])
    np.testing.assert_allclose(sol.t, t)
    np.testing.assert_allclose(sol.M, expected, atol=1e-6)


def test_relax_lowers_energy():
    model = lattice_model()
    model.alpha[:] = 0.5
    S0 = random_spins(model.n, seed=70)

    sol = model.relax(30.0, S0)

    assert model.energy(sol.final)['total'] < model.energy(S0)['total']
    np.testing.assert_allclose(np.linalg.norm(sol.M.reshape(len(sol), -1, 3), axis=2), 1.0)
    assert model.do_precession


def test_relax_needs_damping():
    model = lattice_model()
    with pytest.raises(ValueError):
        model.relax(1.0, random_spins(model.n))


def test_pinned_spins_stay_fixed():
    model = Model(3, neighbours(3, 1, 1))
    model.add_exchange(1.0)
    model.add_B(-1, [1.0, 0.0, 0.0])
    model.alpha[:] = 0.2
    model.pin(0)
    S0 = random_spins(3, seed=71)

    sol = model.solve_LLG(5.0, S0)

    np.testing.assert_array_equal(sol.M[:, :3], np.tile(S0[:3], (len(sol), 1)))
    assert not np.allclose(sol.final[3:], S0[3:])


def test_energy_contributions():
    model = ring_model()
    up = np.tile([0.0, 0.0, 1.0], 4)

    E = model.energy(up)

    assert E['exchange'] == pytest.approx(-4.0)
    assert E['anisotropy'] == pytest.approx(-2.0)
    assert E['b_field'] == pytest.approx(-0.4)
    assert E['total'] == pytest.approx(-6.4)


def test_effective_field_without_zeeman():
    model = ring_model()
    up = np.tile([0.0, 0.0, 1.0], 4)
    H = model.effective_field(up).reshape(4, 3)
    H0 = model.effective_field(up, zeeman=False).reshape(4, 3)
    np.testing.assert_allclose(H, np.tile([0.0, 0.0, 3.1], (4, 1)))
    np.testing.assert_allclose(H - H0, np.tile([0.0, 0.0, 0.1], (4, 1)))


def test_spatial_exchange_and_interfacial_dmi_terms():
    nx, ny = 3, 3
    model = Model(nx * ny, neighbours(nx, ny, 1, True, True))
    model.add_exchange_spatial(0.5)
    model.add_dmi_interfacial(0.2)
    F = model.fields(random_spins(nx * ny, seed=72))
    assert set(F) == {'exchange_spatial', 'dmi_interfacial', 'b_field'}


def test_jacobian_operator_matches_finite_differences():
    model = lattice_model()
    model.alpha[:] = 0.3
    model.pin([2, 5])
    rng = np.random.default_rng(73)
    S = random_spins(model.n, seed=74) * rng.uniform(0.95, 1.05, model.n).repeat(3)
    v = rng.standard_normal(3 * model.n)

    Jv = model.jacobian_operator(0.0, S).matvec(v)

    eps = 1e-6
    fd = (model.LLG_explicit(0.0, S + eps * v) - model.LLG_explicit(0.0, S - eps * v)) / (2 * eps)
    np.testing.assert_allclose(Jv, fd, rtol=1e-6, atol=1e-8)


def test_jtimes_unavailable_with_spin_torque():
    model = lattice_model()
    model.add_stt(1.0, 0.0, 1.0, 1.0, 0.1, 0.2)
    S = random_spins(model.n)
    with pytest.raises(NotImplementedError):
        model.jtimes(0.0, S, S)


def test_only_one_spin_torque():
    model = lattice_model()
    model.add_stt_cpp([0.0, 0.0, 1.0], 0.1, 0.0)
    with pytest.raises(ValueError):
        model.add_stt(1.0, 0.0, 1.0, 1.0, 0.1, 0.2)


def test_slonczewski_through_model():
    model = Model(1, np.full(6, -1))
    model.add_stt_cpp([1.0, 0.0, 0.0], 0.5, 0.0)
    dS = model.LLG_explicit(0.0, [0.0, 0.0, 1.0])
    np.testing.assert_allclose(dS, [0.5, 0.0, 0.0], atol=1e-15)


def test_zhang_li_through_model_moves_domain_wall():
    nx = 40
    model = Model(nx, neighbours(nx, 1, 1))
    model.add_exchange(1.0)
    model.add_anis(-1, 0.1, [0.0, 0.0, 1.0])
    model.alpha[:] = 0.1
    model.add_stt(1.0, 0.0, 1.0, 1.0, 0.2, 0.1)

    x = np.arange(nx) - (nx - 1) / 2.0
    theta = 2 * np.arctan(np.exp(x / np.sqrt(1.0 / 0.2)))
    S0 = np.column_stack([np.sin(theta), np.zeros(nx), np.cos(theta)]).ravel()

    sol = model.solve_LLG(20.0, S0, t_eval=[0.0, 20.0])

    mz0, mz1 = sol.M[0, 2::3].mean(), sol.M[-1, 2::3].mean()
    # dS/dt = u0 dS/dx pushes the wall towards -x, growing the down domain
    assert mz1 < mz0 - 0.05


def test_demag_solver_through_model():
    class UniformSolver(DemagSolver):
        def __call__(self, spin, coords, mu_s, field, energy):
            S = spin.reshape(-1, 3)
            f = np.zeros_like(S)
            f[:, 2] = -mu_s * S[:, 2]
            field += f.ravel()
            energy += -0.5 * np.sum(f * S, axis=1)

    model = Model(2, neighbours(2, 1, 1))
    model.add_demag(UniformSolver(), np.zeros(6), 2.0)
    E = model.energy(np.array([0.0, 0.0, 1.0, 1.0, 0.0, 0.0]))
    assert E['demag'] == pytest.approx(1.0)

    with pytest.raises(TypeError):
        model.add_demag(None, np.zeros(6), 1.0)


def test_invalid_construction():
    with pytest.raises(ValueError):
        Model(0, [])
    with pytest.raises(ValueError):
        Model(2, np.full(6, -1))
    with pytest.raises(ValueError):
        Model(1, [0, 0, 0, 0, 0, 1])


def test_invalid_configuration():
    model = ring_model()
    with pytest.raises(ValueError):
        model.add_anis(-1, 1.0, [0.0, 0.0, 0.0])
    with pytest.raises(ValueError):
        model.add_B(4, [0.0, 0.0, 1.0])
    with pytest.raises(ValueError):
        model.pin([])
    with pytest.raises(ValueError):
        model.add_exchange([1.0, 2.0])
    with pytest.raises(ValueError):
        model.add_dmi_interfacial(0.1, ngbs=np.full(4 * 4, -1), nneighbours=4)
    with pytest.raises(ValueError):
        model.energy(np.zeros(9))


def test_solution():
    model = ring_model()
    up = np.tile([0.0, 0.0, 1.0], 4)
    down = -up
    sol = Solution(model, [0.0, 1.0], np.stack([up, down]))

    assert len(sol) == 2
    np.testing.assert_array_equal(sol.final, down)
    np.testing.assert_allclose(sol.average(), [[0.0, 0.0, 1.0], [0.0, 0.0, -1.0]])
    E = sol.calculate_energy()
    assert [e['total'] for e in E] == pytest.approx([-6.4, -5.6])
    np.testing.assert_allclose(sol.skyrmion_number(4, 1), 0.0)

    with pytest.raises(ValueError):
        Solution(model, [0.0], np.stack([up, down]))


def test_model_skyrmion_number():
    from conftest import skyrmion
    nx = ny = 80
    model = Model(nx * ny, neighbours(nx, ny, 1, True, True))
    assert model.skyrmion_number(skyrmion(nx, ny, 10.0), nx, ny) == pytest.approx(-1.0, abs=0.03)


def test_angle_conversion():
    M = random_spins(5, seed=75)
    np.testing.assert_allclose(_angles_to_M(_M_to_angles(M)), M, atol=1e-14)


def test_gradient_angles_matches_finite_differences():
    model = lattice_model(3, 3)
    ang = _M_to_angles(random_spins(model.n, seed=76))
    grad = model.gradient_angles(ang)
    eps = 1e-6
    fd = np.empty_like(ang)
    for i in range(ang.size):
        d = np.zeros_like(ang)
        d[i] = eps
        fd[i] = (model.energy(_angles_to_M(ang + d))['total']
                 - model.energy(_angles_to_M(ang - d))['total']) / (2 * eps)
    np.testing.assert_allclose(grad, fd, rtol=1e-5, atol=1e-7)


def test_minimize_energy_angles():
    model = ring_model()
    rng = np.random.default_rng(77)
    theta = rng.uniform(0.2, 0.5, 4)
    phi = rng.uniform(-np.pi, np.pi, 4)
    M0 = _angles_to_M(np.column_stack([theta, phi]).ravel())

    M_opt, E, res = model.minimize_energy_angles(M0)

    assert E['total'] == pytest.approx(-6.4, abs=1e-5)
    np.testing.assert_allclose(M_opt, np.tile([0.0, 0.0, 1.0], 4), atol=5e-3)


def test_minimize_energy_keeps_pinned_sites():
    model = ring_model()
    M0 = np.tile([0.0, 0.0, 1.0], 4)
    M0[:3] = [1.0, 0.0, 0.0]
    model.pin(0)

    M_opt, E, _ = model.minimize_energy_angles(M0)

    np.testing.assert_array_equal(M_opt[:3], [1.0, 0.0, 0.0])
    assert E['total'] < model.energy(M0)['total']


def test_parallel_minimize_energy():
    model = ring_model()
    up = _angles_to_M(np.tile([0.3, 0.1], 4))
    down = _angles_to_M(np.tile([np.pi - 0.3, 0.1], 4))

    minima, energies, results, idx = model.parallel_minimize_energy([down, up, up], processes=1)

    assert energies == pytest.approx([-6.4, -5.6], abs=1e-5)
    assert idx[1] == 0
    assert len(minima) == len(results) == 2


def test_parallel_minimize_energy_llg_mode():
    model = ring_model()
    model.alpha[:] = 0.5
    up = _angles_to_M(np.tile([0.3, 0.1], 4))
    down = _angles_to_M(np.tile([np.pi - 0.3, 0.1], 4))

    minima, energies, results, idx = model.parallel_minimize_energy(
        [up, down], processes=2, mode='llg', llg_kwargs={'tf': 60.0}, dedup_atol=1e-3)

    assert energies == pytest.approx([-6.4, -5.6], abs=1e-4)
    assert all(isinstance(r, Solution) for r in results)
    assert idx == [0, 1]


def test_parallel_minimize_energy_rejects_bad_input():
    model = ring_model()
    with pytest.raises(ValueError):
        model.parallel_minimize_energy([])
    with pytest.raises(ValueError):
        model.parallel_minimize_energy([np.zeros(12)])
    with pytest.raises(ValueError):
        model.parallel_minimize_energy([np.tile([0.0, 0.0, 1.0], 4)], mode='llg')


def test_implicit_solver_macrospin():
    pytest.importorskip("assimulo")
    alpha, B, theta0 = 0.1, 1.0, 1.0
    model = macrospin(alpha, B)
    S0 = [np.sin(theta0), 0.0, np.cos(theta0)]

    sol = model.solve_LLG_implicit(10.0, S0, ncp=50, solver_kwargs={'rtol': 1e-8, 'atol': 1e-10})

    t = sol.t
    theta = 2 * np.arctan(np.tan(theta0 / 2) * np.exp(-alpha * B * t / (1 + alpha ** 2)))
    np.testing.assert_allclose(sol.M[:, 2], np.cos(theta), atol=1e-4)


def test_model_restoring_term_can_be_switched_off():
    model = macrospin(alpha=0.0, B=1.0)
    S = np.array([1.3, 0.0, 0.0])
    assert model.default_c < 0
    assert np.dot(S, model.LLG_explicit(0.0, S)) != pytest.approx(0.0)

    model.default_c = 0.0
    dS = model.LLG_explicit(0.0, S)
    np.testing.assert_allclose(dS, [0.0, 1.3, 0.0], atol=1e-15)
