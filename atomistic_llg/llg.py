"""
Right-hand sides of the Landau-Lifshitz-Gilbert equation for an external
integrator, plus the in-place spin normalisation it calls between steps.

All functions write into a caller-provided output array, treat every site
independently and return a zero derivative for pinned sites (pins != 0).

The base equation is

    dS/dt = -gamma / (1 + alpha^2) [ S x H + alpha S x (S x H) ] + c (1 - |S|^2) S

where the precession term can be switched off (pure relaxation) and the last
term pulls |S| back to 1 between normalisations. It vanishes for unit spins.
``default_c`` selects c: a positive value is used as is, zero drops the term
and a negative value picks the adaptive c = 6 |dS/dt| evaluated without it.
"""
import numpy as np
from scipy.constants import k as BOLTZMANN

from .layout import as_sites
from .vector import cross, dot


def _per_site(value, n):
    return np.broadcast_to(np.asarray(value, dtype=float), (n,))


def _pinned(pins, n):
    if pins is None:
        return np.zeros(n, dtype=bool)
    return np.asarray(pins).reshape(n) != 0


def _llg_torque(s, h, alpha, gamma, do_precession):
    """LLG torque without the length-restoring term, and |S|^2."""
    coeff = -gamma / (1.0 + alpha * alpha)
    mm = dot(s, s)
    mh = dot(s, h)
    # S x (S x H) = (S.H) S - |S|^2 H
    t = alpha[:, None] * (mh[:, None] * s - mm[:, None] * h)
    if do_precession:
        t += cross(s, h)
    return coeff[:, None] * t, mm


def _restore_length(f, s, mm, default_c):
    if default_c == 0:
        return
    if default_c > 0:
        c = default_c
    else:
        c = (6.0 * np.linalg.norm(f, axis=1))[:, None]
    f += c * (1.0 - mm)[:, None] * s


def _finish(out, f, pinned):
    f[pinned] = 0.0
    out[...] = f.reshape(out.shape)


def llg_rhs(dm_dt, spin, h, alpha, pins, gamma, do_precession, default_c):
    """
    Standard LLG right-hand side.

    Args:
        dm_dt (np.ndarray): output, interleaved, length 3n.
        spin (np.ndarray): spins, interleaved, not assumed to be unit length.
        h (np.ndarray): effective field, interleaved.
        alpha (np.ndarray|float): Gilbert damping per site.
        pins (np.ndarray|None): non-zero marks a pinned site.
        gamma (float): gyromagnetic ratio.
        do_precession (bool): include the S x H term.
        default_c (float): length-restoring coefficient; 0 switches the term off,
            a negative value selects the adaptive choice.
    """
    s = as_sites(spin)
    H = as_sites(h)
    n = s.shape[0]
    assert H.shape == s.shape and dm_dt.size == 3 * n
    f, mm = _llg_torque(s, H, _per_site(alpha, n), gamma, do_precession)
    _restore_length(f, s, mm, default_c)
    _finish(dm_dt, f, _pinned(pins, n))


def llg_rhs_jtimes(jtn, spin, h, mp, hp, alpha, pins, gamma, do_precession, default_c):
    """
    Directional derivative of ``llg_rhs`` along a perturbation (mp, hp) of (spin, h).

    This is the Jacobian action needed by Newton-Krylov steps of implicit
    integrators. It is the exact derivative of ``llg_rhs``, including the
    length-restoring term and its adaptive coefficient.
    """
    s = as_sites(spin)
    H = as_sites(h)
    n = s.shape[0]
    sp = as_sites(mp)
    Hp = as_sites(hp)
    assert H.shape == s.shape and sp.shape == s.shape and Hp.shape == s.shape
    alpha = _per_site(alpha, n)
    coeff = (-gamma / (1.0 + alpha * alpha))[:, None]

    f0, mm = _llg_torque(s, H, alpha, gamma, do_precession)
    mh = dot(s, H)[:, None]
    mmp = dot(s, sp)[:, None]
    dmh = (dot(sp, H) + dot(s, Hp))[:, None]

    df = alpha[:, None] * (dmh * s + mh * sp - 2.0 * mmp * H - mm[:, None] * Hp)
    if do_precession:
        df += cross(sp, H) + cross(s, Hp)
    df *= coeff

    one_minus = (1.0 - mm)[:, None]
    if default_c > 0:
        df += default_c * (one_minus * sp - 2.0 * mmp * s)
    elif default_c < 0:
        norm_f0 = np.linalg.norm(f0, axis=1)[:, None]
        with np.errstate(divide='ignore', invalid='ignore'):
            dc = np.where(norm_f0 > 0, 6.0 * dot(f0, df)[:, None] / norm_f0, 0.0)
        c = 6.0 * norm_f0
        df += dc * one_minus * s + c * (one_minus * sp - 2.0 * mmp * s)

    _finish(jtn, df, _pinned(pins, n))


def llg_s_rhs(dm_dt, spin, h, alpha, chi, gamma, pins=None):
    """
    Stochastic LLG right-hand side.

    ``h`` must already contain the thermal field (see ``thermal_field``);
    ``chi`` is the per-site coefficient of the length-restoring term.
    """
    s = as_sites(spin)
    H = as_sites(h)
    n = s.shape[0]
    f, mm = _llg_torque(s, H, _per_site(alpha, n), gamma, True)
    f += (_per_site(chi, n) * (1.0 - mm))[:, None] * s
    _finish(dm_dt, f, _pinned(pins, n))


def thermal_field(out, eta, T, alpha, mu_s_inv, gamma, dt, k_B=BOLTZMANN):
    """
    Brown thermal field eta * sqrt(2 alpha k_B T / (gamma mu_s dt)).

    Args:
        out (np.ndarray): output, interleaved.
        eta (np.ndarray): standard normal samples, length 3n.
        T (np.ndarray|float): temperature per site.
        mu_s_inv (np.ndarray|float): inverse magnetic moment per site.
        dt (float): integrator time step.
        k_B (float): Boltzmann constant in the units of T and mu_s. Defaults to
            the SI value (T in K, mu_s in J/T); pass 1.0 when T is already an
            energy, as in the Monte Carlo kernels and the reduced-unit Model.
    """
    e = as_sites(eta)
    n = e.shape[0]
    amp = np.sqrt(2.0 * _per_site(alpha, n) * k_B * _per_site(T, n) * _per_site(mu_s_inv, n) / (gamma * dt))
    out[...] = (amp[:, None] * e).reshape(out.shape)


def llg_rhs_dw(dm, spin, h, T, alpha, mu_s_inv, pins, eta, gamma, dt, default_c=0.0, k_B=BOLTZMANN):
    """
    Thermally driven LLG: adds the Brown field for the per-site temperature and
    moment to ``h`` (which is left untouched) and evaluates ``llg_rhs``.
    At T = 0 it is exactly ``llg_rhs`` with precession.

    ``k_B`` is passed to ``thermal_field``; its SI default assumes T in K, so
    use ``k_B=1.0`` for temperatures in energy units.
    """
    h_total = np.empty(np.size(h))
    thermal_field(h_total, eta, T, alpha, mu_s_inv, gamma, dt, k_B=k_B)
    h_total += np.ravel(h)
    llg_rhs(dm, spin, h_total, alpha, pins, gamma, True, default_c)


def _current_torque(f, s, mm, g, alpha, beta, coeff):
    """Adds coeff [(1 + alpha beta) g_perp - (beta - alpha) S x g_perp], g_perp = -S x (S x g)."""
    gp = mm[:, None] * g - dot(s, g)[:, None] * s
    f += coeff[:, None] * ((1.0 + alpha * beta)[:, None] * gp - (beta - alpha)[:, None] * cross(s, gp))


def llg_stt_rhs(dm_dt, spin, h, h_stt, alpha, beta, u0, gamma, pins=None, default_c=0.0):
    """
    LLG with the Zhang-Li torque of an in-plane current.

    ``h_stt`` is (j . grad) S from ``compute_stt_field``, ``u0`` the spin drift
    velocity scale and ``beta`` the non-adiabatic parameter. For u0 > 0 a
    texture drifts along -j (electron flow).
    """
    s = as_sites(spin)
    H = as_sites(h)
    n = s.shape[0]
    alpha = _per_site(alpha, n)
    f, mm = _llg_torque(s, H, alpha, gamma, True)
    _current_torque(f, s, mm, as_sites(h_stt), alpha, beta, u0 / (1.0 + alpha * alpha))
    _restore_length(f, s, mm, default_c)
    _finish(dm_dt, f, _pinned(pins, n))


def llg_stt_cpp(dm_dt, spin, h, p, alpha, pins, a_J, beta, gamma, default_c=0.0):
    """
    LLG with the Slonczewski torque of a current perpendicular to the plane.

    Args:
        p (np.ndarray): spin polarisation, a single 3-vector or one per site.
        a_J (np.ndarray|float): torque amplitude per site (field units); a_J > 0
            turns the spins towards p.
        beta (float): ratio of field-like to damping-like torque.
    """
    s = as_sites(spin)
    H = as_sites(h)
    n = s.shape[0]
    alpha = _per_site(alpha, n)
    P = np.broadcast_to(np.asarray(p, dtype=float).reshape(-1, 3), s.shape)
    f, mm = _llg_torque(s, H, alpha, gamma, True)
    _current_torque(f, s, mm, P, alpha, beta, gamma * _per_site(a_J, n) / (1.0 + alpha * alpha))
    _restore_length(f, s, mm, default_c)
    _finish(dm_dt, f, _pinned(pins, n))


def normalise(spin, pins=None):
    """
    Rescales every free spin to unit length in place; pinned spins are not touched.

    A zero spin is a caller error and trips an assertion.
    """
    s = spin.reshape(-1, 3)
    assert np.shares_memory(s, spin), "normalise needs a contiguous spin array"
    free = ~_pinned(pins, s.shape[0])
    norm = np.linalg.norm(s[free], axis=1)
    assert np.all(norm > 0), "cannot normalise a zero spin"
    s[free] /= norm[:, None]
