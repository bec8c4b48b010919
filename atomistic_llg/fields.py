"""
Effective field kernels on a lattice described by a neighbour table.

Every kernel reads the interleaved spin array and writes the field (3n) and
per-site energy (n) into caller-provided buffers, overwriting them. The
neighbour table ``ngbs`` has one row of 6 slots per site in the order
-x, +x, -y, +y, -z, +z; a negative entry marks a missing neighbour. Periodic
boundaries are already encoded in the table.

Sites are independent, so each kernel is evaluated for all sites at once.
"""
import numpy as np

from .layout import as_sites
from .vector import cross, dot

# unit bond vectors of the six neighbour slots
BOND_VECTORS = np.array([
    [-1.0, 0.0, 0.0],
    [1.0, 0.0, 0.0],
    [0.0, -1.0, 0.0],
    [0.0, 1.0, 0.0],
    [0.0, 0.0, -1.0],
    [0.0, 0.0, 1.0],
])


def _neighbour_spins(s, ngbs, nneighbours=6):
    """Gathers neighbour spins as (n, nneighbours, 3), zeros where a neighbour is absent."""
    n = s.shape[0]
    nb = np.asarray(ngbs).reshape(n, nneighbours)
    present = nb >= 0
    gathered = s[np.where(present, nb, 0)]
    gathered[~present] = 0.0
    return gathered, present


def _write_outputs(s, f, field, energy):
    field[...] = f.reshape(field.shape)
    energy[:] = -0.5 * dot(f, s)


def compute_exch_field(spin, field, energy, Jx, Jy, Jz, ngbs):
    """
    Uniform (optionally anisotropic) exchange.

    H_i = sum_j (Jx Sx_j, Jy Sy_j, Jz Sz_j) over the existing neighbours, for the
    Hamiltonian -sum_<i,j> J S_i.S_j. The site energy carries a factor 1/2
    because every bond is visited from both ends.
    """
    s = as_sites(spin)
    assert field.size == s.size and energy.size == s.shape[0]
    nbr, _ = _neighbour_spins(s, ngbs)
    f = nbr.sum(axis=1) * np.array([Jx, Jy, Jz], dtype=float)
    _write_outputs(s, f, field, energy)


def compute_exch_field_spatial(spin, field, energy, J, ngbs):
    """Exchange with one coupling per bond; J has the shape of ngbs."""
    s = as_sites(spin)
    n = s.shape[0]
    assert field.size == s.size and energy.size == n
    nbr, _ = _neighbour_spins(s, ngbs)
    Jb = np.asarray(J, dtype=float).reshape(n, 6)
    f = np.einsum('ij,ijk->ik', Jb, nbr)
    _write_outputs(s, f, field, energy)


def compute_anis(spin, field, energy, Ku, axis):
    """
    Uniaxial anisotropy -Ku (a.S)^2 with a per-site constant and unit axis.

    Args:
        Ku (np.ndarray): shape (n,)
        axis (np.ndarray): interleaved unit vectors, length 3n
    """
    s = as_sites(spin)
    a = as_sites(axis)
    Ku = np.asarray(Ku, dtype=float)
    assert a.shape == s.shape and Ku.shape[0] == s.shape[0]
    m_u = dot(s, a)
    field[...] = (2.0 * (Ku * m_u)[:, None] * a).reshape(field.shape)
    energy[:] = -Ku * m_u * m_u


def dmi_field_bulk(spin, field, energy, D, ngbs):
    """
    Bulk DMI with one constant per bond (D has the shape of ngbs).

    H_i = sum_j D_ij (r_j x S_j), r_j being the unit vector of neighbour slot j,
    which corresponds to the Hamiltonian sum_<i,j> D_ij r_ij . (S_i x S_j).
    """
    s = as_sites(spin)
    n = s.shape[0]
    assert field.size == s.size and energy.size == n
    nbr, _ = _neighbour_spins(s, ngbs)
    Db = np.asarray(D, dtype=float).reshape(n, 6)
    f = np.einsum('ij,ijk->ik', Db, cross(BOND_VECTORS[None, :, :], nbr))
    _write_outputs(s, f, field, energy)


def dmi_field_interfacial_atomistic(spin, field, energy, D, ngbs, nneighbours, dmi_vec):
    """
    Interfacial DMI for an arbitrary neighbour shell.

    Args:
        D (float): DMI strength.
        ngbs (np.ndarray): neighbour table with ``nneighbours`` slots per site.
        nneighbours (int): number of slots per site (6 for a cubic lattice,
            more for extended shells).
        dmi_vec (np.ndarray): one DMI direction per slot, length 3*nneighbours.
            Not normalised here.
    """
    s = as_sites(spin)
    assert field.size == s.size and energy.size == s.shape[0]
    dvec = np.asarray(dmi_vec, dtype=float).reshape(nneighbours, 3)
    nbr, _ = _neighbour_spins(s, ngbs, nneighbours)
    f = D * cross(dvec[None, :, :], nbr).sum(axis=1)
    _write_outputs(s, f, field, energy)


def interfacial_dmi_vectors(bond_vectors):
    """DMI directions z x r_j for interfacial symmetry, flattened for dmi_field_interfacial_atomistic."""
    r = np.asarray(bond_vectors, dtype=float).reshape(-1, 3)
    z = np.array([0.0, 0.0, 1.0])
    return cross(np.broadcast_to(z, r.shape), r).ravel()


def compute_stt_field(spin, field, jx, jy, dx, dy, ngbs):
    """
    Spin-transfer field (j . grad) S for a current in the x-y plane.

    Central differences where both neighbours along an axis exist, one-sided
    differences where only one does, nothing where neither does. The result
    is the ``h_stt`` input of ``llg_stt_rhs``.
    """
    s = as_sites(spin)
    n = s.shape[0]
    nb = np.asarray(ngbs).reshape(n, 6)
    f = np.zeros_like(s)
    for lo, hi, cur, step in ((0, 1, jx, dx), (2, 3, jy, dy)):
        cur = np.broadcast_to(np.asarray(cur, dtype=float), (n,))
        m_lo, m_hi = nb[:, lo] >= 0, nb[:, hi] >= 0
        s_lo = np.where(m_lo[:, None], s[np.where(m_lo, nb[:, lo], 0)], s)
        s_hi = np.where(m_hi[:, None], s[np.where(m_hi, nb[:, hi], 0)], s)
        width = np.where(m_lo & m_hi, 2.0 * step, step)
        grad = (s_hi - s_lo) / width[:, None]
        f += cur[:, None] * grad
    field[...] = f.reshape(field.shape)


class DemagSolver:
    """
    Contract for an external demagnetising field solver.

    Implementations receive the spins, site coordinates and effective moments
    and must fill ``field`` and ``energy`` with the same sign and unit
    conventions as the exchange kernel, so the results can be summed directly.
    """

    def __call__(self, spin, coords, mu_s, field, energy):
        raise NotImplementedError


def demag_full(spin, field, energy, coords, mu_s, mu_s_scale, solver):
    """
    Boundary hook to the external demagnetising-field solver.

    The inputs are handed over read-only, the outputs are cleared before the
    call so a solver that only accumulates still satisfies the overwrite rule.
    ``mu_s_scale`` multiplies the moments; None means 1.
    """
    s = as_sites(spin)
    n = s.shape[0]
    coords = np.asarray(coords, dtype=float)
    mu_s = np.asarray(mu_s, dtype=float)
    assert coords.size == 3 * n and mu_s.shape[0] == n
    assert field.size == 3 * n and energy.size == n
    mu = mu_s.copy() if mu_s_scale is None else mu_s * np.asarray(mu_s_scale, dtype=float)

    spin_ro = s.ravel().copy()
    spin_ro.flags.writeable = False
    coords_ro = coords.reshape(-1).copy()
    coords_ro.flags.writeable = False
    mu.flags.writeable = False

    field[:] = 0.0
    energy[:] = 0.0
    solver(spin_ro, coords_ro, mu, field, energy)
