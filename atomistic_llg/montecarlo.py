"""
Metropolis Monte Carlo for classical Heisenberg spins with exchange, DMI and
an external field.

``run_step_mc`` is the reference algorithm: one sequential sweep in which every
trial sees the latest state of the sites already visited, so it cannot be
evaluated in parallel. The visiting order is an explicit argument and defaults
to lattice index order.

``run_step_mc_checkerboard`` is a different algorithm: on a bipartite lattice
it updates all sites of one colour at once, then the other colour. It samples
the same distribution but follows a different Markov chain than the
sequential sweep.
"""
import logging

import numpy as np
from multiprocess import Pool as _MultiprocessPool
from numba import njit
from tqdm import tqdm

from .fields import BOND_VECTORS, compute_exch_field, dmi_field_interfacial_atomistic
from .layout import as_sites
from .sampling import as_random_source
from .vector import cross, dot

logger = logging.getLogger(__name__)


def _dmi_directions(dmi_vec):
    if dmi_vec is None:
        return BOND_VECTORS
    return np.asarray(dmi_vec, dtype=float).reshape(6, 3)


def _local_field(s, nb, sites, J, D, dvec, H):
    """J sum S_j + D sum d_j x S_j + h_i for the given sites, shape (len(sites), 3)."""
    idx = nb[sites]
    present = idx >= 0
    sj = s[np.where(present, idx, 0)]
    sj[~present] = 0.0
    return H[sites] + J * sj.sum(axis=1) + D * cross(dvec[None, :, :], sj).sum(axis=1)


@njit
def _metropolis_sweep_nb(s, trial, nb, J, D, dvec, H, T, u, order):
    """Sequential sweep over ``order``; u[step] is the acceptance draw of that visit."""
    accepted = 0
    for step in range(order.shape[0]):
        i = order[step]
        lx = H[i, 0]
        ly = H[i, 1]
        lz = H[i, 2]
        for slot in range(nb.shape[1]):
            j = nb[i, slot]
            if j < 0:
                continue
            sx = s[j, 0]
            sy = s[j, 1]
            sz = s[j, 2]
            dx = dvec[slot, 0]
            dy = dvec[slot, 1]
            dz = dvec[slot, 2]
            # J S_j + D d_j x S_j
            lx += J * sx + D * (dy * sz - dz * sy)
            ly += J * sy + D * (dz * sx - dx * sz)
            lz += J * sz + D * (dx * sy - dy * sx)
        delta_E = -((trial[i, 0] - s[i, 0]) * lx
                    + (trial[i, 1] - s[i, 1]) * ly
                    + (trial[i, 2] - s[i, 2]) * lz)
        if delta_E <= 0.0 or (T > 0.0 and u[step] < np.exp(-delta_E / T)):
            s[i, 0] = trial[i, 0]
            s[i, 1] = trial[i, 1]
            s[i, 2] = trial[i, 2]
            accepted += 1
    return accepted


def run_step_mc(spin, new_spin, ngbs, J, D, h, T, rng=None, order=None, dmi_vec=None):
    """
    One sequential Metropolis sweep, updating ``spin`` in place.

    A uniformly random trial orientation is drawn for every site into
    ``new_spin``, and one uniform number per visit. Sites are then visited in
    ``order``; a trial is accepted when dE <= 0, or when its uniform draw is
    below exp(-dE / T). T is in energy units, and at T = 0 uphill moves are
    always rejected. The sweep itself runs in a numba kernel.

    Args:
        spin (np.ndarray): interleaved spins, modified in place.
        new_spin (np.ndarray): buffer for the trial spins, length 3n.
        ngbs (np.ndarray): 6-slot neighbour table.
        J (float): exchange constant.
        D (float): DMI constant.
        h (np.ndarray): external field, one 3-vector or one per site.
        T (float): temperature.
        rng: seed, numpy Generator or RandomSource.
        order (Sequence[int]|None): site visiting order, lattice order if None.
        dmi_vec (np.ndarray|None): DMI direction per slot, bulk bond vectors if None.

    Returns:
        int: number of accepted trials.
    """
    s = as_sites(spin)
    n = s.shape[0]
    assert np.shares_memory(s, spin)
    rng = as_random_source(rng)
    new_spin[...] = rng.random_spin_uniform(n).reshape(new_spin.shape)
    trial = as_sites(new_spin)
    nb = np.ascontiguousarray(np.asarray(ngbs, dtype=np.int64).reshape(n, 6))
    H = np.ascontiguousarray(np.broadcast_to(np.asarray(h, dtype=float).reshape(-1, 3), s.shape))
    dvec = np.ascontiguousarray(_dmi_directions(dmi_vec), dtype=float)
    order = np.arange(n, dtype=np.int64) if order is None else np.asarray(order, dtype=np.int64)
    u = np.asarray(rng.uniform(order.shape[0]), dtype=float)

    return int(_metropolis_sweep_nb(s, trial, nb, float(J), float(D), dvec, H, float(T), u, order))


def checkerboard_parity(nx, ny, nz):
    """Colour (i + j + k) % 2 of every site in lattice order."""
    k, j, i = np.meshgrid(np.arange(nz), np.arange(ny), np.arange(nx), indexing='ij')
    return ((i + j + k) % 2).ravel()


def checkerboard_order(nx, ny, nz):
    """All even sites, then all odd sites; a valid ``order`` for ``run_step_mc``."""
    parity = checkerboard_parity(nx, ny, nz)
    return np.concatenate([np.flatnonzero(parity == 0), np.flatnonzero(parity == 1)])


def run_step_mc_checkerboard(spin, new_spin, ngbs, J, D, h, T, parity, rng=None, dmi_vec=None):
    """
    Checkerboard Metropolis sweep: two vectorised half-sweeps, one per colour.

    Only valid if no two sites of the same colour are neighbours (even grid
    sizes along periodic axes). Returns the number of accepted trials.
    """
    s = as_sites(spin)
    n = s.shape[0]
    assert np.shares_memory(s, spin)
    rng = as_random_source(rng)
    new_spin[...] = rng.random_spin_uniform(n).reshape(new_spin.shape)
    trial = as_sites(new_spin)
    nb = np.asarray(ngbs).reshape(n, 6)
    parity = np.asarray(parity).reshape(n)
    H = np.broadcast_to(np.asarray(h, dtype=float).reshape(-1, 3), s.shape)
    dvec = _dmi_directions(dmi_vec)

    accepted = 0
    for colour in (0, 1):
        sites = np.flatnonzero(parity == colour)
        idx = nb[sites]
        assert not np.any(parity[idx[idx >= 0]] == colour), "lattice is not bipartite"
        local = _local_field(s, nb, sites, J, D, dvec, H)
        delta_E = -dot(trial[sites] - s[sites], local)
        u = rng.uniform(len(sites))
        if T > 0:
            with np.errstate(over='ignore'):
                accept = (delta_E <= 0) | (u < np.exp(-delta_E / T))
        else:
            accept = delta_E <= 0
        s[sites[accept]] = trial[sites[accept]]
        accepted += int(accept.sum())
    return accepted


def _scan_worker(payload):
    """payload = (mc, T, sweeps, idx)"""
    mc, T, sweeps, idx = payload
    mc.run(sweeps, progress=False)
    return idx, T, mc.energy(), mc.spin.copy(), mc.acceptance_rate


class MonteCarlo:
    """
    Owns a spin configuration and runs Metropolis sweeps on it.

    Args:
        spin (np.ndarray): initial spins, interleaved (copied).
        ngbs (np.ndarray): 6-slot neighbour table.
        J (float): exchange constant.
        D (float): DMI constant.
        h (array-like): external field, one 3-vector or one per site.
        T (float): temperature in energy units.
        seed: seed, numpy Generator or RandomSource.
        order (Sequence[int]|None): visiting order of the sequential sweep.
        dmi_vec (np.ndarray|None): DMI direction per neighbour slot.
    """

    def __init__(self, spin, ngbs, J, D=0.0, h=(0.0, 0.0, 0.0), T=0.0, seed=None, order=None, dmi_vec=None):
        self.spin = np.array(spin, dtype=float).ravel()
        if self.spin.size == 0 or self.spin.size % 3 != 0:
            raise ValueError("spin must hold 3 components per site")
        self.n = self.spin.size // 3
        self.ngbs = np.asarray(ngbs, dtype=np.int64).ravel()
        if self.ngbs.size != 6 * self.n:
            raise ValueError(f"ngbs must have 6 entries per site ({6 * self.n}), got {self.ngbs.size}")
        h = np.asarray(h, dtype=float)
        if h.size not in (3, 3 * self.n):
            raise ValueError("h must be a single 3-vector or one 3-vector per site")
        self.h = np.broadcast_to(h.reshape(-1, 3), (self.n, 3)).ravel()
        if T < 0:
            raise ValueError("T must be non-negative")
        self.J = float(J)
        self.D = float(D)
        self.T = float(T)
        self.order = order
        self.dmi_vec = _dmi_directions(dmi_vec).ravel()
        self.rng = as_random_source(seed)
        self._trial = np.empty(3 * self.n)
        self.accepted = 0
        self.proposed = 0

    @property
    def acceptance_rate(self):
        if self.proposed == 0:
            return 0.0
        return self.accepted / self.proposed

    def sweep(self):
        acc = run_step_mc(self.spin, self._trial, self.ngbs, self.J, self.D, self.h, self.T,
                          rng=self.rng, order=self.order, dmi_vec=self.dmi_vec)
        self.accepted += acc
        self.proposed += self.n
        return acc

    def run(self, sweeps, progress=True):
        for _ in tqdm(range(int(sweeps)), desc="Monte Carlo", unit="sweep", disable=not progress):
            self.sweep()
        logger.info("T=%g: %d sweeps, acceptance rate %.3f", self.T, sweeps, self.acceptance_rate)
        return self.spin

    def energy(self):
        """Total energy of the current configuration."""
        field = np.empty(3 * self.n)
        e_ex = np.empty(self.n)
        e_dmi = np.empty(self.n)
        compute_exch_field(self.spin, field, e_ex, self.J, self.J, self.J, self.ngbs)
        dmi_field_interfacial_atomistic(self.spin, field, e_dmi, self.D, self.ngbs, 6, self.dmi_vec)
        return float(e_ex.sum() + e_dmi.sum() - np.dot(self.spin, self.h))

    def temperature_scan(self, temperatures, sweeps, processes=None, seed=None):
        """
        Runs independent chains from the current configuration at each temperature.

        Args:
            temperatures (Sequence[float]): temperatures to sample.
            sweeps (int): sweeps per temperature.
            processes (int|None): worker processes; 1 runs sequentially.
            seed: seed for the per-chain generators.

        Returns:
            list[dict]: one entry per temperature with keys 'T', 'energy',
                'spin' and 'acceptance', in the order of ``temperatures``.
        """
        temps = [float(T) for T in temperatures]
        if len(temps) == 0:
            raise ValueError("temperatures must not be empty")
        if any(T < 0 for T in temps):
            raise ValueError("temperatures must be non-negative")
        streams = np.random.SeedSequence(seed).spawn(len(temps))

        payloads = []
        for i, (T, stream) in enumerate(zip(temps, streams)):
            chain = MonteCarlo(self.spin, self.ngbs, self.J, self.D, self.h, T,
                               seed=np.random.default_rng(stream), order=self.order, dmi_vec=self.dmi_vec)
            payloads.append((chain, T, sweeps, i))

        results = []
        if len(payloads) > 1 and (processes is None or processes > 1):
            with _MultiprocessPool(processes=processes) as pool:
                with tqdm(total=len(payloads), desc="Temperature scan", unit="T") as pbar:
                    for result in pool.imap_unordered(_scan_worker, payloads):
                        results.append(result)
                        pbar.update(1)
        else:
            for payload in tqdm(payloads, desc="Temperature scan", unit="T"):
                results.append(_scan_worker(payload))

        results.sort(key=lambda x: x[0])
        return [
            {'T': T, 'energy': E, 'spin': spin, 'acceptance': acc}
            for _, T, E, spin, acc in results
        ]
