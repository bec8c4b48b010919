import logging

import numpy as np
import scipy.optimize
from multiprocess import Pool as _MultiprocessPool
from tqdm import tqdm

logger = logging.getLogger(__name__)


def _angles_to_M(angles):
    ang = np.asarray(angles, dtype=float).reshape(-1, 2)
    theta, phi = ang[:, 0], ang[:, 1]
    st = np.sin(theta)
    return np.column_stack([st * np.cos(phi), st * np.sin(phi), np.cos(theta)]).ravel()


def _M_to_angles(M):
    S = np.asarray(M, dtype=float).reshape(-1, 3)
    r = np.linalg.norm(S, axis=1)
    theta = np.arccos(np.clip(S[:, 2] / r, -1.0, 1.0))
    phi = np.arctan2(S[:, 1], S[:, 0])
    return np.column_stack([theta, phi]).ravel()


def _run_parallel_task(model, mode, start, solver_kwargs, llg_kwargs):
    """
    Executes either the angle-based minimization or a damping-only LLG relaxation.

    Returns:
        tuple: (M_opt, total_energy, aux_result)
    """
    mode = str(mode).lower()
    if mode == 'minimize_angles':
        M_opt, energy_dict, opt_res = model.minimize_energy_angles(start, solver_kwargs=solver_kwargs)
        return M_opt, float(energy_dict['total']), opt_res
    elif mode == 'llg':
        llg_opts = dict(llg_kwargs) if llg_kwargs else {}
        if 'tf' not in llg_opts:
            raise ValueError("llg_kwargs must include 'tf' when mode='llg'.")
        tf = llg_opts.pop('tf')
        solution = model.relax(tf, start, **llg_opts)
        M_final = solution.final
        return M_final, float(model.energy(M_final)['total']), solution
    else:
        raise ValueError("mode must be 'minimize_angles' or 'llg'.")


def _parallel_task_worker(payload):
    """
    Helper for multiprocess pools.
    payload = (model, mode, start, solver_kwargs, llg_kwargs, idx)
    """
    model, mode, start, solver_kwargs, llg_kwargs, idx = payload
    res = _run_parallel_task(model, mode, start, solver_kwargs, llg_kwargs)
    return (idx,) + res


class MinimizerMixin:
    """
    Mixin class providing energy minimization capabilities for the Model.
    Expects 'self' to have:
      - n (int)
      - pins (np.ndarray)
      - energy(S) -> dict
      - effective_field(S) -> np.ndarray
      - relax(...) [if parallel_minimize_energy mode='llg' is used]
    """

    def gradient_angles(self, ang):
        """dE/d(theta, phi) for every site, using dE/dS = -H_eff."""
        ang = np.asarray(ang, dtype=float).reshape(-1, 2)
        theta, phi = ang[:, 0], ang[:, 1]
        H = self.effective_field(_angles_to_M(ang)).reshape(-1, 3)
        d_theta = np.column_stack([np.cos(theta) * np.cos(phi), np.cos(theta) * np.sin(phi), -np.sin(theta)])
        d_phi = np.column_stack([-np.sin(theta) * np.sin(phi), np.sin(theta) * np.cos(phi), np.zeros_like(theta)])
        grad = np.column_stack([
            -np.sum(H * d_theta, axis=1),
            -np.sum(H * d_phi, axis=1),
        ])
        return grad.ravel()

    def minimize_energy_angles(self, M_init, solver_kwargs=None):
        """
        Minimize the total energy using scipy.optimize.minimize over spherical angles.

        Each spin is parameterized by its polar angle theta and azimuthal angle phi,
        which keeps every spin at unit length and supplies an analytic gradient from
        the effective field. Pinned sites are held fixed through their bounds.

        Args:
            M_init (np.ndarray): Initial configuration, length 3n.
            solver_kwargs (dict|None): Keyword arguments forwarded to scipy.optimize.minimize.
                If 'method' is not provided, defaults to 'L-BFGS-B'.

        Returns:
            tuple: (M_min, energy_dict, res)
        """
        M0 = np.asarray(M_init, dtype=float).ravel()
        if M0.size != 3 * self.n:
            raise ValueError(f"M_init must have {3 * self.n} entries, but got {M0.size}")
        if not np.all(np.linalg.norm(M0.reshape(-1, 3), axis=1) > 0.0):
            raise ValueError("All initial spin norms must be non-zero.")
        angles0 = _M_to_angles(M0)

        def objective_angles(angles_flat):
            return float(self.energy(_angles_to_M(angles_flat))['total'])

        # theta and phi bounds for each site, frozen where pinned
        default_bounds = []
        for i in range(self.n):
            if self.pins[i] != 0:
                default_bounds.append((angles0[2 * i], angles0[2 * i]))
                default_bounds.append((angles0[2 * i + 1], angles0[2 * i + 1]))
            else:
                default_bounds.append((0.0, np.pi))
                default_bounds.append((-np.pi, np.pi))

        kw = dict(solver_kwargs) if isinstance(solver_kwargs, dict) else {}
        method = kw.pop('method', 'L-BFGS-B')
        bounds = kw.pop('bounds', default_bounds)
        jac = kw.pop('jac', self.gradient_angles)

        res = scipy.optimize.minimize(
            objective_angles,
            angles0,
            method=method,
            jac=jac,
            bounds=bounds,
            **kw
        )
        if not res.success:
            logger.warning("Minimization did not converge: %s", res.message)
        M_opt = _angles_to_M(res.x)
        pinned = np.repeat(self.pins != 0, 3)
        M_opt[pinned] = M0[pinned]
        return M_opt, self.energy(M_opt), res

    def parallel_minimize_energy(
        self,
        starting_points,
        solver_kwargs=None,
        processes=None,
        dedup_atol=1e-6,
        mode='minimize_angles',
        llg_kwargs=None,
    ):
        """
        Runs multiple local minimizations or LLG relaxations from user-provided starting
        configurations in parallel processes, deduplicates the resulting minima, and returns
        them sorted by total energy.

        Args:
            starting_points (Sequence[np.ndarray]): Initial configurations, each of length 3n
                with non-zero spins.
            solver_kwargs (dict|None): Passed verbatim to the minimization function for every start.
            processes (int|None): Number of worker processes. Defaults to None (executor chooses).
                Set to 1 to force sequential execution.
            dedup_atol (float|None): Absolute tolerance passed to np.allclose when comparing two
                minima. Must be non-negative. Set to None to disable deduplication.
            mode (str): 'minimize_angles' (default) or 'llg' (damping-only relaxation).
            llg_kwargs (dict|None): Keyword arguments for relax() when mode='llg'. Must include 'tf'.

        Returns:
            tuple:
                - minima (list[np.ndarray]): Unique minima, sorted by total energy.
                - energies (list[float]): Total energies corresponding to each minimum.
                - optimizer_results (list[Any]): OptimizeResult or Solution objects.
                - start_indices (list[int]): Indices of the originating starting points.
        """
        if starting_points is None:
            raise ValueError("starting_points must be a non-empty sequence of initial configurations.")
        start_list = [np.asarray(sp, dtype=float).ravel() for sp in starting_points]
        if len(start_list) == 0:
            raise ValueError("starting_points must contain at least one configuration.")
        for idx, start in enumerate(start_list):
            if start.size != 3 * self.n:
                raise ValueError(
                    f"Starting point at index {idx} has {start.size} entries, expected {3 * self.n}."
                )
            if np.any(np.linalg.norm(start.reshape(-1, 3), axis=1) <= 0.0):
                raise ValueError(f"All spins must have non-zero magnitude (issue at start index {idx}).")

        if dedup_atol is not None:
            dedup_atol = float(dedup_atol)
            if dedup_atol < 0.0:
                raise ValueError("dedup_atol must be non-negative or None.")

        mode_normalized = str(mode).lower()
        if mode_normalized not in ('minimize_angles', 'llg'):
            raise ValueError("mode must be 'minimize_angles' or 'llg'.")
        if mode_normalized == 'llg':
            if not isinstance(llg_kwargs, dict) or 'tf' not in llg_kwargs:
                raise ValueError("llg_kwargs must be a dict including 'tf' when mode='llg'.")

        payloads = [
            (self, mode_normalized, start, solver_kwargs, llg_kwargs, i)
            for i, start in enumerate(start_list)
        ]
        results = []
        if len(start_list) > 1 and (processes is None or processes > 1):
            with _MultiprocessPool(processes=processes) as pool:
                with tqdm(total=len(payloads), desc="Minimizing", unit="config") as pbar:
                    for result in pool.imap_unordered(_parallel_task_worker, payloads):
                        results.append(result)
                        pbar.update(1)
        else:
            for payload in tqdm(payloads, desc="Minimizing", unit="config"):
                results.append(_parallel_task_worker(payload))

        # (idx, M_opt, energy, aux) sorted by energy
        data = sorted(results, key=lambda x: x[2])

        unique_data = []
        if dedup_atol is None:
            unique_data = data
        else:
            for item in data:
                if not any(np.allclose(item[1], kept[1], atol=dedup_atol) for kept in unique_data):
                    unique_data.append(item)
        logger.info("%d starts gave %d distinct minima", len(data), len(unique_data))

        return (
            [d[1] for d in unique_data],
            [d[2] for d in unique_data],
            [d[3] for d in unique_data],
            [d[0] for d in unique_data]
        )
