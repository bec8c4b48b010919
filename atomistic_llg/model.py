import logging

import numpy as np
import scipy.integrate
import scipy.sparse.linalg

from . import diagnostics, fields, llg
from .solution import Solution
from .minimizers import MinimizerMixin

logger = logging.getLogger(__name__)


class Model(MinimizerMixin):
    """
    Atomistic spin model on a lattice given by a neighbour table.

    Spins are stored interleaved as a flat array of length 3n. The model collects
    the interactions, evaluates the effective field and energies through the
    field kernels and hands the LLG right-hand side (and its Jacobian action)
    to an ODE integrator. All quantities are in reduced units: fields in
    energy units, time in units of 1/gamma.
    """

    def __init__(self, n, ngbs):
        """
        Args:
            n (int): The number of lattice sites.
            ngbs (np.ndarray): Neighbour table, 6 entries per site (-x, +x, -y, +y, -z, +z),
                negative for a missing neighbour.
        """
        if n <= 0:
            raise ValueError("n must be a positive integer")
        self.n = int(n)
        ngbs = np.asarray(ngbs, dtype=np.int64).ravel()
        if ngbs.size != 6 * self.n:
            raise ValueError(f"ngbs must have 6 entries per site ({6 * self.n}), got {ngbs.size}")
        if np.any(ngbs >= self.n):
            raise ValueError("ngbs contains indices outside the lattice")
        self.ngbs = ngbs

        # dynamics parameters
        self.alpha = np.zeros(self.n)
        self.gamma = 1.0
        self.pins = np.zeros(self.n, dtype=np.int32)
        self.do_precession = True
        # < 0: adaptive length-restoring term, 0: none, > 0: fixed coefficient
        self.default_c = -1.0

        # Hamiltonian parameters
        self.J = np.zeros(3)
        self.J_bond = None
        self.Ku = np.zeros(self.n)
        self.axis = np.tile([0.0, 0.0, 1.0], self.n)
        self.D_bulk = None
        self.D_int = None
        self.B = np.zeros(3 * self.n)
        self._demag = None

        # spin-transfer torques
        self._stt = None
        self._cpp = None

    def _ita(self, a):
        """
        Internal helper to convert site indices to a list. -1 means all sites.
        Only valid indices (0 <= a < self.n, or list thereof, or -1) are accepted.
        """
        if np.isscalar(a):
            a = int(a)
            if a == -1:
                return range(self.n)
            if 0 <= a < self.n:
                return [a]
            raise ValueError(f"Invalid site index {a}: must be in 0..{self.n-1}, or -1 for all.")
        a_list = [int(x) for x in a]
        if len(a_list) == 0:
            raise ValueError("Empty index list is not allowed.")
        for x in a_list:
            if not (0 <= x < self.n):
                raise ValueError(f"Invalid site index {x}: must be in 0..{self.n-1}, or -1 for all.")
        return a_list

    def _bond_array(self, value, name):
        value = np.asarray(value, dtype=float)
        if value.ndim == 0:
            return np.full(6 * self.n, float(value))
        if value.size != 6 * self.n:
            raise ValueError(f"{name} must be a scalar or have 6 entries per site")
        return value.ravel().copy()

    def add_exchange(self, J):
        """Uniform exchange. J is a scalar or (Jx, Jy, Jz) for anisotropic exchange."""
        J = np.asarray(J, dtype=float)
        if J.ndim == 0:
            J = np.full(3, float(J))
        if J.shape != (3,):
            raise ValueError("J must be a scalar or a 3-vector (Jx, Jy, Jz)")
        self.J = self.J + J

    def add_exchange_spatial(self, J):
        """Exchange with one constant per bond (6 per site, neighbour table order)."""
        J = self._bond_array(J, "J")
        self.J_bond = J if self.J_bond is None else self.J_bond + J

    def add_anis(self, a, Ku, axis):
        """Uniaxial anisotropy -Ku (S.axis)^2 at the sites a (-1 for all)."""
        axis = np.asarray(axis, dtype=float)
        norm = np.linalg.norm(axis)
        if axis.shape != (3,) or norm == 0:
            raise ValueError("axis must be a non-zero 3-vector")
        for i in self._ita(a):
            self.Ku[i] = Ku
            self.axis[3 * i:3 * i + 3] = axis / norm

    def add_dmi_bulk(self, D):
        """Bulk DMI, D a scalar or one constant per bond."""
        D = self._bond_array(D, "D")
        self.D_bulk = D if self.D_bulk is None else self.D_bulk + D

    def add_dmi_interfacial(self, D, dmi_vec=None, ngbs=None, nneighbours=6):
        """
        Interfacial DMI of strength D.

        By default it uses the model's 6-slot table with the directions z x r_j;
        an extended neighbour shell can be supplied as ``ngbs`` together with its
        ``nneighbours`` and one DMI direction per slot.
        """
        if ngbs is None:
            ngbs = self.ngbs
            nneighbours = 6
        ngbs = np.asarray(ngbs, dtype=np.int64).ravel()
        if ngbs.size != nneighbours * self.n:
            raise ValueError(f"ngbs must have {nneighbours} entries per site")
        if dmi_vec is None:
            if nneighbours != 6:
                raise ValueError("dmi_vec is required for a neighbour shell other than 6")
            dmi_vec = fields.interfacial_dmi_vectors(fields.BOND_VECTORS)
        dmi_vec = np.asarray(dmi_vec, dtype=float).ravel()
        if dmi_vec.size != 3 * nneighbours:
            raise ValueError("dmi_vec must hold one 3-vector per neighbour slot")
        self.D_int = (float(D), ngbs, int(nneighbours), dmi_vec)

    def add_B(self, a, B):
        """Adds a static external field at the sites a (-1 for all)."""
        for i in self._ita(a):
            self.B[3 * i:3 * i + 3] += np.asarray(B, dtype=float)

    def add_demag(self, solver, coords, mu_s, mu_s_scale=None):
        """Registers an external demagnetising-field solver (see fields.DemagSolver)."""
        if not callable(solver):
            raise TypeError("solver must be callable")
        coords = np.asarray(coords, dtype=float).ravel()
        mu_s = np.broadcast_to(np.asarray(mu_s, dtype=float), (self.n,)).copy()
        if coords.size != 3 * self.n:
            raise ValueError("coords must hold 3 coordinates per site")
        self._demag = (solver, coords, mu_s, mu_s_scale)

    def add_stt(self, jx, jy, dx, dy, u0, beta):
        """Zhang-Li torque of an in-plane current density (jx, jy) on a grid with spacing (dx, dy)."""
        if self._cpp is not None:
            raise ValueError("only one spin-transfer torque can be active")
        self._stt = (jx, jy, float(dx), float(dy), float(u0), float(beta))

    def add_stt_cpp(self, p, a_J, beta):
        """Slonczewski torque with polarisation p and amplitude a_J."""
        if self._stt is not None:
            raise ValueError("only one spin-transfer torque can be active")
        p = np.asarray(p, dtype=float)
        if p.size not in (3, 3 * self.n):
            raise ValueError("p must be a 3-vector or one 3-vector per site")
        self._cpp = (p, a_J, float(beta))

    def pin(self, a, pinned=True):
        for i in self._ita(a):
            self.pins[i] = 1 if pinned else 0

    def _check_spin(self, S):
        S = np.asarray(S, dtype=float).ravel()
        if S.size != 3 * self.n:
            raise ValueError(f"spin must have {3 * self.n} entries, but got {S.size}")
        return S

    def fields(self, S, zeeman=True):
        """
        Evaluates every interaction.

        Returns:
            dict: name -> (field, energy) with field of length 3n and energy of length n.
        """
        S = self._check_spin(S)
        out = {}

        def term(name, kernel, *args):
            field = np.empty(3 * self.n)
            energy = np.empty(self.n)
            kernel(S, field, energy, *args)
            out[name] = (field, energy)

        if np.any(self.J != 0):
            term('exchange', fields.compute_exch_field, self.J[0], self.J[1], self.J[2], self.ngbs)
        if self.J_bond is not None:
            term('exchange_spatial', fields.compute_exch_field_spatial, self.J_bond, self.ngbs)
        if np.any(self.Ku != 0):
            term('anisotropy', fields.compute_anis, self.Ku, self.axis)
        if self.D_bulk is not None:
            term('dmi_bulk', fields.dmi_field_bulk, self.D_bulk, self.ngbs)
        if self.D_int is not None:
            D, ngbs, nneighbours, dmi_vec = self.D_int
            term('dmi_interfacial', fields.dmi_field_interfacial_atomistic, D, ngbs, nneighbours, dmi_vec)
        if self._demag is not None:
            solver, coords, mu_s, mu_s_scale = self._demag
            field = np.empty(3 * self.n)
            energy = np.empty(self.n)
            fields.demag_full(S, field, energy, coords, mu_s, mu_s_scale, solver)
            out['demag'] = (field, energy)
        if zeeman:
            out['b_field'] = (self.B.copy(), -np.sum((S * self.B).reshape(self.n, 3), axis=1))
        return out

    def effective_field(self, S, zeeman=True):
        H = np.zeros(3 * self.n)
        for field, _ in self.fields(S, zeeman=zeeman).values():
            H += field
        return H

    def energy(self, S):
        """
        Calculates the total energy and its components for a given spin configuration.

        Returns:
            dict: energy contributions keyed by interaction name, plus 'total'.
        """
        contributions = {name: float(np.sum(e)) for name, (_, e) in self.fields(S).items()}
        contributions['total'] = sum(contributions.values())
        return contributions

    def LLG_explicit(self, t, S):
        """dS/dt for the current configuration, including any spin-transfer torque."""
        S = self._check_spin(S)
        H = self.effective_field(S)
        dS = np.empty(3 * self.n)
        if self._stt is not None:
            jx, jy, dx, dy, u0, beta = self._stt
            h_stt = np.empty(3 * self.n)
            fields.compute_stt_field(S, h_stt, jx, jy, dx, dy, self.ngbs)
            llg.llg_stt_rhs(dS, S, H, h_stt, self.alpha, beta, u0, self.gamma,
                            pins=self.pins, default_c=self.default_c)
        elif self._cpp is not None:
            p, a_J, beta = self._cpp
            llg.llg_stt_cpp(dS, S, H, p, self.alpha, self.pins, a_J, beta, self.gamma,
                            default_c=self.default_c)
        else:
            llg.llg_rhs(dS, S, H, self.alpha, self.pins, self.gamma, self.do_precession, self.default_c)
        return dS

    def jtimes(self, t, S, v):
        """
        Jacobian of LLG_explicit applied to v.

        The effective field is linear in the spins apart from the Zeeman term, so
        the field perturbation is the field of v without the external field.
        """
        if self._stt is not None or self._cpp is not None:
            raise NotImplementedError("the Jacobian action is only available without spin-transfer torques")
        S = self._check_spin(S)
        v = self._check_spin(v)
        H = self.effective_field(S)
        Hv = self.effective_field(v, zeeman=False)
        jv = np.empty(3 * self.n)
        llg.llg_rhs_jtimes(jv, S, H, v, Hv, self.alpha, self.pins, self.gamma,
                           self.do_precession, self.default_c)
        return jv

    def jacobian_operator(self, t, S):
        """The Jacobian at (t, S) as a scipy LinearOperator, e.g. for Krylov solvers."""
        S = self._check_spin(S).copy()
        N = 3 * self.n
        return scipy.sparse.linalg.LinearOperator((N, N), matvec=lambda v: self.jtimes(t, S, v), dtype=float)

    def _normalise_frames(self, M):
        M = np.ascontiguousarray(M)
        free = self.pins == 0
        if len(M) and np.any(free):
            norms = np.linalg.norm(M.reshape(len(M), self.n, 3)[:, free], axis=2)
            logger.debug("max |S| drift before normalisation: %.3e", np.abs(norms - 1.0).max())
        for frame in M:
            llg.normalise(frame, self.pins)
        return M

    def solve_LLG(self, tf, S0, t0=0.0, method='RK45', t_eval=None, **solver_kwargs):
        """
        Solves the LLG equation with scipy.integrate.solve_ivp.

        With ``default_c`` != 0 the length-restoring term of the right-hand side
        keeps |S| close to one during the integration; the stored frames are
        normalised afterwards.

        Args:
            tf (float): End time.
            S0 (np.ndarray): Initial configuration, length 3n.
            t0 (float, optional): Start time. Defaults to 0.0.
            method (str, optional): Integration method. Defaults to 'RK45'.
            t_eval (np.ndarray, optional): Times at which to store the computed solution.
            **solver_kwargs: Additional keyword arguments passed to solve_ivp.

        Returns:
            Solution: with .t of shape (T,) and .M of shape (T, 3n).
        """
        S0 = self._check_spin(S0).copy()
        llg.normalise(S0, self.pins)

        res = scipy.integrate.solve_ivp(
            self.LLG_explicit,
            (t0, tf),
            S0,
            method=method,
            t_eval=t_eval,
            **solver_kwargs
        )

        if not res.success:
            logger.warning("Solver failed: %s", res.message)

        M = self._normalise_frames(res.y.T)
        return Solution(self, res.t, M)

    def solve_LLG_implicit(self, tf, S0, t0=0.0, ncp=100, solver_kwargs=None):
        """
        Solves the LLG equation with the BDF method of CVODE (assimulo), using a
        Krylov linear solver fed by the Jacobian-vector kernel.

        Args:
            tf (float): End time.
            S0 (np.ndarray): Initial configuration, length 3n.
            t0 (float, optional): Start time.
            ncp (int, optional): Number of communication points (output steps).
            solver_kwargs (dict, optional): Options set as attributes on the CVode
                instance (e.g. 'rtol', 'atol', 'maxsteps'). No validation is performed.

        Returns:
            Solution: with .t of shape (T,) and .M of shape (T, 3n).
        """
        S0 = self._check_spin(S0).copy()
        llg.normalise(S0, self.pins)

        try:
            import assimulo.problem as apr
            import assimulo.solvers as aso
        except ImportError as exc:
            raise ImportError(
                "The 'assimulo' package is required for the implicit solver (solve_LLG_implicit). "
                "Please install it via 'pip install atomistic_llg[assimulo]' or 'pip install assimulo'."
            ) from exc

        def rhs(t, y):
            return self.LLG_explicit(t, y)

        def jacv(t, y, fy, v):
            return self.jtimes(t, y, v)

        prob = apr.Explicit_Problem(rhs, S0, t0)
        prob.jacv = jacv
        sim = aso.CVode(prob)
        sim.discr = 'BDF'
        sim.iter = 'Newton'
        sim.linear_solver = 'SPGMR'
        sim.verbosity = 50

        if isinstance(solver_kwargs, dict):
            for key, value in solver_kwargs.items():
                setattr(sim, key, value)

        t, y = sim.simulate(tf, ncp=ncp)

        M = self._normalise_frames(np.asarray(y).reshape(len(t), 3 * self.n))
        return Solution(self, np.array(t), M)

    def relax(self, tf, S0, **solver_kwargs):
        """Damping-only dynamics (no precession) towards the nearest energy minimum."""
        if np.all(np.asarray(self.alpha) == 0):
            raise ValueError("relax needs a non-zero damping alpha")
        do_precession = self.do_precession
        self.do_precession = False
        try:
            return self.solve_LLG(tf, S0, **solver_kwargs)
        finally:
            self.do_precession = do_precession

    def skyrmion_number(self, S, nx, ny):
        """Skyrmion number of the first nx*ny sites (one x-y layer)."""
        S = self._check_spin(S)
        if nx * ny > self.n:
            raise ValueError("nx*ny exceeds the number of sites")
        charge = np.empty(nx * ny)
        return diagnostics.skyrmion_number(S, charge, nx, ny, 1, self.ngbs)
