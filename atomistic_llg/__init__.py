from .model import Model
from .solution import Solution
from .montecarlo import MonteCarlo, run_step_mc, run_step_mc_checkerboard, checkerboard_order
from .sampling import RandomSource
from .fields import (
    compute_exch_field,
    compute_exch_field_spatial,
    compute_anis,
    dmi_field_bulk,
    dmi_field_interfacial_atomistic,
    compute_stt_field,
    demag_full,
    DemagSolver,
)
from .energy import compute_exch_energy, dmi_energy
from .diagnostics import skyrmion_number, compute_guiding_center, compute_px_py
from .llg import (
    llg_rhs,
    llg_rhs_jtimes,
    llg_s_rhs,
    llg_stt_rhs,
    llg_stt_cpp,
    llg_rhs_dw,
    thermal_field,
    normalise,
)
