"""
Read-only diagnostics of a spin configuration: topological charge, guiding
centre and in-plane derivatives.

Note the two different edge conventions. ``skyrmion_number`` follows the
neighbour table but treats any entry <= 0 as missing, so site 0 never acts as
a neighbour. ``compute_guiding_center`` works on the grid and simply drops the
missing side at the edges, while ``compute_px_py`` always wraps around.
Changing either would change the values at the sample edges.
"""
import numpy as np

from .layout import as_grid, as_sites
from .vector import volume

WIDE_PI = np.longdouble('3.1415926535897932384626433832795')


def _neighbours_positive(s, nb, slot):
    idx = nb[:, slot]
    present = idx > 0
    out = s[np.where(present, idx, 0)]
    out[~present] = 0.0
    return out


def skyrmion_number(spin, charge, nx, ny, nz, ngbs):
    """
    Discrete skyrmion number (finite spin chirality) of an x-y layer.

    For every site of the first nx*ny sites the chirality density is

        q_i = [S_i . (S_-x x S_-y) + S_i . (S_+x x S_+y)] / (8 pi)

    as in PRL 108, 017601 (2012): the two triangles (i, i-1, j-1) and
    (i, i+1, j+1) tile the unit cell, and summing over the lattice covers every
    triangle once. A full skyrmion gives +-1.

    Args:
        spin (np.ndarray): interleaved spins; a single layer may be passed as a slice.
        charge (np.ndarray): output, receives q_i for the first nx*ny sites.
        ngbs (np.ndarray): 6-slot neighbour table of the same sites.

    Returns:
        float: the sum of q_i.
    """
    s = as_sites(spin)
    nxy = nx * ny
    assert s.shape[0] >= nxy and charge.size >= nxy
    nb = np.asarray(ngbs).reshape(-1, 6)[:nxy]
    S = s[:nxy]

    q = volume(S, _neighbours_positive(s, nb, 0), _neighbours_positive(s, nb, 2))
    q += volume(S, _neighbours_positive(s, nb, 1), _neighbours_positive(s, nb, 3))
    q = (q.astype(np.longdouble) / (8 * WIDE_PI)).astype(np.float64)

    charge[:nxy] = q
    return float(np.sum(charge[:nxy]))


def compute_guiding_center(spin, nx, ny, nz):
    """
    Guiding centre (Rx, Ry) = (sum i q / sum q, sum j q / sum q) of the k=0 layer.

    See Papanicolaou and Tomaras, Nucl. Phys. B 360, 425 (1991). Neighbours
    outside the grid contribute zero instead of wrapping. Returns NaN when the
    total chirality vanishes.
    """
    g = as_grid(spin, nx, ny, nz)[0]
    zero = np.zeros_like(g)

    prev_x, prev_y = zero.copy(), zero.copy()
    prev_x[:, 1:] = g[:, :-1]
    prev_y[1:, :] = g[:-1, :]
    next_x, next_y = zero.copy(), zero.copy()
    next_x[:, :-1] = g[:, 1:]
    next_y[:-1, :] = g[1:, :]

    q = volume(g, prev_x, prev_y) + volume(g, next_x, next_y)
    i = np.arange(nx)[None, :]
    j = np.arange(ny)[:, None]

    total = np.float64(np.sum(q))
    with np.errstate(divide='ignore', invalid='ignore'):
        Rx = np.float64(np.sum(i * q)) / total
        Ry = np.float64(np.sum(j * q)) / total
    return float(Rx), float(Ry)


def compute_px_py(spin, nx, ny, nz, px, py):
    """Central differences (S(x+1) - S(x-1)) / 2 along x and y, periodic in both."""
    g = as_grid(spin, nx, ny, nz)
    dx = (np.roll(g, -1, axis=2) - np.roll(g, 1, axis=2)) / 2.0
    dy = (np.roll(g, -1, axis=1) - np.roll(g, 1, axis=1)) / 2.0
    px[...] = dx.reshape(px.shape)
    py[...] = dy.reshape(py.shape)
