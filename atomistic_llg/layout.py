"""
Spin array layout helpers.

All kernels in this package use the interleaved layout
``[Sx0, Sy0, Sz0, Sx1, Sy1, Sz1, ...]``. Grid-aware kernels additionally
assume the site ordering ``index = i + nx * (j + ny * k)``, i.e. x varies
fastest. Data in the component-major layout ``[Sx0 .. Sx(n-1), Sy0 .. , Sz0 ..]``
has to be converted at the boundary with the functions below.
"""
import numpy as np


def as_sites(spin):
    """Returns an (n, 3) view of an interleaved spin array (no copy for contiguous input)."""
    spin = np.asarray(spin)
    assert spin.size % 3 == 0, "spin array length must be a multiple of 3"
    return spin.reshape(-1, 3)


def as_grid(spin, nx, ny, nz):
    """Returns an (nz, ny, nx, 3) view of an interleaved spin array."""
    return np.asarray(spin).reshape(nz, ny, nx, 3)


def to_component_major(spin):
    """Converts an interleaved array to three contiguous blocks (x block, y block, z block)."""
    return np.ascontiguousarray(as_sites(spin).T).ravel()


def to_interleaved(spin):
    """Converts a component-major array back to the interleaved layout."""
    spin = np.asarray(spin)
    assert spin.size % 3 == 0, "spin array length must be a multiple of 3"
    return np.ascontiguousarray(spin.reshape(3, -1).T).ravel()


def site_index(i, j, k, nx, ny):
    return i + nx * (j + ny * k)
