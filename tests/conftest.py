"""Shared test helpers: a structured-grid neighbour table and spin textures."""

import numpy as np


def neighbours(nx, ny, nz, xperiodic=False, yperiodic=False, zperiodic=False):
    """
    6-slot neighbour table (-x, +x, -y, +y, -z, +z) for site index i + nx*(j + ny*k).
    Axes of length one have no neighbours; missing neighbours are -1.
    """
    ngbs = np.full((nz, ny, nx, 6), -1, dtype=np.int64)
    idx = np.arange(nx * ny * nz).reshape(nz, ny, nx)
    for slot0, axis, size, periodic in ((0, 2, nx, xperiodic), (2, 1, ny, yperiodic), (4, 0, nz, zperiodic)):
        if size < 2:
            continue
        minus = np.roll(idx, 1, axis=axis)
        plus = np.roll(idx, -1, axis=axis)
        if not periodic:
            first = [slice(None)] * 3
            last = [slice(None)] * 3
            first[axis] = 0
            last[axis] = size - 1
            minus[tuple(first)] = -1
            plus[tuple(last)] = -1
        ngbs[..., slot0] = minus
        ngbs[..., slot0 + 1] = plus
    return ngbs.ravel()


def random_spins(n, seed=0):
    s = np.random.default_rng(seed).standard_normal((n, 3))
    return (s / np.linalg.norm(s, axis=1)[:, None]).ravel()


def skyrmion(nx, ny, radius, chirality=1.0):
    """Neel skyrmion centred in an nx x ny layer, core pointing down, background up."""
    j, i = np.meshgrid(np.arange(ny), np.arange(nx), indexing='ij')
    x = i - (nx - 1) / 2.0
    y = j - (ny - 1) / 2.0
    r = np.hypot(x, y)
    theta = np.pi * np.exp(-(r / radius) ** 2 * np.log(2.0))
    theta = np.where(r < 1e-12, np.pi, theta)
    phi = np.arctan2(y, x)
    s = np.stack([
        chirality * np.sin(theta) * np.cos(phi),
        chirality * np.sin(theta) * np.sin(phi),
        np.cos(theta),
    ], axis=-1)
    return s.reshape(-1, 3).ravel()
