import numpy as np


def cross_x(a0, a1, a2, b0, b1, b2):
    return a1 * b2 - a2 * b1


def cross_y(a0, a1, a2, b0, b1, b2):
    return a2 * b0 - a0 * b2


def cross_z(a0, a1, a2, b0, b1, b2):
    return a0 * b1 - a1 * b0


def cross(a, b):
    """Row-wise cross product of two (..., 3) arrays."""
    a = np.asarray(a)
    b = np.asarray(b)
    out = np.empty(np.broadcast(a, b).shape)
    out[..., 0] = cross_x(a[..., 0], a[..., 1], a[..., 2], b[..., 0], b[..., 1], b[..., 2])
    out[..., 1] = cross_y(a[..., 0], a[..., 1], a[..., 2], b[..., 0], b[..., 1], b[..., 2])
    out[..., 2] = cross_z(a[..., 0], a[..., 1], a[..., 2], b[..., 0], b[..., 1], b[..., 2])
    return out


def dot(a, b):
    """Row-wise dot product of two (..., 3) arrays."""
    return np.einsum('...i,...i->...', a, b)


def volume(S, Si, Sj):
    """Scalar triple product S . (Si x Sj), row-wise."""
    return dot(S, cross(Si, Sj))
