"""
Random sampling services consumed by the Monte Carlo and thermal kernels.

The generator algorithm is numpy's default (PCG64); kernels only rely on the
three capabilities exposed here, so any object offering the same methods can
be injected instead.
"""
import numpy as np


class RandomSource:
    """Seedable uniform / Gaussian sampler."""

    def __init__(self, seed=None):
        if isinstance(seed, np.random.Generator):
            self.generator = seed
        else:
            self.generator = np.random.default_rng(seed)

    def single_random(self):
        """One uniform draw in [0, 1)."""
        return float(self.generator.random())

    def uniform(self, n):
        return self.generator.random(n)

    def gauss_random_vec(self, n):
        """n independent standard normal samples."""
        return self.generator.standard_normal(n)

    def random_spin_uniform(self, n):
        """
        n unit vectors uniformly distributed on the sphere, interleaved (length 3n).

        Normalised Gaussian triples are isotropic, which gives the uniform measure.
        """
        v = self.gauss_random_vec(3 * n).reshape(n, 3)
        norm = np.linalg.norm(v, axis=1)
        # a zero triple has probability zero but would poison the sweep
        while np.any(norm == 0.0):
            bad = norm == 0.0
            v[bad] = self.gauss_random_vec(3 * int(bad.sum())).reshape(-1, 3)
            norm = np.linalg.norm(v, axis=1)
        return (v / norm[:, None]).ravel()


def as_random_source(rng):
    """Accepts None, an int seed, a numpy Generator or a RandomSource-like object."""
    if isinstance(rng, RandomSource) or hasattr(rng, 'random_spin_uniform'):
        return rng
    return RandomSource(rng)
