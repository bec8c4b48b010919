import numpy as np


class Solution:
    """
    Trajectory returned by the model solvers.

    Attributes:
        model: the Model that produced the trajectory.
        t (np.ndarray): time points, shape (T,).
        M (np.ndarray): spin configurations, shape (T, 3n).
        E (list[dict]|None): energy contributions per frame, filled by calculate_energy().
    """

    def __init__(self, model, t, M):
        self.model = model
        self.t = np.asarray(t, dtype=float)
        self.M = np.asarray(M, dtype=float)
        if self.M.shape[0] != self.t.shape[0]:
            raise ValueError(f"M has {self.M.shape[0]} frames but t has {self.t.shape[0]} points")
        self.E = None

    def __len__(self):
        return len(self.t)

    @property
    def final(self):
        return self.M[-1]

    def calculate_energy(self):
        self.E = [self.model.energy(M) for M in self.M]
        return self.E

    def skyrmion_number(self, nx, ny):
        """Skyrmion number of every frame."""
        return np.array([self.model.skyrmion_number(M, nx, ny) for M in self.M])

    def average(self):
        """Mean spin of every frame, shape (T, 3)."""
        return self.M.reshape(len(self.t), -1, 3).mean(axis=1)
