"""
Catalog entries, prior hyperparameters and the per-field model state.

`PriorParams` is immutable and passed explicitly with each `ModelParams`, so
fields optimized side by side never share prior state. Use
`dataclasses.replace` to derive a modified prior.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from .layout import N_BANDS, N_COLORS, N_COMPONENTS, N_TYPES, check_param_vector
from .stamp import Patch


@dataclass(frozen=True)
class CatalogEntry:
    """
    One catalog source used to seed the variational parameters.

    Args:
      pos: (2,) sky coordinates (pixel coordinates when stamps carry no WCS).
      is_star: catalog star/galaxy call.
      star_fluxes: (N_BANDS,) fluxes in electrons under the star hypothesis.
      gal_fluxes: (N_BANDS,) fluxes in electrons under the galaxy hypothesis.
      gal_frac_dev: de Vaucouleurs fraction in [0, 1].
      gal_ab: minor/major axis ratio in (0, 1].
      gal_angle: major-axis angle from +x, radians.
      gal_scale: half-light radius, pixels.
    """

    pos: np.ndarray
    is_star: bool
    star_fluxes: np.ndarray
    gal_fluxes: np.ndarray
    gal_frac_dev: float
    gal_ab: float
    gal_angle: float
    gal_scale: float

    def __post_init__(self) -> None:
        pos = np.asarray(self.pos, dtype=np.float64).reshape(-1)
        sf = np.asarray(self.star_fluxes, dtype=np.float64).reshape(-1)
        gf = np.asarray(self.gal_fluxes, dtype=np.float64).reshape(-1)
        if pos.shape != (2,):
            raise ValueError(f"pos must have 2 entries, got {pos.shape}.")
        if sf.shape != (N_BANDS,) or gf.shape != (N_BANDS,):
            raise ValueError(f"fluxes must have {N_BANDS} entries, got {sf.shape} and {gf.shape}.")
        if float(self.gal_scale) <= 0.0:
            raise ValueError("gal_scale must be positive.")
        object.__setattr__(self, "pos", pos)
        object.__setattr__(self, "is_star", bool(self.is_star))
        object.__setattr__(self, "star_fluxes", sf)
        object.__setattr__(self, "gal_fluxes", gf)
        object.__setattr__(self, "gal_frac_dev", float(self.gal_frac_dev))
        object.__setattr__(self, "gal_ab", float(self.gal_ab))
        object.__setattr__(self, "gal_angle", float(self.gal_angle))
        object.__setattr__(self, "gal_scale", float(self.gal_scale))


@dataclass(frozen=True)
class PriorParams:
    """
    Prior hyperparameters, per source type i (0 = star, 1 = galaxy).

    Args:
      a: (N_TYPES,) prior type probabilities.
      r_mean, r_var: (N_TYPES,) Gaussian prior on log reference-band brightness.
      k: (N_COMPONENTS, N_TYPES) color-prior mixture weights.
      c_mean: (N_COLORS, N_COMPONENTS, N_TYPES) component color means.
      c_cov: (N_COLORS, N_COLORS, N_COMPONENTS, N_TYPES) component color covariances.
    """

    a: np.ndarray
    r_mean: np.ndarray
    r_var: np.ndarray
    k: np.ndarray
    c_mean: np.ndarray
    c_cov: np.ndarray

    def __post_init__(self) -> None:
        a = np.asarray(self.a, dtype=np.float64)
        r_mean = np.asarray(self.r_mean, dtype=np.float64)
        r_var = np.asarray(self.r_var, dtype=np.float64)
        k = np.asarray(self.k, dtype=np.float64)
        c_mean = np.asarray(self.c_mean, dtype=np.float64)
        c_cov = np.asarray(self.c_cov, dtype=np.float64)

        if a.shape != (N_TYPES,) or r_mean.shape != (N_TYPES,) or r_var.shape != (N_TYPES,):
            raise ValueError(f"a, r_mean, r_var must have shape ({N_TYPES},).")
        if k.shape != (N_COMPONENTS, N_TYPES):
            raise ValueError(f"k must have shape ({N_COMPONENTS}, {N_TYPES}), got {k.shape}.")
        if c_mean.shape != (N_COLORS, N_COMPONENTS, N_TYPES):
            raise ValueError(f"c_mean must have shape ({N_COLORS}, {N_COMPONENTS}, {N_TYPES}), got {c_mean.shape}.")
        if c_cov.shape != (N_COLORS, N_COLORS, N_COMPONENTS, N_TYPES):
            raise ValueError(
                f"c_cov must have shape ({N_COLORS}, {N_COLORS}, {N_COMPONENTS}, {N_TYPES}), got {c_cov.shape}."
            )
        if np.any(a <= 0.0) or not np.isclose(np.sum(a), 1.0):
            raise ValueError("a must be a positive probability vector.")
        if np.any(k <= 0.0) or not np.allclose(np.sum(k, axis=0), 1.0):
            raise ValueError("each column of k must be a positive probability vector.")
        if np.any(r_var <= 0.0):
            raise ValueError("r_var must be positive.")

        c_cov_inv = np.empty_like(c_cov)
        c_cov_logdet = np.empty((N_COMPONENTS, N_TYPES), dtype=np.float64)
        for d in range(N_COMPONENTS):
            for i in range(N_TYPES):
                cov = c_cov[:, :, d, i]
                if not np.allclose(cov, cov.T):
                    raise ValueError(f"c_cov[:, :, {d}, {i}] must be symmetric.")
                sign, logdet = np.linalg.slogdet(cov)
                if sign <= 0:
                    raise ValueError(f"c_cov[:, :, {d}, {i}] must be positive definite.")
                c_cov_inv[:, :, d, i] = np.linalg.inv(cov)
                c_cov_logdet[d, i] = logdet

        object.__setattr__(self, "a", a)
        object.__setattr__(self, "r_mean", r_mean)
        object.__setattr__(self, "r_var", r_var)
        object.__setattr__(self, "k", k)
        object.__setattr__(self, "c_mean", c_mean)
        object.__setattr__(self, "c_cov", c_cov)
        object.__setattr__(self, "_c_cov_inv", c_cov_inv)
        object.__setattr__(self, "_c_cov_logdet", c_cov_logdet)

    def c_precision(self, d: int, i: int) -> np.ndarray:
        """(N_COLORS, N_COLORS) inverse color covariance of component d, type i."""
        return self._c_cov_inv[:, :, int(d), int(i)]

    def c_logdet(self, d: int, i: int) -> float:
        return float(self._c_cov_logdet[int(d), int(i)])


def default_prior() -> PriorParams:
    """
    Broad default prior.

    Brightness is in log electrons; the two color components per type are a
    "blue" and a "red" population.
    """
    c_mean = np.empty((N_COLORS, N_COMPONENTS, N_TYPES), dtype=np.float64)
    c_mean[:, 0, 0] = [0.8, 0.4, 0.2, 0.1]
    c_mean[:, 1, 0] = [1.6, 1.0, 0.6, 0.4]
    c_mean[:, 0, 1] = [0.8, 0.6, 0.35, 0.15]
    c_mean[:, 1, 1] = [1.8, 1.3, 0.9, 0.6]
    c_cov = np.zeros((N_COLORS, N_COLORS, N_COMPONENTS, N_TYPES), dtype=np.float64)
    for d in range(N_COMPONENTS):
        for i in range(N_TYPES):
            c_cov[:, :, d, i] = 0.1 * np.eye(N_COLORS) + 0.02
    return PriorParams(
        a=np.array([0.28, 0.72]),
        r_mean=np.array([8.0, 8.0]),
        r_var=np.array([4.0, 4.0]),
        k=np.full((N_COMPONENTS, N_TYPES), 1.0 / N_COMPONENTS),
        c_mean=c_mean,
        c_cov=c_cov,
    )


@dataclass
class ModelParams:
    """
    Mutable per-field inference state.

    Args:
      vp: list of (N_PARAMS,) constrained parameter vectors, one per source.
      pp: prior hyperparameters (never optimized).
      patches: per-source influence regions, fixed at initialization.
    """

    vp: list[np.ndarray]
    pp: PriorParams = field(default_factory=default_prior)
    patches: list[Patch] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.vp = [check_param_vector(vs).copy() for vs in self.vp]
        if len(self.patches) != len(self.vp):
            raise ValueError(f"Need one patch per source: {len(self.patches)} patches, {len(self.vp)} sources.")

    @property
    def S(self) -> int:
        return len(self.vp)

    def copy(self) -> "ModelParams":
        return ModelParams(vp=[vs.copy() for vs in self.vp], pp=self.pp, patches=list(self.patches))
