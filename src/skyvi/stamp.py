"""
Observed single-band image data and source influence regions.

Pixel conventions:
  - `pixels[row, col]`; a location is (x, y) = (col, row) in 0-based pixel
    units, with pixel centers on integer coordinates.
  - All stamps of one field share this pixel frame; the optional astropy WCS
    maps sky coordinates onto it (`world_to_pixel_values` is 0-based).
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from astropy.wcs import WCS

from .layout import N_BANDS


@dataclass(frozen=True)
class GaussianMixturePsf:
    """
    Point-spread function as a mixture of bivariate Gaussians.

    Args:
      weights: (K,) component weights (typically summing to 1).
      means: (K, 2) component offsets in pixels, (x, y).
      covs: (K, 2, 2) component covariances in pixels^2.
    """

    weights: np.ndarray
    means: np.ndarray
    covs: np.ndarray

    def __post_init__(self) -> None:
        w = np.asarray(self.weights, dtype=np.float64).reshape(-1)
        m = np.asarray(self.means, dtype=np.float64)
        c = np.asarray(self.covs, dtype=np.float64)
        k = int(w.size)
        if k < 1:
            raise ValueError("PSF needs at least one component.")
        if m.shape != (k, 2) or c.shape != (k, 2, 2):
            raise ValueError(f"PSF means/covs must have shapes ({k},2) and ({k},2,2); got {m.shape}, {c.shape}.")
        if not np.allclose(c, np.swapaxes(c, 1, 2)):
            raise ValueError("PSF covariances must be symmetric.")
        det = c[:, 0, 0] * c[:, 1, 1] - c[:, 0, 1] * c[:, 1, 0]
        if np.any(c[:, 0, 0] <= 0.0) or np.any(det <= 0.0):
            raise ValueError("PSF covariances must be positive definite.")
        object.__setattr__(self, "weights", w)
        object.__setattr__(self, "means", m)
        object.__setattr__(self, "covs", c)

    @classmethod
    def isotropic(cls, weights, sigmas) -> "GaussianMixturePsf":
        """Centered round components with standard deviations `sigmas` (pixels)."""
        w = np.asarray(weights, dtype=np.float64).reshape(-1)
        s = np.asarray(sigmas, dtype=np.float64).reshape(-1)
        if w.shape != s.shape:
            raise ValueError("weights and sigmas must have the same length.")
        covs = (s * s)[:, None, None] * np.eye(2)[None, :, :]
        return cls(weights=w, means=np.zeros((w.size, 2)), covs=covs)

    @property
    def n_components(self) -> int:
        return int(self.weights.size)

    @property
    def max_sigma(self) -> float:
        """Largest per-component standard deviation along any axis."""
        return float(np.sqrt(np.max(np.linalg.eigvalsh(self.covs))))

    @property
    def mean_cov(self) -> np.ndarray:
        """(2, 2) weighted second moment about the origin."""
        w = self.weights / np.sum(self.weights)
        outer = self.means[:, :, None] * self.means[:, None, :]
        return np.einsum("k,kij->ij", w, self.covs + outer)

    def at(self, x: float, y: float) -> "GaussianMixturePsf":
        """Kernel valid at pixel (x, y). This model is spatially constant."""
        return self


@dataclass(frozen=True)
class ImageStamp:
    """
    One band of a field.

    Args:
      band: band index in [0, N_BANDS).
      pixels: (H, W) calibrated electron counts; non-finite entries are masked.
      variance: (H, W) per-pixel noise variance (> 0 where used).
      sky: scalar or (H, W) background in electrons.
      psf: object with `.at(x, y) -> GaussianMixturePsf`.
      wcs: astropy WCS onto this pixel frame, or None when positions are pixels.
    """

    band: int
    pixels: np.ndarray
    variance: np.ndarray
    sky: np.ndarray | float
    psf: GaussianMixturePsf
    wcs: WCS | None = None

    def __post_init__(self) -> None:
        b = int(self.band)
        if b < 0 or b >= N_BANDS:
            raise ValueError(f"band must be in [0, {N_BANDS}), got {self.band}.")
        px = np.asarray(self.pixels, dtype=np.float64)
        if px.ndim != 2:
            raise ValueError(f"pixels must be 2D, got shape {px.shape}.")
        var = np.asarray(self.variance, dtype=np.float64)
        if var.shape != px.shape:
            raise ValueError(f"variance shape {var.shape} must match pixels {px.shape}.")
        sky = np.broadcast_to(np.asarray(self.sky, dtype=np.float64), px.shape).copy()
        object.__setattr__(self, "band", b)
        object.__setattr__(self, "pixels", px)
        object.__setattr__(self, "variance", var)
        object.__setattr__(self, "sky", sky)

    @property
    def H(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def W(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def usable(self) -> np.ndarray:
        """(H, W) bool: pixels that enter the likelihood."""
        return np.isfinite(self.pixels) & np.isfinite(self.variance) & (self.variance > 0.0)

    def pix_from_world(self, world) -> np.ndarray:
        """(2,) sky coordinates -> (x, y) pixel coordinates."""
        world = np.asarray(world, dtype=np.float64).reshape(2)
        if self.wcs is None:
            return world.copy()
        x, y = self.wcs.world_to_pixel_values(world[0], world[1])
        return np.array([float(x), float(y)], dtype=np.float64)

    def world_from_pix(self, pix) -> np.ndarray:
        """(2,) pixel coordinates -> sky coordinates."""
        pix = np.asarray(pix, dtype=np.float64).reshape(2)
        if self.wcs is None:
            return pix.copy()
        a, d = self.wcs.pixel_to_world_values(pix[0], pix[1])
        return np.array([float(a), float(d)], dtype=np.float64)


@dataclass(frozen=True)
class Patch:
    """
    Fixed square influence region of one source.

    The region is chosen once at initialization so the set of pixels a source
    touches does not change while its position moves.
    """

    center: np.ndarray
    radius: float

    def __post_init__(self) -> None:
        c = np.asarray(self.center, dtype=np.float64).reshape(2)
        r = float(self.radius)
        if not np.all(np.isfinite(c)) or not np.isfinite(r) or r <= 0.0:
            raise ValueError(f"Patch needs a finite center and positive radius, got {c}, {r}.")
        object.__setattr__(self, "center", c)
        object.__setattr__(self, "radius", r)

    def window(self, shape: tuple[int, int]) -> tuple[slice, slice] | None:
        """(row_slice, col_slice) clipped to an (H, W) image, or None if disjoint."""
        H, W = int(shape[0]), int(shape[1])
        cx, cy = float(self.center[0]), float(self.center[1])
        r = float(self.radius)
        x0 = max(0, int(np.floor(cx - r)))
        x1 = min(W, int(np.ceil(cx + r)) + 1)
        y0 = max(0, int(np.floor(cy - r)))
        y1 = min(H, int(np.ceil(cy + r)) + 1)
        if x0 >= x1 or y0 >= y1:
            return None
        return slice(y0, y1), slice(x0, x1)
