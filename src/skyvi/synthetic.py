"""
Synthetic observations rendered with the same profiles as the likelihood.
"""

from __future__ import annotations

from dataclasses import replace

import numpy as np

from .model import CatalogEntry
from .render import galaxy_profile, star_profile


def render_entry(stamp, ce: CatalogEntry) -> np.ndarray:
    """(H, W) expected electrons of one catalog entry in `stamp`'s band."""
    pos = stamp.pix_from_world(ce.pos)
    yy, xx = np.mgrid[0 : stamp.H, 0 : stamp.W].astype(np.float64)
    psf = stamp.psf.at(*pos)
    if ce.is_star:
        f, _ = star_profile(psf, xx, yy, pos, with_grad=False)
        return float(ce.star_fluxes[stamp.band]) * f
    f, _ = galaxy_profile(
        psf, xx, yy, pos, ce.gal_frac_dev, ce.gal_ab, ce.gal_angle, ce.gal_scale, with_grad=False
    )
    return float(ce.gal_fluxes[stamp.band]) * f


def gen_stamps(stamps0, catalog: list[CatalogEntry], *, rng: np.random.Generator | None = None) -> list:
    """
    Replace each stamp's pixels with sky plus the rendered catalog.

    Args:
      stamps0: template stamps (band, sky, PSF and WCS are kept).
      catalog: entries to render.
      rng: Poisson noise source; None gives the noise-free expectation.

    Returns:
      New stamps whose variance is the expected count (shot noise).
    """
    out = []
    for st in stamps0:
        expected = st.sky.copy()
        for ce in catalog:
            expected += render_entry(st, ce)
        pixels = expected.copy() if rng is None else rng.poisson(expected).astype(np.float64)
        out.append(replace(st, pixels=pixels, variance=expected))
    return out
