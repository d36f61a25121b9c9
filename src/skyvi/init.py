"""
Initial guesses for `ModelParams`: from a catalog, or from peaks in the data.

Both providers set brightness so that E[l] matches the flux estimate, start
the brightness and color variances small, and fix each source's influence
patch from the PSF and the (estimated) galaxy scale.
"""

from __future__ import annotations

import numpy as np
from scipy import ndimage

from .layout import N_BANDS, N_COMPONENTS, N_PARAMS, REF_BAND, ids
from .model import CatalogEntry, ModelParams, PriorParams, default_prior
from .render import influence_radius
from .stamp import Patch

INIT_R2 = 1e-3
INIT_C2 = 1e-3
FLUX_FLOOR = 1e-2


def _stamps_by_band(stamps) -> dict:
    out = {}
    for st in stamps:
        if st.band in out:
            raise ValueError(f"More than one stamp for band {st.band}.")
        out[st.band] = st
    return out


def _set_brightness(vs: np.ndarray, i: int, fluxes: np.ndarray) -> None:
    f = np.maximum(np.asarray(fluxes, dtype=np.float64), FLUX_FLOOR)
    vs[ids.r2[i]] = INIT_R2
    vs[ids.r1[i]] = np.log(f[REF_BAND]) - 0.5 * INIT_R2
    vs[ids.c1[:, i]] = np.log(f[1:] / f[:-1])
    vs[ids.c2[:, i]] = INIT_C2


def init_source(
    pos_pix,
    star_fluxes,
    gal_fluxes,
    *,
    is_star: bool,
    frac_dev: float = 0.5,
    axis: float = 0.8,
    angle: float = 0.0,
    scale: float = 1.0,
) -> np.ndarray:
    """One constrained parameter vector from point estimates."""
    vs = np.zeros((N_PARAMS,), dtype=np.float64)
    vs[ids.a] = [0.8, 0.2] if is_star else [0.2, 0.8]
    vs[ids.u] = np.asarray(pos_pix, dtype=np.float64).reshape(2)
    _set_brightness(vs, 0, star_fluxes)
    _set_brightness(vs, 1, gal_fluxes)
    vs[ids.k] = 1.0 / N_COMPONENTS
    vs[ids.e_dev] = float(np.clip(frac_dev, 0.01, 0.99))
    vs[ids.e_axis] = float(np.clip(axis, 0.01, 0.99))
    vs[ids.e_angle] = float(angle)
    vs[ids.e_scale] = float(max(scale, 0.2))
    return vs


def _patch_for(stamps, pos_pix: np.ndarray, scale: float) -> Patch:
    radius = max(influence_radius(st.psf.at(*pos_pix), scale) for st in stamps)
    return Patch(center=pos_pix, radius=radius)


def cat_init(catalog: list[CatalogEntry], stamps, prior: PriorParams | None = None) -> ModelParams:
    """
    Seed one source per catalog entry.

    Positions go through the WCS of the first stamp.
    """
    if not catalog:
        raise ValueError("Catalog is empty.")
    if not stamps:
        raise ValueError("Need at least one stamp.")
    vp = []
    patches = []
    for ce in catalog:
        pos = stamps[0].pix_from_world(ce.pos)
        vs = init_source(
            pos,
            ce.star_fluxes,
            ce.gal_fluxes,
            is_star=ce.is_star,
            frac_dev=ce.gal_frac_dev,
            axis=ce.gal_ab,
            angle=ce.gal_angle,
            scale=ce.gal_scale,
        )
        vp.append(vs)
        patches.append(_patch_for(stamps, pos, ce.gal_scale))
    return ModelParams(vp=vp, pp=default_prior() if prior is None else prior, patches=patches)


def _snr_image(stamps) -> np.ndarray:
    snr = np.zeros(stamps[0].pixels.shape, dtype=np.float64)
    for st in stamps:
        if st.pixels.shape != snr.shape:
            raise ValueError("All stamps of a field must share one pixel grid.")
        ok = st.usable
        snr[ok] += (st.pixels[ok] - st.sky[ok]) / np.sqrt(st.variance[ok])
    return snr


def _moments(img: np.ndarray, row: int, col: int, half: int):
    """Centroid (x, y) and (2, 2) second moments of the positive light around a pixel."""
    H, W = img.shape
    r0, r1 = max(0, row - half), min(H, row + half + 1)
    c0, c1 = max(0, col - half), min(W, col + half + 1)
    w = np.clip(img[r0:r1, c0:c1], 0.0, None)
    yy, xx = np.mgrid[r0:r1, c0:c1].astype(np.float64)
    tot = float(np.sum(w))
    if tot <= 0.0:
        return np.array([float(col), float(row)]), np.eye(2), 0.0
    cx = float(np.sum(w * xx) / tot)
    cy = float(np.sum(w * yy) / tot)
    dx = xx - cx
    dy = yy - cy
    m = np.array(
        [
            [np.sum(w * dx * dx), np.sum(w * dx * dy)],
            [np.sum(w * dx * dy), np.sum(w * dy * dy)],
        ]
    ) / tot
    return np.array([cx, cy]), m, tot


def peak_init(
    stamps,
    prior: PriorParams | None = None,
    *,
    threshold_snr: float = 5.0,
    min_separation: int = 3,
    smooth_sigma: float = 1.0,
    moment_radius: int = 8,
    verbose: bool = False,
) -> ModelParams:
    """
    One source per local maximum of the smoothed, band-summed S/N image.

    Sources come out in raster order of their peak pixel. Fluxes are summed
    in a moment-sized aperture; shape starts from PSF-corrected second
    moments of the reference band.
    """
    if not stamps:
        raise ValueError("Need at least one stamp.")
    by_band = _stamps_by_band(stamps)
    ref = by_band.get(REF_BAND, stamps[0])

    snr = ndimage.gaussian_filter(_snr_image(stamps), float(smooth_sigma))
    local_max = snr == ndimage.maximum_filter(snr, size=2 * int(min_separation) + 1, mode="nearest")
    peaks = np.argwhere(local_max & (snr > float(threshold_snr)))
    if peaks.shape[0] == 0:
        raise ValueError(f"No peaks above S/N {threshold_snr} found.")

    vp = []
    patches = []
    ref_resid = np.where(ref.usable, ref.pixels - ref.sky, 0.0)
    for row, col in peaks:
        _, m_big, _ = _moments(ref_resid, int(row), int(col), int(moment_radius))
        pos, _, _ = _moments(ref_resid, int(row), int(col), 1)

        psf = ref.psf.at(*pos)
        m_int = m_big - psf.mean_cov
        evals, evecs = np.linalg.eigh(0.5 * (m_int + m_int.T))
        lam_min = max(float(evals[0]), 0.05)
        lam_max = max(float(evals[1]), lam_min)
        # half-light radius of a Gaussian is 1.18 sigma
        scale = float(max(1.0, 1.18 * np.sqrt(lam_max)))
        axis = float(np.clip(np.sqrt(lam_min / lam_max), 0.1, 0.9))
        angle = float(np.arctan2(evecs[1, 1], evecs[0, 1]))

        aperture = max(3.0, 2.0 * scale)
        fluxes = np.full((N_BANDS,), FLUX_FLOOR)
        for b, st in by_band.items():
            yy, xx = np.mgrid[0 : st.H, 0 : st.W]
            inside = ((xx - pos[0]) ** 2 + (yy - pos[1]) ** 2 <= aperture * aperture) & st.usable
            fluxes[b] = max(float(np.sum(st.pixels[inside] - st.sky[inside])), FLUX_FLOOR)
        fluxes = _fill_missing_bands(fluxes, set(by_band))

        vs = init_source(pos, fluxes, fluxes, is_star=False, frac_dev=0.5, axis=axis, angle=angle, scale=scale)
        vs[ids.a] = 0.5
        vp.append(vs)
        patches.append(_patch_for(stamps, pos, max(scale, 2.0)))

    if verbose:
        print(f"[peak] n_sources={len(vp)} threshold_snr={threshold_snr}", flush=True)
        for s, vs in enumerate(vp):
            print(
                f"[peak] source {s}: u=({vs[ids.u[0]]:.2f}, {vs[ids.u[1]]:.2f}) "
                f"scale={vs[ids.e_scale]:.2f} radius={patches[s].radius:.1f}",
                flush=True,
            )
    return ModelParams(vp=vp, pp=default_prior() if prior is None else prior, patches=patches)


def _fill_missing_bands(fluxes: np.ndarray, present: set) -> np.ndarray:
    """Copy the nearest observed band's flux into bands without a stamp."""
    out = fluxes.copy()
    have = sorted(present)
    for b in range(N_BANDS):
        if b not in present:
            nearest = min(have, key=lambda h: abs(h - b))
            out[b] = fluxes[nearest]
    return out
