"""
Synthetic fields shared by the tests: a 2-component PSF, flat sky, identity
WCS and noise-free renderings of a known star and galaxy.
"""
from __future__ import annotations

import numpy as np
import pytest
from astropy.wcs import WCS

from skyvi.init import cat_init
from skyvi.layout import N_BANDS, REF_BAND, ids
from skyvi.model import CatalogEntry
from skyvi.stamp import GaussianMixturePsf, ImageStamp
from skyvi.synthetic import gen_stamps

SAMPLE_STAR_FLUXES = np.array([3000.0, 6500.0, 10000.0, 12000.0, 13000.0])
SAMPLE_GALAXY_FLUXES = np.array([2500.0, 5500.0, 10000.0, 14000.0, 16500.0])
SKY = 100.0


def identity_wcs() -> WCS:
    """WCS whose world coordinates equal 0-based pixel coordinates."""
    w = WCS(naxis=2)
    w.wcs.crpix = [1.0, 1.0]
    w.wcs.cdelt = [1.0, 1.0]
    w.wcs.crval = [0.0, 0.0]
    return w


def sample_psf() -> GaussianMixturePsf:
    return GaussianMixturePsf.isotropic([0.7, 0.3], [1.0, 2.0])


def empty_stamps(H: int = 20, W: int = 23) -> list[ImageStamp]:
    wcs = identity_wcs()
    return [
        ImageStamp(
            band=b,
            pixels=np.full((H, W), SKY),
            variance=np.full((H, W), SKY),
            sky=SKY,
            psf=sample_psf(),
            wcs=wcs,
        )
        for b in range(N_BANDS)
    ]


def sample_ce(pos, is_star: bool) -> CatalogEntry:
    return CatalogEntry(
        pos=np.asarray(pos, dtype=np.float64),
        is_star=is_star,
        star_fluxes=SAMPLE_STAR_FLUXES,
        gal_fluxes=SAMPLE_GALAXY_FLUXES,
        gal_frac_dev=0.1,
        gal_ab=0.7,
        gal_angle=np.pi / 4.0,
        gal_scale=4.0,
    )


def perturb(vs: np.ndarray) -> None:
    """Move a source away from the truth so the optimizer has work to do."""
    vs[ids.a] = [0.5, 0.5]
    vs[ids.u] += [0.4, -0.3]
    vs[ids.r1] += np.log(1.3)
    vs[ids.c1] += 0.05
    vs[ids.e_dev] = 0.3
    vs[ids.e_axis] = 0.6
    vs[ids.e_angle] = 0.6
    vs[ids.e_scale] = 3.4


def gen_sample_star_dataset(*, perturbed: bool = True):
    stamps0 = empty_stamps()
    ce = sample_ce([10.1, 12.2], True)
    stamps = gen_stamps(stamps0, [ce])
    mp = cat_init([ce], stamps)
    if perturbed:
        perturb(mp.vp[0])
    return stamps, mp, ce


def gen_sample_galaxy_dataset(*, perturbed: bool = True):
    stamps0 = empty_stamps()
    ce = sample_ce([8.5, 9.6], False)
    stamps = gen_stamps(stamps0, [ce])
    mp = cat_init([ce], stamps)
    if perturbed:
        perturb(mp.vp[0])
    return stamps, mp, ce


def gen_two_body_dataset():
    stamps0 = empty_stamps(45, 45)
    bodies = [sample_ce([11.1, 21.2], True), sample_ce([28.3, 31.4], False)]
    return gen_stamps(stamps0, bodies), bodies


def brightness_hat(vs: np.ndarray, i: int) -> float:
    """E[l] in the reference band for source type i."""
    return float(np.exp(vs[ids.r1[i]] + 0.5 * vs[ids.r2[i]]))


def true_colors(fluxes: np.ndarray) -> np.ndarray:
    return np.log(fluxes[1:] / fluxes[:-1])


def verify_sample_star(vs: np.ndarray, pos) -> None:
    assert vs[ids.a[1]] == pytest.approx(0.01, abs=1e-3)
    assert vs[ids.u[0]] == pytest.approx(pos[0], abs=0.1)
    assert vs[ids.u[1]] == pytest.approx(pos[1], abs=0.1)
    assert brightness_hat(vs, 0) / SAMPLE_STAR_FLUXES[REF_BAND] == pytest.approx(1.0, abs=0.01)
    np.testing.assert_allclose(vs[ids.c1[:, 0]], true_colors(SAMPLE_STAR_FLUXES), atol=0.2)


def verify_sample_galaxy(vs: np.ndarray, pos) -> None:
    assert vs[ids.a[1]] == pytest.approx(0.99, abs=1e-3)
    assert vs[ids.u[0]] == pytest.approx(pos[0], abs=0.1)
    assert vs[ids.u[1]] == pytest.approx(pos[1], abs=0.1)
    assert vs[ids.e_axis] == pytest.approx(0.7, abs=0.05)
    assert vs[ids.e_dev] == pytest.approx(0.1, abs=0.08)
    assert vs[ids.e_scale] == pytest.approx(4.0, abs=0.2)
    phi = vs[ids.e_angle] - np.floor(vs[ids.e_angle] / np.pi) * np.pi
    assert phi == pytest.approx(np.pi / 4.0, abs=5.0 * np.pi / 180.0)
    assert brightness_hat(vs, 1) / SAMPLE_GALAXY_FLUXES[REF_BAND] == pytest.approx(1.0, abs=0.01)
    np.testing.assert_allclose(vs[ids.c1[:, 1]], true_colors(SAMPLE_GALAXY_FLUXES), atol=0.2)
