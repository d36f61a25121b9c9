"""
Tests for the initialization providers and the synthetic field generator.
"""
from __future__ import annotations

from dataclasses import replace

import numpy as np
import pytest
from astropy.wcs import WCS
from sample_data import (
    SAMPLE_GALAXY_FLUXES,
    SAMPLE_STAR_FLUXES,
    SKY,
    empty_stamps,
    gen_two_body_dataset,
    sample_ce,
    true_colors,
)

from skyvi.init import INIT_R2, cat_init, init_source, peak_init
from skyvi.layout import N_BANDS, REF_BAND, ids
from skyvi.model import default_prior
from skyvi.synthetic import gen_stamps, render_entry


def _scaled_wcs() -> WCS:
    w = WCS(naxis=2)
    w.wcs.crpix = [1.0, 1.0]
    w.wcs.cdelt = [0.5, 0.5]
    w.wcs.crval = [10.0, 20.0]
    return w


# --- Catalog initialization ---

def test_init_source_brightness_matches_fluxes():
    """E[l] in the reference band and the color means reproduce the given fluxes."""
    vs = init_source([3.0, 4.0], SAMPLE_STAR_FLUXES, SAMPLE_GALAXY_FLUXES, is_star=True, scale=2.5)
    assert vs[ids.a[0]] == pytest.approx(0.8)
    assert np.exp(vs[ids.r1[0]] + 0.5 * vs[ids.r2[0]]) == pytest.approx(SAMPLE_STAR_FLUXES[REF_BAND])
    assert np.exp(vs[ids.r1[1]] + 0.5 * vs[ids.r2[1]]) == pytest.approx(SAMPLE_GALAXY_FLUXES[REF_BAND])
    np.testing.assert_allclose(vs[ids.c1[:, 0]], true_colors(SAMPLE_STAR_FLUXES))
    np.testing.assert_allclose(vs[ids.c1[:, 1]], true_colors(SAMPLE_GALAXY_FLUXES))
    assert vs[ids.r2[0]] == INIT_R2
    np.testing.assert_allclose(vs[ids.k], 0.5)
    assert vs[ids.e_scale] == 2.5


def test_cat_init_goes_through_wcs():
    """Catalog sky positions are converted to pixels through the stamp WCS."""
    stamps = [replace(st, wcs=_scaled_wcs()) for st in empty_stamps()]
    ce = sample_ce([14.0, 25.0], False)
    mp = cat_init([ce], stamps)
    np.testing.assert_allclose(mp.vp[0][ids.u], [8.0, 10.0], atol=1e-9)
    np.testing.assert_allclose(mp.patches[0].center, [8.0, 10.0], atol=1e-9)
    assert mp.vp[0][ids.a[1]] == pytest.approx(0.8)
    np.testing.assert_allclose(stamps[0].world_from_pix([8.0, 10.0]), [14.0, 25.0], atol=1e-9)


def test_cat_init_patch_covers_galaxy():
    """Patch radius grows with galaxy scale and never drops below the PSF reach."""
    stamps = empty_stamps()
    small = cat_init([replace(sample_ce([5.0, 5.0], True), gal_scale=0.1)], stamps)
    big = cat_init([sample_ce([5.0, 5.0], False)], stamps)
    assert small.patches[0].radius >= 8.0
    assert big.patches[0].radius > small.patches[0].radius


def test_cat_init_uses_given_prior_and_rejects_empty():
    """An explicit prior is carried; an empty catalog is an error."""
    stamps = empty_stamps()
    pp = replace(default_prior(), a=np.array([0.5, 0.5]))
    mp = cat_init([sample_ce([5.0, 5.0], True)], stamps, prior=pp)
    assert mp.pp is pp
    with pytest.raises(ValueError):
        cat_init([], stamps)


# --- Peak initialization ---

def test_peak_init_finds_both_sources():
    """Two well-separated sources give two peaks near the true positions."""
    stamps, bodies = gen_two_body_dataset()
    mp = peak_init(stamps)
    assert mp.S == 2
    for ce in bodies:
        dist = min(np.hypot(*(vs[ids.u] - ce.pos)) for vs in mp.vp)
        assert dist < 0.5
    for vs in mp.vp:
        np.testing.assert_allclose(vs[ids.a], 0.5)


def test_peak_init_flux_estimate():
    """Aperture fluxes put the star's reference-band brightness in the right range."""
    stamps0 = empty_stamps(40, 40)
    ce = sample_ce([19.2, 20.4], True)
    mp = peak_init(gen_stamps(stamps0, [ce]))
    assert mp.S == 1
    l_ref = np.exp(mp.vp[0][ids.r1[0]] + 0.5 * mp.vp[0][ids.r2[0]])
    assert l_ref == pytest.approx(SAMPLE_STAR_FLUXES[REF_BAND], rel=0.2)
    assert mp.vp[0][ids.e_scale] >= 1.0


def test_peak_init_without_sources_raises():
    """A blank field has nothing to initialize."""
    with pytest.raises(ValueError, match="No peaks"):
        peak_init(empty_stamps())


# --- Synthetic generation ---

def test_gen_stamps_noise_free():
    """Without an rng, pixels equal sky plus the rendered source and variance matches."""
    stamps0 = empty_stamps()
    ce = sample_ce([10.1, 12.2], True)
    stamps = gen_stamps(stamps0, [ce])
    assert len(stamps) == N_BANDS
    for st, st0 in zip(stamps, stamps0, strict=True):
        np.testing.assert_allclose(st.pixels, SKY + render_entry(st0, ce))
        np.testing.assert_array_equal(st.variance, st.pixels)
        assert st.psf is st0.psf
        np.testing.assert_array_equal(st0.pixels, SKY)
    # Almost all light lands in a 20x23 stamp around the center.
    total = np.sum(stamps[REF_BAND].pixels - SKY)
    assert total == pytest.approx(SAMPLE_STAR_FLUXES[REF_BAND], rel=1e-3)


def test_gen_stamps_poisson():
    """With an rng, pixels are integer draws around the expectation."""
    stamps0 = empty_stamps()
    ce = sample_ce([8.5, 9.6], False)
    stamps = gen_stamps(stamps0, [ce], rng=np.random.default_rng(7))
    expected = gen_stamps(stamps0, [ce])
    for st, ex in zip(stamps, expected, strict=True):
        np.testing.assert_array_equal(st.pixels, np.round(st.pixels))
        np.testing.assert_allclose(st.variance, ex.pixels)
        resid = (st.pixels - ex.pixels) / np.sqrt(ex.pixels)
        assert abs(float(np.mean(resid))) < 0.2
        assert 0.7 < float(np.std(resid)) < 1.3
