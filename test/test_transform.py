"""
Tests for the constrained <-> unconstrained transform.
"""
from __future__ import annotations

import numpy as np
import pytest
from sample_data import gen_sample_galaxy_dataset

from skyvi.elbo import elbo
from skyvi.layout import N_PARAMS, free_ids_except, gauge_ids, ids
from skyvi.optimize import default_bounds
from skyvi.transform import DataTransform, free_transform, rect_transform


def _random_vp(rng: np.random.Generator, n: int) -> list[np.ndarray]:
    vp = []
    for _ in range(n):
        vs = np.zeros((N_PARAMS,))
        a1 = rng.uniform(0.01, 0.99)
        vs[ids.a] = [1.0 - a1, a1]
        vs[ids.u] = rng.uniform(-5.0, 50.0, size=2)
        vs[ids.r1] = rng.uniform(-2.0, 12.0, size=2)
        vs[ids.r2] = rng.uniform(1e-4, 1.0, size=2)
        vs[ids.c1] = rng.normal(size=ids.c1.shape)
        vs[ids.c2] = rng.uniform(1e-4, 1.0, size=ids.c2.shape)
        k1 = rng.uniform(0.01, 0.99, size=2)
        vs[ids.k] = np.stack([1.0 - k1, k1])
        vs[ids.e_dev] = rng.uniform(0.01, 0.99)
        vs[ids.e_axis] = rng.uniform(0.01, 0.99)
        vs[ids.e_angle] = rng.uniform(-3.0, 3.0)
        vs[ids.e_scale] = rng.uniform(0.2, 10.0)
        vp.append(vs)
    return vp


# --- Round trip ---

def test_rect_round_trip():
    """to_constrained(to_unconstrained(v)) == v to 1e-8 relative."""
    rng = np.random.default_rng(1)
    for _ in range(20):
        vp = _random_vp(rng, 3)
        back = rect_transform.to_constrained(rect_transform.to_unconstrained(vp))
        for vs, vs2 in zip(vp, back, strict=True):
            np.testing.assert_allclose(vs2, vs, rtol=1e-8, atol=1e-14)
        rect_transform.check_round_trip(vp)


def test_gauge_slots_are_zero():
    """Simplex blocks are stored as log-odds against their first entry."""
    vp = _random_vp(np.random.default_rng(2), 1)
    x = rect_transform.to_unconstrained(vp)[0]
    np.testing.assert_array_equal(x[gauge_ids], 0.0)
    a = vp[0][ids.a]
    assert x[ids.a[1]] == pytest.approx(np.log(a[1] / a[0]))
    assert x[ids.e_scale] == pytest.approx(np.log(vp[0][ids.e_scale]))


def test_free_transform_round_trip():
    """The bounded transform also round-trips inside its boxes."""
    stamps, mp, _ = gen_sample_galaxy_dataset()
    trans = free_transform(stamps, mp)
    back = trans.to_constrained(trans.to_unconstrained(mp.vp))
    np.testing.assert_allclose(back[0], mp.vp[0], rtol=1e-8)
    with pytest.raises(ValueError):
        trans.to_unconstrained(mp.vp + mp.vp)


def test_round_trip_failure_is_loud():
    """An unnormalized simplex cannot round-trip and raises."""
    vp = _random_vp(np.random.default_rng(3), 1)
    vp[0][ids.a] = [0.3, 0.3]
    with pytest.raises(RuntimeError, match="Internal error"):
        rect_transform.check_round_trip(vp)


def test_out_of_domain_rejected():
    """Values outside a constrained domain cannot be mapped."""
    vp = _random_vp(np.random.default_rng(4), 1)
    vp[0][ids.e_scale] = -1.0
    with pytest.raises(ValueError):
        rect_transform.to_unconstrained(vp)


# --- Gradient rescaling ---

@pytest.mark.parametrize("use_free", [False, True])
def test_transformed_gradient_matches_finite_differences(use_free):
    """Rescaled gradient equals d/dx of f(to_constrained(x))."""
    stamps, mp, _ = gen_sample_galaxy_dataset()
    mp.vp[0][ids.a] = [0.3, 0.7]
    mp.vp[0][ids.k[:, 1]] = [0.4, 0.6]
    trans = free_transform(stamps, mp) if use_free else rect_transform

    sf_x = trans.transform_sensitive_float(elbo(stamps, mp), mp)
    x0 = trans.to_unconstrained(mp.vp)[0]

    def f_of_x(x: np.ndarray) -> float:
        work = mp.copy()
        work.vp = trans.to_constrained([x])
        return elbo(stamps, work).v

    for i in free_ids_except():
        h = 1e-6 * max(1.0, abs(x0[i]))
        xp = x0.copy()
        xm = x0.copy()
        xp[i] += h
        xm[i] -= h
        fd = (f_of_x(xp) - f_of_x(xm)) / (2.0 * h)
        assert sf_x.d[i, 0] == pytest.approx(fd, rel=1e-4, abs=1e-3)


def test_transform_rejects_hessian():
    """Hessian-carrying values are not rescaled silently."""
    from skyvi.sensitive import SensitiveFloat

    stamps, mp, _ = gen_sample_galaxy_dataset()
    with pytest.raises(ValueError):
        rect_transform.transform_sensitive_float(SensitiveFloat.zero(1, with_hessian=True), mp)


# --- Bounds ---

def test_bounds_to_free_contains_interior_points():
    """Mapped bounds bracket the image of any point inside the constrained box."""
    stamps, mp, _ = gen_sample_galaxy_dataset()
    lo, hi = default_bounds(mp)
    x_lo, x_hi = rect_transform.bounds_to_free(lo, hi)
    x = rect_transform.to_unconstrained(mp.vp)[0]
    free = free_ids_except()
    assert np.all(x_lo[0, free] <= x[free])
    assert np.all(x[free] <= x_hi[0, free])
    np.testing.assert_array_equal(x_lo[0, gauge_ids], 0.0)
    assert x_lo[0, ids.a[1]] == pytest.approx(np.log(0.01 / 0.99))
    assert x_lo[0, ids.e_scale] == pytest.approx(np.log(0.2))
    assert np.isinf(x_hi[0, ids.e_scale])


def test_box_validation():
    """Boxes on simplex groups or with empty ranges are rejected."""
    lo = np.full((1, N_PARAMS), np.nan)
    hi = np.full((1, N_PARAMS), np.nan)
    lo[0, ids.a[1]] = 0.0
    hi[0, ids.a[1]] = 1.0
    with pytest.raises(ValueError):
        DataTransform("bad", box_lower=lo, box_upper=hi)
    lo = np.full((1, N_PARAMS), np.nan)
    hi = np.full((1, N_PARAMS), np.nan)
    lo[0, ids.u[0]] = 5.0
    hi[0, ids.u[0]] = 1.0
    with pytest.raises(ValueError):
        DataTransform("bad", box_lower=lo, box_upper=hi)
