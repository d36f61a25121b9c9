"""
Evidence lower bound of the variational source model, with exact gradient.

Expected log-likelihood. For band b and source s, with type probabilities a_i,
brightness moments L1_i = E[l_i], L2_i = E[l_i^2] and unit-flux profiles f_i:

  E_s  = sum_i a_i L1_i f_i
  F2_s = sum_i a_i L2_i f_i^2
  V_s  = F2_s - E_s^2

Contributions of overlapping sources add in expected-flux space:
  E = sky + sum_s E_s,   V = sum_s V_s
and each usable pixel contributes the Gaussian expected log density
  -0.5 ((x - E)^2 + V) / var - 0.5 log(2 pi var).
For a single source this is linear in a, which keeps the optimum of every
non-indicator parameter independent of the indicator.

KL terms (closed form, subtracted from the likelihood):
  indicator          sum_i a_i log(a_i / pi_i)
  brightness         a_i KL(N(r1_i, r2_i) || N(m_i, v_i))
  mixture weights    a_i sum_d k_di log(k_di / kappa_di)
  colors             a_i k_di KL(N(c1_i, diag c2_i) || N(mu_di, Sigma_di))
"""

from __future__ import annotations

import numpy as np

from .layout import N_COLORS, N_COMPONENTS, N_PARAMS, N_TYPES, ids
from .model import ModelParams
from .render import brightness_moments, galaxy_profile, star_profile
from .sensitive import SensitiveFloat

_LOG_2PI = float(np.log(2.0 * np.pi))


def _check_model(mp: ModelParams) -> None:
    if mp.S < 1:
        raise ValueError("Model has no sources.")
    if len(mp.patches) != mp.S:
        raise ValueError(f"Need one patch per source: {len(mp.patches)} patches, {mp.S} sources.")
    for s, vs in enumerate(mp.vp):
        vs = np.asarray(vs)
        if vs.shape != (N_PARAMS,):
            raise ValueError(f"Source {s}: parameter vector must have shape ({N_PARAMS},), got {vs.shape}.")


def _check_finite(sf: SensitiveFloat, what: str) -> SensitiveFloat:
    if not np.isfinite(sf.v) or not np.all(np.isfinite(sf.d)):
        raise FloatingPointError(f"{what} is not finite (v={sf.v}).")
    return sf


def _source_terms(vs: np.ndarray, b: int, psf, xs: np.ndarray, ys: np.ndarray):
    """
    Expected flux of one source on a pixel set, and its derivatives.

    Returns:
      E, F2: (P,) first and second moments of the source's flux.
      dE, dF2: (N_PARAMS, P) derivatives with respect to `vs`.
    """
    l1, l2, dl1, dl2 = brightness_moments(vs, b)
    u = vs[ids.u]
    f_star, df_star = star_profile(psf, xs, ys, u)
    f_gal, df_gal = galaxy_profile(
        psf, xs, ys, u, vs[ids.e_dev], vs[ids.e_axis], vs[ids.e_angle], vs[ids.e_scale]
    )
    a = vs[ids.a]
    fs = (f_star, f_gal)

    E = np.zeros(xs.shape, dtype=np.float64)
    F2 = np.zeros(xs.shape, dtype=np.float64)
    dE = np.zeros((N_PARAMS,) + xs.shape, dtype=np.float64)
    dF2 = np.zeros((N_PARAMS,) + xs.shape, dtype=np.float64)
    for i in range(N_TYPES):
        f = fs[i]
        f_sq = f * f
        E += a[i] * l1[i] * f
        F2 += a[i] * l2[i] * f_sq
        dE[ids.a[i]] += l1[i] * f
        dF2[ids.a[i]] += l2[i] * f_sq
        dE += np.outer(a[i] * dl1[i], f)
        dF2 += np.outer(a[i] * dl2[i], f_sq)

    # Position and shape enter through the profiles.
    dE[ids.u] += a[0] * l1[0] * df_star + a[1] * l1[1] * df_gal[0:2]
    dF2[ids.u] += 2.0 * f_star * (a[0] * l2[0] * df_star) + 2.0 * f_gal * (a[1] * l2[1] * df_gal[0:2])
    shape_ids = [ids.e_dev, ids.e_axis, ids.e_angle, ids.e_scale]
    dE[shape_ids] += a[1] * l1[1] * df_gal[2:6]
    dF2[shape_ids] += 2.0 * f_gal * (a[1] * l2[1] * df_gal[2:6])
    return E, F2, dE, dF2


def elbo_likelihood(stamps, mp: ModelParams) -> SensitiveFloat:
    """
    Expected log-likelihood of the stamps under the variational model.

    Args:
      stamps: sequence of ImageStamp sharing one pixel frame.
      mp: model parameters; `mp.patches[s]` fixes the pixels source s touches.

    Returns:
      SensitiveFloat with gradient over every source's constrained parameters.
    """
    _check_model(mp)
    accum = SensitiveFloat.zero(mp.S)
    n_touched = np.zeros((mp.S,), dtype=np.int64)

    for stamp in stamps:
        usable = stamp.usable
        shape = stamp.pixels.shape
        E_img = stamp.sky.copy()
        V_img = np.zeros(shape, dtype=np.float64)

        # Fixed source order keeps the floating-point reduction reproducible.
        terms = []
        for s in range(mp.S):
            win = mp.patches[s].window(shape)
            if win is None:
                terms.append(None)
                continue
            mask = usable[win]
            if not np.any(mask):
                terms.append(None)
                continue
            rows, cols = np.nonzero(mask)
            rows = rows + win[0].start
            cols = cols + win[1].start
            psf = stamp.psf.at(*mp.patches[s].center)
            E_s, F2_s, dE_s, dF2_s = _source_terms(
                np.asarray(mp.vp[s], dtype=np.float64), stamp.band, psf, cols.astype(np.float64), rows.astype(np.float64)
            )
            E_img[rows, cols] += E_s
            V_img[rows, cols] += F2_s - E_s * E_s
            terms.append((rows, cols, E_s, dE_s, dF2_s))
            n_touched[s] += rows.size

        x = stamp.pixels[usable]
        var = stamp.variance[usable]
        resid = x - E_img[usable]
        accum.v += float(np.sum(-0.5 * (resid * resid + V_img[usable]) / var - 0.5 * (_LOG_2PI + np.log(var))))

        for s, term in enumerate(terms):
            if term is None:
                continue
            rows, cols, E_s, dE_s, dF2_s = term
            inv_var = 1.0 / stamp.variance[rows, cols]
            r = (stamp.pixels[rows, cols] - E_img[rows, cols]) * inv_var
            dV_s = dF2_s - 2.0 * E_s * dE_s
            accum.d[:, s] += dE_s @ r - 0.5 * (dV_s @ inv_var)

    missing = np.nonzero(n_touched == 0)[0]
    if missing.size:
        raise ValueError(f"Sources {missing.tolist()} have no usable pixels in any stamp.")
    return _check_finite(accum, "Expected log-likelihood")


# --- KL terms ---


def subtract_kl_a(s: int, mp: ModelParams, accum: SensitiveFloat) -> None:
    """Indicator KL of source s."""
    vs = mp.vp[s]
    a = vs[ids.a]
    log_ratio = np.log(a) - np.log(mp.pp.a)
    d_s = np.zeros((N_PARAMS,), dtype=np.float64)
    d_s[ids.a] = -(log_ratio + 1.0)
    accum.add_source(s, -float(np.sum(a * log_ratio)), d_s)


def subtract_kl_r(i: int, s: int, mp: ModelParams, accum: SensitiveFloat) -> None:
    """Log-brightness KL of type i, source s (weighted by a_i)."""
    vs = mp.vp[s]
    a_i = vs[ids.a[i]]
    r1 = vs[ids.r1[i]]
    r2 = vs[ids.r2[i]]
    m = mp.pp.r_mean[i]
    v = mp.pp.r_var[i]
    diff = r1 - m
    kl = 0.5 * (np.log(v / r2) + (r2 + diff * diff) / v - 1.0)
    d_s = np.zeros((N_PARAMS,), dtype=np.float64)
    d_s[ids.a[i]] = -kl
    d_s[ids.r1[i]] = -a_i * diff / v
    d_s[ids.r2[i]] = -a_i * 0.5 * (1.0 / v - 1.0 / r2)
    accum.add_source(s, -float(a_i * kl), d_s)


def subtract_kl_k(i: int, s: int, mp: ModelParams, accum: SensitiveFloat) -> None:
    """Color-mixture-weight KL of type i, source s (weighted by a_i)."""
    vs = mp.vp[s]
    a_i = vs[ids.a[i]]
    k_ids = ids.k[:, i]
    k = vs[k_ids]
    log_ratio = np.log(k) - np.log(mp.pp.k[:, i])
    kl = float(np.sum(k * log_ratio))
    d_s = np.zeros((N_PARAMS,), dtype=np.float64)
    d_s[ids.a[i]] = -kl
    d_s[k_ids] = -a_i * (log_ratio + 1.0)
    accum.add_source(s, -a_i * kl, d_s)


def subtract_kl_c(d: int, i: int, s: int, mp: ModelParams, accum: SensitiveFloat) -> None:
    """Color KL against prior component d of type i, source s (weighted by a_i k_di)."""
    vs = mp.vp[s]
    a_i = vs[ids.a[i]]
    k_id = ids.k[d, i]
    k_di = vs[k_id]
    c1_ids = ids.c1[:, i]
    c2_ids = ids.c2[:, i]
    c1 = vs[c1_ids]
    c2 = vs[c2_ids]

    prec = mp.pp.c_precision(d, i)
    diff = mp.pp.c_mean[:, d, i] - c1
    prec_diff = prec @ diff
    kl = 0.5 * (
        float(np.sum(np.diag(prec) * c2))
        + float(diff @ prec_diff)
        - N_COLORS
        + mp.pp.c_logdet(d, i)
        - float(np.sum(np.log(c2)))
    )
    w = a_i * k_di
    d_s = np.zeros((N_PARAMS,), dtype=np.float64)
    d_s[ids.a[i]] = -k_di * kl
    d_s[k_id] = -a_i * kl
    d_s[c1_ids] = -w * (-prec_diff)
    d_s[c2_ids] = -w * 0.5 * (np.diag(prec) - 1.0 / c2)
    accum.add_source(s, -w * kl, d_s)


def subtract_kl(mp: ModelParams, accum: SensitiveFloat) -> SensitiveFloat:
    """Subtract every KL term of every source from `accum` (in place)."""
    _check_model(mp)
    if accum.n_sources != mp.S:
        raise ValueError(f"accum covers {accum.n_sources} sources, model has {mp.S}.")
    for s in range(mp.S):
        subtract_kl_a(s, mp, accum)
        for i in range(N_TYPES):
            subtract_kl_r(i, s, mp, accum)
            subtract_kl_k(i, s, mp, accum)
            for d in range(N_COMPONENTS):
                subtract_kl_c(d, i, s, mp, accum)
    return accum


def elbo(stamps, mp: ModelParams) -> SensitiveFloat:
    """Expected log-likelihood minus every KL term."""
    accum = elbo_likelihood(stamps, mp)
    subtract_kl(mp, accum)
    return _check_finite(accum, "ELBO")
