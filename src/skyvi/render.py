"""
Forward model: pixel profiles of point sources and galaxies, and per-band
brightness moments, with analytic derivatives.

Profiles are evaluated at pixel centers. With PSF component k (weight w_k,
offset mu_k, covariance P_k):

  star(m)   = sum_k w_k N(m; u + mu_k, P_k)
  galaxy(m) = sum_k w_k [ e_dev   sum_j A^dev_j N(m; u + mu_k, V^dev_j XiXi + P_k)
                        + (1 - e_dev) sum_j A^exp_j N(m; u + mu_k, V^exp_j XiXi + P_k) ]

where XiXi = e_scale^2 R(e_angle) diag(1, e_axis^2) R(e_angle)^T and (A, V) are
the Gaussian-mixture approximations of the de Vaucouleurs and exponential
profiles at unit half-light radius (Hogg & Lang 2013).

For N = N(m; mean, Sigma), y = m - mean, g = Sigma^{-1} y:
  dN/dmean  = N g
  dN/dSigma along direction D = 0.5 N (g^T D g - tr(Sigma^{-1} D))

Brightness in band b for type i is log-normal with
  mean  r1_i + s_b . c1[:, i]
  var   r2_i + (s_b * s_b) . c2[:, i]
where s_b is +1 on colors ref <= j < b and -1 on colors b <= j < ref.
"""

from __future__ import annotations

import numpy as np

from .layout import N_BANDS, N_COLORS, N_PARAMS, N_TYPES, REF_BAND, ids

_EXP_AMP = np.array([2.34853813e-03, 3.07995260e-02, 2.23364214e-01, 1.17949102e00, 4.33873750e00, 5.99820770e00])
_EXP_VAR = np.array([1.20078965e-03, 8.84526493e-03, 3.91463084e-02, 1.39976817e-01, 4.60962500e-01, 1.50159566e00])
_DEV_AMP = np.array(
    [4.26347652e-02, 2.40127183e-01, 6.85907632e-01, 1.51937350e00, 2.83627243e00, 4.46467501e00, 5.72440830e00, 5.60989349e00]
)
_DEV_VAR = np.array(
    [2.23759216e-04, 1.00220099e-03, 4.18731126e-03, 1.69432589e-02, 6.84850479e-02, 2.87207080e-01, 1.33320254e00, 8.40215071e00]
)

EXP_AMP = _EXP_AMP / np.sum(_EXP_AMP)
EXP_VAR = _EXP_VAR
DEV_AMP = _DEV_AMP / np.sum(_DEV_AMP)
DEV_VAR = _DEV_VAR

MIN_PATCH_RADIUS = 5.0


def band_signs(b: int) -> np.ndarray:
    """(N_COLORS,) signed path from the reference band to band b."""
    b = int(b)
    if b < 0 or b >= N_BANDS:
        raise ValueError(f"band must be in [0, {N_BANDS}), got {b}.")
    s = np.zeros((N_COLORS,), dtype=np.float64)
    if b > REF_BAND:
        s[REF_BAND:b] = 1.0
    elif b < REF_BAND:
        s[b:REF_BAND] = -1.0
    return s


def band_fluxes(ref_flux: float, colors: np.ndarray) -> np.ndarray:
    """(N_BANDS,) fluxes from the reference-band flux and log band ratios."""
    colors = np.asarray(colors, dtype=np.float64).reshape(N_COLORS)
    return np.array([float(ref_flux) * np.exp(band_signs(b) @ colors) for b in range(N_BANDS)])


def brightness_moments(vs: np.ndarray, b: int) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    First and second moments of the band-b brightness, per source type.

    Returns:
      l1: (N_TYPES,) E[l_b]
      l2: (N_TYPES,) E[l_b^2]
      dl1, dl2: (N_TYPES, N_PARAMS) derivatives with respect to `vs`.
    """
    s = band_signs(b)
    s2 = s * s
    l1 = np.zeros((N_TYPES,), dtype=np.float64)
    l2 = np.zeros((N_TYPES,), dtype=np.float64)
    dl1 = np.zeros((N_TYPES, N_PARAMS), dtype=np.float64)
    dl2 = np.zeros((N_TYPES, N_PARAMS), dtype=np.float64)
    for i in range(N_TYPES):
        c1_ids = ids.c1[:, i]
        c2_ids = ids.c2[:, i]
        mu = vs[ids.r1[i]] + s @ vs[c1_ids]
        var = vs[ids.r2[i]] + s2 @ vs[c2_ids]
        l1[i] = np.exp(mu + 0.5 * var)
        l2[i] = np.exp(2.0 * mu + 2.0 * var)

        dl1[i, ids.r1[i]] = l1[i]
        dl1[i, ids.r2[i]] = 0.5 * l1[i]
        dl1[i, c1_ids] = s * l1[i]
        dl1[i, c2_ids] = 0.5 * s2 * l1[i]

        dl2[i, ids.r1[i]] = 2.0 * l2[i]
        dl2[i, ids.r2[i]] = 2.0 * l2[i]
        dl2[i, c1_ids] = 2.0 * s * l2[i]
        dl2[i, c2_ids] = 2.0 * s2 * l2[i]
    return l1, l2, dl1, dl2


def galaxy_xixi(e_axis: float, e_angle: float, e_scale: float) -> tuple[np.ndarray, np.ndarray]:
    """
    Galaxy shape covariance and its derivatives.

    Returns:
      xixi: (2, 2) shape covariance at unit profile variance.
      dxixi: (3, 2, 2) derivatives with respect to (e_axis, e_angle, e_scale).
    """
    q = float(e_axis)
    c = float(np.cos(e_angle))
    sn = float(np.sin(e_angle))
    s2 = float(e_scale) ** 2
    q2 = q * q

    xx = s2 * (c * c + q2 * sn * sn)
    xy = s2 * (1.0 - q2) * c * sn
    yy = s2 * (sn * sn + q2 * c * c)
    xixi = np.array([[xx, xy], [xy, yy]])

    d_axis = s2 * np.array([[2.0 * q * sn * sn, -2.0 * q * c * sn], [-2.0 * q * c * sn, 2.0 * q * c * c]])
    t = s2 * (1.0 - q2)
    d_angle = np.array([[-2.0 * t * c * sn, t * (c * c - sn * sn)], [t * (c * c - sn * sn), 2.0 * t * c * sn]])
    d_scale = 2.0 * xixi / float(e_scale)
    return xixi, np.stack([d_axis, d_angle, d_scale])


def _bvn(dx: np.ndarray, dy: np.ndarray, cov: np.ndarray):
    """Density at offsets (dx, dy) from the mean, Sigma^{-1} y, and Sigma^{-1} entries."""
    sxx, sxy, syy = float(cov[0, 0]), float(cov[0, 1]), float(cov[1, 1])
    det = sxx * syy - sxy * sxy
    if det <= 0.0 or sxx <= 0.0:
        raise ValueError(f"Covariance is not positive definite: {cov.tolist()}.")
    ixx, ixy, iyy = syy / det, -sxy / det, sxx / det
    gx = ixx * dx + ixy * dy
    gy = ixy * dx + iyy * dy
    p = np.exp(-0.5 * (dx * gx + dy * gy)) / (2.0 * np.pi * np.sqrt(det))
    return p, gx, gy, (ixx, ixy, iyy)


def _cov_sens(p, gx, gy, inv, dcov: np.ndarray) -> np.ndarray:
    ixx, ixy, iyy = inv
    dxx, dxy, dyy = dcov[0, 0], dcov[0, 1], dcov[1, 1]
    quad = dxx * gx * gx + 2.0 * dxy * gx * gy + dyy * gy * gy
    tr = ixx * dxx + 2.0 * ixy * dxy + iyy * dyy
    return 0.5 * p * (quad - tr)


def star_profile(psf, xs: np.ndarray, ys: np.ndarray, u, *, with_grad: bool = True):
    """
    Unit-flux point source at `u` observed through `psf`.

    Args:
      psf: GaussianMixturePsf.
      xs, ys: pixel-center coordinates (any matching shape).
      u: (2,) source position.

    Returns:
      f: profile, same shape as xs.
      df: (2, *xs.shape) derivatives with respect to u, or None.
    """
    xs = np.asarray(xs, dtype=np.float64)
    ys = np.asarray(ys, dtype=np.float64)
    u = np.asarray(u, dtype=np.float64).reshape(2)
    f = np.zeros(xs.shape, dtype=np.float64)
    df = np.zeros((2,) + xs.shape, dtype=np.float64) if with_grad else None
    for w_k, mu_k, cov_k in zip(psf.weights, psf.means, psf.covs, strict=True):
        dx = xs - (u[0] + mu_k[0])
        dy = ys - (u[1] + mu_k[1])
        p, gx, gy, _ = _bvn(dx, dy, cov_k)
        f += w_k * p
        if with_grad:
            df[0] += w_k * p * gx
            df[1] += w_k * p * gy
    return f, df


def galaxy_profile(
    psf,
    xs: np.ndarray,
    ys: np.ndarray,
    u,
    e_dev: float,
    e_axis: float,
    e_angle: float,
    e_scale: float,
    *,
    with_grad: bool = True,
):
    """
    Unit-flux galaxy at `u` observed through `psf`.

    Returns:
      f: profile, same shape as xs.
      df: (6, *xs.shape) derivatives with respect to
          (u_x, u_y, e_dev, e_axis, e_angle, e_scale), or None.
    """
    xs = np.asarray(xs, dtype=np.float64)
    ys = np.asarray(ys, dtype=np.float64)
    u = np.asarray(u, dtype=np.float64).reshape(2)
    xixi, dxixi = galaxy_xixi(e_axis, e_angle, e_scale)

    f = np.zeros(xs.shape, dtype=np.float64)
    df = np.zeros((6,) + xs.shape, dtype=np.float64) if with_grad else None
    for prof_weight, sign, amps, variances in (
        (float(e_dev), 1.0, DEV_AMP, DEV_VAR),
        (1.0 - float(e_dev), -1.0, EXP_AMP, EXP_VAR),
    ):
        f_prof = np.zeros(xs.shape, dtype=np.float64)
        g_prof = np.zeros((5,) + xs.shape, dtype=np.float64) if with_grad else None
        for w_k, mu_k, cov_k in zip(psf.weights, psf.means, psf.covs, strict=True):
            dx = xs - (u[0] + mu_k[0])
            dy = ys - (u[1] + mu_k[1])
            for amp_j, var_j in zip(amps, variances, strict=True):
                p, gx, gy, inv = _bvn(dx, dy, var_j * xixi + cov_k)
                wp = w_k * amp_j
                f_prof += wp * p
                if with_grad:
                    g_prof[0] += wp * p * gx
                    g_prof[1] += wp * p * gy
                    for t in range(3):
                        g_prof[2 + t] += wp * var_j * _cov_sens(p, gx, gy, inv, dxixi[t])
        f += prof_weight * f_prof
        if with_grad:
            df[[0, 1, 3, 4, 5]] += prof_weight * g_prof
            df[2] += sign * f_prof
    return f, df


def influence_radius(psf, e_scale: float) -> float:
    """Patch radius that holds a source's light under either type hypothesis."""
    psf_r = 4.0 * float(psf.max_sigma)
    gal_r = 3.0 * float(np.sqrt(np.max(DEV_VAR))) * float(e_scale)
    return float(max(MIN_PATCH_RADIUS, psf_r, gal_r))
