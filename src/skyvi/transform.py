"""
Constrained <-> unconstrained reparameterization of the source parameters.

Per constrained domain (see `skyvi.layout`):
  real      x = v
  positive  x = log v
  unit      x = logit v
  simplex   x_j = log(p_j / p_0)      (x_0 = 0 is the gauge slot; inverse is softmax)

A bounded ("free") transform additionally boxes selected entries:
  x = scale * logit((v - lb) / (ub - lb))

Gradients computed with respect to constrained parameters are carried to the
unconstrained space with the per-group Jacobian. Groups do not couple; within
a simplex block the softmax Jacobian gives g_x = p * (g - p . g).
"""

from __future__ import annotations

import numpy as np
from scipy.special import expit, logit, logsumexp

from .layout import N_PARAMS, domain_ids, ids, simplex_blocks
from .model import ModelParams
from .sensitive import SensitiveFloat

_REAL = domain_ids("real")
_POSITIVE = domain_ids("positive")
_UNIT = domain_ids("unit")
_SIMPLEX = simplex_blocks()


def _softmax(x: np.ndarray) -> np.ndarray:
    return np.exp(x - logsumexp(x))


class DataTransform:
    """
    Per-source map between constrained and unconstrained parameter vectors.

    Args:
      name: label used in messages.
      box_lower, box_upper: optional (S, N_PARAMS) boxes; NaN entries use the
        plain per-domain transform. Boxes fix the number of sources.
      box_scale: multiplier on the boxed logit.
    """

    def __init__(
        self,
        name: str = "rect",
        *,
        box_lower: np.ndarray | None = None,
        box_upper: np.ndarray | None = None,
        box_scale: float = 1.0,
    ) -> None:
        self.name = str(name)
        if (box_lower is None) != (box_upper is None):
            raise ValueError("box_lower and box_upper must be given together.")
        if box_lower is not None:
            lo = np.asarray(box_lower, dtype=np.float64)
            hi = np.asarray(box_upper, dtype=np.float64)
            if lo.ndim != 2 or lo.shape[1] != N_PARAMS or hi.shape != lo.shape:
                raise ValueError(f"Boxes must have shape (S, {N_PARAMS}), got {lo.shape} and {hi.shape}.")
            boxed = np.isfinite(lo) & np.isfinite(hi)
            if np.any(np.isfinite(lo) != np.isfinite(hi)):
                raise ValueError("Box bounds must be both finite or both NaN.")
            if np.any(hi[boxed] <= lo[boxed]):
                raise ValueError("Box upper bounds must exceed lower bounds.")
            for blk in _SIMPLEX:
                if np.any(boxed[:, blk]):
                    raise ValueError("Simplex groups cannot be boxed.")
            self.box_lower = lo
            self.box_upper = hi
            self.boxed = boxed
        else:
            self.box_lower = None
            self.box_upper = None
            self.boxed = None
        self.box_scale = float(box_scale)
        if self.box_scale <= 0.0:
            raise ValueError("box_scale must be positive.")

    def __repr__(self) -> str:
        return f"DataTransform({self.name!r})"

    # --- single source ---

    def _box(self, s: int):
        if self.boxed is None:
            return None
        return self.boxed[s], self.box_lower[s], self.box_upper[s]

    def _vp_to_free(self, vs: np.ndarray, s: int) -> np.ndarray:
        vs = np.asarray(vs, dtype=np.float64)
        x = np.empty((N_PARAMS,), dtype=np.float64)
        with np.errstate(divide="ignore", invalid="ignore"):
            x[_REAL] = vs[_REAL]
            x[_POSITIVE] = np.log(vs[_POSITIVE])
            x[_UNIT] = logit(vs[_UNIT])
            for blk in _SIMPLEX:
                logp = np.log(vs[blk])
                x[blk] = logp - logp[0]
        box = self._box(s)
        if box is not None:
            m, lo, hi = box
            t = (vs[m] - lo[m]) / (hi[m] - lo[m])
            if np.any(t <= 0.0) or np.any(t >= 1.0):
                raise ValueError(f"Source {s}: boxed parameters lie outside their boxes.")
            x[m] = self.box_scale * logit(t)
        if not np.all(np.isfinite(x)):
            bad = np.nonzero(~np.isfinite(x))[0].tolist()
            raise ValueError(f"Source {s}: parameters {bad} are outside their constrained domain.")
        return x

    def _free_to_vp(self, x: np.ndarray, s: int) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64)
        vs = np.empty((N_PARAMS,), dtype=np.float64)
        vs[_REAL] = x[_REAL]
        vs[_POSITIVE] = np.exp(x[_POSITIVE])
        vs[_UNIT] = expit(x[_UNIT])
        for blk in _SIMPLEX:
            vs[blk] = _softmax(x[blk])
        box = self._box(s)
        if box is not None:
            m, lo, hi = box
            vs[m] = lo[m] + (hi[m] - lo[m]) * expit(x[m] / self.box_scale)
        return vs

    def _rescale_gradient(self, vs: np.ndarray, g: np.ndarray, s: int) -> np.ndarray:
        vs = np.asarray(vs, dtype=np.float64)
        g = np.asarray(g, dtype=np.float64)
        out = np.empty_like(g)
        out[_REAL] = g[_REAL]
        out[_POSITIVE] = g[_POSITIVE] * vs[_POSITIVE]
        out[_UNIT] = g[_UNIT] * vs[_UNIT] * (1.0 - vs[_UNIT])
        for blk in _SIMPLEX:
            p = vs[blk]
            out[blk] = p * (g[blk] - p @ g[blk])
        box = self._box(s)
        if box is not None:
            m, lo, hi = box
            width = hi[m] - lo[m]
            t = (vs[m] - lo[m]) / width
            out[m] = g[m] * width * t * (1.0 - t) / self.box_scale
        return out

    def _check_sources(self, n: int) -> None:
        if self.boxed is not None and n != self.boxed.shape[0]:
            raise ValueError(f"{self.name} transform was built for {self.boxed.shape[0]} sources, got {n}.")

    # --- collections ---

    def to_unconstrained(self, vp: list[np.ndarray]) -> list[np.ndarray]:
        """Constrained per-source vectors -> unconstrained per-source vectors."""
        self._check_sources(len(vp))
        return [self._vp_to_free(vs, s) for s, vs in enumerate(vp)]

    def to_constrained(self, xp: list[np.ndarray]) -> list[np.ndarray]:
        """Unconstrained per-source vectors -> constrained per-source vectors."""
        self._check_sources(len(xp))
        return [self._free_to_vp(x, s) for s, x in enumerate(xp)]

    def transform_sensitive_float(self, sf: SensitiveFloat, mp: ModelParams) -> SensitiveFloat:
        """Gradient with respect to constrained parameters -> unconstrained parameters."""
        if sf.h is not None:
            raise ValueError("Hessian rescaling is not supported; drop `h` before transforming.")
        if sf.d.shape != (N_PARAMS, mp.S):
            raise ValueError(f"Gradient shape {sf.d.shape} does not match ({N_PARAMS}, {mp.S}).")
        self._check_sources(mp.S)
        d = np.empty_like(sf.d)
        for s in range(mp.S):
            d[:, s] = self._rescale_gradient(mp.vp[s], sf.d[:, s], s)
        return SensitiveFloat(sf.v, d)

    def bounds_to_free(self, lower: np.ndarray, upper: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """
        Map (S, N_PARAMS) constrained bounds to unconstrained bounds.

        Every map is monotone per entry. For a simplex block the bound on p_j
        maps to logit(p_j), which is exact for two-entry blocks; gauge slots
        get [0, 0].
        """
        lo = np.asarray(lower, dtype=np.float64)
        hi = np.asarray(upper, dtype=np.float64)
        if lo.ndim != 2 or lo.shape[1] != N_PARAMS or hi.shape != lo.shape:
            raise ValueError(f"Bounds must have shape (S, {N_PARAMS}), got {lo.shape} and {hi.shape}.")
        if np.any(hi < lo):
            raise ValueError("Upper bounds must not be below lower bounds.")
        self._check_sources(lo.shape[0])

        x_lo = np.empty_like(lo)
        x_hi = np.empty_like(hi)
        with np.errstate(divide="ignore", invalid="ignore"):
            x_lo[:, _REAL] = lo[:, _REAL]
            x_hi[:, _REAL] = hi[:, _REAL]
            x_lo[:, _POSITIVE] = np.log(np.maximum(lo[:, _POSITIVE], 0.0))
            x_hi[:, _POSITIVE] = np.log(np.maximum(hi[:, _POSITIVE], 0.0))
            x_lo[:, _UNIT] = logit(np.clip(lo[:, _UNIT], 0.0, 1.0))
            x_hi[:, _UNIT] = logit(np.clip(hi[:, _UNIT], 0.0, 1.0))
            for blk in _SIMPLEX:
                x_lo[:, blk] = logit(np.clip(lo[:, blk], 0.0, 1.0))
                x_hi[:, blk] = logit(np.clip(hi[:, blk], 0.0, 1.0))
                x_lo[:, blk[0]] = 0.0
                x_hi[:, blk[0]] = 0.0
            if self.boxed is not None:
                m = self.boxed
                width = self.box_upper - self.box_lower
                t_lo = np.clip((lo - self.box_lower) / width, 0.0, 1.0)
                t_hi = np.clip((hi - self.box_lower) / width, 0.0, 1.0)
                x_lo[m] = self.box_scale * logit(t_lo[m])
                x_hi[m] = self.box_scale * logit(t_hi[m])
        return x_lo, x_hi

    def check_round_trip(self, vp: list[np.ndarray], *, rtol: float = 1e-8, atol: float = 1e-12) -> None:
        """Raise RuntimeError if to_constrained(to_unconstrained(vp)) != vp."""
        back = self.to_constrained(self.to_unconstrained(vp))
        for s, (vs, vs2) in enumerate(zip(vp, back, strict=True)):
            vs = np.asarray(vs, dtype=np.float64)
            if not np.allclose(vs2, vs, rtol=float(rtol), atol=float(atol)):
                worst = int(np.argmax(np.abs(vs2 - vs)))
                raise RuntimeError(
                    f"Internal error: {self.name} transform round trip failed for source {s} "
                    f"at index {worst}: {vs[worst]!r} -> {vs2[worst]!r}."
                )


rect_transform = DataTransform("rect")


def free_transform(stamps, mp: ModelParams, *, margin: float = 2.0, box_scale: float = 1.0) -> DataTransform:
    """
    Bounded transform with boxes derived from the data.

    Boxes: position within the stamp extent plus `margin` pixels; log
    brightness between log(1e-2) and log(10 * total positive flux); colors in
    [-10, 10]; scale in (0.1, max stamp side). Experimental: L-BFGS-B can
    stall near the box edges.
    """
    if not stamps:
        raise ValueError("Need at least one stamp.")
    H = max(st.H for st in stamps)
    W = max(st.W for st in stamps)
    total = 0.0
    for st in stamps:
        ok = st.usable
        total = max(total, float(np.sum(np.clip(st.pixels[ok] - st.sky[ok], 0.0, None))))
    total = max(total, 1.0)

    lo = np.full((mp.S, N_PARAMS), np.nan)
    hi = np.full((mp.S, N_PARAMS), np.nan)
    lo[:, ids.u[0]] = -float(margin)
    hi[:, ids.u[0]] = W - 1.0 + float(margin)
    lo[:, ids.u[1]] = -float(margin)
    hi[:, ids.u[1]] = H - 1.0 + float(margin)
    lo[:, ids.r1] = np.log(1e-2)
    hi[:, ids.r1] = np.log(10.0 * total)
    lo[:, ids.c1.ravel()] = -10.0
    hi[:, ids.c1.ravel()] = 10.0
    lo[:, ids.e_scale] = 0.1
    hi[:, ids.e_scale] = float(max(H, W))
    return DataTransform("free", box_lower=lo, box_upper=hi, box_scale=box_scale)
