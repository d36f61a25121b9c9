"""
Bound-constrained maximization of a variational objective.

`maximize_f` drives a chosen subset of unconstrained coordinates (shared by
every source) with scipy's L-BFGS-B, holding the rest at their initial value:

  z = [x_0[free_ids], x_1[free_ids], ...]      (source-major)
  objective(z) = -f(stamps, to_constrained(x(z))).v
  gradient     = -(Jacobian-rescaled f.d)[free_ids, :].T.ravel()

The best iterate seen is written back into `mp.vp` whatever the stopping
reason; `OptimizeResult.converged` says whether a tolerance was met. A
non-finite objective at the starting point raises `FloatingPointError`; at a
later trial point it stops the run with `converged=False`.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.optimize import Bounds, minimize
from tqdm import tqdm

from .elbo import elbo, elbo_likelihood
from .layout import N_PARAMS, free_ids_except, free_ids_for, gauge_ids, ids
from .model import ModelParams
from .transform import DataTransform, rect_transform


@dataclass(frozen=True)
class OptimizeConfig:
    """
    Stopping rules for `maximize_f`.

    Args:
      xtol_rel: stop when ||z_k - z_{k-1}|| <= xtol_rel * ||z_k||.
      ftol_abs: stop when |f_k - f_{k-1}| <= ftol_abs.
      gtol: L-BFGS-B projected-gradient tolerance.
      max_iter: iteration cap.
      max_ls: line-search steps per iteration.
      verbose: progress bar and [optimize] lines.
    """

    xtol_rel: float = 1e-7
    ftol_abs: float = 1e-6
    gtol: float = 1e-8
    max_iter: int = 500
    max_ls: int = 50
    verbose: bool = False

    def __post_init__(self) -> None:
        if self.xtol_rel < 0.0 or self.ftol_abs < 0.0 or self.gtol < 0.0:
            raise ValueError("Tolerances must be non-negative.")
        if int(self.max_iter) < 1:
            raise ValueError("max_iter must be >= 1.")


@dataclass
class OptimizeResult:
    converged: bool
    value: float
    n_iter: int
    n_eval: int
    message: str


def default_bounds(mp: ModelParams) -> tuple[np.ndarray, np.ndarray]:
    """(S, N_PARAMS) constrained lower and upper bounds used when none are given."""
    lo = np.full((N_PARAMS,), -np.inf)
    hi = np.full((N_PARAMS,), np.inf)
    for name, (l, h) in (
        ("a", (0.01, 0.99)),
        ("k", (0.01, 0.99)),
        ("r1", (-10.0, 20.0)),
        ("r2", (1e-4, 1.0)),
        ("c1", (-10.0, 10.0)),
        ("c2", (1e-4, 1.0)),
        ("e_dev", (0.01, 0.99)),
        ("e_axis", (0.01, 0.99)),
        ("e_scale", (0.2, np.inf)),
    ):
        idx = np.asarray(getattr(ids, name)).ravel()
        lo[idx] = l
        hi[idx] = h
    return np.tile(lo, (mp.S, 1)), np.tile(hi, (mp.S, 1))


def _as_source_bounds(b, n_sources: int, what: str) -> np.ndarray:
    b = np.asarray(b, dtype=np.float64)
    if b.shape == (N_PARAMS,):
        return np.tile(b, (n_sources, 1))
    if b.shape == (n_sources, N_PARAMS):
        return b.copy()
    raise ValueError(f"{what} must have shape ({N_PARAMS},) or ({n_sources}, {N_PARAMS}), got {b.shape}.")


def maximize_f(
    f,
    stamps,
    mp: ModelParams,
    transform: DataTransform | None = None,
    *,
    free_ids=None,
    lower=None,
    upper=None,
    config: OptimizeConfig = OptimizeConfig(),
) -> OptimizeResult:
    """
    Maximize `f(stamps, mp) -> SensitiveFloat` over the free coordinates.

    Args:
      f: objective; its gradient is with respect to constrained parameters.
      stamps: passed through to `f`.
      mp: model parameters; `mp.vp` is overwritten with the best iterate.
      transform: constrained <-> unconstrained map (default `rect_transform`).
      free_ids: unconstrained indices optimized for every source (default: all
        but the simplex gauge slots). Everything else stays pinned.
      lower, upper: constrained bounds, (N_PARAMS,) or (S, N_PARAMS)
        (default `default_bounds(mp)`).
      config: stopping rules.

    Returns:
      OptimizeResult.
    """
    transform = rect_transform if transform is None else transform
    S = mp.S
    if S < 1:
        raise ValueError("Model has no sources.")

    free = free_ids_except() if free_ids is None else np.unique(np.asarray(free_ids, dtype=np.int64).ravel())
    if free.size == 0:
        raise ValueError("free_ids is empty.")
    if np.any(free < 0) or np.any(free >= N_PARAMS):
        raise ValueError(f"free_ids must lie in [0, {N_PARAMS}).")
    if np.intersect1d(free, gauge_ids).size:
        raise ValueError(f"free_ids must not include simplex gauge slots {gauge_ids.tolist()}.")

    d_lo, d_hi = default_bounds(mp)
    lo_vp = d_lo if lower is None else _as_source_bounds(lower, S, "lower")
    hi_vp = d_hi if upper is None else _as_source_bounds(upper, S, "upper")
    x_lo, x_hi = transform.bounds_to_free(lo_vp, hi_vp)

    if __debug__:
        transform.check_round_trip(mp.vp)

    x_base = np.stack(transform.to_unconstrained(mp.vp))  # (S, N_PARAMS)
    n_free = int(free.size)
    z_lo = x_lo[:, free].ravel()
    z_hi = x_hi[:, free].ravel()
    if np.any(z_hi < z_lo):
        raise ValueError("Empty feasible box for the free coordinates.")
    z0 = np.clip(x_base[:, free].ravel(), z_lo, z_hi)

    work = mp.copy()
    state = {"n_eval": 0, "best_v": -np.inf, "best_z": z0.copy(), "last_z": None, "last_v": None}

    def _set(z: np.ndarray) -> None:
        x = x_base.copy()
        x[:, free] = np.asarray(z, dtype=np.float64).reshape(S, n_free)
        work.vp = transform.to_constrained(list(x))

    def objective(z: np.ndarray) -> tuple[float, np.ndarray]:
        _set(z)
        sf = f(stamps, work)
        state["n_eval"] += 1
        if not np.isfinite(sf.v) or not np.all(np.isfinite(sf.d)):
            raise FloatingPointError(f"Objective is not finite after {state['n_eval']} evaluations (v={sf.v}).")
        sf_x = transform.transform_sensitive_float(sf, work)
        grad = sf_x.d[free, :].T.ravel()
        v = float(sf.v)
        state["last_z"] = np.array(z, dtype=np.float64)
        state["last_v"] = v
        if v > state["best_v"]:
            state["best_v"] = v
            state["best_z"] = np.array(z, dtype=np.float64)
        return -v, -grad

    def value_at(z: np.ndarray) -> float:
        if state["last_z"] is not None and np.array_equal(z, state["last_z"]):
            return float(state["last_v"])
        return -objective(z)[0]

    if config.verbose:
        print(f"[optimize] S={S} n_free={n_free * S} transform={transform.name}", flush=True)

    track = {"n_iter": 0, "prev_z": None, "prev_v": None, "reason": None}
    bar = tqdm(total=int(config.max_iter), desc="optimize", leave=True, disable=not config.verbose)

    def callback(zk: np.ndarray) -> None:
        track["n_iter"] += 1
        vk = value_at(zk)
        bar.update(1)
        bar.set_postfix(f=f"{vk:.6g}")
        prev_z, prev_v = track["prev_z"], track["prev_v"]
        track["prev_z"] = np.array(zk, dtype=np.float64)
        track["prev_v"] = vk
        if prev_z is None:
            return
        if abs(vk - prev_v) <= config.ftol_abs:
            track["reason"] = f"ftol_abs reached (|df|={abs(vk - prev_v):.3g})"
            raise StopIteration
        step = float(np.linalg.norm(zk - prev_z))
        if step <= config.xtol_rel * float(np.linalg.norm(zk)):
            track["reason"] = f"xtol_rel reached (|dz|={step:.3g})"
            raise StopIteration

    failure = None
    try:
        res = minimize(
            objective,
            z0,
            jac=True,
            method="L-BFGS-B",
            bounds=Bounds(z_lo, z_hi),
            callback=callback,
            options={
                "maxiter": int(config.max_iter),
                "gtol": float(config.gtol),
                "ftol": float(np.finfo(np.float64).eps),
                "maxls": int(config.max_ls),
            },
        )
    except FloatingPointError as err:
        # A non-finite trial point ends the run; earlier finite iterates are kept.
        if not np.isfinite(state["best_v"]):
            raise
        failure = str(err)
    finally:
        bar.close()

    if failure is not None:
        converged = False
        message = failure
    elif track["reason"] is not None:
        converged = True
        message = track["reason"]
    else:
        converged = bool(res.success)
        message = str(res.message)

    _set(state["best_z"])
    for s in range(S):
        mp.vp[s][:] = work.vp[s]

    if config.verbose:
        print(
            f"[optimize] {'converged' if converged else 'stopped'}: {message}  "
            f"value={state['best_v']:.6g} n_iter={track['n_iter']} n_eval={state['n_eval']}",
            flush=True,
        )
    return OptimizeResult(
        converged=converged,
        value=float(state["best_v"]),
        n_iter=int(track["n_iter"]),
        n_eval=int(state["n_eval"]),
        message=message,
    )


def maximize_likelihood(
    stamps,
    mp: ModelParams,
    transform: DataTransform | None = None,
    *,
    config: OptimizeConfig = OptimizeConfig(),
) -> OptimizeResult:
    """Fit position and brightness (r1, c1) of every source to the expected log-likelihood."""
    return maximize_f(elbo_likelihood, stamps, mp, transform, free_ids=free_ids_for("u", "r1", "c1"), config=config)


def maximize_elbo(
    stamps,
    mp: ModelParams,
    transform: DataTransform | None = None,
    *,
    config: OptimizeConfig = OptimizeConfig(),
) -> OptimizeResult:
    """Fit every parameter of every source to the full ELBO."""
    return maximize_f(elbo, stamps, mp, transform, free_ids=free_ids_except(), config=config)
