"""
Value + gradient accumulator for the variational objective.

A `SensitiveFloat` holds a scalar `v`, its gradient `d` with shape
(n_params, n_sources) (column s is the gradient with respect to source s's
parameter vector), and optionally a dense Hessian `h` over the column-major
flattening of `d`. Objective terms are built by composing the operations
below; nothing writes `v` without writing the matching gradient.
"""

from __future__ import annotations

import numpy as np

from .layout import N_PARAMS


class SensitiveFloat:
    """
    Scalar with its gradient over every source's parameters.

    Args:
      v: value.
      d: (n_params, n_sources) gradient.
      h: optional (n_params*n_sources, n_params*n_sources) Hessian.
    """

    __slots__ = ("v", "d", "h")

    def __init__(self, v: float, d: np.ndarray, h: np.ndarray | None = None) -> None:
        d = np.array(d, dtype=np.float64)
        if d.ndim != 2:
            raise ValueError(f"d must have shape (n_params, n_sources), got {d.shape}.")
        if h is not None:
            h = np.array(h, dtype=np.float64)
            n = d.size
            if h.shape != (n, n):
                raise ValueError(f"h must have shape ({n}, {n}), got {h.shape}.")
        self.v = float(v)
        self.d = d
        self.h = h

    @classmethod
    def zero(cls, n_sources: int = 1, n_params: int = N_PARAMS, *, with_hessian: bool = False) -> "SensitiveFloat":
        n_sources = int(n_sources)
        n_params = int(n_params)
        if n_sources < 1 or n_params < 1:
            raise ValueError("n_sources and n_params must be positive.")
        d = np.zeros((n_params, n_sources), dtype=np.float64)
        h = np.zeros((d.size, d.size), dtype=np.float64) if with_hessian else None
        return cls(0.0, d, h)

    @property
    def n_params(self) -> int:
        return int(self.d.shape[0])

    @property
    def n_sources(self) -> int:
        return int(self.d.shape[1])

    def _check_compatible(self, other: "SensitiveFloat") -> None:
        if other.d.shape != self.d.shape:
            raise ValueError(f"Gradient shapes differ: {self.d.shape} vs {other.d.shape}.")

    def add(self, other: "SensitiveFloat") -> "SensitiveFloat":
        """In place: self += other."""
        return self.add_scaled(other, 1.0)

    def add_scaled(self, other: "SensitiveFloat", scale: float) -> "SensitiveFloat":
        """In place: self += scale * other."""
        self._check_compatible(other)
        if (self.h is None) != (other.h is None):
            raise ValueError("Cannot mix a Hessian-carrying value with one without a Hessian.")
        c = float(scale)
        self.v += c * other.v
        self.d += c * other.d
        if self.h is not None:
            self.h += c * other.h
        return self

    def add_source(self, s: int, v: float, d_s: np.ndarray) -> "SensitiveFloat":
        """In place: add a term that depends on source `s` only (gradient-only accumulators)."""
        if self.h is not None:
            raise ValueError("add_source carries no curvature; it cannot update a Hessian.")
        s = int(s)
        if s < 0 or s >= self.n_sources:
            raise ValueError(f"Source index {s} out of range [0, {self.n_sources}).")
        d_s = np.asarray(d_s, dtype=np.float64)
        if d_s.shape != (self.n_params,):
            raise ValueError(f"d_s must have shape ({self.n_params},), got {d_s.shape}.")
        self.v += float(v)
        self.d[:, s] += d_s
        return self

    def __mul__(self, c: float) -> "SensitiveFloat":
        c = float(c)
        h = None if self.h is None else c * self.h
        return SensitiveFloat(c * self.v, c * self.d, h)

    __rmul__ = __mul__

    def __neg__(self) -> "SensitiveFloat":
        return self * -1.0

    def copy(self) -> "SensitiveFloat":
        return SensitiveFloat(self.v, self.d.copy(), None if self.h is None else self.h.copy())

    def __repr__(self) -> str:
        return f"SensitiveFloat(v={self.v:.6g}, n_params={self.n_params}, n_sources={self.n_sources})"
