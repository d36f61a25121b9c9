"""
Per-source variational parameter layout.

One source is described by a flat float64 vector of length `N_PARAMS`. The
same indices are used in constrained space (probabilities, positive scales)
and in the unconstrained space the optimizer walks; only the per-group
transform differs (see `skyvi.transform`).

Group order (constrained domain in brackets):
  a       (2,)            type indicator, [star, galaxy]          [simplex]
  u       (2,)            position (x = column, y = row), pixels   [real]
  r1      (I,)            mean of log reference-band brightness    [real]
  r2      (I,)            variance of log reference-band brightness [> 0]
  c1      (B-1, I)        mean color, log(l_{b+1} / l_b)           [real]
  c2      (B-1, I)        color variance                           [> 0]
  k       (D, I)          color-prior mixture weights, per column  [simplex]
  e_dev   ()              de Vaucouleurs fraction                  [(0, 1)]
  e_axis  ()              minor/major axis ratio                   [(0, 1)]
  e_angle ()              major-axis angle from +x, radians        [real]
  e_scale ()              half-light radius, pixels                [> 0]

Simplex groups are stored along axis 0 of their shape (`a`, and each column
of `k`). Their first entry is the gauge slot of the log-odds representation
and is never a free optimization coordinate.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

N_BANDS = 5
REF_BAND = 2
N_COLORS = N_BANDS - 1
N_TYPES = 2
N_COMPONENTS = 2

STAR = 0
GALAXY = 1

DOMAINS = ("simplex", "real", "positive", "unit")


@dataclass(frozen=True)
class Group:
    """One named block of the parameter vector."""

    name: str
    shape: tuple[int, ...]
    domain: str
    roles: tuple[str, ...]
    start: int

    @property
    def size(self) -> int:
        return int(np.prod(self.shape, dtype=np.int64))

    @property
    def index(self) -> np.ndarray | int:
        """Flat indices reshaped to `shape` (a plain int for scalar groups)."""
        idx = np.arange(self.start, self.start + self.size, dtype=np.int64)
        if self.shape == ():
            return int(idx[0])
        return idx.reshape(self.shape)

    @property
    def flat(self) -> np.ndarray:
        return np.arange(self.start, self.start + self.size, dtype=np.int64)


def _build_groups() -> tuple[Group, ...]:
    table = (
        ("a", (N_TYPES,), "simplex", ("indicator",)),
        ("u", (2,), "real", ("position",)),
        ("r1", (N_TYPES,), "real", ("brightness_reference",)),
        ("r2", (N_TYPES,), "positive", ("brightness_reference",)),
        ("c1", (N_COLORS, N_TYPES), "real", ("color", "brightness_ratio")),
        ("c2", (N_COLORS, N_TYPES), "positive", ("color", "brightness_ratio")),
        ("k", (N_COMPONENTS, N_TYPES), "simplex", ("color_mixture_weight",)),
        ("e_dev", (), "unit", ("shape_devfraction",)),
        ("e_axis", (), "unit", ("shape_axis",)),
        ("e_angle", (), "real", ("shape_angle",)),
        ("e_scale", (), "positive", ("shape_scale",)),
    )
    out = []
    start = 0
    for name, shape, domain, roles in table:
        g = Group(name=name, shape=shape, domain=domain, roles=roles, start=start)
        out.append(g)
        start += g.size
    return tuple(out)


GROUPS: tuple[Group, ...] = _build_groups()
N_PARAMS: int = int(sum(g.size for g in GROUPS))
GROUP_BY_NAME: dict[str, Group] = {g.name: g for g in GROUPS}


class ParamIds:
    """
    Named index arrays into a source's parameter vector.

    `ids.c1[b, i]` is the flat index of the color mean between bands b and b+1
    for source type i; scalar groups (`ids.e_scale`, ...) are plain ints.
    """

    def __init__(self, groups: tuple[Group, ...]) -> None:
        for g in groups:
            setattr(self, g.name, g.index)

    def __repr__(self) -> str:
        return "ParamIds(" + ", ".join(g.name for g in GROUPS) + ")"


ids = ParamIds(GROUPS)


def simplex_blocks() -> list[np.ndarray]:
    """Index arrays of every simplex block, gauge slot first."""
    blocks: list[np.ndarray] = []
    for g in GROUPS:
        if g.domain != "simplex":
            continue
        idx = np.asarray(g.index, dtype=np.int64)
        if idx.ndim == 1:
            blocks.append(idx)
        else:
            blocks.extend(idx[:, j] for j in range(idx.shape[1]))
    return blocks


gauge_ids: np.ndarray = np.array([blk[0] for blk in simplex_blocks()], dtype=np.int64)


def group_of(i: int) -> Group:
    """Group that owns flat index `i`."""
    i = int(i)
    if i < 0 or i >= N_PARAMS:
        raise ValueError(f"Parameter index {i} out of range [0, {N_PARAMS}).")
    for g in GROUPS:
        if g.start <= i < g.start + g.size:
            return g
    raise RuntimeError("Internal error: parameter groups do not cover the layout.")


def domain_ids(domain: str) -> np.ndarray:
    """Sorted flat indices of every group with constrained domain `domain`."""
    if domain not in DOMAINS:
        raise ValueError(f"Unknown domain {domain!r}; expected one of {DOMAINS}.")
    parts = [g.flat for g in GROUPS if g.domain == domain]
    if not parts:
        return np.zeros((0,), dtype=np.int64)
    return np.sort(np.concatenate(parts))


def indices_for_role(role: str) -> np.ndarray:
    """Sorted flat indices of every group tagged with `role`."""
    parts = [g.flat for g in GROUPS if role in g.roles]
    if not parts:
        known = sorted({r for g in GROUPS for r in g.roles})
        raise ValueError(f"Unknown role {role!r}; known roles: {known}.")
    return np.sort(np.concatenate(parts))


def _check_names(names: tuple[str, ...]) -> None:
    for name in names:
        if name not in GROUP_BY_NAME:
            raise ValueError(f"Unknown parameter group {name!r}.")


def free_ids_for(*names: str) -> np.ndarray:
    """Non-gauge indices of the named groups."""
    _check_names(names)
    parts = [GROUP_BY_NAME[n].flat for n in names]
    if not parts:
        return np.zeros((0,), dtype=np.int64)
    idx = np.concatenate(parts)
    return np.sort(np.setdiff1d(idx, gauge_ids))


def free_ids_except(*names: str) -> np.ndarray:
    """Every non-gauge index outside the named groups."""
    _check_names(names)
    held = [GROUP_BY_NAME[n].flat for n in names]
    all_free = np.setdiff1d(np.arange(N_PARAMS, dtype=np.int64), gauge_ids)
    if not held:
        return all_free
    return np.setdiff1d(all_free, np.concatenate(held))


def check_param_vector(vs: np.ndarray) -> np.ndarray:
    """Return `vs` as float64, raising if its length does not match the layout."""
    vs = np.asarray(vs, dtype=np.float64)
    if vs.shape != (N_PARAMS,):
        raise ValueError(f"Parameter vector must have shape ({N_PARAMS},), got {vs.shape}.")
    return vs


def _check_partition() -> None:
    seen = np.concatenate([g.flat for g in GROUPS])
    if seen.size != N_PARAMS or not np.array_equal(np.sort(seen), np.arange(N_PARAMS)):
        raise RuntimeError("Internal error: parameter groups must partition the layout exactly.")
    for g in GROUPS:
        if g.domain not in DOMAINS:
            raise RuntimeError(f"Internal error: group {g.name} has unknown domain {g.domain!r}.")


_check_partition()
