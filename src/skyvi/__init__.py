"""
skyvi: variational inference for stars and galaxies in multi-band sky images.

The main public entry points are:
  - `elbo` / `elbo_likelihood` (objective + gradient)
  - `maximize_elbo` / `maximize_likelihood` / `maximize_f` (fitting)
  - `cat_init` / `peak_init` (initial guesses)
"""

from .elbo import elbo, elbo_likelihood, subtract_kl
from .init import cat_init, peak_init
from .layout import N_PARAMS, ids
from .model import CatalogEntry, ModelParams, PriorParams, default_prior
from .optimize import OptimizeConfig, OptimizeResult, maximize_elbo, maximize_f, maximize_likelihood
from .sensitive import SensitiveFloat
from .stamp import GaussianMixturePsf, ImageStamp, Patch
from .synthetic import gen_stamps
from .transform import DataTransform, free_transform, rect_transform

__all__ = [
    "N_PARAMS",
    "ids",
    "SensitiveFloat",
    "GaussianMixturePsf",
    "ImageStamp",
    "Patch",
    "CatalogEntry",
    "PriorParams",
    "ModelParams",
    "default_prior",
    "elbo",
    "elbo_likelihood",
    "subtract_kl",
    "DataTransform",
    "rect_transform",
    "free_transform",
    "OptimizeConfig",
    "OptimizeResult",
    "maximize_f",
    "maximize_likelihood",
    "maximize_elbo",
    "cat_init",
    "peak_init",
    "gen_stamps",
]
