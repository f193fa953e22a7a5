"""Phage DGE - differential expression of phage treatments versus control."""

__version__ = "0.1.0"

from .config import get_config, Config
from .validation import validate_count_matrix, validate_metadata, build_sample_groups
from .filtering import filter_by_expr
from .normalization import calc_norm_factors, cpm
from .dispersion import estimate_disp
from .glm import glm_fit, glm_lrt, make_contrasts, top_tags, DGEError
from .pipeline import run_dge, run_pipeline

__all__ = [
    'get_config',
    'Config',
    'validate_count_matrix',
    'validate_metadata',
    'build_sample_groups',
    'filter_by_expr',
    'calc_norm_factors',
    'cpm',
    'estimate_disp',
    'glm_fit',
    'glm_lrt',
    'make_contrasts',
    'top_tags',
    'DGEError',
    'run_dge',
    'run_pipeline'
]
