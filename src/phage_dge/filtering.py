"""Expression filter that drops genes too weakly expressed to test."""

import logging
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd

from .normalization import cpm


logger = logging.getLogger(__name__)


def hat_values(design: Union[np.ndarray, pd.DataFrame]) -> np.ndarray:
    """Leverages (diagonal of the hat matrix) of a design matrix."""
    X = np.asarray(design, dtype=float)
    q, _ = np.linalg.qr(X)
    return np.sum(q ** 2, axis=1)


def min_sample_size(
    n_samples: int,
    design: Optional[Union[np.ndarray, pd.DataFrame]] = None,
    group: Optional[Sequence] = None,
    large_n: int = 10,
    min_prop: float = 0.7
) -> float:
    """
    Number of samples in which a gene must be expressed.

    With a design matrix this is 1 / max(leverage), which equals the
    smallest group size for a group-indicator design.
    """
    if group is not None:
        sizes = pd.Series(list(group)).value_counts()
        size = float(sizes[sizes > 0].min())
    elif design is not None:
        size = 1.0 / float(np.max(hat_values(design)))
    else:
        logger.info("No group or design set. Assuming all samples belong to one group.")
        size = float(n_samples)

    if size > large_n:
        size = large_n + (size - large_n) * min_prop
    return size


def filter_by_expr(
    counts: pd.DataFrame,
    design: Optional[Union[np.ndarray, pd.DataFrame]] = None,
    group: Optional[Sequence] = None,
    lib_size: Optional[np.ndarray] = None,
    min_count: float = 10,
    min_total_count: float = 15,
    large_n: int = 10,
    min_prop: float = 0.7
) -> pd.Series:
    """
    Determine which genes have sufficiently large counts to be retained.

    A gene is kept when its CPM reaches the cutoff corresponding to
    ``min_count`` reads at the median library size in at least the minimum
    group size worth of samples, and its total count across all samples is
    at least ``min_total_count``.

    Args:
        counts: Count matrix (genes x samples)
        design: Design matrix used to derive the minimum group size
        group: Group labels (takes precedence over design)
        lib_size: Library sizes (column sums if None)
        min_count: Minimum count required for some samples
        min_total_count: Minimum total count required
        large_n: Number of samples per group considered "large"
        min_prop: Proportion of samples required in large groups

    Returns:
        Boolean Series indexed by gene
    """
    x = np.asarray(counts, dtype=float)
    lib = x.sum(axis=0) if lib_size is None else np.asarray(lib_size, dtype=float)
    tol = 1e-14

    size = min_sample_size(x.shape[1], design=design, group=group,
                           large_n=large_n, min_prop=min_prop)

    cpm_cutoff = min_count / np.median(lib) * 1e6
    cpm_values = cpm(x, lib_size=lib)
    keep_cpm = (cpm_values >= cpm_cutoff).sum(axis=1) >= (size - tol)
    keep_total = x.sum(axis=1) >= (min_total_count - tol)

    index = counts.index if isinstance(counts, pd.DataFrame) else None
    keep = pd.Series(keep_cpm & keep_total, index=index, name="keep")

    logger.info(
        f"Expression filter kept {int(keep.sum())} of {len(keep)} genes "
        f"(min sample size {size:g}, CPM cutoff {cpm_cutoff:.3g})"
    )
    return keep
