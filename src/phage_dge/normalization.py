"""Library-size normalization and counts-per-million transforms."""

import logging
from typing import Optional, Union

import numpy as np
import pandas as pd
from scipy.stats import rankdata


logger = logging.getLogger(__name__)

ArrayLike = Union[np.ndarray, pd.DataFrame]


def _as_matrix(counts: ArrayLike) -> np.ndarray:
    return np.asarray(counts, dtype=float)


def effective_lib_sizes(
    counts: ArrayLike,
    lib_size: Optional[np.ndarray] = None,
    norm_factors: Optional[np.ndarray] = None
) -> np.ndarray:
    """Library sizes multiplied by normalization factors."""
    x = _as_matrix(counts)
    lib = x.sum(axis=0) if lib_size is None else np.asarray(lib_size, dtype=float)
    if norm_factors is not None:
        lib = lib * np.asarray(norm_factors, dtype=float)
    return lib


def _calc_factor_quantile(x: np.ndarray, lib_size: np.ndarray, p: float = 0.75) -> np.ndarray:
    return np.quantile(x, p, axis=0) / lib_size


def _calc_factor_tmm(
    obs: np.ndarray,
    ref: np.ndarray,
    libsize_obs: float,
    libsize_ref: float,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    do_weighting: bool = True,
    a_cutoff: float = -1e10
) -> float:
    """TMM scaling factor of one sample against the reference sample."""
    with np.errstate(divide='ignore', invalid='ignore'):
        log_r = np.log2((obs / libsize_obs) / (ref / libsize_ref))
        abs_e = (np.log2(obs / libsize_obs) + np.log2(ref / libsize_ref)) / 2
        v = (libsize_obs - obs) / libsize_obs / obs + (libsize_ref - ref) / libsize_ref / ref

    # Genes with a zero in either sample have no finite M or A value
    fin = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r, abs_e, v = log_r[fin], abs_e[fin], v[fin]

    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = rankdata(log_r)
    rank_e = rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)

    if do_weighting:
        f = np.nansum(log_r[keep] / v[keep]) / np.nansum(1 / v[keep])
    else:
        f = np.mean(log_r[keep]) if keep.any() else np.nan

    if np.isnan(f):
        f = 0.0
    return float(2 ** f)


def calc_norm_factors(
    counts: ArrayLike,
    lib_size: Optional[np.ndarray] = None,
    method: str = "TMM",
    ref_column: Optional[int] = None,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    do_weighting: bool = True,
    a_cutoff: float = -1e10,
    p: float = 0.75
) -> pd.Series:
    """
    Compute per-sample normalization factors.

    TMM compares every sample with a reference sample: log-ratios (M) and
    average log-abundances (A) are computed per gene, the most extreme 30%
    of M and 5% of A are trimmed, and the precision-weighted mean of the
    remaining M values gives the sample's factor. Factors are scaled to a
    geometric mean of one.

    Args:
        counts: Count matrix (genes x samples)
        lib_size: Library sizes (column sums if None)
        method: "TMM", "upperquartile" or "none"
        ref_column: Index of the reference sample (chosen automatically if None)
        logratio_trim: Fraction of M values trimmed on each side
        sum_trim: Fraction of A values trimmed on each side
        do_weighting: Use inverse-variance weights for the trimmed mean
        a_cutoff: Minimum A value for a gene to be used
        p: Quantile used by upper-quartile normalization and reference choice

    Returns:
        Series of normalization factors, one per sample
    """
    x = _as_matrix(counts)
    columns = counts.columns if isinstance(counts, pd.DataFrame) else pd.RangeIndex(x.shape[1])

    if np.any(~np.isfinite(x)):
        raise ValueError("NA counts not permitted")
    n_samples = x.shape[1]
    lib = x.sum(axis=0) if lib_size is None else np.asarray(lib_size, dtype=float)

    if n_samples < 2 or method == "none":
        return pd.Series(np.ones(n_samples), index=columns, name="norm_factors")

    # Genes that are zero everywhere carry no information
    x = x[(x > 0).any(axis=1)]

    if method == "TMM":
        if ref_column is None:
            f75 = _calc_factor_quantile(x, lib, p=0.75)
            if np.median(f75) < 1e-20:
                ref_column = int(np.argmax(np.sqrt(x).sum(axis=0)))
            else:
                ref_column = int(np.argmin(np.abs(f75 - f75.mean())))
        factors = np.array([
            _calc_factor_tmm(
                obs=x[:, i],
                ref=x[:, ref_column],
                libsize_obs=lib[i],
                libsize_ref=lib[ref_column],
                logratio_trim=logratio_trim,
                sum_trim=sum_trim,
                do_weighting=do_weighting,
                a_cutoff=a_cutoff
            )
            for i in range(n_samples)
        ])
    elif method == "upperquartile":
        factors = _calc_factor_quantile(x, lib, p=p)
    else:
        raise ValueError(f"Unknown normalization method: {method}")

    # Factors should multiply to one
    factors = factors / np.exp(np.mean(np.log(factors)))
    return pd.Series(factors, index=columns, name="norm_factors")


def add_prior_count(
    counts: ArrayLike,
    lib_size: np.ndarray,
    prior_count: float = 2.0
):
    """
    Add library-size-scaled prior counts.

    Returns:
        Tuple of (adjusted counts, adjusted log library sizes)
    """
    x = _as_matrix(counts)
    lib = np.asarray(lib_size, dtype=float)
    prior_scaled = prior_count * lib / lib.mean()
    return x + prior_scaled, np.log(lib + 2 * prior_scaled)


def cpm(
    counts: ArrayLike,
    lib_size: Optional[np.ndarray] = None,
    norm_factors: Optional[np.ndarray] = None,
    log: bool = False,
    prior_count: float = 2.0
) -> ArrayLike:
    """
    Counts per million, optionally on the log2 scale.

    Effective library sizes (library size times normalization factor) are
    used. For log-CPM a prior count proportional to library size is added
    to avoid taking the log of zero.
    """
    x = _as_matrix(counts)
    lib = effective_lib_sizes(x, lib_size, norm_factors)

    if log:
        y, log_lib = add_prior_count(x, lib, prior_count)
        out = np.log2(y) - log_lib / np.log(2) + np.log2(1e6)
    else:
        out = x / lib * 1e6

    if isinstance(counts, pd.DataFrame):
        return pd.DataFrame(out, index=counts.index, columns=counts.columns)
    return out


def mglm_one_group(
    y: np.ndarray,
    dispersion,
    offset: np.ndarray,
    maxit: int = 50,
    tol: float = 1e-10
) -> np.ndarray:
    """
    Fit a single-coefficient NB GLM to every row by Newton-Raphson.

    Returns:
        Intercept on the natural log scale, one per row (-inf for all-zero rows)
    """
    y = np.atleast_2d(np.asarray(y, dtype=float))
    offset = np.broadcast_to(np.asarray(offset, dtype=float), y.shape)
    disp = np.broadcast_to(np.asarray(dispersion, dtype=float).reshape(-1, 1), (y.shape[0], 1))

    total = y.sum(axis=1)
    zero = total <= 0
    beta = np.full(y.shape[0], -np.inf)
    if zero.all():
        return beta

    yy, oo, dd = y[~zero], offset[~zero], disp[~zero]
    b = np.log(yy.sum(axis=1) / np.exp(oo).sum(axis=1))
    for _ in range(maxit):
        mu = np.exp(b[:, None] + oo)
        denom = 1 + mu * dd
        dl = ((yy - mu) / denom).sum(axis=1)
        info = (mu / denom).sum(axis=1)
        step = dl / info
        b = b + step
        if np.all(np.abs(step) < tol):
            break
    beta[~zero] = b
    return beta


def ave_log_cpm(
    counts: ArrayLike,
    lib_size: Optional[np.ndarray] = None,
    norm_factors: Optional[np.ndarray] = None,
    prior_count: float = 2.0,
    dispersion: float = 0.05
) -> np.ndarray:
    """Average log2 CPM of each gene across all samples."""
    x = _as_matrix(counts)
    lib = effective_lib_sizes(x, lib_size, norm_factors)
    y, offset = add_prior_count(x, lib, prior_count)
    abundance = mglm_one_group(y, dispersion, offset[None, :])
    return (abundance + np.log(1e6)) / np.log(2)
