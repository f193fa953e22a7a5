"""Negative binomial dispersion estimation by weighted likelihood empirical Bayes."""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple, Union

import numpy as np
import pandas as pd
from inmoose import edgepy
from statsmodels.nonparametric.smoothers_lowess import lowess

from .glm import DGEError
from .normalization import ave_log_cpm, effective_lib_sizes


logger = logging.getLogger(__name__)


@dataclass
class DispersionEstimate:
    """Common, trended and tagwise dispersions of a dataset."""

    common: float
    trended: np.ndarray
    tagwise: np.ndarray
    raw: np.ndarray
    ave_log_cpm: np.ndarray
    prior_df: float
    span: float

    @property
    def common_bcv(self) -> float:
        """Biological coefficient of variation at the common dispersion."""
        return float(np.sqrt(self.common))

    def to_frame(self, genes: Optional[pd.Index] = None) -> pd.DataFrame:
        return pd.DataFrame({
            'AveLogCPM': self.ave_log_cpm,
            'trended': self.trended,
            'tagwise': self.tagwise,
            'raw': self.raw
        }, index=genes)


def maximize_interpolant(x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """
    Location of the maximum of each row of ``y`` sampled on the uniform grid ``x``.

    A parabola is fitted through the largest grid value and its two
    neighbours; maxima on the grid boundary are returned as is.
    """
    x = np.asarray(x, dtype=float)
    y = np.atleast_2d(np.asarray(y, dtype=float))
    step = x[1] - x[0]
    i = np.argmax(y, axis=1)
    out = x[i].copy()

    interior = (i > 0) & (i < x.size - 1)
    rows = np.flatnonzero(interior)
    if rows.size:
        j = i[rows]
        left, mid, right = y[rows, j - 1], y[rows, j], y[rows, j + 1]
        curvature = left - 2 * mid + right
        with np.errstate(divide='ignore', invalid='ignore'):
            delta = np.where(curvature < 0, 0.5 * (left - right) / curvature, 0.0)
        out[rows] += np.clip(delta, -0.5, 0.5) * step
    return out


def smooth_by_column(
    loglik: np.ndarray,
    covariate: np.ndarray,
    span: float
) -> np.ndarray:
    """Local regression of every likelihood column on the covariate."""
    if loglik.shape[0] < 3:
        return np.repeat(loglik.mean(axis=0, keepdims=True), loglik.shape[0], axis=0)
    delta = 0.01 * float(np.ptp(covariate))
    return np.column_stack([
        lowess(loglik[:, k], covariate, frac=span, it=0, delta=delta, return_sorted=False)
        for k in range(loglik.shape[1])
    ])


def default_span(n_genes: int) -> float:
    if n_genes <= 50:
        return 1.0
    return 0.25 + 0.75 * (50 / n_genes) ** 0.5


def estimate_disp(
    counts: Union[np.ndarray, pd.DataFrame],
    design: Union[np.ndarray, pd.DataFrame],
    lib_size: Optional[np.ndarray] = None,
    norm_factors: Optional[np.ndarray] = None,
    prior_df: float = 10.0,
    grid_length: int = 21,
    grid_range: Tuple[float, float] = (-10.0, 10.0),
    min_row_sum: float = 5,
    span: Optional[float] = None
) -> DispersionEstimate:
    """
    Estimate common, trended and tagwise NB dispersions.

    The Cox-Reid adjusted profile likelihood of every gene is evaluated on
    a grid of dispersions ``0.1 * 2**theta``. The common dispersion
    maximises the summed likelihood; the trended dispersion maximises the
    likelihood smoothed across genes of similar average log-CPM; the
    tagwise dispersion maximises each gene's likelihood plus the smoothed
    likelihood weighted by ``prior_df / residual_df``.

    Args:
        counts: Count matrix (genes x samples)
        design: Design matrix (samples x coefficients)
        lib_size: Library sizes (column sums if None)
        norm_factors: Normalization factors
        prior_df: Prior degrees of freedom for tagwise shrinkage
        grid_length: Number of grid points
        grid_range: Range of theta on the log2 scale
        min_row_sum: Genes with smaller totals take the trended value
        span: Smoothing span (chosen from the number of genes if None)

    Returns:
        DispersionEstimate
    """
    y = np.asarray(counts, dtype=float)
    X = np.asarray(design, dtype=float)
    n_samples = y.shape[1]
    residual_df = n_samples - np.linalg.matrix_rank(X)
    if residual_df <= 0:
        raise DGEError("No residual degrees of freedom: dispersion cannot be estimated")

    sel = y.sum(axis=1) >= min_row_sum
    n_sel = int(sel.sum())
    if n_sel == 0:
        raise DGEError(f"No genes with total count >= {min_row_sum}")

    lib = effective_lib_sizes(y, lib_size, norm_factors)
    offset = np.log(lib)
    alc = ave_log_cpm(y, lib_size=lib)

    theta = np.linspace(grid_range[0], grid_range[1], grid_length)
    grid = 0.1 * 2 ** theta
    ysel = y[sel]
    l0 = np.column_stack([edgepy.adjustedProfileLik(d, ysel, X, offset) for d in grid])

    common = float(0.1 * 2 ** maximize_interpolant(theta, l0.sum(axis=0))[0])

    if span is None:
        span = default_span(n_sel)
    m0 = smooth_by_column(l0, alc[sel], span)
    prior_n = prior_df / residual_df

    trend_theta = maximize_interpolant(theta, m0)
    raw_theta = maximize_interpolant(theta, l0)
    tag_theta = maximize_interpolant(theta, l0 + prior_n * m0)
    # Weighted maximum lies between the gene's own maximum and the trend
    tag_theta = np.clip(tag_theta, np.minimum(raw_theta, trend_theta),
                        np.maximum(raw_theta, trend_theta))

    order = np.argsort(alc[sel], kind='mergesort')
    trended = np.interp(alc, alc[sel][order], (0.1 * 2 ** trend_theta)[order])
    trended[sel] = 0.1 * 2 ** trend_theta
    tagwise = trended.copy()
    tagwise[sel] = 0.1 * 2 ** tag_theta
    raw = np.full(y.shape[0], np.nan)
    raw[sel] = 0.1 * 2 ** raw_theta

    logger.info(
        f"Dispersion: common {common:.4g} (BCV {np.sqrt(common):.3f}), "
        f"tagwise median {np.median(tagwise):.4g}, prior df {prior_df:g}"
    )

    return DispersionEstimate(
        common=common,
        trended=trended,
        tagwise=tagwise,
        raw=raw,
        ave_log_cpm=alc,
        prior_df=prior_df,
        span=span
    )
