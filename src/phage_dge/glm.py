"""Negative binomial GLM fitting and likelihood-ratio contrast tests."""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Union

import numpy as np
import pandas as pd
from inmoose import edgepy
from patsy import DesignInfo, DesignMatrix

from .normalization import ave_log_cpm as ave_log_cpm_of


logger = logging.getLogger(__name__)


class DGEError(Exception):
    """Exception for failures in the differential expression analysis."""
    pass


def build_design_matrix(groups: pd.Series, levels: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """
    Group-means design matrix without intercept.

    Args:
        groups: Group label per sample, indexed by sample name
        levels: Column order (order of first appearance if None)

    Returns:
        DataFrame (samples x levels) of 0/1 indicators
    """
    if levels is None:
        levels = list(dict.fromkeys(groups))
    levels = list(levels)

    design = pd.DataFrame(
        {level: (groups.values == level).astype(float) for level in levels},
        index=groups.index
    )
    empty = [level for level in levels if design[level].sum() == 0]
    if empty:
        raise DGEError(f"Design matrix is rank deficient: no samples in {', '.join(empty)}")
    unassigned = design.sum(axis=1) == 0
    if unassigned.any():
        raise DGEError(
            f"Samples not covered by the design: {', '.join(map(str, design.index[unassigned]))}"
        )
    return design


_TERM = re.compile(r'\s*([+-]?)\s*(?:(\d+(?:\.\d*)?|\.\d+)\s*\*\s*)?([A-Za-z_][\w.]*)\s*')


def parse_contrast(expression: str, levels: Sequence[str]) -> np.ndarray:
    """Parse an expression such as ``"OMKO1-Untreated"`` into a coefficient vector."""
    levels = list(levels)
    vector = np.zeros(len(levels))
    pos = 0
    expression = expression.strip()
    while pos < len(expression):
        match = _TERM.match(expression, pos)
        if not match or match.end() == pos:
            raise DGEError(f"Cannot parse contrast '{expression}'")
        sign, weight, name = match.groups()
        if pos > 0 and not sign:
            raise DGEError(f"Cannot parse contrast '{expression}'")
        if name not in levels:
            raise DGEError(f"Contrast '{expression}' refers to unknown level '{name}'")
        value = float(weight) if weight else 1.0
        vector[levels.index(name)] += -value if sign == '-' else value
        pos = match.end()
    if not np.any(vector):
        raise DGEError(f"Contrast '{expression}' is empty")
    return vector


def make_contrasts(contrasts: Sequence[str], levels: Sequence[str]) -> pd.DataFrame:
    """Contrast matrix with one column per expression and one row per level."""
    return pd.DataFrame(
        {name: parse_contrast(name, levels) for name in contrasts},
        index=list(levels)
    )


@dataclass
class GLMFit:
    """Per-gene negative binomial GLM fit."""

    counts: pd.DataFrame
    design: pd.DataFrame
    offset: np.ndarray
    dispersion: np.ndarray
    coefficients: pd.DataFrame
    unshrunk_coefficients: pd.DataFrame
    fitted_values: pd.DataFrame
    deviance: pd.Series
    converged: np.ndarray
    model: edgepy.DGEGLM
    ave_log_cpm: Optional[np.ndarray] = None
    prior_count: float = 0.125

    @property
    def df_residual(self) -> int:
        return self.design.shape[0] - np.linalg.matrix_rank(self.design.values)


def as_design_matrix(design: pd.DataFrame) -> DesignMatrix:
    """Design as a patsy matrix, keeping the column names for coefficient lookup."""
    return DesignMatrix(
        np.asarray(design, dtype=float),
        design_info=DesignInfo([str(column) for column in design.columns])
    )


def glm_fit(
    counts: pd.DataFrame,
    design: pd.DataFrame,
    dispersion,
    lib_size: Optional[np.ndarray] = None,
    norm_factors: Optional[np.ndarray] = None,
    prior_count: float = 0.125,
    ave_log_cpm: Optional[np.ndarray] = None
) -> GLMFit:
    """
    Fit a negative binomial GLM for each gene with ``edgepy.glmFit``.

    Args:
        counts: Count matrix (genes x samples)
        design: Design matrix (samples x coefficients)
        dispersion: Scalar or per-gene dispersion
        lib_size: Library sizes (column sums if None)
        norm_factors: Normalization factors (ones if None)
        prior_count: Average prior count added for the reported coefficients
        ave_log_cpm: Average log-CPM, carried into the test tables

    Returns:
        GLMFit with coefficients on the natural log scale
    """
    y = counts.astype(float)
    X = np.asarray(design, dtype=float)
    if X.shape[0] != y.shape[1]:
        raise DGEError(
            f"Design has {X.shape[0]} rows but the count matrix has {y.shape[1]} samples"
        )
    if np.linalg.matrix_rank(X) < X.shape[1]:
        raise DGEError("Design matrix is not of full rank")

    lib = y.values.sum(axis=0) if lib_size is None else np.asarray(lib_size, dtype=float)
    if norm_factors is not None:
        lib = lib * np.asarray(norm_factors, dtype=float)
    offset = np.log(lib)
    disp = np.broadcast_to(np.asarray(dispersion, dtype=float).reshape(-1), (y.shape[0],)).copy()
    if np.any(disp < 0):
        raise DGEError("Dispersions must be non-negative")

    try:
        model = edgepy.glmFit(
            y, design=as_design_matrix(design), dispersion=disp,
            offset=offset, prior_count=prior_count
        )
    except ValueError as e:
        raise DGEError(f"GLM fit failed: {e}") from e

    if ave_log_cpm is None:
        ave_log_cpm = ave_log_cpm_of(y.values, lib_size=lib)
    model.AveLogCPM = np.asarray(ave_log_cpm, dtype=float)
    model.genes = None

    if model.failed is None:
        converged = np.ones(y.shape[0], dtype=bool)
    else:
        converged = ~np.asarray(model.failed, dtype=bool)
    n_failed = int((~converged).sum())
    if n_failed:
        logger.warning(f"GLM fit did not converge for {n_failed} genes")

    unshrunk = model.coefficients if model.unshrunk_coefficients is None else model.unshrunk_coefficients
    genes = counts.index
    coefs = list(design.columns)
    return GLMFit(
        counts=counts,
        design=design,
        offset=offset,
        dispersion=disp,
        coefficients=pd.DataFrame(np.asarray(model.coefficients), index=genes, columns=coefs),
        unshrunk_coefficients=pd.DataFrame(np.asarray(unshrunk), index=genes, columns=coefs),
        fitted_values=pd.DataFrame(np.asarray(model.fitted_values), index=genes, columns=counts.columns),
        deviance=pd.Series(np.asarray(model.deviance), index=genes, name="deviance"),
        converged=converged,
        model=model,
        ave_log_cpm=model.AveLogCPM,
        prior_count=prior_count
    )


@dataclass
class LRTResult:
    """Likelihood-ratio test of one contrast."""

    comparison: str
    table: pd.DataFrame
    df_test: int = 1
    result: Optional[pd.DataFrame] = None


def glm_lrt(
    fit: GLMFit,
    contrast: Optional[Union[Sequence[float], np.ndarray, pd.Series]] = None,
    coef: Optional[Union[int, str]] = None,
    name: Optional[str] = None
) -> LRTResult:
    """
    Likelihood-ratio test for one coefficient or contrast with ``edgepy.glmLRT``.

    A contrast is reparameterised into its own coefficient, the reduced
    model drops that direction, and the deviance difference is referred to
    a chi-square distribution with one degree of freedom.
    """
    columns = list(fit.design.columns)
    if contrast is not None:
        c = np.asarray(contrast, dtype=float).reshape(-1)
        if c.size != len(columns):
            raise DGEError(f"Contrast has {c.size} entries but the design has {len(columns)} columns")
        result = edgepy.glmLRT(fit.model, contrast=c)
        comparison = name or " ".join(
            f"{value:+g}*{level}" for level, value in zip(columns, c) if value != 0
        )
    else:
        if coef is None:
            coef = len(columns) - 1
        if isinstance(coef, str):
            if coef not in columns:
                raise DGEError(f"No design column named '{coef}'")
            coef = columns.index(coef)
        result = edgepy.glmLRT(fit.model, coef=int(coef))
        comparison = name or str(columns[coef])
    result.comparison = comparison

    table = pd.DataFrame({
        'logFC': np.asarray(result['log2FoldChange'], dtype=float).reshape(-1),
        'logCPM': result['logCPM'].values,
        'LR': result['stat'].values,
        'PValue': result['pvalue'].values
    }, index=fit.counts.index)

    df_test = int(np.max(result.df_test))
    return LRTResult(comparison=comparison, table=table, df_test=df_test, result=result)


def top_tags(
    lrt: LRTResult,
    n: Optional[int] = None,
    adjust_method: str = "fdr_bh",
    sort_by: str = "PValue"
) -> pd.DataFrame:
    """
    Rank genes of a test result with ``edgepy.topTags``.

    Returns:
        DataFrame with a ``gene`` column, FDR, and 1-based ``rank``,
        sorted by p-value (or absolute logFC)
    """
    tags = edgepy.topTags(
        lrt.result, n=np.inf if n is None else n,
        adjust_method=adjust_method, sort_by=sort_by
    )
    table = pd.DataFrame(tags).rename(
        columns={'log2FoldChange': 'logFC', 'stat': 'LR', 'pvalue': 'PValue'}
    )
    adjusted = 'FDR' if 'FDR' in table else 'FWER'
    table = table[['logFC', 'logCPM', 'LR', 'PValue', adjusted]]
    table.index.name = 'gene'
    table = table.reset_index()
    table['rank'] = np.arange(1, len(table) + 1)
    return table


def decide_tests(
    results: Dict[str, pd.DataFrame],
    p_value: float = 0.05,
    lfc: float = 0.0,
    adjusted: bool = True
) -> pd.DataFrame:
    """Count down-regulated, unchanged and up-regulated genes per contrast."""
    column = 'FDR' if adjusted else 'PValue'
    summary = {}
    for name, table in results.items():
        sig = (table[column] < p_value) & (table['logFC'].abs() > lfc)
        summary[name] = {
            'Down': int((sig & (table['logFC'] < 0)).sum()),
            'NotSig': int((~sig).sum()),
            'Up': int((sig & (table['logFC'] > 0)).sum())
        }
    return pd.DataFrame(summary)
