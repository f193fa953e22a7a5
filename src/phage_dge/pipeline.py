"""End-to-end differential expression pipeline: treatments versus control."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np
import pandas as pd

from .config import Config, get_config
from .dispersion import DispersionEstimate, estimate_disp
from .filtering import filter_by_expr
from .glm import DGEError, GLMFit, build_design_matrix, decide_tests, glm_fit, glm_lrt, make_contrasts, top_tags
from .normalization import calc_norm_factors, cpm
from .validation import (
    ValidationError,
    build_sample_groups,
    read_count_matrix,
    read_metadata,
    validate_analysis_inputs,
    validate_count_matrix,
    validate_metadata,
)
from .visualizations import (
    classify_results,
    create_bcv_plot,
    create_md_plot,
    create_pca_plot,
    create_volcano_plot,
    save_figure,
)


logger = logging.getLogger(__name__)


@dataclass
class DGEData:
    """Counts with sample groups, library sizes and normalization factors."""

    counts: pd.DataFrame
    groups: pd.Series
    lib_size: pd.Series = None
    norm_factors: pd.Series = None
    dispersion: Optional[DispersionEstimate] = None

    def __post_init__(self):
        if self.lib_size is None:
            self.lib_size = self.counts.sum(axis=0).astype(float)
        if self.norm_factors is None:
            self.norm_factors = pd.Series(1.0, index=self.counts.columns)

    def subset(self, keep: pd.Series, keep_lib_sizes: bool = False) -> "DGEData":
        """Retain genes in ``keep``; library sizes are recomputed unless kept."""
        counts = self.counts.loc[keep.values]
        return DGEData(
            counts=counts,
            groups=self.groups,
            lib_size=self.lib_size if keep_lib_sizes else None,
            norm_factors=None
        )

    def log_cpm(self, prior_count: float = 2.0) -> pd.DataFrame:
        return cpm(self.counts, lib_size=self.lib_size.values,
                   norm_factors=self.norm_factors.values, log=True, prior_count=prior_count)


@dataclass
class DGEAnalysis:
    """Everything produced by one pipeline run."""

    data: DGEData
    keep: pd.Series
    design: pd.DataFrame
    contrasts: pd.DataFrame
    results: Dict[str, pd.DataFrame]
    log_cpm: pd.DataFrame
    summary: pd.DataFrame
    fit: Optional[GLMFit] = None
    engine: str = "native"
    outputs: Dict[str, Path] = field(default_factory=dict)


def contrast_label(expression: str) -> str:
    """File-safe label for a contrast such as ``OMKO1-Untreated``."""
    return expression.replace(' ', '').replace('-', '_vs_').replace('+', '_plus_').replace('*', 'x')


def prepare_inputs(
    counts: pd.DataFrame,
    config: Optional[Config] = None,
    metadata: Optional[pd.DataFrame] = None
) -> DGEData:
    """
    Validate counts and assign samples to treatment groups.

    Raises:
        ValidationError: on malformed counts or group assignments
    """
    config = config or get_config()

    if metadata is not None and not config.samples:
        result = validate_analysis_inputs(
            counts, metadata, config.condition_column, known_groups=config.groups
        )
    else:
        result, _ = validate_count_matrix(counts)
    for warning in result.warnings:
        logger.warning(warning.message)
    result.raise_for_errors()

    counts = counts.round()

    groups = build_sample_groups(
        counts.columns,
        mapping=config.samples or None,
        metadata=metadata,
        condition_column=config.condition_column,
        group_order=config.group_order or None,
        known_groups=config.groups
    )

    if config.reference_group not in config.groups:
        raise ValidationError(f"Reference group '{config.reference_group}' is not a known group")

    group_result, _ = validate_metadata(
        groups.to_frame(), condition_column=config.condition_column, known_groups=config.groups
    )
    logged = {warning.message for warning in result.warnings}
    for warning in group_result.warnings:
        if warning.message not in logged:
            logger.warning(warning.message)
    group_result.raise_for_errors()

    logger.info(
        "Sample groups: " + ", ".join(f"{g}={n}" for g, n in groups.value_counts().items())
    )
    return DGEData(counts=counts.astype(float), groups=groups)


def run_dge(data: DGEData, config: Optional[Config] = None) -> DGEAnalysis:
    """
    Run filter, TMM, dispersion estimation, GLM fit and LRT for every contrast.

    Args:
        data: Validated counts with sample groups
        config: Pipeline configuration

    Returns:
        DGEAnalysis with one ranked table per contrast
    """
    config = config or get_config()
    design = build_design_matrix(data.groups, levels=config.groups)
    contrasts = make_contrasts(config.contrasts, levels=config.groups)

    flt = config.filtering
    keep = filter_by_expr(
        data.counts, design=design,
        min_count=flt.min_count, min_total_count=flt.min_total_count,
        large_n=flt.large_n, min_prop=flt.min_prop
    )
    if not keep.any():
        raise DGEError("No genes passed the expression filter")
    filtered = data.subset(keep)

    norm = config.normalization
    filtered.norm_factors = calc_norm_factors(
        filtered.counts, lib_size=filtered.lib_size.values, method=norm.method,
        logratio_trim=norm.logratio_trim, sum_trim=norm.sum_trim,
        do_weighting=norm.do_weighting
    )
    logger.info(
        "Normalization factors: "
        + ", ".join(f"{s}={f:.3f}" for s, f in filtered.norm_factors.items())
    )

    disp = config.dispersion
    filtered.dispersion = estimate_disp(
        filtered.counts, design,
        lib_size=filtered.lib_size.values, norm_factors=filtered.norm_factors.values,
        prior_df=disp.prior_df, grid_length=disp.grid_length,
        grid_range=disp.grid_range, min_row_sum=disp.min_row_sum, span=disp.span
    )

    fit = glm_fit(
        filtered.counts, design, filtered.dispersion.tagwise,
        lib_size=filtered.lib_size.values, norm_factors=filtered.norm_factors.values,
        ave_log_cpm=filtered.dispersion.ave_log_cpm
    )

    results = {}
    for name in contrasts.columns:
        lrt = glm_lrt(fit, contrast=contrasts[name].values, name=name)
        results[name] = top_tags(lrt)

    summary = decide_tests(results, p_value=config.thresholds.fdr_threshold)
    for name in results:
        logger.info(
            f"{name}: {summary.loc['Up', name]} up, {summary.loc['Down', name]} down "
            f"(FDR < {config.thresholds.fdr_threshold})"
        )

    return DGEAnalysis(
        data=filtered,
        keep=keep,
        design=design,
        contrasts=contrasts,
        results=results,
        log_cpm=filtered.log_cpm(norm.prior_count),
        summary=summary,
        fit=fit,
        engine="native"
    )


def run_dge_edger(data: DGEData, config: Optional[Config] = None) -> DGEAnalysis:
    """Run the same workflow through R's edgeR."""
    from .edger import run_edger

    config = config or get_config()
    design = build_design_matrix(data.groups, levels=config.groups)
    contrasts = make_contrasts(config.contrasts, levels=config.groups)

    flt = config.filtering
    norm = config.normalization
    out = run_edger(
        data.counts, data.groups, design, contrasts,
        min_count=flt.min_count, min_total_count=flt.min_total_count,
        large_n=flt.large_n, min_prop=flt.min_prop,
        method=norm.method, logratio_trim=norm.logratio_trim, sum_trim=norm.sum_trim,
        do_weighting=norm.do_weighting, prior_df=config.dispersion.prior_df,
        prior_count=norm.prior_count
    )
    filtered = data.subset(out['keep'])
    filtered.norm_factors = pd.Series(
        np.asarray(out['norm_factors'], dtype=float), index=filtered.counts.columns
    )

    return DGEAnalysis(
        data=filtered,
        keep=out['keep'],
        design=design,
        contrasts=contrasts,
        results=out['results'],
        log_cpm=out['log_cpm'],
        summary=decide_tests(out['results'], p_value=config.thresholds.fdr_threshold),
        engine="edger"
    )


def export_results(analysis: DGEAnalysis, config: Optional[Config] = None) -> Dict[str, Path]:
    """
    Write result tables and plots.

    Returns:
        Mapping of output name to written path
    """
    config = config or get_config()
    paths = config.paths
    paths.create_directories()
    thr = config.thresholds
    fmt = config.plot_format
    outputs: Dict[str, Path] = {}

    log_cpm_path = paths.tables_dir / "normalized_log_cpm.csv"
    analysis.log_cpm.to_csv(log_cpm_path, index_label='gene')
    outputs['log_cpm'] = log_cpm_path

    summary_path = paths.tables_dir / "de_summary.csv"
    analysis.summary.to_csv(summary_path)
    outputs['summary'] = summary_path

    for name, table in analysis.results.items():
        label = contrast_label(name)
        table = table.copy()
        table['regulation'] = classify_results(table, thr.lfc_threshold, thr.pvalue_threshold)

        table_path = paths.tables_dir / f"{label}_results.csv"
        table.to_csv(table_path, index=False)
        outputs[f"{label}_results"] = table_path

        volcano = create_volcano_plot(
            table, lfc_threshold=thr.lfc_threshold, pvalue_threshold=thr.pvalue_threshold,
            top_n_labels=thr.top_n_labels, title=f"{name}"
        )
        outputs[f"{label}_volcano"] = save_figure(volcano, paths.plots_dir / f"{label}_volcano", fmt)

        if 'FDR' in table and 'logCPM' in table:
            md = create_md_plot(table, fdr_threshold=thr.fdr_threshold, title=f"{name}")
            outputs[f"{label}_md"] = save_figure(md, paths.plots_dir / f"{label}_md", fmt)

    dispersion = analysis.data.dispersion
    if dispersion is not None:
        disp_frame = dispersion.to_frame(analysis.data.counts.index)
        disp_path = paths.tables_dir / "dispersions.csv"
        disp_frame.to_csv(disp_path, index_label='gene')
        outputs['dispersions'] = disp_path
        bcv = create_bcv_plot(disp_frame, dispersion.common)
        outputs['bcv'] = save_figure(bcv, paths.plots_dir / "bcv", fmt)

    if analysis.log_cpm.shape[1] >= 2:
        pca = create_pca_plot(analysis.log_cpm, analysis.data.groups)
        outputs['pca'] = save_figure(pca, paths.plots_dir / "pca", fmt)

    logger.info(f"Wrote {len(outputs)} files to {paths.output_dir}")
    analysis.outputs = outputs
    return outputs


def run_pipeline(
    counts_path: Union[str, Path],
    config: Optional[Config] = None,
    metadata_path: Optional[Union[str, Path]] = None,
    export: bool = True
) -> DGEAnalysis:
    """Load counts, run the configured engine and write all outputs."""
    config = config or get_config()

    counts = read_count_matrix(counts_path, drop_columns=config.drop_columns)
    metadata = read_metadata(metadata_path) if metadata_path is not None else None
    data = prepare_inputs(counts, config, metadata=metadata)

    if config.engine == "edger":
        analysis = run_dge_edger(data, config)
    else:
        analysis = run_dge(data, config)

    if export:
        export_results(analysis, config)
    return analysis
