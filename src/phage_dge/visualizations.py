"""Visualization functions for differential expression results."""

import logging
from pathlib import Path
from typing import Optional, List, Union

import numpy as np
import pandas as pd
import plotly.graph_objects as go
import plotly.express as px


logger = logging.getLogger(__name__)

UP = "Up-Regulated"
DOWN = "Down-Regulated"
NOT_SIG = "NS"

COLOR_MAP = {
    UP: '#E74C3C',      # Red
    DOWN: '#3498DB',    # Blue
    NOT_SIG: '#95A5A6'  # Gray
}


def classify_regulation(
    log_fc: float,
    pvalue: float,
    lfc_threshold: float = 1.5,
    pvalue_threshold: float = 1e-3
) -> str:
    """Classify one gene as up-regulated, down-regulated or not significant."""
    if log_fc is None or pvalue is None or pd.isna(log_fc) or pd.isna(pvalue):
        return NOT_SIG
    if pvalue < pvalue_threshold:
        if log_fc > lfc_threshold:
            return UP
        if log_fc < -lfc_threshold:
            return DOWN
    return NOT_SIG


def classify_results(
    results: pd.DataFrame,
    lfc_threshold: float = 1.5,
    pvalue_threshold: float = 1e-3,
    lfc_col: str = 'logFC',
    pvalue_col: str = 'PValue'
) -> pd.Series:
    """Vectorised :func:`classify_regulation` over a result table."""
    log_fc = results[lfc_col].astype(float)
    pvalue = results[pvalue_col].astype(float)
    sig = pvalue < pvalue_threshold  # NaN compares False
    labels = np.where(sig & (log_fc > lfc_threshold), UP,
                      np.where(sig & (log_fc < -lfc_threshold), DOWN, NOT_SIG))
    return pd.Series(labels, index=results.index, name='regulation')


def create_volcano_plot(
    results: pd.DataFrame,
    lfc_threshold: float = 1.5,
    pvalue_threshold: float = 1e-3,
    top_n_labels: int = 10,
    highlight_genes: Optional[List[str]] = None,
    title: str = "Volcano Plot"
) -> go.Figure:
    """
    Create volcano plot of one contrast.

    Args:
        results: Ranked result table (gene, logFC, logCPM, PValue, FDR)
        lfc_threshold: Log2 fold change threshold
        pvalue_threshold: P-value cutoff for significance
        top_n_labels: Number of top up and down genes to label
        highlight_genes: Specific genes to label regardless of rank
        title: Plot title

    Returns:
        Plotly Figure object
    """
    plot_data = results.dropna(subset=['PValue', 'logFC']).copy()

    plot_data['-log10p'] = -np.log10(plot_data['PValue'])

    # Replace infinite values
    max_log10p = plot_data['-log10p'].replace([np.inf, -np.inf], np.nan).max()
    if pd.isna(max_log10p):
        max_log10p = 1.0
    plot_data['-log10p'] = plot_data['-log10p'].replace([np.inf], max_log10p * 1.1)

    plot_data['regulation'] = classify_results(plot_data, lfc_threshold, pvalue_threshold)

    fig = go.Figure()

    # Plot each category separately for better control
    for category, color in COLOR_MAP.items():
        data_subset = plot_data[plot_data['regulation'] == category]
        n = len(data_subset)

        fig.add_trace(go.Scatter(
            x=data_subset['logFC'],
            y=data_subset['-log10p'],
            mode='markers',
            name=f"{category} ({n})",
            marker=dict(
                color=color,
                size=5,
                opacity=0.5 if category == NOT_SIG else 0.8,
                line=dict(width=0)
            ),
            text=data_subset['gene'],
            customdata=data_subset[['PValue', 'FDR']] if 'FDR' in data_subset else data_subset[['PValue']],
            hovertemplate=(
                '<b>%{text}</b><br>' +
                'log2FC: %{x:.2f}<br>' +
                '-log10(p): %{y:.2f}<br>' +
                'P: %{customdata[0]:.2e}<br>' +
                '<extra></extra>'
            )
        ))

    fig.add_hline(
        y=-np.log10(pvalue_threshold),
        line_dash="dash",
        line_color="gray",
        annotation_text=f"p = {pvalue_threshold:g}",
        annotation_position="right"
    )
    fig.add_vline(x=lfc_threshold, line_dash="dash", line_color="gray")
    fig.add_vline(x=-lfc_threshold, line_dash="dash", line_color="gray")

    labelled = plot_data.iloc[0:0]
    if top_n_labels > 0:
        sig_genes = plot_data[plot_data['regulation'] != NOT_SIG]
        sig_genes = sig_genes.sort_values('-log10p', ascending=False)
        up_genes = sig_genes[sig_genes['regulation'] == UP].head(top_n_labels)
        down_genes = sig_genes[sig_genes['regulation'] == DOWN].head(top_n_labels)
        labelled = pd.concat([up_genes, down_genes])
    if highlight_genes:
        # Explicitly requested genes are labelled even when not significant
        extra = plot_data[plot_data['gene'].isin(highlight_genes)]
        labelled = pd.concat([labelled, extra]).drop_duplicates(subset='gene')

    for _, gene in labelled.iterrows():
        fig.add_annotation(
            x=gene['logFC'],
            y=gene['-log10p'],
            text=gene['gene'],
            showarrow=True,
            arrowhead=2,
            arrowsize=1,
            arrowwidth=1,
            arrowcolor='black',
            ax=20 if gene['logFC'] > 0 else -20,
            ay=-20,
            font=dict(size=9),
            bgcolor='rgba(255, 255, 255, 0.8)',
            borderpad=2
        )

    fig.update_layout(
        title=title,
        xaxis_title="log<sub>2</sub> Fold Change",
        yaxis_title="-log<sub>10</sub> (p-value)",
        hovermode='closest',
        template='plotly_white',
        width=900,
        height=600,
        showlegend=True,
        legend=dict(
            x=0.02,
            y=0.98,
            bgcolor='rgba(255, 255, 255, 0.8)',
            bordercolor='black',
            borderwidth=1
        )
    )

    return fig


def create_md_plot(
    results: pd.DataFrame,
    fdr_threshold: float = 0.05,
    title: str = "Mean-Difference Plot"
) -> go.Figure:
    """
    Create mean-difference plot (average log-CPM vs log2 fold change).

    Args:
        results: Ranked result table
        fdr_threshold: FDR cutoff for highlighting
        title: Plot title

    Returns:
        Plotly Figure object
    """
    plot_data = results.dropna(subset=['logFC', 'logCPM']).copy()
    sig = plot_data['FDR'] < fdr_threshold
    plot_data['status'] = np.where(sig & (plot_data['logFC'] > 0), UP,
                                   np.where(sig & (plot_data['logFC'] < 0), DOWN, NOT_SIG))

    fig = go.Figure()

    for category, color in COLOR_MAP.items():
        data_subset = plot_data[plot_data['status'] == category]

        fig.add_trace(go.Scatter(
            x=data_subset['logCPM'],
            y=data_subset['logFC'],
            mode='markers',
            name=category,
            marker=dict(
                color=color,
                size=4,
                opacity=0.5 if category == NOT_SIG else 0.7,
                line=dict(width=0)
            ),
            text=data_subset['gene'],
            hovertemplate=(
                '<b>%{text}</b><br>' +
                'logCPM: %{x:.2f}<br>' +
                'log2FC: %{y:.2f}<br>' +
                '<extra></extra>'
            )
        ))

    fig.add_hline(y=0, line_color="black", line_width=1)

    fig.update_layout(
        title=title,
        xaxis_title="Average log<sub>2</sub> CPM",
        yaxis_title="log<sub>2</sub> Fold Change",
        hovermode='closest',
        template='plotly_white',
        width=900,
        height=600,
        showlegend=True
    )

    return fig


def create_bcv_plot(
    dispersions: pd.DataFrame,
    common_dispersion: float,
    title: str = "Biological Coefficient of Variation"
) -> go.Figure:
    """
    Plot tagwise, trended and common BCV against average log-CPM.

    Args:
        dispersions: Frame with AveLogCPM, tagwise and trended columns
        common_dispersion: Common dispersion
        title: Plot title
    """
    data = dispersions.sort_values('AveLogCPM')

    fig = go.Figure()
    fig.add_trace(go.Scatter(
        x=data['AveLogCPM'],
        y=np.sqrt(data['tagwise']),
        mode='markers',
        name='Tagwise',
        marker=dict(color='#34495E', size=3, opacity=0.5)
    ))
    fig.add_trace(go.Scatter(
        x=data['AveLogCPM'],
        y=np.sqrt(data['trended']),
        mode='lines',
        name='Trend',
        line=dict(color='#3498DB', width=2)
    ))
    fig.add_hline(
        y=np.sqrt(common_dispersion),
        line_color='#E74C3C',
        annotation_text="Common",
        annotation_position="right"
    )

    fig.update_layout(
        title=title,
        xaxis_title="Average log<sub>2</sub> CPM",
        yaxis_title="Biological coefficient of variation",
        template='plotly_white',
        width=800,
        height=600
    )

    return fig


def create_pca_plot(
    log_cpm: pd.DataFrame,
    groups: pd.Series,
    top_n: int = 500,
    title: str = "PCA Plot"
) -> go.Figure:
    """
    Create PCA plot of samples on the most variable genes.

    Args:
        log_cpm: Log-CPM matrix (genes x samples)
        groups: Treatment group per sample
        top_n: Number of most variable genes used
        title: Plot title

    Returns:
        Plotly Figure object
    """
    from sklearn.decomposition import PCA

    variances = log_cpm.var(axis=1)
    selected = variances[variances > 0].sort_values(ascending=False).head(top_n).index

    # Transpose (samples as rows)
    data = log_cpm.loc[selected].T

    pca = PCA(n_components=min(2, data.shape[0], data.shape[1]))
    coords = pca.fit_transform(data)
    if coords.shape[1] < 2:
        coords = np.column_stack([coords, np.zeros(coords.shape[0])])
    var_exp = np.append(pca.explained_variance_ratio_ * 100, [0.0, 0.0])

    pca_df = pd.DataFrame(coords[:, :2], index=data.index, columns=['PC1', 'PC2'])
    pca_df['group'] = groups.reindex(pca_df.index).values

    fig = px.scatter(
        pca_df,
        x='PC1',
        y='PC2',
        color='group',
        text=pca_df.index,
        title=title,
        labels={
            'PC1': f'PC1 ({var_exp[0]:.1f}%)',
            'PC2': f'PC2 ({var_exp[1]:.1f}%)'
        }
    )

    fig.update_traces(
        marker=dict(size=12, line=dict(width=1, color='white')),
        textposition='top center'
    )

    fig.update_layout(
        template='plotly_white',
        width=800,
        height=600,
        showlegend=True
    )

    return fig


def save_figure(fig: go.Figure, path: Union[str, Path], fmt: str = "html") -> Path:
    """Write a figure as standalone HTML or, through kaleido, as a static image."""
    path = Path(path).with_suffix(f".{fmt}")
    if fmt == "html":
        fig.write_html(path, include_plotlyjs='cdn')
    else:
        fig.write_image(path)
    logger.debug(f"Wrote {path}")
    return path
