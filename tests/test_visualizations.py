"""Tests for volcano classification and figure construction."""

import numpy as np
import pandas as pd
import pytest

from phage_dge.visualizations import (
    DOWN,
    NOT_SIG,
    UP,
    classify_regulation,
    classify_results,
    create_bcv_plot,
    create_md_plot,
    create_pca_plot,
    create_volcano_plot,
    save_figure,
)


@pytest.fixture
def results():
    return pd.DataFrame({
        'gene': ['up', 'down', 'small', 'weak', 'edge_fc', 'edge_p', 'missing'],
        'logFC': [3.0, -2.5, 0.4, 4.0, 1.5, -3.0, np.nan],
        'logCPM': [5.0, 6.0, 7.0, 2.0, 4.0, 3.5, 1.0],
        'PValue': [1e-8, 1e-6, 1e-10, 0.2, 1e-9, 1e-3, 1e-9],
        'FDR': [1e-6, 1e-4, 1e-8, 0.5, 1e-7, 5e-3, 1e-7],
    })


class TestClassifyRegulation:

    @pytest.mark.parametrize("log_fc,pvalue,expected", [
        (2.0, 1e-4, UP),
        (-2.0, 1e-4, DOWN),
        (2.0, 0.01, NOT_SIG),
        (1.0, 1e-8, NOT_SIG),
        (1.5, 1e-8, NOT_SIG),
        (-1.5, 1e-8, NOT_SIG),
        (2.0, 1e-3, NOT_SIG),
        (np.nan, 1e-8, NOT_SIG),
        (2.0, np.nan, NOT_SIG),
        (2.0, None, NOT_SIG),
    ])
    def test_cases(self, log_fc, pvalue, expected):
        assert classify_regulation(log_fc, pvalue) == expected

    def test_custom_thresholds(self):
        assert classify_regulation(1.2, 0.01, lfc_threshold=1, pvalue_threshold=0.05) == UP

    def test_vectorised_matches_scalar(self, results):
        labels = classify_results(results)

        expected = [classify_regulation(fc, p) for fc, p in zip(results['logFC'], results['PValue'])]
        assert list(labels) == expected
        assert labels.name == 'regulation'
        assert list(labels) == [UP, DOWN, NOT_SIG, NOT_SIG, NOT_SIG, NOT_SIG, NOT_SIG]


class TestFigures:

    def test_volcano_traces(self, results):
        fig = create_volcano_plot(results, title="OMKO1 vs Untreated")

        names = [trace.name for trace in fig.data]
        assert len(fig.data) == 3
        assert names == [f"{UP} (1)", f"{DOWN} (1)", f"{NOT_SIG} (4)"]
        assert fig.layout.title.text == "OMKO1 vs Untreated"

    def test_volcano_labels(self, results):
        fig = create_volcano_plot(results, top_n_labels=5, highlight_genes=['small'])

        labelled = {annotation.text for annotation in fig.layout.annotations}
        assert {'up', 'down', 'small'} <= labelled

    def test_volcano_handles_zero_pvalue(self, results):
        results.loc[0, 'PValue'] = 0.0

        fig = create_volcano_plot(results)

        assert np.all(np.isfinite(fig.data[0].y))

    def test_md_plot(self, results):
        fig = create_md_plot(results)

        assert sum(len(trace.x) for trace in fig.data) == 6

    def test_bcv_plot(self):
        frame = pd.DataFrame({
            'AveLogCPM': [1.0, 3.0, 5.0],
            'tagwise': [0.2, 0.1, 0.05],
            'trended': [0.15, 0.1, 0.06],
        })

        fig = create_bcv_plot(frame, common_dispersion=0.09)

        np.testing.assert_allclose(fig.data[0].y, np.sqrt([0.2, 0.1, 0.05]))

    def test_pca_plot(self):
        rng = np.random.default_rng(0)
        samples = [f"S{i}" for i in range(6)]
        log_cpm = pd.DataFrame(rng.normal(5, 1, size=(100, 6)), columns=samples)
        log_cpm.iloc[:20, 3:] += 4
        groups = pd.Series(['Untreated'] * 3 + ['OMKO1'] * 3, index=samples)

        fig = create_pca_plot(log_cpm, groups)

        assert sum(len(trace.x) for trace in fig.data) == 6
        assert {trace.name for trace in fig.data} == {'Untreated', 'OMKO1'}

    def test_save_html(self, results, tmp_path):
        path = save_figure(create_volcano_plot(results), tmp_path / "volcano", fmt="html")

        assert path == tmp_path / "volcano.html"
        assert path.exists()
        assert "plotly" in path.read_text()
