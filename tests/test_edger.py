"""Tests for the R edgeR backend."""

from unittest.mock import MagicMock

import pandas as pd
import pytest

from phage_dge import edger
from phage_dge.glm import DGEError, build_design_matrix, make_contrasts
from phage_dge.pipeline import prepare_inputs, run_dge_edger


LEVELS = ["Untreated", "OMKO1", "LPS5", "PSA34", "PSA04"]


def _edger_installed():
    if not edger.RPY2_AVAILABLE:
        return False
    try:
        edger.EdgeRWrapper()
    except Exception:
        return False
    return True


def test_missing_rpy2(monkeypatch):
    monkeypatch.setattr(edger, "RPY2_AVAILABLE", False)

    with pytest.raises(DGEError, match="rpy2"):
        edger.EdgeRWrapper()


@pytest.mark.skipif(not _edger_installed(), reason="R with edgeR is not available")
def test_run_edger(phage_counts, phage_samples):
    groups = pd.Series(phage_samples)
    levels = ["Untreated", "OMKO1", "LPS5", "PSA34", "PSA04"]
    design = build_design_matrix(groups, levels)
    contrasts = make_contrasts([f"{g}-Untreated" for g in levels[1:]], levels)

    out = edger.run_edger(phage_counts, groups, design, contrasts)

    assert list(out['results']) == list(contrasts.columns)
    kept = set(phage_counts.index[out['keep'].values])
    for table in out['results'].values():
        assert set(table['gene']) == kept
        assert {'logFC', 'logCPM', 'LR', 'PValue', 'FDR'} <= set(table.columns)
    assert out['log_cpm'].shape == (len(kept), phage_counts.shape[1])


@pytest.fixture
def mocked_wrapper(monkeypatch):
    """Wrapper whose R side is replaced by mocks, so calls can be inspected."""
    monkeypatch.setattr(edger, "ro", MagicMock(), raising=False)
    wrapper = edger.EdgeRWrapper.__new__(edger.EdgeRWrapper)
    wrapper.edger = MagicMock()
    wrapper.base = MagicMock()
    return wrapper


class TestRArguments:

    def test_filter_settings_use_r_names(self, mocked_wrapper):
        mocked_wrapper.edger.filterByExpr.return_value = [True, False, True]

        _, keep = mocked_wrapper.filter_by_expr(
            "y", "design", min_count=5, min_total_count=20, large_n=6, min_prop=0.5
        )

        kwargs = mocked_wrapper.edger.filterByExpr.call_args.kwargs
        assert kwargs['min.count'] == 5
        assert kwargs['min.total.count'] == 20
        assert kwargs['large.n'] == 6
        assert kwargs['min.prop'] == 0.5
        assert kwargs['design'] == "design"
        assert not any('_' in name for name in kwargs)
        assert list(keep) == [True, False, True]

    def test_normalization_and_prior_df_forwarded(self, mocked_wrapper):
        contrasts = pd.DataFrame(index=LEVELS)

        mocked_wrapper.run_glm(
            "y", "design", contrasts, method="upperquartile",
            logratio_trim=0.2, sum_trim=0.1, do_weighting=False, prior_df=4
        )

        norm = mocked_wrapper.edger.calcNormFactors.call_args.kwargs
        assert norm == {
            'method': "upperquartile", 'logratioTrim': 0.2, 'sumTrim': 0.1, 'doWeighting': False
        }
        disp = mocked_wrapper.edger.estimateDisp.call_args.kwargs
        assert disp == {'prior.df': 4}

    def test_pipeline_forwards_config(self, monkeypatch, phage_counts, phage_config):
        captured = {}

        def fake_run_edger(counts, groups, design, contrasts, **kwargs):
            captured.update(kwargs)
            keep = pd.Series(True, index=counts.index)
            table = pd.DataFrame({'gene': counts.index, 'logFC': 0.0, 'PValue': 1.0, 'FDR': 1.0})
            return {
                'results': {name: table for name in contrasts.columns},
                'log_cpm': counts,
                'norm_factors': [1.0] * counts.shape[1],
                'keep': keep
            }

        monkeypatch.setattr(edger, "run_edger", fake_run_edger)
        phage_config.filtering.min_count = 3
        phage_config.filtering.min_prop = 0.4
        phage_config.normalization.method = "upperquartile"
        phage_config.dispersion.prior_df = 2

        analysis = run_dge_edger(prepare_inputs(phage_counts, phage_config), phage_config)

        assert captured['min_count'] == 3
        assert captured['min_prop'] == 0.4
        assert captured['large_n'] == phage_config.filtering.large_n
        assert captured['method'] == "upperquartile"
        assert captured['prior_df'] == 2
        assert analysis.engine == "edger"
