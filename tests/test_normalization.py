"""Tests for TMM normalization and CPM transforms."""

import numpy as np
import pandas as pd
import pytest

from phage_dge.normalization import (
    ave_log_cpm,
    calc_norm_factors,
    cpm,
    effective_lib_sizes,
    mglm_one_group,
)
from conftest import simulate_counts


@pytest.fixture
def counts():
    return pd.DataFrame(
        simulate_counts([3, 3], n_genes=2000, dispersion=0.05, seed=11),
        columns=[f"S{i}" for i in range(6)]
    )


class TestCalcNormFactors:

    def test_geometric_mean_is_one(self, counts):
        factors = calc_norm_factors(counts)

        assert list(factors.index) == list(counts.columns)
        assert np.exp(np.mean(np.log(factors))) == pytest.approx(1.0)

    def test_identical_samples(self):
        column = np.random.default_rng(1).poisson(50, 500)
        counts = pd.DataFrame(np.column_stack([column] * 4))

        np.testing.assert_allclose(calc_norm_factors(counts), 1.0)

    def test_unweighted_factors_invariant_to_sample_scaling(self, counts):
        scaled = counts.copy()
        scaled['S2'] = scaled['S2'] * 4

        before = calc_norm_factors(counts, do_weighting=False)
        after = calc_norm_factors(scaled, do_weighting=False)

        np.testing.assert_allclose(after.values, before.values, rtol=1e-10)

    def test_weighted_factors_nearly_invariant_to_sample_scaling(self, counts):
        scaled = counts.copy()
        scaled['S4'] = scaled['S4'] * 2

        before = calc_norm_factors(counts)
        after = calc_norm_factors(scaled)

        np.testing.assert_allclose(after.values, before.values, atol=0.02)

    def test_composition_bias_is_corrected(self):
        rng = np.random.default_rng(5)
        base = rng.lognormal(4, 1, 3000)
        boosted = base.copy()
        boosted[:300] *= 10  # a few genes soak up reads in the second sample
        counts = pd.DataFrame({
            'a': rng.poisson(base),
            'b': rng.poisson(boosted),
        })

        factors = calc_norm_factors(counts)
        eff = effective_lib_sizes(counts, norm_factors=factors.values)

        # Effective library sizes agree on the unchanged genes
        ratio = counts.loc[300:, 'b'].sum() / counts.loc[300:, 'a'].sum()
        assert eff[1] / eff[0] == pytest.approx(ratio, rel=0.05)
        assert factors['b'] < factors['a']

    def test_upper_quartile(self, counts):
        factors = calc_norm_factors(counts, method="upperquartile")

        assert np.prod(factors.values) == pytest.approx(1.0)

    def test_none(self, counts):
        np.testing.assert_array_equal(calc_norm_factors(counts, method="none"), 1.0)

    def test_unknown_method(self, counts):
        with pytest.raises(ValueError):
            calc_norm_factors(counts, method="RLE")

    def test_missing_values_rejected(self, counts):
        bad = counts.astype(float)
        bad.iloc[0, 0] = np.nan

        with pytest.raises(ValueError, match="NA"):
            calc_norm_factors(bad)


class TestCpm:

    def test_columns_sum_to_a_million(self, counts):
        values = cpm(counts)

        assert isinstance(values, pd.DataFrame)
        np.testing.assert_allclose(values.sum(axis=0), 1e6)

    def test_norm_factors_scale_library(self):
        counts = np.array([[100.0, 100.0], [900.0, 900.0]])

        values = cpm(counts, norm_factors=np.array([0.5, 2.0]))

        np.testing.assert_allclose(values[0], [2e5, 5e4])

    def test_log_cpm_uses_scaled_prior(self):
        counts = np.array([[0.0, 10.0], [1000.0, 2990.0]])
        lib = counts.sum(axis=0)  # 1000, 3000

        values = cpm(counts, log=True, prior_count=2)

        prior = 2 * lib / lib.mean()  # 1, 3
        expected = np.log2((counts + prior) / (lib + 2 * prior) * 1e6)
        np.testing.assert_allclose(values, expected)

    def test_log_cpm_of_zero_is_finite(self):
        values = cpm(np.array([[0.0, 0.0], [10.0, 20.0]]), log=True)

        assert np.all(np.isfinite(values))


class TestAveLogCpm:

    def test_constant_gene(self):
        counts = np.array([[100.0] * 4, [999_900.0] * 4])

        alc = ave_log_cpm(counts)

        expected = np.log2(102 / (1e6 + 4) * 1e6)
        assert alc[0] == pytest.approx(expected, rel=1e-8)

    def test_increases_with_expression(self, counts):
        alc = ave_log_cpm(counts)
        totals = counts.sum(axis=1).values

        order = np.argsort(totals)
        assert alc[order[-1]] > alc[order[0]]

    def test_one_group_fit_matches_mean(self):
        y = np.array([[10.0, 20.0, 30.0]])
        beta = mglm_one_group(y, 0.0, np.log(np.array([1.0, 1.0, 1.0])))

        assert np.exp(beta[0]) == pytest.approx(20.0)

    def test_one_group_all_zero(self):
        beta = mglm_one_group(np.zeros((1, 3)), 0.1, np.zeros(3))

        assert np.isneginf(beta[0])
