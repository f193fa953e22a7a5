"""Shared fixtures: synthetic negative binomial count data."""

import numpy as np
import pandas as pd
import pytest

from phage_dge.config import Config, PathConfig


GROUPS = ["Untreated", "OMKO1", "LPS5", "PSA34", "PSA04"]
REPLICATES = [3, 3, 2, 2, 2]


def simulate_counts(
    group_sizes,
    n_genes=1000,
    dispersion=0.05,
    fold_changes=None,
    seed=0,
    depth_range=(0.8, 1.2)
):
    """
    Negative binomial counts for consecutive groups of samples.

    ``fold_changes`` maps a group index to a per-gene multiplicative
    factor applied to that group's means.
    """
    rng = np.random.default_rng(seed)
    base = rng.lognormal(mean=5, sigma=1.2, size=n_genes)
    columns = []
    for g, size in enumerate(group_sizes):
        mean = base.copy()
        if fold_changes and g in fold_changes:
            mean = mean * fold_changes[g]
        for _ in range(size):
            mu = mean * rng.uniform(*depth_range)
            columns.append(rng.negative_binomial(n=1 / dispersion, p=1 / (1 + mu * dispersion)))
    return np.column_stack(columns)


@pytest.fixture
def phage_samples():
    """Sample name -> group mapping for the 12-sample phage experiment."""
    mapping = {}
    for group, n in zip(GROUPS, REPLICATES):
        for i in range(n):
            mapping[f"{group}_{i + 1}"] = group
    return mapping


@pytest.fixture
def phage_counts(phage_samples):
    """Counts with 40 genes 4-fold up in OMKO1 and 40 genes 4-fold down in PSA04."""
    n_genes = 800
    fc_omko1 = np.ones(n_genes)
    fc_omko1[:40] = 4.0
    fc_psa04 = np.ones(n_genes)
    fc_psa04[40:80] = 0.25
    counts = simulate_counts(
        REPLICATES, n_genes=n_genes, dispersion=0.02,
        fold_changes={1: fc_omko1, 4: fc_psa04}, seed=7
    )
    # Some weakly expressed genes for the filter to remove
    counts[-50:] = np.random.default_rng(3).poisson(0.3, size=(50, counts.shape[1]))
    return pd.DataFrame(
        counts,
        index=pd.Index([f"PA14_{i:05d}" for i in range(n_genes)], name='gene'),
        columns=list(phage_samples)
    )


@pytest.fixture
def phage_config(tmp_path, phage_samples):
    return Config(
        samples=phage_samples,
        paths=PathConfig(output_dir=tmp_path / "out")
    )
