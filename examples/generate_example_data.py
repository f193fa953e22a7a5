"""Generate an example phage-treatment dataset for the DGE pipeline."""

import numpy as np
import pandas as pd
from pathlib import Path


GROUPS = ["Untreated", "OMKO1", "LPS5", "PSA34", "PSA04"]


def generate_example_data(
    n_genes: int = 2000,
    replicates: tuple = (3, 3, 2, 2, 2),
    n_de_genes: int = 100,
    fold_change_range: tuple = (3, 8),
    output_dir: str = "examples",
    seed: int = 42
):
    """
    Generate synthetic RNA-seq count data for five treatment groups.

    Each treatment group gets its own set of differentially expressed genes
    relative to the Untreated group.

    Args:
        n_genes: Total number of genes
        replicates: Samples per group, in GROUPS order
        n_de_genes: Number of DE genes per treatment
        fold_change_range: (min, max) fold change for DE genes
        output_dir: Directory to save files
        seed: Random seed for reproducibility
    """
    rng = np.random.default_rng(seed)

    gene_names = [f"PA14_{i:05d}" for i in range(n_genes)]
    sample_names = []
    sample_groups = []
    for group, n in zip(GROUPS, replicates):
        for i in range(n):
            sample_names.append(f"{group}_{i + 1}")
            sample_groups.append(group)

    base_expression = rng.lognormal(mean=5, sigma=1.5, size=n_genes)
    dispersion = 0.05

    ground_truth = []
    means = {"Untreated": base_expression}
    for group in GROUPS[1:]:
        idx = rng.choice(n_genes, n_de_genes, replace=False)
        fc = rng.uniform(*fold_change_range, size=n_de_genes)
        fc[: n_de_genes // 2] = 1 / fc[: n_de_genes // 2]
        expr = base_expression.copy()
        expr[idx] *= fc
        means[group] = expr
        ground_truth.append(pd.DataFrame({
            'gene': np.array(gene_names)[idx],
            'contrast': f"{group}-Untreated",
            'true_log2fc': np.log2(fc)
        }))

    counts = np.zeros((n_genes, len(sample_names)), dtype=int)
    for j, group in enumerate(sample_groups):
        depth = rng.uniform(0.7, 1.3)
        mu = means[group] * depth
        counts[:, j] = rng.negative_binomial(n=1 / dispersion, p=1 / (1 + mu * dispersion))

    # A gene length column, as written by featureCounts-style tools
    counts_df = pd.DataFrame(counts, index=gene_names, columns=sample_names)
    counts_df.insert(0, 'Length', rng.integers(300, 3000, n_genes))
    counts_df.index.name = 'gene_id'

    metadata_df = pd.DataFrame({'group': sample_groups}, index=pd.Index(sample_names, name='sample'))

    output_path = Path(output_dir)
    output_path.mkdir(exist_ok=True)

    counts_df.to_csv(output_path / "phage_counts.tsv", sep='\t')
    metadata_df.to_csv(output_path / "phage_samples.csv")
    pd.concat(ground_truth).to_csv(output_path / "ground_truth.csv", index=False)

    print(f"Generated example data in {output_path}/")
    print(f"  - {n_genes} genes x {len(sample_names)} samples")
    print(f"  - {n_de_genes} DE genes per treatment")
    print("Run with:")
    print(f"  phage-dge run {output_path}/phage_counts.tsv --metadata {output_path}/phage_samples.csv --drop-column Length")


if __name__ == "__main__":
    generate_example_data()
