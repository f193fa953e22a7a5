"""Configuration management for the phage DGE pipeline."""

from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml


DEFAULT_GROUPS = ["Untreated", "OMKO1", "LPS5", "PSA34", "PSA04"]


class FilterSettings(BaseModel):
    """Expression filter thresholds (filterByExpr)."""

    min_count: float = Field(default=10, ge=0)
    min_total_count: float = Field(default=15, ge=0)
    large_n: int = Field(default=10, ge=1)
    min_prop: float = Field(default=0.7, ge=0.0, le=1.0)


class NormalizationSettings(BaseModel):
    """Library-size normalization parameters."""

    method: str = Field(default="TMM", pattern="^(TMM|upperquartile|none)$")
    logratio_trim: float = Field(default=0.3, ge=0.0, lt=0.5)
    sum_trim: float = Field(default=0.05, ge=0.0, lt=0.5)
    do_weighting: bool = True
    prior_count: float = Field(default=2.0, ge=0.0)


class DispersionSettings(BaseModel):
    """Empirical Bayes dispersion estimation parameters."""

    prior_df: float = Field(default=10.0, ge=0.0)
    grid_length: int = Field(default=21, ge=5)
    grid_range: Tuple[float, float] = (-10.0, 10.0)
    min_row_sum: float = Field(default=5, ge=0)
    span: Optional[float] = Field(default=None, gt=0.0, le=1.0)


class ThresholdSettings(BaseModel):
    """Thresholds used to classify and label results."""

    lfc_threshold: float = Field(default=1.5, ge=0.0)
    pvalue_threshold: float = Field(default=1e-3, gt=0.0, le=1.0)
    fdr_threshold: float = Field(default=0.05, gt=0.0, le=1.0)
    top_n_labels: int = Field(default=10, ge=0)


class PathConfig(BaseModel):
    """Output locations."""

    output_dir: Path = Field(default_factory=lambda: Path("dge_results"))
    tables_dir: Optional[Path] = None
    plots_dir: Optional[Path] = None

    def model_post_init(self, __context):
        # Set derived paths if not provided
        if self.tables_dir is None:
            self.tables_dir = self.output_dir / "tables"
        if self.plots_dir is None:
            self.plots_dir = self.output_dir / "plots"

    def create_directories(self):
        """Create all output directories."""
        for path in [self.output_dir, self.tables_dir, self.plots_dir]:
            path.mkdir(parents=True, exist_ok=True)


class Config(BaseSettings):
    """Main configuration class."""

    model_config = SettingsConfigDict(
        env_prefix="PHAGE_DGE_",
        env_nested_delimiter="__",
    )

    filtering: FilterSettings = Field(default_factory=FilterSettings)
    normalization: NormalizationSettings = Field(default_factory=NormalizationSettings)
    dispersion: DispersionSettings = Field(default_factory=DispersionSettings)
    thresholds: ThresholdSettings = Field(default_factory=ThresholdSettings)
    paths: PathConfig = Field(default_factory=PathConfig)

    # Experiment layout
    groups: List[str] = Field(default_factory=lambda: list(DEFAULT_GROUPS))
    reference_group: str = "Untreated"
    samples: Dict[str, str] = Field(default_factory=dict)  # sample name -> group
    group_order: List[str] = Field(default_factory=list)   # positional fallback
    condition_column: str = "group"
    drop_columns: List[str] = Field(default_factory=list)

    # Run settings
    engine: str = Field(default="native", pattern="^(native|edger)$")
    plot_format: str = Field(default="html", pattern="^(html|png|svg|pdf)$")

    @property
    def contrasts(self) -> List[str]:
        """Every non-reference group against the reference group."""
        return [
            f"{group}-{self.reference_group}"
            for group in self.groups
            if group != self.reference_group
        ]

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """Load configuration from YAML file."""
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    def to_yaml(self, path: Path):
        """Save configuration to YAML file."""
        data = self.model_dump()
        # Convert Path objects and tuples to plain YAML types
        def convert(obj):
            if isinstance(obj, dict):
                return {k: convert(v) for k, v in obj.items()}
            elif isinstance(obj, (list, tuple)):
                return [convert(item) for item in obj]
            elif isinstance(obj, Path):
                return str(obj)
            return obj

        data = convert(data)

        with open(path, 'w') as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def set_config(config: Config):
    """Set the global configuration instance."""
    global _config
    _config = config


# Example config.yaml template
CONFIG_TEMPLATE = """
# Phage DGE pipeline configuration

filtering:
  min_count: 10              # Minimum count (as CPM at median library size)
  min_total_count: 15        # Minimum total count across all samples
  large_n: 10
  min_prop: 0.7

normalization:
  method: TMM                # TMM, upperquartile or none
  logratio_trim: 0.3
  sum_trim: 0.05
  do_weighting: true
  prior_count: 2             # Prior count for log-CPM output

dispersion:
  prior_df: 10               # Prior degrees of freedom for tagwise shrinkage
  grid_length: 21
  grid_range: [-10, 10]
  min_row_sum: 5

thresholds:
  lfc_threshold: 1.5         # |log2FC| cutoff for the volcano plot
  pvalue_threshold: 0.001    # p-value cutoff for the volcano plot
  fdr_threshold: 0.05        # FDR cutoff for the DE summary table
  top_n_labels: 10

paths:
  output_dir: dge_results
  # tables_dir: dge_results/tables
  # plots_dir: dge_results/plots

groups: [Untreated, OMKO1, LPS5, PSA34, PSA04]
reference_group: Untreated

# Map each count-matrix column to its treatment group. Required unless
# --metadata is given: without a mapping the run stops with
# "No sample-to-group assignment was provided". Replace the example
# names below with the column names of your count matrix.
samples:
  Untreated_1: Untreated
  Untreated_2: Untreated
  Untreated_3: Untreated
  OMKO1_1: OMKO1
  OMKO1_2: OMKO1
  OMKO1_3: OMKO1
  LPS5_1: LPS5
  LPS5_2: LPS5
  PSA34_1: PSA34
  PSA34_2: PSA34
  PSA04_1: PSA04
  PSA04_2: PSA04

drop_columns: []             # e.g. [Length]
engine: native               # native or edger (requires R + rpy2)
plot_format: html            # html, png, svg or pdf (non-html needs kaleido)
"""
