"""Data loading and validation for count matrices and sample sheets."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd
import numpy as np
from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)


class ValidationError(Exception):
    """Custom exception for validation errors."""
    pass


class ValidationWarning(BaseModel):
    """Warning message from validation."""
    message: str
    severity: str = Field(default="warning")  # warning, info


class ValidationResult(BaseModel):
    """Result of data validation."""
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[ValidationWarning] = Field(default_factory=list)
    summary: Dict[str, Any] = Field(default_factory=dict)

    def raise_for_errors(self):
        """Raise ValidationError if the result carries errors."""
        if not self.valid:
            raise ValidationError("; ".join(self.errors))


class CountMatrixSchema(BaseModel):
    """Schema for count matrix validation."""
    n_genes: int
    n_samples: int
    gene_ids: List[str]
    sample_ids: List[str]
    has_negative: bool
    has_non_integer: bool
    has_missing: bool
    library_sizes: Dict[str, float]


class MetadataSchema(BaseModel):
    """Schema for metadata validation."""
    n_samples: int
    sample_ids: List[str]
    columns: List[str]
    condition_column: Optional[str] = None
    n_conditions: Optional[int] = None
    replicates_per_condition: Optional[Dict[str, int]] = None


def _sniff_delimiter(filepath: Path) -> Optional[str]:
    with open(filepath, 'r') as f:
        first_line = f.readline()
    if '\t' in first_line:
        return '\t'
    elif ',' in first_line:
        return ','
    return None  # pandas will try to detect


def read_count_matrix(
    filepath: Union[str, Path],
    delimiter: Optional[str] = None,
    gene_col: int = 0,
    header: int = 0,
    drop_columns: Optional[Sequence[str]] = None
) -> pd.DataFrame:
    """
    Read count matrix from file.

    Args:
        filepath: Path to count matrix file
        delimiter: Column delimiter (auto-detected if None)
        gene_col: Column index for gene IDs
        header: Row index for column names
        drop_columns: Non-sample columns to remove (e.g. gene length)

    Returns:
        DataFrame with genes as rows, samples as columns
    """
    filepath = Path(filepath)

    # Determine file type and read accordingly
    if filepath.suffix.lower() in ['.xlsx', '.xls']:
        df = pd.read_excel(filepath, index_col=gene_col, header=header)
    else:
        if delimiter is None:
            delimiter = _sniff_delimiter(filepath)
        df = pd.read_csv(
            filepath, sep=delimiter, index_col=gene_col, header=header,
            engine='python' if delimiter is None else 'c'
        )

    # Clean up gene IDs (remove whitespace)
    df.index = df.index.astype(str).str.strip()
    df.columns = df.columns.astype(str).str.strip()
    df.index.name = 'gene'

    if drop_columns:
        missing = [c for c in drop_columns if c not in df.columns]
        if missing:
            raise ValidationError(
                f"Columns to drop not found in count matrix: {', '.join(missing)}"
            )
        df = df.drop(columns=list(drop_columns))

    logger.info(f"Read count matrix {filepath.name}: {df.shape[0]} genes x {df.shape[1]} samples")
    return df


def read_metadata(
    filepath: Union[str, Path],
    delimiter: Optional[str] = None,
    sample_col: int = 0,
    header: int = 0
) -> pd.DataFrame:
    """
    Read sample sheet.

    Args:
        filepath: Path to metadata file
        delimiter: Column delimiter (auto-detected if None)
        sample_col: Column index for sample IDs
        header: Row index for column names

    Returns:
        DataFrame with samples as rows, annotations as columns
    """
    filepath = Path(filepath)

    if filepath.suffix.lower() in ['.xlsx', '.xls']:
        df = pd.read_excel(filepath, index_col=sample_col, header=header)
    else:
        if delimiter is None:
            delimiter = _sniff_delimiter(filepath)
        df = pd.read_csv(
            filepath, sep=delimiter, index_col=sample_col, header=header,
            engine='python' if delimiter is None else 'c'
        )

    # Clean up sample IDs
    df.index = df.index.astype(str).str.strip()
    df.columns = df.columns.astype(str).str.strip()

    return df


def validate_count_matrix(counts: pd.DataFrame) -> Tuple[ValidationResult, Optional[CountMatrixSchema]]:
    """
    Validate count matrix.

    Args:
        counts: Count matrix DataFrame

    Returns:
        Tuple of (ValidationResult, CountMatrixSchema)
    """
    errors = []
    warnings = []

    if counts.empty:
        errors.append("Count matrix is empty")
        return ValidationResult(valid=False, errors=errors), None

    n_genes, n_samples = counts.shape

    non_numeric = [c for c in counts.columns if not pd.api.types.is_numeric_dtype(counts[c])]
    if non_numeric:
        errors.append(
            f"Count matrix contains non-numeric columns: {', '.join(map(str, non_numeric))}"
        )
        return ValidationResult(valid=False, errors=errors), None

    has_negative = bool((counts < 0).any().any())
    if has_negative:
        errors.append("Count matrix contains negative values")

    has_non_integer = not np.allclose(
        counts.fillna(0).values, np.round(counts.fillna(0).values)
    )
    if has_non_integer:
        warnings.append(ValidationWarning(
            message="Count matrix contains non-integer values. They will be rounded.",
            severity="warning"
        ))

    has_missing = bool(counts.isna().any().any())
    if has_missing:
        n_missing = counts.isna().sum().sum()
        errors.append(f"Count matrix contains {n_missing} missing values")

    if n_genes < 5000:
        warnings.append(ValidationWarning(
            message=f"Low number of genes ({n_genes}). Typical bacterial or eukaryotic "
                    "transcriptomes have thousands of genes.",
            severity="warning"
        ))

    library_sizes = {str(k): float(v) for k, v in counts.sum(axis=0).items()}

    for sample, size in library_sizes.items():
        if size == 0:
            errors.append(f"Sample '{sample}' has no reads")
        elif size < 1e6:
            warnings.append(ValidationWarning(
                message=f"Sample '{sample}' has low library size: {size:,.0f} reads",
                severity="warning"
            ))

    if counts.index.duplicated().any():
        n_duplicates = counts.index.duplicated().sum()
        errors.append(f"Count matrix contains {n_duplicates} duplicate gene IDs")

    if counts.columns.duplicated().any():
        n_duplicates = counts.columns.duplicated().sum()
        errors.append(f"Count matrix contains {n_duplicates} duplicate sample IDs")

    schema = CountMatrixSchema(
        n_genes=n_genes,
        n_samples=n_samples,
        gene_ids=counts.index.astype(str).tolist(),
        sample_ids=counts.columns.astype(str).tolist(),
        has_negative=has_negative,
        has_non_integer=has_non_integer,
        has_missing=has_missing,
        library_sizes=library_sizes
    )

    summary = {
        "n_genes": n_genes,
        "n_samples": n_samples,
        "total_counts": float(np.nansum(counts.values)),
        "mean_library_size": float(np.mean(list(library_sizes.values()))),
        "median_library_size": float(np.median(list(library_sizes.values())))
    }

    result = ValidationResult(
        valid=len(errors) == 0,
        errors=errors,
        warnings=warnings,
        summary=summary
    )

    return result, schema


def validate_metadata(
    metadata: pd.DataFrame,
    count_samples: Optional[List[str]] = None,
    condition_column: Optional[str] = None,
    known_groups: Optional[Sequence[str]] = None
) -> Tuple[ValidationResult, Optional[MetadataSchema]]:
    """
    Validate sample sheet.

    Args:
        metadata: Metadata DataFrame indexed by sample ID
        count_samples: Sample IDs from the count matrix (for matching check)
        condition_column: Name of the treatment group column
        known_groups: Allowed treatment group labels

    Returns:
        Tuple of (ValidationResult, MetadataSchema)
    """
    errors = []
    warnings = []

    if metadata.empty:
        errors.append("Metadata is empty")
        return ValidationResult(valid=False, errors=errors), None

    n_samples = len(metadata)
    sample_ids = metadata.index.tolist()
    columns = metadata.columns.tolist()

    replicates_per_condition = None
    n_conditions = None

    if condition_column:
        if condition_column not in metadata.columns:
            errors.append(f"Condition column '{condition_column}' not found in metadata")
        else:
            if metadata[condition_column].isna().any():
                errors.append(f"Condition column '{condition_column}' contains missing values")

            condition_counts = metadata[condition_column].dropna().astype(str).value_counts()
            replicates_per_condition = condition_counts.to_dict()
            n_conditions = len(condition_counts)

            if known_groups is not None:
                unknown = sorted(set(replicates_per_condition) - set(known_groups))
                if unknown:
                    errors.append(
                        f"Unknown treatment groups in '{condition_column}': {', '.join(unknown)}"
                    )
                absent = [g for g in known_groups if g not in replicates_per_condition]
                if absent:
                    errors.append(f"No samples assigned to groups: {', '.join(absent)}")

            for condition, count in replicates_per_condition.items():
                if count < 2:
                    errors.append(
                        f"Condition '{condition}' has only {count} replicate(s). "
                        "At least 2 replicates per condition are required."
                    )
                elif count < 3:
                    warnings.append(ValidationWarning(
                        message=f"Condition '{condition}' has only {count} replicates. "
                                "3+ replicates recommended for robust analysis.",
                        severity="warning"
                    ))

    if count_samples is not None:
        count_set = set(count_samples)
        meta_set = set(sample_ids)

        missing_in_meta = count_set - meta_set
        missing_in_counts = meta_set - count_set

        if missing_in_meta:
            errors.append(
                f"Samples in count matrix but not in metadata: {', '.join(sorted(missing_in_meta))}"
            )

        if missing_in_counts:
            warnings.append(ValidationWarning(
                message=f"Samples in metadata but not in count matrix: {', '.join(sorted(missing_in_counts))}",
                severity="info"
            ))

    if metadata.index.duplicated().any():
        n_duplicates = metadata.index.duplicated().sum()
        errors.append(f"Metadata contains {n_duplicates} duplicate sample IDs")

    schema = MetadataSchema(
        n_samples=n_samples,
        sample_ids=sample_ids,
        columns=columns,
        condition_column=condition_column,
        n_conditions=n_conditions,
        replicates_per_condition=replicates_per_condition
    )

    summary = {
        "n_samples": n_samples,
        "n_columns": len(columns),
        "columns": columns
    }

    if condition_column and replicates_per_condition:
        summary["conditions"] = replicates_per_condition

    result = ValidationResult(
        valid=len(errors) == 0,
        errors=errors,
        warnings=warnings,
        summary=summary
    )

    return result, schema


def validate_analysis_inputs(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    condition_column: str,
    known_groups: Optional[Sequence[str]] = None
) -> ValidationResult:
    """
    Validate complete analysis inputs.

    Args:
        counts: Count matrix
        metadata: Sample metadata
        condition_column: Column name for treatment groups
        known_groups: Allowed treatment group labels

    Returns:
        ValidationResult with combined validation from both inputs
    """
    all_errors = []
    all_warnings = []

    counts_result, counts_schema = validate_count_matrix(counts)
    all_errors.extend(counts_result.errors)
    all_warnings.extend(counts_result.warnings)

    meta_result, meta_schema = validate_metadata(
        metadata,
        count_samples=counts.columns.tolist(),
        condition_column=condition_column,
        known_groups=known_groups
    )
    all_errors.extend(meta_result.errors)
    all_warnings.extend(meta_result.warnings)

    summary = {
        "counts": counts_result.summary,
        "metadata": meta_result.summary
    }

    return ValidationResult(
        valid=len(all_errors) == 0,
        errors=all_errors,
        warnings=all_warnings,
        summary=summary
    )


def build_sample_groups(
    samples: Sequence[str],
    mapping: Optional[Mapping[str, str]] = None,
    metadata: Optional[pd.DataFrame] = None,
    condition_column: str = "group",
    group_order: Optional[Sequence[str]] = None,
    known_groups: Optional[Sequence[str]] = None
) -> pd.Series:
    """
    Assign each count-matrix sample to a treatment group.

    Sources are tried in order: an explicit ``mapping`` keyed by sample name,
    a ``metadata`` frame with a ``condition_column``, then a positional
    ``group_order`` list. The positional list is checked for length and
    turned into a name-keyed assignment.

    Returns:
        Series indexed by sample name holding the group label
    """
    samples = [str(s) for s in samples]

    if mapping:
        missing = [s for s in samples if s not in mapping]
        if missing:
            raise ValidationError(f"Samples without a group assignment: {', '.join(missing)}")
        extra = sorted(set(mapping) - set(samples))
        if extra:
            logger.warning(f"Group assignments for unknown samples ignored: {', '.join(extra)}")
        groups = pd.Series([str(mapping[s]) for s in samples], index=samples)
    elif metadata is not None:
        if condition_column not in metadata.columns:
            raise ValidationError(f"Condition column '{condition_column}' not found in metadata")
        missing = [s for s in samples if s not in metadata.index]
        if missing:
            raise ValidationError(
                f"Samples in count matrix but not in metadata: {', '.join(missing)}"
            )
        groups = metadata.loc[samples, condition_column].astype(str)
    elif group_order:
        if len(group_order) != len(samples):
            raise ValidationError(
                f"Positional group list has {len(group_order)} labels "
                f"but the count matrix has {len(samples)} samples"
            )
        logger.warning("Assigning groups by column position; prefer a sample-keyed mapping")
        groups = pd.Series([str(g) for g in group_order], index=samples)
    else:
        raise ValidationError("No sample-to-group assignment was provided")

    if known_groups is not None:
        unknown = sorted(set(groups) - set(known_groups))
        if unknown:
            raise ValidationError(f"Unknown treatment groups: {', '.join(unknown)}")

    groups.name = condition_column
    groups.index.name = 'sample'
    return groups
