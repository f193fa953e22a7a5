"""edgeR wrapper using rpy2 for running the workflow in R."""

import logging
from typing import Dict, Tuple

import pandas as pd
import numpy as np

try:
    import rpy2.robjects as ro
    from rpy2.robjects import pandas2ri
    from rpy2.robjects.packages import importr
    from rpy2.robjects.conversion import localconverter
    RPY2_AVAILABLE = True
except (ImportError, RuntimeError):
    RPY2_AVAILABLE = False
    logging.getLogger(__name__).debug("rpy2 not available. The edgeR engine will not work.")

from .glm import DGEError


logger = logging.getLogger(__name__)


class EdgeRWrapper:
    """Wrapper for the edgeR glmFit / glmLRT workflow."""

    required_packages = ['edgeR', 'limma']

    def __init__(self):
        """Initialize edgeR wrapper and check R environment."""
        if not RPY2_AVAILABLE:
            raise DGEError("rpy2 is not installed. Please install it with: pip install rpy2")

        self._check_r_packages()
        self._load_r_packages()

    def _check_r_packages(self):
        """Check if required R packages are installed."""
        utils = importr('utils')
        base = importr('base')

        installed = base.rownames(utils.installed_packages())

        missing = [pkg for pkg in self.required_packages if pkg not in installed]

        if missing:
            quoted = ', '.join(f"'{p}'" for p in missing)
            error_msg = (
                f"Required R packages not found: {', '.join(missing)}\n"
                "Please install them in R using:\n"
                "  if (!require('BiocManager', quietly = TRUE))\n"
                "      install.packages('BiocManager')\n"
                f"  BiocManager::install(c({quoted}))"
            )
            raise DGEError(error_msg)

    def _load_r_packages(self):
        """Load required R packages."""
        try:
            self.edger = importr('edgeR')
            self.limma = importr('limma')
            self.base = importr('base')
            self.stats = importr('stats')
            logger.info("Successfully loaded edgeR and dependencies")
        except Exception as e:
            raise DGEError(f"Failed to load R packages: {str(e)}")

    def _convert_to_r_matrix(self, df: pd.DataFrame):
        """Convert pandas DataFrame to R numeric matrix."""
        r_matrix = ro.r["matrix"](
            ro.FloatVector(df.values.astype(float).flatten(order='F')),
            nrow=df.shape[0],
            ncol=df.shape[1]
        )
        r_matrix.rownames = ro.StrVector([str(i) for i in df.index])
        r_matrix.colnames = ro.StrVector([str(c) for c in df.columns])
        return r_matrix

    def _convert_from_r_dataframe(self, r_df) -> pd.DataFrame:
        """Convert R data.frame to pandas DataFrame."""
        with localconverter(ro.default_converter + pandas2ri.converter):
            pd_df = ro.conversion.rpy2py(r_df)
        return pd_df

    def _convert_from_r_matrix(self, r_matrix) -> pd.DataFrame:
        return pd.DataFrame(
            np.array(r_matrix),
            index=list(self.base.rownames(r_matrix)),
            columns=list(self.base.colnames(r_matrix))
        )

    def create_dgelist(self, counts: pd.DataFrame, groups: pd.Series):
        """Create DGEList with group factor in the given level order."""
        groups = groups.loc[counts.columns]
        levels = list(dict.fromkeys(groups))
        group_factor = self.base.factor(ro.StrVector(list(groups)), levels=ro.StrVector(levels))
        try:
            y = self.edger.DGEList(counts=self._convert_to_r_matrix(counts), group=group_factor)
            logger.info(f"Created DGEList with {counts.shape[0]} genes and {counts.shape[1]} samples")
            return y
        except Exception as e:
            raise DGEError(f"Failed to create DGEList: {str(e)}")

    def model_matrix(self, design: pd.DataFrame):
        return self._convert_to_r_matrix(design)

    def filter_by_expr(
        self,
        y,
        design,
        min_count: float = 10,
        min_total_count: float = 15,
        large_n: int = 10,
        min_prop: float = 0.7
    ):
        # filterByExpr is an S3 generic; dotted names must be passed verbatim
        keep = self.edger.filterByExpr(y, design=design, **{
            'min.count': min_count,
            'min.total.count': min_total_count,
            'large.n': large_n,
            'min.prop': min_prop
        })
        keep_array = np.array(keep, dtype=bool)
        subset = ro.r('function(y, keep) y[keep, , keep.lib.sizes=FALSE]')
        logger.info(f"filterByExpr kept {int(keep_array.sum())} of {keep_array.size} genes")
        return subset(y, keep), keep_array

    def run_glm(
        self,
        y,
        design,
        contrasts: pd.DataFrame,
        method: str = "TMM",
        logratio_trim: float = 0.3,
        sum_trim: float = 0.05,
        do_weighting: bool = True,
        prior_df: float = 10
    ) -> Tuple[Dict[str, pd.DataFrame], object]:
        """Normalize, estimate dispersions, fit and test every contrast."""
        try:
            y = self.edger.calcNormFactors(
                y, method=method, logratioTrim=logratio_trim,
                sumTrim=sum_trim, doWeighting=do_weighting
            )
            y = self.edger.estimateDisp(y, design, **{'prior.df': prior_df})
            fit = self.edger.glmFit(y, design)
        except Exception as e:
            error_msg = str(e)
            if "not of full rank" in error_msg.lower():
                raise DGEError(
                    "Design matrix is not of full rank. This usually means:\n"
                    "  - A treatment group has no samples\n"
                    "  - Samples were assigned to the wrong groups"
                )
            raise DGEError(f"edgeR analysis failed: {error_msg}")

        results = {}
        for name in contrasts.columns:
            try:
                lrt = self.edger.glmLRT(fit, contrast=ro.FloatVector(contrasts[name].values))
                top = self.edger.topTags(lrt, n=float('inf'))
                table = self._convert_from_r_dataframe(self.base.as_data_frame(top))
            except Exception as e:
                raise DGEError(f"Failed to test contrast {name}: {str(e)}")
            table.index.name = 'gene'
            table = table.reset_index()
            table['rank'] = np.arange(1, len(table) + 1)
            results[name] = table
        return results, y

    def get_log_cpm(self, y, prior_count: float = 2.0) -> pd.DataFrame:
        return self._convert_from_r_matrix(self.edger.cpm(y, log=True, **{'prior.count': prior_count}))

    def get_norm_factors(self, y) -> pd.Series:
        samples = self._convert_from_r_dataframe(y.rx2('samples'))
        return samples['norm.factors']


def run_edger(
    counts: pd.DataFrame,
    groups: pd.Series,
    design: pd.DataFrame,
    contrasts: pd.DataFrame,
    min_count: float = 10,
    min_total_count: float = 15,
    large_n: int = 10,
    min_prop: float = 0.7,
    method: str = "TMM",
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    do_weighting: bool = True,
    prior_df: float = 10,
    prior_count: float = 2.0
) -> Dict:
    """
    Run the complete edgeR pipeline in R.

    Returns:
        Dictionary with ``results`` (contrast name -> ranked table),
        ``log_cpm``, ``norm_factors`` and ``keep``
    """
    wrapper = EdgeRWrapper()
    y = wrapper.create_dgelist(counts, groups)
    r_design = wrapper.model_matrix(design)
    y, keep = wrapper.filter_by_expr(
        y, r_design, min_count=min_count, min_total_count=min_total_count,
        large_n=large_n, min_prop=min_prop
    )
    results, y = wrapper.run_glm(
        y, r_design, contrasts, method=method, logratio_trim=logratio_trim,
        sum_trim=sum_trim, do_weighting=do_weighting, prior_df=prior_df
    )

    return {
        'results': results,
        'log_cpm': wrapper.get_log_cpm(y, prior_count),
        'norm_factors': wrapper.get_norm_factors(y),
        'keep': pd.Series(keep, index=counts.index, name='keep')
    }
