"""
Multiple-testing correction shared by the DE and enrichment engines.

Method names follow the R conventions used by limma and clusterProfiler
("BH", "BY", "bonferroni", "holm", "none") and are mapped onto
statsmodels' ``multipletests``.
"""

import logging
from typing import Sequence

import numpy as np
from statsmodels.stats.multitest import multipletests

logger = logging.getLogger("scdiff.Multitest")


# Accepted spellings -> statsmodels method (None = no correction)
METHOD_ALIASES = {
    'bh': 'fdr_bh',
    'fdr': 'fdr_bh',
    'fdr_bh': 'fdr_bh',
    'by': 'fdr_by',
    'fdr_by': 'fdr_by',
    'bonferroni': 'bonferroni',
    'holm': 'holm',
    'none': None,
}


def normalize_method(method: str):
    """
    Resolve a correction method name.

    Returns:
        The statsmodels method string, or None for no correction

    Raises:
        ValueError: If the method is not supported
    """
    if method is None:
        raise ValueError("Correction method must be given explicitly; use 'none' to disable")
    key = str(method).strip().lower()
    if key not in METHOD_ALIASES:
        raise ValueError(
            f"Unknown p-value correction method: '{method}'. "
            f"Use one of {sorted(METHOD_ALIASES)}"
        )
    return METHOD_ALIASES[key]


def adjust_pvalues(p_values: Sequence[float], method: str = 'BH') -> np.ndarray:
    """
    Apply multiple-testing correction to p-values.

    Args:
        p_values: Raw p-values
        method: 'BH' (Benjamini-Hochberg), 'BY', 'bonferroni', 'holm' or 'none'

    Returns:
        Array of adjusted p-values in input order
    """
    sm_method = normalize_method(method)
    p = np.asarray(p_values, dtype=float)

    if p.size == 0 or sm_method is None:
        return p.copy()

    if not np.all((p >= 0) & (p <= 1)):
        raise ValueError("p-values must lie within [0, 1]")

    _, adjusted, _, _ = multipletests(p, method=sm_method)
    logger.debug(f"Adjusted {p.size} p-values with {sm_method}")
    return np.asarray(adjusted, dtype=float)
