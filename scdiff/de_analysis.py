"""
Differential Expression (DE) Engine for scdiff

Fits a per-gene linear model of expression against condition labels and
moderates the per-gene variances with an empirical-Bayes prior fitted
across all genes (the limma approach, Smyth 2004). Small groups of cells
give noisy variance estimates; shrinking them toward a common prior keeps
high- and low-variance genes from dominating the ranking.

Sign convention: ``log_fc`` and ``t_stat`` are reference minus contrast, so
a positive value means higher expression in the ``reference_level`` group.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Dict, List, Any, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy import stats
from scipy.special import digamma, polygamma

from .config import DEConfig
from .errors import InvalidDesign, NonFiniteInput
from .multitest import adjust_pvalues

logger = logging.getLogger("scdiff.DE")


@dataclass(frozen=True)
class GeneStatistic:
    """Moderated test result for a single gene"""

    gene: str
    log_fc: float  # reference - contrast, on the matrix's working scale
    ave_expr: float
    t_stat: float
    p_value: float
    adj_p_value: float

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class PriorEstimate:
    """Scaled inverse chi-square prior fitted to the per-gene variances"""

    df_prior: float
    var_prior: float


def _trigamma(x):
    return polygamma(1, x)


def trigamma_inverse(x: float, max_iter: int = 50, tol: float = 1e-8) -> float:
    """
    Solve trigamma(y) = x for y by Newton iteration.

    Starts from y = 0.5 + 1/x, which is close to the answer for most x and
    keeps the iteration monotone.
    """
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(max_iter):
        tri = _trigamma(y)
        dif = tri * (1.0 - tri / x) / polygamma(2, y)
        y = y + dif
        if -dif / y < tol:
            return float(y)

    logger.warning("trigamma_inverse: iteration limit exceeded")
    return float(y)


def fit_variance_prior(variances: np.ndarray, df: float) -> PriorEstimate:
    """
    Estimate the prior degrees of freedom and scale for a vector of
    residual variances by matching moments of log(variance).

    Args:
        variances: Per-gene residual variances
        df: Residual degrees of freedom shared by every gene

    Returns:
        PriorEstimate; ``df_prior`` is inf when the variances show no more
        spread than chi-square sampling alone explains
    """
    x = np.maximum(np.asarray(variances, dtype=float), 0.0)
    n = x.size
    if n < 2:
        # A single gene has nothing to borrow from
        return PriorEstimate(df_prior=0.0, var_prior=float(x[0]) if n else 0.0)

    m = np.median(x)
    if m == 0:
        logger.warning("More than half of residual variances are exactly zero")
        m = 1.0
    x = np.maximum(x, 1e-5 * m)

    half_df = df / 2.0
    e = np.log(x) - digamma(half_df) + np.log(half_df)
    emean = e.mean()
    evar = np.sum((e - emean) ** 2) / (n - 1) - _trigamma(half_df)

    if evar > 0:
        df_prior = 2.0 * trigamma_inverse(evar)
        var_prior = np.exp(emean + digamma(df_prior / 2.0) - np.log(df_prior / 2.0))
    else:
        df_prior = np.inf
        var_prior = np.exp(emean)

    return PriorEstimate(df_prior=float(df_prior), var_prior=float(var_prior))


def squeeze_variances(variances: np.ndarray, df: float) -> Tuple[np.ndarray, PriorEstimate]:
    """
    Shrink per-gene variances toward the fitted prior.

    Returns:
        Tuple of (posterior variances, prior estimate)
    """
    variances = np.asarray(variances, dtype=float)
    prior = fit_variance_prior(variances, df)

    if np.isinf(prior.df_prior):
        posterior = np.full_like(variances, prior.var_prior)
    else:
        posterior = (df * variances + prior.df_prior * prior.var_prior) / (df + prior.df_prior)

    return posterior, prior


def _resolve_labels(matrix: pd.DataFrame, labels: Union[Sequence, pd.Series]) -> pd.Categorical:
    """
    Align condition labels to the matrix columns as a Categorical.

    A Series is matched by cell identifier. Only a Series with a default
    RangeIndex is taken in column order.
    """
    if isinstance(labels, pd.Series):
        if not labels.index.is_unique:
            raise ValueError("Condition labels have duplicated cell identifiers")
        missing = matrix.columns.difference(labels.index)
        if len(missing) == 0:
            labels = labels.reindex(matrix.columns)
        elif not labels.index.equals(pd.RangeIndex(len(labels))):
            raise InvalidDesign(
                f"{len(missing)} cells have no entry in the condition labels: "
                f"{missing[:5].tolist()}"
            )
        elif len(labels) != matrix.shape[1]:
            raise InvalidDesign(f"Got {len(labels)} labels for {matrix.shape[1]} cells")
        if isinstance(labels.dtype, pd.CategoricalDtype):
            return pd.Categorical(labels.to_numpy(), categories=labels.cat.categories)
        return pd.Categorical(labels.to_numpy())

    labels = list(labels)
    if len(labels) != matrix.shape[1]:
        raise InvalidDesign(f"Got {len(labels)} labels for {matrix.shape[1]} cells")
    return pd.Categorical(labels)


def _validate_matrix(matrix: pd.DataFrame) -> np.ndarray:
    if not isinstance(matrix, pd.DataFrame):
        raise TypeError("Expression matrix must be a pandas DataFrame (genes x cells)")
    if matrix.empty:
        raise ValueError("Empty expression matrix provided")
    if not matrix.index.is_unique:
        raise ValueError("Gene identifiers (row labels) must be unique")
    if not matrix.columns.is_unique:
        raise ValueError("Cell identifiers (column labels) must be unique")

    try:
        values = matrix.to_numpy(dtype=float, copy=True)
    except (TypeError, ValueError) as e:
        raise NonFiniteInput(f"Expression matrix is not numeric: {e}") from e

    bad = ~np.isfinite(values)
    if bad.any():
        raise NonFiniteInput(
            f"Expression matrix has {int(bad.sum())} non-finite values "
            f"in {int(bad.any(axis=1).sum())} genes"
        )
    return values


def fit(
    matrix: pd.DataFrame,
    labels: Union[Sequence, pd.Series],
    reference_level,
    contrast_level=None,
    config: Optional[DEConfig] = None
) -> List[GeneStatistic]:
    """
    Moderated t-test between two condition levels for every gene.

    Args:
        matrix: Normalized expression, genes as rows and cells as columns
        labels: One condition label per cell (sequence in column order, or a
            Series indexed by cell id)
        reference_level: Baseline level; positive log_fc means higher here
        contrast_level: Level compared against the reference. Optional when
            exactly two levels are present.
        config: DEConfig (correction method); defaults used if None

    Returns:
        One GeneStatistic per gene, in matrix row order

    Raises:
        InvalidDesign: Degenerate groups or unusable labels
        NonFiniteInput: NaN/Inf in the matrix
    """
    config = config or DEConfig()
    values = _validate_matrix(matrix)
    groups = _resolve_labels(matrix, labels)

    if (groups.codes < 0).any():
        raise InvalidDesign(f"{int((groups.codes < 0).sum())} cells have no condition label")

    levels = list(groups.categories)
    if len(levels) < 2:
        raise InvalidDesign(f"Need at least two condition levels, found {levels}")
    if reference_level not in levels:
        raise InvalidDesign(f"Reference level '{reference_level}' not among levels {levels}")

    if contrast_level is None:
        others = [lvl for lvl in levels if lvl != reference_level]
        if len(others) != 1:
            raise InvalidDesign(
                f"{len(levels)} levels present; specify contrast_level explicitly"
            )
        contrast_level = others[0]
    elif contrast_level not in levels or contrast_level == reference_level:
        raise InvalidDesign(
            f"Contrast level '{contrast_level}' must be a level other than the reference"
        )

    counts = np.bincount(groups.codes, minlength=len(levels))
    empty = [lvl for lvl, c in zip(levels, counts) if c == 0]
    if empty:
        raise InvalidDesign(f"Condition level(s) with zero cells: {empty}")

    n_genes, n_cells = values.shape
    df_residual = n_cells - len(levels)
    if df_residual < 1:
        raise InvalidDesign(
            f"No residual degrees of freedom ({n_cells} cells, {len(levels)} levels)"
        )

    # Means model: one coefficient per level, residual variance pooled over all levels
    means = np.empty((n_genes, len(levels)))
    rss = np.zeros(n_genes)
    for j in range(len(levels)):
        block = values[:, groups.codes == j]
        means[:, j] = block.mean(axis=1)
        rss += np.sum((block - means[:, [j]]) ** 2, axis=1)
    residual_var = rss / df_residual

    ref_idx = levels.index(reference_level)
    con_idx = levels.index(contrast_level)
    log_fc = means[:, ref_idx] - means[:, con_idx]
    unscaled = 1.0 / counts[ref_idx] + 1.0 / counts[con_idx]

    posterior_var, prior = squeeze_variances(residual_var, df_residual)
    logger.info(
        f"Variance prior: df={prior.df_prior:.3g}, s2={prior.var_prior:.3g} "
        f"({n_genes} genes, residual df={df_residual})"
    )

    se = np.sqrt(posterior_var * unscaled)
    with np.errstate(divide='ignore', invalid='ignore'):
        t_stat = np.where(se > 0, log_fc / se, np.where(log_fc == 0, 0.0, np.sign(log_fc) * np.inf))

    df_total = min(df_residual + prior.df_prior, df_residual * n_genes)
    p_value = 2.0 * stats.t.sf(np.abs(t_stat), df_total)
    p_value = np.minimum(p_value, 1.0)
    adj_p = adjust_pvalues(p_value, method=config.p_adjust_method)

    ave_expr = values.mean(axis=1)
    genes = [str(g) for g in matrix.index]

    results = [
        GeneStatistic(
            gene=gene,
            log_fc=float(log_fc[i]),
            ave_expr=float(ave_expr[i]),
            t_stat=float(t_stat[i]),
            p_value=float(p_value[i]),
            adj_p_value=float(adj_p[i]),
        )
        for i, gene in enumerate(genes)
    ]

    logger.info(
        f"DE fit complete: {n_genes} genes, '{reference_level}' (n={counts[ref_idx]}) vs "
        f"'{contrast_level}' (n={counts[con_idx]}), correction={config.p_adjust_method}"
    )
    return results


def results_to_frame(
    results: List[GeneStatistic],
    config: Optional[DEConfig] = None
) -> pd.DataFrame:
    """
    Tabulate DE results, most significant first.

    The ``status`` column is UP (higher in the reference group), DOWN
    (higher in the contrast group) or NS.
    """
    config = config or DEConfig()
    columns = ['gene', 'log_fc', 'ave_expr', 't_stat', 'p_value', 'adj_p_value', 'status']
    if not results:
        return pd.DataFrame(columns=columns)

    df = pd.DataFrame([r.to_dict() for r in results])

    def classify_gene(row):
        if row['adj_p_value'] < config.fdr_threshold:
            if abs(row['log_fc']) >= config.log_fc_threshold:
                return 'UP' if row['log_fc'] > 0 else 'DOWN'
        return 'NS'

    df['status'] = df.apply(classify_gene, axis=1)
    df = df.sort_values('p_value', kind='mergesort').reset_index(drop=True)
    return df[columns]


def summarize(results: List[GeneStatistic], config: Optional[DEConfig] = None) -> Dict[str, Any]:
    """Count UP/DOWN/NS genes."""
    df = results_to_frame(results, config)
    return {
        "total_genes": int(len(df)),
        "upregulated": int((df['status'] == 'UP').sum()),
        "downregulated": int((df['status'] == 'DOWN').sum()),
        "not_significant": int((df['status'] == 'NS').sum())
    }


def significant_genes(
    results: List[GeneStatistic],
    config: Optional[DEConfig] = None,
    direction: str = 'both'
) -> List[str]:
    """
    Genes passing the FDR and fold-change thresholds.

    Args:
        direction: 'up', 'down' or 'both'
    """
    if direction not in ('up', 'down', 'both'):
        raise ValueError(f"direction must be 'up', 'down' or 'both', got '{direction}'")
    df = results_to_frame(results, config)
    wanted = {'up': {'UP'}, 'down': {'DOWN'}, 'both': {'UP', 'DOWN'}}[direction]
    return df.loc[df['status'].isin(wanted), 'gene'].tolist()
