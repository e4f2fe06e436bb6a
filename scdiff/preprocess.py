"""
Single-cell QC and normalization

Per-cell QC metrics (library size, detected genes, mitochondrial fraction),
cell/gene filtering and library-size log normalization. Inputs and outputs
are genes x cells count DataFrames; the work is done by scanpy on a
transposed AnnData (cells as observations).
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Sequence, Tuple

import anndata
import numpy as np
import pandas as pd
import scanpy as sc

from .config import QCConfig
from .errors import NonFiniteInput

logger = logging.getLogger("scdiff.QC")


@dataclass
class QCReport:
    """Outcome of cell and gene filtering"""

    metrics: pd.DataFrame  # per-cell metrics before filtering
    cells_before: int
    cells_after: int
    genes_before: int
    genes_after: int
    removed_low_genes: List[str] = field(default_factory=list)
    removed_high_mito: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cells_before": self.cells_before,
            "cells_after": self.cells_after,
            "genes_before": self.genes_before,
            "genes_after": self.genes_after,
            "removed_low_genes": len(self.removed_low_genes),
            "removed_high_mito": len(self.removed_high_mito),
        }


def _check_counts(counts: pd.DataFrame) -> np.ndarray:
    if counts.empty:
        raise ValueError("Empty counts matrix provided")
    values = counts.to_numpy(dtype=float)
    if not np.all(np.isfinite(values)):
        raise NonFiniteInput("Counts matrix contains NaN or infinite values")
    if (values < 0).any():
        raise ValueError("Counts matrix contains negative values")
    return values


def _to_anndata(counts: pd.DataFrame, values: np.ndarray) -> anndata.AnnData:
    """Cells x genes AnnData over a private copy of ``values``."""
    return anndata.AnnData(
        X=values.T.copy(),
        obs=pd.DataFrame(index=counts.columns.astype(str)),
        var=pd.DataFrame(index=counts.index.astype(str)),
    )


def mito_genes(genes: Sequence[str], prefixes: Sequence[str] = ("MT-", "mt-")) -> np.ndarray:
    """Boolean mask of mitochondrial genes by symbol prefix."""
    prefixes = tuple(prefixes)
    return np.array([str(g).startswith(prefixes) for g in genes], dtype=bool)


def calculate_qc_metrics(
    counts: pd.DataFrame,
    mito_prefixes: Sequence[str] = ("MT-", "mt-")
) -> pd.DataFrame:
    """
    Per-cell QC metrics.

    Args:
        counts: Raw counts, genes as rows, cells as columns
        mito_prefixes: Symbol prefixes marking mitochondrial genes

    Returns:
        DataFrame indexed by cell with total_counts, n_genes, pct_mito
    """
    values = _check_counts(counts)
    adata = _to_anndata(counts, values)
    adata.var["mt"] = mito_genes(counts.index, mito_prefixes)

    if not adata.var["mt"].any():
        logger.warning(f"No mitochondrial genes found with prefixes {list(mito_prefixes)}")

    sc.pp.calculate_qc_metrics(
        adata, qc_vars=["mt"], percent_top=None, log1p=False, inplace=True
    )
    obs = adata.obs

    # cells with no counts have an undefined fraction
    pct_mito = obs["pct_counts_mt"].to_numpy(dtype=float)
    pct_mito = np.where(np.isfinite(pct_mito), pct_mito, 0.0)

    return pd.DataFrame(
        {
            "total_counts": obs["total_counts"].to_numpy(dtype=float),
            "n_genes": obs["n_genes_by_counts"].to_numpy(dtype=int),
            "pct_mito": pct_mito,
        },
        index=counts.columns
    )


def filter_cells_and_genes(
    counts: pd.DataFrame,
    config: Optional[QCConfig] = None
) -> Tuple[pd.DataFrame, QCReport]:
    """
    Drop low-quality cells, then genes detected in too few cells.

    Cells are removed when fewer than ``min_genes`` genes are detected or the
    mitochondrial percentage exceeds ``max_pct_mito``. Gene detection is
    counted over the cells that survive.

    Returns:
        Tuple of (filtered counts, QCReport)
    """
    config = config or QCConfig()
    metrics = calculate_qc_metrics(counts, config.mito_prefixes)
    adata = _to_anndata(counts, counts.to_numpy(dtype=float))

    enough_genes, _ = sc.pp.filter_cells(adata, min_genes=config.min_genes, inplace=False)
    low_genes = ~np.asarray(enough_genes, dtype=bool)
    high_mito = metrics['pct_mito'].to_numpy() > config.max_pct_mito
    keep_cells = ~(low_genes | high_mito)

    adata = adata[keep_cells].copy()
    if adata.n_obs > 0:
        keep_genes, _ = sc.pp.filter_genes(adata, min_cells=config.min_cells, inplace=False)
        keep_genes = np.asarray(keep_genes, dtype=bool)
    else:
        keep_genes = np.full(counts.shape[0], config.min_cells == 0)

    filtered = counts.loc[keep_genes, keep_cells]

    report = QCReport(
        metrics=metrics,
        cells_before=counts.shape[1],
        cells_after=filtered.shape[1],
        genes_before=counts.shape[0],
        genes_after=filtered.shape[0],
        removed_low_genes=metrics.index[low_genes].tolist(),
        removed_high_mito=metrics.index[high_mito & ~low_genes].tolist(),
    )

    logger.info(
        f"QC: kept {report.cells_after}/{report.cells_before} cells, "
        f"{report.genes_after}/{report.genes_before} genes "
        f"({len(report.removed_low_genes)} low-complexity, "
        f"{len(report.removed_high_mito)} high-mito cells removed)"
    )
    if filtered.shape[1] == 0:
        logger.warning("All cells removed by QC filters")

    return filtered, report


def normalize_log(
    counts: pd.DataFrame,
    target_sum: float = 1e4,
    log_base: float = 2.0
) -> pd.DataFrame:
    """
    Scale each cell to ``target_sum`` total counts and take log(x + 1).

    Args:
        counts: Raw counts, genes as rows, cells as columns
        target_sum: Library size after scaling
        log_base: Logarithm base (2 gives log2 fold changes downstream)

    Returns:
        New DataFrame of normalized log expression
    """
    values = _check_counts(counts)
    totals = values.sum(axis=0)
    if (totals == 0).any():
        empty = counts.columns[totals == 0].tolist()
        raise ValueError(f"Cannot normalize cells with zero counts: {empty[:5]}")

    adata = _to_anndata(counts, values)
    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata, base=log_base)

    return pd.DataFrame(
        np.asarray(adata.X, dtype=float).T, index=counts.index, columns=counts.columns
    )
