"""
Analysis Pipeline for scdiff

Main orchestrator chaining the components:
1. Cell/gene QC and log normalization
2. Moderated differential expression
3. Gene ranking
4. Preranked GSEA
5. ORA on the significant DE genes
6. Reproducibility logging
"""

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence, Union

import pandas as pd

from .. import de_analysis
from ..config import AnalysisConfig
from ..errors import InvalidDesign
from ..preprocess import filter_cells_and_genes, normalize_log
from .gsea import run_gsea_prerank
from .ora import run_ora
from .ranking import RankedGeneList
from .repro import ReproducibilityLogger

logger = logging.getLogger("scdiff.Pipeline")


def _labels_as_series(counts: pd.DataFrame, labels: Union[Sequence, pd.Series]) -> pd.Series:
    """
    Index condition labels by cell id so they survive cell filtering.

    Categorical labels keep their declared levels. A Series is matched by
    cell id unless it carries a default RangeIndex.
    """
    if not isinstance(labels, pd.Series):
        labels = pd.Series(labels if isinstance(labels, pd.Categorical) else list(labels))
    if not labels.index.is_unique:
        raise ValueError("Condition labels have duplicated cell identifiers")

    missing = counts.columns.difference(labels.index)
    if len(missing) == 0:
        return labels.reindex(counts.columns)
    if not labels.index.equals(pd.RangeIndex(len(labels))):
        raise InvalidDesign(
            f"{len(missing)} cells have no entry in the condition labels: {missing[:5].tolist()}"
        )
    if len(labels) != counts.shape[1]:
        raise InvalidDesign(f"Got {len(labels)} labels for {counts.shape[1]} cells")
    return labels.set_axis(counts.columns)


class AnalysisPipeline:
    """
    Complete condition-comparison pipeline on a genes x cells count matrix.
    """

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or AnalysisConfig()
        self.repro_logger = ReproducibilityLogger()

    def run(
        self,
        counts: pd.DataFrame,
        labels: Union[Sequence, pd.Series],
        reference_level,
        gene_sets: Mapping[str, Iterable[str]],
        contrast_level=None,
        gene_set_source: str = 'custom',
        run_qc: bool = True,
        normalize: bool = True,
        with_ora: bool = True,
        progress_callback: Optional[Callable[[int, int], None]] = None
    ) -> Dict[str, Any]:
        """
        Run QC -> DE -> GSEA (-> ORA).

        Args:
            counts: Raw counts (or already normalized values with
                ``run_qc=False, normalize=False``), genes as rows
            labels: Condition label per cell
            reference_level: Baseline condition; positive log_fc and NES
                mean higher in this group
            gene_sets: Gene set id -> member genes
            contrast_level: Required when more than two conditions are present
            gene_set_source: Name recorded in the run metadata
            run_qc: Apply cell/gene filters first
            normalize: Library-size normalize and log-transform
            with_ora: Also test the significant genes for over-representation

        Returns:
            Dictionary with results, qc summary, metadata and warnings
        """
        cfg = self.config
        warnings = []
        self.repro_logger = ReproducibilityLogger()
        labels = _labels_as_series(counts, labels)
        self.repro_logger.set_input_summary(
            genes=int(counts.shape[0]),
            cells=int(counts.shape[1]),
            conditions={str(k): int(v) for k, v in labels.value_counts().items()},
            reference_level=str(reference_level),
        )

        # Step 1: QC / normalization
        qc_summary = None
        matrix = counts
        if run_qc:
            logger.info("Step 1/5: Cell and gene QC")
            matrix, qc_report = filter_cells_and_genes(matrix, cfg.qc)
            qc_summary = qc_report.to_dict()
            self.repro_logger.set_parameters(
                'qc', min_genes=cfg.qc.min_genes, max_pct_mito=cfg.qc.max_pct_mito,
                min_cells=cfg.qc.min_cells
            )
            if matrix.shape[1] == 0 or matrix.shape[0] == 0:
                raise ValueError("QC removed every cell or gene; relax the QC thresholds")
        if normalize:
            matrix = normalize_log(matrix, cfg.qc.target_sum, cfg.qc.log_base)
            self.repro_logger.set_parameters(
                'qc', target_sum=cfg.qc.target_sum, log_base=cfg.qc.log_base
            )

        # Step 2: differential expression
        logger.info("Step 2/5: Differential expression")
        de_results = de_analysis.fit(
            matrix, labels, reference_level,
            contrast_level=contrast_level, config=cfg.de
        )
        de_summary = de_analysis.summarize(de_results, cfg.de)
        self.repro_logger.set_parameters(
            'de', p_adjust_method=cfg.de.p_adjust_method,
            fdr_threshold=cfg.de.fdr_threshold, log_fc_threshold=cfg.de.log_fc_threshold,
            contrast_level=None if contrast_level is None else str(contrast_level)
        )

        # Step 3: ranking
        logger.info(f"Step 3/5: Ranking genes by '{cfg.gsea.rank_metric}'")
        ranked = RankedGeneList.from_statistics(de_results, cfg.gsea.rank_metric)

        # Step 4: GSEA
        logger.info("Step 4/5: Preranked GSEA")
        report = run_gsea_prerank(
            ranked, gene_sets, config=cfg.gsea, progress_callback=progress_callback
        )
        if report.tested_sets == 0:
            warnings.append(
                f"No gene sets within size bounds [{cfg.gsea.min_size}, {cfg.gsea.max_size}]"
            )
        self.repro_logger.set_parameters(
            'gsea', permutations=report.permutations, score_type=report.score_type,
            p_adjust_method=report.p_adjust_method, min_size=cfg.gsea.min_size,
            max_size=cfg.gsea.max_size, gsea_weight=cfg.gsea.gsea_weight,
            rank_metric=cfg.gsea.rank_metric, seed=cfg.gsea.seed
        )

        # Step 5: ORA
        ora_results = []
        if with_ora:
            logger.info("Step 5/5: Over-representation of significant genes")
            query = de_analysis.significant_genes(de_results, cfg.de)
            if query:
                ora_results = run_ora(query, gene_sets, universe=ranked.genes, config=cfg.ora)
            else:
                warnings.append("No significant DE genes; ORA skipped")
            self.repro_logger.set_parameters(
                'ora', p_cutoff=cfg.ora.p_cutoff, p_adjust_method=cfg.ora.p_adjust_method,
                min_size=cfg.ora.min_size, max_size=cfg.ora.max_size,
                test='fisher' if cfg.ora.use_fisher else 'hypergeometric'
            )

        self.repro_logger.set_gene_set_info(gene_set_source, gene_sets)
        self.repro_logger.set_output_summary(
            de=de_summary,
            gsea_tested_sets=report.tested_sets,
            gsea_excluded_sets=report.excluded_count,
            gsea_top_set=report.results[0].set_id if report.results else None,
            ora_significant_sets=len(ora_results),
        )
        for w in warnings:
            self.repro_logger.add_warning(w)

        return {
            'status': 'ok',
            'de_results': [r.to_dict() for r in de_results],
            'de_summary': de_summary,
            'gsea_results': [r.to_dict() for r in report.results],
            'gsea_excluded_sets': report.excluded_sets,
            'ora_results': [r.to_dict() for r in ora_results],
            'qc': qc_summary,
            'metadata': self.repro_logger.get_metadata().to_dict(),
            'warnings': warnings,
        }


def export_results(result: Dict[str, Any], output_dir: str) -> Dict[str, Path]:
    """
    Write pipeline output as CSV tables plus JSON metadata.

    Returns:
        Mapping of table name -> written path
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    written = {}

    de_df = pd.DataFrame(result.get('de_results', []))
    if not de_df.empty:
        de_df = de_df.sort_values('p_value', kind='mergesort')
    written['de'] = output_dir / 'de_results.csv'
    de_df.to_csv(written['de'], index=False)

    gsea_df = pd.DataFrame(result.get('gsea_results', []))
    if not gsea_df.empty:
        gsea_df['leading_edge'] = gsea_df['leading_edge'].apply(";".join)
    written['gsea'] = output_dir / 'gsea_results.csv'
    gsea_df.to_csv(written['gsea'], index=False)

    ora_df = pd.DataFrame(result.get('ora_results', []))
    if not ora_df.empty:
        ora_df['hit_genes'] = ora_df['hit_genes'].apply("/".join)
    written['ora'] = output_dir / 'ora_results.csv'
    ora_df.to_csv(written['ora'], index=False)

    written['metadata'] = output_dir / 'metadata.json'
    with open(written["metadata"], "w", encoding="utf-8") as f:
        json.dump(result.get("metadata", {}), f, indent=2, default=str)

    logger.info(f"Exported results to {output_dir}")
    return written
