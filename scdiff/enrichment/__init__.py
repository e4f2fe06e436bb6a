"""
Enrichment analysis for scdiff

- Ranked gene lists built from DE statistics
- Preranked GSEA (weighted running sum, permutation nulls)
- Over-representation analysis
- Reproducibility metadata and the end-to-end pipeline
"""

from .ranking import RankedGeneList
from .gsea import run_gsea_prerank, enrich, running_sum, enrichment_score, EnrichmentResult, GSEAReport
from .ora import run_ora, ORAResult
from .repro import ReproducibilityLogger, PipelineMetadata
from .pipeline import AnalysisPipeline, export_results

__all__ = [
    "RankedGeneList",
    "run_gsea_prerank",
    "enrich",
    "running_sum",
    "enrichment_score",
    "EnrichmentResult",
    "GSEAReport",
    "run_ora",
    "ORAResult",
    "ReproducibilityLogger",
    "PipelineMetadata",
    "AnalysisPipeline",
    "export_results",
]
