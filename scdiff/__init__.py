"""
scdiff: single-cell differential expression and pathway enrichment

- Cell QC and log normalization
- Moderated (empirical Bayes) differential expression
- Preranked GSEA with permutation nulls
- Over-representation analysis of significant genes
"""

__version__ = "1.0.0"

from .errors import InvalidDesign, NonFiniteInput, EmptyRanking, NoSetsPassedFilter
from .config import AnalysisConfig, QCConfig, DEConfig, GSEAConfig, ORAConfig, load_config
from .log import setup_logging
from .de_analysis import fit, GeneStatistic
from .enrichment import RankedGeneList, enrich, EnrichmentResult, AnalysisPipeline

__all__ = [
    "InvalidDesign",
    "NonFiniteInput",
    "EmptyRanking",
    "NoSetsPassedFilter",
    "AnalysisConfig",
    "QCConfig",
    "DEConfig",
    "GSEAConfig",
    "ORAConfig",
    "load_config",
    "setup_logging",
    "fit",
    "GeneStatistic",
    "RankedGeneList",
    "enrich",
    "EnrichmentResult",
    "AnalysisPipeline",
]
