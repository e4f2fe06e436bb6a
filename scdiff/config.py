"""
Configuration for scdiff analyses.

Settings are plain dataclasses. ``load_config`` reads an optional YAML file
and then applies ``SCDIFF_*`` environment overrides (a ``.env`` file in the
working directory is honoured through python-dotenv).

Example YAML::

    de:
      p_adjust_method: BH
    gsea:
      permutations: 10000
      min_size: 10
      max_size: 500
      p_adjust_method: none
"""

import logging
import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from dotenv import load_dotenv

from .multitest import normalize_method

logger = logging.getLogger("scdiff.Config")


SCORE_TYPES = ("std", "pos", "neg")
RANK_METRICS = ("t", "log_fc", "signed_log10p")


@dataclass
class QCConfig:
    """Cell and gene filters applied before normalization."""

    min_genes: int = 200
    max_pct_mito: float = 10.0
    min_cells: int = 3
    mito_prefixes: Tuple[str, ...] = ("MT-", "mt-")
    target_sum: float = 1e4
    log_base: float = 2.0

    def __post_init__(self):
        if self.min_genes < 0 or self.min_cells < 0:
            raise ValueError("min_genes and min_cells must be non-negative")
        if not 0 <= self.max_pct_mito <= 100:
            raise ValueError(f"max_pct_mito must be within [0, 100], got {self.max_pct_mito}")
        if self.target_sum <= 0:
            raise ValueError("target_sum must be positive")
        self.mito_prefixes = tuple(self.mito_prefixes)


@dataclass
class DEConfig:
    """
    Differential expression settings.

    ``p_adjust_method`` defaults to Benjamini-Hochberg. The thresholds only
    drive the UP/DOWN/NS status column of exported tables.
    """

    p_adjust_method: str = "BH"
    fdr_threshold: float = 0.05
    log_fc_threshold: float = 0.25

    def __post_init__(self):
        normalize_method(self.p_adjust_method)
        if not 0 < self.fdr_threshold <= 1:
            raise ValueError(f"fdr_threshold must be within (0, 1], got {self.fdr_threshold}")


@dataclass
class GSEAConfig:
    """
    Rank-based enrichment settings.

    The across-set correction defaults to ``"none"``: enrichment is treated
    as exploratory while the DE step is corrected with BH.
    """

    permutations: int = 10000
    min_size: int = 10
    max_size: int = 500
    score_type: str = "std"
    p_adjust_method: str = "none"
    gsea_weight: float = 1.0
    rank_metric: str = "t"
    seed: Optional[int] = 42
    max_workers: int = 4
    chunk_size: int = 1000

    def __post_init__(self):
        if self.permutations < 1:
            raise ValueError(f"permutations must be >= 1, got {self.permutations}")
        if self.min_size < 1 or self.max_size < self.min_size:
            raise ValueError(
                f"Invalid set size bounds: min_size={self.min_size}, max_size={self.max_size}"
            )
        if self.score_type not in SCORE_TYPES:
            raise ValueError(f"score_type must be one of {SCORE_TYPES}, got '{self.score_type}'")
        if self.rank_metric not in RANK_METRICS:
            raise ValueError(f"rank_metric must be one of {RANK_METRICS}, got '{self.rank_metric}'")
        if self.gsea_weight < 0:
            raise ValueError("gsea_weight must be non-negative")
        if self.max_workers < 1 or self.chunk_size < 1:
            raise ValueError("max_workers and chunk_size must be >= 1")
        normalize_method(self.p_adjust_method)


@dataclass
class ORAConfig:
    """Over-representation (GO enrichment) settings."""

    p_cutoff: float = 0.05
    p_adjust_method: str = "BH"
    min_size: int = 10
    max_size: int = 500
    use_fisher: bool = False

    def __post_init__(self):
        normalize_method(self.p_adjust_method)


@dataclass
class AnalysisConfig:
    """All sections; ``log_level`` is meant for ``scdiff.setup_logging``."""

    qc: QCConfig = field(default_factory=QCConfig)
    de: DEConfig = field(default_factory=DEConfig)
    gsea: GSEAConfig = field(default_factory=GSEAConfig)
    ora: ORAConfig = field(default_factory=ORAConfig)
    log_level: str = "INFO"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Environment variable -> (section, attribute, type)
ENV_OVERRIDES = {
    "SCDIFF_PERMUTATIONS": ("gsea", "permutations", int),
    "SCDIFF_SEED": ("gsea", "seed", int),
    "SCDIFF_MAX_WORKERS": ("gsea", "max_workers", int),
    "SCDIFF_GSEA_P_ADJUST": ("gsea", "p_adjust_method", str),
    "SCDIFF_DE_P_ADJUST": ("de", "p_adjust_method", str),
    "SCDIFF_LOG_LEVEL": (None, "log_level", str),
}

_SECTIONS = {"qc": QCConfig, "de": DEConfig, "gsea": GSEAConfig, "ora": ORAConfig}


def _build_section(cls, values: Dict[str, Any]):
    known = {f.name for f in fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} option(s): {sorted(unknown)}")
    return cls(**values)


def load_config(path: Optional[str] = None, use_env: bool = True) -> AnalysisConfig:
    """
    Build an AnalysisConfig from YAML and environment overrides.

    Args:
        path: Optional YAML file with ``qc``/``de``/``gsea``/``ora`` sections
        use_env: Apply ``SCDIFF_*`` environment variables on top of the file

    Returns:
        Validated AnalysisConfig

    Raises:
        FileNotFoundError: If ``path`` is given but does not exist
        ValueError: On unknown keys or invalid values
    """
    raw: Dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        with open(config_path, 'r', encoding='utf-8') as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config file must contain a mapping: {config_path}")
        logger.info(f"Loaded config from {config_path}")

    sections = {name: dict(raw.get(name) or {}) for name in _SECTIONS}
    log_level = raw.get("log_level", "INFO")

    if use_env:
        load_dotenv()
        for env_name, (section, attr, cast) in ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if value is None or value == "":
                continue
            try:
                value = cast(value)
            except ValueError:
                raise ValueError(f"Invalid value for {env_name}: {value!r}")
            if section is None:
                log_level = value
            else:
                sections[section][attr] = value
            logger.debug(f"Config override from {env_name}")

    return AnalysisConfig(
        qc=_build_section(QCConfig, sections["qc"]),
        de=_build_section(DEConfig, sections["de"]),
        gsea=_build_section(GSEAConfig, sections["gsea"]),
        ora=_build_section(ORAConfig, sections["ora"]),
        log_level=str(log_level).upper(),
    )
