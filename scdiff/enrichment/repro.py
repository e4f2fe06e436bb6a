"""
Reproducibility metadata for scdiff runs

Records what is needed to rerun an analysis: software versions, gene set
hash, DE and enrichment parameters, input and output summaries.
"""

import hashlib
import json
import logging
import sys
import uuid
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

import anndata
import gseapy
import numpy
import pandas
import scanpy
import scipy
import statsmodels
import yaml

from .. import __version__

logger = logging.getLogger("scdiff.Enrichment.Repro")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


@dataclass
class PipelineMetadata:
    """Complete metadata for a single analysis run"""

    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=_utc_now)

    software_version: str = __version__
    python_version: str = ""
    dependencies: Dict[str, str] = field(default_factory=dict)

    gene_set_source: str = ""
    gene_set_hash: str = ""
    gene_set_count: int = 0

    # Parameters keyed by stage: 'qc', 'de', 'gsea', 'ora'
    parameters: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    input_summary: Dict[str, Any] = field(default_factory=dict)
    output_summary: Dict[str, Any] = field(default_factory=dict)

    warnings: list = field(default_factory=list)

    def to_dict(self) -> Dict:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str)

    def save(self, output_path: Path):
        """Save metadata as JSON"""
        with open(output_path, 'w', encoding='utf-8') as f:
            f.write(self.to_json())
        logger.info(f"Saved pipeline metadata to {output_path}")


def gene_set_hash(gene_sets: Mapping[str, Iterable[str]]) -> str:
    """
    Short SHA256 of a gene set collection, independent of set and gene order.
    """
    items = []
    for name in sorted(gene_sets):
        items.append(f"{name}::{','.join(sorted(set(gene_sets[name])))}")
    return hashlib.sha256("||".join(items).encode()).hexdigest()[:16]


class ReproducibilityLogger:
    """Accumulates run metadata while a pipeline executes."""

    def __init__(self):
        self.metadata = PipelineMetadata()
        self._initialize_versions()

    def _initialize_versions(self):
        v = sys.version_info
        self.metadata.python_version = f"{v.major}.{v.minor}.{v.micro}"
        self.metadata.dependencies = {
            'numpy': numpy.__version__,
            'pandas': pandas.__version__,
            'scipy': scipy.__version__,
            'statsmodels': statsmodels.__version__,
            'gseapy': gseapy.__version__,
            'scanpy': scanpy.__version__,
            'anndata': anndata.__version__,
        }

    def set_gene_set_info(self, source: str, gene_sets: Mapping[str, Iterable[str]]):
        self.metadata.gene_set_source = source
        self.metadata.gene_set_count = len(gene_sets)
        self.metadata.gene_set_hash = gene_set_hash(gene_sets)

    def set_parameters(self, stage: str, **params):
        """Record parameters for one stage ('qc', 'de', 'gsea', 'ora')."""
        self.metadata.parameters.setdefault(stage, {}).update(params)

    def set_input_summary(self, **summary):
        self.metadata.input_summary.update(summary)

    def set_output_summary(self, **summary):
        self.metadata.output_summary.update(summary)

    def add_warning(self, warning: str):
        self.metadata.warnings.append(warning)
        logger.warning(f"Pipeline warning: {warning}")

    def get_metadata(self) -> PipelineMetadata:
        return self.metadata

    def export_yaml(self, output_path: Path):
        with open(output_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(json.loads(self.metadata.to_json()), f, default_flow_style=False)
        logger.info(f"Saved pipeline metadata (YAML) to {output_path}")

    def export_json(self, output_path: Path):
        self.metadata.save(output_path)
