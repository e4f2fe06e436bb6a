"""
Integration tests for the analysis pipeline.
"""

import json

import numpy as np
import pandas as pd
import pytest

from scdiff.config import AnalysisConfig, GSEAConfig, QCConfig
from scdiff.enrichment.pipeline import AnalysisPipeline, export_results
from scdiff.errors import InvalidDesign


def synthetic_counts(seed=0):
    """
    60 genes x 40 cells. GENE0-GENE14 are up in 'injured', GENE15-GENE29
    are up in 'uninjured' (library sizes stay balanced).
    MT-CO1 is a mitochondrial gene.
    """
    rng = np.random.default_rng(seed)
    genes = [f"GENE{i}" for i in range(59)] + ["MT-CO1"]
    cells = [f"cell{i}" for i in range(40)]

    lam = np.full((60, 40), 10.0)
    lam[:15, :20] = 30.0
    lam[:15, 20:] = 5.0
    lam[15:30, :20] = 5.0
    lam[15:30, 20:] = 30.0
    counts = pd.DataFrame(rng.poisson(lam), index=genes, columns=cells)
    labels = pd.Series(['injured'] * 20 + ['uninjured'] * 20, index=cells)
    return counts, labels


GENE_SETS = {
    'UP_SET': [f"GENE{i}" for i in range(12)],
    'NULL_SET': [f"GENE{i}" for i in range(30, 45)],
    'TINY': ['GENE50', 'GENE51', 'GENE52'],
}


def small_config():
    return AnalysisConfig(
        qc=QCConfig(min_genes=5, max_pct_mito=20.0, min_cells=1),
        gsea=GSEAConfig(permutations=199, chunk_size=50, seed=3, max_workers=2),
    )


class TestPipeline:
    """Test complete pipeline integration"""

    @pytest.mark.integration
    def test_full_run(self):
        counts, labels = synthetic_counts()
        pipeline = AnalysisPipeline(small_config())

        result = pipeline.run(counts, labels, 'injured', GENE_SETS, gene_set_source='mock')

        assert result['status'] == 'ok'
        assert len(result['de_results']) == 60
        assert result['qc']['cells_after'] == 40

        de = {r['gene']: r for r in result['de_results']}
        assert de['GENE0']['log_fc'] > 0
        assert de['GENE0']['adj_p_value'] < 0.05

        gsea = {r['set_id']: r for r in result['gsea_results']}
        assert 'TINY' not in gsea
        assert result['gsea_excluded_sets'] == ['TINY']
        assert gsea['UP_SET']['nes'] > 0
        assert gsea['UP_SET']['p_value'] < 0.05

        assert 'UP_SET' in [r['set_id'] for r in result['ora_results']]

        metadata = result['metadata']
        assert metadata['gene_set_source'] == 'mock'
        assert metadata['parameters']['gsea']['permutations'] == 199
        assert metadata['parameters']['de']['p_adjust_method'] == 'BH'
        assert metadata['input_summary']['conditions'] == {'injured': 20, 'uninjured': 20}

    @pytest.mark.integration
    def test_reversed_reference(self):
        counts, labels = synthetic_counts()
        pipeline = AnalysisPipeline(small_config())

        result = pipeline.run(counts, labels, 'uninjured', GENE_SETS, with_ora=False)

        gsea = {r['set_id']: r for r in result['gsea_results']}
        assert gsea['UP_SET']['nes'] < 0
        assert result['ora_results'] == []
        assert 'ora' not in result['metadata']['parameters']

    def test_preprocessed_input(self):
        """Already-normalized values can skip QC and normalization."""
        counts, labels = synthetic_counts()
        logged = np.log2(counts + 1.0)
        pipeline = AnalysisPipeline(small_config())

        result = pipeline.run(logged, list(labels), 'injured', GENE_SETS,
                              run_qc=False, normalize=False, with_ora=False)

        assert result['qc'] is None
        assert len(result['de_results']) == 60

    def test_no_sets_in_bounds(self):
        counts, labels = synthetic_counts()
        pipeline = AnalysisPipeline(small_config())

        with pytest.warns(UserWarning):
            result = pipeline.run(counts, labels, 'injured', {'TINY': GENE_SETS['TINY']},
                                  with_ora=False)

        assert result['gsea_results'] == []
        assert any('size bounds' in w for w in result['warnings'])

    def test_label_mismatch(self):
        counts, labels = synthetic_counts()
        with pytest.raises(InvalidDesign):
            AnalysisPipeline(small_config()).run(counts, list(labels)[:-2], 'injured', GENE_SETS)

    def test_labels_keyed_by_other_cells(self):
        counts, labels = synthetic_counts()
        labels.index = [f"sample{i}" for i in range(39, -1, -1)]
        with pytest.raises(InvalidDesign, match="cell0"):
            AnalysisPipeline(small_config()).run(counts, labels, 'injured', GENE_SETS)

    def test_unused_categorical_level(self):
        """Declared but empty levels reach the DE step."""
        counts, labels = synthetic_counts()
        labels = labels.astype(pd.CategoricalDtype(['injured', 'uninjured', 'sham']))
        with pytest.raises(InvalidDesign, match="zero cells"):
            AnalysisPipeline(small_config()).run(
                counts, labels, 'injured', GENE_SETS, contrast_level='uninjured'
            )

    def test_qc_removes_everything(self):
        counts, labels = synthetic_counts()
        config = small_config()
        config.qc = QCConfig(min_genes=1000)
        with pytest.raises(ValueError, match="QC removed"):
            AnalysisPipeline(config).run(counts, labels, 'injured', GENE_SETS)

    def test_export_results(self, tmp_path):
        counts, labels = synthetic_counts()
        result = AnalysisPipeline(small_config()).run(counts, labels, 'injured', GENE_SETS)

        written = export_results(result, tmp_path / 'out')

        assert set(written) == {'de', 'gsea', 'ora', 'metadata'}
        for path in written.values():
            assert path.exists()

        de = pd.read_csv(written['de'])
        assert len(de) == 60
        assert list(de['p_value']) == sorted(de['p_value'])

        gsea = pd.read_csv(written['gsea'])
        assert 'UP_SET' in set(gsea['set_id'])

        metadata = json.loads(written['metadata'].read_text(encoding='utf-8'))
        assert metadata['software_version']
