"""
Unit tests for configuration, multiple-testing and logging helpers.
"""

import logging

import pytest
import numpy as np

from scdiff.config import AnalysisConfig, GSEAConfig, DEConfig, load_config
from scdiff.log import setup_logging
from scdiff.multitest import adjust_pvalues, normalize_method


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("SCDIFF_PERMUTATIONS", "SCDIFF_SEED", "SCDIFF_MAX_WORKERS",
                 "SCDIFF_GSEA_P_ADJUST", "SCDIFF_DE_P_ADJUST", "SCDIFF_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestDefaults:
    """Test default settings."""

    def test_defaults(self):
        config = AnalysisConfig()

        assert config.de.p_adjust_method == "BH"
        assert config.gsea.p_adjust_method == "none"
        assert config.gsea.permutations == 10000
        assert config.gsea.min_size == 10
        assert config.gsea.max_size == 500
        assert config.gsea.score_type == "std"

    def test_invalid_values(self):
        with pytest.raises(ValueError):
            GSEAConfig(score_type="both")
        with pytest.raises(ValueError):
            GSEAConfig(min_size=20, max_size=10)
        with pytest.raises(ValueError):
            GSEAConfig(permutations=0)
        with pytest.raises(ValueError):
            DEConfig(p_adjust_method="qvalue")


class TestLoadConfig:
    """Test YAML and environment loading."""

    def test_yaml(self, tmp_path, clean_env):
        path = tmp_path / "config.yaml"
        path.write_text(
            "de:\n  p_adjust_method: bonferroni\n"
            "gsea:\n  permutations: 500\n  min_size: 5\n"
            "log_level: debug\n",
            encoding="utf-8"
        )

        config = load_config(str(path), use_env=False)

        assert config.de.p_adjust_method == "bonferroni"
        assert config.gsea.permutations == 500
        assert config.gsea.min_size == 5
        assert config.gsea.max_size == 500
        assert config.log_level == "DEBUG"

    def test_env_overrides_yaml(self, tmp_path, clean_env):
        path = tmp_path / "config.yaml"
        path.write_text("gsea:\n  permutations: 500\n", encoding="utf-8")
        clean_env.setenv("SCDIFF_PERMUTATIONS", "2000")
        clean_env.setenv("SCDIFF_GSEA_P_ADJUST", "BH")

        config = load_config(str(path))

        assert config.gsea.permutations == 2000
        assert config.gsea.p_adjust_method == "BH"

    def test_bad_env_value(self, clean_env):
        clean_env.setenv("SCDIFF_SEED", "forty-two")
        with pytest.raises(ValueError, match="SCDIFF_SEED"):
            load_config()

    def test_unknown_key(self, tmp_path, clean_env):
        path = tmp_path / "config.yaml"
        path.write_text("gsea:\n  nperm: 500\n", encoding="utf-8")
        with pytest.raises(ValueError, match="nperm"):
            load_config(str(path), use_env=False)

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_config("/nonexistent/config.yaml", use_env=False)


class TestMultitest:
    """Test p-value correction."""

    def test_bh(self):
        adjusted = adjust_pvalues([0.01, 0.02, 0.03, 0.04], method="BH")
        np.testing.assert_allclose(adjusted, [0.04, 0.04, 0.04, 0.04])

    def test_bonferroni(self):
        adjusted = adjust_pvalues([0.01, 0.02, 0.5], method="bonferroni")
        np.testing.assert_allclose(adjusted, [0.03, 0.06, 1.0])

    def test_none(self):
        p = [0.2, 0.01, 0.7]
        np.testing.assert_array_equal(adjust_pvalues(p, method="none"), p)

    def test_empty(self):
        assert adjust_pvalues([], method="BH").size == 0

    def test_aliases(self):
        assert normalize_method("BH") == "fdr_bh"
        assert normalize_method("fdr") == "fdr_bh"
        assert normalize_method("None") is None

    def test_unknown_method(self):
        with pytest.raises(ValueError):
            adjust_pvalues([0.1], method="qvalue")

    def test_out_of_range(self):
        with pytest.raises(ValueError):
            adjust_pvalues([0.1, 1.5], method="BH")


class TestLogging:
    """Test logging setup."""

    def test_file_handler(self, tmp_path):
        log_file = setup_logging("DEBUG", log_dir=tmp_path)
        try:
            logging.getLogger("scdiff.DE").debug("hello from test")
            for handler in logging.getLogger("scdiff").handlers:
                handler.flush()

            assert log_file.parent == tmp_path
            assert "hello from test" in log_file.read_text(encoding="utf-8")
        finally:
            setup_logging("INFO")

    def test_invalid_level(self):
        with pytest.raises(ValueError):
            setup_logging("LOUD")
