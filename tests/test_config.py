"""Tests for configuration loading and defaults."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from phage_dge.config import CONFIG_TEMPLATE, Config, PathConfig, get_config, set_config


class TestConfig:

    def test_defaults(self):
        config = Config()

        assert config.groups == ["Untreated", "OMKO1", "LPS5", "PSA34", "PSA04"]
        assert config.reference_group == "Untreated"
        assert config.filtering.min_count == 10
        assert config.filtering.min_total_count == 15
        assert config.thresholds.lfc_threshold == 1.5
        assert config.thresholds.pvalue_threshold == 1e-3
        assert config.engine == "native"

    def test_contrasts_against_reference(self):
        assert Config().contrasts == [
            "OMKO1-Untreated", "LPS5-Untreated", "PSA34-Untreated", "PSA04-Untreated"
        ]

    def test_custom_reference(self):
        config = Config(groups=["mock", "phiA", "phiB"], reference_group="mock")

        assert config.contrasts == ["phiA-mock", "phiB-mock"]

    def test_derived_paths(self, tmp_path):
        paths = PathConfig(output_dir=tmp_path / "run1")

        assert paths.tables_dir == tmp_path / "run1" / "tables"
        assert paths.plots_dir == tmp_path / "run1" / "plots"

        paths.create_directories()
        assert paths.tables_dir.is_dir()
        assert paths.plots_dir.is_dir()

    def test_nested_paths_derived(self, tmp_path):
        config = Config(paths={'output_dir': tmp_path})

        assert config.paths.tables_dir == tmp_path / "tables"

    def test_yaml_round_trip(self, tmp_path):
        config = Config(
            samples={'U1': 'Untreated', 'O1': 'OMKO1'},
            drop_columns=['Length'],
            plot_format='svg',
            paths=PathConfig(output_dir=tmp_path / "out")
        )
        path = tmp_path / "config.yaml"

        config.to_yaml(path)
        loaded = Config.from_yaml(path)

        assert loaded.samples == config.samples
        assert loaded.drop_columns == ['Length']
        assert loaded.plot_format == 'svg'
        assert loaded.dispersion.grid_range == (-10.0, 10.0)
        assert loaded.paths.output_dir == tmp_path / "out"

    def test_template_parses(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(CONFIG_TEMPLATE)

        config = Config.from_yaml(path)

        assert config.paths.output_dir == Path("dge_results")
        assert config.normalization.method == "TMM"

    def test_template_maps_every_group(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(CONFIG_TEMPLATE)

        config = Config.from_yaml(path)

        assert set(config.samples.values()) == set(config.groups)
        assert list(config.samples.values()).count("Untreated") == 3
        assert "No sample-to-group assignment" in CONFIG_TEMPLATE

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("PHAGE_DGE_ENGINE", "edger")
        monkeypatch.setenv("PHAGE_DGE_THRESHOLDS__LFC_THRESHOLD", "2")

        config = Config()

        assert config.engine == "edger"
        assert config.thresholds.lfc_threshold == 2.0

    @pytest.mark.parametrize("field,value", [
        ("engine", "deseq2"),
        ("plot_format", "gif"),
    ])
    def test_invalid_choice(self, field, value):
        with pytest.raises(ValidationError):
            Config(**{field: value})

    def test_invalid_threshold(self):
        with pytest.raises(ValidationError):
            Config(thresholds={'pvalue_threshold': 0})

    def test_global_config(self):
        config = Config(engine="edger")
        set_config(config)
        try:
            assert get_config() is config
        finally:
            set_config(None)
