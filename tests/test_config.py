#!/usr/bin/env python
# coding: utf-8

"""
Test suite for the `config` module.

This collection of tests validates:
- Default values and per-instance isolation
- Section updates and overrides
- JSON and Excel round trips
- Error handling for malformed or missing configuration

Usage:
    pytest tests/test_config.py -v --cov=sleep_omics.core.config
"""

import json

import pandas as pd
import pytest

from sleep_omics.core.config import (
    DEFAULT_EXPRESSION,
    SECTIONS,
    AnalysisConfig,
    export_default_config,
    get_config,
    load_config,
)


def test_defaults():
    conf = get_config()
    assert conf.random_seed == 1500
    assert conf.output_dir == 'results'
    assert conf.expression['min_cpm'] == 1.0
    assert conf.methylation['lambda'] == 1000
    assert conf.annotation['precedence'][0] == 'Promoter'


def test_instances_are_independent():
    a = get_config()
    b = get_config()
    a.update('expression', min_cpm=5.0)
    a.annotation['precedence'].append('Exon')

    assert b.expression['min_cpm'] == 1.0
    assert len(b.annotation['precedence']) == 6
    assert DEFAULT_EXPRESSION['min_cpm'] == 1.0


def test_overrides_merge_over_defaults():
    conf = AnalysisConfig(run={'output_dir': 'out'}, methylation={'probe_fdr': 0.01})
    assert conf.output_dir == 'out'
    assert conf.run['random_seed'] == 1500
    assert conf.get('methylation', 'probe_fdr') == 0.01
    assert conf.get('methylation', 'missing', 'fallback') == 'fallback'


def test_unknown_section():
    conf = get_config()
    with pytest.raises(ValueError, match="Unknown config section"):
        conf.update('plotting', dpi=10)
    with pytest.raises(ValueError, match="Unknown config section"):
        AnalysisConfig(plotting={'dpi': 10})


def test_save_and_load_json(tmp_path):
    p = tmp_path / "conf.json"
    conf = get_config(enrichment={'min_set_size': 15})
    conf.save_to_file(str(p))

    with open(p) as f:
        data = json.load(f)
    assert 'last_updated' in data
    assert set(SECTIONS) <= set(data)

    new = load_config(str(p))
    assert new.enrichment['min_set_size'] == 15
    assert new.to_dict() == conf.to_dict()


def test_load_from_file_updates_only_present_keys(tmp_path):
    p = tmp_path / "partial.json"
    p.write_text(json.dumps({'reporting': {'plot_dpi': 72}}))

    conf = AnalysisConfig(config_file=str(p))
    assert conf.reporting['plot_dpi'] == 72
    assert conf.reporting['table_format'] == 'tsv'
    assert conf.expression == DEFAULT_EXPRESSION


def test_missing_config_file_uses_defaults(tmp_path):
    conf = AnalysisConfig(config_file=str(tmp_path / "absent.json"))
    assert conf.to_dict() == get_config().to_dict()


def test_load_config_errors(tmp_path):
    with pytest.raises(ValueError, match="must be JSON"):
        load_config(str(tmp_path / "conf.yaml"))
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "absent.json"))


def test_export_default_config(tmp_path):
    json_path = tmp_path / "default.json"
    export_default_config(str(json_path))
    assert json.loads(json_path.read_text())['run']['random_seed'] == 1500

    xlsx_path = tmp_path / "default.xlsx"
    export_default_config(str(xlsx_path))
    sheets = pd.read_excel(xlsx_path, sheet_name=None, index_col=0)
    assert set(sheets) == {s.capitalize() for s in SECTIONS}
    assert sheets['Expression'].loc['min_samples', 'value'] == 5

    with pytest.raises(ValueError, match=r"\.json or \.xlsx"):
        export_default_config(str(tmp_path / "default.txt"))


def test_output_path_creates_directory(tmp_path):
    conf = get_config(run={'output_dir': str(tmp_path / "run")})
    path = conf.output_path('muscle', 'plots')
    assert path == str(tmp_path / "run" / "muscle" / "plots")
    assert (tmp_path / "run" / "muscle" / "plots").is_dir()
