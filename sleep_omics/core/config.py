#!/usr/bin/env python
# coding: utf-8

"""
Analysis Configuration
Centralized parameters for the expression and methylation pipelines
"""

import copy
import json
import os
from datetime import datetime
from typing import Any, Dict, Optional

import pandas as pd


# ============================================================================
# DEFAULT PARAMETERS
# ============================================================================

DEFAULT_RUN = {
    'random_seed': 1500,
    'output_dir': 'results',
    'tissues': ['muscle', 'adipose'],
    'sample_id_col': 'sample_id',
    'subject_col': 'subject',
    'tissue_col': 'tissue',
    'condition_col': 'condition',
}

DEFAULT_EXPRESSION = {
    'biotype': 'protein_coding',
    'min_cpm': 1.0,
    'min_samples': 5,
    'formula': '~ subject + condition',
    'coef': 'condition[T.SD]',
    'max_fdr': 1.0,
    'dispersion_fit_type': 'parametric',
    'report_fdr': 0.05,
    'report_lfc': 0.0,
}

DEFAULT_METHYLATION = {
    'max_detection_p': 0.01,
    'drop_snps': True,
    'snps': ['CpG', 'SBE'],
    'snp_maf': 0.0,
    'fix_outliers': True,
    'remove_bad_samples': True,
    'bad_sample_cutoff': 10.5,
    'batch_correct': True,
    'batch_col': 'slide',
    'exclusion_list': None,
    'formula': '~ subject + condition',
    'contrast': 'condition[T.SD]',
    'probe_fdr': 0.05,
    'min_abs_meandiff': 0.02,
    'max_stouffer': 0.05,
    'lambda': 1000,
    'C': 2,
    'min_cpgs': 2,
    'shrink': 'auto',
    'chunk_size': None,
}

DEFAULT_ANNOTATION = {
    'max_tss_distance': 5000,
    'precedence': [
        'Promoter', 'immediateDownstream', 'fiveUTR',
        'threeUTR', 'Exon', 'Intron'
    ],
    'promoter_upstream': 2000,
    'promoter_downstream': 100,
    'immediate_downstream': 1000,
}

DEFAULT_ENRICHMENT = {
    'measures': ['logFC', 'signed_p'],
    'min_set_size': 10,
    'max_set_size': 500,
    'n_permutations': 1000,
    'q_cutoff': 0.05,
    'top_q_cutoff': 0.01,
    'max_name_length': 50,
    'ora_max_p': 0.01,
    'ora_min_genes': 3,
    'ora_collections': ['GO_BP', 'GO_MF', 'GO_CC', 'KEGG'],
    'gene_set_dir': None,
}

DEFAULT_REPORTING = {
    'plot_dpi': 300,
    'volcano_fdr': 0.05,
    'volcano_lfc': 0.0,
    'top_labels': 10,
    'heatmap_top_n': 50,
    'table_format': 'tsv',
}

SECTIONS = ('run', 'expression', 'methylation', 'annotation',
            'enrichment', 'reporting')


# ============================================================================
# CONFIGURATION MANAGER
# ============================================================================

class AnalysisConfig:
    """
    Configuration manager for one analysis run.

    Each instance owns its own copy of every parameter section, so
    several runs can live side by side in the same process. Pass the
    instance into each pipeline call instead of relying on module state.
    """

    def __init__(self, config_file: Optional[str] = None, **overrides):
        """
        Initialize configuration manager.

        Parameters
        ----------
        config_file : str, optional
            Path to JSON configuration file
        **overrides
            Section dictionaries (e.g. ``expression={'min_cpm': 2}``)
            merged over the defaults
        """
        self.run = copy.deepcopy(DEFAULT_RUN)
        self.expression = copy.deepcopy(DEFAULT_EXPRESSION)
        self.methylation = copy.deepcopy(DEFAULT_METHYLATION)
        self.annotation = copy.deepcopy(DEFAULT_ANNOTATION)
        self.enrichment = copy.deepcopy(DEFAULT_ENRICHMENT)
        self.reporting = copy.deepcopy(DEFAULT_REPORTING)

        if config_file and os.path.exists(config_file):
            self.load_from_file(config_file)

        for section, values in overrides.items():
            self.update(section, **values)

    @property
    def random_seed(self) -> int:
        return self.run['random_seed']

    @property
    def output_dir(self) -> str:
        return self.run['output_dir']

    def _section(self, section: str) -> Dict[str, Any]:
        if section not in SECTIONS:
            raise ValueError(
                f"Unknown config section: {section}. Use one of {SECTIONS}"
            )
        return getattr(self, section)

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a single parameter."""
        return self._section(section).get(key, default)

    def update(self, section: str, **values):
        """
        Update parameters of one section.

        Parameters
        ----------
        section : str
            One of 'run', 'expression', 'methylation', 'annotation',
            'enrichment', 'reporting'
        **values
            Parameter values to set
        """
        self._section(section).update(values)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {s: copy.deepcopy(getattr(self, s)) for s in SECTIONS}

    def load_from_file(self, filepath: str):
        """
        Load configuration from JSON file.

        Parameters
        ----------
        filepath : str
            Path to JSON configuration file
        """
        with open(filepath, 'r') as f:
            config = json.load(f)

        for section in SECTIONS:
            if section in config:
                getattr(self, section).update(config[section])

    def save_to_file(self, filepath: str):
        """
        Save current configuration to JSON file.

        Parameters
        ----------
        filepath : str
            Path to save JSON configuration
        """
        config = self.to_dict()
        config['last_updated'] = datetime.now().isoformat()

        with open(filepath, 'w') as f:
            json.dump(config, f, indent=2)

    def export_to_excel(self, filepath: str):
        """
        Export configuration to Excel file, one sheet per section.

        Parameters
        ----------
        filepath : str
            Path to save Excel file
        """
        with pd.ExcelWriter(filepath, engine='openpyxl') as writer:
            for section in SECTIONS:
                values = {
                    k: json.dumps(v) if isinstance(v, (list, dict)) else v
                    for k, v in getattr(self, section).items()
                }
                pd.Series(values, name='value').to_frame().to_excel(
                    writer, sheet_name=section.capitalize()
                )

    def output_path(self, *parts: str) -> str:
        """Build (and create) a directory below the run output directory."""
        path = os.path.join(self.output_dir, *parts)
        os.makedirs(path, exist_ok=True)
        return path


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

def get_config(**overrides) -> AnalysisConfig:
    """
    Get a fresh default configuration.

    Returns
    -------
    AnalysisConfig
        New configuration instance

    Examples
    --------
    >>> config = get_config(run={'output_dir': 'out', 'random_seed': 7})
    >>> config.expression['min_cpm']
    1.0
    """
    return AnalysisConfig(**overrides)


def load_config(filepath: str) -> AnalysisConfig:
    """
    Load configuration from a JSON file.

    Parameters
    ----------
    filepath : str
        Path to configuration file

    Returns
    -------
    AnalysisConfig
    """
    if not filepath.endswith('.json'):
        raise ValueError("Config file must be JSON format")
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"Configuration file not found: {filepath}")

    config = AnalysisConfig()
    config.load_from_file(filepath)
    return config


def export_default_config(filepath: str):
    """
    Export default configuration template.

    Parameters
    ----------
    filepath : str
        Path to save configuration (.json or .xlsx)
    """
    config = AnalysisConfig()

    if filepath.endswith('.json'):
        config.save_to_file(filepath)
    elif filepath.endswith('.xlsx'):
        config.export_to_excel(filepath)
    else:
        raise ValueError("Filepath must end with .json or .xlsx")
