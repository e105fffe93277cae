#!/usr/bin/env python
# coding: utf-8

"""
Sleep Deprivation Multi-Omics Analysis

Paired RNA-seq and methylation-array analysis of sleep-deprived versus
normal-sleep tissue samples.

Modules
-------
config : Run parameters for both pipelines
data : Input loading and validation
expression : Filtering, size factors, NB dispersion and likelihood-ratio tests
enrichment : Preranked GSEA and over-representation analysis
methylation : Array normalization, probe filters and ComBat
regions : Moderated probe statistics and DMR calling
annotation : TSS proximity and genomic feature classes
reporting : Tables, figures and PDF reports
pipeline : Per-tissue drivers
"""

__version__ = "0.1.0"

# Configuration
from sleep_omics.core.config import (
    AnalysisConfig,
    export_default_config,
    get_config,
    load_config,
)

# Inputs
from sleep_omics.core.data import (
    align_samples,
    load_array_readings,
    load_count_matrix,
    load_gene_annotation,
    load_gene_set_collections,
    load_probe_annotation,
    load_probe_exclusion_list,
    load_sample_table,
    load_transcripts,
    read_gmt,
    split_by_tissue,
)
from sleep_omics.core.exceptions import (
    SampleMismatchError,
    StageError,
    UnknownFeatureError,
)

# Expression
from sleep_omics.core.expression import (
    annotate_results,
    calc_size_factors,
    cpm,
    estimate_dispersions,
    filter_by_cpm,
    filter_protein_coding,
    fit_differential_expression,
    fit_nb_glm,
    get_significant_genes,
    summarize_expression_results,
)

# Enrichment
from sleep_omics.core.enrichment import (
    EnrichmentResult,
    gene_set_enrichment,
    methylation_enrichment,
    overrepresentation_test,
    rank_genes,
    top_gene_sets,
)

# Methylation
from sleep_omics.core.methylation import (
    MethylationSet,
    combat,
    correct_batch,
    normalize_tissue,
    preprocess_quantile,
)
from sleep_omics.core.regions import (
    RegionCallResult,
    call_regions,
    fit_probe_model,
    fit_probe_model_chunked,
    kernel_smooth,
    make_contrast,
    probes_in_region,
)
from sleep_omics.core.annotation import (
    FEATURE_PRECEDENCE,
    annotate_regions,
    build_feature_table,
    nearest_tss_genes,
)

# Reporting & drivers
from sleep_omics.core.reporting import PDFLogger, export_results, write_result_table
from sleep_omics.core.pipeline import (
    TissueResult,
    run_expression_pipeline,
    run_methylation_pipeline,
)

__all__ = [
    # Version
    "__version__",
    # Config
    "AnalysisConfig",
    "get_config",
    "load_config",
    "export_default_config",
    # Inputs
    "load_count_matrix",
    "load_sample_table",
    "align_samples",
    "split_by_tissue",
    "load_gene_annotation",
    "load_transcripts",
    "read_gmt",
    "load_gene_set_collections",
    "load_array_readings",
    "load_probe_annotation",
    "load_probe_exclusion_list",
    "SampleMismatchError",
    "StageError",
    "UnknownFeatureError",
    # Expression
    "filter_protein_coding",
    "cpm",
    "filter_by_cpm",
    "calc_size_factors",
    "estimate_dispersions",
    "fit_nb_glm",
    "fit_differential_expression",
    "annotate_results",
    "summarize_expression_results",
    "get_significant_genes",
    # Enrichment
    "EnrichmentResult",
    "rank_genes",
    "gene_set_enrichment",
    "top_gene_sets",
    "overrepresentation_test",
    "methylation_enrichment",
    # Methylation
    "MethylationSet",
    "preprocess_quantile",
    "combat",
    "correct_batch",
    "normalize_tissue",
    "fit_probe_model",
    "fit_probe_model_chunked",
    "make_contrast",
    "kernel_smooth",
    "call_regions",
    "RegionCallResult",
    "probes_in_region",
    "FEATURE_PRECEDENCE",
    "build_feature_table",
    "nearest_tss_genes",
    "annotate_regions",
    # Reporting & drivers
    "PDFLogger",
    "export_results",
    "write_result_table",
    "TissueResult",
    "run_expression_pipeline",
    "run_methylation_pipeline",
]
