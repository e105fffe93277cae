#!/usr/bin/env python
# coding: utf-8

"""
Analysis Drivers
Per-tissue expression and methylation runs with isolated failures
"""

import os
import warnings
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional

import pandas as pd

from sleep_omics.core.annotation import annotate_regions, summarize_features
from sleep_omics.core.config import AnalysisConfig
from sleep_omics.core.data import (
    align_samples,
    split_by_tissue,
    validate_count_matrix,
    validate_sample_table,
)
from sleep_omics.core.enrichment import (
    DIRECTIONS,
    array_background,
    methylation_enrichment,
    run_expression_enrichment,
    top_gene_sets,
)
from sleep_omics.core.exceptions import StageError
from sleep_omics.core.expression import (
    cpm,
    filter_by_cpm,
    filter_protein_coding,
    fit_differential_expression,
    get_significant_genes,
    summarize_expression_results,
)
from sleep_omics.core.methylation import MethylationSet, normalize_tissue
from sleep_omics.core.regions import (
    call_regions,
    region_probe_values,
    summarize_probe_results,
    summarize_regions,
)
from sleep_omics.core.reporting import (
    PDFLogger,
    export_probe_values,
    export_results,
    plot_density,
    plot_heatmap,
    plot_mean_variance,
    plot_pvalue_qq,
    plot_region_violin,
    plot_sample_qc,
    plot_venn,
    plot_volcano,
    summarize_by_gene,
    write_gene_list,
    write_result_table,
)


@dataclass
class TissueResult:
    """Outcome of one tissue's analysis."""

    tissue: str
    success: bool
    tables: Dict[str, pd.DataFrame] = field(default_factory=dict)
    files: Dict[str, str] = field(default_factory=dict)
    summary: Dict[str, Any] = field(default_factory=dict)
    error: Optional[StageError] = None


@contextmanager
def _stage(tissue: str, stage: str):
    try:
        yield
    except StageError:
        raise
    except Exception as e:
        raise StageError(tissue, stage, e) from e


def _log(report: Optional[PDFLogger], text: str, verbose: bool = True):
    if report is not None:
        report.log_text(text)
    elif verbose:
        print(text)


def _run_tissues(tissues, run_one, report, verbose) -> Dict[str, TissueResult]:
    results = {}
    for tissue, args in tissues.items():
        try:
            results[tissue] = run_one(tissue, *args)
        except StageError as err:
            warnings.warn(str(err))
            _log(report, f"- **{tissue}** failed at *{err.stage}*: {err.cause}", verbose)
            results[tissue] = TissueResult(tissue=tissue, success=False, error=err)
    return results


# ============================================================================
# EXPRESSION
# ============================================================================


def run_expression_pipeline(
    counts: pd.DataFrame,
    samples: pd.DataFrame,
    config: AnalysisConfig,
    gene_annotation: Optional[pd.DataFrame] = None,
    gene_sets: Optional[Mapping] = None,
    report: Optional[PDFLogger] = None,
    verbose: bool = True,
) -> Dict[str, TissueResult]:
    """
    Differential expression and gene-set testing per tissue.

    Parameters
    ----------
    counts : pd.DataFrame
        Raw gene x sample counts
    samples : pd.DataFrame
        Sample table indexed by sample id
    config : AnalysisConfig
        Run parameters
    gene_annotation : pd.DataFrame, optional
        Gene annotation (biotype, gene_name, entrez_id) indexed by gene id
    gene_sets : dict, optional
        {set name: frozenset of Entrez ids}; enrichment is skipped when
        omitted
    report : PDFLogger, optional
        Run report receiving text, tables and figures
    verbose : bool
        Print progress messages

    Returns
    -------
    Dict[str, TissueResult]

    Raises
    ------
    SampleMismatchError
        If the sample table and count columns disagree (before any fit)
    """
    run = config.run
    validate_count_matrix(counts)
    samples = align_samples(counts, samples)
    validate_sample_table(samples, (run["subject_col"], run["tissue_col"], run["condition_col"]))

    ex = config.expression
    if gene_annotation is not None:
        counts = filter_protein_coding(counts, gene_annotation, ex["biotype"])
    else:
        warnings.warn("No gene annotation supplied; keeping all genes")

    _log(report, "# Differential Expression", verbose)
    _log(report, f"- {counts.shape[0]:,} genes x {counts.shape[1]} samples", verbose)

    by_tissue = split_by_tissue(counts, samples, run["tissue_col"], run["tissues"])

    def run_one(tissue, tissue_counts, tissue_samples):
        return _expression_tissue(
            tissue, tissue_counts, tissue_samples, config, gene_annotation, gene_sets, report, verbose
        )

    results = _run_tissues(by_tissue, run_one, report, verbose)

    done = {t: r for t, r in results.items() if r.success}
    if len(done) in (2, 3):
        sig_sets = {t: set(r.summary["significant_genes"]) for t, r in done.items()}
        path = os.path.join(config.output_path("expression"), "venn_significant_genes.png")
        plot_venn(sig_sets, title="Significant genes by tissue", save_path=path,
                  dpi=config.reporting["plot_dpi"])
        if report is not None:
            report.log_image(path, title="Overlap", caption="Significant genes shared between tissues")

    return results


def _expression_tissue(tissue, counts, samples, config, gene_annotation, gene_sets, report, verbose):
    ex, rep, en = config.expression, config.reporting, config.enrichment
    out_dir = config.output_path("expression", tissue)
    result = TissueResult(tissue=tissue, success=False)

    _log(report, f"## {tissue}", verbose)

    with _stage(tissue, "filter"):
        filtered, n_removed, n_kept = filter_by_cpm(counts, ex["min_cpm"], ex["min_samples"])
        _log(report, f"- CPM filter kept {n_kept:,} genes, removed {n_removed:,}", verbose)

    with _stage(tissue, "differential"):
        res = fit_differential_expression(
            filtered,
            samples,
            formula=ex["formula"],
            coef=ex["coef"],
            gene_annotation=gene_annotation,
            max_fdr=ex["max_fdr"],
            fit_type=ex["dispersion_fit_type"],
            verbose=verbose,
        )
        result.tables["differential"] = res
        summary = summarize_expression_results(res, rep["volcano_fdr"])
        result.summary.update(summary)
        result.summary["significant_genes"] = get_significant_genes(
            res, ex["report_fdr"], ex["report_lfc"]
        )

    with _stage(tissue, "export"):
        fmt = rep["table_format"]
        ext = {"tsv": "tsv", "csv": "csv", "excel": "xlsx"}[fmt]
        result.files["differential"] = export_results(
            res, os.path.join(out_dir, f"differential_expression.{ext}"), format=fmt, verbose=verbose
        )
        for direction in ("up", "down"):
            ids = get_significant_genes(
                res, ex["report_fdr"], ex["report_lfc"], direction=direction, id_col="entrez_id"
            )
            result.files[f"genes_{direction}"] = write_gene_list(
                ids, os.path.join(out_dir, f"genes_{direction}_entrez.txt")
            )

    if gene_sets:
        with _stage(tissue, "enrichment"):
            enrichment = run_expression_enrichment(
                res,
                gene_sets,
                measures=en["measures"],
                min_size=en["min_set_size"],
                max_size=en["max_set_size"],
                n_permutations=en["n_permutations"],
                seed=config.random_seed,
            )
            for measure, er in enrichment.items():
                for direction in DIRECTIONS:
                    top = top_gene_sets(er, direction, en["top_q_cutoff"], en["max_name_length"])
                    key = f"enrichment_{measure}_{direction}"
                    result.tables[key] = top
                    result.files[key] = write_result_table(
                        top, os.path.join(out_dir, f"{key}.tsv")
                    )
                    if report is not None:
                        report.log_dataframe(top, title=f"{measure}: {direction}")

    with _stage(tissue, "plots"):
        dpi = rep["plot_dpi"]
        cond = config.run["condition_col"]

        figures = {
            "volcano": (
                plot_volcano,
                dict(res=res, fdr_thresh=rep["volcano_fdr"], lfc_thresh=rep["volcano_lfc"],
                     top_n=rep["top_labels"], title=f"{tissue}: {ex['coef']}"),
            ),
        }
        if len(filtered) > 0:
            log_cpm = cpm(filtered, log=True)
            figures["density"] = (
                plot_density,
                dict(values=log_cpm, samples=samples, group_col=cond, title=f"{tissue}: log-CPM"),
            )
            figures["sample_qc"] = (
                plot_sample_qc, dict(values=log_cpm, samples=samples, group_col=cond)
            )
            if len(res) >= 2:
                figures["heatmap"] = (
                    plot_heatmap,
                    dict(values=log_cpm, samples=samples, group_col=cond,
                         rows=res.index[: rep["heatmap_top_n"]], title=f"{tissue}: top genes"),
                )
        else:
            warnings.warn(f"[{tissue}] no genes passed the CPM filter; skipping expression plots")
        for name, (func, kwargs) in figures.items():
            path = os.path.join(out_dir, f"{name}.png")
            func(save_path=path, dpi=dpi, **kwargs)
            result.files[name] = path
            if report is not None:
                report.log_image(path, title=name.replace("_", " ").title())

    if report is not None:
        report.log_dataframe(res.head(20), title=f"{tissue}: top genes")
    _log(report, f"- {summary['significant']} genes at FDR < {rep['volcano_fdr']}", verbose)

    result.success = True
    return result


# ============================================================================
# METHYLATION
# ============================================================================


def run_methylation_pipeline(
    mset: MethylationSet,
    config: AnalysisConfig,
    transcripts: pd.DataFrame,
    gene_annotation: Optional[pd.DataFrame] = None,
    collections: Optional[Mapping[str, Mapping]] = None,
    exclude: Optional[Iterable[str]] = None,
    report: Optional[PDFLogger] = None,
    verbose: bool = True,
) -> Dict[str, TissueResult]:
    """
    Normalization, region calling, annotation and enrichment per tissue.

    Parameters
    ----------
    mset : MethylationSet
        Raw intensities for every sample
    config : AnalysisConfig
        Run parameters
    transcripts : pd.DataFrame
        Transcript records for TSS proximity and feature classes
    gene_annotation : pd.DataFrame, optional
        Symbol to Entrez mapping for enrichment
    collections : dict, optional
        {'GO_BP': gene sets, ...}; enrichment is skipped when omitted
    exclude : iterable of str, optional
        Non-specific probe identifiers
    report : PDFLogger, optional
        Run report
    verbose : bool
        Print progress messages

    Returns
    -------
    Dict[str, TissueResult]
    """
    run, me = config.run, config.methylation
    required = [run["subject_col"], run["tissue_col"], run["condition_col"]]
    if me["batch_correct"]:
        required.append(me["batch_col"])
    validate_sample_table(mset.samples, required)
    missing = [c for c in ("chrom", "pos") if c not in mset.probes.columns]
    if missing:
        raise ValueError(f"Probe annotation missing columns: {missing}")

    exclude = list(exclude) if exclude is not None else []

    _log(report, "# Differential Methylation", verbose)
    _log(report, f"- {mset.n_probes:,} probes x {mset.n_samples} samples", verbose)

    tissues = run["tissues"] or list(pd.unique(mset.samples[run["tissue_col"]]))
    by_tissue = {}
    for tissue in tissues:
        idx = mset.samples.index[mset.samples[run["tissue_col"]] == tissue]
        if len(idx):
            by_tissue[tissue] = (mset.subset(samples=idx),)

    def run_one(tissue, tissue_set):
        return _methylation_tissue(
            tissue, tissue_set, config, transcripts, gene_annotation, collections, exclude,
            report, verbose,
        )

    return _run_tissues(by_tissue, run_one, report, verbose)


def _methylation_tissue(
    tissue, mset, config, transcripts, gene_annotation, collections, exclude, report, verbose
):
    me, an, en, rep = config.methylation, config.annotation, config.enrichment, config.reporting
    out_dir = config.output_path("methylation", tissue)
    result = TissueResult(tissue=tissue, success=False)
    cond = config.run["condition_col"]
    dpi = rep["plot_dpi"]

    _log(report, f"## {tissue}", verbose)

    with _stage(tissue, "normalization"):
        normed = normalize_tissue(
            mset,
            exclude=exclude,
            max_detection_p=me["max_detection_p"],
            drop_snps=me["drop_snps"],
            snps=me["snps"],
            snp_maf=me["snp_maf"],
            batch_correct=me["batch_correct"],
            batch_col=me["batch_col"],
            fix_outlier_values=me["fix_outliers"],
            remove_bad_samples=me["remove_bad_samples"],
            bad_sample_cutoff=me["bad_sample_cutoff"],
            verbose=verbose,
        )
        _log(report, f"- {normed.n_probes:,} probes retained after filtering", verbose)
        beta = normed.beta()
        result.files["beta_values"] = export_probe_values(
            beta, os.path.join(out_dir, "beta_values.csv.gz")
        )

    with _stage(tissue, "region_calling"):
        call = call_regions(
            normed,
            formula=me["formula"],
            contrast=me["contrast"],
            probe_fdr=me["probe_fdr"],
            min_abs_meandiff=me["min_abs_meandiff"],
            max_stouffer=me["max_stouffer"],
            lambda_=me["lambda"],
            C=me["C"],
            min_cpgs=me["min_cpgs"],
            shrink=me["shrink"],
            chunk_size=me["chunk_size"],
            verbose=verbose,
        )
        result.summary["status"] = call.status
        result.summary["message"] = call.message
        result.summary.update(summarize_probe_results(call.probe_results, me["probe_fdr"]))
        result.tables["probe_results"] = call.probe_results
        result.files["probe_results"] = write_result_table(
            call.probe_view(), os.path.join(out_dir, "probe_results.tsv")
        )

    with _stage(tissue, "annotation"):
        annotated = annotate_regions(
            call.regions,
            transcripts,
            max_distance=an["max_tss_distance"],
            precedence=an["precedence"],
            promoter_upstream=an["promoter_upstream"],
            promoter_downstream=an["promoter_downstream"],
            downstream=an["immediate_downstream"],
        )
        result.tables["regions"] = annotated
        result.summary.update(summarize_regions(annotated))
        result.files["regions"] = write_result_table(
            annotated, os.path.join(out_dir, "regions.tsv"), index=False
        )
        by_gene = summarize_by_gene(annotated, call.probe_results)
        result.tables["genes"] = by_gene
        result.files["genes"] = write_result_table(by_gene, os.path.join(out_dir, "region_genes.tsv"))

    if collections and gene_annotation is not None:
        with _stage(tissue, "enrichment"):
            background = array_background(normed.probes, transcripts, an["max_tss_distance"])
            tables = methylation_enrichment(
                annotated,
                background,
                gene_annotation,
                collections,
                max_p=en["ora_max_p"],
                min_genes=en["ora_min_genes"],
                names=en["ora_collections"],
            )
            for name, table in tables.items():
                key = f"enrichment_{name}"
                result.tables[key] = table
                result.files[key] = write_result_table(
                    table, os.path.join(out_dir, f"{key}.tsv"), index=False
                )
                if report is not None:
                    report.log_dataframe(table, title=f"{tissue}: {name}")

    with _stage(tissue, "plots"):
        plot_density(beta, normed.samples, cond, title=f"{tissue}: beta values",
                     save_path=os.path.join(out_dir, "density.png"), dpi=dpi)
        plot_sample_qc(normed.m_values(), normed.samples, cond,
                       save_path=os.path.join(out_dir, "sample_qc.png"), dpi=dpi)
        plot_pvalue_qq(call.probe_results, save_path=os.path.join(out_dir, "pvalue_qq.png"), dpi=dpi)
        plot_mean_variance(call.probe_results, save_path=os.path.join(out_dir, "mean_variance.png"),
                           dpi=dpi)
        plot_volcano(call.probe_results, pval_col="pval", fdr_col="padj",
                     fdr_thresh=me["probe_fdr"], top_n=rep["top_labels"], label_col=None,
                     title=f"{tissue}: probes", save_path=os.path.join(out_dir, "volcano.png"),
                     dpi=dpi)
        names = ["density", "sample_qc", "pvalue_qq", "mean_variance", "volcano"]

        if not call.is_empty:
            values = region_probe_values(annotated, normed.probes, beta)
            top_region = annotated["region_id"].iloc[0]
            plot_region_violin(values, normed.samples, top_region, cond,
                               save_path=os.path.join(out_dir, "top_region_violin.png"), dpi=dpi)
            rows = call.probe_results.index[
                call.probe_results.index.isin(values["probe_id"].unique())
            ][: rep["heatmap_top_n"]]
            plot_heatmap(beta, normed.samples, cond, rows=rows, title=f"{tissue}: region probes",
                         save_path=os.path.join(out_dir, "heatmap.png"), dpi=dpi)
            names += ["top_region_violin", "heatmap"]

        for name in names:
            result.files[name] = os.path.join(out_dir, f"{name}.png")
            if report is not None:
                report.log_image(result.files[name], title=name.replace("_", " ").title())

    if call.is_empty:
        _log(report, f"- No regions: {call.message}", verbose)
    else:
        if report is not None:
            report.log_dataframe(summarize_features(annotated), title=f"{tissue}: feature classes")
        _log(report, f"- {len(annotated)} regions called", verbose)

    result.success = True
    return result
