#!/usr/bin/env python
# coding: utf-8

"""
Pathway Enrichment
Ranked gene-set tests for expression and over-representation for DMR genes
"""

import warnings
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

import bioframe as bf
import gseapy as gp
import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from sleep_omics.core.annotation import genes_in, tss_windows

DIRECTIONS = ("greater", "less")
TOP_COLUMNS = ["stat.mean", "p.val", "q.val", "set.size", "n.hits"]
ORA_COLUMNS = ["term", "n_set", "n_hits", "p.value", "FDR", "genes"]
ORA_COLLECTIONS = ("GO_BP", "GO_MF", "GO_CC", "KEGG")

GeneSets = Mapping[str, FrozenSet[str]]


# ============================================================================
# RANKED GENE-SET TESTS (EXPRESSION)
# ============================================================================


@dataclass
class EnrichmentResult:
    """Directional gene-set test results."""

    greater: pd.DataFrame
    less: pd.DataFrame
    stats: pd.DataFrame

    def direction(self, name: str) -> pd.DataFrame:
        if name not in DIRECTIONS:
            raise ValueError(f"direction must be one of {DIRECTIONS}, got {name!r}")
        return getattr(self, name)


def rank_genes(results: pd.DataFrame, measure: str = "logFC") -> pd.Series:
    """
    Per-gene scores keyed by Entrez id.

    Parameters
    ----------
    results : pd.DataFrame
        Differential expression table with logFC, PValue, entrez_id
    measure : str
        'logFC' or 'signed_p' (-log10 p-value signed by logFC)

    Returns
    -------
    pd.Series
        Scores indexed by Entrez id; genes without an id are dropped and
        the first (most significant) row wins for duplicated ids
    """
    if measure == "logFC":
        scores = results["logFC"].astype(float)
    elif measure == "signed_p":
        pvals = results["PValue"].astype(float).clip(lower=np.nextafter(0, 1))
        scores = -np.log10(pvals) * np.sign(results["logFC"])
    else:
        raise ValueError(f"Unknown measure: {measure}. Use 'logFC' or 'signed_p'")

    ids = results["entrez_id"]
    keep = ids.notna().to_numpy() & np.isfinite(scores.to_numpy())
    ranked = pd.Series(scores.to_numpy()[keep], index=ids[keep].astype(str), name=measure)

    return ranked[~ranked.index.duplicated(keep="first")]


def _size_filtered(scores: pd.Series, gene_sets: GeneSets, min_size: int, max_size: int):
    for name, members in gene_sets.items():
        mask = scores.index.isin(list(members))
        n = int(mask.sum())
        if min_size <= n <= max_size:
            yield name, mask, n


def _empty_direction() -> pd.DataFrame:
    table = pd.DataFrame({col: pd.Series(dtype=float) for col in TOP_COLUMNS})
    table.index.name = "set"
    return table


def gene_set_enrichment(
    scores: pd.Series,
    gene_sets: GeneSets,
    min_size: int = 10,
    max_size: int = 500,
    n_permutations: int = 1000,
    seed: Optional[int] = None,
) -> EnrichmentResult:
    """
    Preranked GSEA of every gene set against all scored genes (gseapy).

    Sets with a positive enrichment score are reported under 'greater',
    negative ones under 'less'. stat.mean is the normalized enrichment
    score, p.val the nominal permutation p-value and q.val the FDR, which
    gseapy estimates separately for each sign. n.hits counts only the
    members scored in the table's own direction.

    Parameters
    ----------
    scores : pd.Series
        Gene scores indexed by Entrez id (see rank_genes)
    gene_sets : dict
        {set name: frozenset of Entrez ids}
    min_size, max_size : int
        Bounds on the number of scored members
    n_permutations : int
        Gene-set permutations for the null distribution
    seed : int
        Random seed for the permutations

    Returns
    -------
    EnrichmentResult
    """
    if seed is None:
        raise ValueError("Permutation p-values require an explicit seed")

    scores = scores.dropna().astype(float)
    tested = {}
    for name, mask, n in _size_filtered(scores, gene_sets, min_size, max_size):
        members = scores[mask]
        tested[name] = {
            "set.size": n,
            "hits.greater": int((members > 0).sum()),
            "hits.less": int((members < 0).sum()),
            "genes": sorted(members.index),
        }

    if not tested:
        return EnrichmentResult(
            greater=_empty_direction(),
            less=_empty_direction(),
            stats=pd.DataFrame(columns=["stat.mean", "ES", "set.size"], dtype=float),
        )

    pre = gp.prerank(
        rnk=scores.sort_values(ascending=False),
        gene_sets={name: info["genes"] for name, info in tested.items()},
        min_size=min_size,
        max_size=max_size,
        permutation_num=n_permutations,
        seed=seed,
        threads=1,
        outdir=None,
        no_plot=True,
        verbose=False,
    )
    res = pre.res2d
    if "Term" in res.columns:
        res = res.set_index("Term")

    table = pd.DataFrame(
        {
            "stat.mean": res["NES"].astype(float),
            "ES": res["ES"].astype(float),
            "p.val": res["NOM p-val"].astype(float),
            "q.val": res["FDR q-val"].astype(float),
        }
    )
    table.index = table.index.astype(str)
    info = pd.DataFrame.from_dict(tested, orient="index").drop(columns="genes")
    table = table.join(info, how="left")
    table.index.name = "set"

    def _direction(name, mask):
        out = table.loc[mask].copy()
        out["n.hits"] = out[f"hits.{name}"]
        return out.sort_values("p.val", kind="mergesort")[TOP_COLUMNS]

    return EnrichmentResult(
        greater=_direction("greater", table["ES"] > 0),
        less=_direction("less", table["ES"] < 0),
        stats=table[["stat.mean", "ES", "set.size"]].copy(),
    )


def _signif(values: pd.Series, digits: int = 2) -> pd.Series:
    def one(x):
        if pd.isna(x) or x == 0:
            return x
        return round(x, digits - 1 - int(np.floor(np.log10(abs(x)))))

    return values.astype(float).map(one)


def top_gene_sets(
    result: EnrichmentResult,
    direction: str,
    q_cutoff: float = 0.05,
    max_name: int = 50,
) -> pd.DataFrame:
    """
    Report-ready table of significant sets in one direction.

    Always a DataFrame, including when exactly one set passes.

    Parameters
    ----------
    result : EnrichmentResult
    direction : str
        'greater' or 'less'
    q_cutoff : float
        Keep sets with q.val < q_cutoff
    max_name : int
        Truncate set names to this many characters

    Returns
    -------
    pd.DataFrame
    """
    table = result.direction(direction)
    top = table.loc[table["q.val"] < q_cutoff, TOP_COLUMNS].copy()

    top["stat.mean"] = top["stat.mean"].astype(float).round(2)
    top["p.val"] = _signif(top["p.val"])
    top["q.val"] = _signif(top["q.val"])
    top.index = [str(name)[:max_name] for name in top.index]
    top.index.name = "set"
    return top


def run_expression_enrichment(
    results: pd.DataFrame,
    gene_sets: GeneSets,
    measures: Iterable[str] = ("logFC", "signed_p"),
    min_size: int = 10,
    max_size: int = 500,
    n_permutations: int = 1000,
    seed: Optional[int] = None,
) -> Dict[str, EnrichmentResult]:
    """Gene-set tests for each ranking measure."""
    return {
        measure: gene_set_enrichment(
            rank_genes(results, measure),
            gene_sets,
            min_size=min_size,
            max_size=max_size,
            n_permutations=n_permutations,
            seed=seed,
        )
        for measure in measures
    }


# ============================================================================
# OVER-REPRESENTATION (METHYLATION)
# ============================================================================


def region_genes(annotated: pd.DataFrame) -> List[str]:
    """Unique gene symbols near the annotated regions."""
    return sorted(set(genes_in(annotated)))


def array_background(
    probes: pd.DataFrame,
    transcripts: pd.DataFrame,
    max_distance: int = 5000,
) -> List[str]:
    """
    Genes with at least one array probe within ``max_distance`` of a TSS.

    Parameters
    ----------
    probes : pd.DataFrame
        Probe annotation with chrom and pos
    transcripts : pd.DataFrame
        Transcript records

    Returns
    -------
    List[str]
        Sorted gene symbols
    """
    if len(probes) == 0:
        return []

    sites = pd.DataFrame(
        {
            "chrom": probes["chrom"].astype(str).to_numpy(),
            "start": probes["pos"].astype(np.int64).to_numpy(),
        }
    )
    sites["end"] = sites["start"] + 1

    windows = tss_windows(transcripts, max_distance)[["chrom", "start", "end", "gene_name"]]
    hits = bf.overlap(sites, windows, how="inner", suffixes=("", "_tss"))
    return sorted(hits["gene_name_tss"].astype(str).unique())


def symbols_to_entrez(symbols: Iterable[str], annotation: pd.DataFrame) -> List[str]:
    """
    Map gene symbols to Entrez ids.

    Symbols without an Entrez id are dropped silently.
    """
    lookup = (
        annotation.dropna(subset=["gene_name", "entrez_id"])
        .drop_duplicates(subset="gene_name", keep="first")
        .set_index("gene_name")["entrez_id"]
        .astype(str)
    )
    return sorted({lookup[s] for s in symbols if s in lookup.index})


def overrepresentation_test(
    genes: Iterable[str],
    universe: Iterable[str],
    gene_sets: GeneSets,
    max_p: float = 0.01,
    min_genes: int = 3,
) -> pd.DataFrame:
    """
    One-sided Fisher exact test of each set against a restricted universe.

    Parameters
    ----------
    genes : iterable of str
        Query genes (Entrez ids); genes outside the universe are ignored
    universe : iterable of str
        Background genes
    gene_sets : dict
        {term: frozenset of Entrez ids}
    max_p : float
        Keep terms with p.value <= max_p
    min_genes : int
        Keep terms with at least this many query genes

    Returns
    -------
    pd.DataFrame
        term, n_set, n_hits, p.value, FDR, genes sorted by p.value
    """
    universe = set(universe)
    query = set(genes) & universe
    N, n = len(universe), len(query)

    rows = []
    for term, members in gene_sets.items():
        in_universe = set(members) & universe
        if not in_universe:
            continue
        hits = query & in_universe
        k, K = len(hits), len(in_universe)
        table = [[k, n - k], [K - k, N - K - n + k]]
        _, p = stats.fisher_exact(table, alternative="greater")
        rows.append((term, K, k, p, ",".join(sorted(hits))))

    res = pd.DataFrame(rows, columns=["term", "n_set", "n_hits", "p.value", "genes"])
    if len(res):
        res["FDR"] = multipletests(res["p.value"], method="fdr_bh")[1]
    else:
        res["FDR"] = pd.Series(dtype=float)

    res = res[(res["p.value"] <= max_p) & (res["n_hits"] >= min_genes)]
    return res.sort_values("p.value", kind="mergesort")[ORA_COLUMNS].reset_index(drop=True)


def methylation_enrichment(
    annotated: pd.DataFrame,
    background: Iterable[str],
    annotation: pd.DataFrame,
    collections: Mapping[str, GeneSets],
    max_p: float = 0.01,
    min_genes: int = 3,
    names: Iterable[str] = ORA_COLLECTIONS,
) -> Dict[str, pd.DataFrame]:
    """
    Over-representation of DMR genes in each ontology collection.

    Parameters
    ----------
    annotated : pd.DataFrame
        Output of annotate_regions
    background : iterable of str
        Gene symbols with array coverage (see array_background)
    annotation : pd.DataFrame
        Gene annotation with gene_name and entrez_id
    collections : dict
        {collection name: gene sets}
    max_p, min_genes
        Filters applied to each collection separately

    Returns
    -------
    Dict[str, pd.DataFrame]
        One table per name in ``names``; empty tables for empty input
    """
    empty = pd.DataFrame(columns=ORA_COLUMNS)
    genes = symbols_to_entrez(region_genes(annotated), annotation)
    universe = symbols_to_entrez(background, annotation)

    out = {}
    for name in names:
        if not genes or name not in collections:
            if genes and name not in collections:
                warnings.warn(f"Gene set collection {name!r} not provided; reporting no terms")
            out[name] = empty.copy()
            continue
        out[name] = overrepresentation_test(
            genes, universe, collections[name], max_p=max_p, min_genes=min_genes
        )
    return out
