#!/usr/bin/env python
# coding: utf-8

"""
Region Annotation
Nearby transcription start sites and genomic feature classes for DMRs
"""

from typing import Iterable, Optional, Sequence

import bioframe as bf
import numpy as np
import pandas as pd

from sleep_omics.core.exceptions import UnknownFeatureError

FEATURE_PRECEDENCE = (
    "Promoter",
    "immediateDownstream",
    "fiveUTR",
    "threeUTR",
    "Exon",
    "Intron",
)
INTERGENIC = "Intergenic"
NEAR_TSS = "nearTSS"

_INTERVAL_COLS = ["chrom", "start", "end"]


# ============================================================================
# VALIDATION
# ============================================================================


def validate_precedence(precedence: Sequence[str]) -> tuple:
    """
    Check a feature precedence list before any region is processed.

    Raises
    ------
    UnknownFeatureError
        If a name is not a recognised feature category or repeats
    """
    precedence = tuple(precedence)
    unknown = [f for f in precedence if f not in FEATURE_PRECEDENCE]
    if unknown:
        raise UnknownFeatureError(
            f"Unknown genomic feature(s) {unknown}. "
            f"Valid names: {list(FEATURE_PRECEDENCE)}"
        )
    if len(set(precedence)) != len(precedence):
        raise UnknownFeatureError(f"Duplicate feature in precedence: {list(precedence)}")
    if not precedence:
        raise UnknownFeatureError("Feature precedence must name at least one feature")
    return precedence


def _as_intervals(df: pd.DataFrame) -> pd.DataFrame:
    out = df[_INTERVAL_COLS].copy()
    out["chrom"] = out["chrom"].astype(str)
    out["start"] = out["start"].astype(np.int64)
    out["end"] = out["end"].astype(np.int64)
    return out


# ============================================================================
# TRANSCRIPT MODELS
# ============================================================================


def transcript_tss(transcripts: pd.DataFrame) -> pd.DataFrame:
    """
    One-base TSS interval per transcript.

    The TSS is ``start`` on the plus strand and ``end - 1`` on the minus
    strand (0-based, half-open coordinates).
    """
    minus = transcripts["strand"].astype(str) == "-"
    tss = np.where(minus, transcripts["end"].to_numpy() - 1, transcripts["start"].to_numpy())

    return pd.DataFrame(
        {
            "chrom": transcripts["chrom"].astype(str).to_numpy(),
            "start": tss.astype(np.int64),
            "end": tss.astype(np.int64) + 1,
            "strand": transcripts["strand"].astype(str).to_numpy(),
            "gene_name": transcripts["gene_name"].astype(str).to_numpy(),
        }
    )


def tss_windows(transcripts: pd.DataFrame, max_distance: int = 5000) -> pd.DataFrame:
    """TSS intervals padded by ``max_distance`` on both sides."""
    tss = bf.expand(transcript_tss(transcripts), pad=max_distance)
    tss["start"] = tss["start"].clip(lower=0)
    return tss


def _parse_positions(value) -> list:
    if isinstance(value, str):
        return [int(v) for v in value.strip(",").split(",") if v != ""]
    if value is None or (np.isscalar(value) and pd.isna(value)):
        return []
    return [int(v) for v in value]


def _transcript_features(row, promoter_upstream, promoter_downstream, downstream):
    start, end = int(row["start"]), int(row["end"])
    plus = row["strand"] != "-"
    out = []

    if plus:
        out.append(("Promoter", start - promoter_upstream, start + promoter_downstream))
        out.append(("immediateDownstream", end, end + downstream))
    else:
        out.append(("Promoter", end - promoter_downstream, end + promoter_upstream))
        out.append(("immediateDownstream", start - downstream, start))

    ex_starts = _parse_positions(row.get("exon_starts"))
    ex_ends = _parse_positions(row.get("exon_ends"))
    if not ex_starts or len(ex_starts) != len(ex_ends):
        ex_starts, ex_ends = [start], [end]
    exons = sorted(zip(ex_starts, ex_ends))

    for s, e in exons:
        out.append(("Exon", s, e))
    for (_, e1), (s2, _) in zip(exons[:-1], exons[1:]):
        out.append(("Intron", e1, s2))

    cds_start, cds_end = row.get("cds_start"), row.get("cds_end")
    coding = (
        cds_start is not None
        and cds_end is not None
        and not pd.isna(cds_start)
        and not pd.isna(cds_end)
        and int(cds_end) > int(cds_start)
    )
    if coding:
        cds_start, cds_end = int(cds_start), int(cds_end)
        left = "fiveUTR" if plus else "threeUTR"
        right = "threeUTR" if plus else "fiveUTR"
        for s, e in exons:
            if s < cds_start:
                out.append((left, s, min(e, cds_start)))
            if e > cds_end:
                out.append((right, max(s, cds_end), e))

    return out


def build_feature_table(
    transcripts: pd.DataFrame,
    promoter_upstream: int = 2000,
    promoter_downstream: int = 100,
    downstream: int = 1000,
) -> pd.DataFrame:
    """
    Genomic feature intervals from refGene-style transcript records.

    Parameters
    ----------
    transcripts : pd.DataFrame
        chrom, start, end, strand, gene_name and optionally exon_starts,
        exon_ends (comma-separated or list) and cds_start, cds_end
    promoter_upstream : int
        Promoter extent upstream of the TSS
    promoter_downstream : int
        Promoter extent downstream of the TSS
    downstream : int
        Extent of the immediateDownstream region past the 3' end

    Returns
    -------
    pd.DataFrame
        chrom, start, end, feature, gene_name
    """
    records = []
    for _, row in transcripts.iterrows():
        for feature, s, e in _transcript_features(
            row, promoter_upstream, promoter_downstream, downstream
        ):
            records.append((str(row["chrom"]), max(int(s), 0), int(e), feature, row["gene_name"]))

    features = pd.DataFrame(records, columns=_INTERVAL_COLS + ["feature", "gene_name"])
    features = features[features["end"] > features["start"]]
    return features.reset_index(drop=True)


# ============================================================================
# REGION ANNOTATION
# ============================================================================


def nearest_tss_genes(
    regions: pd.DataFrame,
    transcripts: pd.DataFrame,
    max_distance: int = 5000,
) -> pd.Series:
    """
    Genes with a TSS within ``max_distance`` bp of each region.

    Returns
    -------
    pd.Series
        Sorted, deduplicated, comma-joined gene names per region
        ("" when none), indexed like ``regions``
    """
    if len(regions) == 0:
        return pd.Series([], index=regions.index, dtype=object, name="overlapping_genes")

    keyed = _as_intervals(regions).assign(_rid=np.arange(len(regions)))
    windows = tss_windows(transcripts, max_distance)[_INTERVAL_COLS + ["gene_name"]]

    hits = bf.overlap(keyed, windows, how="inner", suffixes=("", "_tss"))
    joined = hits.groupby("_rid")["gene_name_tss"].agg(lambda g: ",".join(sorted(set(g))))

    genes = joined.reindex(np.arange(len(regions))).fillna("")
    return pd.Series(genes.to_numpy(), index=regions.index, name="overlapping_genes")


def classify_features(
    regions: pd.DataFrame,
    features: pd.DataFrame,
    precedence: Sequence[str] = FEATURE_PRECEDENCE,
) -> pd.Series:
    """
    Assign exactly one feature class per region.

    When several features overlap a region the earliest one in
    ``precedence`` wins; regions without any overlap are Intergenic.
    """
    precedence = validate_precedence(precedence)
    if len(regions) == 0:
        return pd.Series([], index=regions.index, dtype=object, name="feature")

    rank = {f: i for i, f in enumerate(precedence)}
    feats = features[features["feature"].isin(rank)]

    keyed = _as_intervals(regions).assign(_rid=np.arange(len(regions)))
    hits = bf.overlap(
        keyed,
        _as_intervals(feats).assign(feature=feats["feature"].to_numpy()),
        how="inner",
        suffixes=("", "_feat"),
    )

    labels = pd.Series(INTERGENIC, index=np.arange(len(regions)), dtype=object)
    if len(hits):
        best = hits["feature_feat"].map(rank).groupby(hits["_rid"]).min()
        labels.loc[best.index] = [precedence[int(i)] for i in best]

    return pd.Series(labels.to_numpy(), index=regions.index, name="feature")


def annotate_regions(
    regions: pd.DataFrame,
    transcripts: pd.DataFrame,
    features: Optional[pd.DataFrame] = None,
    max_distance: int = 5000,
    precedence: Sequence[str] = FEATURE_PRECEDENCE,
    **feature_kwargs,
) -> pd.DataFrame:
    """
    Add ``overlapping_genes`` and ``feature`` columns to a region table.

    A region with any TSS inside the proximity window is labelled
    nearTSS regardless of its structural overlap.

    Parameters
    ----------
    regions : pd.DataFrame
        At least chrom, start, end
    transcripts : pd.DataFrame
        Transcript records (see build_feature_table)
    features : pd.DataFrame, optional
        Prebuilt feature table; built from ``transcripts`` when omitted
    max_distance : int
        TSS proximity window in bp
    precedence : sequence of str
        Feature precedence, earliest wins
    **feature_kwargs
        Passed to build_feature_table

    Returns
    -------
    pd.DataFrame
        Copy of ``regions`` with the two added columns
    """
    precedence = validate_precedence(precedence)

    out = regions.copy()
    if len(regions) == 0:
        out["overlapping_genes"] = pd.Series([], index=out.index, dtype=object)
        out["feature"] = pd.Series([], index=out.index, dtype=object)
        return out

    if features is None:
        features = build_feature_table(transcripts, **feature_kwargs)

    genes = nearest_tss_genes(regions, transcripts, max_distance)
    labels = classify_features(regions, features, precedence)

    out["overlapping_genes"] = genes
    out["feature"] = labels.where(genes == "", NEAR_TSS)
    return out


def summarize_features(annotated: pd.DataFrame) -> pd.DataFrame:
    """Counts and percentages of feature labels."""
    order = [NEAR_TSS] + list(FEATURE_PRECEDENCE) + [INTERGENIC]
    counts = annotated["feature"].value_counts().reindex(order, fill_value=0)
    counts = counts[counts > 0] if len(annotated) else counts.iloc[:0]

    total = int(counts.sum())
    return pd.DataFrame(
        {
            "n_regions": counts.astype(int),
            "pct": counts / total * 100 if total else counts.astype(float),
        }
    ).rename_axis("feature")


def genes_in(annotated: pd.DataFrame) -> Iterable[str]:
    """Iterate the gene names listed in ``overlapping_genes``."""
    if "overlapping_genes" not in annotated:
        return
    for joined in annotated["overlapping_genes"].dropna():
        for name in str(joined).split(","):
            if name.strip():
                yield name.strip()
