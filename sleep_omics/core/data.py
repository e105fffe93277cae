#!/usr/bin/env python
# coding: utf-8

"""
Input loading and validation
Count matrices, sample sheets, array readings and annotation resources
"""

import os
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from sleep_omics.core.exceptions import SampleMismatchError

PathOrFrame = Union[str, os.PathLike, pd.DataFrame]

GENE_ANNOTATION_COLUMNS = ["gene_id", "biotype", "gene_name", "entrez_id"]

# biomaRt attribute names -> internal names
_BIOMART_RENAMES = {
    "ensembl_gene_id": "gene_id",
    "gene_biotype": "biotype",
    "external_gene_name": "gene_name",
    "hgnc_symbol": "gene_name",
    "entrezgene_id": "entrez_id",
    "entrezgene": "entrez_id",
}

SNP_COLUMNS = ["Probe_rs", "Probe_maf", "CpG_rs", "CpG_maf", "SBE_rs", "SBE_maf"]


# ============================================================================
# HELPERS
# ============================================================================


def _guess_sep(path: str) -> str:
    lowered = str(path).lower()
    for ext in (".gz", ".bz2", ".zip"):
        if lowered.endswith(ext):
            lowered = lowered[: -len(ext)]
    return "\t" if lowered.endswith((".tsv", ".txt", ".tab")) else ","


def _as_id_strings(values: pd.Series) -> pd.Series:
    """Render identifiers as strings; numeric ids lose any '.0' suffix."""
    if pd.api.types.is_float_dtype(values):
        values = values.astype("Int64")
    out = values.astype(object).where(values.notna(), None)
    return out.map(lambda v: None if v is None else str(v))


def _read_frame(source: PathOrFrame, **kwargs) -> pd.DataFrame:
    if isinstance(source, pd.DataFrame):
        return source.copy()
    return pd.read_csv(source, sep=kwargs.pop("sep", None) or _guess_sep(source), **kwargs)


# ============================================================================
# COUNT MATRIX & SAMPLE SHEET
# ============================================================================


def validate_count_matrix(counts: pd.DataFrame) -> None:
    """Validate a gene x sample count matrix."""
    if not isinstance(counts, pd.DataFrame):
        raise TypeError("counts must be a pandas DataFrame")

    if counts.index.has_duplicates:
        dups = counts.index[counts.index.duplicated()].unique().tolist()
        raise ValueError(f"Duplicated gene identifiers: {dups[:10]}")

    values = counts.to_numpy(dtype=float)
    if not np.isfinite(values).all():
        raise ValueError("counts contain missing or non-finite values")

    if (values < 0).any():
        raise ValueError("counts contain negative values")

    if not np.allclose(values, np.round(values)):
        raise ValueError("counts must be integers")


def load_count_matrix(path: PathOrFrame, sep: Optional[str] = None) -> pd.DataFrame:
    """
    Load a gene x sample count matrix.

    Parameters
    ----------
    path : str or pd.DataFrame
        Delimited file with gene identifiers in the first column
    sep : str, optional
        Delimiter (guessed from the extension when omitted)

    Returns
    -------
    pd.DataFrame
        Integer counts, genes x samples
    """
    if isinstance(path, pd.DataFrame):
        counts = path.copy()
    else:
        counts = pd.read_csv(path, sep=sep or _guess_sep(path), index_col=0)

    counts.index = counts.index.astype(str)
    counts.columns = counts.columns.astype(str)
    validate_count_matrix(counts)

    return counts.round().astype(np.int64)


def validate_sample_table(
    samples: pd.DataFrame, required: Iterable[str] = ("subject", "tissue", "condition")
) -> None:
    """Check that the sample sheet carries the required phenotype columns."""
    if not isinstance(samples, pd.DataFrame):
        raise TypeError("samples must be a pandas DataFrame")

    missing = [c for c in required if c not in samples.columns]
    if missing:
        raise ValueError(f"Sample table missing required columns: {missing}")

    if samples.index.has_duplicates:
        raise ValueError("Sample table contains duplicated sample identifiers")


def load_sample_table(
    path: PathOrFrame,
    id_col: str = "sample_id",
    required: Iterable[str] = ("subject", "tissue", "condition"),
) -> pd.DataFrame:
    """
    Load the comma-delimited sample / phenotype sheet.

    Parameters
    ----------
    path : str or pd.DataFrame
        Sample sheet
    id_col : str
        Column holding the sample identifiers (becomes the index)
    required : iterable of str
        Columns that must be present

    Returns
    -------
    pd.DataFrame
        Sample table indexed by sample identifier
    """
    samples = _read_frame(path, sep=",")
    if id_col in samples.columns:
        samples = samples.set_index(id_col)
    samples.index = samples.index.astype(str)

    validate_sample_table(samples, required)
    return samples


def align_samples(matrix: pd.DataFrame, samples: pd.DataFrame) -> pd.DataFrame:
    """
    Re-align the sample table to the matrix columns by identifier.

    Parameters
    ----------
    matrix : pd.DataFrame
        Feature x sample matrix
    samples : pd.DataFrame
        Sample table indexed by sample identifier

    Returns
    -------
    pd.DataFrame
        Sample table in matrix column order

    Raises
    ------
    SampleMismatchError
        If the two identifier sets differ
    """
    columns = set(map(str, matrix.columns))
    rows = set(map(str, samples.index))

    if columns != rows:
        raise SampleMismatchError(missing=columns - rows, extra=rows - columns)

    aligned = samples.copy()
    aligned.index = aligned.index.astype(str)
    return aligned.loc[[str(c) for c in matrix.columns]]


def split_by_tissue(
    matrix: pd.DataFrame,
    samples: pd.DataFrame,
    tissue_col: str = "tissue",
    tissues: Optional[Iterable[str]] = None,
) -> Dict[str, Tuple[pd.DataFrame, pd.DataFrame]]:
    """
    Split a matrix and its sample table by tissue.

    Returns
    -------
    Dict[str, Tuple[pd.DataFrame, pd.DataFrame]]
        tissue -> (matrix subset, sample subset)
    """
    samples = align_samples(matrix, samples)
    if tissues is None:
        tissues = list(pd.unique(samples[tissue_col]))

    out = {}
    for tissue in tissues:
        idx = samples.index[samples[tissue_col] == tissue]
        if len(idx) == 0:
            continue
        out[tissue] = (matrix.loc[:, idx], samples.loc[idx])
    return out


# ============================================================================
# ANNOTATION RESOURCES
# ============================================================================


def load_gene_annotation(source: PathOrFrame) -> pd.DataFrame:
    """
    Load the gene annotation table and collapse one-to-many mappings.

    When an identifier maps to several rows (e.g. one Ensembl gene with
    several Entrez ids), rows are sorted on the identifier and then on
    the remaining columns, and the first row is kept.

    Parameters
    ----------
    source : str or pd.DataFrame
        Table with gene_id, biotype, gene_name, entrez_id (biomaRt
        attribute names are accepted)

    Returns
    -------
    pd.DataFrame
        One row per gene_id, indexed by gene_id
    """
    if isinstance(source, pd.DataFrame):
        ann = source.copy()
    else:
        ann = pd.read_csv(source, sep=_guess_sep(source), dtype=str)

    if ann.index.name in ("gene_id", "ensembl_gene_id"):
        ann = ann.reset_index()
    ann = ann.rename(columns=_BIOMART_RENAMES)

    if "gene_id" not in ann.columns:
        raise ValueError("Gene annotation requires a gene_id column")

    for col in GENE_ANNOTATION_COLUMNS:
        if col not in ann.columns:
            ann[col] = None
        ann[col] = _as_id_strings(ann[col])

    ann = ann[GENE_ANNOTATION_COLUMNS]
    ann = ann.mask(ann == "")
    ann = ann.sort_values(GENE_ANNOTATION_COLUMNS, na_position="last", kind="mergesort")
    ann = ann.drop_duplicates(subset="gene_id", keep="first")

    return ann.set_index("gene_id")


def load_transcripts(source: PathOrFrame) -> pd.DataFrame:
    """
    Load a refGene-style transcript table.

    Required columns: chrom, start, end, strand, gene_name.
    Optional: tx_id, cds_start, cds_end, exon_starts, exon_ends
    (comma-separated lists as in UCSC tables).
    """
    tx = _read_frame(source)
    tx = tx.rename(
        columns={
            "txStart": "start",
            "txEnd": "end",
            "name2": "gene_name",
            "name": "tx_id",
            "cdsStart": "cds_start",
            "cdsEnd": "cds_end",
            "exonStarts": "exon_starts",
            "exonEnds": "exon_ends",
        }
    )
    missing = [c for c in ("chrom", "start", "end", "strand", "gene_name") if c not in tx]
    if missing:
        raise ValueError(f"Transcript table missing columns: {missing}")

    tx["start"] = tx["start"].astype(np.int64)
    tx["end"] = tx["end"].astype(np.int64)
    return tx.reset_index(drop=True)


def read_gmt(path: str) -> Dict[str, FrozenSet[str]]:
    """
    Read a GMT gene-set file.

    Each line: set name, description, then member identifiers,
    tab separated.
    """
    gene_sets = {}
    with open(path, "r") as f:
        for line in f:
            fields = line.rstrip("\n").split("\t")
            if len(fields) < 3:
                continue
            members = frozenset(g for g in fields[2:] if g)
            if members:
                gene_sets[fields[0]] = members
    return gene_sets


def load_gene_set_collections(directory: str) -> Dict[str, Dict[str, FrozenSet[str]]]:
    """
    Load every ``*.gmt`` file of a directory.

    Returns
    -------
    Dict[str, Dict[str, FrozenSet[str]]]
        file stem (e.g. 'GO_BP', 'KEGG') -> gene-set collection
    """
    collections = {}
    for name in sorted(os.listdir(directory)):
        if name.endswith(".gmt"):
            collections[name[: -len(".gmt")]] = read_gmt(os.path.join(directory, name))

    if not collections:
        raise ValueError(f"No .gmt files found in {directory}")
    return collections


# ============================================================================
# METHYLATION ARRAY INPUTS
# ============================================================================


def load_array_readings(
    meth_path: PathOrFrame,
    unmeth_path: PathOrFrame,
    detp_path: PathOrFrame,
) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """
    Load methylated / unmethylated intensities and detection p-values.

    Returns
    -------
    Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]
        (meth, unmeth, detection_p), each probe x sample
    """
    frames = []
    for source in (meth_path, unmeth_path, detp_path):
        if isinstance(source, pd.DataFrame):
            df = source.copy()
        else:
            df = pd.read_csv(source, sep=_guess_sep(source), index_col=0)
        df.index = df.index.astype(str)
        df.columns = df.columns.astype(str)
        frames.append(df)

    meth, unmeth, detp = frames
    if not (meth.index.equals(unmeth.index) and meth.columns.equals(unmeth.columns)):
        raise ValueError("Methylated and unmethylated matrices are not aligned")

    detp = detp.reindex(index=meth.index, columns=meth.columns)
    if detp.isna().any().any():
        raise ValueError("Detection p-values do not cover every probe and sample")

    if (meth.to_numpy() < 0).any() or (unmeth.to_numpy() < 0).any():
        raise ValueError("Intensities must be non-negative")

    return meth, unmeth, detp


def load_probe_annotation(source: PathOrFrame) -> pd.DataFrame:
    """
    Load the array probe annotation (chrom, pos, type and SNP columns).
    """
    probes = _read_frame(source)
    for id_col in ("probe_id", "Name", "IlmnID"):
        if id_col in probes.columns:
            probes = probes.set_index(id_col)
            break
    probes.index = probes.index.astype(str)
    probes = probes.rename(columns={"chr": "chrom", "CHR": "chrom", "MAPINFO": "pos"})

    missing = [c for c in ("chrom", "pos") if c not in probes.columns]
    if missing:
        raise ValueError(f"Probe annotation missing columns: {missing}")

    probes["pos"] = probes["pos"].astype(np.int64)
    return probes


def load_probe_exclusion_list(source: Union[str, Iterable[str], None]) -> List[str]:
    """
    Load a list of non-specific (cross-reactive) probes.

    Parameters
    ----------
    source : str or iterable of str or None
        Local path or http(s) URL of a one-column table, or the ids
        themselves

    Returns
    -------
    List[str]
        Probe identifiers (empty when source is None)
    """
    if source is None:
        return []
    if not isinstance(source, (str, os.PathLike)):
        return [str(p) for p in source]

    table = pd.read_csv(source, sep=_guess_sep(source), header=None, dtype=str)
    ids = table.iloc[:, 0].dropna().str.strip()
    # header row
    probe_like = ids.str.startswith(("cg", "ch", "rs"))
    if len(ids) > 1 and not probe_like.iloc[0] and probe_like.iloc[1:].all():
        ids = ids.iloc[1:]
    return ids.tolist()
