#!/usr/bin/env python
# coding: utf-8

"""
Test suite for input loading and validation

Run with:
    pytest tests/test_data.py -v --cov=sleep_omics.core.data
"""

import numpy as np
import pandas as pd
import pytest

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
    validate_count_matrix,
)
from sleep_omics.core.exceptions import SampleMismatchError

# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def counts():
    return pd.DataFrame(
        {"S1": [10, 0, 5], "S2": [12, 1, 7], "S3": [8, 0, 3], "S4": [9, 2, 6]},
        index=["G1", "G2", "G3"],
    )


@pytest.fixture
def samples():
    return pd.DataFrame(
        {
            "subject": ["P1", "P1", "P2", "P2"],
            "tissue": ["muscle", "adipose", "muscle", "adipose"],
            "condition": ["NS", "SD", "SD", "NS"],
        },
        index=["S1", "S2", "S3", "S4"],
    )


# ============================================================================
# COUNT MATRIX & SAMPLE SHEET TESTS
# ============================================================================


class TestCountMatrix:
    """Test count matrix loading and validation."""

    def test_load_from_tsv(self, counts, tmp_path):
        path = tmp_path / "counts.tsv"
        counts.astype(float).to_csv(path, sep="\t")

        loaded = load_count_matrix(str(path))

        assert (loaded.dtypes == np.int64).all()
        pd.testing.assert_frame_equal(loaded, counts.astype(np.int64))

    def test_load_from_csv(self, counts, tmp_path):
        path = tmp_path / "counts.csv"
        counts.to_csv(path)
        assert load_count_matrix(str(path)).shape == (3, 4)

    def test_not_a_dataframe(self, counts):
        with pytest.raises(TypeError, match="pandas DataFrame"):
            validate_count_matrix(counts.to_numpy())

    def test_duplicated_genes(self, counts):
        counts.index = ["G1", "G1", "G3"]
        with pytest.raises(ValueError, match="Duplicated gene identifiers"):
            load_count_matrix(counts)

    def test_missing_values(self, counts):
        counts = counts.astype(float)
        counts.iloc[0, 0] = np.nan
        with pytest.raises(ValueError, match="missing or non-finite"):
            load_count_matrix(counts)

    def test_negative_counts(self, counts):
        counts.iloc[0, 0] = -1
        with pytest.raises(ValueError, match="negative values"):
            load_count_matrix(counts)

    def test_fractional_counts(self, counts):
        counts = counts.astype(float)
        counts.iloc[0, 0] = 1.5
        with pytest.raises(ValueError, match="must be integers"):
            load_count_matrix(counts)


class TestSampleTable:
    """Test sample sheet loading and alignment."""

    def test_load_sample_table(self, samples, tmp_path):
        path = tmp_path / "samples.csv"
        samples.rename_axis("sample_id").to_csv(path)

        loaded = load_sample_table(str(path))
        assert list(loaded.index) == ["S1", "S2", "S3", "S4"]
        assert loaded.loc["S3", "condition"] == "SD"

    def test_missing_required_column(self, samples):
        with pytest.raises(ValueError, match="missing required columns"):
            load_sample_table(samples.drop(columns="tissue"))

    def test_duplicated_ids(self, samples):
        samples.index = ["S1", "S1", "S3", "S4"]
        with pytest.raises(ValueError, match="duplicated sample identifiers"):
            load_sample_table(samples)

    def test_align_reorders_by_identifier(self, counts, samples):
        aligned = align_samples(counts[["S4", "S2", "S3", "S1"]], samples)
        assert list(aligned.index) == ["S4", "S2", "S3", "S1"]
        assert aligned.loc["S4", "condition"] == "NS"

    def test_align_mismatch(self, counts, samples):
        samples = samples.rename(index={"S4": "S9"})
        with pytest.raises(SampleMismatchError, match="does not match") as err:
            align_samples(counts, samples)

        assert err.value.missing == ["S4"]
        assert err.value.extra == ["S9"]

    def test_split_by_tissue(self, counts, samples):
        parts = split_by_tissue(counts, samples)

        assert list(parts) == ["muscle", "adipose"]
        muscle_counts, muscle_samples = parts["muscle"]
        assert list(muscle_counts.columns) == ["S1", "S3"]
        assert (muscle_samples["tissue"] == "muscle").all()

    def test_split_by_tissue_selected(self, counts, samples):
        parts = split_by_tissue(counts, samples, tissues=["adipose", "liver"])
        assert list(parts) == ["adipose"]


# ============================================================================
# ANNOTATION RESOURCE TESTS
# ============================================================================


class TestAnnotationResources:
    """Test gene annotation, transcripts and gene sets."""

    def test_load_gene_annotation_collapses_duplicates(self):
        raw = pd.DataFrame(
            {
                "ensembl_gene_id": ["ENSG2", "ENSG1", "ENSG1"],
                "gene_biotype": ["lncRNA", "protein_coding", "protein_coding"],
                "external_gene_name": ["B", "A", "A"],
                "entrezgene_id": [200.0, 102.0, 101.0],
            }
        )
        ann = load_gene_annotation(raw)

        assert list(ann.index) == ["ENSG1", "ENSG2"]
        assert list(ann.columns) == ["biotype", "gene_name", "entrez_id"]
        assert ann.loc["ENSG1", "entrez_id"] == "101"
        assert ann.loc["ENSG2", "entrez_id"] == "200"

    def test_load_gene_annotation_missing_entrez(self, tmp_path):
        path = tmp_path / "genes.tsv"
        path.write_text("gene_id\tbiotype\tgene_name\nENSG1\tprotein_coding\tA\n")

        ann = load_gene_annotation(str(path))
        assert pd.isna(ann.loc["ENSG1", "entrez_id"])

    def test_load_gene_annotation_requires_id(self):
        with pytest.raises(ValueError, match="requires a gene_id column"):
            load_gene_annotation(pd.DataFrame({"gene_name": ["A"]}))

    def test_load_transcripts_ucsc_columns(self):
        raw = pd.DataFrame(
            {
                "name": ["NM_1"],
                "chrom": ["chr1"],
                "strand": ["+"],
                "txStart": [100],
                "txEnd": [500],
                "name2": ["GENEA"],
            }
        )
        tx = load_transcripts(raw)
        assert tx.loc[0, "gene_name"] == "GENEA"
        assert tx.loc[0, "tx_id"] == "NM_1"
        assert tx["start"].dtype == np.int64

    def test_load_transcripts_missing_columns(self):
        with pytest.raises(ValueError, match="Transcript table missing columns"):
            load_transcripts(pd.DataFrame({"chrom": ["chr1"], "start": [1], "end": [2]}))

    def test_read_gmt(self, tmp_path):
        path = tmp_path / "KEGG.gmt"
        path.write_text("SET_A\tdesc\t1\t2\t3\nSHORT\tdesc\nSET_B\thttp://x\t4\t\t5\n")

        sets = read_gmt(str(path))
        assert sets == {"SET_A": frozenset({"1", "2", "3"}), "SET_B": frozenset({"4", "5"})}

    def test_load_gene_set_collections(self, tmp_path):
        (tmp_path / "GO_BP.gmt").write_text("T1\td\t1\t2\n")
        (tmp_path / "KEGG.gmt").write_text("K1\td\t3\n")
        (tmp_path / "notes.txt").write_text("ignored\n")

        collections = load_gene_set_collections(str(tmp_path))
        assert list(collections) == ["GO_BP", "KEGG"]
        assert collections["KEGG"]["K1"] == frozenset({"3"})

    def test_load_gene_set_collections_empty(self, tmp_path):
        with pytest.raises(ValueError, match="No .gmt files"):
            load_gene_set_collections(str(tmp_path))


# ============================================================================
# METHYLATION ARRAY INPUT TESTS
# ============================================================================


class TestArrayInputs:
    """Test intensity, probe annotation and exclusion list loading."""

    @pytest.fixture
    def readings(self):
        idx = ["cg00000001", "cg00000002"]
        cols = ["M0", "M1"]
        meth = pd.DataFrame([[100.0, 200.0], [300.0, 400.0]], index=idx, columns=cols)
        unmeth = pd.DataFrame([[400.0, 300.0], [200.0, 100.0]], index=idx, columns=cols)
        detp = pd.DataFrame(1e-5, index=idx[::-1], columns=cols[::-1])
        return meth, unmeth, detp

    def test_load_array_readings_aligns_detection(self, readings):
        meth, unmeth, detp = load_array_readings(*readings)
        assert detp.index.equals(meth.index)
        assert detp.columns.equals(meth.columns)

    def test_load_array_readings_from_files(self, readings, tmp_path):
        paths = []
        for name, df in zip(("meth", "unmeth", "detp"), readings):
            path = tmp_path / f"{name}.csv"
            df.to_csv(path)
            paths.append(str(path))

        meth, _, _ = load_array_readings(*paths)
        assert meth.loc["cg00000002", "M1"] == 400.0

    def test_channels_not_aligned(self, readings):
        meth, unmeth, detp = readings
        with pytest.raises(ValueError, match="not aligned"):
            load_array_readings(meth, unmeth.iloc[:1], detp)

    def test_detection_coverage(self, readings):
        meth, unmeth, detp = readings
        with pytest.raises(ValueError, match="do not cover"):
            load_array_readings(meth, unmeth, detp.iloc[:1])

    def test_negative_intensity(self, readings):
        meth, unmeth, detp = readings
        meth = meth.copy()
        meth.iloc[0, 0] = -1
        with pytest.raises(ValueError, match="non-negative"):
            load_array_readings(meth, unmeth, detp)

    def test_load_probe_annotation(self):
        raw = pd.DataFrame(
            {"Name": ["cg01", "cg02"], "chr": ["chr1", "chr2"], "MAPINFO": [100.0, 200.0],
             "Type": ["I", "II"]}
        )
        probes = load_probe_annotation(raw)

        assert list(probes.index) == ["cg01", "cg02"]
        assert probes.loc["cg02", "chrom"] == "chr2"
        assert probes["pos"].dtype == np.int64

    def test_load_probe_annotation_missing_position(self):
        with pytest.raises(ValueError, match="Probe annotation missing columns"):
            load_probe_annotation(pd.DataFrame({"probe_id": ["cg01"], "chrom": ["chr1"]}))

    def test_exclusion_list_sources(self, tmp_path):
        assert load_probe_exclusion_list(None) == []
        assert load_probe_exclusion_list(("cg01", "cg02")) == ["cg01", "cg02"]

        path = tmp_path / "cross_reactive.txt"
        path.write_text("TargetID\ncg01\nch.1.2\n")
        assert load_probe_exclusion_list(str(path)) == ["cg01", "ch.1.2"]

    def test_exclusion_list_without_header(self, tmp_path):
        path = tmp_path / "probes.csv"
        path.write_text("cg01\ncg02\n")
        assert load_probe_exclusion_list(str(path)) == ["cg01", "cg02"]
