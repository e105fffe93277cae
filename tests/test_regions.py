#!/usr/bin/env python
# coding: utf-8

"""
Test suite for probe statistics and DMR calling

Run with:
    pytest tests/test_regions.py -v --cov=sleep_omics.core.regions
"""

from unittest.mock import patch

import numpy as np
import pandas as pd
import pytest

from sleep_omics.core.methylation import normalize_tissue
from sleep_omics.core.regions import (
    REGION_COLUMNS,
    RegionCallResult,
    _add_group_means,
    _contrast_levels,
    _estimate_smyth_prior,
    _winsorize_array,
    call_regions,
    empty_regions,
    fit_probe_model,
    fit_probe_model_chunked,
    kernel_smooth,
    make_contrast,
    probes_in_region,
    region_probe_values,
    stouffer,
    summarize_probe_results,
    summarize_regions,
    validate_contrast,
    validate_design,
)

# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def simple_data():
    """Create simple test dataset."""
    np.random.seed(1500)
    n_cpg, n_samples = 100, 10

    M = pd.DataFrame(
        np.random.randn(n_cpg, n_samples),
        index=[f"cg{i:08d}" for i in range(n_cpg)],
        columns=[f"S{i}" for i in range(n_samples)],
    )
    groups = pd.Series(["NS"] * 5 + ["SD"] * 5, index=M.columns)
    design = pd.DataFrame({"Intercept": 1.0, "Group": [0.0] * 5 + [1.0] * 5}, index=M.columns)

    return M, groups, design


@pytest.fixture
def large_data():
    """Create large dataset for chunking tests."""
    np.random.seed(1500)
    n_cpg, n_samples = 3000, 12

    M = pd.DataFrame(
        np.random.randn(n_cpg, n_samples),
        index=[f"cg{i:08d}" for i in range(n_cpg)],
        columns=[f"S{i}" for i in range(n_samples)],
    )
    M.iloc[0:50, 6:] += 2.0
    design = pd.DataFrame({"Intercept": 1.0, "Group": [0.0] * 6 + [1.0] * 6}, index=M.columns)

    return M, design


@pytest.fixture
def normalized(mset):
    return normalize_tissue(mset, verbose=False)


@pytest.fixture
def null_normalized(null_mset):
    return normalize_tissue(null_mset, verbose=False)


# ============================================================================
# VALIDATION TESTS
# ============================================================================


class TestValidation:
    """Test design and contrast handling."""

    def test_validate_design_correct(self, simple_data):
        M, _, design = simple_data
        validate_design(design, M)

    def test_validate_design_not_dataframe(self, simple_data):
        M, _, design = simple_data
        with pytest.raises(TypeError, match="design must be a pandas DataFrame"):
            validate_design(design.to_numpy(), M)

    def test_validate_design_mismatched_index(self, simple_data):
        M, _, design = simple_data
        design = design.copy()
        design.index = [f"X{i}" for i in range(len(design))]
        with pytest.raises(ValueError, match="design index must exactly match"):
            validate_design(design, M)

    def test_validate_design_too_many_covariates(self):
        M = pd.DataFrame(np.random.randn(5, 3), columns=["A", "B", "C"])
        design = pd.DataFrame(np.eye(3), index=M.columns)
        with pytest.raises(ValueError, match="Too many covariates"):
            validate_design(design, M)

    def test_validate_contrast_wrong_length(self, simple_data):
        _, _, design = simple_data
        with pytest.raises(ValueError, match="Contrast length"):
            validate_contrast(np.array([0, 1, 0]), design)

    def test_validate_contrast_non_finite(self, simple_data):
        _, _, design = simple_data
        with pytest.raises(ValueError, match="non-finite"):
            validate_contrast(np.array([0, np.inf]), design)

    def test_make_contrast_single_coefficient(self):
        design = pd.DataFrame(np.eye(4), columns=["Intercept", "a", "b", "condition[T.SD]"])
        np.testing.assert_array_equal(make_contrast(design, "condition[T.SD]"), [0, 0, 0, 1])

    def test_make_contrast_expression(self):
        design = pd.DataFrame(np.eye(4), columns=["Intercept", "a", "b", "c"])
        np.testing.assert_allclose(make_contrast(design, "0.5*a + 0.5*b - c"), [0, 0.5, 0.5, -1])
        np.testing.assert_allclose(make_contrast(design, "-a"), [0, -1, 0, 0])

    def test_make_contrast_unknown(self):
        design = pd.DataFrame(np.eye(2), columns=["Intercept", "a"])
        with pytest.raises(ValueError, match="Unknown coefficient"):
            make_contrast(design, "a - z")

    def test_contrast_levels(self):
        assert _contrast_levels("condition[T.SD]") == ("condition", "SD")
        assert _contrast_levels("C(condition, Treatment('NS'))[T.SD]") == ("condition", "SD")
        assert _contrast_levels("Intercept") is None


# ============================================================================
# CORE STATISTICAL FUNCTION TESTS
# ============================================================================


class TestCoreFunctions:
    """Test variance moderation helpers."""

    def test_winsorize_array(self):
        x = np.arange(100, dtype=float)
        out = _winsorize_array(x, 0.05, 0.95)
        assert out.min() >= np.quantile(x, 0.05)
        assert out.max() <= np.quantile(x, 0.95)

    def test_winsorize_array_with_nan(self):
        x = np.array([1.0, np.nan, 3.0, 100.0])
        out = _winsorize_array(x)
        assert np.isnan(out[1])

    def test_estimate_smyth_prior_normal(self):
        np.random.seed(1500)
        s2 = np.random.chisquare(5, 5000) / 5 * np.exp(np.random.normal(0, 0.5, 5000))
        d0, s0sq = _estimate_smyth_prior(s2, df_resid=5)
        assert 0 < d0 <= 50
        assert s0sq > 0

    def test_estimate_smyth_prior_low_heterogeneity(self):
        s2 = np.full(1000, 1.0) + np.linspace(-1e-3, 1e-3, 1000)
        with pytest.warns(UserWarning, match="Variance heterogeneity is low"):
            d0, _ = _estimate_smyth_prior(s2, df_resid=5, max_d0=40)
        assert d0 == 40

    def test_estimate_smyth_prior_no_finite_variance(self):
        with pytest.raises(ValueError, match="No finite variances"):
            _estimate_smyth_prior(np.array([np.nan, np.inf]), df_resid=5)

    def test_add_group_means_missing_probes(self, simple_data):
        M, groups, _ = simple_data
        res = pd.DataFrame({"logFC": [0.1]}, index=["cg99999999"])
        with pytest.raises(ValueError, match="M values missing"):
            _add_group_means(res, M, groups)

    def test_stouffer(self):
        assert np.isclose(stouffer([0.5]), 0.5)
        assert stouffer([0.01, 0.01, 0.01]) < 0.01
        assert stouffer([0.0, 0.5]) < 1e-10


# ============================================================================
# PER-PROBE MODEL TESTS
# ============================================================================


class TestProbeModel:
    """Test per-probe moderated statistics."""

    def test_fit_probe_model_basic(self, simple_data):
        M, groups, design = simple_data
        res = fit_probe_model(M, design, np.array([0, 1]), groups=groups, compare=("SD", "NS"))

        for col in ("logFC", "se", "t", "pval", "padj", "s2_post", "d0", "meandiff"):
            assert col in res.columns
        assert len(res) == len(M)
        assert res["pval"].is_monotonic_increasing
        assert {"meanM_NS", "meanM_SD", "meanB_NS", "meanB_SD"} <= set(res.columns)

    def test_fit_probe_model_logfc_is_group_difference(self, simple_data):
        M, groups, design = simple_data
        res = fit_probe_model(M, design, "Group", shrink="none")
        expected = M.loc[:, groups == "SD"].mean(axis=1) - M.loc[:, groups == "NS"].mean(axis=1)
        np.testing.assert_allclose(res["logFC"], expected.loc[res.index])

    def test_fit_probe_model_shrinkage_fixed(self, simple_data):
        M, _, design = simple_data
        res = fit_probe_model(M, design, "Group", shrink=10.0)
        assert (res["d0"] == 10.0).all()
        assert not np.allclose(res["s2"], res["s2_post"])

    def test_fit_probe_model_auto_small_n(self):
        np.random.seed(1500)
        M = pd.DataFrame(np.random.randn(50, 6), columns=[f"S{i}" for i in range(6)])
        design = pd.DataFrame({"Intercept": 1.0, "Group": [0.0] * 3 + [1.0] * 3}, index=M.columns)
        with pytest.warns(UserWarning, match="Small sample size"):
            res = fit_probe_model(M, design, "Group")
        assert (res["d0"] == 0).all()

    def test_fit_probe_model_invalid_shrink(self, simple_data):
        M, _, design = simple_data
        with pytest.raises(ValueError, match="Unsupported shrink option"):
            fit_probe_model(M, design, "Group", shrink="bogus")

    def test_fit_probe_model_missing_values(self, simple_data):
        M, _, design = simple_data
        M = M.copy()
        M.iloc[0:3, 0] = np.nan
        with pytest.warns(UserWarning, match="missing values"):
            res = fit_probe_model(M, design, "Group", shrink="none")
        assert res.loc["cg00000000", "n_obs"] == 9

    def test_fit_probe_model_flat_probe(self, simple_data):
        M, _, design = simple_data
        M = M.copy()
        M.iloc[0] = 0.5
        with pytest.warns(UserWarning, match="near-zero variance"):
            res = fit_probe_model(M, design, "Group", shrink="none")
        assert "cg00000000" not in res.index

    def test_fit_probe_model_returns_residuals(self, simple_data):
        M, _, design = simple_data
        res, resid = fit_probe_model(M, design, "Group", shrink="none", return_residuals=True)
        assert resid.shape == M.shape
        np.testing.assert_allclose(resid.sum(axis=1), 0, atol=1e-10)


class TestChunkedProcessing:
    """Test chunked probe fitting."""

    def test_chunked_matches_whole(self, large_data):
        M, design = large_data
        whole = fit_probe_model(M, design, "Group", shrink="none")
        chunked = fit_probe_model_chunked(
            M, design, "Group", chunk_size=1000, shrink="none", verbose=False
        )

        assert len(chunked) == len(whole)
        np.testing.assert_allclose(chunked.loc[whole.index, "logFC"], whole["logFC"])
        np.testing.assert_allclose(chunked.loc[whole.index, "padj"], whole["padj"])

    def test_chunked_verbose(self, large_data, capsys):
        M, design = large_data
        fit_probe_model_chunked(M.iloc[:500], design, "Group", chunk_size=100, shrink=10.0)
        output = capsys.readouterr().out
        assert "Processing" in output
        assert "Completed" in output

    def test_chunk_failure(self, large_data):
        M, design = large_data
        with patch("sleep_omics.core.regions.fit_probe_model") as mock_fit:
            mock_fit.side_effect = [
                pd.DataFrame({"logFC": [1.0], "pval": [0.01]}, index=["cg00000000"]),
                ValueError("Chunk failed"),
                pd.DataFrame({"logFC": [2.0], "pval": [0.02]}, index=["cg00000001"]),
            ]
            with pytest.warns(UserWarning, match="Chunk 2 failed"):
                res = fit_probe_model_chunked(
                    M.iloc[:300], design, "Group", chunk_size=100, verbose=False
                )

        assert list(res.index) == ["cg00000000", "cg00000001"]

    def test_all_chunks_fail(self, large_data):
        M, design = large_data
        with patch("sleep_omics.core.regions.fit_probe_model", side_effect=ValueError("fail")):
            with pytest.warns(UserWarning):
                with pytest.raises(ValueError, match="All chunks failed"):
                    fit_probe_model_chunked(M.iloc[:200], design, "Group", chunk_size=100,
                                            verbose=False)


# ============================================================================
# SMOOTHING & REGION TESTS
# ============================================================================


class TestKernelSmoothing:
    """Test kernel smoothing of probe statistics."""

    def test_isolated_probes_unchanged(self):
        probes = pd.DataFrame(
            {"chrom": "chr1", "pos": [0, 1_000_000, 2_000_000], "t": [1.0, 2.0, 3.0]},
            index=["a", "b", "c"],
        )
        out = kernel_smooth(probes, lambda_=1000, C=2)
        x2 = np.array([1.0, 4.0, 9.0]) / (14 / 3)

        np.testing.assert_allclose(out["smoothed"], x2)
        assert {"smoothed_p", "smoothed_fdr"} <= set(out.columns)

    def test_neighbours_are_weighted(self):
        probes = pd.DataFrame({"chrom": "chr1", "pos": [100, 200], "t": [1.0, 1.0]}, index=["a", "b"])
        out = kernel_smooth(probes, lambda_=1000, C=2)
        w = np.exp(-(100**2) / (2 * 500**2))
        np.testing.assert_allclose(out["smoothed"], [1 + w, 1 + w])

    def test_chromosomes_do_not_mix(self):
        probes = pd.DataFrame(
            {"chrom": ["chr1", "chr2"], "pos": [100, 100], "t": [3.0, 0.0]}, index=["a", "b"]
        )
        out = kernel_smooth(probes)
        assert out.loc["b", "smoothed"] == 0.0

    def test_invalid_parameters(self):
        probes = pd.DataFrame({"chrom": "chr1", "pos": [1], "t": [1.0]})
        with pytest.raises(ValueError, match="must be positive"):
            kernel_smooth(probes, lambda_=0)


class TestRegionCalling:
    """Test DMR calling end to end."""

    def test_probes_in_region_half_open(self):
        regions = pd.DataFrame(
            {"region_id": ["chr1:100-200"], "chrom": ["chr1"], "start": [100], "end": [200]}
        )
        probes = pd.DataFrame(
            {"chrom": ["chr1", "chr1", "chr1", "chr2"], "pos": [100, 199, 200, 150]},
            index=["p1", "p2", "p3", "p4"],
        )
        members = probes_in_region(regions, probes)
        assert list(members["probe_id"]) == ["p1", "p2"]

    def test_probes_in_region_empty(self):
        members = probes_in_region(empty_regions(), pd.DataFrame({"chrom": [], "pos": []}))
        assert list(members.columns) == ["region_id", "probe_id"]
        assert len(members) == 0

    def test_calls_simulated_regions(self, normalized):
        result = call_regions(normalized)

        assert result.status == "ok"
        assert not result.is_empty
        assert list(result.regions.columns) == REGION_COLUMNS
        assert set(result.regions["region_id"]) == {"chr1:1000-1901", "chr1:11000-11901"}
        assert (result.regions["n_probes"] == 9).all()
        assert (result.regions["meandiff"] > 0.1).all()
        assert (result.regions["stouffer"] < 0.05).all()

    def test_region_members_are_filtered_probes(self, normalized):
        result = call_regions(normalized)
        members = probes_in_region(result.regions, normalized.probes)

        assert "cg00000005" not in set(members["probe_id"])
        assert "cg00000015" not in set(members["probe_id"])
        assert set(members["probe_id"]) <= set(normalized.meth.index)

    def test_probe_view(self, normalized):
        result = call_regions(normalized)
        view = result.probe_view(fdr=0.05)

        assert (view["padj"] < 0.05).all()
        assert view["pval"].is_monotonic_increasing
        assert len(result.probe_view()) == len(result.probe_results)

    def test_chunked_region_call(self, normalized):
        result = call_regions(normalized, chunk_size=100)
        assert result.status == "ok"

    def test_no_signal_gives_typed_empty_result(self, null_normalized):
        result = call_regions(null_normalized, probe_fdr=0.001)

        assert isinstance(result, RegionCallResult)
        assert result.is_empty
        assert len(result.regions) == 0
        assert list(result.regions.columns) == REGION_COLUMNS
        assert len(result.probe_results) == null_normalized.n_probes
        assert "No probes significant" in result.message

    def test_contrast_needs_two_groups(self, normalized):
        with pytest.raises(ValueError, match="two comparison groups"):
            call_regions(normalized, contrast="subject[T.P1]")


# ============================================================================
# RESULTS ANALYSIS TESTS
# ============================================================================


class TestResultsAnalysis:
    """Test summaries and long-form values."""

    def test_summarize_probe_results(self):
        res = pd.DataFrame(
            {
                "logFC": [1.2, 0.8, -0.9, 0.1],
                "padj": [0.001, 0.01, 0.02, 0.6],
                "d0": 4.0,
            }
        )
        summary = summarize_probe_results(res)

        assert summary["total_tested"] == 4
        assert summary["significant"] == 3
        assert summary["hypermethylated"] == 2
        assert summary["hypomethylated"] == 1
        assert summary["pct_significant"] == 75.0
        assert summary["mean_d0"] == 4.0

    def test_summarize_fitted_results(self, large_data):
        M, design = large_data
        res = fit_probe_model(M, design, "Group", shrink=10.0)
        summary = summarize_probe_results(res)

        assert summary["total_tested"] == len(M)
        assert summary["significant"] == summary["hypermethylated"] + summary["hypomethylated"]

    def test_summarize_regions(self, normalized):
        regions = call_regions(normalized).regions
        summary = summarize_regions(regions)
        assert summary["n_regions"] == 2
        assert summary["hyper"] == 2
        assert summary["total_probes"] == 18

    def test_summarize_empty_regions(self):
        summary = summarize_regions(empty_regions())
        assert summary == {
            "n_regions": 0, "hyper": 0, "hypo": 0, "median_width": 0.0, "total_probes": 0
        }

    def test_region_probe_values(self, normalized):
        regions = call_regions(normalized).regions
        values = region_probe_values(regions, normalized.probes, normalized.beta())

        assert list(values.columns) == ["region_id", "probe_id", "sample", "value"]
        assert len(values) == 18 * normalized.n_samples
        assert set(values["sample"]) == set(normalized.meth.columns)
