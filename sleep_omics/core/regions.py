#!/usr/bin/env python
# coding: utf-8

"""
Differentially Methylated Region Caller
Moderated per-probe statistics, kernel smoothing and region assembly
"""

import re
import time
import warnings
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Union

import bioframe as bf
import numpy as np
import pandas as pd
from scipy import linalg, optimize, stats
from scipy.special import digamma, polygamma
from statsmodels.stats.multitest import multipletests

from sleep_omics.core.expression import build_design
from sleep_omics.core.methylation import MethylationSet

REGION_COLUMNS = [
    "region_id",
    "chrom",
    "start",
    "end",
    "n_probes",
    "meandiff",
    "maxdiff",
    "stouffer",
    "min_smoothed_fdr",
    "probes",
]


# ============================================================================
# INPUT VALIDATION
# ============================================================================


def validate_design(design: pd.DataFrame, M: pd.DataFrame) -> None:
    """Validate design matrix against data."""
    if not isinstance(design, pd.DataFrame):
        raise TypeError("design must be a pandas DataFrame")

    if design.shape[1] >= design.shape[0]:
        raise ValueError(
            f"Too many covariates ({design.shape[1]}) for sample size ({design.shape[0]})"
        )

    if design.shape[0] != M.shape[1]:
        raise ValueError(f"design rows ({design.shape[0]}) != data columns ({M.shape[1]})")

    if not np.array_equal(design.index.values, M.columns.values):
        raise ValueError("design index must exactly match M columns")

    if design.isnull().any().any():
        raise ValueError("design contains missing values")

    if (design.dtypes == object).any():
        non_numeric = design.select_dtypes(include=[object]).columns.tolist()
        raise ValueError(f"design contains non-numeric columns: {non_numeric}")


def validate_contrast(contrast: np.ndarray, design: pd.DataFrame) -> None:
    """Validate contrast vector against design matrix."""
    contrast = np.asarray(contrast).reshape(-1)

    if contrast.shape[0] != design.shape[1]:
        raise ValueError(
            f"Contrast length ({contrast.shape[0]}) != design columns ({design.shape[1]})"
        )

    if not np.isfinite(contrast).all():
        raise ValueError("Contrast contains non-finite values")


_TERM = re.compile(r"^(?:(\d*\.?\d+)\s*\*\s*)?(.+)$")


def make_contrast(design: pd.DataFrame, expression: str) -> np.ndarray:
    """
    Contrast vector from a coefficient name or a linear combination.

    Terms are separated by `` + `` or `` - `` (spaces required, since
    coefficient names may contain dashes) and may carry a numeric
    factor, e.g. ``"condition[T.SD]"``, ``"groupB - groupA"`` or
    ``"0.5*a + 0.5*b - c"``.

    Raises
    ------
    ValueError
        If a term does not name a design column
    """
    expr = expression.strip()
    sign = 1.0
    if expr.startswith("-"):
        sign, expr = -1.0, expr[1:].strip()

    parts = re.split(r"\s+([+-])\s+", expr)
    contrast = np.zeros(design.shape[1])
    columns = list(design.columns)

    signs = [sign] + [1.0 if op == "+" else -1.0 for op in parts[1::2]]
    for s, term in zip(signs, parts[0::2]):
        match = _TERM.match(term.strip())
        factor = float(match.group(1)) if match.group(1) else 1.0
        name = match.group(2).strip()
        if name not in columns:
            raise ValueError(f"Unknown coefficient {name!r}. Available: {columns}")
        contrast[columns.index(name)] += s * factor

    validate_contrast(contrast, design)
    return contrast


def _contrast_levels(name: str) -> Optional[Tuple[str, str]]:
    """Factor column and tested level of a treatment-coded coefficient."""
    match = re.match(r"^(?:C\()?(\w+)\)?(?:,[^\]]*)?\[T\.(.+)\]$", name.strip())
    if match is None:
        return None
    return match.group(1), match.group(2)


# ============================================================================
# CORE STATISTICAL FUNCTIONS
# ============================================================================


def _winsorize_array(x: np.ndarray, lower_q: float = 0.05, upper_q: float = 0.95) -> np.ndarray:
    """Clip array values to specified quantiles to reduce outlier influence."""
    lo = np.nanquantile(x, lower_q)
    hi = np.nanquantile(x, upper_q)
    return np.clip(x, lo, hi)


def _estimate_smyth_prior(
    s2: np.ndarray, df_resid: float, robust: bool = True, max_d0: float = 50.0
) -> Tuple[float, float]:
    """
    Estimate empirical Bayes prior (d0, s0²) using Smyth's method.

    Parameters
    ----------
    s2 : np.ndarray
        Raw variance estimates
    df_resid : float
        Residual degrees of freedom
    robust : bool
        Use winsorization for target variance
    max_d0 : float
        Maximum prior df (prevents over-shrinkage in small samples)

    Returns
    -------
    Tuple[float, float]
        (d0, s0_squared)
    """
    s2 = np.asarray(s2, dtype=float)
    s2 = s2[np.isfinite(s2)]
    if s2.size == 0:
        raise ValueError("No finite variances provided")

    if (s2 <= 0).any():
        warnings.warn("Non-positive variances detected in Smyth prior estimation.")
        return float(min(10.0, df_resid)), float(np.median(s2[s2 > 0]))

    s2_for_target = _winsorize_array(s2, 0.05, 0.95) if robust else s2

    log_s2 = np.log(s2_for_target)
    m = np.mean(log_s2)
    v = np.var(log_s2, ddof=1)

    # Expected Var[log s²] under the prior is trigamma(df/2) + trigamma(d0/2)
    v_excess = v - polygamma(1, df_resid / 2.0)
    if v_excess <= 0:
        warnings.warn(
            f"Variance heterogeneity is low (Var[log(s²)] = {v:.4f}). "
            f"Using strong shrinkage (d0 = {max_d0:.1f})."
        )
        d0_est = float(max_d0)
    else:

        def f(d0):
            return polygamma(1, np.maximum(d0, 1e-8) / 2.0) - v_excess

        low, high = 1e-8, max_d0
        if f(low) * f(high) < 0:
            d0_est = float(optimize.brentq(f, low, high, maxiter=200))
        else:
            d0_est = float(max_d0)

    log_s0sq = m - digamma(df_resid / 2.0) + np.log(df_resid / 2.0)
    log_s0sq += digamma(d0_est / 2.0) - np.log(d0_est / 2.0)
    s0_sq = float(max(np.exp(log_s0sq), 1e-12))

    return d0_est, s0_sq


def _add_group_means(
    res: pd.DataFrame,
    M_df: pd.DataFrame,
    groups: pd.Series,
    beta_df: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """
    Add per-group average M-values and beta values to results.

    M_df (and beta_df) must contain all probes in res.index
    """
    if not res.index.isin(M_df.index).all():
        missing = set(res.index) - set(M_df.index)
        raise ValueError(f"M values missing for {len(missing)} result probes")

    groups = groups.reindex(M_df.columns).astype(str)
    M_subset = M_df.loc[res.index]

    meanM = M_subset.T.groupby(groups).mean().T
    for g in meanM.columns:
        res[f"meanM_{g}"] = meanM[g]

    if beta_df is None:
        beta = 2**M_subset / (1 + 2**M_subset)
    else:
        beta = beta_df.loc[res.index, M_df.columns]
    meanB = beta.T.groupby(groups).mean().T
    for g in meanB.columns:
        res[f"meanB_{g}"] = meanB[g]

    return res


def _shrink_variances(s2, df_resid, n, shrink, robust, max_d0, winsor_lower, winsor_upper):
    if shrink == "auto":
        if n < 10:
            shrink = "none"
            warnings.warn(f"Small sample size (n={n}). Using shrink='none'.")
        else:
            shrink = "smyth"

    if isinstance(shrink, (int, float)) and not isinstance(shrink, bool) and shrink > 0:
        d0 = float(min(shrink, max_d0))
        target = _winsorize_array(s2, winsor_lower, winsor_upper) if robust else s2
        s0sq = float(np.median(target))
    elif shrink == "median":
        target = _winsorize_array(s2, winsor_lower, winsor_upper) if robust else s2
        s0sq = float(np.median(target))
        d0 = float(max(2.0, min(max_d0, n / 2.0)))
    elif shrink == "smyth":
        d0, s0sq = _estimate_smyth_prior(s2, df_resid, robust=robust, max_d0=max_d0)
    elif shrink == "none":
        return 0.0, s2.copy(), float(df_resid)
    else:
        raise ValueError(
            f"Unsupported shrink option: {shrink}. "
            "Use 'auto', 'smyth', 'median', 'none', or a numeric value."
        )

    s2_post = (df_resid * s2 + d0 * s0sq) / (df_resid + d0)
    return d0, s2_post, float(df_resid + d0)


# ============================================================================
# PER-PROBE MODEL
# ============================================================================


def fit_probe_model(
    M: pd.DataFrame,
    design: pd.DataFrame,
    contrast: Union[str, np.ndarray],
    shrink: Union[str, float] = "auto",
    robust: bool = True,
    eps: float = 1e-8,
    min_count: int = 3,
    max_d0: float = 50.0,
    winsor_lower: float = 0.05,
    winsor_upper: float = 0.95,
    groups: Optional[pd.Series] = None,
    compare: Optional[Tuple[str, str]] = None,
    beta: Optional[pd.DataFrame] = None,
    return_residuals: bool = False,
) -> Union[pd.DataFrame, Tuple[pd.DataFrame, pd.DataFrame]]:
    """
    Fit per-probe linear models with empirical Bayes variance moderation.

    Parameters
    ----------
    M : pd.DataFrame
        probe x sample M values (may contain NaN)
    design : pd.DataFrame
        samples x coefficients design matrix
    contrast : str or np.ndarray
        Coefficient name / expression (see make_contrast) or vector
    shrink : str or float
        'auto', 'smyth', 'median', 'none', or a fixed prior df
    robust : bool
        Winsorize variances for the prior target
    eps : float
        Small constant for numerical stability
    min_count : int
        Minimum non-missing samples per probe
    max_d0 : float
        Maximum prior df
    winsor_lower, winsor_upper : float
        Winsorization quantiles
    groups : pd.Series, optional
        Group label per sample for mean M / beta columns
    compare : tuple of str, optional
        (tested level, reference level) of ``groups``; adds ``meandiff``
        as the difference in mean beta
    beta : pd.DataFrame, optional
        Beta values matching M (derived from M when omitted)
    return_residuals : bool
        If True, return (results, residuals)

    Returns
    -------
    pd.DataFrame or Tuple
        logFC, se, t, pval, padj, df_resid, df_total, s2, s2_post, d0,
        n_obs (+ group means, meandiff) per probe, sorted by pval

    Examples
    --------
    >>> design = build_design(samples, "~ subject + condition")
    >>> res = fit_probe_model(M, design, "condition[T.SD]",
    ...                       groups=samples["condition"], compare=("SD", "NS"))
    """
    validate_design(design, M)

    if isinstance(contrast, str):
        contrast = make_contrast(design, contrast)
    contrast = np.asarray(contrast, dtype=float).reshape(-1)
    validate_contrast(contrast, design)

    Y = M.to_numpy(dtype=float)
    G, n = Y.shape
    X = design.to_numpy(dtype=float)
    p = X.shape[1]
    df_resid = n - p

    if df_resid <= 0:
        raise ValueError(
            f"Residual degrees of freedom <= 0 (n={n}, p={p}). "
            "Reduce number of covariates or increase sample size."
        )

    beta_hat_all = np.full((p, G), np.nan)
    s2_all = np.full(G, np.nan)
    n_obs = np.zeros(G, dtype=int)
    residuals = np.full_like(Y, np.nan)

    complete = ~np.isnan(Y).any(axis=1)
    if complete.any():
        # Complete probes share one projection
        XtX_inv = linalg.pinv(X.T @ X)
        B = XtX_inv @ X.T @ Y[complete].T
        R = Y[complete] - (X @ B).T
        beta_hat_all[:, complete] = B
        residuals[complete] = R
        s2_all[complete] = (R**2).sum(axis=1) / df_resid
        n_obs[complete] = n

    incomplete = np.where(~complete)[0]
    if len(incomplete):
        warnings.warn(
            f"{len(incomplete)} probes contain missing values; fitting them individually."
        )
    for g in incomplete:
        mask = ~np.isnan(Y[g])
        n_present = int(mask.sum())
        df_g = n_present - p
        if n_present < min_count or df_g <= 0:
            continue

        X_obs = X[mask]
        b = linalg.pinv(X_obs.T @ X_obs) @ (X_obs.T @ Y[g, mask])
        resid = Y[g, mask] - X_obs @ b
        beta_hat_all[:, g] = b
        residuals[g, mask] = resid
        s2_all[g] = np.sum(resid**2) / df_g
        n_obs[g] = n_present

    flat = s2_all < 1e-12
    if flat.any():
        warnings.warn(f"{int(flat.sum())} probes have near-zero variance and were skipped")
        s2_all[flat] = np.nan

    valid = np.isfinite(s2_all)
    if valid.sum() == 0:
        raise ValueError("No probes could be fit successfully")

    beta_hat = beta_hat_all[:, valid]
    s2 = s2_all[valid]
    M_valid = M.iloc[valid]

    d0, s2_post, df_total = _shrink_variances(
        s2, df_resid, n, shrink, robust, max_d0, winsor_lower, winsor_upper
    )

    XtX_inv = linalg.pinv(X.T @ X)
    logFC = contrast @ beta_hat
    cc = contrast @ XtX_inv @ contrast
    se = np.sqrt(np.maximum(cc * s2, eps))
    se_post = np.sqrt(np.maximum(cc * s2_post, eps))
    t_stat = logFC / se_post

    pvals = 2.0 * stats.t.sf(np.abs(t_stat), df=df_total)
    _, padj, _, _ = multipletests(pvals, method="fdr_bh")

    res = pd.DataFrame(
        {
            "logFC": logFC,
            "se": se,
            "t": t_stat,
            "pval": pvals,
            "padj": padj,
            "df_resid": df_resid,
            "df_total": df_total,
            "s2": s2,
            "s2_post": s2_post,
            "d0": d0,
            "n_obs": n_obs[valid],
        },
        index=M_valid.index,
    )
    res = res.sort_values("pval", kind="mergesort")

    if groups is not None:
        res = _add_group_means(res, M, groups, beta)
        if compare is not None:
            tested, reference = compare
            res["meandiff"] = res[f"meanB_{tested}"] - res[f"meanB_{reference}"]

    if return_residuals:
        resid_df = pd.DataFrame(residuals[valid], index=M_valid.index, columns=M.columns)
        return res, resid_df

    return res


def fit_probe_model_chunked(
    M: pd.DataFrame,
    design: pd.DataFrame,
    contrast: Union[str, np.ndarray],
    chunk_size: int = 10000,
    groups: Optional[pd.Series] = None,
    compare: Optional[Tuple[str, str]] = None,
    beta: Optional[pd.DataFrame] = None,
    verbose: bool = True,
    **kwargs,
) -> pd.DataFrame:
    """
    Memory-efficient probe model for whole-array data.

    Probes are fitted in chunks; FDR is re-adjusted across every probe
    and group means are computed on the full matrix afterwards.

    Parameters
    ----------
    M : pd.DataFrame
        probe x sample M values
    design : pd.DataFrame
        Design matrix
    contrast : str or np.ndarray
        Tested contrast
    chunk_size : int
        Probes per chunk
    verbose : bool
        Print progress messages
    **kwargs
        Passed to fit_probe_model

    Returns
    -------
    pd.DataFrame
    """
    n_chunks = int(np.ceil(len(M) / chunk_size))
    results = []

    if verbose:
        print(f"Processing {len(M):,} probes in {n_chunks} chunks of {chunk_size:,}...")

    start_time = time.time()
    for i in range(n_chunks):
        M_chunk = M.iloc[i * chunk_size : min((i + 1) * chunk_size, len(M))]

        try:
            results.append(fit_probe_model(M_chunk, design, contrast, **kwargs))
        except ValueError as e:
            warnings.warn(f"Chunk {i+1} failed: {e}")
            continue

        if verbose and (i + 1) % 10 == 0:
            elapsed = time.time() - start_time
            rate = (i + 1) / elapsed
            print(
                f"  Chunk {i+1}/{n_chunks} | {elapsed:.1f}s elapsed | "
                f"ETA: {(n_chunks - i - 1) / rate:.1f}s"
            )

    if len(results) == 0:
        raise ValueError("All chunks failed to process")

    combined = pd.concat(results, axis=0)
    _, combined["padj"], _, _ = multipletests(combined["pval"], method="fdr_bh")
    combined = combined.sort_values("pval", kind="mergesort")

    if groups is not None:
        combined = _add_group_means(combined, M, groups, beta)
        if compare is not None:
            tested, reference = compare
            combined["meandiff"] = combined[f"meanB_{tested}"] - combined[f"meanB_{reference}"]

    if verbose:
        elapsed = time.time() - start_time
        print(f"✔ Completed in {elapsed:.1f}s ({len(combined):,} probes)")

    return combined


# ============================================================================
# KERNEL SMOOTHING
# ============================================================================


def _smooth_chromosome(pos: np.ndarray, x2: np.ndarray, lambda_: float, sigma: float):
    sm = x2.copy()
    sum_k = np.ones_like(x2)
    sum_k2 = np.ones_like(x2)

    # Positions are sorted: once no pair at offset k is within lambda,
    # none at a larger offset is either.
    for k in range(1, len(pos)):
        d = pos[k:] - pos[:-k]
        within = d <= lambda_
        if not within.any():
            break
        w = np.where(within, np.exp(-(d**2) / (2 * sigma**2)), 0.0)
        sm[:-k] += w * x2[k:]
        sm[k:] += w * x2[:-k]
        sum_k[:-k] += w
        sum_k[k:] += w
        sum_k2[:-k] += w**2
        sum_k2[k:] += w**2

    return sm, sum_k, sum_k2


def kernel_smooth(
    probes: pd.DataFrame,
    lambda_: float = 1000,
    C: float = 2,
    stat_col: str = "t",
) -> pd.DataFrame:
    """
    Gaussian kernel smoothing of squared probe statistics.

    Within each chromosome, squared statistics (scaled to mean one) are
    summed over neighbours within ``lambda_`` bp with a Gaussian kernel
    of bandwidth ``lambda_ / C``. Significance uses the Satterthwaite
    approximation: smoothed / a ~ chi2(b) with a = sum(K²)/sum(K) and
    b = sum(K)² / sum(K²).

    Parameters
    ----------
    probes : pd.DataFrame
        Indexed by probe id with chrom, pos and ``stat_col``
    lambda_ : float
        Smoothing window in bp
    C : float
        Scaling factor for the kernel bandwidth

    Returns
    -------
    pd.DataFrame
        Input sorted by chrom/pos with smoothed, smoothed_p and
        smoothed_fdr columns
    """
    if lambda_ <= 0 or C <= 0:
        raise ValueError("lambda_ and C must be positive")

    out = probes.sort_values(["chrom", "pos"], kind="mergesort").copy()
    sigma = lambda_ / C

    t2 = out[stat_col].to_numpy(dtype=float) ** 2
    x2 = t2 / np.mean(t2) if len(t2) and np.mean(t2) > 0 else t2

    sm = np.empty_like(x2)
    a = np.empty_like(x2)
    b = np.empty_like(x2)
    chroms = out["chrom"].astype(str).to_numpy()
    pos_all = out["pos"].to_numpy(dtype=float)

    for chrom in pd.unique(chroms):
        idx = np.where(chroms == chrom)[0]
        s, k1, k2 = _smooth_chromosome(pos_all[idx], x2[idx], lambda_, sigma)
        sm[idx] = s
        a[idx] = k2 / k1
        b[idx] = k1**2 / k2

    out["smoothed"] = sm
    out["smoothed_p"] = stats.chi2.sf(sm / a, b) if len(sm) else np.array([])
    if len(sm):
        out["smoothed_fdr"] = multipletests(out["smoothed_p"], method="fdr_bh")[1]
    else:
        out["smoothed_fdr"] = pd.Series(dtype=float)
    return out


# ============================================================================
# REGION ASSEMBLY
# ============================================================================


@dataclass
class RegionCallResult:
    """
    Outcome of a region call.

    ``status`` is 'ok' when at least one region survives, otherwise
    'empty'; ``regions`` always carries REGION_COLUMNS and
    ``probe_results`` is always populated.
    """

    status: str
    regions: pd.DataFrame
    probe_results: pd.DataFrame
    message: str = ""
    params: Dict = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.status == "empty"

    def probe_view(self, fdr: Optional[float] = None) -> pd.DataFrame:
        """Per-probe significance table, optionally limited to padj < fdr."""
        view = self.probe_results
        if fdr is not None:
            view = view[view["padj"] < fdr]
        return view.sort_values("pval", kind="mergesort")


def empty_regions() -> pd.DataFrame:
    return pd.DataFrame({c: pd.Series(dtype=object) for c in REGION_COLUMNS})


def probes_in_region(regions: pd.DataFrame, probes: pd.DataFrame) -> pd.DataFrame:
    """
    Map regions to the probes they contain.

    Parameters
    ----------
    regions : pd.DataFrame
        region_id, chrom, start, end (half-open)
    probes : pd.DataFrame
        Indexed by probe id with chrom, pos

    Returns
    -------
    pd.DataFrame
        region_id, probe_id ordered by region then position
    """
    if len(regions) == 0 or len(probes) == 0:
        return pd.DataFrame({"region_id": pd.Series(dtype=object), "probe_id": pd.Series(dtype=object)})

    sites = pd.DataFrame(
        {
            "chrom": probes["chrom"].astype(str).to_numpy(),
            "start": probes["pos"].astype(np.int64).to_numpy(),
            "probe_id": probes.index.astype(str),
        }
    )
    sites["end"] = sites["start"] + 1

    spans = pd.DataFrame(
        {
            "chrom": regions["chrom"].astype(str).to_numpy(),
            "start": regions["start"].astype(np.int64).to_numpy(),
            "end": regions["end"].astype(np.int64).to_numpy(),
            "region_id": regions["region_id"].astype(str).to_numpy(),
        }
    )

    hits = bf.overlap(spans, sites, how="inner", suffixes=("", "_probe"))
    hits = hits.sort_values(["region_id", "start_probe"], kind="mergesort")
    return pd.DataFrame(
        {
            "region_id": hits["region_id"].to_numpy(),
            "probe_id": hits["probe_id_probe"].to_numpy(),
        }
    )


def stouffer(pvals: np.ndarray) -> float:
    """Stouffer combination of one-sided p-values."""
    p = np.clip(np.asarray(pvals, dtype=float), 1e-300, 1.0)
    z = stats.norm.isf(p)
    return float(stats.norm.sf(z.sum() / np.sqrt(len(z))))


def _candidate_spans(sig: pd.DataFrame, lambda_: float) -> pd.DataFrame:
    """Runs of significant probes no more than lambda_ bp apart."""
    chrom = sig["chrom"].astype(str).to_numpy()
    pos = sig["pos"].to_numpy(dtype=np.int64)

    new_run = np.ones(len(sig), dtype=bool)
    new_run[1:] = (chrom[1:] != chrom[:-1]) | (np.diff(pos) > lambda_)
    run = np.cumsum(new_run)

    spans = (
        pd.DataFrame({"chrom": chrom, "pos": pos, "run": run})
        .groupby("run")
        .agg(chrom=("chrom", "first"), start=("pos", "min"), end=("pos", "max"), n=("pos", "size"))
    )
    spans["end"] = spans["end"] + 1
    spans["region_id"] = [f"{c}:{s}-{e}" for c, s, e in zip(spans["chrom"], spans["start"], spans["end"])]
    return spans.reset_index(drop=True)


def _region_stats(spans: pd.DataFrame, sig: pd.DataFrame, probe_fdr: float) -> pd.DataFrame:
    members = probes_in_region(spans, sig)
    stats_rows = []
    for region_id, ids in members.groupby("region_id", sort=False)["probe_id"]:
        block = sig.loc[ids.to_numpy()]
        diffs = block["meandiff"].to_numpy()
        stats_rows.append(
            {
                "region_id": region_id,
                "n_probes": len(block),
                "n_seeds": int((block["padj"] < probe_fdr).sum()),
                "meandiff": float(diffs.mean()),
                "maxdiff": float(diffs[np.argmax(np.abs(diffs))]),
                "stouffer": stouffer(block["padj"].to_numpy()),
                "min_smoothed_fdr": float(block["smoothed_fdr"].min()),
                "probes": ",".join(ids),
            }
        )
    return spans.merge(pd.DataFrame(stats_rows), on="region_id", how="inner")


def call_regions(
    mset: MethylationSet,
    formula: str = "~ subject + condition",
    contrast: str = "condition[T.SD]",
    probe_fdr: float = 0.05,
    min_abs_meandiff: float = 0.02,
    max_stouffer: float = 0.05,
    lambda_: float = 1000,
    C: float = 2,
    min_cpgs: int = 2,
    shrink: Union[str, float] = "auto",
    chunk_size: Optional[int] = None,
    reference: Optional[Dict[str, str]] = None,
    verbose: bool = False,
) -> RegionCallResult:
    """
    Call differentially methylated regions for one tissue.

    Probes with padj < probe_fdr seed the search. Kernel-smoothed
    significant probes are grouped into runs no more than ``lambda_``
    apart; runs with at least ``min_cpgs`` probes and one seed become
    candidates, kept when |meandiff| > min_abs_meandiff and the Stouffer
    combination of probe FDRs is below ``max_stouffer``.

    Parameters
    ----------
    mset : MethylationSet
        Normalized data with chrom/pos probe annotation and a sample
        table holding the formula variables
    formula : str
        Design formula
    contrast : str
        Tested coefficient or contrast expression
    probe_fdr : float
        Individual and smoothed probe FDR threshold
    min_abs_meandiff : float
        Minimum absolute mean beta difference of a region
    max_stouffer : float
        Maximum Stouffer p-value of a region
    lambda_, C : float
        Smoothing window and bandwidth factor
    min_cpgs : int
        Minimum probes per region
    shrink : str or float
        Variance moderation (see fit_probe_model)
    chunk_size : int, optional
        Fit probes in chunks of this size
    reference : dict, optional
        Baseline factor levels for the design
    verbose : bool
        Print progress messages

    Returns
    -------
    RegionCallResult
        status 'empty' with zero-row regions when nothing qualifies
    """
    params = dict(
        formula=formula,
        contrast=contrast,
        probe_fdr=probe_fdr,
        min_abs_meandiff=min_abs_meandiff,
        max_stouffer=max_stouffer,
        lambda_=lambda_,
        C=C,
        min_cpgs=min_cpgs,
    )

    design = build_design(mset.samples, formula, reference=reference)
    M = mset.m_values()

    groups, compare = None, None
    levels = _contrast_levels(contrast)
    if levels is not None and levels[0] in mset.samples.columns:
        factor, tested = levels
        groups = mset.samples[factor].astype(str)
        others = sorted(set(groups) - {tested})
        if reference and factor in reference:
            others = [reference[factor]]
        if len(others) == 1:
            compare = (tested, others[0])
    if compare is None:
        raise ValueError(
            f"Cannot derive two comparison groups from contrast {contrast!r}; "
            "use a treatment-coded two-level factor coefficient"
        )

    fit_kwargs = dict(groups=groups, compare=compare, beta=mset.beta(), shrink=shrink)
    if chunk_size:
        probe_res = fit_probe_model_chunked(
            M, design, contrast, chunk_size=chunk_size, verbose=verbose, **fit_kwargs
        )
    else:
        probe_res = fit_probe_model(M, design, contrast, **fit_kwargs)

    located = mset.probes.reindex(probe_res.index)[["chrom", "pos"]]
    probe_res = probe_res.join(located)
    probe_res = probe_res[probe_res["chrom"].notna() & probe_res["pos"].notna()].copy()
    probe_res["pos"] = probe_res["pos"].astype(np.int64)

    n_seeds = int((probe_res["padj"] < probe_fdr).sum())
    if verbose:
        print(f"✔ {n_seeds:,} of {len(probe_res):,} probes at FDR < {probe_fdr}")
    if n_seeds == 0:
        return RegionCallResult(
            "empty",
            empty_regions(),
            probe_res,
            f"No probes significant at FDR < {probe_fdr}",
            params,
        )

    smoothed = kernel_smooth(probe_res, lambda_=lambda_, C=C)
    probe_res = probe_res.join(smoothed[["smoothed", "smoothed_p", "smoothed_fdr"]])

    sig = smoothed[smoothed["smoothed_fdr"] < probe_fdr]
    if len(sig) == 0:
        return RegionCallResult(
            "empty", empty_regions(), probe_res, "No probes significant after smoothing", params
        )

    regions = _region_stats(_candidate_spans(sig, lambda_), sig, probe_fdr)
    regions = regions[
        (regions["n_probes"] >= min_cpgs)
        & (regions["n_seeds"] > 0)
        & (regions["meandiff"].abs() > min_abs_meandiff)
        & (regions["stouffer"] < max_stouffer)
    ]

    if len(regions) == 0:
        return RegionCallResult(
            "empty", empty_regions(), probe_res, "No candidate region passed the filters", params
        )

    regions = (
        regions.sort_values(["min_smoothed_fdr", "stouffer"], kind="mergesort")[REGION_COLUMNS]
        .reset_index(drop=True)
    )
    if verbose:
        print(f"✔ {len(regions)} regions called")

    return RegionCallResult("ok", regions, probe_res, f"{len(regions)} regions", params)


# ============================================================================
# RESULTS ANALYSIS
# ============================================================================


def summarize_probe_results(res: pd.DataFrame, padj_thresh: float = 0.05) -> Dict:
    """Summary statistics of per-probe results."""
    sig = res[res["padj"] < padj_thresh]

    return {
        "total_tested": len(res),
        "significant": len(sig),
        "pct_significant": len(sig) / len(res) * 100 if len(res) > 0 else 0,
        "hypermethylated": int((sig["logFC"] > 0).sum()),
        "hypomethylated": int((sig["logFC"] < 0).sum()),
        "mean_d0": float(res["d0"].mean()) if "d0" in res.columns else None,
    }


def summarize_regions(regions: pd.DataFrame) -> Dict:
    """Summary statistics of a region table."""
    return {
        "n_regions": len(regions),
        "hyper": int((regions["meandiff"] > 0).sum()) if len(regions) else 0,
        "hypo": int((regions["meandiff"] < 0).sum()) if len(regions) else 0,
        "median_width": float((regions["end"] - regions["start"]).median()) if len(regions) else 0.0,
        "total_probes": int(regions["n_probes"].sum()) if len(regions) else 0,
    }


def region_probe_values(
    regions: pd.DataFrame,
    probes: pd.DataFrame,
    values: pd.DataFrame,
) -> pd.DataFrame:
    """
    Long-form per-probe values of every region.

    Returns
    -------
    pd.DataFrame
        region_id, probe_id, sample, value
    """
    members = probes_in_region(regions, probes)
    members = members[members["probe_id"].isin(values.index)]
    if len(members) == 0:
        return pd.DataFrame(columns=["region_id", "probe_id", "sample", "value"])

    wide = values.loc[members["probe_id"]].reset_index(drop=True)
    wide.insert(0, "probe_id", members["probe_id"].to_numpy())
    wide.insert(0, "region_id", members["region_id"].to_numpy())
    return wide.melt(id_vars=["region_id", "probe_id"], var_name="sample", value_name="value")

