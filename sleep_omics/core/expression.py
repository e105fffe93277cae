#!/usr/bin/env python
# coding: utf-8

"""
Differential Expression Engine
Negative-binomial GLMs with empirical Bayes dispersion for paired RNA-seq
"""

import warnings
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm
from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference
from pydeseq2.preprocessing import deseq2_norm
from scipy import stats
from statsmodels.stats.multitest import multipletests
from statsmodels.tools.sm_exceptions import ConvergenceWarning, PerfectSeparationWarning

RESULT_COLUMNS = ["logFC", "logCPM", "LR", "PValue", "FDR", "gene_name", "entrez_id"]

_MIN_DISP = 1e-8


# ============================================================================
# EXPRESSION SCALES & FILTERING
# ============================================================================


def cpm(
    counts: pd.DataFrame,
    lib_size: Optional[pd.Series] = None,
    log: bool = False,
    prior_count: float = 2.0,
) -> pd.DataFrame:
    """
    Counts per million.

    Parameters
    ----------
    counts : pd.DataFrame
        genes x samples counts
    lib_size : pd.Series, optional
        Library sizes (column sums by default)
    log : bool
        Return log2-CPM with a library-size scaled prior count
    prior_count : float
        Average prior count added before taking logs

    Returns
    -------
    pd.DataFrame
    """
    counts = counts.astype(float)
    eff = counts.sum(axis=0) if lib_size is None else lib_size

    if not log:
        return counts.div(eff, axis=1) * 1e6

    pc = prior_count * eff / eff.mean()
    return np.log2(counts.add(pc, axis=1).div(eff + 2 * pc, axis=1) * 1e6)


def ave_log_cpm(counts: pd.DataFrame, prior_count: float = 2.0) -> pd.Series:
    """Average abundance of each gene on the log2-CPM scale."""
    cpms = cpm(counts, log=True, prior_count=prior_count)
    return np.log2((2 ** cpms).mean(axis=1)).rename("logCPM")


def filter_protein_coding(
    counts: pd.DataFrame,
    annotation: pd.DataFrame,
    biotype: str = "protein_coding",
) -> pd.DataFrame:
    """
    Restrict counts to genes of one biotype.

    Genes missing from the annotation are dropped.
    """
    keep_ids = annotation.index[annotation["biotype"] == biotype]
    return counts.loc[counts.index.isin(keep_ids)]


def filter_by_cpm(
    counts: pd.DataFrame,
    min_cpm: float = 1.0,
    min_samples: int = 5,
) -> Tuple[pd.DataFrame, int, int]:
    """
    Keep genes expressed above ``min_cpm`` in at least ``min_samples`` samples.

    CPM is computed on the full matrix before any gene is removed, so
    raising either threshold can only shrink the retained set.

    Returns
    -------
    Tuple[pd.DataFrame, int, int]
        (filtered_counts, n_filtered, n_retained)
    """
    if min_samples < 0:
        raise ValueError("min_samples must be non-negative")

    expressed = (cpm(counts) > min_cpm).sum(axis=1)
    keep = (expressed >= min_samples).to_numpy()

    return counts.loc[keep], int((~keep).sum()), int(keep.sum())


# ============================================================================
# NORMALIZATION
# ============================================================================


def calc_size_factors(counts: pd.DataFrame) -> pd.Series:
    """
    Median-of-ratios library size factors (pydeseq2).

    Parameters
    ----------
    counts : pd.DataFrame
        genes x samples counts

    Returns
    -------
    pd.Series
        One factor per sample
    """
    if (counts.sum(axis=0) <= 0).any():
        raise ValueError("Every sample needs a positive library size")
    if not (counts > 0).all(axis=1).any():
        raise ValueError("Size factors need at least one gene without zero counts")

    _, factors = deseq2_norm(counts.T)
    return pd.Series(np.asarray(factors, dtype=float), index=counts.columns, name="size_factors")


# ============================================================================
# NEGATIVE BINOMIAL GLM
# ============================================================================


@dataclass
class NBGLMFit:
    """Per-gene NB GLM fits."""

    coefficients: np.ndarray  # genes x p, natural log scale
    fitted: np.ndarray  # genes x samples
    deviance: np.ndarray  # genes
    loglik: np.ndarray  # genes
    converged: np.ndarray  # genes


def fit_nb_glm(
    counts: Union[pd.DataFrame, np.ndarray],
    design: Union[pd.DataFrame, np.ndarray],
    offset: Union[pd.Series, np.ndarray],
    dispersion: Union[float, np.ndarray, pd.Series],
) -> NBGLMFit:
    """
    Fit a log-link negative binomial GLM to every gene.

    Each gene is an independent statsmodels GLM with the NegativeBinomial
    family at its own fixed dispersion. Genes whose fit fails keep NaN
    rows.

    Parameters
    ----------
    counts : array-like
        genes x samples counts
    design : array-like
        samples x coefficients design matrix
    offset : array-like
        log size factor per sample
    dispersion : float or array-like
        NB dispersion, scalar or one per gene

    Returns
    -------
    NBGLMFit
    """
    y = np.asarray(counts, dtype=float)
    X = np.asarray(design, dtype=float)
    off = np.asarray(offset, dtype=float)
    G, n = y.shape
    phi = np.broadcast_to(
        np.clip(np.asarray(dispersion, dtype=float), _MIN_DISP, None), (G,)
    )

    coefficients = np.full((G, X.shape[1]), np.nan)
    fitted = np.full((G, n), np.nan)
    deviance = np.full(G, np.nan)
    loglik = np.full(G, np.nan)
    converged = np.zeros(G, dtype=bool)

    failed = 0
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        warnings.simplefilter("ignore", PerfectSeparationWarning)
        for i in range(G):
            family = sm.families.NegativeBinomial(alpha=float(phi[i]))
            try:
                fit = sm.GLM(y[i], X, family=family, offset=off).fit()
            except (ValueError, np.linalg.LinAlgError):
                failed += 1
                continue
            coefficients[i] = fit.params
            fitted[i] = fit.fittedvalues
            deviance[i] = fit.deviance
            loglik[i] = fit.llf
            converged[i] = fit.converged

    if failed:
        warnings.warn(f"NB GLM could not be fitted for {failed} genes")

    return NBGLMFit(coefficients, fitted, deviance, loglik, converged)


# ============================================================================
# DISPERSION ESTIMATION
# ============================================================================


@dataclass
class DispersionEstimates:
    """Three-stage dispersion estimates."""

    common: float
    trended: pd.Series
    tagwise: pd.Series
    genewise: pd.Series
    ave_log_cpm: pd.Series


def _as_factors(samples: pd.DataFrame) -> pd.DataFrame:
    data = samples.copy()
    for col in data.columns:
        if not pd.api.types.is_float_dtype(data[col]):
            data[col] = data[col].astype(str)
    return data


def estimate_dispersions(
    counts: pd.DataFrame,
    samples: pd.DataFrame,
    formula: str = "~ subject + condition",
    fit_type: str = "parametric",
    n_cpus: int = 1,
) -> DispersionEstimates:
    """
    Common, trended and per-gene dispersion with pydeseq2.

    Cox-Reid gene-wise estimates are pooled into a common value (their
    median), an abundance trend is fitted through them and each gene is
    shrunk toward its trended value by maximum a posteriori estimation.
    Genes whose gene-wise value lies far above the trend keep it.

    Parameters
    ----------
    counts : pd.DataFrame
        Filtered genes x samples counts
    samples : pd.DataFrame
        Sample table holding the formula variables
    formula : str
        Design formula
    fit_type : str
        'parametric' or 'mean' dispersion trend
    n_cpus : int
        Worker processes for pydeseq2

    Returns
    -------
    DispersionEstimates
    """
    dds = DeseqDataSet(
        counts=counts.T.round().astype(int),
        metadata=_as_factors(samples.loc[counts.columns]),
        design=formula,
        fit_type=fit_type,
        inference=DefaultInference(n_cpus=n_cpus),
        quiet=True,
    )
    dds.fit_size_factors()
    dds.fit_genewise_dispersions()
    dds.fit_dispersion_trend()
    dds.fit_dispersion_prior()
    dds.fit_MAP_dispersions()

    def _series(key, name):
        return pd.Series(np.asarray(dds.var[key], dtype=float), index=counts.index, name=name)

    genewise = _series("genewise_dispersions", "genewise_dispersion")
    trended = _series("fitted_dispersions", "trended_dispersion")
    tagwise = _series("dispersions", "tagwise_dispersion")

    return DispersionEstimates(
        common=float(genewise.median()),
        trended=trended,
        tagwise=tagwise,
        genewise=genewise,
        ave_log_cpm=ave_log_cpm(counts),
    )


# ============================================================================
# DESIGN MATRICES
# ============================================================================


def build_design(
    samples: pd.DataFrame,
    formula: str = "~ subject + condition",
    reference: Optional[Dict[str, str]] = None,
) -> pd.DataFrame:
    """
    Build a design matrix from the sample table.

    Non-float columns are treated as factors. ``reference`` fixes the
    baseline level of a factor (e.g. ``{'condition': 'NS'}``).

    Returns
    -------
    pd.DataFrame
        samples x coefficients, indexed like ``samples``
    """
    data = _as_factors(samples)

    for col, level in (reference or {}).items():
        levels = sorted(data[col].unique())
        if level not in levels:
            raise ValueError(f"Reference level {level!r} not found in column {col!r}")
        levels.remove(level)
        data[col] = pd.Categorical(data[col], categories=[level] + levels)

    design = patsy.dmatrix(formula, data, return_type="dataframe")
    design.index = samples.index

    if np.linalg.matrix_rank(design.to_numpy()) < design.shape[1]:
        raise ValueError(f"Design matrix for {formula!r} is not of full rank")

    return design


def drop_coefficient(design: pd.DataFrame, coef: str) -> pd.DataFrame:
    """Null design: the full design without the tested coefficient."""
    if coef not in design.columns:
        raise ValueError(
            f"Coefficient {coef!r} not in design. Available: {list(design.columns)}"
        )
    return design.drop(columns=coef)


# ============================================================================
# MAIN DIFFERENTIAL ANALYSIS
# ============================================================================


def annotate_results(
    results: pd.DataFrame,
    annotation: Optional[pd.DataFrame],
    columns: Tuple[str, ...] = ("gene_name", "entrez_id"),
) -> pd.DataFrame:
    """
    Left-join annotation columns onto a result table by gene identifier.

    Identifiers absent from the annotation get nulls.
    """
    out = results.drop(columns=[c for c in columns if c in results.columns])
    if annotation is None:
        for col in columns:
            out[col] = np.nan
        return out

    ann = annotation.reindex(columns=list(columns))
    return out.join(ann, how="left")


def fit_differential_expression(
    counts: pd.DataFrame,
    samples: pd.DataFrame,
    formula: str = "~ subject + condition",
    coef: str = "condition[T.SD]",
    gene_annotation: Optional[pd.DataFrame] = None,
    max_fdr: float = 1.0,
    fit_type: str = "parametric",
    reference: Optional[Dict[str, str]] = None,
    return_fit: bool = False,
    verbose: bool = False,
) -> Union[pd.DataFrame, Tuple[pd.DataFrame, DispersionEstimates]]:
    """
    Likelihood-ratio test of one coefficient in a paired NB GLM.

    Parameters
    ----------
    counts : pd.DataFrame
        Filtered genes x samples counts for one tissue
    samples : pd.DataFrame
        Sample table aligned to the count columns
    formula : str
        Model formula with blocking and tested covariates
    coef : str
        Design column tested (dropped in the null model)
    gene_annotation : pd.DataFrame, optional
        Table indexed by gene id with gene_name / entrez_id
    max_fdr : float
        Keep genes with FDR <= max_fdr (1.0 keeps every gene)
    fit_type : str
        Dispersion trend, 'parametric' or 'mean'
    reference : dict, optional
        Baseline factor levels
    return_fit : bool
        If True, return (results, DispersionEstimates)
    verbose : bool
        Print progress messages

    Returns
    -------
    pd.DataFrame or Tuple
        logFC, logCPM, LR, PValue, FDR, gene_name, entrez_id per gene,
        sorted by PValue

    Examples
    --------
    >>> res = fit_differential_expression(counts, samples, coef="condition[T.SD]")
    >>> res.loc[res["FDR"] < 0.05, "logFC"]
    """
    if not counts.columns.equals(samples.index):
        raise ValueError("samples index must exactly match count columns")

    design = build_design(samples, formula, reference=reference)
    null_design = drop_coefficient(design, coef)
    if design.shape[0] - design.shape[1] <= 0:
        raise ValueError(
            f"Residual degrees of freedom <= 0 for {formula!r} "
            f"({design.shape[0]} samples, {design.shape[1]} coefficients)"
        )

    if len(counts) == 0:
        warnings.warn("No genes to test; returning an empty result table.")
        empty = pd.DataFrame(columns=RESULT_COLUMNS, index=counts.index, dtype=float)
        empty.index.name = counts.index.name
        return (empty, None) if return_fit else empty

    offset = np.log(calc_size_factors(counts).to_numpy())

    if verbose:
        print(f"Estimating dispersions for {len(counts):,} genes...")
    disp = estimate_dispersions(counts, samples, formula=formula, fit_type=fit_type)

    y = counts.to_numpy(dtype=float)
    full = fit_nb_glm(y, design, offset, disp.tagwise.to_numpy())
    null = fit_nb_glm(y, null_design, offset, disp.tagwise.to_numpy())
    if not (full.converged.all() and null.converged.all()):
        warnings.warn("NB GLM did not fully converge for some genes")

    lr = np.maximum(null.deviance - full.deviance, 0.0)
    pvals = stats.chi2.sf(lr, df=1)
    fdr = np.full_like(pvals, np.nan)
    tested = np.isfinite(pvals)
    if tested.any():
        _, fdr[tested], _, _ = multipletests(pvals[tested], method="fdr_bh")

    coef_idx = list(design.columns).index(coef)
    res = pd.DataFrame(
        {
            "logFC": full.coefficients[:, coef_idx] / np.log(2),
            "logCPM": disp.ave_log_cpm.to_numpy(),
            "LR": lr,
            "PValue": pvals,
            "FDR": fdr,
        },
        index=counts.index,
    )
    res = annotate_results(res, gene_annotation)
    res = res[~(res["FDR"] > max_fdr)].sort_values("PValue", kind="mergesort")

    if verbose:
        print(f"✔ Tested {len(counts):,} genes, {int((res['FDR'] < 0.05).sum())} at FDR < 0.05")

    if return_fit:
        return res, disp
    return res


# ============================================================================
# RESULTS ANALYSIS
# ============================================================================


def summarize_expression_results(res: pd.DataFrame, fdr_thresh: float = 0.05) -> Dict:
    """Summary statistics of a differential expression table."""
    sig = res[res["FDR"] < fdr_thresh]

    return {
        "total_tested": len(res),
        "significant": len(sig),
        "pct_significant": len(sig) / len(res) * 100 if len(res) > 0 else 0,
        "up": int((sig["logFC"] > 0).sum()),
        "down": int((sig["logFC"] < 0).sum()),
        "median_abs_logFC_sig": float(sig["logFC"].abs().median()) if len(sig) else 0.0,
        "min_pval": float(res["PValue"].min()) if len(res) else 1.0,
        "annotated": int(res["gene_name"].notna().sum()) if "gene_name" in res else 0,
    }


def get_significant_genes(
    res: pd.DataFrame,
    fdr_thresh: float = 0.05,
    lfc_thresh: float = 0.0,
    direction: Optional[str] = None,
    id_col: Optional[str] = None,
) -> List[str]:
    """
    Identifiers of significant genes.

    Parameters
    ----------
    res : pd.DataFrame
        Result of fit_differential_expression
    fdr_thresh : float
        Maximum FDR (exclusive)
    lfc_thresh : float
        Minimum absolute logFC
    direction : str, optional
        'up', 'down', or None for both
    id_col : str, optional
        Column to report instead of the index (e.g. 'entrez_id');
        rows with a null identifier are skipped

    Returns
    -------
    List[str]
    """
    sig = res[res["FDR"] < fdr_thresh]

    if direction == "up":
        sig = sig[sig["logFC"] >= lfc_thresh]
    elif direction == "down":
        sig = sig[sig["logFC"] <= -lfc_thresh]
    elif direction is None:
        sig = sig[sig["logFC"].abs() >= lfc_thresh]
    else:
        raise ValueError(f"Unknown direction: {direction}")

    if id_col is None:
        return [str(i) for i in sig.index]
    return [str(v) for v in sig[id_col].dropna()]
