#!/usr/bin/env python
# coding: utf-8

"""
Methylation Array Preprocessing
Quantile normalization, probe filtering and batch correction per tissue
"""

import warnings
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from combat.pycombat import pycombat
from scipy import stats

from sleep_omics.core.data import align_samples

BETA_OFFSET = 100.0
M_ALPHA = 1.0
SNP_KINDS = ("Probe", "CpG", "SBE")


# ============================================================================
# DATA CONTAINER
# ============================================================================


@dataclass
class MethylationSet:
    """
    Array intensities with aligned sample and probe annotation.

    meth, unmeth and detection_p are probe x sample matrices sharing the
    same index and columns; ``samples`` is indexed by sample id in column
    order and ``probes`` by probe id in row order.
    """

    meth: pd.DataFrame
    unmeth: pd.DataFrame
    detection_p: pd.DataFrame
    samples: pd.DataFrame
    probes: pd.DataFrame

    def __post_init__(self):
        if not (
            self.meth.index.equals(self.unmeth.index)
            and self.meth.columns.equals(self.unmeth.columns)
        ):
            raise ValueError("Methylated and unmethylated matrices are not aligned")
        self.detection_p = self.detection_p.reindex(
            index=self.meth.index, columns=self.meth.columns
        )
        self.samples = align_samples(self.meth, self.samples)
        self.probes = self.probes.reindex(self.meth.index)

    @property
    def n_probes(self) -> int:
        return self.meth.shape[0]

    @property
    def n_samples(self) -> int:
        return self.meth.shape[1]

    def beta(self, offset: float = BETA_OFFSET) -> pd.DataFrame:
        """Beta values: M / (M + U + offset)."""
        return self.meth / (self.meth + self.unmeth + offset)

    def m_values(self, alpha: float = M_ALPHA) -> pd.DataFrame:
        """M values: log2((M + alpha) / (U + alpha))."""
        return np.log2((self.meth + alpha) / (self.unmeth + alpha))

    def subset(
        self,
        probes: Optional[Iterable[str]] = None,
        samples: Optional[Iterable[str]] = None,
    ) -> "MethylationSet":
        """Restrict to the given probes and/or samples, keeping alignment."""
        rows = self.meth.index if probes is None else pd.Index(probes)
        cols = self.meth.columns if samples is None else pd.Index(samples)
        return MethylationSet(
            meth=self.meth.loc[rows, cols],
            unmeth=self.unmeth.loc[rows, cols],
            detection_p=self.detection_p.loc[rows, cols],
            samples=self.samples.loc[cols],
            probes=self.probes.loc[rows],
        )


# ============================================================================
# QUANTILE NORMALIZATION
# ============================================================================


def fix_outliers(
    meth: pd.DataFrame,
    unmeth: pd.DataFrame,
    k: float = 3.0,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Raise extremely low intensities to a per-sample floor.

    The floor is ``median - k * MAD`` of the log2 intensities of each
    sample, computed separately for both channels.
    """

    def _fix(x):
        logx = np.log2(np.maximum(x.to_numpy(dtype=float), 1.0))
        med = np.median(logx, axis=0)
        mad = stats.median_abs_deviation(logx, axis=0, scale="normal")
        floor = 2 ** (med - k * mad)
        return x.clip(lower=pd.Series(floor, index=x.columns), axis=1)

    return _fix(meth), _fix(unmeth)


def find_bad_samples(
    meth: pd.DataFrame,
    unmeth: pd.DataFrame,
    cutoff: float = 10.5,
) -> List[str]:
    """
    Samples whose mean of median log2 channel intensities is below cutoff.
    """
    m_med = np.log2(np.maximum(meth, 1.0)).median(axis=0)
    u_med = np.log2(np.maximum(unmeth, 1.0)).median(axis=0)
    bad = (m_med + u_med) / 2 < cutoff
    return [str(s) for s in meth.columns[bad.to_numpy()]]


def _quantile_normalize_block(x: np.ndarray) -> np.ndarray:
    target = np.sort(x, axis=0).mean(axis=1)
    ranks = np.argsort(np.argsort(x, axis=0, kind="mergesort"), axis=0, kind="mergesort")
    return target[ranks]


def quantile_normalize(
    matrix: pd.DataFrame,
    strata: Optional[pd.Series] = None,
) -> pd.DataFrame:
    """
    Quantile-normalize columns, separately within each stratum of rows.

    Parameters
    ----------
    matrix : pd.DataFrame
        probe x sample values without missing entries
    strata : pd.Series, optional
        Stratum label per row (e.g. Infinium probe type)

    Returns
    -------
    pd.DataFrame
    """
    if matrix.isna().any().any():
        raise ValueError("Quantile normalization requires a complete matrix")

    values = matrix.to_numpy(dtype=float)
    out = np.empty_like(values)

    if strata is None:
        out[:] = _quantile_normalize_block(values)
    else:
        labels = strata.reindex(matrix.index).fillna("NA").astype(str).to_numpy()
        for label in np.unique(labels):
            idx = np.where(labels == label)[0]
            out[idx] = _quantile_normalize_block(values[idx])

    return pd.DataFrame(out, index=matrix.index, columns=matrix.columns)


def preprocess_quantile(
    mset: MethylationSet,
    fix_outlier_values: bool = True,
    remove_bad_samples: bool = True,
    bad_sample_cutoff: float = 10.5,
    strata_col: str = "type",
    verbose: bool = False,
) -> MethylationSet:
    """
    Stratified quantile normalization of both intensity channels.

    Parameters
    ----------
    mset : MethylationSet
    fix_outlier_values : bool
        Floor extreme low intensities first
    remove_bad_samples : bool
        Drop samples failing the median-intensity check
    bad_sample_cutoff : float
        Threshold on the mean of median log2 intensities
    strata_col : str
        Probe annotation column used to stratify

    Returns
    -------
    MethylationSet
    """
    meth, unmeth = mset.meth, mset.unmeth
    if fix_outlier_values:
        meth, unmeth = fix_outliers(meth, unmeth)

    if remove_bad_samples:
        bad = find_bad_samples(meth, unmeth, cutoff=bad_sample_cutoff)
        if bad:
            warnings.warn(f"Removing {len(bad)} low-quality sample(s): {bad}")
            keep = [s for s in meth.columns if s not in bad]
            if not keep:
                raise ValueError("Every sample failed the intensity quality check")
            meth, unmeth = meth[keep], unmeth[keep]

    strata = mset.probes[strata_col] if strata_col in mset.probes.columns else None

    normed = MethylationSet(
        meth=quantile_normalize(meth, strata),
        unmeth=quantile_normalize(unmeth, strata),
        detection_p=mset.detection_p[meth.columns],
        samples=mset.samples.loc[meth.columns],
        probes=mset.probes,
    )
    if verbose:
        print(f"✔ Quantile normalized {normed.n_probes:,} probes x {normed.n_samples} samples")
    return normed


# ============================================================================
# PROBE FILTERS
# ============================================================================


def filter_detection(mset: MethylationSet, max_p: float = 0.01) -> MethylationSet:
    """Keep probes with detection p < max_p in every sample."""
    keep = (mset.detection_p < max_p).all(axis=1)
    return mset.subset(probes=mset.meth.index[keep.to_numpy()])


def drop_snp_probes(
    mset: MethylationSet,
    snps: Sequence[str] = ("CpG", "SBE"),
    maf: float = 0.0,
) -> MethylationSet:
    """
    Remove probes with a known SNP above ``maf`` at the given positions.

    Parameters
    ----------
    snps : sequence of str
        Any of 'Probe', 'CpG', 'SBE'
    maf : float
        Minor allele frequency threshold (strictly greater is dropped)
    """
    unknown = [s for s in snps if s not in SNP_KINDS]
    if unknown:
        raise ValueError(f"Unknown SNP position(s) {unknown}; use {SNP_KINDS}")

    cols = [f"{s}_maf" for s in snps]
    missing = [c for c in cols if c not in mset.probes.columns]
    if missing:
        warnings.warn(f"Probe annotation lacks {missing}; no SNP filtering applied")
        return mset

    mafs = mset.probes[cols].apply(pd.to_numeric, errors="coerce")
    drop = (mafs > maf).any(axis=1)
    return mset.subset(probes=mset.meth.index[~drop.to_numpy()])


def drop_probes(mset: MethylationSet, exclude: Iterable[str]) -> MethylationSet:
    """Remove probes whose identifier is in ``exclude``."""
    exclude = set(map(str, exclude))
    keep = [p for p in mset.meth.index if p not in exclude]
    return mset.subset(probes=keep)


# ============================================================================
# BATCH CORRECTION
# ============================================================================


def _covariate_labels(mod: Optional[pd.DataFrame], samples: pd.Index) -> list:
    if mod is None:
        return []
    mod = mod.loc[samples]
    if isinstance(mod, pd.Series):
        return mod.astype(str).tolist()
    if mod.shape[1] == 1:
        return mod.iloc[:, 0].astype(str).tolist()
    return [mod[col].astype(str).tolist() for col in mod.columns]


def combat(
    m_values: pd.DataFrame,
    batch: pd.Series,
    mod: Optional[pd.DataFrame] = None,
    parametric: bool = True,
) -> pd.DataFrame:
    """
    Empirical Bayes location/scale batch adjustment (pyComBat).

    Parameters
    ----------
    m_values : pd.DataFrame
        probe x sample M values
    batch : pd.Series
        Batch label per sample
    mod : pd.DataFrame, optional
        Categorical covariates to protect (samples x q); intercept-only
        null model when omitted
    parametric : bool
        Parametric priors (True) or non-parametric integration

    Returns
    -------
    pd.DataFrame
        Batch-adjusted M values; probes with zero variance are returned
        unchanged
    """
    batch = batch.reindex(m_values.columns)
    if batch.isna().any():
        raise ValueError("Batch label missing for some samples")
    batch = batch.astype(str)

    levels = sorted(batch.unique())
    if len(levels) < 2:
        raise ValueError("ComBat needs at least two batches")

    mean_only = bool((batch.value_counts() < 2).any())
    if mean_only:
        warnings.warn("A batch has a single sample; adjusting location only")

    covariates = _covariate_labels(mod, m_values.columns)
    if covariates:
        cov_lists = covariates if isinstance(covariates[0], list) else [covariates]
        design = np.column_stack(
            [pd.get_dummies(batch).to_numpy(float)]
            + [pd.get_dummies(pd.Series(c), drop_first=True).to_numpy(float) for c in cov_lists]
        )
        if np.linalg.matrix_rank(design) < design.shape[1]:
            raise ValueError("Covariates are confounded with batch")

    dat = m_values.astype(float)
    constant = dat.var(axis=1).fillna(0).to_numpy() <= 0
    adjusted = dat.copy()
    if (~constant).any():
        corrected = pycombat(
            dat.loc[~constant],
            batch.tolist(),
            mod=covariates,
            par_prior=parametric,
            mean_only=mean_only,
        )
        adjusted.loc[~constant] = np.asarray(corrected, dtype=float)

    return adjusted


def _intensities_from_m(
    m_values: pd.DataFrame, total: pd.DataFrame, alpha: float = M_ALPHA
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    r = 2.0**m_values
    unmeth = ((total + 2 * alpha) / (1 + r) - alpha).clip(lower=0)
    meth = (total - unmeth).clip(lower=0)
    return meth, unmeth


def correct_batch(
    mset: MethylationSet,
    batch_col: str = "slide",
    mod: Optional[pd.DataFrame] = None,
    parametric: bool = True,
) -> MethylationSet:
    """
    ComBat on M values, returned as a MethylationSet.

    Intensities are rebuilt so that ``m_values()`` of the result equals
    the corrected M values while each probe keeps its total intensity.
    """
    if batch_col not in mset.samples.columns:
        raise ValueError(f"Batch column {batch_col!r} not in sample table")

    corrected = combat(mset.m_values(), mset.samples[batch_col], mod=mod, parametric=parametric)
    meth, unmeth = _intensities_from_m(corrected, mset.meth + mset.unmeth)

    return replace(mset, meth=meth, unmeth=unmeth)


# ============================================================================
# PER-TISSUE CHAIN
# ============================================================================


def normalize_tissue(
    mset: MethylationSet,
    exclude: Optional[Iterable[str]] = None,
    max_detection_p: float = 0.01,
    drop_snps: bool = True,
    snps: Sequence[str] = ("CpG", "SBE"),
    snp_maf: float = 0.0,
    batch_correct: bool = True,
    batch_col: str = "slide",
    fix_outlier_values: bool = True,
    remove_bad_samples: bool = True,
    bad_sample_cutoff: float = 10.5,
    verbose: bool = True,
) -> MethylationSet:
    """
    Quantile -> detection -> SNP -> exclusion list -> ComBat.

    Each step operates only on what the previous step kept.

    Parameters
    ----------
    mset : MethylationSet
        Raw intensities for one tissue
    exclude : iterable of str, optional
        Non-specific probe identifiers to drop
    max_detection_p : float
        Detection p-value threshold (all samples must pass)
    drop_snps : bool
        Drop SNP-affected probes
    batch_correct : bool
        Run ComBat on ``batch_col`` (skipped with a warning when there is
        a single batch)
    verbose : bool
        Print progress messages

    Returns
    -------
    MethylationSet
    """
    out = preprocess_quantile(
        mset,
        fix_outlier_values=fix_outlier_values,
        remove_bad_samples=remove_bad_samples,
        bad_sample_cutoff=bad_sample_cutoff,
        verbose=verbose,
    )

    n_before = out.n_probes
    out = filter_detection(out, max_p=max_detection_p)
    if verbose:
        print(f"✔ Detection filter: removed {n_before - out.n_probes:,} probes")

    if drop_snps:
        n_before = out.n_probes
        out = drop_snp_probes(out, snps=snps, maf=snp_maf)
        if verbose:
            print(f"✔ SNP filter: removed {n_before - out.n_probes:,} probes")

    if exclude:
        n_before = out.n_probes
        out = drop_probes(out, exclude)
        if verbose:
            print(f"✔ Exclusion list: removed {n_before - out.n_probes:,} probes")

    if out.n_probes == 0:
        raise ValueError("No probes left after filtering")

    if batch_correct:
        n_batches = out.samples[batch_col].nunique() if batch_col in out.samples else 0
        if n_batches < 2:
            warnings.warn(f"Fewer than two batches in {batch_col!r}; skipping ComBat")
        else:
            out = correct_batch(out, batch_col=batch_col)
            if verbose:
                print(f"✔ ComBat corrected {n_batches} batches")

    return out

