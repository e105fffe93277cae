#!/usr/bin/env python
# coding: utf-8

"""
Shared fixtures: simulated methylation array data
"""

import numpy as np
import pandas as pd
import pytest

from sleep_omics.core.methylation import MethylationSet

N_CLUSTERS = 30
PER_CLUSTER = 10
DMR_PROBES = 20  # first two clusters


def simulate_methylation(with_dmr=True, tissue="muscle", n_subjects=6, seed=1500):
    """
    Paired array data: clusters of 10 probes 100 bp apart, 10 kb between
    clusters; subjects alternate between two slides.

    With ``with_dmr`` the first two clusters gain +0.25 beta in SD.
    cg00000005 fails detection in one sample and cg00000015 carries a
    CpG SNP.
    """
    np.random.seed(seed)
    n_probes = N_CLUSTERS * PER_CLUSTER
    probe_ids = [f"cg{i:08d}" for i in range(n_probes)]
    pos = np.array(
        [10000 * k + 1000 + 100 * j for k in range(N_CLUSTERS) for j in range(PER_CLUSTER)]
    )
    probes = pd.DataFrame(
        {
            "chrom": "chr1",
            "pos": pos,
            "type": np.where(np.arange(n_probes) % 2 == 0, "I", "II"),
            "CpG_maf": np.nan,
            "SBE_maf": np.nan,
        },
        index=probe_ids,
    )
    probes.loc["cg00000015", "CpG_maf"] = 0.2

    sample_ids = [f"{tissue[:1].upper()}{i}" for i in range(2 * n_subjects)]
    samples = pd.DataFrame(
        {
            "subject": [f"P{i}" for i in range(n_subjects) for _ in range(2)],
            "tissue": tissue,
            "condition": ["NS", "SD"] * n_subjects,
            "slide": [f"slide{i % 2}" for i in range(n_subjects) for _ in range(2)],
        },
        index=sample_ids,
    )

    base = np.random.uniform(0.2, 0.65, n_probes)
    beta = base[:, None] + np.random.normal(0, 0.02, (n_probes, len(sample_ids)))
    beta[:, (samples["slide"] == "slide1").to_numpy()] += 0.02
    if with_dmr:
        sd = (samples["condition"] == "SD").to_numpy()
        beta[:DMR_PROBES, sd] += 0.25
    beta = np.clip(beta, 0.01, 0.99)

    total = np.exp(np.random.normal(np.log(8000), 0.3, (n_probes, 1)))
    total = total * np.exp(np.random.normal(0, 0.1, (1, len(sample_ids))))

    meth = pd.DataFrame(beta * total, index=probe_ids, columns=sample_ids)
    unmeth = pd.DataFrame((1 - beta) * total, index=probe_ids, columns=sample_ids)
    detp = pd.DataFrame(1e-4, index=probe_ids, columns=sample_ids)
    detp.iloc[5, 0] = 0.05

    return MethylationSet(meth, unmeth, detp, samples, probes)


@pytest.fixture
def mset():
    return simulate_methylation()


@pytest.fixture
def null_mset():
    return simulate_methylation(with_dmr=False)


@pytest.fixture
def array_transcripts():
    """GENEA starts inside the first DMR cluster; GENEB is far from any."""
    return pd.DataFrame(
        {
            "chrom": ["chr1", "chr1"],
            "start": [1200, 500000],
            "end": [6000, 520000],
            "strand": ["+", "+"],
            "gene_name": ["GENEA", "GENEB"],
        }
    )
