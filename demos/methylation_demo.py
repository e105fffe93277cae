#!/usr/bin/env python
# coding: utf-8

"""
Differential Methylation Region Demo
Simulated paired methylation arrays in two tissues
"""

import os
import time
from datetime import datetime

import numpy as np
import pandas as pd

from sleep_omics.core.config import AnalysisConfig
from sleep_omics.core.methylation import MethylationSet
from sleep_omics.core.pipeline import run_methylation_pipeline
from sleep_omics.core.reporting import PDFLogger


# ============================================================================
# CONFIGURATION
# ============================================================================

CONFIG = {
    "random_seed": 1500,
    "n_clusters": 600,  # CpG clusters of 10 probes
    "chromosomes": ["chr1", "chr2", "chr3"],
    "n_subjects": 8,
    "tissues": ["muscle", "adipose"],
    "n_dmrs": 12,
    "dmr_effect": 0.15,  # beta difference SD - NS
    "slide_effect": 0.03,
    "n_cross_reactive": 50,
    "chunk_size": None,  # e.g. 2000 to fit probes in chunks
}

timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
report_path = f"log/{timestamp}"
os.makedirs(report_path, exist_ok=True)
pdf = PDFLogger(f"{report_path}/methylation_report.pdf", echo=True)

pdf.log_text("# Differential Methylation Report")
pdf.log_text(f"**Generated**: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

pdf.log_text("\n## Simulation Settings")
for key, value in CONFIG.items():
    pdf.log_text(f"- **{key}**: {value}")

# ============================================================================
# SECTION 1: DATA SIMULATION
# ============================================================================

print("=" * 70)
pdf.log_text("\n## 1. Data Simulation")
print("=" * 70)

np.random.seed(CONFIG["random_seed"])
per_cluster = 10
n_clusters = CONFIG["n_clusters"]
n_probes = n_clusters * per_cluster
probe_ids = [f"cg{i:08d}" for i in range(n_probes)]

# Clusters of probes 100 bp apart, 20 kb between clusters
chroms = np.array(CONFIG["chromosomes"])[np.arange(n_clusters) % len(CONFIG["chromosomes"])]
cluster_start = 20000 * (np.arange(n_clusters) // len(CONFIG["chromosomes"])) + 5000
probes = pd.DataFrame(
    {
        "chrom": np.repeat(chroms, per_cluster),
        "pos": (cluster_start[:, None] + 100 * np.arange(per_cluster)[None, :]).ravel(),
        "type": np.where(np.random.rand(n_probes) < 0.3, "I", "II"),
        "CpG_maf": np.where(np.random.rand(n_probes) < 0.02, 0.1, np.nan),
        "SBE_maf": np.nan,
    },
    index=probe_ids,
)

# One transcript starting inside each cluster
transcripts = pd.DataFrame(
    {
        "chrom": chroms,
        "start": cluster_start + 300,
        "end": cluster_start + 8000,
        "strand": np.where(np.arange(n_clusters) % 2 == 0, "+", "-"),
        "gene_name": [f"GENE{k}" for k in range(n_clusters)],
    }
)
gene_annotation = pd.DataFrame(
    {
        "gene_name": transcripts["gene_name"],
        "entrez_id": [str(20000 + k) for k in range(n_clusters)],
        "biotype": "protein_coding",
    },
    index=[f"ENSG{k:011d}" for k in range(n_clusters)],
)

dmr_clusters = np.random.choice(n_clusters, CONFIG["n_dmrs"], replace=False)
dmr_probes = (dmr_clusters[:, None] * per_cluster + np.arange(per_cluster)[None, :]).ravel()

meth_blocks, unmeth_blocks, detp_blocks, sample_blocks = [], [], [], []
base = np.random.beta(2, 2, n_probes)
for tissue in CONFIG["tissues"]:
    n_subjects = CONFIG["n_subjects"]
    ids = [f"{tissue[:1].upper()}{i:02d}" for i in range(2 * n_subjects)]
    samples = pd.DataFrame(
        {
            "subject": [f"P{i:02d}" for i in range(n_subjects) for _ in range(2)],
            "tissue": tissue,
            "condition": ["NS", "SD"] * n_subjects,
            "slide": [f"slide{i % 2}" for i in range(n_subjects) for _ in range(2)],
        },
        index=ids,
    )

    beta = base[:, None] + np.random.normal(0, 0.03, (n_probes, len(ids)))
    beta[:, (samples["slide"] == "slide1").to_numpy()] += CONFIG["slide_effect"]
    sd = (samples["condition"] == "SD").to_numpy()
    beta[np.ix_(dmr_probes, sd)] += CONFIG["dmr_effect"]
    beta = np.clip(beta, 0.01, 0.99)

    total = np.exp(np.random.normal(np.log(8000), 0.3, (n_probes, 1)))
    total = total * np.exp(np.random.normal(0, 0.1, (1, len(ids))))
    detp = np.where(np.random.rand(n_probes, len(ids)) < 0.001, 0.05, 1e-6)

    meth_blocks.append(pd.DataFrame(beta * total, index=probe_ids, columns=ids))
    unmeth_blocks.append(pd.DataFrame((1 - beta) * total, index=probe_ids, columns=ids))
    detp_blocks.append(pd.DataFrame(detp, index=probe_ids, columns=ids))
    sample_blocks.append(samples)

mset = MethylationSet(
    meth=pd.concat(meth_blocks, axis=1),
    unmeth=pd.concat(unmeth_blocks, axis=1),
    detection_p=pd.concat(detp_blocks, axis=1),
    samples=pd.concat(sample_blocks),
    probes=probes,
)

# Cross-reactive probes never overlap the simulated DMRs
candidates = np.setdiff1d(np.arange(n_probes), dmr_probes)
cross_reactive = [probe_ids[i] for i in np.random.choice(candidates, CONFIG["n_cross_reactive"],
                                                         replace=False)]

# Pathway built from the DMR genes, plus random pathways
entrez = gene_annotation["entrez_id"].to_numpy()
collections = {
    "GO_BP": {
        "SLEEP_REGULATION": frozenset(entrez[dmr_clusters]),
        **{f"GO_RANDOM_{k:02d}": frozenset(np.random.choice(entrez, 30, replace=False))
           for k in range(20)},
    },
    "KEGG": {
        f"KEGG_RANDOM_{k:02d}": frozenset(np.random.choice(entrez, 30, replace=False))
        for k in range(10)
    },
}

pdf.log_text(f"- Simulated {mset.n_probes:,} probes x {mset.n_samples} samples")
pdf.log_text(f"- {CONFIG['n_dmrs']} true DMRs of {per_cluster} probes each")
pdf.log_text(f"- {len(cross_reactive)} cross-reactive probes excluded")

# ============================================================================
# SECTION 2: PER-TISSUE ANALYSIS
# ============================================================================

print("=" * 70)
pdf.log_text("\n## 2. Per-Tissue Analysis")
print("=" * 70)

config = AnalysisConfig(
    run={
        "random_seed": CONFIG["random_seed"],
        "output_dir": f"{report_path}/results",
        "tissues": CONFIG["tissues"],
    },
    methylation={"chunk_size": CONFIG["chunk_size"]},
    enrichment={"ora_max_p": 0.05, "ora_min_genes": 2},
    reporting={"plot_dpi": 150},
)
config.save_to_file(f"{report_path}/config.json")

start_time = time.time()
results = run_methylation_pipeline(
    mset,
    config,
    transcripts,
    gene_annotation=gene_annotation,
    collections=collections,
    exclude=cross_reactive,
    report=pdf,
)
elapsed = time.time() - start_time

# ============================================================================
# SECTION 3: SUMMARY
# ============================================================================

print("=" * 70)
pdf.log_text("\n## 3. Summary")
print("=" * 70)

truth = {f"GENE{k}" for k in dmr_clusters}
rows = []
for tissue, result in results.items():
    if not result.success:
        pdf.log_text(f"- **{tissue}**: failed at {result.error.stage}")
        continue
    genes = set(result.tables["genes"].index)
    rows.append(
        {
            "tissue": tissue,
            "status": result.summary["status"],
            "regions": result.summary["n_regions"],
            "true_genes": len(genes & truth),
            "other_genes": len(genes - truth),
        }
    )

pdf.log_dataframe(pd.DataFrame(rows).set_index("tissue"), title="Recovered DMR genes")
pdf.log_text(f"- Analysis time: **{elapsed:.1f}s**")

pdf.save()
