#!/usr/bin/env python
# coding: utf-8

"""
Differential Expression Analysis Demo
Simulated paired RNA-seq in two tissues
"""

import os
import time
from datetime import datetime

import numpy as np
import pandas as pd

from sleep_omics.core.config import AnalysisConfig
from sleep_omics.core.expression import summarize_expression_results
from sleep_omics.core.pipeline import run_expression_pipeline
from sleep_omics.core.reporting import PDFLogger


# ============================================================================
# CONFIGURATION
# ============================================================================

CONFIG = {
    "random_seed": 1500,
    "n_genes": 2000,
    "n_subjects": 8,
    "tissues": ["muscle", "adipose"],
    "dispersion": 0.1,
    "prop_de": 0.05,
    "effect_size": 1.0,  # log2 fold change of DE genes
    "prop_noncoding": 0.1,
    "n_gene_sets": 40,
}

timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
report_path = f"log/{timestamp}"
os.makedirs(report_path, exist_ok=True)
pdf = PDFLogger(f"{report_path}/expression_report.pdf", echo=True)

pdf.log_text("# Differential Expression Report")
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
n_genes = CONFIG["n_genes"]
n_subjects = CONFIG["n_subjects"]
gene_ids = [f"ENSG{i:011d}" for i in range(n_genes)]

n_de = int(n_genes * CONFIG["prop_de"])
de_idx = np.random.choice(n_genes, n_de, replace=False)
lfc = np.zeros(n_genes)
lfc[de_idx[: n_de // 2]] = CONFIG["effect_size"]
lfc[de_idx[n_de // 2 :]] = -CONFIG["effect_size"]

# Shared baseline abundance, tissue-specific noise
base = np.exp(np.random.normal(np.log(200), 1.5, n_genes))

count_blocks, sample_blocks = [], []
for tissue in CONFIG["tissues"]:
    ids = [f"{tissue[:1].upper()}{i:02d}" for i in range(2 * n_subjects)]
    samples = pd.DataFrame(
        {
            "subject": [f"P{i:02d}" for i in range(n_subjects) for _ in range(2)],
            "tissue": tissue,
            "condition": ["NS", "SD"] * n_subjects,
        },
        index=ids,
    )
    subject_effect = np.exp(np.random.normal(0, 0.3, n_subjects)).repeat(2)
    tissue_base = base * np.exp(np.random.normal(0, 0.5, n_genes))
    sd = (samples["condition"] == "SD").to_numpy()

    mu = tissue_base[:, None] * subject_effect[None, :]
    mu = mu * np.where(sd[None, :], 2 ** lfc[:, None], 1.0)
    phi = CONFIG["dispersion"]
    counts = np.random.poisson(np.random.gamma(1 / phi, mu * phi))

    count_blocks.append(pd.DataFrame(counts, index=gene_ids, columns=ids))
    sample_blocks.append(samples)

counts = pd.concat(count_blocks, axis=1)
samples = pd.concat(sample_blocks)

n_noncoding = int(n_genes * CONFIG["prop_noncoding"])
gene_annotation = pd.DataFrame(
    {
        "biotype": ["protein_coding"] * (n_genes - n_noncoding) + ["lncRNA"] * n_noncoding,
        "gene_name": [f"GENE{i}" for i in range(n_genes)],
        "entrez_id": [str(10000 + i) for i in range(n_genes)],
    },
    index=pd.Index(gene_ids, name="gene_id"),
)

# Random gene sets, plus one built from the up-regulated genes
entrez = gene_annotation["entrez_id"].to_numpy()
gene_sets = {
    f"RANDOM_SET_{k:02d}": frozenset(np.random.choice(entrez, 50, replace=False))
    for k in range(CONFIG["n_gene_sets"])
}
gene_sets["SLEEP_LOSS_UP"] = frozenset(entrez[de_idx[: n_de // 2]])

pdf.log_text(f"- Simulated {counts.shape[0]:,} genes x {counts.shape[1]} samples")
pdf.log_text(f"- {n_de} differentially expressed genes per tissue")
pdf.log_dataframe(samples.groupby(["tissue", "condition"]).size().to_frame("n"),
                  title="Samples per group")

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
    reporting={"plot_dpi": 150},
)
config.save_to_file(f"{report_path}/config.json")

start_time = time.time()
results = run_expression_pipeline(
    counts,
    samples,
    config,
    gene_annotation=gene_annotation,
    gene_sets=gene_sets,
    report=pdf,
)
elapsed = time.time() - start_time

# ============================================================================
# SECTION 3: SUMMARY
# ============================================================================

print("=" * 70)
pdf.log_text("\n## 3. Summary")
print("=" * 70)

truth = set(np.array(gene_ids)[de_idx])
rows = []
for tissue, result in results.items():
    if not result.success:
        pdf.log_text(f"- **{tissue}**: failed at {result.error.stage}")
        continue
    res = result.tables["differential"]
    called = set(res.index[res["FDR"] < 0.05])
    summary = summarize_expression_results(res)
    rows.append(
        {
            "tissue": tissue,
            "tested": summary["total_tested"],
            "significant": summary["significant"],
            "true_positives": len(called & truth),
            "false_positives": len(called - truth),
        }
    )

pdf.log_dataframe(pd.DataFrame(rows).set_index("tissue"), title="Detection")
pdf.log_text(f"- Analysis time: **{elapsed:.1f}s**")

pdf.save()
