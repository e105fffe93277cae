#!/usr/bin/env python
# coding: utf-8

"""
Reporting
Result tables, gene lists, figures and the PDF run report
"""

import os
import re
from typing import Any, Dict, Iterable, Optional, Set

import numpy as np
import pandas as pd
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.lib.utils import ImageReader
from reportlab.platypus import (
    Image,
    ListFlowable,
    ListItem,
    Paragraph,
    Preformatted,
    SimpleDocTemplate,
    Spacer,
)

from sleep_omics.core.annotation import genes_in
from sleep_omics.core.regions import probes_in_region

GROUP_COLORS = ["skyblue", "salmon", "mediumseagreen", "orchid", "goldenrod", "grey"]


# ============================================================================
# TABLES & LISTS
# ============================================================================


def write_result_table(df: pd.DataFrame, path: str, index: bool = True) -> str:
    """Write a tab-delimited table with ``NA`` for missing values."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    df.to_csv(path, sep="\t", na_rep="NA", index=index)
    return path


def export_results(
    res: pd.DataFrame,
    output_path: str,
    format: str = "csv",
    columns: Optional[Iterable[str]] = None,
    verbose: bool = True,
) -> str:
    """
    Export a result table.

    Parameters
    ----------
    res : pd.DataFrame
        Any result table
    output_path : str
        Destination file
    format : str
        'csv', 'tsv' or 'excel'
    columns : iterable of str, optional
        Subset of columns to keep (missing ones are skipped)
    """
    if columns is not None:
        res = res[[c for c in columns if c in res.columns]]

    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    if format == "csv":
        res.to_csv(output_path)
    elif format == "excel":
        res.to_excel(output_path, engine="openpyxl")
    elif format == "tsv":
        write_result_table(res, output_path)
    else:
        raise ValueError(f"Unsupported format: {format}")

    if verbose:
        print(f"✔ Results exported to {output_path}")
    return output_path


def write_gene_list(ids: Iterable, path: str) -> str:
    """One identifier per line; no header, no quoting."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w") as f:
        for gene_id in ids:
            if gene_id is None or (isinstance(gene_id, float) and np.isnan(gene_id)):
                continue
            f.write(f"{gene_id}\n")
    return path


def export_probe_values(values: pd.DataFrame, path: str) -> str:
    """Gzip-compressed CSV of a probe x sample matrix."""
    if not path.endswith(".gz"):
        path = f"{path}.gz"
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    values.to_csv(path, compression="gzip")
    return path


def summarize_by_gene(
    annotated: pd.DataFrame,
    probe_results: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """
    Per-gene summary of annotated regions.

    Parameters
    ----------
    annotated : pd.DataFrame
        Output of annotate_regions
    probe_results : pd.DataFrame, optional
        Per-probe results with chrom, pos, logFC; adds the mean probe
        logFC over each gene's regions

    Returns
    -------
    pd.DataFrame
        n_regions, n_probes, mean_meandiff, min_stouffer (and
        mean_probe_logFC) per gene
    """
    columns = ["n_regions", "n_probes", "mean_meandiff", "min_stouffer"]
    if len(annotated) == 0 or not list(genes_in(annotated)):
        return pd.DataFrame(columns=columns).rename_axis("gene_name")

    long = annotated.assign(
        gene_name=annotated["overlapping_genes"].str.split(",")
    ).explode("gene_name")
    long = long[long["gene_name"].fillna("").str.len() > 0]

    summary = long.groupby("gene_name").agg(
        n_regions=("region_id", "nunique"),
        n_probes=("n_probes", "sum"),
        mean_meandiff=("meandiff", "mean"),
        min_stouffer=("stouffer", "min"),
    )

    if probe_results is not None:
        members = probes_in_region(annotated, probe_results)
        lfc = members.merge(
            probe_results[["logFC"]], left_on="probe_id", right_index=True
        ).groupby("region_id")["logFC"].mean()
        per_gene = long.assign(lfc=long["region_id"].map(lfc)).groupby("gene_name")["lfc"].mean()
        summary["mean_probe_logFC"] = per_gene

    return summary.sort_values(["n_regions", "min_stouffer"], ascending=[False, True])


# ============================================================================
# VISUALIZATION
# ============================================================================


def _group_colors(groups: pd.Series) -> Dict[str, str]:
    levels = sorted(groups.astype(str).unique())
    return {g: GROUP_COLORS[i % len(GROUP_COLORS)] for i, g in enumerate(levels)}


def _finish(fig, save_path: Optional[str], dpi: int):
    import matplotlib.pyplot as plt

    fig.tight_layout()
    if save_path:
        os.makedirs(os.path.dirname(save_path) or ".", exist_ok=True)
        fig.savefig(save_path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    return fig


def plot_density(
    values: pd.DataFrame,
    samples: pd.DataFrame,
    group_col: str = "condition",
    bins: int = 100,
    title: str = "Beta Value Density",
    save_path: Optional[str] = None,
    dpi: int = 300,
):
    """Per-sample density curves coloured by group."""
    import matplotlib.pyplot as plt

    colors = _group_colors(samples[group_col])
    finite = values.to_numpy(dtype=float)
    finite = finite[np.isfinite(finite)]
    edges = np.linspace(finite.min(), finite.max(), bins + 1) if finite.size else np.linspace(0, 1, bins + 1)
    centres = (edges[:-1] + edges[1:]) / 2

    fig, ax = plt.subplots(figsize=(8, 5))
    seen = set()
    for sample in values.columns:
        group = str(samples.loc[sample, group_col])
        x = values[sample].dropna().to_numpy(dtype=float)
        density, _ = np.histogram(x, bins=edges, density=True)
        ax.plot(
            centres,
            density,
            color=colors[group],
            alpha=0.7,
            lw=1,
            label=group if group not in seen else None,
        )
        seen.add(group)

    ax.set_xlabel("Value")
    ax.set_ylabel("Density")
    ax.set_title(title)
    ax.legend()
    ax.grid(alpha=0.3)

    return _finish(fig, save_path, dpi)


def plot_volcano(
    res: pd.DataFrame,
    lfc_col: str = "logFC",
    pval_col: str = "PValue",
    fdr_col: str = "FDR",
    fdr_thresh: float = 0.05,
    lfc_thresh: float = 0.0,
    top_n: int = 10,
    label_col: Optional[str] = "gene_name",
    title: str = "Volcano Plot",
    alpha: float = 0.7,
    save_path: Optional[str] = None,
    dpi: int = 300,
):
    """Volcano plot coloured by FDR significance with top hits labelled."""
    import matplotlib.pyplot as plt

    res = res.copy()
    res["neg_log10_p"] = -np.log10(res[pval_col].astype(float).replace(0, np.nextafter(0, 1)))

    sig = res[fdr_col] < fdr_thresh
    conditions = [sig & (res[lfc_col] > lfc_thresh), sig & (res[lfc_col] < -lfc_thresh)]
    res["Group"] = np.select(conditions, ["Up", "Down"], default="Not significant")

    color_map = {"Up": "red", "Down": "blue", "Not significant": "grey"}

    fig, ax = plt.subplots(figsize=(10, 6))
    for group, color in color_map.items():
        subset = res[res["Group"] == group]
        ax.scatter(
            subset[lfc_col],
            subset["neg_log10_p"],
            c=color,
            alpha=alpha,
            edgecolor="k",
            linewidth=0.3,
            s=30,
            label=f"{group} ({len(subset)})",
        )

    if lfc_thresh > 0:
        ax.axvline(-lfc_thresh, color="black", linestyle="--", lw=1, alpha=0.5)
        ax.axvline(lfc_thresh, color="black", linestyle="--", lw=1, alpha=0.5)

    if top_n > 0:
        hits = res[res["Group"] != "Not significant"].nsmallest(top_n, pval_col)
        for idx, row in hits.iterrows():
            label = row[label_col] if label_col in res.columns and pd.notna(row[label_col]) else idx
            ax.annotate(
                str(label),
                xy=(row[lfc_col], row["neg_log10_p"]),
                xytext=(5, 5),
                textcoords="offset points",
                fontsize=7,
                alpha=0.7,
            )

    ax.set_xlabel("Log2 Fold Change", fontsize=12)
    ax.set_ylabel("-log10(p-value)", fontsize=12)
    ax.set_title(title, fontsize=14)
    ax.legend(loc="upper center")
    ax.grid(alpha=0.3)

    return _finish(fig, save_path, dpi)


def plot_pvalue_qq(
    res: pd.DataFrame,
    pval_col: str = "pval",
    save_path: Optional[str] = None,
    dpi: int = 300,
):
    """Q-Q plot of p-values to check for inflation."""
    import matplotlib.pyplot as plt

    p = np.sort(res[pval_col].dropna().to_numpy(dtype=float))
    observed = -np.log10(np.maximum(p, np.nextafter(0, 1)))
    expected = -np.log10(np.linspace(1 / len(p), 1, len(p)))

    fig, ax = plt.subplots(figsize=(6, 6))
    ax.scatter(expected, observed, alpha=0.5, s=10)
    ax.plot([0, max(expected)], [0, max(expected)], "r--", lw=2, label="Expected")

    ax.set_xlabel("Expected -log10(p)", fontsize=12)
    ax.set_ylabel("Observed -log10(p)", fontsize=12)
    ax.set_title("P-value Q-Q Plot", fontsize=14)
    ax.legend()
    ax.grid(alpha=0.3)

    return _finish(fig, save_path, dpi)


def plot_mean_variance(res: pd.DataFrame, save_path: Optional[str] = None, dpi: int = 300):
    """Raw and moderated probe variances against mean M value."""
    import matplotlib.pyplot as plt

    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(12, 5))

    mean_m = res[[c for c in res.columns if c.startswith("meanM_")]].mean(axis=1)
    ax1.scatter(mean_m, np.log2(res["s2"]), alpha=0.3, s=10, label="Raw variance")
    ax1.scatter(mean_m, np.log2(res["s2_post"]), alpha=0.3, s=10, label="Moderated variance")
    ax1.set_xlabel("Mean M-value")
    ax1.set_ylabel("log2(variance)")
    ax1.set_title("Mean-Variance Relationship")
    ax1.legend()
    ax1.grid(alpha=0.3)

    rank = np.arange(len(res))
    ax2.scatter(rank, np.sqrt(res["s2"]), alpha=0.3, s=10, label="Raw SD")
    ax2.scatter(rank, np.sqrt(res["s2_post"]), alpha=0.3, s=10, label="Moderated SD")
    ax2.set_xlabel("Rank")
    ax2.set_ylabel("Standard Deviation")
    ax2.set_title("Variance Shrinkage")
    ax2.legend()
    ax2.grid(alpha=0.3)

    return _finish(fig, save_path, dpi)


def plot_venn(
    sets: Dict[str, Set[str]],
    title: str = "",
    save_path: Optional[str] = None,
    dpi: int = 300,
):
    """Two- or three-way Venn diagram of identifier sets."""
    import matplotlib.pyplot as plt
    from matplotlib_venn import venn2, venn3

    if len(sets) not in (2, 3):
        raise ValueError(f"plot_venn needs 2 or 3 sets, got {len(sets)}")

    fig, ax = plt.subplots(figsize=(6, 6))
    labels = list(sets.keys())
    values = [set(map(str, sets[k])) for k in labels]
    if len(values) == 2:
        venn2(values, set_labels=labels, ax=ax)
    else:
        venn3(values, set_labels=labels, ax=ax)
    ax.set_title(title)

    return _finish(fig, save_path, dpi)


def plot_heatmap(
    values: pd.DataFrame,
    samples: pd.DataFrame,
    group_col: str = "condition",
    rows: Optional[Iterable[str]] = None,
    top_n: int = 50,
    title: str = "Top Features",
    save_path: Optional[str] = None,
    dpi: int = 300,
):
    """
    Row-scaled heatmap of selected (or the most variable) features.

    Samples are ordered by group.
    """
    import matplotlib.pyplot as plt
    import seaborn as sns

    if rows is None:
        rows = values.var(axis=1).nlargest(top_n).index
    data = values.loc[list(rows)]

    order = samples.sort_values(group_col, kind="mergesort").index
    data = data[order]
    sd = data.std(axis=1).replace(0, 1)
    z = data.sub(data.mean(axis=1), axis=0).div(sd, axis=0)

    fig, ax = plt.subplots(figsize=(max(6, 0.4 * len(order)), max(4, 0.2 * len(z))))
    sns.heatmap(z, cmap="RdBu_r", center=0, ax=ax, cbar_kws={"label": "z-score"},
                yticklabels=len(z) <= 60)

    colors = _group_colors(samples[group_col])
    for tick, sample in zip(ax.get_xticklabels(), order):
        tick.set_color(colors[str(samples.loc[sample, group_col])])
    ax.set_title(title)

    return _finish(fig, save_path, dpi)


def plot_region_violin(
    region_values: pd.DataFrame,
    samples: pd.DataFrame,
    region_id: str,
    group_col: str = "condition",
    ylabel: str = "Beta value",
    save_path: Optional[str] = None,
    dpi: int = 300,
):
    """
    Violin plot of one region's probe values by group.

    Parameters
    ----------
    region_values : pd.DataFrame
        Long table with region_id, probe_id, sample, value
        (see regions.region_probe_values)
    """
    import matplotlib.pyplot as plt
    import seaborn as sns

    data = region_values[region_values["region_id"] == region_id].copy()
    if len(data) == 0:
        raise ValueError(f"No probe values for region {region_id!r}")
    data[group_col] = data["sample"].map(samples[group_col].astype(str))

    fig, ax = plt.subplots(figsize=(6, 5))
    sns.violinplot(
        data=data,
        x=group_col,
        y="value",
        hue=group_col,
        palette=_group_colors(samples[group_col]),
        legend=False,
        ax=ax,
    )
    ax.set_xlabel("")
    ax.set_ylabel(ylabel)
    ax.set_title(f"{region_id} ({data['probe_id'].nunique()} probes)")
    ax.grid(alpha=0.3)

    return _finish(fig, save_path, dpi)


def plot_sample_qc(
    values: pd.DataFrame,
    samples: pd.DataFrame,
    group_col: str = "condition",
    save_path: Optional[str] = None,
    dpi: int = 300,
):
    """Sample-level mean, variance and PCA panels."""
    import matplotlib.pyplot as plt
    from sklearn.decomposition import PCA

    colors = _group_colors(samples[group_col])
    groups = samples.loc[values.columns, group_col].astype(str)
    bar_colors = [colors[g] for g in groups]

    fig, axes = plt.subplots(1, 3, figsize=(16, 5))

    ax = axes[0]
    mean_v = values.mean(axis=0)
    for group in sorted(colors):
        ax.hist(mean_v[(groups == group).to_numpy()], alpha=0.6, bins=20, label=group, color=colors[group])
    ax.set_xlabel("Mean value")
    ax.set_ylabel("Frequency")
    ax.set_title("Mean Value Distribution by Group")
    ax.legend()

    ax = axes[1]
    ax.bar(range(values.shape[1]), values.var(axis=0).to_numpy(), color=bar_colors)
    ax.set_xlabel("Sample")
    ax.set_ylabel("Variance")
    ax.set_title("Within-Sample Variance")

    ax = axes[2]
    complete = values.dropna()
    pca = PCA(n_components=2)
    coords = pca.fit_transform(complete.T.to_numpy())
    for group in sorted(colors):
        mask = (groups == group).to_numpy()
        ax.scatter(
            coords[mask, 0],
            coords[mask, 1],
            label=group,
            alpha=0.7,
            s=80,
            color=colors[group],
            edgecolor="k",
        )
    ax.set_xlabel(f"PC1 ({pca.explained_variance_ratio_[0]:.1%})")
    ax.set_ylabel(f"PC2 ({pca.explained_variance_ratio_[1]:.1%})")
    ax.set_title("PCA of Samples")
    ax.legend()
    ax.grid(alpha=0.3)

    return _finish(fig, save_path, dpi)


# ============================================================================
# PDF REPORTING
# ============================================================================


class PDFLogger:
    """PDF logger for Markdown-like reports."""

    def __init__(self, path: Optional[str] = "report.pdf", echo: bool = True):
        self.path = path
        self.echo = echo
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self.doc = SimpleDocTemplate(path, pagesize=A4)
        self.styles = getSampleStyleSheet()

        for name, size, before in (("H1", 16, 25), ("H2", 14, 20), ("H3", 12, 6)):
            self.styles.add(
                ParagraphStyle(
                    name,
                    parent=self.styles["Normal"],
                    fontName="Helvetica-Bold",
                    fontSize=size,
                    leading=size + 2,
                    spaceBefore=before,
                    spaceAfter=6,
                )
            )
        self.styles.add(
            ParagraphStyle(
                "CodeBlock",
                parent=self.styles["Normal"],
                fontName="Courier",
                fontSize=9,
            )
        )

        self.story: list[Any] = []
        self.current_list = None

    def _format_md(self, text: str) -> str:
        """Basic Markdown formatting: bold, italics, inline code"""
        text = re.sub(r"\*\*(.*?)\*\*", r"<b>\1</b>", text)
        text = re.sub(r"\*([^*]+)\*", r"<i>\1</i>", text)
        text = re.sub(r"`(.*?)`", r"<font name='Courier'>\1</font>", text)
        return text

    def _echo(self, text: str):
        if self.echo:
            print(text)

    def _flush_list(self):
        self.current_list = None

    def log_text(self, text: str):
        text = text.strip()
        if not text:
            return
        self._echo(text)

        for prefix, style in (("### ", "H3"), ("## ", "H2"), ("# ", "H1")):
            if text.startswith(prefix):
                self._flush_list()
                self.story.append(Paragraph(text[len(prefix):], self.styles[style]))
                return

        if text.startswith("- "):
            item = ListItem(Paragraph(self._format_md(text[2:].strip()), self.styles["Normal"]))
            if self.current_list is None:
                self.current_list = ListFlowable(
                    [item],
                    bulletType="bullet",
                    leftIndent=18,
                    bulletFontSize=10,
                    start=None,
                    spaceBefore=0,
                    spaceAfter=12,
                )
                self.story.append(self.current_list)
            else:
                self.current_list._flowables.append(item)
            return

        self._flush_list()
        self.story.append(Paragraph(self._format_md(text), self.styles["Normal"]))

    def log_code(self, code: str):
        """Log preformatted code block"""
        code = code.rstrip()
        self._echo(code)
        self.story.append(Preformatted(code, self.styles["CodeBlock"]))
        self.story.append(Spacer(1, 0.18 * inch))

    def log_dataframe(self, df: pd.DataFrame, title: Optional[str] = None, max_rows: int = 10):
        """Log a pandas DataFrame as a formatted table"""
        self._flush_list()

        if title:
            self.story.append(Paragraph(f"<b>{title}</b>", self.styles["Normal"]))
            self.story.append(Spacer(1, 0.1 * inch))

        if len(df) == 0:
            table_text = "(no rows)"
        elif len(df) > max_rows:
            shown = pd.concat([df.head(max_rows // 2), df.tail(max_rows // 2)])
            table_text = shown.to_string() + f"\n... ({len(df) - max_rows} more rows)"
        else:
            table_text = df.to_string()

        self._echo(table_text)
        self.story.append(Preformatted(table_text, self.styles["CodeBlock"]))
        self.story.append(Spacer(1, 0.15 * inch))

    def log_image(
        self,
        path: str,
        title: Optional[str] = None,
        caption: Optional[str] = None,
        width: float = 5 * inch,
    ):
        """Add an image to the PDF with auto-scaling"""
        self._echo(f"[Image: {path}] {caption or ''}")
        if not os.path.exists(path):
            self.log_text(f"[Missing image: {path}]")
            return

        iw, ih = ImageReader(path).getSize()
        aspect = ih / float(iw)
        height = width * aspect

        max_height = 9 * inch
        if height > max_height:
            height = max_height
            width = height / aspect

        max_width = A4[0] - 2 * inch
        if width > max_width:
            width = max_width
            height = width * aspect

        self.story.append(Image(path, width=width, height=height))
        if caption or title:
            caption_text = f"<b>{title}</b>" if title else ""
            if caption:
                caption_text = f"{caption_text}: {caption}" if title else caption
            self.story.append(Paragraph(caption_text, self.styles["Normal"]))
        self.story.append(Spacer(1, 0.2 * inch))

    def save(self):
        """Build the PDF"""
        self.doc.build(self.story)
        self._echo(f"✔ PDF saved to {self.path}")
        return self.path
