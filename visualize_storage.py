#!/usr/bin/env python3
"""
Document Size Charts
=========================================================
Charts the storage cost of embedded vs. referenced enrollments.

Usage:
    python visualize_storage.py
    python visualize_storage.py --data-dir ./output
    python visualize_storage.py --output-dir ./charts
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

import matplotlib
matplotlib.use("Agg")  # headless rendering
import matplotlib.pyplot as plt
import pandas as pd

from enrollment_engine import (
    EmbeddedEnrollment,
    ReferencedEnrollment,
    SizeComparison,
    field_sizes,
)


# ── Theme ─────────────────────────────────────────────────────────────────

THEME_COLORS = {
    "primary": "#1B3A5C",      # dark navy
    "secondary": "#2E86AB",    # bright blue
    "accent": "#F18F01",       # orange
    "text": "#2C3E50",         # dark text
}

VARIANT_COLORS = {
    "referenced": THEME_COLORS["secondary"],
    "embedded": THEME_COLORS["accent"],
}


def apply_theme():
    """Size charts: grid on the value axis, theme text colour, tight saves."""
    plt.rcParams.update({
        "axes.titleweight": "bold",
        "axes.grid": True,
        "axes.grid.axis": "y",
        "grid.alpha": 0.3,
        "text.color": THEME_COLORS["text"],
        "axes.labelcolor": THEME_COLORS["text"],
        "savefig.bbox": "tight",
    })


# ── Frames ────────────────────────────────────────────────────────────────

def comparison_frame(comparisons: list[tuple[str, SizeComparison]]) -> pd.DataFrame:
    """One row per labelled comparison; unavailable comparisons are dropped."""
    rows = [
        {
            "label": label,
            "referenced": c.referenced_bytes,
            "embedded": c.embedded_bytes,
            "ratio": c.ratio,
            "duplicated_fields": c.duplicated_fields,
        }
        for label, c in comparisons
        if c.available
    ]
    return pd.DataFrame(rows, columns=["label", "referenced", "embedded", "ratio", "duplicated_fields"])


def field_frame(referenced: ReferencedEnrollment, embedded: EmbeddedEnrollment) -> pd.DataFrame:
    """Bytes per top-level field, one column per variant (0 where absent)."""
    frame = pd.DataFrame({
        "referenced": pd.Series(field_sizes(referenced), dtype="int64"),
        "embedded": pd.Series(field_sizes(embedded), dtype="int64"),
    })
    return frame.fillna(0).astype("int64").sort_index()


# ── Chart Builders ────────────────────────────────────────────────────────

def chart_document_sizes(frame: pd.DataFrame, output_dir: Path):
    """Grouped bars of serialized size per comparison, ratio annotated."""
    if frame.empty:
        return None

    fig, ax = plt.subplots(figsize=(8, 5))
    x = range(len(frame))
    width = 0.38

    for offset, variant in ((-width / 2, "referenced"), (width / 2, "embedded")):
        bars = ax.bar(
            [i + offset for i in x], frame[variant], width,
            color=VARIANT_COLORS[variant], label=variant.title(),
            edgecolor="white", linewidth=0.5,
        )
        for bar, val in zip(bars, frame[variant]):
            ax.text(
                bar.get_x() + bar.get_width() / 2, bar.get_height(),
                f"{val:,}", ha="center", va="bottom",
                fontsize=9, fontweight="bold", color=THEME_COLORS["text"],
            )

    for i, ratio in zip(x, frame["ratio"]):
        ax.annotate(
            f"{ratio:.1f}x", (i, frame["embedded"].iloc[i]),
            textcoords="offset points", xytext=(0, 18),
            ha="center", fontsize=10, color=THEME_COLORS["primary"],
        )

    ax.set_xticks(list(x))
    ax.set_xticklabels(frame["label"])
    ax.set_ylabel("Serialized size (bytes)")
    ax.legend(loc="upper left", framealpha=0.9)
    fig.suptitle(
        "Enrollment Document Size",
        fontsize=16, fontweight="bold", color=THEME_COLORS["primary"], y=1.02,
    )

    path = output_dir / "document_sizes.png"
    fig.savefig(path)
    plt.close(fig)
    return path


def chart_field_breakdown(
    referenced: ReferencedEnrollment,
    embedded: EmbeddedEnrollment,
    output_dir: Path,
):
    """Stacked bars showing which fields make up each variant's size."""
    frame = field_frame(referenced, embedded)

    fig, ax = plt.subplots(figsize=(8, 5))
    frame.T.plot(kind="barh", stacked=True, ax=ax, colormap="tab20", edgecolor="white")
    ax.set_xlabel("Serialized size (bytes)")
    ax.legend(title="Field", bbox_to_anchor=(1.02, 1), loc="upper left", fontsize=9)
    fig.suptitle(
        "Size by Field",
        fontsize=16, fontweight="bold", color=THEME_COLORS["primary"], y=1.02,
    )

    path = output_dir / "field_breakdown.png"
    fig.savefig(path)
    plt.close(fig)
    return path


# ── CLI ───────────────────────────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(description="Enrollment document size charts")
    parser.add_argument(
        "--data-dir",
        default="./output",
        help="Directory containing size_comparison.json",
    )
    parser.add_argument(
        "--output-dir",
        default="./output/charts",
        help="Directory to save charts",
    )
    args = parser.parse_args()

    data_path = Path(args.data_dir) / "size_comparison.json"
    if not data_path.exists():
        print(f"ERROR: {data_path} not found.")
        print("Run the demo first:")
        print("  python enrollment_demo.py --run-all")
        sys.exit(1)

    with open(data_path) as f:
        data = json.load(f)

    comparison = SizeComparison(
        referenced_bytes=data["referenced_bytes"],
        embedded_bytes=data["embedded_bytes"],
        ratio=data["ratio"],
        duplicated_fields=data.get("duplicated_fields", 0),
    )

    out = Path(args.output_dir)
    out.mkdir(parents=True, exist_ok=True)
    apply_theme()

    path = chart_document_sizes(comparison_frame([("stored", comparison)]), out)
    if path is None:
        print("Comparison unavailable; no chart generated.")
        sys.exit(1)
    print(f"  Document Sizes            -> {path}")


if __name__ == "__main__":
    main()
