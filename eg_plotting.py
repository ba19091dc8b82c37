from __future__ import annotations

import logging
from typing import Dict, Optional, Sequence

import numpy as np

from eg_gain import (
    VARIANTS,
    VARIANT_LABELS,
    IntervalSummary,
    Variant,
)


VARIANT_COLORS = {
    Variant.BASELINE: "0.45",
    Variant.QUALITY_ADJUSTED: "tab:orange",
    Variant.COMBINED: "C0",
}
VARIANT_STYLES = {
    Variant.BASELINE: (0, (6, 4)),
    Variant.QUALITY_ADJUSTED: (0, (3, 3, 1.5, 3)),
    Variant.COMBINED: "solid",
}

_MATPLOTLIB_STYLE_READY = False


def _ensure_matplotlib_style(plt) -> None:
    global _MATPLOTLIB_STYLE_READY
    if not _MATPLOTLIB_STYLE_READY:
        try:
            plt.style.use("ggplot")
        except OSError:
            pass
        _MATPLOTLIB_STYLE_READY = True


def _plot_score_sweep(
    by_interval: Sequence[IntervalSummary],
    out_png: str,
    best: Optional[Dict[Variant, IntervalSummary]] = None,
    title: str = "Weighted accuracy score by processing interval",
    show_success: bool = True,
) -> None:
    try:
        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("matplotlib is required for plotting. Install with: pip install matplotlib") from exc

    _ensure_matplotlib_style(plt)

    if not by_interval:
        logging.warning("No interval summaries; skipping plot generation.")
        return

    intervals = np.asarray([s.interval for s in by_interval], dtype=np.float64)

    if show_success:
        fig, (ax, ax_rate) = plt.subplots(2, 1, figsize=(12, 9), sharex=True, gridspec_kw={"height_ratios": [3, 1]})
    else:
        fig, ax = plt.subplots(figsize=(12, 7))
        ax_rate = None

    for variant in VARIANTS:
        scores = np.asarray([s.variant(variant).weighted_score for s in by_interval], dtype=np.float64)
        ax.plot(
            intervals,
            scores,
            color=VARIANT_COLORS[variant],
            linestyle=VARIANT_STYLES[variant],
            linewidth=1.8 if variant is Variant.COMBINED else 1.2,
            label=VARIANT_LABELS[variant],
        )
        if best and variant in best:
            opt = best[variant]
            y = opt.variant(variant).weighted_score
            ax.scatter([opt.interval], [y], color=VARIANT_COLORS[variant], marker="o", zorder=3)
            ax.annotate(
                f"{opt.interval:.2f} m",
                (opt.interval, y),
                textcoords="offset points",
                xytext=(0, 8),
                ha="center",
                fontsize=8,
                color=VARIANT_COLORS[variant],
            )
        if ax_rate is not None:
            rates = np.asarray([s.variant(variant).success_rate for s in by_interval], dtype=np.float64)
            ax_rate.plot(
                intervals,
                rates,
                color=VARIANT_COLORS[variant],
                linestyle=VARIANT_STYLES[variant],
                linewidth=1.0,
            )

    ax.axhline(0.0, color="0.7", linewidth=0.8)
    ax.set_ylabel("Weighted score")
    ax.set_title(title)
    ax.legend(loc="best")
    if ax_rate is not None:
        ax_rate.set_ylabel("Within 90-110 % (%)")
        ax_rate.set_ylim(0, 100)
        ax_rate.set_xlabel("Processing interval (m)")
    else:
        ax.set_xlabel("Processing interval (m)")

    fig.tight_layout()
    fig.savefig(out_png, dpi=150)
    plt.close(fig)
    logging.info("Wrote: %s", out_png)
