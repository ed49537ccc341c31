"""Fit a sparse DFM to a CSV panel and plot the estimated loadings.

The CSV must hold the time index in its first column and one series per
remaining column. Non-stationary series can be first-differenced with
``--diff`` before estimation.
"""

import argparse
import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from pathlib import Path

from SPDFM.DFM import print_path_summary
from SPDFM.estimate import fit_sparse_dfm, forecast_sparse_dfm, logspace

BASE_DIR = Path(__file__).resolve().parent


def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Estimate a sparse dynamic factor model from a CSV panel"
    )
    parser.add_argument("input", type=str, help="Path to the CSV panel")
    parser.add_argument(
        "--r", type=int, default=2, help="Number of factors (default: 2)"
    )
    parser.add_argument(
        "--q",
        type=int,
        default=0,
        help="Number of leading series left unregularised (default: 0)",
    )
    parser.add_argument(
        "--alg",
        type=str,
        default="EM-sparse",
        choices=["PCA", "2Stage", "EM", "EM-sparse"],
        help="Estimation algorithm (default: EM-sparse)",
    )
    parser.add_argument(
        "--err",
        type=str,
        default="AR1",
        choices=["AR1", "IID"],
        help="Idiosyncratic error model (default: AR1)",
    )
    parser.add_argument(
        "--kalman",
        type=str,
        default="univariate",
        choices=["univariate", "multivariate"],
        help="Kalman filter formulation (default: univariate)",
    )
    parser.add_argument(
        "--alphas",
        type=str,
        default="-2,3,100",
        help="L1 grid as 'start,stop,num' in log10 units (default: '-2,3,100')",
    )
    parser.add_argument(
        "--max-iter", type=int, default=100, help="Maximum EM iterations"
    )
    parser.add_argument(
        "--threshold", type=float, default=1e-4, help="EM convergence tolerance"
    )
    parser.add_argument(
        "--no-standardize",
        action="store_true",
        help="Fit on the raw scale instead of standardised series",
    )
    parser.add_argument(
        "--diff", action="store_true", help="First-difference every series"
    )
    parser.add_argument(
        "--steps", type=int, default=4, help="Forecast horizon (default: 4)"
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default=str(BASE_DIR / "output"),
        help="Directory for tables and figures",
    )
    parser.add_argument("--verbose", action="store_true", help="Print progress")
    return parser.parse_args(argv)


def load_panel(path: str, diff: bool = False) -> pd.DataFrame:
    """Read the CSV panel, coercing non-numeric entries to ``NaN``."""
    frame = pd.read_csv(path, index_col=0)
    frame = frame.apply(pd.to_numeric, errors="coerce")
    if diff:
        frame = frame.diff().iloc[1:]
    return frame


def main(argv=None):
    """Run the estimation and write results to ``--output-dir``."""
    args = parse_args(argv)
    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    panel = load_panel(args.input, diff=args.diff)
    n, p = panel.shape
    missing = float(panel.isna().to_numpy().mean())
    print(f"Panel: {n} periods, {p} series, {100 * missing:.1f}% missing")

    start, stop, num = args.alphas.split(",")
    alphas = logspace(float(start), float(stop), int(num))

    result = fit_sparse_dfm(
        panel,
        r=args.r,
        q=args.q,
        alphas=alphas,
        alg=args.alg,
        err=args.err,
        kalman=args.kalman,
        standardize=not args.no_standardize,
        max_iter=args.max_iter,
        threshold=args.threshold,
        verbose=args.verbose,
    )

    if result.path is not None:
        if not args.verbose:
            print_path_summary(result.path)
        plot_bic_path(result, output_dir / "bic_path.pdf")

    loadings = result.loadings_frame()
    loadings.to_csv(output_dir / "loadings.csv")
    print("Saved: loadings.csv")
    result.factors_frame().to_csv(output_dir / "factors.csv")
    print("Saved: factors.csv")
    result.summary().to_csv(output_dir / "summary.csv")
    print("Saved: summary.csv")
    plot_loadings(loadings, output_dir / "loadings.pdf")

    if args.steps > 0:
        fcst, std = forecast_sparse_dfm(result, args.steps, return_std=True)
        table = pd.DataFrame(fcst, columns=panel.columns)
        table.index = [f"h{h + 1}" for h in range(args.steps)]
        table.to_csv(output_dir / "forecast.csv")
        pd.DataFrame(std, columns=panel.columns, index=table.index).to_csv(
            output_dir / "forecast_std.csv"
        )
        print("Saved: forecast.csv")

    print("Done.")


def plot_loadings(loadings: pd.DataFrame, output_path: Path) -> None:
    """Heat map of the loadings; exact zeros are left blank."""
    values = loadings.to_numpy()
    masked = np.ma.masked_where(values == 0, values)
    bound = float(np.max(np.abs(values))) or 1.0

    fig, ax = plt.subplots(figsize=(1.5 + 1.2 * values.shape[1], 0.3 * values.shape[0] + 2))
    im = ax.imshow(masked, cmap="RdBu_r", vmin=-bound, vmax=bound, aspect="auto")
    ax.set_xticks(np.arange(values.shape[1]))
    ax.set_xticklabels(loadings.columns)
    ax.set_yticks(np.arange(values.shape[0]))
    ax.set_yticklabels(loadings.index, fontsize=8)
    ax.set_title("Estimated loadings")
    fig.colorbar(im, ax=ax)
    fig.tight_layout()
    fig.savefig(output_path)
    plt.close(fig)
    print(f"Saved: {output_path.name}")


def plot_bic_path(result, output_path: Path) -> None:
    """Plot BIC against the L1 strength and mark the selected value."""
    path = result.path
    fig, ax = plt.subplots(figsize=(8, 5))
    ax.plot(path.alphas, path.bic, "o-", color="steelblue", linewidth=2, markersize=4)
    ax.axvline(path.best_alpha, color="coral", linestyle="--", label="Selected")
    ax.set_xscale("log")
    ax.set_xlabel("alpha")
    ax.set_ylabel("BIC")
    ax.set_title("Regularisation path")
    ax.legend()
    ax.grid(True, alpha=0.3)
    fig.tight_layout()
    fig.savefig(output_path)
    plt.close(fig)
    print(f"Saved: {output_path.name}")


if __name__ == "__main__":
    main()
