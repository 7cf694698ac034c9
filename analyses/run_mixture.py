from __future__ import annotations

import argparse
import ast
import csv
import math
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from expertmix.config import MixtureConfig, model_from_name
from expertmix.ensemblers.mixture import MixtureEngine, MixtureResult
from expertmix.evaluation.evaluation_helpers import cumulative_loss, hhi_from_weights, loss_table, mae, mape, rmse
from expertmix.evaluation.oracle import OracleEngine
from expertmix.losses import loss_from_name


def parse_params(raw: Optional[List[str]]) -> Dict[str, float]:
    """`eta=0.5 alpha=0.1` -> {"eta": 0.5, "alpha": 0.1}; non-numeric values kept as strings."""
    out: Dict[str, float] = {}
    for item in raw or []:
        key, sep, value = item.partition("=")
        if not sep:
            raise ValueError(f"expected key=value, got {item!r}")
        try:
            out[key.strip()] = float(ast.literal_eval(value.strip()))
        except (ValueError, SyntaxError):
            out[key.strip()] = value.strip()
    return out


def load_frame(path: Path, target: str, experts: Optional[List[str]]) -> tuple[np.ndarray, np.ndarray, List[str]]:
    df = pd.read_csv(path)
    if target not in df.columns:
        raise ValueError(f"target column {target!r} not in {list(df.columns)}")
    if experts is None:
        experts = [c for c in df.columns if c != target and pd.api.types.is_numeric_dtype(df[c])]
    if not experts:
        raise ValueError("no expert columns")
    return df[experts].to_numpy(dtype=float), df[target].to_numpy(dtype=float), list(experts)


def avg_finite(x: np.ndarray) -> float:
    x = np.asarray(x, dtype=float).reshape(-1)
    m = np.isfinite(x)
    if not np.any(m):
        return math.nan
    return float(np.mean(x[m]))


def mixture_row(name: str, y: np.ndarray, res: MixtureResult) -> Dict[str, float]:
    return {
        "method": name,
        "loss": float(res.state.mixture_loss),
        "rmse": rmse(y, res.yhat),
        "mae": mae(y, res.yhat),
        "mape": mape(y, res.yhat),
        "avg_hhi": avg_finite(hhi_from_weights(res.weights)) if res.state.config.model.simplex else math.nan,
        "rejected_rounds": float(len(res.errors)),
    }


def write_csv(path: Path, rows: Iterable[Dict[str, float]]) -> None:
    rows_list = list(rows)
    if not rows_list:
        return
    fieldnames = sorted({k for r in rows_list for k in r.keys()})
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="") as f:
        w = csv.DictWriter(f, fieldnames=fieldnames)
        w.writeheader()
        for r in rows_list:
            w.writerow(r)


def write_report(
    path: Path, config: MixtureConfig, res: MixtureResult, model_table: pd.DataFrame, oracle_table: pd.DataFrame
) -> None:
    lines: List[str] = []
    lines.append("# Online Mixture Report")
    lines.append("")
    lines.append(f"- Model: `{config.model}`")
    lines.append(f"- Loss: `{config.loss}` (gradient trick: {config.gradient_trick})")
    lines.append(f"- Rounds: {res.state.t} accepted, {len(res.errors)} rejected")
    if "candidate_weights" in res.meta:
        lines.append(f"- Calibrated hyperparameters (largest outer weight): {res.state.inner.best_candidate()}")
    lines.append("")

    lines.append("## Cumulative Loss (Lower Is Better)")
    for _, r in res.loss_table().iterrows():
        lines.append(f"- {r['Model']}: total={r['Cumulative loss']:.4f}, mean={r['Mean loss']:.4f}")
    lines.append("")

    lines.append("## Total Loss: Mixture, Oracles and Best Forecaster")
    for _, r in model_table.iterrows():
        lines.append(f"- {r['Model']}: {r['Loss']:.4f}")
    lines.append("")

    lines.append("## Hindsight Oracles")
    for _, r in oracle_table.iterrows():
        lines.append(f"- {r['Oracle']}: loss={r['Loss']:.4f}, RMSE={r['RMSE']:.4f}, MAPE={r['MAPE']:.4f}")
    lines.append("")

    if res.errors:
        lines.append("## Rejected Rounds")
        for t, msg in sorted(res.errors.items()):
            lines.append(f"- {t}: {msg}")
        lines.append("")

    path.write_text("\n".join(lines) + "\n")


def main() -> None:
    parser = argparse.ArgumentParser(description="Aggregate expert forecasts online and compare with hindsight oracles.")
    parser.add_argument("csv", type=str, help="CSV file with one column per expert and a target column")
    parser.add_argument("--target", type=str, default="y")
    parser.add_argument("--experts", type=str, nargs="+", default=None)
    parser.add_argument("--model", type=str, default="EWA")
    parser.add_argument("--param", type=str, nargs="*", default=None, help="hyperparameters as key=value")
    parser.add_argument("--loss", type=str, default="square")
    parser.add_argument("--tau", type=float, default=None)
    trick = parser.add_mutually_exclusive_group()
    trick.add_argument("--gradient-trick", dest="gradient_trick", action="store_const", const=True, default=None)
    trick.add_argument("--no-gradient-trick", dest="gradient_trick", action="store_const", const=False)
    parser.add_argument("--allow-zero-target", action="store_true")
    parser.add_argument("--max-switches", type=int, nargs="*", default=[0, 5])
    parser.add_argument("--out-dir", type=str, default="analyses/results")
    args = parser.parse_args()

    F, y, names = load_frame(Path(args.csv), args.target, args.experts)
    config = MixtureConfig(
        model=model_from_name(args.model, **parse_params(args.param)),
        loss=loss_from_name(args.loss, tau=args.tau),
        gradient_trick=args.gradient_trick,
        allow_zero_target=args.allow_zero_target,
    )
    res = MixtureEngine(config).run(F, y, expert_names=names)

    oracles = OracleEngine(loss=config.loss, allow_zero_target=args.allow_zero_target)
    rows = [
        ("expert", oracles.best_expert(F, y, expert_names=names)),
        ("convex", oracles.best_convex(F, y, expert_names=names)),
        ("linear", oracles.best_linear(F, y, expert_names=names)),
    ]
    rows += [(f"shifting({m})", oracles.best_shifting(F, y, max_switches=m)) for m in args.max_switches]
    oracle_table = pd.DataFrame(
        [(label, r.loss, r.metrics["oracle"]["rmse"], r.metrics["oracle"]["mape"]) for label, r in rows],
        columns=["Oracle", "Loss", "RMSE", "MAPE"],
    )

    yhats = {f"mixture:{config.model.name}": res.yhat}
    yhats.update({f"oracle:{label}": r.prediction for label, r in rows})
    model_table = loss_table(y, F, yhats, metric=config.loss, forecaster_names=names)

    out_dir = Path(args.out_dir).resolve()
    out_dir.mkdir(parents=True, exist_ok=True)
    predictions_csv = out_dir / "mixture_predictions.csv"
    weights_csv = out_dir / "mixture_weights.csv"
    summary_csv = out_dir / "mixture_summary.csv"
    report_md = out_dir / "mixture_report.md"

    predictions = pd.DataFrame(
        {"y": y, "yhat": res.yhat, "loss": res.loss_t, "cumulative_loss": cumulative_loss(res.loss_t)}
    )
    predictions.to_csv(predictions_csv, index_label="t")
    res.weights_frame().to_csv(weights_csv, index_label="t")
    summary_rows = [mixture_row(config.model.name, y, res)]
    summary_rows += [
        {"method": f"oracle:{label}", "loss": float(r.loss), "rmse": r.metrics["oracle"]["rmse"],
         "mae": mae(y, r.prediction), "mape": r.metrics["oracle"]["mape"]}
        for label, r in rows
    ]
    write_csv(summary_csv, summary_rows)
    write_report(report_md, config, res, model_table, oracle_table)

    print(res.loss_table().to_string(index=False))
    print()
    print(oracle_table.to_string(index=False))
    print()
    print(model_table.to_string(index=False))
    print()
    print(f"Wrote: {predictions_csv}")
    print(f"Wrote: {weights_csv}")
    print(f"Wrote: {summary_csv}")
    print(f"Wrote: {report_md}")


if __name__ == "__main__":
    main()
