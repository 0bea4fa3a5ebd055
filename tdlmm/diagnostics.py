import numpy as np
from typing import Any, Dict, List, Optional, Union
from dataclasses import dataclass, asdict

import arviz as az
import pandas as pd

STEP_NAMES = ("grow", "prune", "change", "switch")


class DiagnosticsLog:
    """
    Append-only record of a TDLMM run.

    - `tree_accept`: one row per tree update (when diagnostics are enabled)
    - `dlm`: one row per terminal node per recorded sweep
    - `mix`: one row per interaction term per recorded sweep
    - `trace`: hyperparameter values per recorded sweep
    - `fhat_sum`: running sum of the fitted exposure effect over recorded sweeps
    """
    TREE_ACCEPT_COLUMNS = ("tree", "step", "success", "exposure", "n_term", "step_mhr", "ratio")
    DLM_COLUMNS = ("record", "pair", "tree", "exposure", "xmin", "xmax", "tmin", "tmax", "est", "variance")
    MIX_COLUMNS = ("record", "pair", "exp_a", "tmin_a", "tmax_a", "exp_b", "tmin_b", "tmax_b", "est", "variance")

    def __init__(self):
        self.tree_accept: List[tuple] = []
        self.dlm: List[tuple] = []
        self.mix: List[tuple] = []
        self.trace: Dict[str, list] = {}
        self.fhat_sum: Optional[np.ndarray] = None
        self.n_records = 0

    def add_tree_accept(self, tree, step, success, exposure, n_term, step_mhr, ratio):
        self.tree_accept.append((tree, step, success, exposure, n_term, step_mhr, ratio))

    def add_dlm(self, *row):
        self.dlm.append(tuple(row))

    def add_mix(self, *row):
        self.mix.append(tuple(row))

    def add_record(self, values: Dict[str, Any], fhat: np.ndarray):
        for key, value in values.items():
            self.trace.setdefault(key, []).append(np.copy(value))
        if self.fhat_sum is None:
            self.fhat_sum = np.zeros_like(fhat, dtype=np.float64)
        self.fhat_sum += fhat
        self.n_records += 1

    def trace_array(self, key) -> np.ndarray:
        if key not in self.trace:
            raise KeyError(f"'{key}' was not recorded.")
        return np.asarray(self.trace[key])

    @property
    def fhat(self):
        if self.n_records == 0:
            raise ValueError("No sweeps were recorded.")
        return self.fhat_sum / self.n_records

    def frames(self) -> Dict[str, pd.DataFrame]:
        return {
            "tree_accept": pd.DataFrame(self.tree_accept, columns=list(self.TREE_ACCEPT_COLUMNS)),
            "dlm": pd.DataFrame(self.dlm, columns=list(self.DLM_COLUMNS)),
            "mix": pd.DataFrame(self.mix, columns=list(self.MIX_COLUMNS)),
        }


@dataclass
class MoveAcceptance:
    selected: int
    proposed: int
    accepted: int

    @property
    def acc_rate(self) -> float:
        return self.accepted / self.proposed if self.proposed > 0 else np.nan

    @property
    def prop_rate(self) -> float:
        return self.proposed / self.selected if self.selected > 0 else np.nan

    def __post_init__(self):
        self.selected = int(self.selected)
        self.proposed = int(self.proposed)
        self.accepted = int(self.accepted)

    def combine(self, other: 'MoveAcceptance') -> 'MoveAcceptance':
        return MoveAcceptance(
            selected=self.selected + other.selected,
            proposed=self.proposed + other.proposed,
            accepted=self.accepted + other.accepted,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), "acc_rate": float(self.acc_rate), "prop_rate": float(self.prop_rate)}


def move_acceptance(logs: List[DiagnosticsLog]) -> Dict[str, MoveAcceptance]:
    """
    Per-step selection/proposal/acceptance counts from the tree-accept rows.

    A row's `success` is 0 when no candidate was formed, 1 when a candidate
    was rejected and 2 when it was accepted.
    """
    result: Dict[str, MoveAcceptance] = {}
    overall = MoveAcceptance(0, 0, 0)
    for step, name in enumerate(STEP_NAMES):
        acc = MoveAcceptance(0, 0, 0)
        for log in logs:
            rows = np.asarray(log.tree_accept, dtype=np.float64).reshape(-1, len(DiagnosticsLog.TREE_ACCEPT_COLUMNS))
            sel = rows[rows[:, 1] == step]
            acc = acc.combine(MoveAcceptance(
                selected=len(sel),
                proposed=np.count_nonzero(sel[:, 2] >= 1),
                accepted=np.count_nonzero(sel[:, 2] == 2),
            ))
        result[name] = acc
        overall = overall.combine(acc)
    result["overall"] = overall
    return result


def _collect_chain_series(logs: List[DiagnosticsLog], key: str):
    per_chain = [log.trace_array(key).reshape(len(log.trace[key]), -1) for log in logs]
    min_len = min(len(v) for v in per_chain)
    if min_len == 0:
        raise ValueError("No recorded draws available in at least one chain.")
    series = np.stack([v[:min_len] for v in per_chain], axis=0).astype(np.float64)
    return series, series.shape[0], series.shape[1]


def compute_diagnostics(model: Any, key: str = "sigma2") -> Dict[str, Any]:
    """
    Compute MCMC diagnostics for one or more fitted chains.

    Metrics:
    - R-hat (rank normalized, split) via ArviZ
    - bulk ESS via ArviZ
    - MCSE (mean MC standard error)
    - Tree-move acceptance statistics

    Parameters
    ----------
    model : TDLMM, DiagnosticsLog, or a list of either
        Fitted chains.
    key : str
        Recorded quantity to diagnose, e.g. 'sigma2', 'nu', 'mu_exp' or 'tau'.
        Vector-valued quantities get one metrics row per component.

    Returns
    -------
    dict
        {
          'meta': { 'n_chains', 'n_draws' },
          'metrics': pandas.DataFrame with columns [...metrics...],
          'acceptance': { per-move stats and 'overall' }
        }
    """
    chains: List[Union[DiagnosticsLog, Any]] = list(model) if isinstance(model, (list, tuple)) else [model]
    logs = []
    for chain in chains:
        if isinstance(chain, DiagnosticsLog):
            logs.append(chain)
        elif getattr(chain, "is_fitted", False):
            logs.append(chain.log)
        else:
            raise ValueError("Model must be fitted before diagnostics.")

    series, n_chains, n_draws = _collect_chain_series(logs, key)
    idata = az.from_dict(posterior={key: series})

    rhat_arr = np.asarray(az.rhat(idata, method="rank")[key].values)
    ess_arr = np.asarray(az.ess(idata, method="bulk")[key].values)
    mcse_arr = np.asarray(az.mcse(idata)[key].values)

    flat = series.reshape(-1, series.shape[-1])
    sd_vec = np.std(flat, axis=0, ddof=1)
    with np.errstate(invalid='ignore', divide='ignore'):
        mcse_over_sd_vec = np.where(sd_vec > 0, mcse_arr / sd_vec, np.nan)

    metrics_df = pd.DataFrame({
        "rhat": rhat_arr.reshape(-1),
        "ess_bulk": ess_arr.reshape(-1),
        "mcse_mean": mcse_arr.reshape(-1),
        "mcse_over_sd": mcse_over_sd_vec.reshape(-1),
    })

    return {
        "meta": {
            "n_chains": int(n_chains),
            "n_draws": int(n_draws)
        },
        "metrics": metrics_df,
        "acceptance": move_acceptance(logs),
    }

__all__ = [
    "DiagnosticsLog",
    "MoveAcceptance",
    "compute_diagnostics",
    "move_acceptance",
]
