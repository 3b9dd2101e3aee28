"""Default settings for model construction and solving."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


# Options applied before any factory-level solver_options.
DEFAULT_SOLVER_OPTIONS: Dict[str, Dict[str, Any]] = {
    "ipopt": {"tol": 1e-6, "max_iter": 3000},
    "gurobi": {"TimeLimit": 3600, "MIPGap": 0.01},
    "glpk": {},
    "cbc": {},
}


@dataclass(frozen=True)
class ModelConfig:
    """
    Settings shared by all formulations.

    Attributes
    ----------
    recourse_cost : float
        Cost in $/MWh of deviating from the first-stage schedule in a
        scenario of an uncertainty model.
    enforce_ramp_limits : bool
        Bound period-to-period generator changes by each generator's ramp rate.
    congestion_threshold : float
        Fraction of a branch rating above which the branch is reported as congested.
    default_angle_limit_deg : float
        Angle-difference limit used where a case file gives none.
    """
    recourse_cost: float = 50.0
    enforce_ramp_limits: bool = False
    congestion_threshold: float = 0.99
    default_angle_limit_deg: float = 60.0


DEFAULT_CONFIG = ModelConfig()


def solver_options(solver: str, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Merge the default options of ``solver`` with ``overrides``."""
    options = dict(DEFAULT_SOLVER_OPTIONS.get(solver, {}))
    if overrides:
        options.update(overrides)
    return options
