"""Solving MPOPF models and extracting their results."""
from __future__ import annotations

import logging
import math
import os
import re
import tempfile
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pandas as pd
from pyomo.environ import value
from pyomo.opt import SolverFactory, TerminationCondition

from ..config import solver_options
from ..exceptions import SolverUnavailableError
from .models import AbstractMPOPFModel, MPOPFModelUncertainty

logger = logging.getLogger(__name__)

_SUCCESS = (
    TerminationCondition.optimal,
    TerminationCondition.locallyOptimal,
    TerminationCondition.globallyOptimal,
    TerminationCondition.feasible,
)

# iter  objective  inf_pr  inf_du ...; restoration iterations carry an "r" suffix
_IPOPT_ITERATION = re.compile(
    r"^\s*(\d+)r?\s+([-+]?\d+\.\d+[eE][-+]\d+)\s+(\d+\.\d+[eE][-+]\d+)\s+(\d+\.\d+[eE][-+]\d+)"
)


@dataclass
class OptimizationResult:
    """Outcome of one solver run."""
    success: bool
    termination_condition: str
    objective_value: Optional[float] = None
    solve_time: float = 0.0
    iterations: List[Dict[str, float]] = field(default_factory=list)


def parse_solver_log(text: str) -> List[Dict[str, float]]:
    """Extract the Ipopt iteration table (objective, primal and dual infeasibility)."""
    iterations = []
    for line in text.splitlines():
        match = _IPOPT_ITERATION.match(line)
        if match:
            iterations.append({
                'iteration': int(match.group(1)),
                'objective': float(match.group(2)),
                'inf_pr': float(match.group(3)),
                'inf_du': float(match.group(4)),
            })
    return iterations


def _solve(mp: AbstractMPOPFModel, tee: bool = False, logfile: Optional[str] = None) -> OptimizationResult:
    opt = SolverFactory(mp.optimizer)
    if opt is None or not opt.available(exception_flag=False):
        raise SolverUnavailableError(f"Solver '{mp.optimizer}' is not available")
    for key, val in solver_options(mp.optimizer, mp.solver_options).items():
        opt.options[key] = val

    logger.info("Solving %s with %s...", mp.model.name, mp.optimizer)
    kwargs = {'tee': tee, 'load_solutions': False}
    if logfile is not None:
        kwargs['logfile'] = logfile

    start = time.perf_counter()
    results = opt.solve(mp.model, **kwargs)
    elapsed = time.perf_counter() - start

    term = results.solver.termination_condition
    if term in _SUCCESS:
        mp.model.solutions.load_from(results)
        mp.results = results
        return OptimizationResult(
            success=True,
            termination_condition=str(term),
            objective_value=value(mp.model.obj),
            solve_time=elapsed,
        )

    mp.results = None
    return OptimizationResult(success=False, termination_condition=str(term), solve_time=elapsed)


def optimize_model(model: AbstractMPOPFModel, tee: bool = False) -> OptimizationResult:
    """
    Optimize the given MPOPF model and print the optimal cost.

    Parameters
    ----------
    model : AbstractMPOPFModel
        The MPOPF model to optimize.
    tee : bool, optional
        Stream the solver output.

    Returns
    -------
    OptimizationResult
    """
    result = _solve(model, tee=tee)
    if result.success:
        print(f"Optimal Cost: {result.objective_value}")
    else:
        print(f"✗ Solver termination: {result.termination_condition}")
    return result


def optimize_model_with_plot(model: AbstractMPOPFModel, save_path: Optional[str] = None,
                             tee: bool = False) -> OptimizationResult:
    """
    Optimize the given MPOPF model, print the optimal cost, and plot the optimization process.

    The solver log is captured to recover the per-iteration objective and
    primal infeasibility (Ipopt). The figure shows that trajectory next to
    the scheduled generation per period; it is saved to ``save_path`` or shown.
    """
    from ..visualize import plot_optimization

    with tempfile.TemporaryDirectory() as tmp:
        logfile = os.path.join(tmp, 'solver.log')
        result = _solve(model, tee=tee, logfile=logfile)
        if os.path.exists(logfile):
            with open(logfile) as f:
                result.iterations = parse_solver_log(f.read())

    if result.success:
        print(f"Optimal Cost: {result.objective_value}")
    else:
        print(f"✗ Solver termination: {result.termination_condition}")

    plot_optimization(model, result.iterations, save_path=save_path)
    return result


def _scheduled_pg(mp: AbstractMPOPFModel, g: int, t: int) -> float:
    if isinstance(mp, MPOPFModelUncertainty):
        return value(mp.model.pg[g, t])
    return value(mp.model.period[t].pg[g])


def get_results(mp: AbstractMPOPFModel) -> Optional[Dict[str, Any]]:
    """
    Extract results from a solved model.

    Returns
    -------
    dict
        - 'objective_value': total objective
        - 'generation': (gen, period) -> scheduled MW
        - 'total_generation', 'total_load': period -> MW
        - 'voltages', 'angles': (bus, period) -> p.u. / degrees (deterministic models)
        - 'flows': (branch, period) -> from-side MW (deterministic models)
        - 'congested_branches': branches loaded above the congestion threshold
        - 'scenario_results': scenario -> summary (uncertainty models)

    Returns None if the model has not been solved.
    """
    if mp.results is None:
        return None

    m = mp.model
    ref = mp.ref
    base = ref.base_mva
    periods = list(m.periods)

    results = {
        'objective_value': value(m.obj),
        'ramping_cost': value(m.ramp_cost),
        'generation': {},
        'total_generation': {},
        'total_load': {},
        'voltages': {},
        'angles': {},
        'flows': {},
        'congested_branches': [],
    }

    for t in periods:
        factor = mp.factors[t - 1]
        total = 0.0
        for g in ref.gen_ids:
            p = _scheduled_pg(mp, g, t) * base
            results['generation'][(g, t)] = p
            total += p
        results['total_generation'][t] = total
        results['total_load'][t] = sum(load['pd'] for load in ref.load.values()) * factor * base

    if isinstance(mp, MPOPFModelUncertainty):
        results['recourse_cost'] = value(m.recourse_cost)
        scenario_results = {}
        for s, scenario in mp.scenarios.items():
            total_load = sum(
                load['pd'] * mp.factors[t - 1] * scenario.load_multiplier(load['load_bus'], t)
                for t in periods for load in ref.load.values()
            ) * base
            total_gen = sum(value(m.scenario[s, t].pg[g]) for t in periods for g in ref.gen_ids) * base
            recourse = sum(
                value(m.reserve_up[g, t, s]) + value(m.reserve_down[g, t, s])
                for t in periods for g in ref.gen_ids
            ) * base
            scenario_results[s] = {
                'weight': value(m.scenario_weight[s]),
                'total_load': total_load,
                'total_generation': total_gen,
                'recourse_mw': recourse,
                'recourse_cost': recourse * mp.config.recourse_cost,
            }
        results['scenario_results'] = scenario_results
        return results

    formulation = mp.formulation
    threshold = mp.config.congestion_threshold
    for t, b in mp.snapshots().items():
        for i in ref.bus_ids:
            results['voltages'][(i, t)] = formulation.vm_value(b, i)
            results['angles'][(i, t)] = math.degrees(formulation.va_value(b, i))
        for l, f, to in ref.arcs_from:
            flow = value(b.p[l, f, to]) * base
            results['flows'][(l, t)] = flow
            rating = ref.branch[l]['rate_a'] * base
            if rating > 0 and abs(flow) >= threshold * rating:
                results['congested_branches'].append({
                    'branch': l,
                    'period': t,
                    'flow': flow,
                    'rating': rating,
                    'utilization': abs(flow) / rating,
                })

    return results


def extract_solution(mp: AbstractMPOPFModel) -> Dict[str, Dict]:
    """
    Per-unit solution values keyed by ``(id, period)``.

    The returned mapping has ``pg`` and, where the formulation has them,
    ``qg``, ``v`` and ``theta``. It can be passed straight to
    ``create_model_check_feasibility``.
    """
    if mp.results is None:
        raise ValueError("Model has not been solved")

    ref = mp.ref
    periods = list(mp.model.periods)
    solution = {'pg': {(g, t): _scheduled_pg(mp, g, t) for g in ref.gen_ids for t in periods}}
    if isinstance(mp, MPOPFModelUncertainty):
        return solution

    formulation = mp.formulation
    snapshots = mp.snapshots()
    if formulation.has_reactive:
        solution['qg'] = {(g, t): value(snapshots[t].qg[g]) for g in ref.gen_ids for t in periods}
    if formulation.has_voltage_magnitude:
        solution['v'] = {(i, t): formulation.vm_value(snapshots[t], i)
                         for i in ref.bus_ids for t in periods}
    solution['theta'] = {(i, t): formulation.va_value(snapshots[t], i)
                         for i in ref.bus_ids for t in periods}
    return solution


def results_to_frame(results: Dict[str, Any]) -> pd.DataFrame:
    """Generation schedule as a DataFrame: one row per period, one column per generator."""
    series = pd.Series(results['generation'], dtype=float)
    series.index.names = ['generator', 'period']
    return series.unstack(level='generator').sort_index()


def print_summary(mp: AbstractMPOPFModel) -> None:
    """Print a formatted summary of the MPOPF solution."""
    results = get_results(mp)
    if results is None:
        print("No results available - solve the model first")
        return

    print("\n" + "=" * 60)
    print(f"{mp.model.name} RESULTS SUMMARY")
    print("=" * 60)
    print(f"Total Operating Cost:     ${results['objective_value']:,.2f}")
    print(f"  Ramping Cost:           ${results['ramping_cost']:,.2f}")
    if 'recourse_cost' in results:
        print(f"  Recourse Cost:          ${results['recourse_cost']:,.2f}")
    print(f"Time Periods:             {mp.time_periods}")

    for t in mp.model.periods:
        print(f"  Period {t:3d}: generation {results['total_generation'][t]:10.2f} MW, "
              f"load {results['total_load'][t]:10.2f} MW")

    if 'scenario_results' in results:
        print("\nScenario summaries:")
        for s, sr in results['scenario_results'].items():
            print(f"  - {s}: weight={sr['weight']:.2f}, load={sr['total_load']:.1f} MW, "
                  f"generation={sr['total_generation']:.1f} MW, recourse={sr['recourse_mw']:.1f} MW")
    else:
        print(f"\nCongested Branches:       {len(results['congested_branches'])}")
        for cb in results['congested_branches'][:10]:
            print(f"  Branch {cb['branch']} (t={cb['period']}): {cb['flow']:8.2f} MW / "
                  f"{cb['rating']:8.2f} MW ({cb['utilization'] * 100:.1f}%)")

    print("=" * 60)
