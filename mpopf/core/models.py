"""
Multi-Period Optimal Power Flow models
======================================

``create_model`` turns a factory (case file + solver + formulation) into a
Pyomo model spanning ``time_periods`` periods:

    min  Σ_t Σ_g c_g(p_{g,t}) + R × baseMVA × Σ_{t>1} Σ_g |p_{g,t} - p_{g,t-1}|

    s.t. network constraints of the formulation for every period t,
         with every load scaled by factors[t]

The uncertainty variant shares a first-stage schedule ``pg[g, t]`` across
all scenarios. Each scenario and period has its own network block, whose
generation may deviate from the schedule at the recourse cost:

    min  Σ_t Σ_g c_g(pg_{g,t}) + ramping(pg)
         + C_rec × baseMVA × Σ_s w_s Σ_t Σ_g (up_{g,t,s} + down_{g,t,s})

    s.t. p_{g,t,s} = pg_{g,t} + up_{g,t,s} - down_{g,t,s}     ∀g, t, s

Usage Example
-------------
>>> from mpopf import ACMPOPFModelFactory, create_model, optimize_model
>>> factory = ACMPOPFModelFactory('case5.m', 'ipopt')
>>> mp = create_model(factory, time_periods=3, factors=[0.9, 1.0, 1.1], ramping_cost=10)
>>> optimize_model(mp)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
from pyomo.environ import (
    Block,
    ConcreteModel,
    Constraint,
    Expression,
    NonNegativeReals,
    Objective,
    Param,
    Set,
    Var,
    minimize,
)

from ..config import DEFAULT_CONFIG, ModelConfig
from ..exceptions import ModelConfigurationError
from .factories import AbstractMPOPFModelFactory, NewACMPOPFModelFactory
from .formulations import Formulation, generation_cost
from .reference import Reference, get_ref

logger = logging.getLogger(__name__)


@dataclass
class Scenario:
    """
    Realisation of uncertain demand used by the uncertainty model.

    Attributes
    ----------
    name : str
        Unique identifier for the scenario
    load_scale : float, optional
        Multiplier applied to every load in every period (default 1.0)
    load_factors : sequence of float, optional
        Per-period multipliers, one per time period (default None)
    bus_load_scale : dict, optional
        Bus id -> multiplier for loads at that bus (default None)
    weight : float, optional
        Weight in the objective function (default 1.0). Normalised across scenarios.
    description : str, optional
        Human-readable description of the scenario
    """
    name: str
    load_scale: float = 1.0
    load_factors: Optional[Sequence[float]] = None
    bus_load_scale: Optional[Dict[int, float]] = None
    weight: float = 1.0
    description: str = ""

    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, Any]) -> 'Scenario':
        unknown = set(data) - {'load_scale', 'load_factors', 'bus_load_scale', 'weight',
                               'probability', 'description'}
        if unknown:
            raise ModelConfigurationError(
                f"Scenario {name!r} has unknown keys: {sorted(unknown)}"
            )
        return cls(
            name=name,
            load_scale=float(data.get('load_scale', 1.0)),
            load_factors=data.get('load_factors'),
            bus_load_scale={int(k): float(v) for k, v in (data.get('bus_load_scale') or {}).items()},
            weight=float(data.get('weight', data.get('probability', 1.0))),
            description=data.get('description', ""),
        )

    def load_multiplier(self, bus: int, t: int) -> float:
        """Scenario multiplier for a load at ``bus`` in period ``t`` (1-based)."""
        scale = self.load_scale
        if self.load_factors is not None:
            scale *= self.load_factors[t - 1]
        if self.bus_load_scale:
            scale *= self.bus_load_scale.get(bus, 1.0)
        return scale


def _validate_schedule(time_periods: int, factors: Sequence[float], ramping_cost: float) -> None:
    if int(time_periods) != time_periods or time_periods < 1:
        raise ModelConfigurationError(f"time_periods must be a positive integer, got {time_periods!r}")
    if len(factors) != time_periods:
        raise ModelConfigurationError(
            f"Expected {time_periods} factors (one per time period), got {len(factors)}"
        )
    if any(f < 0 for f in factors):
        raise ModelConfigurationError(f"factors must be non-negative, got {list(factors)}")
    if ramping_cost < 0:
        raise ModelConfigurationError(f"ramping_cost must be non-negative, got {ramping_cost}")


class AbstractMPOPFModel:
    """Base for all MPOPF model types."""

    model: ConcreteModel
    ref: Optional[Reference]
    formulation: Optional[Formulation]

    def snapshots(self) -> Dict[Any, Any]:
        """Network blocks keyed by period, or by ``(scenario, period)``."""
        raise NotImplementedError


@dataclass
class MPOPFModel(AbstractMPOPFModel):
    """
    A Multi-Period Optimal Power Flow model.

    Attributes
    ----------
    model : ConcreteModel
        The underlying Pyomo model; period ``t`` lives in ``model.period[t]``.
    data : dict
        Network data mapping.
    time_periods : int
        Number of time periods in the model.
    factors : list of float
        Load scaling factor for each time period.
    ramping_cost : float
        Cost associated with generator ramping ($/MW).
    """
    model: ConcreteModel
    data: Dict[str, Any]
    time_periods: int = 1
    factors: List[float] = field(default_factory=lambda: [1.0])
    ramping_cost: float = 0
    ref: Optional[Reference] = None
    formulation: Optional[Formulation] = None
    optimizer: str = 'ipopt'
    solver_options: Dict[str, Any] = field(default_factory=dict)
    config: ModelConfig = DEFAULT_CONFIG
    results: Any = None

    def __post_init__(self):
        _validate_schedule(self.time_periods, self.factors, self.ramping_cost)

    def snapshots(self):
        return {t: self.model.period[t] for t in self.model.periods}


@dataclass
class MPOPFModelUncertainty(AbstractMPOPFModel):
    """
    A Multi-Period Optimal Power Flow model with uncertainty considerations.

    Attributes
    ----------
    model : ConcreteModel
        The underlying Pyomo model; scenario ``s`` in period ``t`` lives in
        ``model.scenario[s, t]`` and the shared schedule in ``model.pg``.
    data : dict
        Network data mapping.
    scenarios : dict
        Scenario name -> Scenario.
    time_periods : int
        Number of time periods in the model.
    factors : list of float
        Load scaling factor for each time period.
    ramping_cost : float
        Cost associated with generator ramping ($/MW).
    """
    model: ConcreteModel
    data: Dict[str, Any]
    scenarios: Dict[str, Scenario]
    time_periods: int = 1
    factors: List[float] = field(default_factory=lambda: [1.0])
    ramping_cost: float = 0
    ref: Optional[Reference] = None
    formulation: Optional[Formulation] = None
    optimizer: str = 'ipopt'
    solver_options: Dict[str, Any] = field(default_factory=dict)
    config: ModelConfig = DEFAULT_CONFIG
    results: Any = None

    def __post_init__(self):
        _validate_schedule(self.time_periods, self.factors, self.ramping_cost)
        if not self.scenarios:
            raise ModelConfigurationError("Scenario mapping is empty.")

    def snapshots(self):
        return {(s, t): self.model.scenario[s, t]
                for s in self.model.scenarios for t in self.model.periods}


def _normalize_scenarios(scenarios, time_periods: int) -> Dict[str, Scenario]:
    if isinstance(scenarios, Mapping):
        items = list(scenarios.items())
    else:
        items = [(s.name, s) for s in scenarios]
    if not items:
        raise ModelConfigurationError("Scenario mapping is empty.")

    normalized = {}
    for name, scenario in items:
        name = str(name)
        if isinstance(scenario, Scenario):
            if scenario.name != name:
                scenario = Scenario(name, scenario.load_scale, scenario.load_factors,
                                    scenario.bus_load_scale, scenario.weight, scenario.description)
        elif isinstance(scenario, Mapping):
            scenario = Scenario.from_mapping(name, scenario)
        else:
            raise ModelConfigurationError(
                f"Scenario {name!r} must be a Scenario or a mapping, got {type(scenario).__name__}"
            )
        if scenario.weight <= 0:
            raise ModelConfigurationError(f"Scenario {name!r} has non-positive weight {scenario.weight}")
        if scenario.load_factors is not None and len(scenario.load_factors) != time_periods:
            raise ModelConfigurationError(
                f"Scenario {name!r} has {len(scenario.load_factors)} load_factors "
                f"for {time_periods} time periods"
            )
        normalized[name] = scenario
    return normalized


def _add_sets(m: ConcreteModel, ref: Reference, time_periods: int) -> None:
    m.periods = Set(initialize=range(1, time_periods + 1), ordered=True, doc="Time periods")
    m.buses = Set(initialize=ref.bus_ids, doc="Set of system buses")
    m.gens = Set(initialize=ref.gen_ids, doc="Set of generators")
    m.branches = Set(initialize=ref.branch_ids, doc="Set of branches")
    m.arcs_from = Set(initialize=ref.arcs_from, dimen=3, doc="Branch arcs, from side")
    m.arcs = Set(initialize=ref.arcs, dimen=3, doc="Branch arcs, both sides")
    m.ref_buses = Set(initialize=sorted(ref.ref_buses), doc="Reference buses")


def _add_ramping(m: ConcreteModel, ref: Reference, pg: Callable, ramping_cost: float,
                 config: ModelConfig) -> None:
    """Period-to-period generator changes split into up/down parts."""
    m.ramp_periods = Set(initialize=list(m.periods)[1:], ordered=True)
    m.ramp_up = Var(m.gens, m.ramp_periods, domain=NonNegativeReals, initialize=0.0)
    m.ramp_down = Var(m.gens, m.ramp_periods, domain=NonNegativeReals, initialize=0.0)

    def ramp_rule(m, g, t):
        return pg(g, t) - pg(g, t - 1) == m.ramp_up[g, t] - m.ramp_down[g, t]

    m.ramp_balance = Constraint(m.gens, m.ramp_periods, rule=ramp_rule)

    if config.enforce_ramp_limits:
        for g in ref.gen_ids:
            rate = ref.gen[g]['ramp_rate']
            if rate <= 0:
                continue
            for t in m.ramp_periods:
                m.ramp_up[g, t].setub(rate)
                m.ramp_down[g, t].setub(rate)

    m.ramp_cost = Expression(expr=ramping_cost * ref.base_mva * sum(
        m.ramp_up[g, t] + m.ramp_down[g, t] for g in m.gens for t in m.ramp_periods
    ))


def _period_loads(ref: Reference, multiplier: Callable):
    pd = {l: load['pd'] * multiplier(load['load_bus']) for l, load in ref.load.items()}
    qd = {l: load['qd'] * multiplier(load['load_bus']) for l, load in ref.load.items()}
    return pd, qd


def _build_model(formulation: Formulation, ref: Reference, time_periods: int,
                 factors: Sequence[float], ramping_cost: float, model_type: Optional[str],
                 config: ModelConfig) -> ConcreteModel:
    m = ConcreteModel(name=f"{formulation.name}-MPOPF")
    _add_sets(m, ref, time_periods)

    def period_rule(b, t):
        pd, qd = _period_loads(ref, lambda bus: factors[t - 1])
        formulation.build_network(b, ref, pd, qd, model_type)
        b.generation_cost = Expression(expr=generation_cost(b, ref, lambda g: b.pg[g]))

    m.period = Block(m.periods, rule=period_rule)
    _add_ramping(m, ref, lambda g, t: m.period[t].pg[g], ramping_cost, config)

    m.obj = Objective(
        expr=sum(m.period[t].generation_cost for t in m.periods) + m.ramp_cost,
        sense=minimize,
    )
    return m


def _build_uncertainty_model(formulation: Formulation, ref: Reference,
                             scenarios: Dict[str, Scenario], time_periods: int,
                             factors: Sequence[float], ramping_cost: float,
                             model_type: Optional[str], config: ModelConfig) -> ConcreteModel:
    m = ConcreteModel(name=f"{formulation.name}-MPOPF-uncertainty")
    _add_sets(m, ref, time_periods)
    m.scenarios = Set(initialize=list(scenarios), ordered=True, doc="Scenarios")

    total_weight = sum(s.weight for s in scenarios.values())
    m.scenario_weight = Param(
        m.scenarios, initialize={name: s.weight / total_weight for name, s in scenarios.items()}
    )

    m.pg = Var(
        m.gens, m.periods,
        bounds=lambda m, g, t: (ref.gen[g]['pmin'], ref.gen[g]['pmax']),
        initialize=lambda m, g, t: min(max(ref.gen[g]['pg'], ref.gen[g]['pmin']), ref.gen[g]['pmax']),
    )

    def stage_rule(b, t):
        b.generation_cost = Expression(expr=generation_cost(b, ref, lambda g: m.pg[g, t]))

    m.stage = Block(m.periods, rule=stage_rule)

    def snapshot_rule(b, s, t):
        scenario = scenarios[s]
        pd, qd = _period_loads(ref, lambda bus: factors[t - 1] * scenario.load_multiplier(bus, t))
        formulation.build_network(b, ref, pd, qd, model_type)

    m.scenario = Block(m.scenarios, m.periods, rule=snapshot_rule)

    m.reserve_up = Var(m.gens, m.periods, m.scenarios, domain=NonNegativeReals, initialize=0.0)
    m.reserve_down = Var(m.gens, m.periods, m.scenarios, domain=NonNegativeReals, initialize=0.0)

    def recourse_rule(m, g, t, s):
        return m.scenario[s, t].pg[g] == m.pg[g, t] + m.reserve_up[g, t, s] - m.reserve_down[g, t, s]

    m.recourse = Constraint(m.gens, m.periods, m.scenarios, rule=recourse_rule)

    _add_ramping(m, ref, lambda g, t: m.pg[g, t], ramping_cost, config)

    m.recourse_cost = Expression(expr=config.recourse_cost * ref.base_mva * sum(
        m.scenario_weight[s] * (m.reserve_up[g, t, s] + m.reserve_down[g, t, s])
        for g in m.gens for t in m.periods for s in m.scenarios
    ))

    m.obj = Objective(
        expr=sum(m.stage[t].generation_cost for t in m.periods) + m.ramp_cost + m.recourse_cost,
        sense=minimize,
    )
    return m


def create_model(factory: AbstractMPOPFModelFactory,
                 scenarios: Optional[Union[Mapping[str, Any], Sequence[Scenario]]] = None,
                 time_periods: int = 1,
                 factors: Optional[Sequence[float]] = None,
                 ramping_cost: float = 0,
                 model_type: Optional[str] = None,
                 config: ModelConfig = DEFAULT_CONFIG) -> Union[MPOPFModel, MPOPFModelUncertainty]:
    """
    Create a Multi-Period Optimal Power Flow model based on the provided factory.

    Parameters
    ----------
    factory : AbstractMPOPFModelFactory
        The factory used to create the specific type of MPOPF model.
    scenarios : dict, optional
        Scenario name -> ``Scenario`` (or mapping of its fields). When given,
        an ``MPOPFModelUncertainty`` is created.
    time_periods : int, optional
        Number of time periods to consider in the model. Default is 1.
    factors : sequence of float, optional
        Load scaling factor for each time period. Default is 1.0 for every period.
    ramping_cost : float, optional
        Cost associated with ramping generation up or down. Default is 0.
    model_type : str, optional
        Voltage representation: ``"polar"`` or ``"rectangular"`` (AC only).
        Default is the formulation's own.
    config : ModelConfig, optional
        Recourse cost, ramp limits and reporting thresholds.

    Returns
    -------
    MPOPFModel or MPOPFModelUncertainty
    """
    if factors is None:
        factors = [1.0] * int(time_periods)
    factors = [float(f) for f in factors]
    _validate_schedule(time_periods, factors, ramping_cost)

    formulation = factory.formulation
    formulation.check_model_type(model_type)

    scenario_map = None
    if scenarios is not None:
        scenario_map = _normalize_scenarios(scenarios, time_periods)

    data = factory.load_data(config)
    ref = get_ref(data)

    common = dict(
        data=data,
        time_periods=int(time_periods),
        factors=factors,
        ramping_cost=ramping_cost,
        ref=ref,
        formulation=formulation,
        optimizer=factory.optimizer,
        solver_options=dict(factory.solver_options),
        config=config,
    )

    if scenario_map is None:
        logger.info("Building %s MPOPF model: %d periods, %d buses, %d generators",
                    formulation.name, time_periods, len(ref.bus), len(ref.gen))
        m = _build_model(formulation, ref, int(time_periods), factors, ramping_cost,
                         model_type, config)
        return MPOPFModel(model=m, **common)

    logger.info("Building %s MPOPF model with %d scenarios: %d periods, %d buses",
                formulation.name, len(scenario_map), time_periods, len(ref.bus))
    m = _build_uncertainty_model(formulation, ref, scenario_map, int(time_periods), factors,
                                 ramping_cost, model_type, config)
    return MPOPFModelUncertainty(model=m, scenarios=scenario_map, **common)


def _coerce_fixed_values(values, ids: List[int], time_periods: int, label: str):
    """Normalise user-supplied fixed values to ``{(id, period): value}``."""
    if values is None or values is False:
        return None

    if isinstance(values, Mapping):
        fixed = {}
        for key, val in values.items():
            if isinstance(key, tuple):
                i, t = key
                fixed[(int(i), int(t))] = float(val)
            elif isinstance(val, Mapping):
                for i, v in val.items():
                    fixed[(int(i), int(key))] = float(v)
            else:
                raise ModelConfigurationError(
                    f"{label} must be keyed by (id, period) or by period, got key {key!r}"
                )
        known = set(ids)
        bad = sorted(k for k in fixed if k[0] not in known or not 1 <= k[1] <= time_periods)
        if bad:
            raise ModelConfigurationError(f"{label} has unknown entries: {bad}")
        return fixed

    arr = np.asarray(values, dtype=float)
    if arr.ndim == 1 and time_periods == 1:
        arr = arr.reshape(-1, 1)
    if arr.shape != (len(ids), time_periods):
        raise ModelConfigurationError(
            f"{label} must have shape ({len(ids)}, {time_periods}), got {arr.shape}"
        )
    return {(i, t + 1): float(arr[k, t]) for k, i in enumerate(ids) for t in range(time_periods)}


def create_model_check_feasibility(factory: NewACMPOPFModelFactory,
                                   new_pg=False,
                                   new_qg=False,
                                   v=False,
                                   theta=False,
                                   time_periods: int = 1,
                                   factors: Optional[Sequence[float]] = None,
                                   ramping_cost: float = 0,
                                   config: ModelConfig = DEFAULT_CONFIG) -> MPOPFModel:
    """
    Create a secondary model to assess the feasibility of a previous solution.

    Parameters
    ----------
    factory : NewACMPOPFModelFactory
        The factory used to create the model.
    new_pg, new_qg : optional
        Fixed active / reactive generation (per-unit), or False to skip fixing.
    v : optional
        Fixed bus voltage magnitudes (per-unit), or False to skip fixing.
    theta : optional
        Fixed bus voltage angles (radians), or False to skip fixing.
    time_periods, factors, ramping_cost :
        As for ``create_model``.

    Fixed values are given as a mapping ``(id, period) -> value``, a mapping
    ``period -> {id: value}``, or an array with one row per component (sorted
    ids) and one column per period.

    Returns
    -------
    MPOPFModel
    """
    if not isinstance(factory, NewACMPOPFModelFactory):
        raise TypeError(
            f"Feasibility checks need a NewACMPOPFModelFactory, got {type(factory).__name__}"
        )

    mp = create_model(factory, time_periods=time_periods, factors=factors,
                      ramping_cost=ramping_cost, config=config)
    ref = mp.ref

    fixings = (
        ('new_pg', new_pg, 'pg', ref.gen_ids),
        ('new_qg', new_qg, 'qg', ref.gen_ids),
        ('v', v, 'vm', ref.bus_ids),
        ('theta', theta, 'va', ref.bus_ids),
    )
    for label, values, var_name, ids in fixings:
        fixed = _coerce_fixed_values(values, ids, mp.time_periods, label)
        if fixed is None:
            continue
        for (i, t), val in sorted(fixed.items()):
            var = getattr(mp.model.period[t], var_name)[i]
            if (var.lb is not None and val < var.lb - 1e-9) or (var.ub is not None and val > var.ub + 1e-9):
                logger.warning("Fixing %s[%d] in period %d to %g outside its bounds [%s, %s]",
                               var_name, i, t, val, var.lb, var.ub)
            var.fix(val)
        logger.info("Fixed %d values of %s", len(fixed), var_name)

    return mp
