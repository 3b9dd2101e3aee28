"""
Power flow formulations
=======================

Each formulation adds the variables and constraints of one network snapshot
(a single period, or a single scenario and period) to a Pyomo block:

- ``ACFormulation``: exact AC power flow with branch-flow variables ``p``/``q``
  on every arc, in polar (``vm``, ``va``) or rectangular (``vr``, ``vi``) voltages.
- ``NewACFormulation``: exact AC power flow written as bus injections through
  the admittance matrix, with decision variables ``pg``, ``qg``, ``vm``, ``va``.
  Branch flows are expressions used only for thermal limits.
- ``DCFormulation``: lossless active-power approximation, ``p = (θi - θj - shift) / (x·tap)``.
- ``LinearFormulation``: first-order expansion of the AC branch flow equations
  around the flat start (``vm = 1``, ``va = 0``), keeping reactive power.

All quantities are per-unit. The block is indexed by the parent model's
``buses``, ``gens``, ``branches``, ``arcs``, ``arcs_from`` and ``ref_buses`` sets.

Branch flow equations (from side, ``tm = tap``)::

    p_fr = (g+g_fr)/tm² w_f + (-g tr + b ti)/tm² wr + (-b tr - g ti)/tm² wi
    q_fr = -(b+b_fr)/tm² w_f - (-b tr - g ti)/tm² wr + (-g tr + b ti)/tm² wi

where ``w_f = |V_f|²``, ``wr = Re(V_f V_t*)`` and ``wi = Im(V_f V_t*)``.
"""
from __future__ import annotations

import cmath
import logging
import math
from collections import defaultdict
from typing import Callable, Dict, Optional

from pyomo.environ import (
    Constraint,
    ConstraintList,
    Expression,
    Reals,
    Var,
    cos,
    sin,
)

from ..exceptions import DataFormatError, ModelConfigurationError
from .reference import Reference, calc_branch_t, calc_branch_y

logger = logging.getLogger(__name__)


def _clip(x, lb, ub):
    return min(max(x, lb), ub)


def _branch_coefficients(branch):
    g, b = calc_branch_y(branch)
    tr, ti = calc_branch_t(branch)
    tm2 = branch['tap'] ** 2
    return {
        'p_fr': ((g + branch['g_fr']) / tm2, (-g * tr + b * ti) / tm2, (-b * tr - g * ti) / tm2),
        'q_fr': (-(b + branch['b_fr']) / tm2, -(-b * tr - g * ti) / tm2, (-g * tr + b * ti) / tm2),
        'p_to': (g + branch['g_to'], (-g * tr - b * ti) / tm2, -(-b * tr + g * ti) / tm2),
        'q_to': (-(b + branch['b_to']), -(-b * tr + g * ti) / tm2, -(-g * tr - b * ti) / tm2),
    }


def admittance_matrix(ref: Reference) -> Dict[int, Dict[int, complex]]:
    """Sparse bus admittance matrix as ``{row: {col: y}}``, shunts included."""
    ybus: Dict[int, Dict[int, complex]] = {i: defaultdict(complex) for i in ref.bus}
    for branch in ref.branch.values():
        f, t = branch['f_bus'], branch['t_bus']
        ys = 1.0 / complex(branch['br_r'], branch['br_x'])
        tap = branch['tap'] * cmath.exp(1j * branch['shift'])
        y_fr = complex(branch['g_fr'], branch['b_fr'])
        y_to = complex(branch['g_to'], branch['b_to'])

        ybus[f][f] += (ys + y_fr) / abs(tap) ** 2
        ybus[t][t] += ys + y_to
        ybus[f][t] += -ys / tap.conjugate()
        ybus[t][f] += -ys / tap
    for shunt in ref.shunt.values():
        i = shunt['shunt_bus']
        ybus[i][i] += complex(shunt['gs'], shunt['bs'])
    return {i: dict(row) for i, row in ybus.items()}


def generation_cost(b, ref: Reference, pg: Callable):
    """
    Generator cost expression for one snapshot.

    Polynomial costs (model 2) are written directly. Piecewise-linear costs
    (model 1) get an epigraph variable ``pg_cost[g]`` on ``b`` bounded below
    by every segment.
    """
    pwl = [g for g in ref.gen_ids if ref.gen[g]['model'] == 1 and len(ref.gen[g]['cost']) >= 4]
    if pwl:
        b.pg_cost = Var(pwl, within=Reals)
        b.pg_cost_pwl = ConstraintList()
        for g in pwl:
            points = ref.gen[g]['cost']
            xs, ys = points[0::2], points[1::2]
            for k in range(len(xs) - 1):
                if xs[k + 1] == xs[k]:
                    continue
                slope = (ys[k + 1] - ys[k]) / (xs[k + 1] - xs[k])
                b.pg_cost_pwl.add(b.pg_cost[g] >= slope * (pg(g) - xs[k]) + ys[k])

    terms = []
    for g in ref.gen_ids:
        gen = ref.gen[g]
        cost = gen['cost']
        if gen['model'] == 1:
            if g in pwl:
                terms.append(b.pg_cost[g])
            elif len(cost) == 2:
                terms.append(cost[1])
            continue
        n = len(cost)
        for k, c in enumerate(cost):
            degree = n - 1 - k
            if c == 0:
                continue
            if degree == 0:
                terms.append(c)
            elif degree == 1:
                terms.append(c * pg(g))
            else:
                terms.append(c * pg(g) ** degree)
    return sum(terms)


class Formulation:
    """Base class of the per-snapshot network formulations."""

    name = ''
    model_types = (None,)
    has_reactive = True
    has_voltage_magnitude = True

    def check_model_type(self, model_type: Optional[str]) -> None:
        if model_type not in self.model_types:
            supported = ', '.join(repr(t) for t in self.model_types)
            raise ModelConfigurationError(
                f"{self.name} formulation does not support model_type={model_type!r} "
                f"(supported: {supported})"
            )

    def build_network(self, b, ref: Reference, pd: Dict[int, float], qd: Dict[int, float],
                      model_type: Optional[str] = None) -> None:
        raise NotImplementedError

    def vm_value(self, b, i: int) -> float:
        return b.vm[i].value

    def va_value(self, b, i: int) -> float:
        return b.va[i].value

    def _add_generator_variables(self, b, ref: Reference) -> None:
        m = b.model()
        b.pg = Var(
            m.gens,
            bounds=lambda blk, g: (ref.gen[g]['pmin'], ref.gen[g]['pmax']),
            initialize=lambda blk, g: _clip(ref.gen[g]['pg'], ref.gen[g]['pmin'], ref.gen[g]['pmax']),
        )
        if self.has_reactive:
            b.qg = Var(
                m.gens,
                bounds=lambda blk, g: (ref.gen[g]['qmin'], ref.gen[g]['qmax']),
                initialize=lambda blk, g: _clip(ref.gen[g]['qg'], ref.gen[g]['qmin'], ref.gen[g]['qmax']),
            )

    def _add_polar_voltage_variables(self, b, ref: Reference) -> None:
        m = b.model()
        b.vm = Var(
            m.buses,
            bounds=lambda blk, i: (ref.bus[i]['vmin'], ref.bus[i]['vmax']),
            initialize=1.0,
        )
        b.va = Var(m.buses, within=Reals, initialize=0.0)
        b.ref_angle = Constraint(m.ref_buses, rule=lambda blk, i: blk.va[i] == 0)

    def _add_angle_difference(self, b, ref: Reference) -> None:
        m = b.model()

        def angle_difference_rule(blk, l):
            br = ref.branch[l]
            return (br['angmin'], blk.va[br['f_bus']] - blk.va[br['t_bus']], br['angmax'])

        b.angle_difference = Constraint(m.branches, rule=angle_difference_rule)

    @staticmethod
    def _has_injection(ref: Reference, i: int) -> bool:
        return bool(ref.bus_arcs[i] or ref.bus_gens[i] or ref.bus_shunts[i])

    def _check_supplied_loads(self, ref: Reference, pd: Dict[int, float], qd: Dict[int, float]) -> None:
        """Reject demand at buses with no in-service branch, generator or shunt."""
        for i in ref.bus_ids:
            if self._has_injection(ref, i):
                continue
            demand = [(pd[l], qd[l] if self.has_reactive else 0.0) for l in ref.bus_loads[i]]
            if any(p != 0 or q != 0 for p, q in demand):
                raise DataFormatError(
                    f"Bus {i} has load but no in-service branch, generator or shunt to supply it"
                )


class _BranchFlowFormulation(Formulation):
    """AC-style formulation with ``p``/``q`` variables on every arc."""

    thermal_limit_quadratic = True

    def w(self, b, i):
        raise NotImplementedError

    def wr(self, b, i, j):
        raise NotImplementedError

    def wi(self, b, i, j):
        raise NotImplementedError

    def _add_voltage_variables(self, b, ref: Reference, model_type: Optional[str]) -> None:
        self._add_polar_voltage_variables(b, ref)

    def _add_voltage_constraints(self, b, ref: Reference, model_type: Optional[str]) -> None:
        self._add_angle_difference(b, ref)

    def build_network(self, b, ref, pd, qd, model_type=None):
        m = b.model()
        self._check_supplied_loads(ref, pd, qd)
        self._model_type = model_type
        self._add_voltage_variables(b, ref, model_type)
        self._add_generator_variables(b, ref)

        def flow_bounds(blk, l, i, j):
            rate = ref.branch[l]['rate_a']
            return (-rate, rate) if rate > 0 else (None, None)

        b.p = Var(m.arcs, bounds=flow_bounds, initialize=0.0)
        b.q = Var(m.arcs, bounds=flow_bounds, initialize=0.0)

        def p_balance_rule(blk, i):
            if not self._has_injection(ref, i):
                return Constraint.Skip
            return (
                sum(blk.p[a] for a in ref.bus_arcs[i])
                == sum(blk.pg[g] for g in ref.bus_gens[i])
                - sum(pd[l] for l in ref.bus_loads[i])
                - sum(ref.shunt[s]['gs'] for s in ref.bus_shunts[i]) * self.w(blk, i)
            )

        def q_balance_rule(blk, i):
            if not self._has_injection(ref, i):
                return Constraint.Skip
            return (
                sum(blk.q[a] for a in ref.bus_arcs[i])
                == sum(blk.qg[g] for g in ref.bus_gens[i])
                - sum(qd[l] for l in ref.bus_loads[i])
                + sum(ref.shunt[s]['bs'] for s in ref.bus_shunts[i]) * self.w(blk, i)
            )

        b.p_balance = Constraint(m.buses, rule=p_balance_rule)
        b.q_balance = Constraint(m.buses, rule=q_balance_rule)

        coefficients = {l: _branch_coefficients(ref.branch[l]) for l in ref.branch}

        def ohms_rule(var_name, side):
            def rule(blk, l):
                br = ref.branch[l]
                f, t = br['f_bus'], br['t_bus']
                c_w, c_wr, c_wi = coefficients[l][f"{var_name}_{side}"]
                if side == 'fr':
                    arc, w = (l, f, t), self.w(blk, f)
                else:
                    arc, w = (l, t, f), self.w(blk, t)
                flow = getattr(blk, var_name)[arc]
                return flow == c_w * w + c_wr * self.wr(blk, f, t) + c_wi * self.wi(blk, f, t)
            return rule

        b.ohms_p_from = Constraint(m.branches, rule=ohms_rule('p', 'fr'))
        b.ohms_q_from = Constraint(m.branches, rule=ohms_rule('q', 'fr'))
        b.ohms_p_to = Constraint(m.branches, rule=ohms_rule('p', 'to'))
        b.ohms_q_to = Constraint(m.branches, rule=ohms_rule('q', 'to'))

        self._add_voltage_constraints(b, ref, model_type)

        if self.thermal_limit_quadratic:
            def thermal_rule(blk, l, i, j):
                rate = ref.branch[l]['rate_a']
                if rate <= 0:
                    return Constraint.Skip
                return blk.p[l, i, j] ** 2 + blk.q[l, i, j] ** 2 <= rate ** 2

            b.thermal_limit = Constraint(m.arcs, rule=thermal_rule)


class ACFormulation(_BranchFlowFormulation):
    """Exact AC power flow with branch-flow variables."""

    name = 'AC'
    model_types = (None, 'polar', 'rectangular')

    def _rectangular(self) -> bool:
        return getattr(self, '_model_type', None) == 'rectangular'

    def w(self, b, i):
        if self._rectangular():
            return b.vr[i] ** 2 + b.vi[i] ** 2
        return b.vm[i] ** 2

    def wr(self, b, i, j):
        if self._rectangular():
            return b.vr[i] * b.vr[j] + b.vi[i] * b.vi[j]
        return b.vm[i] * b.vm[j] * cos(b.va[i] - b.va[j])

    def wi(self, b, i, j):
        if self._rectangular():
            return b.vi[i] * b.vr[j] - b.vr[i] * b.vi[j]
        return b.vm[i] * b.vm[j] * sin(b.va[i] - b.va[j])

    def _add_voltage_variables(self, b, ref, model_type):
        if model_type != 'rectangular':
            self._add_polar_voltage_variables(b, ref)
            return

        m = b.model()
        b.vr = Var(m.buses, bounds=lambda blk, i: (-ref.bus[i]['vmax'], ref.bus[i]['vmax']), initialize=1.0)
        b.vi = Var(m.buses, bounds=lambda blk, i: (-ref.bus[i]['vmax'], ref.bus[i]['vmax']), initialize=0.0)
        b.voltage_magnitude = Constraint(
            m.buses,
            rule=lambda blk, i: (ref.bus[i]['vmin'] ** 2, blk.vr[i] ** 2 + blk.vi[i] ** 2, ref.bus[i]['vmax'] ** 2),
        )
        b.ref_angle = Constraint(m.ref_buses, rule=lambda blk, i: blk.vi[i] == 0)
        for i in ref.ref_buses:
            b.vr[i].setlb(0.0)

    def _add_voltage_constraints(self, b, ref, model_type):
        if model_type != 'rectangular':
            self._add_angle_difference(b, ref)
            return

        m = b.model()

        def angle_min_rule(blk, l):
            br = ref.branch[l]
            f, t = br['f_bus'], br['t_bus']
            return math.tan(br['angmin']) * self.wr(blk, f, t) <= self.wi(blk, f, t)

        def angle_max_rule(blk, l):
            br = ref.branch[l]
            f, t = br['f_bus'], br['t_bus']
            return self.wi(blk, f, t) <= math.tan(br['angmax']) * self.wr(blk, f, t)

        b.angle_difference_min = Constraint(m.branches, rule=angle_min_rule)
        b.angle_difference_max = Constraint(m.branches, rule=angle_max_rule)

    def vm_value(self, b, i):
        if hasattr(b, 'vr'):
            return math.hypot(b.vr[i].value, b.vi[i].value)
        return b.vm[i].value

    def va_value(self, b, i):
        if hasattr(b, 'vr'):
            return math.atan2(b.vi[i].value, b.vr[i].value)
        return b.va[i].value


class LinearFormulation(_BranchFlowFormulation):
    """AC branch flows linearised around the flat start."""

    name = 'Linear'
    thermal_limit_quadratic = False

    def w(self, b, i):
        return 2 * b.vm[i] - 1

    def wr(self, b, i, j):
        return b.vm[i] + b.vm[j] - 1

    def wi(self, b, i, j):
        return b.va[i] - b.va[j]


class NewACFormulation(Formulation):
    """Exact AC power flow in bus-injection form."""

    name = 'NewAC'
    model_types = (None, 'polar')

    def build_network(self, b, ref, pd, qd, model_type=None):
        m = b.model()
        self._check_supplied_loads(ref, pd, qd)
        self._add_polar_voltage_variables(b, ref)
        self._add_generator_variables(b, ref)

        ybus = admittance_matrix(ref)

        def p_injection_rule(blk, i):
            if not self._has_injection(ref, i):
                return Constraint.Skip
            flow = 0
            for j, y in ybus[i].items():
                if j == i:
                    flow += y.real * blk.vm[i] ** 2
                else:
                    delta = blk.va[i] - blk.va[j]
                    flow += blk.vm[i] * blk.vm[j] * (y.real * cos(delta) + y.imag * sin(delta))
            return (
                sum(blk.pg[g] for g in ref.bus_gens[i]) - sum(pd[l] for l in ref.bus_loads[i])
                == flow
            )

        def q_injection_rule(blk, i):
            if not self._has_injection(ref, i):
                return Constraint.Skip
            flow = 0
            for j, y in ybus[i].items():
                if j == i:
                    flow += -y.imag * blk.vm[i] ** 2
                else:
                    delta = blk.va[i] - blk.va[j]
                    flow += blk.vm[i] * blk.vm[j] * (y.real * sin(delta) - y.imag * cos(delta))
            return (
                sum(blk.qg[g] for g in ref.bus_gens[i]) - sum(qd[l] for l in ref.bus_loads[i])
                == flow
            )

        b.p_balance = Constraint(m.buses, rule=p_injection_rule)
        b.q_balance = Constraint(m.buses, rule=q_injection_rule)

        coefficients = {l: _branch_coefficients(ref.branch[l]) for l in ref.branch}

        def w(blk, i):
            return blk.vm[i] ** 2

        def wr(blk, i, j):
            return blk.vm[i] * blk.vm[j] * cos(blk.va[i] - blk.va[j])

        def wi(blk, i, j):
            return blk.vm[i] * blk.vm[j] * sin(blk.va[i] - blk.va[j])

        def flow_expression(var_name):
            def rule(blk, l, i, j):
                br = ref.branch[l]
                f, t = br['f_bus'], br['t_bus']
                side = 'fr' if i == f else 'to'
                c_w, c_wr, c_wi = coefficients[l][f"{var_name}_{side}"]
                return c_w * w(blk, i) + c_wr * wr(blk, f, t) + c_wi * wi(blk, f, t)
            return rule

        b.p = Expression(m.arcs, rule=flow_expression('p'))
        b.q = Expression(m.arcs, rule=flow_expression('q'))

        def thermal_rule(blk, l, i, j):
            rate = ref.branch[l]['rate_a']
            if rate <= 0:
                return Constraint.Skip
            return blk.p[l, i, j] ** 2 + blk.q[l, i, j] ** 2 <= rate ** 2

        b.thermal_limit = Constraint(m.arcs, rule=thermal_rule)
        self._add_angle_difference(b, ref)


class DCFormulation(Formulation):
    """Lossless DC power flow."""

    name = 'DC'
    has_reactive = False
    has_voltage_magnitude = False

    def build_network(self, b, ref, pd, qd, model_type=None):
        m = b.model()
        self._check_supplied_loads(ref, pd, qd)
        b.va = Var(m.buses, within=Reals, initialize=0.0)
        b.ref_angle = Constraint(m.ref_buses, rule=lambda blk, i: blk.va[i] == 0)
        self._add_generator_variables(b, ref)

        def flow_bounds(blk, l, i, j):
            rate = ref.branch[l]['rate_a']
            return (-rate, rate) if rate > 0 else (None, None)

        b.p = Var(m.arcs_from, bounds=flow_bounds, initialize=0.0)

        from_arcs = set(ref.arcs_from)

        def arc_flow(blk, arc):
            if arc in from_arcs:
                return blk.p[arc]
            l, i, j = arc
            return -blk.p[l, j, i]

        def p_balance_rule(blk, i):
            if not self._has_injection(ref, i):
                return Constraint.Skip
            return (
                sum(arc_flow(blk, a) for a in ref.bus_arcs[i])
                == sum(blk.pg[g] for g in ref.bus_gens[i])
                - sum(pd[l] for l in ref.bus_loads[i])
                - sum(ref.shunt[s]['gs'] for s in ref.bus_shunts[i])
            )

        b.p_balance = Constraint(m.buses, rule=p_balance_rule)

        for l, br in ref.branch.items():
            if br['br_x'] == 0:
                raise DataFormatError(f"Branch {l} has zero reactance")

        def dc_flow_rule(blk, l):
            br = ref.branch[l]
            f, t = br['f_bus'], br['t_bus']
            return blk.p[l, f, t] == (blk.va[f] - blk.va[t] - br['shift']) / (br['br_x'] * br['tap'])

        b.dc_flow = Constraint(m.branches, rule=dc_flow_rule)
        self._add_angle_difference(b, ref)

    def vm_value(self, b, i):
        return 1.0
