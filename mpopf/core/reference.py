"""
Indexed reference structure built from a network data mapping.

The reference keeps only in-service components and precomputes the
adjacency used by constraint construction: branch arcs in both directions,
the arcs, generators, loads and shunts attached to each bus, and the
tightest angle-difference limits between each connected bus pair.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from ..exceptions import DataFormatError

logger = logging.getLogger(__name__)

Arc = Tuple[int, int, int]


@dataclass
class Reference:
    """
    Processed power system data consumed by the formulations.

    Attributes
    ----------
    base_mva : float
        System MVA base.
    bus, gen, load, shunt, branch : dict
        In-service components keyed by integer id.
    ref_buses : dict
        Reference (slack) buses keyed by id.
    arcs_from, arcs_to, arcs : list of tuple
        ``(branch, from, to)`` arcs; ``arcs_to`` holds the reversed direction.
    bus_arcs, bus_gens, bus_loads, bus_shunts : dict
        Components attached to each bus.
    buspairs : dict
        ``(i, j)`` -> angle limits and branch ids for connected bus pairs.
    """
    base_mva: float
    bus: Dict[int, Dict[str, Any]]
    gen: Dict[int, Dict[str, Any]]
    load: Dict[int, Dict[str, Any]]
    shunt: Dict[int, Dict[str, Any]]
    branch: Dict[int, Dict[str, Any]]
    ref_buses: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    arcs_from: List[Arc] = field(default_factory=list)
    arcs_to: List[Arc] = field(default_factory=list)
    arcs: List[Arc] = field(default_factory=list)
    bus_arcs: Dict[int, List[Arc]] = field(default_factory=dict)
    bus_gens: Dict[int, List[int]] = field(default_factory=dict)
    bus_loads: Dict[int, List[int]] = field(default_factory=dict)
    bus_shunts: Dict[int, List[int]] = field(default_factory=dict)
    buspairs: Dict[Tuple[int, int], Dict[str, Any]] = field(default_factory=dict)

    @property
    def bus_ids(self) -> List[int]:
        return sorted(self.bus)

    @property
    def gen_ids(self) -> List[int]:
        return sorted(self.gen)

    @property
    def branch_ids(self) -> List[int]:
        return sorted(self.branch)


def calc_branch_y(branch: Dict[str, Any]) -> Tuple[float, float]:
    """Series conductance and susceptance of a branch."""
    r, x = branch['br_r'], branch['br_x']
    denom = r ** 2 + x ** 2
    if denom == 0:
        raise DataFormatError(f"Branch {branch.get('index')} has zero impedance")
    return r / denom, -x / denom


def calc_branch_t(branch: Dict[str, Any]) -> Tuple[float, float]:
    """Real and imaginary parts of the complex tap ratio."""
    tap, shift = branch['tap'], branch['shift']
    return tap * math.cos(shift), tap * math.sin(shift)


def _active(records: Dict[str, Dict[str, Any]], status_key: str) -> Dict[int, Dict[str, Any]]:
    return {int(k): rec for k, rec in records.items() if rec.get(status_key, 1) == 1}


def get_ref(data: Dict[str, Any]) -> Reference:
    """
    Build and return a reference object from the given power system data.

    Parameters
    ----------
    data : dict
        Per-unit network data mapping, as returned by ``parse_file``.

    Returns
    -------
    Reference
        Reference object containing processed power system data.
    """
    if not data.get('per_unit', False):
        raise DataFormatError("Network data must be in per-unit")

    buses = {int(k): b for k, b in data['bus'].items() if b['bus_type'] != 4}
    if not buses:
        raise DataFormatError("Network data has no active buses")

    gens = {i: g for i, g in _active(data.get('gen', {}), 'gen_status').items()
            if g['gen_bus'] in buses}
    loads = {i: l for i, l in _active(data.get('load', {}), 'status').items()
             if l['load_bus'] in buses}
    shunts = {i: s for i, s in _active(data.get('shunt', {}), 'status').items()
              if s['shunt_bus'] in buses}
    branches = {i: br for i, br in _active(data.get('branch', {}), 'br_status').items()
                if br['f_bus'] in buses and br['t_bus'] in buses}

    ref = Reference(
        base_mva=float(data['baseMVA']),
        bus=buses,
        gen=gens,
        load=loads,
        shunt=shunts,
        branch=branches,
    )

    ref.arcs_from = [(l, br['f_bus'], br['t_bus']) for l, br in sorted(branches.items())]
    ref.arcs_to = [(l, br['t_bus'], br['f_bus']) for l, br in sorted(branches.items())]
    ref.arcs = ref.arcs_from + ref.arcs_to

    ref.bus_arcs = {i: [] for i in buses}
    for arc in ref.arcs:
        ref.bus_arcs[arc[1]].append(arc)

    ref.bus_gens = {i: [] for i in buses}
    for g, gen in sorted(gens.items()):
        ref.bus_gens[gen['gen_bus']].append(g)

    ref.bus_loads = {i: [] for i in buses}
    for l, load in sorted(loads.items()):
        ref.bus_loads[load['load_bus']].append(l)

    ref.bus_shunts = {i: [] for i in buses}
    for s, shunt in sorted(shunts.items()):
        ref.bus_shunts[shunt['shunt_bus']].append(s)

    for l, br in sorted(branches.items()):
        pair = (br['f_bus'], br['t_bus'])
        if pair not in ref.buspairs:
            ref.buspairs[pair] = {
                'branches': [l],
                'angmin': br['angmin'],
                'angmax': br['angmax'],
                'rate_a': br['rate_a'],
            }
        else:
            bp = ref.buspairs[pair]
            bp['branches'].append(l)
            bp['angmin'] = max(bp['angmin'], br['angmin'])
            bp['angmax'] = min(bp['angmax'], br['angmax'])

    ref.ref_buses = {i: b for i, b in buses.items() if b['bus_type'] == 3}
    if not ref.ref_buses:
        if gens:
            g = max(gens, key=lambda k: gens[k]['pmax'])
            bus_id = gens[g]['gen_bus']
        else:
            bus_id = min(buses)
        logger.warning("No reference bus found, using bus %d", bus_id)
        ref.ref_buses = {bus_id: buses[bus_id]}
    elif len(ref.ref_buses) > 1:
        logger.warning("Multiple reference buses: %s", sorted(ref.ref_buses))

    return ref
