"""Power system case loaders producing per-unit network data mappings."""

import logging
import math
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from ..config import DEFAULT_CONFIG
from ..exceptions import DataFormatError

logger = logging.getLogger(__name__)

BUS_COLUMNS = ['bus_i', 'bus_type', 'pd', 'qd', 'gs', 'bs', 'area', 'vm', 'va',
               'base_kv', 'zone', 'vmax', 'vmin']
GEN_COLUMNS = ['gen_bus', 'pg', 'qg', 'qmax', 'qmin', 'vg', 'mbase', 'gen_status',
               'pmax', 'pmin', 'pc1', 'pc2', 'qc1min', 'qc1max', 'qc2min', 'qc2max',
               'ramp_agc', 'ramp_10', 'ramp_30', 'ramp_q', 'apf']
BRANCH_COLUMNS = ['f_bus', 't_bus', 'br_r', 'br_x', 'br_b', 'rate_a', 'rate_b',
                  'rate_c', 'tap', 'shift', 'br_status', 'angmin', 'angmax']

_MATRIX_RE = re.compile(r"mpc\.(\w+)\s*=\s*\[(.*?)\]", re.DOTALL)
_CELL_RE = re.compile(r"mpc\.(\w+)\s*=\s*\{(.*?)\}", re.DOTALL)
_SCALAR_RE = re.compile(r"mpc\.(\w+)\s*=\s*([^\[\{;\n]+);")
_FUNCTION_RE = re.compile(r"function\s+\w+\s*=\s*(\w+)")


def _angle_limits(angmin_deg: float, angmax_deg: float,
                  default_deg: float = DEFAULT_CONFIG.default_angle_limit_deg):
    """Return (angmin, angmax) in radians, replacing missing or loose limits."""
    if angmin_deg == 0 and angmax_deg == 0:
        angmin_deg, angmax_deg = -default_deg, default_deg
    if angmin_deg <= -90:
        angmin_deg = -default_deg
    if angmax_deg >= 90:
        angmax_deg = default_deg
    return math.radians(angmin_deg), math.radians(angmax_deg)


def _per_unit_cost(model: int, cost: List[float], base_mva: float) -> List[float]:
    if model == 2:
        n = len(cost)
        return [c * base_mva ** (n - 1 - k) for k, c in enumerate(cost)]
    if model == 1:
        return [c / base_mva if k % 2 == 0 else c for k, c in enumerate(cost)]
    raise DataFormatError(f"Unsupported generator cost model: {model}")


class MatpowerLoader:
    """Reader for MATPOWER ``.m`` case files."""

    def __init__(self, file_path: str,
                 default_angle_limit_deg: float = DEFAULT_CONFIG.default_angle_limit_deg):
        self.file_path = str(file_path)
        self.default_angle_limit_deg = default_angle_limit_deg
        self.name = Path(self.file_path).stem
        self.scalars: Dict[str, str] = {}
        self.matrices: Dict[str, List[List[float]]] = {}
        self.cells: Dict[str, List[str]] = {}

        self.load_data()

    def load_data(self) -> None:
        """Read the raw sections of the case file."""
        if not os.path.exists(self.file_path):
            raise FileNotFoundError(f"Case file not found: {self.file_path}")

        with open(self.file_path) as f:
            lines = [line.split('%', 1)[0] for line in f]
        text = '\n'.join(lines)

        match = _FUNCTION_RE.search(text)
        if match:
            self.name = match.group(1)

        for key, body in _MATRIX_RE.findall(text):
            self.matrices[key] = self._parse_matrix(key, body)
        for key, body in _CELL_RE.findall(text):
            self.cells[key] = re.findall(r"'([^']*)'", body)
        for key, raw in _SCALAR_RE.findall(text):
            self.scalars[key] = raw.strip().strip("'\"")

        logger.info("Loaded %s: %d buses, %d generators, %d branches", self.name,
                    len(self.matrices.get('bus', [])), len(self.matrices.get('gen', [])),
                    len(self.matrices.get('branch', [])))

    @staticmethod
    def _parse_matrix(key: str, body: str) -> List[List[float]]:
        rows = []
        for raw_row in re.split(r"[;\n]", body):
            tokens = [t for t in re.split(r"[\s,]+", raw_row.strip()) if t]
            if not tokens:
                continue
            try:
                rows.append([float(t) for t in tokens])
            except ValueError as e:
                raise DataFormatError(f"Non-numeric entry in mpc.{key}: {raw_row.strip()!r}") from e
        return rows

    def _table(self, key: str, columns: List[str], min_columns: int) -> np.ndarray:
        if key not in self.matrices:
            raise DataFormatError(f"Case file {self.file_path} has no mpc.{key} section")
        rows = self.matrices[key]
        if not rows:
            raise DataFormatError(f"mpc.{key} is empty")
        widths = {len(r) for r in rows}
        if len(widths) > 1:
            raise DataFormatError(f"mpc.{key} rows have inconsistent lengths: {sorted(widths)}")
        table = np.array(rows, dtype=float).reshape(len(rows), -1)
        if table.shape[1] < min_columns:
            raise DataFormatError(
                f"mpc.{key} needs at least {min_columns} columns, found {table.shape[1]}"
            )
        return table[:, :len(columns)]

    def to_network_data(self) -> Dict[str, Any]:
        """Convert the raw sections into a per-unit network data mapping."""
        if 'baseMVA' not in self.scalars:
            raise DataFormatError(f"Case file {self.file_path} has no mpc.baseMVA")
        base_mva = float(self.scalars['baseMVA'])

        bus_table = self._table('bus', BUS_COLUMNS, 13)
        gen_table = self._table('gen', GEN_COLUMNS, 10)
        branch_table = self._table('branch', BRANCH_COLUMNS, 11)

        data: Dict[str, Any] = {
            'name': self.name,
            'source_type': 'matpower',
            'baseMVA': base_mva,
            'per_unit': True,
            'bus': {},
            'load': {},
            'shunt': {},
            'gen': {},
            'branch': {},
        }

        bus_names = self.cells.get('bus_name', [])
        for k, row in enumerate(bus_table):
            rec = dict(zip(BUS_COLUMNS, row))
            bus_id = int(rec['bus_i'])
            bus = {
                'index': bus_id,
                'bus_i': bus_id,
                'bus_type': int(rec['bus_type']),
                'vm': rec['vm'],
                'va': math.radians(rec['va']),
                'vmin': rec['vmin'],
                'vmax': rec['vmax'],
                'base_kv': rec['base_kv'],
                'area': int(rec['area']),
                'zone': int(rec['zone']),
            }
            if k < len(bus_names):
                bus['name'] = bus_names[k]
            data['bus'][str(bus_id)] = bus

            if rec['pd'] != 0 or rec['qd'] != 0:
                idx = len(data['load']) + 1
                data['load'][str(idx)] = {
                    'index': idx,
                    'load_bus': bus_id,
                    'pd': rec['pd'] / base_mva,
                    'qd': rec['qd'] / base_mva,
                    'status': 1,
                }
            if rec['gs'] != 0 or rec['bs'] != 0:
                idx = len(data['shunt']) + 1
                data['shunt'][str(idx)] = {
                    'index': idx,
                    'shunt_bus': bus_id,
                    'gs': rec['gs'] / base_mva,
                    'bs': rec['bs'] / base_mva,
                    'status': 1,
                }

        gencost = self.matrices.get('gencost', [])
        if gencost and len(gencost) < len(gen_table):
            raise DataFormatError(
                f"mpc.gencost has {len(gencost)} rows for {len(gen_table)} generators"
            )

        for k, row in enumerate(gen_table):
            rec = dict(zip(GEN_COLUMNS, row))
            idx = k + 1
            ramp_30 = rec.get('ramp_30', 0.0)
            ramp_agc = rec.get('ramp_agc', 0.0)
            if ramp_30 > 0:
                ramp_rate = 2.0 * ramp_30 / base_mva
            elif ramp_agc > 0:
                ramp_rate = 60.0 * ramp_agc / base_mva
            else:
                ramp_rate = 0.0

            gen = {
                'index': idx,
                'gen_bus': int(rec['gen_bus']),
                'pg': rec['pg'] / base_mva,
                'qg': rec['qg'] / base_mva,
                'qmax': rec['qmax'] / base_mva,
                'qmin': rec['qmin'] / base_mva,
                'vg': rec['vg'],
                'mbase': rec['mbase'],
                'gen_status': int(rec['gen_status'] > 0),
                'pmax': rec['pmax'] / base_mva,
                'pmin': rec['pmin'] / base_mva,
                'ramp_rate': ramp_rate,
                'model': 2,
                'ncost': 0,
                'cost': [],
                'startup': 0.0,
                'shutdown': 0.0,
            }
            if gencost:
                cost_row = gencost[k]
                model, startup, shutdown, ncost = cost_row[:4]
                if int(model) == 1:
                    coefficients = cost_row[4:4 + 2 * int(ncost)]
                else:
                    coefficients = cost_row[4:4 + int(ncost)]
                gen.update({
                    'model': int(model),
                    'startup': startup,
                    'shutdown': shutdown,
                    'ncost': int(ncost),
                    'cost': _per_unit_cost(int(model), list(coefficients), base_mva),
                })
            data['gen'][str(idx)] = gen

        for k, row in enumerate(branch_table):
            rec = dict(zip(BRANCH_COLUMNS, row))
            idx = k + 1
            angmin, angmax = _angle_limits(rec.get('angmin', -360.0), rec.get('angmax', 360.0),
                                           self.default_angle_limit_deg)
            data['branch'][str(idx)] = {
                'index': idx,
                'f_bus': int(rec['f_bus']),
                't_bus': int(rec['t_bus']),
                'br_r': rec['br_r'],
                'br_x': rec['br_x'],
                'g_fr': 0.0,
                'b_fr': rec['br_b'] / 2.0,
                'g_to': 0.0,
                'b_to': rec['br_b'] / 2.0,
                'rate_a': rec['rate_a'] / base_mva,
                'tap': rec['tap'] if rec['tap'] != 0 else 1.0,
                'shift': math.radians(rec['shift']),
                'br_status': int(rec['br_status'] > 0),
                'angmin': angmin,
                'angmax': angmax,
            }

        return data


class RTSDataLoader:
    """Data loader for the RTS-GMLC ``SourceData`` CSV directory."""

    BASE_MVA = 100.0
    BUS_TYPES = {'PQ': 1, 'PV': 2, 'REF': 3}
    TABLES = {
        'buses': ('bus.csv', ['Bus ID', 'Bus Type', 'MW Load', 'Area']),
        'branches': ('branch.csv', ['UID', 'From Bus', 'To Bus', 'R', 'X', 'B', 'Cont Rating']),
        'generators': ('gen.csv', ['GEN UID', 'Bus ID', 'PMax MW', 'PMin MW']),
    }

    def __init__(self, data_dir: str = 'data/RTS_Data/SourceData',
                 default_angle_limit_deg: float = DEFAULT_CONFIG.default_angle_limit_deg):
        self.data_dir = str(data_dir)
        self.default_angle_limit_deg = default_angle_limit_deg

        self.buses = None
        self.branches = None
        self.generators = None

        self.load_data()

    def load_data(self) -> None:
        """Read bus.csv, branch.csv and gen.csv, checking the columns the conversion needs."""
        for attr, (filename, required) in self.TABLES.items():
            path = os.path.join(self.data_dir, filename)
            if not os.path.exists(path):
                raise FileNotFoundError(f"RTS-GMLC table not found: {path}")
            table = pd.read_csv(path)
            missing = [c for c in required if c not in table.columns]
            if missing:
                raise DataFormatError(f"{path} is missing columns: {missing}")
            setattr(self, attr, table)

        self.buses = self.buses.set_index('Bus ID')
        logger.info("Loaded %d buses, %d branches, %d generators from %s",
                    len(self.buses), len(self.branches), len(self.generators), self.data_dir)

    def get_system_summary(self) -> Dict[str, Any]:
        """Case size in MW and component counts."""
        load = float(self.buses['MW Load'].sum())
        capacity = float(self.generators['PMax MW'].sum())
        return {
            'n_buses': len(self.buses),
            'n_branches': len(self.branches),
            'n_generators': len(self.generators),
            'n_areas': int(self.buses['Area'].nunique()),
            'total_load': load,
            'total_capacity': capacity,
            'reserve_margin': (capacity - load) / load if load > 0 else float('inf'),
        }

    def to_network_data(self) -> Dict[str, Any]:
        """Convert the CSV tables into a per-unit network data mapping."""
        base_mva = self.BASE_MVA
        data: Dict[str, Any] = {
            'name': Path(self.data_dir).name,
            'source_type': 'rts-gmlc',
            'baseMVA': base_mva,
            'per_unit': True,
            'bus': {},
            'load': {},
            'shunt': {},
            'gen': {},
            'branch': {},
        }

        for bus_id, bus in self.buses.iterrows():
            bus_id = int(bus_id)
            bus_type = self.BUS_TYPES.get(str(bus.get('Bus Type', 'PQ')).upper())
            if bus_type is None:
                raise DataFormatError(f"Unknown bus type for bus {bus_id}: {bus.get('Bus Type')!r}")
            data['bus'][str(bus_id)] = {
                'index': bus_id,
                'bus_i': bus_id,
                'bus_type': bus_type,
                'vm': float(bus.get('V Mag', 1.0)),
                'va': math.radians(float(bus.get('V Angle', 0.0))),
                'vmin': 0.95,
                'vmax': 1.05,
                'base_kv': float(bus.get('BaseKV', 0.0)),
                'area': int(bus.get('Area', 1)),
                'zone': int(bus.get('Zone', 1)),
                'name': str(bus.get('Bus Name', bus_id)),
            }

            pd_mw = float(bus.get('MW Load', 0.0))
            qd_mvar = float(bus.get('MVAR Load', 0.0))
            if pd_mw != 0 or qd_mvar != 0:
                idx = len(data['load']) + 1
                data['load'][str(idx)] = {
                    'index': idx,
                    'load_bus': bus_id,
                    'pd': pd_mw / base_mva,
                    'qd': qd_mvar / base_mva,
                    'status': 1,
                }

            gs = float(bus.get('MW Shunt G', 0.0))
            bs = float(bus.get('MVAR Shunt B', 0.0))
            if gs != 0 or bs != 0:
                idx = len(data['shunt']) + 1
                data['shunt'][str(idx)] = {
                    'index': idx,
                    'shunt_bus': bus_id,
                    'gs': gs / base_mva,
                    'bs': bs / base_mva,
                    'status': 1,
                }

        for k, (_, gen) in enumerate(self.generators.iterrows()):
            idx = k + 1
            fuel_price = gen.get('Fuel Price $/MMBTU', 0.0)
            avg_hr = gen.get('HR_avg_0', 10000)
            if pd.isna(fuel_price):
                fuel_price = 0.0
            if pd.isna(avg_hr):
                avg_hr = 10000
            marginal_cost = fuel_price * avg_hr / 1000.0
            ramp = gen.get('Ramp Rate MW/Min', 0.0)
            ramp = 0.0 if pd.isna(ramp) else float(ramp)

            data['gen'][str(idx)] = {
                'index': idx,
                'name': str(gen['GEN UID']),
                'unit_type': str(gen.get('Unit Type', '')),
                'gen_bus': int(gen['Bus ID']),
                'pg': float(gen.get('MW Inj', 0.0)) / base_mva,
                'qg': float(gen.get('MVAR Inj', 0.0)) / base_mva,
                'qmax': float(gen.get('QMax MVAR', 0.0)) / base_mva,
                'qmin': float(gen.get('QMin MVAR', 0.0)) / base_mva,
                'vg': float(gen.get('V Setpoint p.u.', 1.0)),
                'mbase': base_mva,
                'gen_status': 1,
                'pmax': float(gen['PMax MW']) / base_mva,
                'pmin': float(gen['PMin MW']) / base_mva,
                'ramp_rate': 60.0 * ramp / base_mva,
                'model': 2,
                'ncost': 2,
                'cost': _per_unit_cost(2, [marginal_cost, 0.0], base_mva),
                'startup': 0.0,
                'shutdown': 0.0,
            }

        for k, (_, branch) in enumerate(self.branches.iterrows()):
            idx = k + 1
            tap = branch.get('Tr Ratio', 0.0)
            tap = 1.0 if pd.isna(tap) or tap == 0 else float(tap)
            angmin, angmax = _angle_limits(0.0, 0.0, self.default_angle_limit_deg)
            data['branch'][str(idx)] = {
                'index': idx,
                'name': str(branch['UID']),
                'f_bus': int(branch['From Bus']),
                't_bus': int(branch['To Bus']),
                'br_r': float(branch['R']),
                'br_x': float(branch['X']),
                'g_fr': 0.0,
                'b_fr': float(branch['B']) / 2.0,
                'g_to': 0.0,
                'b_to': float(branch['B']) / 2.0,
                'rate_a': float(branch['Cont Rating']) / base_mva,
                'tap': tap,
                'shift': 0.0,
                'br_status': 1,
                'angmin': angmin,
                'angmax': angmax,
            }

        return data


def parse_file(file_path: str, loader: Optional[str] = None,
               default_angle_limit_deg: float = DEFAULT_CONFIG.default_angle_limit_deg) -> Dict[str, Any]:
    """
    Parse a case into a per-unit network data mapping.

    Parameters
    ----------
    file_path : str
        A MATPOWER ``.m`` file or an RTS-GMLC ``SourceData`` directory.
    loader : str, optional
        Force ``"matpower"`` or ``"rts-gmlc"`` instead of guessing from the path.
    default_angle_limit_deg : float, optional
        Angle-difference limit in degrees for branches without one.

    Returns
    -------
    dict
        Network data mapping in per-unit.
    """
    path = Path(file_path)
    if loader is None:
        loader = 'rts-gmlc' if path.is_dir() else 'matpower'

    if loader == 'matpower':
        return MatpowerLoader(str(path), default_angle_limit_deg).to_network_data()
    if loader == 'rts-gmlc':
        rts = RTSDataLoader(str(path), default_angle_limit_deg)
        summary = rts.get_system_summary()
        logger.info("RTS-GMLC case: %d buses, %d branches, %d generators, %.1f MW load, "
                    "%.1f MW capacity (reserve margin %.0f%%)", summary['n_buses'],
                    summary['n_branches'], summary['n_generators'], summary['total_load'],
                    summary['total_capacity'], 100 * summary['reserve_margin'])
        return rts.to_network_data()
    raise DataFormatError(f"Unknown case loader: {loader!r}")
