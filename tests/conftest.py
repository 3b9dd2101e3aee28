import os

import matplotlib
matplotlib.use('Agg')

import pandas as pd
import pytest
from pyomo.opt import SolverFactory

DATA_DIR = os.path.join(os.path.dirname(__file__), 'data')


def _ipopt_available():
    try:
        return bool(SolverFactory('ipopt').available(exception_flag=False))
    except Exception:
        return False


requires_ipopt = pytest.mark.skipif(not _ipopt_available(), reason="ipopt solver not available")


@pytest.fixture
def case3():
    """Path to the bundled 3-bus MATPOWER case."""
    return os.path.join(DATA_DIR, 'case3.m')


@pytest.fixture
def write_case(tmp_path):
    """Write MATPOWER text to a temporary .m file and return its path."""
    def _write(text, name='case.m'):
        path = tmp_path / name
        path.write_text(text)
        return str(path)
    return _write


@pytest.fixture
def rts_dir(tmp_path):
    """Minimal RTS-GMLC SourceData directory with 3 buses."""
    pd.DataFrame({
        'Bus ID': [101, 102, 103],
        'Bus Name': ['Abel', 'Adams', 'Adler'],
        'BaseKV': [138.0, 138.0, 138.0],
        'Bus Type': ['Ref', 'PV', 'PQ'],
        'MW Load': [0.0, 80.0, 60.0],
        'MVAR Load': [0.0, 20.0, 10.0],
        'V Mag': [1.0, 1.0, 1.0],
        'V Angle': [0.0, 0.0, 0.0],
        'MW Shunt G': [0.0, 0.0, 0.0],
        'MVAR Shunt B': [0.0, 0.0, 19.0],
        'Area': [1, 1, 2],
        'Zone': [11, 11, 12],
    }).to_csv(tmp_path / 'bus.csv', index=False)
    pd.DataFrame({
        'UID': ['A1', 'A2', 'A3'],
        'From Bus': [101, 102, 101],
        'To Bus': [102, 103, 103],
        'R': [0.003, 0.05, 0.06],
        'X': [0.014, 0.21, 0.23],
        'B': [0.461, 0.057, 0.034],
        'Cont Rating': [175.0, 175.0, 0.0],
        'Tr Ratio': [0.0, 0.0, 1.015],
    }).to_csv(tmp_path / 'branch.csv', index=False)
    pd.DataFrame({
        'GEN UID': ['101_CT_1', '102_STEAM_1'],
        'Bus ID': [101, 102],
        'Unit Type': ['CT', 'STEAM'],
        'MW Inj': [50.0, 70.0],
        'MVAR Inj': [0.0, 0.0],
        'V Setpoint p.u.': [1.0, 1.0],
        'PMax MW': [200.0, 150.0],
        'PMin MW': [10.0, 30.0],
        'QMax MVAR': [100.0, 60.0],
        'QMin MVAR': [-50.0, -25.0],
        'Ramp Rate MW/Min': [3.0, 2.0],
        'Fuel Price $/MMBTU': [2.5, 2.0],
        'HR_avg_0': [12000.0, 10000.0],
    }).to_csv(tmp_path / 'gen.csv', index=False)
    return str(tmp_path)
