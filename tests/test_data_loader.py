import logging
import math
import os

import pandas as pd
import pytest

from mpopf import DataFormatError, MatpowerLoader, RTSDataLoader, parse_file


MINIMAL_CASE = """
function mpc = tiny
mpc.baseMVA = 100;
mpc.bus = [
    1  3  0   0  0  0  1  1.0  0  230  1  1.1  0.9;
    2  1  50  10 0  5  1  1.0  0  230  1  1.1  0.9;
];
mpc.gen = [
    1  20  0  30  -30  1.0  100  1  80  0  0  0  0  0  0  0  0  0  15  0  0;
];
mpc.branch = [
    1  2  0.01  0.1  0.02  120  0  0  0.98  2  1  0  0;
];
mpc.gencost = [
    1  0  0  2  0  0  80  1600;
];
"""


def test_matpower_case3_counts(case3):
    data = parse_file(case3)
    assert data['source_type'] == 'matpower'
    assert data['name'] == 'case3'
    assert data['baseMVA'] == 100.0
    assert data['per_unit'] is True
    assert len(data['bus']) == 3
    assert len(data['gen']) == 3
    assert len(data['branch']) == 3
    assert len(data['load']) == 3
    assert data['shunt'] == {}


def test_matpower_case3_per_unit_values(case3):
    data = parse_file(case3)
    assert data['load']['1']['pd'] == pytest.approx(1.1)
    assert data['load']['3']['qd'] == pytest.approx(0.5)
    assert data['gen']['1']['pmax'] == pytest.approx(20.0)
    assert data['branch']['2']['rate_a'] == pytest.approx(0.5)
    assert data['branch']['1']['b_fr'] == pytest.approx(0.225)
    assert data['branch']['1']['b_to'] == pytest.approx(0.225)
    assert data['branch']['1']['tap'] == 1.0
    assert data['branch']['1']['angmin'] == pytest.approx(math.radians(-30))
    assert data['bus']['2']['name'] == 'Bus Two'


def test_matpower_polynomial_cost_scaled_to_per_unit(case3):
    gen = parse_file(case3)['gen']['1']
    assert gen['model'] == 2
    assert gen['ncost'] == 3
    assert gen['cost'] == pytest.approx([0.11 * 100 ** 2, 5.0 * 100, 0.0])


def test_matpower_piecewise_cost_shunts_and_angles(write_case):
    data = parse_file(write_case(MINIMAL_CASE))
    gen = data['gen']['1']
    assert gen['model'] == 1
    assert gen['cost'] == pytest.approx([0.0, 0.0, 0.8, 1600.0])
    assert gen['ramp_rate'] == pytest.approx(0.3)

    assert data['shunt']['1']['shunt_bus'] == 2
    assert data['shunt']['1']['bs'] == pytest.approx(0.05)

    branch = data['branch']['1']
    assert branch['tap'] == pytest.approx(0.98)
    assert branch['shift'] == pytest.approx(math.radians(2))
    assert branch['angmin'] == pytest.approx(math.radians(-60))
    assert branch['angmax'] == pytest.approx(math.radians(60))


def test_matpower_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        MatpowerLoader(str(tmp_path / 'nope.m'))


def test_matpower_missing_branch_section(write_case):
    text = MINIMAL_CASE.split('mpc.branch')[0]
    with pytest.raises(DataFormatError, match='branch'):
        parse_file(write_case(text))


def test_matpower_ragged_matrix(write_case):
    text = MINIMAL_CASE.replace(
        "2  1  50  10 0  5  1  1.0  0  230  1  1.1  0.9;",
        "2  1  50  10 0  5  1  1.0  0  230  1;",
    )
    with pytest.raises(DataFormatError, match='inconsistent'):
        parse_file(write_case(text))


def test_matpower_missing_base_mva(write_case):
    text = MINIMAL_CASE.replace("mpc.baseMVA = 100;", "")
    with pytest.raises(DataFormatError, match='baseMVA'):
        parse_file(write_case(text))


def test_matpower_unsupported_cost_model(write_case):
    text = MINIMAL_CASE.replace("1  0  0  2  0  0  80  1600;", "3  0  0  2  0  0  80  1600;")
    with pytest.raises(DataFormatError, match='cost model'):
        parse_file(write_case(text))


def test_data_format_error_is_value_error(write_case):
    text = MINIMAL_CASE.replace("mpc.baseMVA = 100;", "")
    with pytest.raises(ValueError):
        parse_file(write_case(text))


def test_unknown_loader(case3):
    with pytest.raises(DataFormatError):
        parse_file(case3, loader='psse')


def test_rts_directory_is_detected(rts_dir):
    data = parse_file(rts_dir)
    assert data['source_type'] == 'rts-gmlc'
    assert sorted(data['bus']) == ['101', '102', '103']
    assert data['bus']['101']['bus_type'] == 3
    assert data['bus']['103']['bus_type'] == 1
    assert len(data['load']) == 2
    assert data['shunt']['1']['bs'] == pytest.approx(0.19)


def test_rts_generator_cost_and_ramp(rts_dir):
    gen = parse_file(rts_dir)['gen']['1']
    assert gen['gen_bus'] == 101
    assert gen['pmax'] == pytest.approx(2.0)
    # 2.5 $/MMBTU * 12000 BTU/kWh / 1000 = 30 $/MWh, i.e. 3000 $/pu
    assert gen['cost'] == pytest.approx([3000.0, 0.0])
    assert gen['ramp_rate'] == pytest.approx(1.8)


def test_rts_branch_tap(rts_dir):
    branches = parse_file(rts_dir)['branch']
    assert branches['1']['tap'] == 1.0
    assert branches['3']['tap'] == pytest.approx(1.015)
    assert branches['3']['rate_a'] == 0.0


def test_rts_system_summary(rts_dir):
    summary = RTSDataLoader(rts_dir).get_system_summary()
    assert summary['n_buses'] == 3
    assert summary['n_generators'] == 2
    assert summary['total_load'] == pytest.approx(140.0)
    assert summary['total_capacity'] == pytest.approx(350.0)
    assert summary['n_areas'] == 2
    assert summary['n_branches'] == 3
    assert summary['reserve_margin'] == pytest.approx(1.5)


def test_rts_missing_files(tmp_path):
    with pytest.raises(FileNotFoundError):
        RTSDataLoader(str(tmp_path))


def test_rts_angle_limit_default(rts_dir):
    data = parse_file(rts_dir, default_angle_limit_deg=45.0)
    assert data['branch']['1']['angmax'] == pytest.approx(math.radians(45))
    assert data['branch']['2']['angmin'] == pytest.approx(math.radians(-45))


def test_matpower_angle_limit_default(write_case):
    data = parse_file(write_case(MINIMAL_CASE), default_angle_limit_deg=20.0)
    assert data['branch']['1']['angmax'] == pytest.approx(math.radians(20))


def test_rts_case_size_is_logged(rts_dir, caplog):
    with caplog.at_level(logging.INFO, logger='mpopf.core.data_loader'):
        parse_file(rts_dir)
    assert '3 buses, 3 branches, 2 generators' in caplog.text
    assert 'reserve margin 150%' in caplog.text


def test_rts_missing_columns(rts_dir):
    path = os.path.join(rts_dir, 'gen.csv')
    pd.read_csv(path).drop(columns=['PMax MW']).to_csv(path, index=False)
    with pytest.raises(DataFormatError, match='PMax MW'):
        RTSDataLoader(rts_dir)
