import logging

import numpy as np
import pytest

from mpopf import (
    ACMPOPFModelFactory,
    ModelConfigurationError,
    NewACMPOPFModelFactory,
    create_model_check_feasibility,
)


def test_requires_newac_factory(case3):
    with pytest.raises(TypeError):
        create_model_check_feasibility(ACMPOPFModelFactory(case3))


def test_nothing_fixed_by_default(case3):
    mp = create_model_check_feasibility(NewACMPOPFModelFactory(case3))
    b = mp.model.period[1]
    assert not any(b.pg[g].fixed for g in b.pg)
    assert not any(b.vm[i].fixed for i in b.vm)


def test_fix_from_tuple_mapping(case3):
    new_pg = {(1, 1): 1.5, (2, 1): 1.6, (3, 1): 0.0}
    mp = create_model_check_feasibility(NewACMPOPFModelFactory(case3), new_pg=new_pg)
    b = mp.model.period[1]
    assert b.pg[1].fixed and b.pg[1].value == pytest.approx(1.5)
    assert b.pg[2].value == pytest.approx(1.6)
    assert not b.qg[1].fixed


def test_fix_from_period_mapping(case3):
    v = {1: {1: 1.0, 2: 1.02, 3: 0.99}, 2: {1: 1.01, 2: 1.03, 3: 0.98}}
    mp = create_model_check_feasibility(NewACMPOPFModelFactory(case3), v=v, time_periods=2)
    assert mp.model.period[1].vm[2].value == pytest.approx(1.02)
    assert mp.model.period[2].vm[3].value == pytest.approx(0.98)
    assert mp.model.period[2].vm[3].fixed


def test_fix_from_array(case3):
    theta = np.array([[0.0, 0.0], [-0.05, -0.06], [-0.1, -0.12]])
    qg = np.array([[0.1, 0.2], [0.3, 0.4], [0.0, 0.0]])
    mp = create_model_check_feasibility(NewACMPOPFModelFactory(case3), theta=theta, new_qg=qg,
                                        time_periods=2)
    assert mp.model.period[2].va[3].value == pytest.approx(-0.12)
    assert mp.model.period[1].qg[2].value == pytest.approx(0.3)


def test_one_dimensional_array_for_single_period(case3):
    mp = create_model_check_feasibility(NewACMPOPFModelFactory(case3), new_pg=[1.0, 2.0, 0.0])
    assert mp.model.period[1].pg[2].value == pytest.approx(2.0)


def test_array_shape_mismatch(case3):
    with pytest.raises(ModelConfigurationError, match='shape'):
        create_model_check_feasibility(NewACMPOPFModelFactory(case3), new_pg=np.zeros((3, 2)))


def test_unknown_ids(case3):
    with pytest.raises(ModelConfigurationError, match='unknown'):
        create_model_check_feasibility(NewACMPOPFModelFactory(case3), new_pg={(9, 1): 1.0})


def test_unknown_period(case3):
    with pytest.raises(ModelConfigurationError):
        create_model_check_feasibility(NewACMPOPFModelFactory(case3), new_pg={(1, 2): 1.0})


def test_out_of_bounds_value_is_fixed_with_warning(case3, caplog):
    with caplog.at_level(logging.WARNING, logger='mpopf.core.models'):
        mp = create_model_check_feasibility(NewACMPOPFModelFactory(case3), v={(1, 1): 1.5})
    assert mp.model.period[1].vm[1].fixed
    assert mp.model.period[1].vm[1].value == pytest.approx(1.5)
    assert 'outside its bounds' in caplog.text
