import pytest

from conftest import requires_ipopt
from mpopf import (
    ACMPOPFModelFactory,
    DCMPOPFModelFactory,
    LinMPOPFModelFactory,
    NewACMPOPFModelFactory,
    Scenario,
    SolverUnavailableError,
    create_model,
    create_model_check_feasibility,
    extract_solution,
    get_results,
    optimize_model,
    optimize_model_with_plot,
    parse_solver_log,
    print_summary,
    results_to_frame,
)
from mpopf.config import DEFAULT_SOLVER_OPTIONS, solver_options

IPOPT_LOG = """
This is Ipopt version 3.14.11, running with linear solver MUMPS 5.2.1.

iter    objective    inf_pr   inf_du lg(mu)  ||d||  lg(rg) alpha_du alpha_pr  ls
   0  1.2345678e+03 1.10e+00 1.00e+02  -1.0 0.00e+00    -  0.00e+00 0.00e+00   0
   1  5.6789000e+03 2.00e-01 3.00e+01  -1.0 1.00e+00    -  5.00e-01 1.00e+00h  1
   2r 5.6000000e+03 2.00e-02 1.00e+01  -1.0 1.00e+00    -  5.00e-01 1.00e+00f  1
   3  5.5812000e+03 1.00e-09 1.00e-08  -5.7 1.00e-03    -  1.00e+00 1.00e+00h  1

Number of Iterations....: 3
EXIT: Optimal Solution Found.
"""


def test_parse_solver_log():
    iterations = parse_solver_log(IPOPT_LOG)
    assert [it['iteration'] for it in iterations] == [0, 1, 2, 3]
    assert iterations[0]['objective'] == pytest.approx(1234.5678)
    assert iterations[1]['inf_pr'] == pytest.approx(0.2)
    assert iterations[3]['inf_du'] == pytest.approx(1e-8)


def test_parse_solver_log_without_table():
    assert parse_solver_log("Welcome to GLPK\nINTEGER OPTIMAL SOLUTION FOUND\n") == []


def test_solver_options_merge():
    merged = solver_options('ipopt', {'max_iter': 50, 'print_level': 0})
    assert merged == {'tol': 1e-6, 'max_iter': 50, 'print_level': 0}
    assert DEFAULT_SOLVER_OPTIONS['ipopt']['max_iter'] == 3000
    assert solver_options('unknown') == {}


def test_results_to_frame():
    results = {'generation': {(1, 1): 10.0, (2, 1): 20.0, (1, 2): 11.0, (2, 2): 21.0}}
    frame = results_to_frame(results)
    assert list(frame.index) == [1, 2]
    assert list(frame.columns) == [1, 2]
    assert frame.loc[2, 1] == pytest.approx(11.0)


def test_unsolved_model_has_no_results(case3, capsys):
    mp = create_model(DCMPOPFModelFactory(case3))
    assert get_results(mp) is None
    with pytest.raises(ValueError):
        extract_solution(mp)
    print_summary(mp)
    assert 'No results available' in capsys.readouterr().out


def test_unavailable_solver(case3):
    mp = create_model(DCMPOPFModelFactory(case3, 'no_such_solver_xyz'))
    with pytest.raises(SolverUnavailableError):
        optimize_model(mp)


@requires_ipopt
def test_dc_single_period(case3, capsys):
    mp = create_model(DCMPOPFModelFactory(case3))
    result = optimize_model(mp)
    assert result.success
    assert 'Optimal Cost:' in capsys.readouterr().out

    results = get_results(mp)
    assert results['objective_value'] == pytest.approx(result.objective_value)
    assert results['total_generation'][1] == pytest.approx(315.0, rel=1e-5)
    assert results['total_load'][1] == pytest.approx(315.0)
    assert abs(results['flows'][(2, 1)]) <= 50.0 + 1e-4
    assert results['generation'][(3, 1)] == pytest.approx(0.0, abs=1e-6)


@requires_ipopt
def test_two_identical_periods_cost_twice_one(case3):
    single = create_model(DCMPOPFModelFactory(case3))
    double = create_model(DCMPOPFModelFactory(case3), time_periods=2, ramping_cost=10)
    one = optimize_model(single)
    two = optimize_model(double)
    assert one.success and two.success
    assert two.objective_value == pytest.approx(2 * one.objective_value, rel=1e-5)
    assert get_results(double)['ramping_cost'] == pytest.approx(0.0, abs=1e-3)


@requires_ipopt
def test_ramping_cost_is_charged(case3):
    free = create_model(DCMPOPFModelFactory(case3), time_periods=2, factors=[0.6, 1.0])
    costly = create_model(DCMPOPFModelFactory(case3), time_periods=2, factors=[0.6, 1.0],
                          ramping_cost=5)
    optimize_model(free)
    optimize_model(costly)
    results = get_results(costly)
    assert results['ramping_cost'] > 0
    # demand rises by 126 MW, so at least that much ramping is paid for
    assert results['ramping_cost'] >= 5 * 126 - 1e-2
    assert costly.model.obj() > free.model.obj()


@requires_ipopt
def test_ac_and_newac_agree(case3):
    ac = create_model(ACMPOPFModelFactory(case3))
    newac = create_model(NewACMPOPFModelFactory(case3))
    rect = create_model(ACMPOPFModelFactory(case3), model_type='rectangular')
    r_ac = optimize_model(ac)
    r_newac = optimize_model(newac)
    r_rect = optimize_model(rect)
    assert r_ac.success and r_newac.success and r_rect.success
    assert r_newac.objective_value == pytest.approx(r_ac.objective_value, rel=1e-4)
    assert r_rect.objective_value == pytest.approx(r_ac.objective_value, rel=1e-4)

    results = get_results(ac)
    assert results['total_generation'][1] > results['total_load'][1]
    assert all(0.9 - 1e-6 <= vm <= 1.1 + 1e-6 for vm in results['voltages'].values())
    assert results['angles'][(1, 1)] == pytest.approx(0.0, abs=1e-6)


@requires_ipopt
def test_linear_model_solves(case3):
    mp = create_model(LinMPOPFModelFactory(case3), time_periods=2, factors=[0.9, 1.0])
    result = optimize_model(mp)
    assert result.success
    solution = extract_solution(mp)
    assert set(solution) == {'pg', 'qg', 'v', 'theta'}


@requires_ipopt
def test_feasibility_of_newac_solution(case3):
    factory = NewACMPOPFModelFactory(case3)
    mp = create_model(factory, time_periods=2, factors=[0.9, 1.0])
    assert optimize_model(mp).success
    solution = extract_solution(mp)

    check = create_model_check_feasibility(factory, new_pg=solution['pg'], time_periods=2,
                                           factors=[0.9, 1.0])
    result = optimize_model(check)
    assert result.success
    assert result.objective_value == pytest.approx(mp.model.obj(), rel=1e-4)


@requires_ipopt
def test_uncertainty_model_solves(case3, capsys):
    scenarios = {
        'low': Scenario('low', load_scale=0.9, weight=0.5),
        'high': Scenario('high', load_scale=1.1, weight=0.5),
    }
    mp = create_model(DCMPOPFModelFactory(case3), scenarios=scenarios, time_periods=2)
    result = optimize_model(mp)
    assert result.success

    results = get_results(mp)
    assert set(results['scenario_results']) == {'low', 'high'}
    assert results['recourse_cost'] > 0
    assert results['scenario_results']['high']['total_load'] == pytest.approx(2 * 315.0 * 1.1)
    assert extract_solution(mp).keys() == {'pg'}

    print_summary(mp)
    out = capsys.readouterr().out
    assert 'Scenario summaries' in out


@requires_ipopt
def test_optimize_with_plot_saves_figure(case3, tmp_path):
    path = tmp_path / 'opt.png'
    mp = create_model(ACMPOPFModelFactory(case3), time_periods=2, factors=[0.9, 1.0])
    result = optimize_model_with_plot(mp, save_path=str(path))
    assert result.success
    assert path.exists()
    assert len(result.iterations) > 0
