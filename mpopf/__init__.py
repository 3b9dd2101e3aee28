"""
mpopf
=====

Multi-period optimal power flow on Pyomo.

Build a factory for a case file and formulation, turn it into a model with
``create_model`` and solve it with ``optimize_model``::

    >>> from mpopf import DCMPOPFModelFactory, create_model, optimize_model
    >>> factory = DCMPOPFModelFactory('case5.m', 'ipopt')
    >>> mp = create_model(factory, time_periods=24, factors=factors, ramping_cost=5)
    >>> optimize_model(mp)
"""
from .config import DEFAULT_CONFIG, ModelConfig
from .core import (
    AbstractMPOPFModel,
    AbstractMPOPFModelFactory,
    ACMPOPFModelFactory,
    DCMPOPFModelFactory,
    LinMPOPFModelFactory,
    MatpowerLoader,
    MPOPFModel,
    MPOPFModelUncertainty,
    NewACMPOPFModelFactory,
    OptimizationResult,
    Reference,
    RTSDataLoader,
    Scenario,
    TimeseriesLoader,
    create_model,
    create_model_check_feasibility,
    extract_solution,
    get_ref,
    get_results,
    optimize_model,
    optimize_model_with_plot,
    parse_file,
    parse_solver_log,
    print_summary,
    results_to_frame,
)
from .exceptions import (
    DataFormatError,
    ModelConfigurationError,
    MPOPFError,
    SolverUnavailableError,
)

__version__ = '0.1.0'
