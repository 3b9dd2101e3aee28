"""Core modules: case loading, formulations, model construction and solving."""
from .data_loader import MatpowerLoader, RTSDataLoader, parse_file
from .factories import (
    AbstractMPOPFModelFactory,
    ACMPOPFModelFactory,
    DCMPOPFModelFactory,
    LinMPOPFModelFactory,
    NewACMPOPFModelFactory,
)
from .models import (
    AbstractMPOPFModel,
    MPOPFModel,
    MPOPFModelUncertainty,
    Scenario,
    create_model,
    create_model_check_feasibility,
)
from .optimize import (
    OptimizationResult,
    extract_solution,
    get_results,
    optimize_model,
    optimize_model_with_plot,
    parse_solver_log,
    print_summary,
    results_to_frame,
)
from .reference import Reference, get_ref
from .timeseries_loader import TimeseriesLoader
