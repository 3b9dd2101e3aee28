"""Model factories: a case file plus a solver choice for one formulation."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..config import DEFAULT_CONFIG, ModelConfig
from .data_loader import parse_file
from .formulations import (
    ACFormulation,
    DCFormulation,
    Formulation,
    LinearFormulation,
    NewACFormulation,
)


@dataclass
class AbstractMPOPFModelFactory(ABC):
    """
    Base for all MPOPF model factories.

    Attributes
    ----------
    file_path : str
        Path to the input data file (MATPOWER ``.m``) or RTS-GMLC directory.
    optimizer : str
        Pyomo solver name used when the model is optimized (e.g. ``"ipopt"``).
    solver_options : dict
        Options passed to the solver on top of the defaults for ``optimizer``.
    loader : str, optional
        Force the case loader (``"matpower"`` or ``"rts-gmlc"``).
    """
    file_path: str
    optimizer: str = 'ipopt'
    solver_options: Dict[str, Any] = field(default_factory=dict)
    loader: Optional[str] = None

    @property
    @abstractmethod
    def formulation(self) -> Formulation:
        """A fresh formulation instance for this factory."""

    def load_data(self, config: ModelConfig = DEFAULT_CONFIG) -> Dict[str, Any]:
        return parse_file(self.file_path, self.loader,
                          default_angle_limit_deg=config.default_angle_limit_deg)


@dataclass
class ACMPOPFModelFactory(AbstractMPOPFModelFactory):
    """Factory for creating AC MPOPF models."""

    @property
    def formulation(self) -> Formulation:
        return ACFormulation()


@dataclass
class DCMPOPFModelFactory(AbstractMPOPFModelFactory):
    """Factory for creating DC MPOPF models."""

    @property
    def formulation(self) -> Formulation:
        return DCFormulation()


@dataclass
class LinMPOPFModelFactory(AbstractMPOPFModelFactory):
    """Factory for creating linearized MPOPF models."""

    @property
    def formulation(self) -> Formulation:
        return LinearFormulation()


@dataclass
class NewACMPOPFModelFactory(AbstractMPOPFModelFactory):
    """Factory for creating bus-injection AC MPOPF models."""

    @property
    def formulation(self) -> Formulation:
        return NewACFormulation()
