"""torch-adjmat package base module."""

# ruff: noqa: F401
from importlib.metadata import version

from torch_adjmat import (
    contact_matrix,
    errors,
    keywords,
    neighbors,
    nodes,
    state,
    switching,
    tasks,
    transforms,
    vessel,
)
from torch_adjmat.contact_matrix import ContactMatrix, EvaluationMode
from torch_adjmat.errors import (
    ConfigurationError,
    DerivativeNotAvailableError,
    MissingKeywordError,
    UnsupportedConfigurationError,
)
from torch_adjmat.keywords import (
    ContactMatrixConfig,
    parse_keywords,
    read_switching_matrix,
    switch_keyword,
)
from torch_adjmat.nodes import AtomNodes, CentroidNodes, NodeGroup, NodeRegistry
from torch_adjmat.state import AtomicSystem
from torch_adjmat.switching import (
    SwitchingFunction,
    SwitchingFunctionMatrix,
    SwitchingType,
)
from torch_adjmat.tasks import TaskBookkeeper
from torch_adjmat.vessel import AdjacencyMatrixVessel, PairDerivatives


__version__ = version("torch-adjmat")
