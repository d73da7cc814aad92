import pytest
import torch

from torch_adjmat.nodes import AtomNodes, CentroidNodes, NodeRegistry
from torch_adjmat.state import AtomicSystem
from torch_adjmat.switching import SwitchingFunctionMatrix


DEVICE = torch.device("cpu")
DTYPE = torch.float64

BOX_LENGTH = 6.0


@pytest.fixture
def four_node_system() -> AtomicSystem:
    """Four isolated nodes, only the first two within 1.5 of each other."""
    positions = torch.tensor(
        [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 2.0, 0.0], [3.0, 3.0, 3.0]],
        device=DEVICE,
        dtype=DTYPE,
    )
    cell = 10.0 * torch.eye(3, device=DEVICE, dtype=DTYPE)
    return AtomicSystem(positions=positions, cell=cell, pbc=False)


@pytest.fixture
def periodic_system() -> AtomicSystem:
    """Twenty-four atoms at random positions in a periodic cubic box."""
    generator = torch.Generator().manual_seed(42)
    positions = BOX_LENGTH * torch.rand(24, 3, generator=generator, dtype=DTYPE)
    cell = BOX_LENGTH * torch.eye(3, dtype=DTYPE)
    return AtomicSystem(positions=positions.to(DEVICE), cell=cell.to(DEVICE), pbc=True)


@pytest.fixture
def triclinic_system() -> AtomicSystem:
    """Atoms in a mildly sheared cell that is periodic along two axes."""
    generator = torch.Generator().manual_seed(7)
    cell = torch.tensor(
        [[6.5, 0.4, 0.0], [0.0, 6.0, 0.3], [0.0, 0.0, 7.0]], dtype=DTYPE
    )
    frac = torch.rand(20, 3, generator=generator, dtype=DTYPE)
    positions = frac @ cell.mT
    return AtomicSystem(
        positions=positions.to(DEVICE), cell=cell.to(DEVICE), pbc=[True, True, False]
    )


@pytest.fixture
def two_type_nodes() -> NodeRegistry:
    """Two atom groups of the periodic system."""
    return NodeRegistry(
        [AtomNodes("a", list(range(12))), AtomNodes("b", list(range(12, 24)))]
    )


@pytest.fixture
def mixed_nodes() -> NodeRegistry:
    """An atom group and a group of weighted centroids."""
    return NodeRegistry(
        [
            AtomNodes("a", list(range(10))),
            CentroidNodes(
                "mol",
                members=[[10, 11, 12], [13, 14], [15, 16, 17], [18, 19, 20, 21]],
                weights=[[16.0, 1.0, 1.0], [12.0, 16.0], [14.0, 1.0, 1.0], [1.0] * 4],
            ),
        ]
    )


@pytest.fixture
def two_type_switching() -> SwitchingFunctionMatrix:
    """Switching functions of two node types with different cutoffs."""
    matrix = SwitchingFunctionMatrix(n_types=2)
    matrix.set(0, 0, "{RATIONAL R_0=1.0 D_MAX=2.5}")
    matrix.set(0, 1, "{GAUSSIAN R_0=0.8 D_0=0.2 D_MAX=2.4}")
    matrix.set(1, 1, "{EXP R_0=0.4 D_MAX=2.0}")
    return matrix
