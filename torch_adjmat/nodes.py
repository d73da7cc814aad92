"""Node sources for contact matrices.

Nodes are the points a contact matrix connects. Each ``NodeGroup`` supplies the
nodes of one type and knows how to carry derivatives with respect to its node
positions back to the atoms of an ``AtomicSystem``. Two kinds exist:

* ``AtomNodes``: every selected atom is a node.
* ``CentroidNodes``: every node is the weighted centroid of a set of atoms.

``NodeRegistry`` concatenates the groups into one node index space in which the
type of a node is the position of its group in the registry.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

import torch

from torch_adjmat.errors import ConfigurationError
from torch_adjmat.state import AtomicSystem
from torch_adjmat.transforms import make_whole


logger = logging.getLogger(__name__)


def _as_index_tensor(indices: torch.Tensor | Sequence[int], name: str) -> torch.Tensor:
    indices = torch.as_tensor(indices, dtype=torch.long)
    if indices.ndim != 1:
        raise ValueError(f"{name} must be one-dimensional, got {tuple(indices.shape)}")
    if (indices < 0).any():
        raise ValueError(f"{name} must be non-negative")
    return indices


@dataclass
class AtomNodes:
    """Nodes located on individual atoms.

    Attributes:
        name (str): Label used to refer to the group in a configuration.
        atom_indices (torch.Tensor): Indices of the atoms that are nodes, shape
            (n_nodes,).
    """

    name: str
    atom_indices: torch.Tensor | Sequence[int]

    def __post_init__(self) -> None:
        self.atom_indices = _as_index_tensor(self.atom_indices, "atom_indices")

    @property
    def n_nodes(self) -> int:
        """Number of nodes supplied by the group."""
        return self.atom_indices.shape[0]

    def positions(self, system: AtomicSystem) -> torch.Tensor:
        """Node positions with shape (n_nodes, 3)."""
        return system.positions[self.atom_indices.to(system.device)]

    def deposit(self, system: AtomicSystem, node_forces: torch.Tensor) -> None:
        """Add node derivatives to the atoms the nodes sit on."""
        system.forces.index_add_(0, self.atom_indices.to(system.device), node_forces)


@dataclass
class CentroidNodes:
    """Nodes located at weighted centroids of groups of atoms.

    The atoms of each node are made whole with the minimum image convention relative
    to its first member before averaging, so a node may straddle a periodic
    boundary. The derivative of a node position with respect to a member atom
    position is the normalised member weight times the identity.

    Attributes:
        name (str): Label used to refer to the group in a configuration.
        members (Sequence[Sequence[int]]): Atom indices of each node.
        weights (Sequence[Sequence[float]] | None): Weight of each member, e.g. the
            atomic masses. Normalised per node. Uniform if None.
    """

    name: str
    members: Sequence[Sequence[int]]
    weights: Sequence[Sequence[float]] | None = None
    member_atoms: torch.Tensor = field(init=False, repr=False)
    member_node: torch.Tensor = field(init=False, repr=False)
    member_first: torch.Tensor = field(init=False, repr=False)
    member_weights: torch.Tensor = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if any(len(group) == 0 for group in self.members):
            raise ValueError(f"every node of {self.name!r} needs at least one atom")
        if self.weights is not None and [len(w) for w in self.weights] != [
            len(m) for m in self.members
        ]:
            raise ValueError(f"weights of {self.name!r} must match its members")

        sizes = torch.tensor([len(group) for group in self.members], dtype=torch.long)
        starts = torch.cumsum(sizes, 0) - sizes
        self.member_atoms = _as_index_tensor(
            [idx for group in self.members for idx in group], "members"
        )
        self.member_node = torch.repeat_interleave(torch.arange(len(sizes)), sizes)
        self.member_first = self.member_atoms[starts][self.member_node]

        if self.weights is None:
            weights = torch.ones(self.member_atoms.shape[0], dtype=torch.float64)
        else:
            weights = torch.tensor(
                [w for group in self.weights for w in group], dtype=torch.float64
            )
        totals = torch.zeros(len(sizes), dtype=torch.float64).index_add_(
            0, self.member_node, weights
        )
        if (totals <= 0).any():
            raise ValueError(f"weights of every node of {self.name!r} must sum to > 0")
        self.member_weights = weights / totals[self.member_node]

    @property
    def n_nodes(self) -> int:
        """Number of nodes supplied by the group."""
        return len(self.members)

    def positions(self, system: AtomicSystem) -> torch.Tensor:
        """Centroid positions with shape (n_nodes, 3)."""
        device = system.device
        pos = system.positions[self.member_atoms.to(device)]
        reference = system.positions[self.member_first.to(device)]
        whole = make_whole(pos, reference, cell=system.cell, pbc=system.pbc)
        weights = self.member_weights.to(device=device, dtype=system.dtype)
        centroids = torch.zeros((self.n_nodes, 3), dtype=system.dtype, device=device)
        member_node = self.member_node.to(device)
        return centroids.index_add(0, member_node, weights[:, None] * whole)

    def deposit(self, system: AtomicSystem, node_forces: torch.Tensor) -> None:
        """Distribute node derivatives over the member atoms by their weights."""
        device = system.device
        weights = self.member_weights.to(device=device, dtype=system.dtype)
        member_forces = weights[:, None] * node_forces[self.member_node.to(device)]
        system.forces.index_add_(0, self.member_atoms.to(device), member_forces)


NodeGroup = AtomNodes | CentroidNodes


class NodeRegistry:
    """Ordered collection of node groups forming one node index space.

    Nodes of group ``k`` occupy the contiguous index range
    ``[offsets[k], offsets[k] + node_counts[k])`` and have type ``k``.

    Attributes:
        groups (tuple[NodeGroup, ...]): The node groups in type order.
    """

    def __init__(self, groups: Sequence[NodeGroup]) -> None:
        """Create a registry from node groups.

        Args:
            groups (Sequence[NodeGroup]): Node groups; the position of a group is
                the type id of its nodes.

        Raises:
            ConfigurationError: If no group is given or two groups share a name.
        """
        if not groups:
            raise ConfigurationError("at least one node group is required")
        names = [group.name for group in groups]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"node group names must be unique, got {names}")
        self.groups = tuple(groups)
        counts = torch.tensor(self.node_counts, dtype=torch.long)
        self._offsets = torch.cumsum(counts, 0) - counts
        self._types = torch.repeat_interleave(torch.arange(len(counts)), counts)
        logger.debug(
            "Registered %d node groups with %d nodes in total", self.n_types, self.n_nodes
        )

    @property
    def n_types(self) -> int:
        """Number of node types, one per group."""
        return len(self.groups)

    @property
    def node_counts(self) -> list[int]:
        """Number of nodes in each group."""
        return [group.n_nodes for group in self.groups]

    @property
    def n_nodes(self) -> int:
        """Total number of nodes."""
        return sum(self.node_counts)

    @property
    def types(self) -> torch.Tensor:
        """Type id of every node, shape (n_nodes,)."""
        return self._types

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self.n_nodes:
            raise IndexError(f"node index {index} out of range [0, {self.n_nodes})")

    def type_of(self, index: int) -> int:
        """Type id of a node."""
        self._check_index(index)
        return int(self._types[index])

    def group_of(self, index: int) -> NodeGroup:
        """Group a node belongs to."""
        return self.groups[self.type_of(index)]

    def positions(self, system: AtomicSystem) -> torch.Tensor:
        """Positions of all nodes, shape (n_nodes, 3)."""
        return torch.cat([group.positions(system) for group in self.groups], dim=0)

    def deposit_forces(
        self,
        system: AtomicSystem,
        node_forces: torch.Tensor,
        virial: torch.Tensor | None = None,
    ) -> None:
        """Add per-node derivatives and a virial into the system accumulators.

        Args:
            system (AtomicSystem): System whose ``forces`` and ``virial`` receive
                the contributions.
            node_forces (torch.Tensor): Derivatives with respect to the node
                positions, shape (n_nodes, 3).
            virial (torch.Tensor | None): Cell derivative, shape (3, 3).
        """
        if node_forces.shape != (self.n_nodes, 3):
            raise ValueError(
                f"node_forces must have shape ({self.n_nodes}, 3), "
                f"got {tuple(node_forces.shape)}"
            )
        for group, offset in zip(self.groups, self._offsets.tolist(), strict=True):
            group.deposit(system, node_forces[offset : offset + group.n_nodes])
        if virial is not None:
            system.virial.add_(virial)
