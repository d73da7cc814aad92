"""Contact matrix between nodes with analytic derivatives.

Two nodes are adjacent with a weight given by the switching function of their type
pair evaluated at their minimum image distance. One evaluation cycle runs in one of
two modes:

* ``EvaluationMode.WEIGHTS``: only the weights are computed and committed.
* ``EvaluationMode.DERIVATIVES``: the weights are computed, then for every pair with
  a weight above the tolerance the displacement and weight are recomputed and the
  derivatives are formed. With ``dr = r_col - r_row`` and ``dfunc = (dw/dr) / r``
  the row node receives ``-dfunc * dr``, the column node ``+dfunc * dr`` and the
  cell ``-dfunc * outer(dr, dr)``. These are accumulated per node and deposited
  into the ``AtomicSystem`` through the ``NodeRegistry``.

Example::

    nodes = NodeRegistry([AtomNodes("ow", oxygen_indices)])
    switching = SwitchingFunctionMatrix(n_types=1)
    switching.set(0, 0, "{RATIONAL R_0=3.2 D_MAX=6.0}")
    model = ContactMatrix(nodes, switching)

    vessel = model(system, mode=EvaluationMode.DERIVATIVES)
    dense = vessel.to_dense()
    forces = system.forces
"""

import logging
from enum import StrEnum

import torch

from torch_adjmat import transforms
from torch_adjmat.errors import ConfigurationError
from torch_adjmat.neighbors import vesin_pairs
from torch_adjmat.nodes import NodeRegistry
from torch_adjmat.state import AtomicSystem
from torch_adjmat.switching import SwitchingFunctionMatrix
from torch_adjmat.tasks import TaskBookkeeper
from torch_adjmat.vessel import AdjacencyMatrixVessel, PairDerivatives


logger = logging.getLogger(__name__)


class EvaluationMode(StrEnum):
    """What an evaluation cycle computes.

    Available options:
        - ``weights``: weights only.
        - ``derivatives``: weights and, for active pairs, their derivatives.
    """

    WEIGHTS = "weights"
    DERIVATIVES = "derivatives"


class ContactMatrix(torch.nn.Module):
    """Switching function weighted adjacency matrix between typed nodes.

    Attributes:
        nodes (NodeRegistry): Node groups providing positions and types.
        switching (SwitchingFunctionMatrix): Switching function per type pair.
        bookkeeper (TaskBookkeeper): Candidate pair enumeration, one block per type.
        use_neighbor_list (bool): Whether to restrict evaluation to pairs found by a
            cell list within ``cutoff``.
        weight_tolerance (float): Pairs with weights above this value are active and
            receive derivatives.
        task_chunk_size (int | None): Maximum number of tasks evaluated at once.
        pbc (bool): Whether pair distances follow the periodic boundaries of the
            system. If False all axes are treated as open.
    """

    def __init__(
        self,
        nodes: NodeRegistry,
        switching: SwitchingFunctionMatrix,
        *,
        use_neighbor_list: bool = True,
        weight_tolerance: float = 0.0,
        task_chunk_size: int | None = None,
        pbc: bool = True,
    ) -> None:
        """Initialize the contact matrix.

        Args:
            nodes (NodeRegistry): Node groups, one per node type.
            switching (SwitchingFunctionMatrix): Switching functions; its size must
                equal the number of node types and every type pair must be set.
            use_neighbor_list (bool): Whether to prune candidate pairs with a cell
                list. Defaults to True.
            weight_tolerance (float): Activity threshold on the weights. Defaults
                to 0.0.
            task_chunk_size (int | None): Evaluate tasks in chunks of at most this
                many pairs. Defaults to None, evaluating all at once.
            pbc (bool): Whether to apply periodic boundaries. Defaults to True.

        Raises:
            ConfigurationError: If the switching matrix does not match the nodes or
                is incomplete.
        """
        super().__init__()
        if switching.n_types != nodes.n_types:
            raise ConfigurationError(
                f"switching matrix has {switching.n_types} types but there are "
                f"{nodes.n_types} node groups"
            )
        if task_chunk_size is not None and task_chunk_size < 1:
            raise ValueError(f"task_chunk_size must be positive, got {task_chunk_size}")
        self.nodes = nodes
        self.switching = switching
        self.use_neighbor_list = use_neighbor_list
        self.weight_tolerance = weight_tolerance
        self.task_chunk_size = task_chunk_size
        self.pbc = pbc

        # Resolve the cutoff now so an incomplete matrix fails at build time
        logger.info("Neighbor list cutoff set to %g", self.cutoff)
        self.bookkeeper = TaskBookkeeper.build(nodes.node_counts)
        logger.info(
            "Enumerated %d candidate pairs between %d nodes of %d types",
            self.bookkeeper.n_tasks,
            nodes.n_nodes,
            nodes.n_types,
        )

    @property
    def cutoff(self) -> float:
        """Largest switching function cutoff over all type pairs."""
        return self.switching.max_cutoff

    def candidate_tasks(self, system: AtomicSystem) -> torch.Tensor:
        """Task indices to evaluate this cycle, in ascending order.

        Without a neighbor list these are all tasks. With one, only pairs closer
        than ``cutoff`` are kept; the rest have a zero weight by construction.
        """
        if not self.use_neighbor_list:
            return torch.arange(self.bookkeeper.n_tasks, device=system.device)

        pairs = vesin_pairs(
            self.nodes.positions(system), system.cell, self._pbc(system), self.cutoff
        )
        tasks = self.bookkeeper.task_index(pairs[:, 0], pairs[:, 1])
        return torch.sort(tasks).values

    def _pbc(self, system: AtomicSystem) -> torch.Tensor | bool:
        return system.pbc if self.pbc else False

    def _pairs(self, tasks: torch.Tensor, device: torch.device) -> torch.Tensor:
        return self.bookkeeper.tasks.to(device)[tasks]

    def _chunks(self, tasks: torch.Tensor) -> list[torch.Tensor]:
        if self.task_chunk_size is None or tasks.shape[0] <= self.task_chunk_size:
            return [tasks]
        return list(torch.split(tasks, self.task_chunk_size))

    def _switch(
        self, system: AtomicSystem, positions: torch.Tensor, tasks: torch.Tensor
    ) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        pairs = self._pairs(tasks, system.device)
        dr_vec, distances = transforms.get_pair_displacements(
            positions=positions, pairs=pairs, cell=system.cell, pbc=self._pbc(system)
        )
        types = self.nodes.types.to(system.device)
        weights, dfunc = self.switching.evaluate(
            types[pairs[:, 0]], types[pairs[:, 1]], distances
        )
        return dr_vec, weights, dfunc

    def calculate_weight(self, system: AtomicSystem, tasks: torch.Tensor) -> torch.Tensor:
        """Weights of a set of tasks, without derivatives.

        Args:
            system (AtomicSystem): Current configuration.
            tasks (torch.Tensor): Task indices, shape (n,).

        Returns:
            torch.Tensor: Weights, shape (n,).
        """
        positions = self.nodes.positions(system)
        weights = [
            self._switch(system, positions, chunk)[1] for chunk in self._chunks(tasks)
        ]
        return torch.cat(weights)

    def compute(
        self, system: AtomicSystem, tasks: torch.Tensor
    ) -> tuple[torch.Tensor, PairDerivatives]:
        """Derivatives of the weights of a set of tasks.

        Args:
            system (AtomicSystem): Current configuration.
            tasks (torch.Tensor): Task indices, shape (n,).

        Returns:
            tuple[torch.Tensor, PairDerivatives]:
                - Values of 1.0 marking each task as active with its derivatives
                  formed, shape (n,). They are meant for direct callers, ``forward``
                  commits the weights from ``calculate_weight`` instead.
                - Derivative blocks of the tasks, batched in the order of ``tasks``.
        """
        positions = self.nodes.positions(system)
        blocks = []
        for chunk in self._chunks(tasks):
            dr_vec, _, dfunc = self._switch(system, positions, chunk)
            col_forces = dfunc[:, None] * dr_vec
            blocks.append(
                PairDerivatives(
                    row_forces=-col_forces,
                    col_forces=col_forces,
                    virials=-dfunc[:, None, None]
                    * torch.einsum("...i,...j->...ij", dr_vec, dr_vec),
                )
            )
        values = torch.ones(tasks.shape[0], dtype=system.dtype, device=system.device)
        return values, PairDerivatives.cat(blocks)

    def accumulate(
        self, system: AtomicSystem, tasks: torch.Tensor, derivatives: PairDerivatives
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Sum derivative blocks per node and deposit them into the system.

        Args:
            system (AtomicSystem): System receiving the derivatives.
            tasks (torch.Tensor): Task indices the blocks belong to.
            derivatives (PairDerivatives): Batched derivative blocks.

        Returns:
            tuple[torch.Tensor, torch.Tensor]: Per-node derivatives of shape
                (n_nodes, 3) and the summed virial of shape (3, 3).
        """
        pairs = self._pairs(tasks, system.device)
        node_forces = torch.zeros(
            (self.nodes.n_nodes, 3), dtype=system.dtype, device=system.device
        )
        node_forces.index_add_(0, pairs[:, 0], derivatives.row_forces)
        node_forces.index_add_(0, pairs[:, 1], derivatives.col_forces)
        virial = derivatives.virials.sum(dim=0)
        self.nodes.deposit_forces(system, node_forces, virial)
        return node_forces, virial

    def forward(
        self,
        system: AtomicSystem,
        mode: EvaluationMode | str = EvaluationMode.WEIGHTS,
    ) -> AdjacencyMatrixVessel:
        """Run one evaluation cycle.

        Args:
            system (AtomicSystem): Current configuration. In derivatives mode its
                ``forces`` and ``virial`` accumulators receive the derivatives of
                the sum of all weights.
            mode (EvaluationMode | str): Whether to compute derivatives.

        Returns:
            AdjacencyMatrixVessel: Weights of all candidate tasks and derivative
                blocks of the active ones.
        """
        mode = EvaluationMode(mode)
        vessel = AdjacencyMatrixVessel(
            self.bookkeeper,
            weight_tolerance=self.weight_tolerance,
            dtype=system.dtype,
            device=system.device,
        )

        tasks = self.candidate_tasks(system)
        weights = self.calculate_weight(system, tasks)
        if mode == EvaluationMode.WEIGHTS:
            vessel.commit(tasks, weights)
            logger.debug("Committed weights of %d tasks", tasks.shape[0])
            return vessel

        active = weights > self.weight_tolerance
        vessel.commit(tasks[~active], weights[~active])
        _, derivatives = self.compute(system, tasks[active])
        self.accumulate(system, tasks[active], derivatives)
        vessel.commit(tasks[active], weights[active], derivatives)
        logger.debug(
            "Committed %d tasks, %d with derivatives", tasks.shape[0], int(active.sum())
        )
        return vessel
