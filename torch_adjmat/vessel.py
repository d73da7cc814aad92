"""Storage of one evaluation cycle of a contact matrix."""

from dataclasses import dataclass
from typing import Self

import torch

from torch_adjmat.errors import DerivativeNotAvailableError
from torch_adjmat.tasks import TaskBookkeeper


@dataclass
class PairDerivatives:
    """Derivatives of pair weights.

    Either batched over tasks (leading dimension n_tasks) or a single task.

    Attributes:
        row_forces (torch.Tensor): Derivative with respect to the row node position,
            shape (n_tasks, 3).
        col_forces (torch.Tensor): Derivative with respect to the column node
            position, shape (n_tasks, 3). Always the negation of ``row_forces``.
        virials (torch.Tensor): Derivative with respect to the cell, shape
            (n_tasks, 3, 3). Symmetric.
    """

    row_forces: torch.Tensor
    col_forces: torch.Tensor
    virials: torch.Tensor

    def __len__(self) -> int:
        return self.row_forces.shape[0]

    def __getitem__(self, index: int | slice | torch.Tensor) -> Self:
        return type(self)(
            row_forces=self.row_forces[index],
            col_forces=self.col_forces[index],
            virials=self.virials[index],
        )

    @classmethod
    def zeros(
        cls, n_tasks: int, dtype: torch.dtype, device: torch.device | None = None
    ) -> Self:
        """Zero derivatives for ``n_tasks`` tasks."""
        return cls(
            row_forces=torch.zeros((n_tasks, 3), dtype=dtype, device=device),
            col_forces=torch.zeros((n_tasks, 3), dtype=dtype, device=device),
            virials=torch.zeros((n_tasks, 3, 3), dtype=dtype, device=device),
        )

    @classmethod
    def cat(cls, blocks: "list[PairDerivatives]") -> Self:
        """Concatenate batched derivatives along the task dimension."""
        return cls(
            row_forces=torch.cat([b.row_forces for b in blocks]),
            col_forces=torch.cat([b.col_forces for b in blocks]),
            virials=torch.cat([b.virials for b in blocks]),
        )


class AdjacencyMatrixVessel:
    """Sparse weighted adjacency matrix produced by one evaluation cycle.

    Weights and derivative blocks are committed per task. Each task may be committed
    at most once; tasks that are never committed, such as pairs removed by the
    neighbor list, read as weight 0. Committed tasks are kept sorted by task index,
    so the tasks of one type pair form a contiguous slice.

    Attributes:
        bookkeeper (TaskBookkeeper): Task enumeration the task indices refer to.
        weight_tolerance (float): Weights above this value make a task active.
    """

    def __init__(
        self,
        bookkeeper: TaskBookkeeper,
        *,
        weight_tolerance: float = 0.0,
        dtype: torch.dtype = torch.float64,
        device: torch.device | None = None,
    ) -> None:
        """Create an empty vessel.

        Args:
            bookkeeper (TaskBookkeeper): Task enumeration.
            weight_tolerance (float): Activity threshold on the weights.
            dtype (torch.dtype): Data type of the stored weights and derivatives.
            device (torch.device | None): Device of the stored tensors.
        """
        self.bookkeeper = bookkeeper
        self.weight_tolerance = weight_tolerance
        self._dtype = dtype
        self._device = device
        self._tasks = torch.zeros(0, dtype=torch.long, device=device)
        self._weights = torch.zeros(0, dtype=dtype, device=device)
        self._has_derivatives = torch.zeros(0, dtype=torch.bool, device=device)
        self._derivatives = PairDerivatives.zeros(0, dtype=dtype, device=device)

    @property
    def tasks(self) -> torch.Tensor:
        """Committed task indices in ascending order."""
        return self._tasks

    @property
    def weights(self) -> torch.Tensor:
        """Weights of the committed tasks, aligned with ``tasks``."""
        return self._weights

    @property
    def has_derivatives(self) -> torch.Tensor:
        """Whether each committed task carries a derivative block."""
        return self._has_derivatives

    @property
    def n_committed(self) -> int:
        """Number of committed tasks."""
        return self._tasks.shape[0]

    def commit(
        self,
        tasks: torch.Tensor,
        weights: torch.Tensor,
        derivatives: PairDerivatives | None = None,
    ) -> None:
        """Store the weights, and optionally the derivatives, of a set of tasks.

        Args:
            tasks (torch.Tensor): Task indices, shape (n,).
            weights (torch.Tensor): Weights, shape (n,).
            derivatives (PairDerivatives | None): Derivative blocks of the same
                tasks, batched with length n.

        Raises:
            ValueError: If shapes disagree, a task index is out of range, or a task
                is committed more than once in this cycle.
        """
        tasks = torch.as_tensor(tasks, dtype=torch.long, device=self._device).reshape(-1)
        weights = weights.reshape(-1).to(dtype=self._dtype, device=self._device)
        if weights.shape != tasks.shape:
            raise ValueError(
                f"got {tasks.shape[0]} tasks but {weights.shape[0]} weights"
            )
        if derivatives is not None and len(derivatives) != tasks.shape[0]:
            raise ValueError(
                f"got {tasks.shape[0]} tasks but {len(derivatives)} derivative blocks"
            )
        if tasks.numel() and (
            tasks.min() < 0 or tasks.max() >= self.bookkeeper.n_tasks
        ):
            raise ValueError(f"task indices must lie in [0, {self.bookkeeper.n_tasks})")
        if torch.unique(tasks).shape[0] != tasks.shape[0]:
            raise ValueError("a task was committed more than once in this cycle")
        if torch.isin(tasks, self._tasks).any():
            raise ValueError("a task was committed more than once in this cycle")

        if derivatives is None:
            derivatives = PairDerivatives.zeros(
                tasks.shape[0], dtype=self._dtype, device=self._device
            )
            flags = torch.zeros_like(tasks, dtype=torch.bool)
        else:
            flags = torch.ones_like(tasks, dtype=torch.bool)

        all_tasks = torch.cat([self._tasks, tasks])
        order = torch.argsort(all_tasks)
        self._tasks = all_tasks[order]
        self._weights = torch.cat([self._weights, weights])[order]
        self._has_derivatives = torch.cat([self._has_derivatives, flags])[order]
        self._derivatives = PairDerivatives.cat([self._derivatives, derivatives])[order]

    def _locate(self, task: int) -> int | None:
        if not 0 <= task < self.bookkeeper.n_tasks:
            raise IndexError(f"task {task} out of range [0, {self.bookkeeper.n_tasks})")
        key = torch.tensor(task, device=self._device)
        pos = int(torch.searchsorted(self._tasks, key))
        if pos < self.n_committed and int(self._tasks[pos]) == task:
            return pos
        return None

    def query(self, task: int) -> float:
        """Weight of a task, 0.0 if it was not committed."""
        pos = self._locate(task)
        return 0.0 if pos is None else float(self._weights[pos])

    def query_derivative(self, task: int) -> PairDerivatives:
        """Derivative block of a single task.

        Raises:
            DerivativeNotAvailableError: If the task was not evaluated with
                derivatives during this cycle.
        """
        pos = self._locate(task)
        if pos is None or not self._has_derivatives[pos]:
            raise DerivativeNotAvailableError(
                f"derivative not available for task {task} in this cycle"
            )
        return self._derivatives[pos]

    @property
    def derivatives(self) -> PairDerivatives:
        """Derivative blocks of all tasks that carry one, batched in task order."""
        return self._derivatives[self._has_derivatives]

    def is_active(self, task: int) -> bool:
        """Whether a task's weight exceeds the weight tolerance."""
        return self.query(task) > self.weight_tolerance

    def iter_block(self, type_a: int, type_b: int) -> tuple[torch.Tensor, torch.Tensor]:
        """Committed tasks and weights of one type pair.

        Args:
            type_a (int): First node type.
            type_b (int): Second node type, either order.

        Returns:
            tuple[torch.Tensor, torch.Tensor]: Task indices and their weights.
        """
        start, end = self.bookkeeper.range_of(type_a, type_b)
        bounds = torch.tensor([start, end], dtype=torch.long, device=self._device)
        lo, hi = torch.searchsorted(self._tasks, bounds).tolist()
        return self._tasks[lo:hi], self._weights[lo:hi]

    def edge_list(self) -> tuple[torch.Tensor, torch.Tensor]:
        """Active node pairs and their weights.

        Returns:
            tuple[torch.Tensor, torch.Tensor]:
                - Node pairs ``(row, col)`` of shape (n_edges, 2).
                - Weights of shape (n_edges,).
        """
        active = self._weights > self.weight_tolerance
        tasks = self.bookkeeper.tasks.to(self._tasks.device)
        return tasks[self._tasks[active]], self._weights[active]

    def to_dense(self) -> torch.Tensor:
        """Symmetric weight matrix of shape (n_nodes, n_nodes) with zero diagonal."""
        n_nodes = self.bookkeeper.n_nodes
        pairs = self.bookkeeper.tasks.to(self._tasks.device)[self._tasks]
        dense = torch.zeros((n_nodes, n_nodes), dtype=self._dtype, device=self._device)
        dense[pairs[:, 0], pairs[:, 1]] = self._weights
        dense[pairs[:, 1], pairs[:, 0]] = self._weights
        return dense

    def adjacency_lists(self) -> list[list[int]]:
        """Sorted neighbors of every node through active edges."""
        neighbors: list[list[int]] = [[] for _ in range(self.bookkeeper.n_nodes)]
        pairs, _ = self.edge_list()
        for row, col in pairs.tolist():
            neighbors[row].append(col)
            neighbors[col].append(row)
        return [sorted(node) for node in neighbors]
