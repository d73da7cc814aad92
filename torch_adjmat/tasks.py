"""Enumeration of candidate node pairs.

Every unordered pair of distinct nodes becomes exactly one task ``(row, col)`` with
``row > col``. Nodes are split into contiguous blocks (one block per node type) and
tasks are appended block pair by block pair, so that the tasks of each block pair
form one contiguous range of the task list. For a single block of ``n`` nodes the
tasks are the strict lower triangle in row-major order and task ``(row, col)`` has
index ``row * (row - 1) / 2 + col``.
"""

from collections.abc import Sequence
from dataclasses import dataclass

import torch


@dataclass(frozen=True)
class TaskBookkeeper:
    """Flat task list with the index range of every block pair.

    Attributes:
        block_sizes (tuple[int, ...]): Number of nodes in each block.
        tasks (torch.Tensor): Long tensor of shape (n_tasks, 2) holding
            ``(row, col)`` node indices with ``row > col``.
        ranges (dict[tuple[int, int], tuple[int, int]]): Half-open task index range
            ``[start, end)`` for every block pair ``(block_row, block_col)`` with
            ``block_row >= block_col``.

    Examples:
        >>> bookkeeper = TaskBookkeeper.build([4])
        >>> bookkeeper.n_tasks
        6
        >>> bookkeeper.tasks[:3].tolist()
        [[1, 0], [2, 0], [2, 1]]
    """

    block_sizes: tuple[int, ...]
    tasks: torch.Tensor
    ranges: dict[tuple[int, int], tuple[int, int]]

    @classmethod
    def build(
        cls, node_counts_per_block: Sequence[int], device: torch.device | None = None
    ) -> "TaskBookkeeper":
        """Enumerate the tasks for contiguous blocks of nodes.

        Args:
            node_counts_per_block (Sequence[int]): Number of nodes in each block.
                Blocks occupy consecutive node index ranges in the given order.
            device (torch.device | None): Device of the task tensor.

        Returns:
            TaskBookkeeper: The task list and its block pair ranges.
        """
        sizes = tuple(int(n) for n in node_counts_per_block)
        if not sizes or any(n < 0 for n in sizes):
            raise ValueError(f"invalid node counts {list(node_counts_per_block)}")
        offsets = [sum(sizes[:k]) for k in range(len(sizes))]

        chunks = []
        ranges = {}
        n_tasks = 0
        for block_row, n_row in enumerate(sizes):
            for block_col in range(block_row + 1):
                n_col = sizes[block_col]
                if block_row == block_col:
                    local = torch.tril_indices(n_row, n_row, offset=-1, device=device).T
                else:
                    local = torch.cartesian_prod(
                        torch.arange(n_row, device=device),
                        torch.arange(n_col, device=device),
                    ).reshape(-1, 2)
                offset = torch.tensor(
                    [offsets[block_row], offsets[block_col]], device=device
                )
                chunks.append(local + offset)
                ranges[block_row, block_col] = (n_tasks, n_tasks + local.shape[0])
                n_tasks += local.shape[0]

        tasks = torch.cat(chunks, dim=0).to(torch.long)
        return cls(block_sizes=sizes, tasks=tasks, ranges=ranges)

    @property
    def n_tasks(self) -> int:
        """Total number of tasks."""
        return self.tasks.shape[0]

    @property
    def n_nodes(self) -> int:
        """Total number of nodes over all blocks."""
        return sum(self.block_sizes)

    @property
    def n_blocks(self) -> int:
        """Number of blocks."""
        return len(self.block_sizes)

    def range_of(self, block_a: int, block_b: int) -> tuple[int, int]:
        """Task index range of a block pair, given in either order."""
        key = (max(block_a, block_b), min(block_a, block_b))
        if key not in self.ranges:
            raise KeyError(f"no block pair {key} among {self.n_blocks} blocks")
        return self.ranges[key]

    def block_of(self, nodes: torch.Tensor) -> torch.Tensor:
        """Block index of each node."""
        bounds = torch.cumsum(
            torch.tensor(self.block_sizes, dtype=torch.long, device=nodes.device), 0
        )
        return torch.searchsorted(bounds, nodes, right=True)

    def task_index(self, rows: torch.Tensor, cols: torch.Tensor) -> torch.Tensor:
        """Task indices of node pairs.

        Args:
            rows (torch.Tensor): First node of each pair.
            cols (torch.Tensor): Second node of each pair. Order within a pair does
                not matter.

        Returns:
            torch.Tensor: Long tensor of task indices, one per pair.

        Raises:
            ValueError: If a pair joins a node with itself.
        """
        rows, cols = torch.maximum(rows, cols), torch.minimum(rows, cols)
        if (rows == cols).any():
            raise ValueError("a node cannot be paired with itself")
        device = rows.device
        sizes = torch.tensor(self.block_sizes, dtype=torch.long, device=device)
        offsets = torch.cumsum(sizes, 0) - sizes
        block_row, block_col = self.block_of(rows), self.block_of(cols)
        local_row = rows - offsets[block_row]
        local_col = cols - offsets[block_col]

        starts = torch.zeros(
            (self.n_blocks, self.n_blocks), dtype=torch.long, device=device
        )
        for (br, bc), (start, _) in self.ranges.items():
            starts[br, bc] = start

        same = block_row == block_col
        local = torch.where(
            same,
            local_row * (local_row - 1) // 2 + local_col,
            local_row * sizes[block_col] + local_col,
        )
        return starts[block_row, block_col] + local
