"""The atomic system nodes are drawn from.

``AtomicSystem`` holds the atomic positions and the periodic cell of one
configuration, together with the accumulators that contact matrix derivatives are
deposited into.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Self

import numpy as np
import torch

from torch_adjmat.transforms import as_pbc_tensor


if TYPE_CHECKING:
    from ase import Atoms


@dataclass
class AtomicSystem:
    """Positions, cell and derivative accumulators of a single configuration.

    Attributes:
        positions (torch.Tensor): Atomic positions with shape (n_atoms, 3).
        cell (torch.Tensor): Unit cell with shape (3, 3) in the column vector
            convention, i.e. ``[[a1, b1, c1], [a2, b2, c2], [a3, b3, c3]]``. Ignored
            along non-periodic axes.
        pbc (torch.Tensor | list[bool] | bool): Periodic boundary conditions in each
            axis. A single boolean applies to all axes.
        forces (torch.Tensor): Accumulated derivatives with respect to the atomic
            positions, shape (n_atoms, 3). Zeroed if not given.
        virial (torch.Tensor): Accumulated derivative with respect to the cell,
            shape (3, 3). Zeroed if not given.

    Examples:
        >>> system = AtomicSystem(
        ...     positions=torch.rand(10, 3, dtype=torch.float64),
        ...     cell=5.0 * torch.eye(3, dtype=torch.float64),
        ...     pbc=True,
        ... )
        >>> system.n_atoms
        10
    """

    positions: torch.Tensor
    cell: torch.Tensor
    pbc: torch.Tensor | list[bool] | bool = True
    forces: torch.Tensor | None = field(default=None)
    virial: torch.Tensor | None = field(default=None)

    def __post_init__(self) -> None:
        """Validate shapes and allocate the accumulators."""
        if self.positions.ndim != 2 or self.positions.shape[-1] != 3:
            raise ValueError(
                "positions must have shape (n_atoms, 3), "
                f"got {tuple(self.positions.shape)}"
            )
        if self.cell.ndim == 3 and self.cell.shape[0] == 1:
            self.cell = self.cell.squeeze(0)
        if self.cell.shape != (3, 3):
            raise ValueError(f"cell must have shape (3, 3), got {tuple(self.cell.shape)}")
        if self.cell.device != self.positions.device:
            raise ValueError("positions and cell must be on the same device")

        self.pbc = as_pbc_tensor(self.pbc, device=self.device)

        if self.forces is None:
            self.forces = torch.zeros_like(self.positions)
        elif self.forces.shape != self.positions.shape:
            raise ValueError(
                f"forces must have shape {tuple(self.positions.shape)}, "
                f"got {tuple(self.forces.shape)}"
            )
        if self.virial is None:
            self.virial = torch.zeros_like(self.cell)
        elif self.virial.shape != (3, 3):
            raise ValueError(
                f"virial must have shape (3, 3), got {tuple(self.virial.shape)}"
            )

    @property
    def device(self) -> torch.device:
        """The device where the tensor data is located."""
        return self.positions.device

    @property
    def dtype(self) -> torch.dtype:
        """The data type of the positions tensor."""
        return self.positions.dtype

    @property
    def n_atoms(self) -> int:
        """Number of atoms in the system."""
        return self.positions.shape[0]

    @property
    def volume(self) -> torch.Tensor:
        """Volume of the unit cell."""
        return torch.abs(torch.linalg.det(self.cell))

    @property
    def row_vector_cell(self) -> torch.Tensor:
        """Unit cell following the row vector convention."""
        return self.cell.mT

    def reset_forces(self) -> None:
        """Zero the force and virial accumulators."""
        self.forces = torch.zeros_like(self.positions)
        self.virial = torch.zeros_like(self.cell)

    def clone(self) -> Self:
        """Create a copy with independent tensors."""
        return type(self)(
            positions=self.positions.clone(),
            cell=self.cell.clone(),
            pbc=self.pbc.clone(),
            forces=self.forces.clone(),
            virial=self.virial.clone(),
        )

    @classmethod
    def from_ase(
        cls,
        atoms: "Atoms",
        device: torch.device | None = None,
        dtype: torch.dtype = torch.float64,
    ) -> Self:
        """Build a system from an ASE ``Atoms`` object.

        Args:
            atoms (Atoms): Structure to convert.
            device (torch.device | None): Device to create tensors on.
            dtype (torch.dtype): Floating point type. Defaults to float64.

        Returns:
            AtomicSystem: System with the positions, cell and pbc of ``atoms``.

        Raises:
            ImportError: If ASE is not installed.
        """
        try:
            from ase import Atoms
        except ImportError:
            raise ImportError("ASE is required for AtomicSystem.from_ase") from None
        if not isinstance(atoms, Atoms):
            raise TypeError(f"expected ase.Atoms, got {type(atoms).__name__}")

        positions = torch.tensor(atoms.positions, dtype=dtype, device=device)
        # Transpose cell from ASE convention to the column vector convention
        cell = torch.tensor(np.asarray(atoms.cell.array).T, dtype=dtype, device=device)
        return cls(positions=positions, cell=cell, pbc=[bool(p) for p in atoms.pbc])
