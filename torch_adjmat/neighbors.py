"""Spatial pruning of candidate node pairs with the Vesin cell list."""

import numpy as np
import torch
from vesin import NeighborList as VesinNeighborList

from torch_adjmat.transforms import as_pbc_tensor, complete_cell, wrap_positions


def vesin_pairs(
    positions: torch.Tensor,
    cell: torch.Tensor,
    pbc: torch.Tensor | bool,
    cutoff: float | torch.Tensor,
) -> torch.Tensor:
    """Find the node pairs closer than a cutoff.

    Uses the standard Vesin neighbor list on CPU in float64 and reduces its half
    list to unique unordered pairs, so a pair reached through several periodic
    images appears once.

    Args:
        positions (torch.Tensor): Node positions of shape (n_nodes, 3).
        cell (torch.Tensor): Unit cell [3, 3] in the column vector convention.
        pbc (torch.Tensor | bool): Periodic flags, one per axis or one for all.
        cutoff (float | torch.Tensor): Pair distance cutoff.

    Returns:
        torch.Tensor: Long tensor of shape (n_pairs, 2) holding ``(row, col)`` with
            ``row > col``, sorted by row then col, on the device of ``positions``.

    Notes:
        - Vesin expects the row vector convention, so the cell is transposed.
        - Lattice vectors of open axes are replaced as in ``complete_cell``, so slab
          cells may have a zero vector along the open axis.
        - Positions are wrapped into the cell along periodic axes first, so nodes
          such as centroids may lie outside it.
        - Gradients do not flow through the neighbor search.

    References:
        - https://github.com/Luthaf/vesin
    """
    device = positions.device
    pbc = as_pbc_tensor(pbc).cpu()
    cell = complete_cell(cell.detach().cpu().to(dtype=torch.float64), pbc)
    points = positions.detach().cpu().to(dtype=torch.float64)
    if pbc.any():
        points = wrap_positions(points, cell, pbc)
    periodic = bool(pbc[0]) if bool((pbc == pbc[0]).all()) else pbc.numpy()

    neighbor_list_fn = VesinNeighborList(cutoff=float(cutoff), full_list=False)
    i, j = neighbor_list_fn.compute(
        points=points.numpy(),
        box=np.ascontiguousarray(cell.mT.numpy()),
        periodic=periodic,
        quantities="ij",
    )
    i = torch.as_tensor(np.asarray(i, dtype=np.int64))
    j = torch.as_tensor(np.asarray(j, dtype=np.int64))

    keep = i != j
    if not keep.any():
        return torch.zeros((0, 2), dtype=torch.long, device=device)
    rows = torch.maximum(i, j)[keep]
    cols = torch.minimum(i, j)[keep]
    pairs = torch.unique(torch.stack((rows, cols), dim=1), dim=0)
    return pairs.to(device=device)
