"""Periodic boundary handling and masked evaluation helpers.

Cells follow the column vector convention used throughout the package, i.e. the
lattice vectors are stored as ``[[a1, b1, c1], [a2, b2, c2], [a3, b3, c3]]`` so
that ``cell @ frac`` maps fractional to Cartesian coordinates.
"""

from collections.abc import Callable

import torch


def as_pbc_tensor(
    pbc: torch.Tensor | list[bool] | bool, device: torch.device | None = None
) -> torch.Tensor:
    """Expand a periodic boundary setting to a boolean tensor of shape (3,).

    Args:
        pbc (torch.Tensor | list[bool] | bool): Either one flag applied to all axes
            or one flag per axis.
        device (torch.device | None): Device of the returned tensor.

    Returns:
        torch.Tensor: Boolean tensor of shape (3,).

    Raises:
        ValueError: If the setting does not describe exactly three axes.
    """
    if isinstance(pbc, bool):
        pbc = [pbc] * 3
    pbc = torch.as_tensor(pbc, dtype=torch.bool, device=device)
    if pbc.shape != (3,):
        raise ValueError(f"pbc must have shape (3,), got {tuple(pbc.shape)}")
    return pbc


def complete_cell(cell: torch.Tensor, pbc: torch.Tensor | bool = True) -> torch.Tensor:
    """Make a cell invertible by replacing the lattice vectors of open axes.

    Open axes are never wrapped, so their lattice vectors may be zero, as in ASE
    slabs built without vacuum. They are replaced with an orthonormal complement
    of the periodic lattice vectors, which leaves every periodic image unchanged.

    Args:
        cell (torch.Tensor): Unit cell matrix [3, 3] in the column vector convention.
        pbc (torch.Tensor | bool): Periodic flags.

    Returns:
        torch.Tensor: Invertible cell with the periodic lattice vectors of ``cell``.
    """
    pbc = as_pbc_tensor(pbc, device=cell.device)
    if pbc.all():
        return cell
    if not pbc.any():
        return torch.eye(3, dtype=cell.dtype, device=cell.device)
    periodic = cell[:, pbc].detach()
    _, _, vh = torch.linalg.svd(periodic.mT, full_matrices=True)
    filled = cell.clone()
    filled[:, ~pbc] = vh[periodic.shape[1] :].mT
    return filled


def minimum_image_displacement(
    *,
    dr: torch.Tensor,
    cell: torch.Tensor | None = None,
    pbc: torch.Tensor | bool = True,
) -> torch.Tensor:
    """Apply the minimum image convention to displacement vectors.

    Each periodic component of the displacement in fractional coordinates is
    first shifted by the nearest integer. In skewed cells the rounded vector is
    not always the shortest image, so the shortest of the rounded vector and its
    neighbouring images along the periodic axes is kept.

    Args:
        dr (torch.Tensor): Displacement vectors with shape [..., 3].
        cell (torch.Tensor | None): Unit cell matrix [3, 3] in the column vector
            convention. If None the displacements are returned unchanged.
        pbc (torch.Tensor | bool): Periodic flags, one per axis or one for all.

    Returns:
        torch.Tensor: Minimum image displacements with the same shape as ``dr``.
    """
    pbc = as_pbc_tensor(pbc, device=dr.device)
    if cell is None or not pbc.any():
        return dr

    cell = complete_cell(cell, pbc)
    frac = torch.einsum("ij,...j->...i", torch.linalg.inv(cell), dr)
    frac = frac - torch.where(pbc, torch.round(frac), torch.zeros_like(frac))
    dr = torch.einsum("ij,...j->...i", cell, frac)

    # the unshifted image comes first so that ties keep the rounded vector
    steps = [
        torch.tensor([0.0, -1.0, 1.0] if periodic else [0.0], dtype=dr.dtype)
        for periodic in pbc.tolist()
    ]
    shifts = torch.cartesian_prod(*steps).to(device=dr.device)
    images = dr[..., None, :] + shifts @ cell.mT
    nearest = (images * images).sum(dim=-1).argmin(dim=-1)
    index = nearest[..., None, None].expand(*nearest.shape, 1, 3)
    return torch.gather(images, -2, index).squeeze(-2)


def get_pair_displacements(
    *,
    positions: torch.Tensor,
    pairs: torch.Tensor,
    cell: torch.Tensor | None = None,
    pbc: torch.Tensor | bool = True,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Compute minimum image displacements and distances for node pairs.

    Args:
        positions (torch.Tensor): Node positions [n_nodes, 3].
        pairs (torch.Tensor): Pair indices [n_pairs, 2] holding ``(row, col)``.
        cell (torch.Tensor | None): Unit cell matrix [3, 3].
        pbc (torch.Tensor | bool): Periodic flags.

    Returns:
        tuple[torch.Tensor, torch.Tensor]:
            - Displacements ``positions[col] - positions[row]`` [n_pairs, 3].
            - Distances [n_pairs].
    """
    if pairs.ndim != 2 or pairs.shape[-1] != 2:
        raise ValueError(f"pairs must have shape (n_pairs, 2), got {tuple(pairs.shape)}")
    dr = positions[pairs[:, 1]] - positions[pairs[:, 0]]
    dr = minimum_image_displacement(dr=dr, cell=cell, pbc=pbc)
    return dr, torch.linalg.norm(dr, dim=-1)


def wrap_positions(
    positions: torch.Tensor, cell: torch.Tensor, pbc: torch.Tensor | bool = True
) -> torch.Tensor:
    """Wrap positions into the unit cell along the periodic axes.

    Positions are transformed to fractional coordinates, reduced modulo 1 where the
    axis is periodic and transformed back.

    Args:
        positions (torch.Tensor): Positions [..., 3].
        cell (torch.Tensor): Unit cell matrix [3, 3] in the column vector convention.
        pbc (torch.Tensor | bool): Periodic flags.

    Returns:
        torch.Tensor: Wrapped positions with the same shape as ``positions``.
    """
    pbc = as_pbc_tensor(pbc, device=positions.device)
    cell = complete_cell(cell, pbc)
    frac = positions @ torch.linalg.inv(cell).T
    frac = torch.where(pbc, frac % 1.0, frac)
    return frac @ cell.T


def make_whole(
    positions: torch.Tensor,
    reference: torch.Tensor,
    cell: torch.Tensor | None = None,
    pbc: torch.Tensor | bool = True,
) -> torch.Tensor:
    """Bring positions into the periodic image closest to a reference point.

    Args:
        positions (torch.Tensor): Positions [..., 3].
        reference (torch.Tensor): Reference points broadcastable to ``positions``.
        cell (torch.Tensor | None): Unit cell matrix [3, 3].
        pbc (torch.Tensor | bool): Periodic flags.

    Returns:
        torch.Tensor: Unwrapped positions with the same shape as ``positions``.
    """
    dr = minimum_image_displacement(dr=positions - reference, cell=cell, pbc=pbc)
    return reference + dr


def safe_mask(
    mask: torch.Tensor,
    fn: Callable[[torch.Tensor], torch.Tensor],
    operand: torch.Tensor,
    placeholder: float = 0.0,
    *,
    safe_value: float = 0.0,
) -> torch.Tensor:
    """Apply a function only where a mask holds.

    Masked-out entries are replaced by ``safe_value`` before ``fn`` is called so
    that neither the value nor the autograd graph sees NaN or inf from them, and the
    result is filled with ``placeholder`` there.

    Args:
        mask (torch.Tensor): Boolean tensor selecting the entries to evaluate.
        fn (Callable): Elementwise function.
        operand (torch.Tensor): Input tensor.
        placeholder (float): Value of masked-out entries. Defaults to 0.0.
        safe_value (float): Operand substituted at masked-out entries, must lie in
            the domain of ``fn``. Defaults to 0.0.

    Returns:
        torch.Tensor: ``fn(operand)`` where ``mask`` is True, else ``placeholder``.

    Example:
        >>> x = torch.tensor([1.0, 2.0, -1.0])
        >>> safe_mask(x > 0, torch.log, x, safe_value=1.0)
        tensor([0.0000, 0.6931, 0.0000])
    """
    masked = torch.where(mask, operand, torch.full_like(operand, safe_value))
    return torch.where(mask, fn(masked), torch.full_like(operand, placeholder))
