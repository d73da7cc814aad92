# ruff: noqa: PT011
import pytest
import torch

from tests.conftest import DEVICE, DTYPE
from torch_adjmat.errors import DerivativeNotAvailableError
from torch_adjmat.tasks import TaskBookkeeper
from torch_adjmat.vessel import AdjacencyMatrixVessel, PairDerivatives


@pytest.fixture
def vessel() -> AdjacencyMatrixVessel:
    bookkeeper = TaskBookkeeper.build([2, 2], device=DEVICE)
    return AdjacencyMatrixVessel(
        bookkeeper, weight_tolerance=0.1, dtype=DTYPE, device=DEVICE
    )


def _derivatives(n_tasks: int, scale: float = 1.0) -> PairDerivatives:
    col = scale * torch.arange(3 * n_tasks, dtype=DTYPE, device=DEVICE).reshape(-1, 3)
    return PairDerivatives(
        row_forces=-col,
        col_forces=col,
        virials=-torch.einsum("...i,...j->...ij", col, col),
    )


def test_commit_and_query(vessel: AdjacencyMatrixVessel) -> None:
    vessel.commit(torch.tensor([4, 0]), torch.tensor([0.5, 0.9], dtype=DTYPE))
    vessel.commit(torch.tensor([2]), torch.tensor([0.05], dtype=DTYPE))

    assert vessel.n_committed == 3
    assert vessel.tasks.tolist() == [0, 2, 4]
    assert vessel.weights.tolist() == [0.9, 0.05, 0.5]
    assert vessel.query(0) == pytest.approx(0.9)
    assert vessel.query(4) == pytest.approx(0.5)
    # tasks that were never committed read as zero
    assert vessel.query(1) == 0.0
    assert vessel.query(5) == 0.0

    assert vessel.is_active(0)
    assert not vessel.is_active(2)
    assert not vessel.is_active(3)


def test_query_out_of_range(vessel: AdjacencyMatrixVessel) -> None:
    with pytest.raises(IndexError):
        vessel.query(6)
    with pytest.raises(IndexError):
        vessel.query(-1)


@pytest.mark.parametrize(
    ("tasks", "weights"),
    [
        ([0, 1], [0.5]),
        ([0, 6], [0.5, 0.5]),
        ([-1], [0.5]),
        ([3, 3], [0.5, 0.5]),
    ],
)
def test_invalid_commits(
    vessel: AdjacencyMatrixVessel, tasks: list[int], weights: list[float]
) -> None:
    with pytest.raises(ValueError):
        vessel.commit(torch.tensor(tasks), torch.tensor(weights, dtype=DTYPE))
    assert vessel.n_committed == 0


def test_task_committed_twice(vessel: AdjacencyMatrixVessel) -> None:
    vessel.commit(torch.tensor([1, 3]), torch.tensor([0.5, 0.2], dtype=DTYPE))
    with pytest.raises(ValueError, match="more than once"):
        vessel.commit(torch.tensor([3]), torch.tensor([0.7], dtype=DTYPE))
    assert vessel.query(3) == pytest.approx(0.2)


def test_commit_rejects_mismatched_derivatives(vessel: AdjacencyMatrixVessel) -> None:
    with pytest.raises(ValueError, match="derivative blocks"):
        vessel.commit(
            torch.tensor([0, 1]), torch.tensor([0.5, 0.5], dtype=DTYPE), _derivatives(3)
        )


def test_derivative_queries(vessel: AdjacencyMatrixVessel) -> None:
    vessel.commit(torch.tensor([1]), torch.tensor([0.0], dtype=DTYPE))
    blocks = _derivatives(2)
    vessel.commit(torch.tensor([5, 2]), torch.tensor([0.4, 0.8], dtype=DTYPE), blocks)

    assert vessel.has_derivatives.tolist() == [False, True, True]
    block = vessel.query_derivative(2)
    assert torch.equal(block.col_forces, blocks.col_forces[1])
    assert torch.equal(block.row_forces, -block.col_forces)
    assert torch.equal(vessel.query_derivative(5).virials, blocks.virials[0])

    # batched blocks follow task order
    assert len(vessel.derivatives) == 2
    assert torch.equal(vessel.derivatives.col_forces, blocks.col_forces[[1, 0]])

    with pytest.raises(DerivativeNotAvailableError):
        vessel.query_derivative(1)
    with pytest.raises(DerivativeNotAvailableError):
        vessel.query_derivative(0)


def test_iter_block(vessel: AdjacencyMatrixVessel) -> None:
    # ranges: (0, 0) -> [0, 1), (1, 0) -> [1, 5), (1, 1) -> [5, 6)
    vessel.commit(torch.tensor([0, 2, 3, 5]), torch.tensor([0.1, 0.2, 0.3, 0.4]))

    tasks, weights = vessel.iter_block(0, 1)
    assert tasks.tolist() == [2, 3]
    assert torch.allclose(weights, torch.tensor([0.2, 0.3], dtype=DTYPE))
    assert torch.equal(vessel.iter_block(1, 0)[0], tasks)

    tasks, weights = vessel.iter_block(1, 1)
    assert tasks.tolist() == [5]
    assert vessel.iter_block(0, 0)[0].tolist() == [0]


def test_dense_and_edge_views(vessel: AdjacencyMatrixVessel) -> None:
    # tasks: 0=(1,0) 1=(2,0) 2=(2,1) 3=(3,0) 4=(3,1) 5=(3,2)
    vessel.commit(torch.tensor([0, 2, 5]), torch.tensor([0.9, 0.05, 0.6], dtype=DTYPE))

    dense = vessel.to_dense()
    expected = torch.zeros((4, 4), dtype=DTYPE)
    expected[1, 0] = expected[0, 1] = 0.9
    expected[2, 1] = expected[1, 2] = 0.05
    expected[3, 2] = expected[2, 3] = 0.6
    assert torch.equal(dense, expected)
    assert torch.equal(dense, dense.T)

    pairs, weights = vessel.edge_list()
    assert pairs.tolist() == [[1, 0], [3, 2]]
    assert weights.tolist() == [0.9, 0.6]

    assert vessel.adjacency_lists() == [[1], [0], [3], [2]]


def test_pair_derivatives_helpers() -> None:
    blocks = PairDerivatives.cat([_derivatives(2), PairDerivatives.zeros(1, DTYPE)])
    assert len(blocks) == 3
    assert torch.all(blocks[2].virials == 0.0)
    assert blocks[torch.tensor([True, False, True])].row_forces.shape == (2, 3)
