import torch
import pytest
from fedsync.server.aggregator import Aggregator
from fedsync.core.errors import ShapeMismatch, UnsupportedAggregation
from fedsync.core.serialization import serialize_vars

def test_reconstruction():
    aggregator = Aggregator()

    updates = [
        serialize_vars([torch.ones(2, 2), torch.tensor([1.0, 2.0, 3.0])]),
        serialize_vars([torch.zeros(2, 2), torch.tensor([4.0, 5.0, 6.0])]),
    ]

    stacked = aggregator.reconstruct(updates)

    # One tensor per variable, clients along the first axis
    assert stacked[0].shape == (2, 2, 2)
    assert stacked[1].shape == (2, 3)
    assert torch.allclose(stacked[0][0], torch.ones(2, 2))
    assert torch.allclose(stacked[1][1], torch.tensor([4.0, 5.0, 6.0]))

def test_mean_aggregation():
    aggregator = Aggregator("mean")

    gradients = torch.tensor([
        [1.0, 1.0, 1.0, 1.0, 1.0],
        [2.0, 2.0, 2.0, 2.0, 2.0],
        [3.0, 3.0, 3.0, 3.0, 3.0],
        [4.0, 4.0, 4.0, 4.0, 4.0],
        [5.0, 5.0, 5.0, 5.0, 5.0]
    ])

    aggregated = aggregator.aggregate([gradients])

    # Mean should be 3.0
    assert torch.allclose(aggregated[0], torch.full((5,), 3.0))

def test_merge_matches_elementwise_mean():
    aggregator = Aggregator()
    updates = [
        serialize_vars([torch.ones(2, 2), torch.tensor([[1.0, 2.0, 3.0, 4.0]])]),
        serialize_vars([torch.full((2, 2), 2.0), torch.tensor([[5.0, 4.0, 3.0, 1.0]])]),
    ]

    merged = aggregator.merge(updates)

    assert torch.allclose(merged[0], torch.full((2, 2), 1.5))
    assert torch.allclose(merged[1], torch.tensor([[3.0, 3.0, 3.0, 2.5]]))

def test_integer_mean_keeps_dtype():
    aggregator = Aggregator()
    merged = aggregator.merge([
        serialize_vars([torch.tensor([1, 2], dtype=torch.int32)]),
        serialize_vars([torch.tensor([3, 6], dtype=torch.int32)]),
    ])
    assert merged[0].dtype == torch.int32
    assert merged[0].tolist() == [2, 4]

def test_unsupported_aggregation():
    aggregator = Aggregator("median")
    with pytest.raises(UnsupportedAggregation) as excinfo:
        aggregator.merge([serialize_vars([torch.ones(3)])])
    assert excinfo.value.aggregation == "median"
    assert "UNSUPPORTED_AGGREGATION" in str(excinfo.value)

def test_mismatched_updates():
    aggregator = Aggregator()
    with pytest.raises(ShapeMismatch):
        aggregator.merge([
            serialize_vars([torch.ones(3)]),
            serialize_vars([torch.ones(4)]),
        ])

if __name__ == "__main__":
    test_reconstruction()
    test_mean_aggregation()
    test_merge_matches_elementwise_mean()
    test_integer_mean_keeps_dtype()
    test_unsupported_aggregation()
    test_mismatched_updates()
    print("All Aggregator tests passed!")
