import pytest
import torch

from fedsync.core.dataset import DistributedDataset, to_data_msg
from fedsync.core.errors import UnrecognizedOption
from fedsync.core.serialization import deserialize_var


def make_dataset(n=10, **config):
    x = torch.arange(n, dtype=torch.float32).unsqueeze(1)
    y = x * 2
    return DistributedDataset(x, y, config)


def drain_epoch(dataset):
    """Takes and completes batches until the epoch rolls over; returns them in order."""
    epoch = dataset.epoch
    seen = []
    while True:
        item = dataset.next()
        if item.done or item.value.epoch != epoch:
            return seen, item
        seen.append(item.value)
        dataset.complete_batch(item.value.batch, item.value.epoch)


def test_batch_count_and_sizes():
    dataset = make_dataset(batchSize=3, epochs=1, smallLastBatch=True)
    assert dataset.num_batches == 4

    batches, _ = drain_epoch(dataset)
    assert [b.batch for b in batches] == [0, 1, 2, 3]
    assert [b.x.shape[0] for b in batches] == [3, 3, 3, 1]
    assert batches[3].x.flatten().tolist() == [9.0]
    assert torch.equal(batches[1].y, batches[1].x * 2)


def test_last_batch_wraps_around():
    dataset = make_dataset(batchSize=3, epochs=1)
    batches, _ = drain_epoch(dataset)
    # padded to full size from the start of the dataset
    assert batches[3].x.flatten().tolist() == [9.0, 0.0, 1.0]


def test_exhaustion_is_permanent():
    dataset = make_dataset(batchSize=5, epochs=2)
    first, item = drain_epoch(dataset)
    assert [b.batch for b in first] == [0, 1]
    assert item.value.epoch == 1

    dataset.complete_batch(item.value.batch, 1)
    dataset.complete_batch(dataset.next().value.batch, 1)

    assert dataset.next().done
    assert dataset.done
    assert dataset.next() == (None, True)


def test_uncompleted_batch_is_handed_out_again():
    dataset = make_dataset(batchSize=3, epochs=1)
    handed_out = [dataset.next().value.batch for _ in range(4)]
    assert handed_out == [0, 1, 2, 3]

    # only batch 1 is completed; the rest cycle in dispatch order
    assert dataset.complete_batch(1)
    assert [dataset.next().value.batch for _ in range(4)] == [0, 2, 3, 0]
    assert dataset.epoch == 0


def test_complete_batch_twice():
    dataset = make_dataset(batchSize=3, epochs=2)
    dataset.next()
    assert dataset.complete_batch(0) is True
    assert dataset.complete_batch(0) is False


def test_stale_epoch_tag():
    dataset = make_dataset(batchSize=5, epochs=3)
    drain_epoch(dataset)
    assert dataset.epoch == 1
    assert not dataset.is_outstanding(0, epoch=0)
    assert dataset.complete_batch(0, epoch=0) is False
    assert dataset.is_outstanding(0, epoch=1)


def test_reclaim():
    dataset = make_dataset(batchSize=3, epochs=1)
    for _ in range(3):
        dataset.next()
    assert dataset.reclaim(1)
    assert dataset.next().value.batch == 1
    dataset.complete_batch(2)
    assert dataset.reclaim(2) is False


def test_invalid_inputs():
    with pytest.raises(ValueError):
        DistributedDataset(torch.ones(3, 1), torch.ones(4, 1))
    with pytest.raises(ValueError):
        DistributedDataset(torch.ones(0, 1), torch.ones(0, 1))
    with pytest.raises(UnrecognizedOption):
        make_dataset(shuffle=True)


def test_to_data_msg():
    dataset = make_dataset(batchSize=4, epochs=1)
    msg = to_data_msg(dataset.next().value)
    assert msg.batch == 0
    assert msg.epoch == 0
    assert msg.x.shape == [4, 1]
    assert deserialize_var(msg.y).flatten().tolist() == [0.0, 2.0, 4.0, 6.0]


if __name__ == "__main__":
    test_batch_count_and_sizes()
    test_last_batch_wraps_around()
    test_exhaustion_is_permanent()
    test_uncompleted_batch_is_handed_out_again()
    test_complete_batch_twice()
    test_stale_epoch_tag()
    test_reclaim()
    test_invalid_inputs()
    test_to_data_msg()
    print("All Dataset tests passed!")
