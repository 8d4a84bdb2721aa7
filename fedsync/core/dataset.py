import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Mapping, NamedTuple, Optional, Union

import torch

from fedsync.core.config import DatasetConfig, dataset_config
from fedsync.core.schema import DataMsg
from fedsync.core.serialization import serialize_var

logger = logging.getLogger(__name__)


@dataclass
class Batch:
    batch: int
    epoch: int
    x: torch.Tensor
    y: torch.Tensor


class NextBatch(NamedTuple):
    value: Optional[Batch]
    done: bool


class DistributedDataset:
    """
    Hands out epoch/batch work units from an in-memory dataset.

    A batch stays outstanding until `complete_batch` is called for it. Outstanding
    batches are kept in dispatch order and cycled, so a batch given to a client
    that never reports back is handed out again once the others have been seen.
    """
    def __init__(self, x: torch.Tensor, y: torch.Tensor,
                 config: Union[None, DatasetConfig, Mapping[str, Any]] = None):
        if x.shape[0] != y.shape[0]:
            raise ValueError(f"x has {x.shape[0]} rows but y has {y.shape[0]}")
        if x.shape[0] == 0:
            raise ValueError("cannot distribute an empty dataset")

        self.config = dataset_config(config)
        self.x = x
        self.y = y
        self.epochs = self.config.epochs
        self.batch_size = self.config.batch_size
        self.small_last_batch = self.config.small_last_batch

        self.epoch = 0
        self.num_batches = math.ceil(x.shape[0] / self.batch_size)
        self.incomplete: Deque[int] = deque(range(self.num_batches))
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def is_outstanding(self, batch: int, epoch: Optional[int] = None) -> bool:
        if epoch is not None and epoch != self.epoch:
            return False
        return batch in self.incomplete

    def complete_batch(self, batch: int, epoch: Optional[int] = None) -> bool:
        """
        Marks a batch as done for the current epoch.

        Returns:
            True if the batch was outstanding, False if it was already complete
            (or belongs to an earlier epoch).
        """
        if epoch is not None and epoch != self.epoch:
            return False
        try:
            self.incomplete.remove(batch)
        except ValueError:
            return False
        return True

    def reclaim(self, batch: int) -> bool:
        """Moves an outstanding batch to the front of the queue."""
        try:
            self.incomplete.remove(batch)
        except ValueError:
            return False
        self.incomplete.appendleft(batch)
        return True

    def next(self) -> NextBatch:
        if self._done:
            return NextBatch(None, True)

        if not self.incomplete:
            self.epoch += 1
            if self.epoch >= self.epochs:
                self._done = True
                logger.debug("dataset exhausted after %d epochs", self.epochs)
                return NextBatch(None, True)
            self.incomplete.extend(range(self.num_batches))

        batch = self.incomplete.popleft()
        self.incomplete.append(batch)
        return NextBatch(self.get_batch(batch), False)

    def get_batch(self, batch: int) -> Batch:
        start = batch * self.batch_size
        stop = start + self.batch_size
        n = self.x.shape[0]

        if stop <= n or self.small_last_batch:
            rows = slice(start, min(stop, n))
            return Batch(batch=batch, epoch=self.epoch, x=self.x[rows].clone(), y=self.y[rows].clone())

        # pad the last batch to full size with rows from the start of the dataset
        index = torch.arange(start, stop) % n
        return Batch(batch=batch, epoch=self.epoch, x=self.x[index], y=self.y[index])


def to_data_msg(batch: Batch) -> DataMsg:
    return DataMsg(
        batch=batch.batch,
        epoch=batch.epoch,
        x=serialize_var(batch.x),
        y=serialize_var(batch.y),
    )
