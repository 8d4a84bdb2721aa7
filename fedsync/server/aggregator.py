import torch
from typing import Callable, Dict, List, Sequence

from fedsync.core.errors import UnsupportedAggregation
from fedsync.core.serialization import SerializedVariable, deserialize_vars, stack_serialized


def _mean(stacked: torch.Tensor) -> torch.Tensor:
    if stacked.is_floating_point():
        return stacked.mean(dim=0)
    return stacked.to(torch.float32).mean(dim=0).round().to(stacked.dtype)


# Reductions over the leading client axis of a stacked update.
AGGREGATIONS: Dict[str, Callable[[torch.Tensor], torch.Tensor]] = {
    "mean": _mean,
}


class Aggregator:
    """
    Server-side aggregator.
    Stacks buffered client updates and reduces them across clients.
    """
    def __init__(self, aggregation: str = "mean"):
        self.aggregation = aggregation

    def reconstruct(self, updates: Sequence[Sequence[SerializedVariable]]) -> List[torch.Tensor]:
        """
        Stacks per-client update lists into one tensor per variable.
        Returns tensors of shape (num_updates, *variable_shape).
        """
        return deserialize_vars(stack_serialized(updates))

    def aggregate(self, stacked: Sequence[torch.Tensor]) -> List[torch.Tensor]:
        """
        Reduces each stacked tensor along the client dimension.

        Raises:
            UnsupportedAggregation: if the configured aggregation is unknown.
        """
        reduce = AGGREGATIONS.get(self.aggregation)
        if reduce is None:
            raise UnsupportedAggregation(self.aggregation)
        return [reduce(t) for t in stacked]

    def merge(self, updates: Sequence[Sequence[SerializedVariable]]) -> List[torch.Tensor]:
        return self.aggregate(self.reconstruct(updates))
