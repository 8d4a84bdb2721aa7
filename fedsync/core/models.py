import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import torch
import torch.nn as nn
import torch.nn.functional as F

from fedsync.core.config import ClientHyperparams, CompileArgs, compile_args
from fedsync.core.errors import ShapeMismatch

logger = logging.getLogger(__name__)

LossFn = Callable[[torch.Tensor, torch.Tensor], torch.Tensor]

# (y_pred, y_true) -> scalar loss
LOSSES: Dict[str, LossFn] = {
    "mse": F.mse_loss,
    "mae": F.l1_loss,
    "huber": F.huber_loss,
    "cross_entropy": F.cross_entropy,
    "bce": F.binary_cross_entropy_with_logits,
}


def accuracy(y_pred: torch.Tensor, y_true: torch.Tensor) -> torch.Tensor:
    if y_pred.ndim > 1 and y_pred.shape[-1] > 1:
        predicted = y_pred.argmax(dim=-1)
        target = y_true.argmax(dim=-1) if y_true.shape == y_pred.shape else y_true
    else:
        predicted = y_pred > 0.5
        target = y_true > 0.5
    return (predicted.reshape(-1) == target.reshape(-1)).float().mean()


METRICS: Dict[str, LossFn] = {
    "accuracy": accuracy,
    "mse": F.mse_loss,
    "mae": F.l1_loss,
}

AsyncTorchModel = Union[str, Path, nn.Module, Callable[[], Any]]


async def fetch_model(source: AsyncTorchModel) -> nn.Module:
    """
    Resolves a model given as a module, a path to a `torch.save`d module, or a
    (possibly async) zero-argument factory.
    """
    if isinstance(source, nn.Module):
        return source
    if isinstance(source, (str, Path)):
        return await asyncio.to_thread(torch.load, str(source), weights_only=False)
    model = source()
    if inspect.isawaitable(model):
        model = await model
    return model


class DistributedModel(ABC):
    """
    Capabilities the client and server sessions need from a model.

    Variables are exchanged as ordered lists; position, not name, identifies a
    parameter.
    """

    async def setup(self) -> None:
        """Initialize the model (load or build it)."""

    @abstractmethod
    def fit(self, x: torch.Tensor, y: torch.Tensor, epochs: int = 1,
            batch_size: int = 32, learning_rate: Optional[float] = None) -> Optional[List[torch.Tensor]]:
        """
        Trains on (x, y).

        Returns:
            None if the model stepped its own weights, otherwise the gradients
            the caller must pass to `update`.
        """

    @abstractmethod
    def compute_gradients(self, x: torch.Tensor, y: torch.Tensor) -> List[torch.Tensor]:
        """Gradients of the mean loss on (x, y), without changing the weights."""

    @abstractmethod
    def update(self, grads: Sequence[torch.Tensor]) -> None:
        """Applies one learning-rate scaled step against `grads`."""

    @abstractmethod
    def predict(self, x: torch.Tensor) -> torch.Tensor:
        pass

    @abstractmethod
    def evaluate(self, x: torch.Tensor, y: torch.Tensor) -> List[float]:
        pass

    @abstractmethod
    def get_vars(self) -> List[torch.Tensor]:
        pass

    @abstractmethod
    def set_vars(self, vals: Sequence[torch.Tensor]) -> None:
        pass

    @property
    @abstractmethod
    def input_shape(self) -> List[int]:
        """Shape of one input example (no batch dimension)."""

    @property
    @abstractmethod
    def output_shape(self) -> List[int]:
        """Shape of one output (no batch dimension)."""


def _check_shapes(targets: Sequence[torch.Tensor], vals: Sequence[torch.Tensor]) -> None:
    if len(vals) != len(targets):
        raise ShapeMismatch(
            f"got {len(vals)} variables, model has {len(targets)}",
            expected=len(targets),
            actual=len(vals),
        )
    for i, (target, val) in enumerate(zip(targets, vals)):
        if tuple(val.shape) != tuple(target.shape):
            raise ShapeMismatch(
                f"variable {i} has shape {list(val.shape)}, expected {list(target.shape)}",
                expected=list(target.shape),
                actual=list(val.shape),
            )


def _assign(targets: Sequence[torch.Tensor], vals: Sequence[torch.Tensor]) -> None:
    _check_shapes(targets, vals)
    with torch.no_grad():
        for target, val in zip(targets, vals):
            target.copy_(val.to(dtype=target.dtype, device=target.device))


class DistributedTorchModel(DistributedModel):
    """
    Wraps a full `nn.Module`. `fit` runs SGD on the module's trainable
    parameters and returns nothing.
    """
    def __init__(self, initial_model: AsyncTorchModel,
                 config: Union[None, CompileArgs, Mapping[str, Any]] = None,
                 input_shape: Optional[Sequence[int]] = None,
                 output_shape: Optional[Sequence[int]] = None):
        self._initial_model = initial_model
        self.compile_args = compile_args(config)
        if self.compile_args.loss not in LOSSES:
            raise ValueError(f"unknown loss {self.compile_args.loss!r}")
        for name in self.compile_args.metrics:
            if name not in METRICS:
                raise ValueError(f"unknown metric {name!r}")
        self.loss_fn = LOSSES[self.compile_args.loss]
        self.learning_rate = self.compile_args.learning_rate
        self._input_shape = list(input_shape) if input_shape is not None else None
        self._output_shape = list(output_shape) if output_shape is not None else None
        self.model: Optional[nn.Module] = initial_model if isinstance(initial_model, nn.Module) else None

    async def fetch_initial(self) -> None:
        self.model = await fetch_model(self._initial_model)

    async def setup(self) -> None:
        await self.fetch_initial()

    def _trainable(self) -> List[nn.Parameter]:
        return [p for p in self.model.parameters() if p.requires_grad]

    def fit(self, x, y, epochs=1, batch_size=32, learning_rate=None):
        lr = learning_rate if learning_rate is not None else self.learning_rate
        optimizer = torch.optim.SGD(self._trainable(), lr=lr)
        self.model.train()
        n = x.shape[0]
        for _ in range(epochs):
            for start in range(0, n, batch_size):
                xb = x[start:start + batch_size]
                yb = y[start:start + batch_size]
                optimizer.zero_grad()
                loss = self.loss_fn(self.model(xb), yb)
                loss.backward()
                optimizer.step()
        return None

    def compute_gradients(self, x, y):
        params = self._trainable()
        self.model.train()
        loss = self.loss_fn(self.model(x), y)
        grads = torch.autograd.grad(loss, params, allow_unused=True)
        return [torch.zeros_like(p) if g is None else g.detach() for p, g in zip(params, grads)]

    def update(self, grads):
        params = self._trainable()
        _check_shapes(params, grads)
        with torch.no_grad():
            for p, g in zip(params, grads):
                p.sub_(self.learning_rate * g.to(p.dtype))

    def predict(self, x):
        self.model.eval()
        with torch.no_grad():
            return self.model(x)

    def evaluate(self, x, y):
        self.model.eval()
        with torch.no_grad():
            preds = self.model(x)
            results = [self.loss_fn(preds, y).item()]
            for name in self.compile_args.metrics:
                results.append(METRICS[name](preds, y).item())
        return results

    def get_vars(self):
        return [p.detach().clone() for p in self._trainable()]

    def set_vars(self, vals):
        _assign(self._trainable(), vals)

    @property
    def input_shape(self):
        if self._input_shape is not None:
            return self._input_shape
        return list(getattr(self.model, "input_shape"))

    @property
    def output_shape(self):
        if self._output_shape is not None:
            return self._output_shape
        return list(getattr(self.model, "output_shape"))


class DistributedDynamicModel(DistributedModel):
    """
    Raw parameter tensors plus external predict/loss closures.

    `fit` only computes gradients; the caller applies them with `update`.
    """
    def __init__(self, vars: Sequence[torch.Tensor],
                 predict: Callable[[torch.Tensor], torch.Tensor],
                 loss: Callable[[torch.Tensor, torch.Tensor], torch.Tensor],
                 input_shape: Sequence[int],
                 output_shape: Sequence[int],
                 learning_rate: float = ClientHyperparams().learning_rate):
        self.vars = list(vars)
        for v in self.vars:
            if v.is_floating_point():
                v.requires_grad_(True)
        self._predict = predict
        self.loss = loss
        self.learning_rate = learning_rate
        self._input_shape = list(input_shape)
        self._output_shape = list(output_shape)

    def fit(self, x, y, epochs=1, batch_size=32, learning_rate=None):
        return self.compute_gradients(x, y)

    def compute_gradients(self, x, y):
        trainable = [v for v in self.vars if v.requires_grad]
        loss = self.loss(y, self._predict(x)).mean()
        grads = iter(torch.autograd.grad(loss, trainable, allow_unused=True))
        result = []
        for v in self.vars:
            g = next(grads) if v.requires_grad else None
            result.append(torch.zeros_like(v) if g is None else g.detach())
        return result

    def update(self, grads):
        _check_shapes(self.vars, grads)
        with torch.no_grad():
            for v, g in zip(self.vars, grads):
                if v.requires_grad:
                    v.sub_(self.learning_rate * g.to(v.dtype))

    def predict(self, x):
        with torch.no_grad():
            return self._predict(x)

    def evaluate(self, x, y):
        with torch.no_grad():
            return self.loss(y, self._predict(x)).reshape(-1).tolist()

    def get_vars(self):
        return [v.detach().clone() for v in self.vars]

    def set_vars(self, vals):
        _assign(self.vars, vals)

    @property
    def input_shape(self):
        return self._input_shape

    @property
    def output_shape(self):
        return self._output_shape
