import math
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

import numpy as np
import torch
from pydantic import BaseModel, field_validator, model_validator

from fedsync.core.errors import ShapeMismatch

# dtype name -> (numpy storage dtype, torch dtype). Booleans travel as one byte each.
DTYPES = {
    "float32": (np.float32, torch.float32),
    "int32": (np.int32, torch.int32),
    "bool": (np.uint8, torch.bool),
}

_TORCH_TO_NAME = {torch_dtype: name for name, (_, torch_dtype) in DTYPES.items()}


class SerializedVariable(BaseModel):
    """
    Transport-safe form of a tensor: dtype name, shape and raw bytes.
    """
    dtype: str
    shape: List[int]
    data: bytes

    @field_validator("dtype")
    @classmethod
    def _known_dtype(cls, value: str) -> str:
        if value not in DTYPES:
            raise ValueError(f"unsupported dtype {value!r}")
        return value

    @field_validator("shape")
    @classmethod
    def _positive_dims(cls, value: List[int]) -> List[int]:
        if any(dim <= 0 for dim in value):
            raise ValueError(f"shape must contain positive integers, got {value}")
        return value

    @field_validator("data", mode="before")
    @classmethod
    def _coerce_buffer(cls, value: Any) -> Any:
        # Transports may hand back a bytearray, a memoryview or a plain list of byte values.
        if isinstance(value, (bytearray, memoryview)):
            return bytes(value)
        if isinstance(value, (list, tuple)):
            return bytes(bytearray(value))
        return value

    @model_validator(mode="after")
    def _check_length(self) -> "SerializedVariable":
        expected = self.numel * np.dtype(DTYPES[self.dtype][0]).itemsize
        if len(self.data) != expected:
            raise ValueError(
                f"payload is {len(self.data)} bytes, expected {expected} for "
                f"{self.dtype}{self.shape}"
            )
        return self

    @property
    def numel(self) -> int:
        return math.prod(self.shape)


def serialize_var(variable: torch.Tensor) -> SerializedVariable:
    """
    Reads a tensor (or parameter) into a SerializedVariable.
    The source tensor is left untouched.
    """
    tensor = variable.detach()
    if tensor.dtype not in _TORCH_TO_NAME:
        raise ValueError(f"cannot serialize tensor of dtype {tensor.dtype}")
    dtype = _TORCH_TO_NAME[tensor.dtype]
    array = tensor.cpu().contiguous().numpy()
    if dtype == "bool":
        array = array.astype(np.uint8)
    return SerializedVariable(dtype=dtype, shape=list(tensor.shape), data=array.tobytes())


def serialize_vars(variables: Sequence[torch.Tensor]) -> List[SerializedVariable]:
    """Serializes each tensor, preserving order."""
    return [serialize_var(v) for v in variables]


def serialized_to_array(serialized: SerializedVariable) -> np.ndarray:
    np_dtype = DTYPES[serialized.dtype][0]
    array = np.frombuffer(serialized.data, dtype=np_dtype, count=serialized.numel)
    return array.reshape(serialized.shape)


def deserialize_var(serialized: SerializedVariable) -> torch.Tensor:
    if isinstance(serialized, dict):
        serialized = SerializedVariable.model_validate(serialized)
    array = serialized_to_array(serialized)
    if serialized.dtype == "bool":
        return torch.from_numpy(array.astype(bool))
    # frombuffer views are read-only
    return torch.from_numpy(array.copy())


def deserialize_vars(variables: Sequence[SerializedVariable]) -> List[torch.Tensor]:
    return [deserialize_var(v) for v in variables]


def stack_serialized(updates: Sequence[Sequence[SerializedVariable]]) -> List[SerializedVariable]:
    """
    Stacks N per-client update lists into one list of tensors shaped [N, *shape].

    Args:
        updates: one list of serialized variables per client, all in the same
            parameter order.

    Returns:
        One SerializedVariable per parameter position whose payload is the
        concatenation of every client's bytes, client-major.

    Raises:
        ShapeMismatch: if the lists differ in length, or a position differs in
            dtype or shape between clients.
    """
    if not updates:
        raise ShapeMismatch("cannot stack an empty list of updates", expected=">= 1 update", actual=0)

    update_count = len(updates)
    weight_count = len(updates[0])
    for i, update in enumerate(updates):
        if len(update) != weight_count:
            raise ShapeMismatch(
                f"update {i} has {len(update)} variables, expected {weight_count}",
                expected=weight_count,
                actual=len(update),
            )

    stacked = []
    for wt in range(weight_count):
        first = updates[0][wt]
        for up in range(1, update_count):
            other = updates[up][wt]
            if other.dtype != first.dtype or other.shape != first.shape:
                raise ShapeMismatch(
                    f"variable {wt} of update {up} is {other.dtype}{other.shape}, "
                    f"expected {first.dtype}{first.shape}",
                    expected=(first.dtype, first.shape),
                    actual=(other.dtype, other.shape),
                )
        data = b"".join(update[wt].data for update in updates)
        stacked.append(SerializedVariable(
            dtype=first.dtype,
            shape=[update_count] + list(first.shape),
            data=data,
        ))
    return stacked


@dataclass
class FlatVars:
    """
    Raw snapshot layout: every parameter's bytes back to back in `data`,
    with `byte_offsets[i]` marking where parameter i starts.
    """
    data: bytes
    meta: List[Dict[str, Any]]
    byte_offsets: List[int]

    def to_json(self) -> Dict[str, Any]:
        return {"meta": self.meta, "byteOffsets": self.byte_offsets}

    @classmethod
    def from_json(cls, data: bytes, json_obj: Dict[str, Any]) -> "FlatVars":
        return cls(data=data, meta=json_obj["meta"], byte_offsets=json_obj["byteOffsets"])


def flat_serialize(tensors: Sequence[torch.Tensor]) -> FlatVars:
    serialized = serialize_vars(tensors)
    meta = [{"shape": s.shape, "dtype": s.dtype} for s in serialized]

    byte_offsets = []
    cursor = 0
    for s in serialized:
        byte_offsets.append(cursor)
        cursor += len(s.data)

    return FlatVars(data=b"".join(s.data for s in serialized), meta=meta, byte_offsets=byte_offsets)


def flat_deserialize(flat: FlatVars) -> List[torch.Tensor]:
    tensors = []
    for entry, offset in zip(flat.meta, flat.byte_offsets):
        np_dtype = DTYPES[entry["dtype"]][0]
        nbytes = math.prod(entry["shape"]) * np.dtype(np_dtype).itemsize
        tensors.append(deserialize_var(SerializedVariable(
            dtype=entry["dtype"],
            shape=entry["shape"],
            data=flat.data[offset:offset + nbytes],
        )))
    return tensors
