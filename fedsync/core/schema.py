from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from fedsync.core.config import ClientHyperparamOverrides
from fedsync.core.serialization import SerializedVariable


class Events(str, Enum):
    DOWNLOAD = "download"
    UPLOAD = "upload"


class _Message(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """Dict form handed to the event channel (camelCase keys, unset fields dropped)."""
        return self.model_dump(by_alias=True, exclude_none=True)


class ModelMsg(_Message):
    """A versioned set of weights, or of gradients computed against that version."""
    version: str
    vars: List[SerializedVariable]


GradientMsg = ModelMsg


class DataMsg(_Message):
    """One work unit handed to a client."""
    batch: int
    epoch: int
    x: SerializedVariable
    y: SerializedVariable


class DownloadMsg(_Message):
    """
    Downlink message from Server to Client.
    Carries the current model version and weights, client hyperparameters and,
    in batch-dispatch mode, the next work unit.
    """
    model: ModelMsg
    hyperparams: ClientHyperparamOverrides = Field(default_factory=ClientHyperparamOverrides)
    data: Optional[DataMsg] = None


class UploadMsg(_Message):
    """
    Uplink message from Client to Server.
    Exactly one of `model` (weights) or `gradients` is expected.
    """
    client_id: str
    model: Optional[ModelMsg] = None
    gradients: Optional[GradientMsg] = None
    batch: Optional[int] = None
    epoch: Optional[int] = None
    metrics: Optional[List[float]] = None

    @property
    def payload(self) -> Optional[ModelMsg]:
        return self.model if self.model is not None else self.gradients
