"""
Hyperparameter and option models.

All option models accept both snake_case field names and the camelCase names
used on the wire (e.g. `examplesPerUpdate`). Unknown keys are rejected with
UnrecognizedOption before anything touches the network.
"""

import logging
from typing import Any, List, Mapping, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from fedsync.core.errors import UnrecognizedOption

logger = logging.getLogger(__name__)


class _Options(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class ClientHyperparams(_Options):
    """Hyperparameters the server hands to clients."""
    batch_size: int = Field(default=32, ge=1)
    learning_rate: float = Field(default=0.001, gt=0)
    epochs: int = Field(default=5, ge=1)
    examples_per_update: int = Field(default=5, ge=1)
    weight_noise_stddev: float = Field(default=0.0, ge=0)


class ClientHyperparamOverrides(_Options):
    """
    Partial ClientHyperparams. Used for client-side overrides and for the
    hyperparams block of a download message.
    """
    batch_size: Optional[int] = None
    learning_rate: Optional[float] = None
    epochs: Optional[int] = None
    examples_per_update: Optional[int] = None
    weight_noise_stddev: Optional[float] = None


class ServerHyperparams(_Options):
    aggregation: str = "mean"
    min_updates_per_version: int = Field(default=20, ge=1)


class DatasetConfig(_Options):
    batch_size: int = Field(default=32, ge=1)
    epochs: int = Field(default=5, ge=1)
    small_last_batch: bool = False


class CompileArgs(_Options):
    loss: str = "mse"
    learning_rate: float = Field(default=0.001, gt=0)
    metrics: List[str] = Field(default_factory=lambda: ["accuracy"])


OptionsT = TypeVar("OptionsT", bound=_Options)


def _build(cls: Type[OptionsT], section: str,
           options: Union[None, OptionsT, Mapping[str, Any]]) -> OptionsT:
    if options is None:
        return cls()
    if isinstance(options, cls):
        return options

    known = set(cls.model_fields)
    known.update(f.alias for f in cls.model_fields.values() if f.alias)
    for key in options:
        if key not in known:
            raise UnrecognizedOption(section, key)

    # unset entries fall back to the defaults
    return cls.model_validate({k: v for k, v in options.items() if v is not None})


def client_hyperparams(options: Union[None, ClientHyperparams, Mapping[str, Any]] = None) -> ClientHyperparams:
    return _build(ClientHyperparams, "clientHyperparams", options)


def client_overrides(options: Union[None, ClientHyperparamOverrides, Mapping[str, Any]] = None) -> ClientHyperparamOverrides:
    return _build(ClientHyperparamOverrides, "hyperparams", options)


def server_hyperparams(options: Union[None, ServerHyperparams, Mapping[str, Any]] = None) -> ServerHyperparams:
    return _build(ServerHyperparams, "serverHyperparams", options)


def dataset_config(options: Union[None, DatasetConfig, Mapping[str, Any]] = None) -> DatasetConfig:
    return _build(DatasetConfig, "datasetConfig", options)


def compile_args(options: Union[None, CompileArgs, Mapping[str, Any]] = None) -> CompileArgs:
    return _build(CompileArgs, "compileArgs", options)


def resolve_hyperparam(key: str,
                       overrides: Optional[ClientHyperparamOverrides],
                       downloaded: Optional[ClientHyperparamOverrides]) -> Any:
    """
    Looks up a client hyperparameter: explicit override, then the value from
    the last download message, then the global default.
    """
    for source in (overrides, downloaded):
        if source is not None:
            value = getattr(source, key)
            if value is not None:
                return value
    return getattr(ClientHyperparams(), key)


class DistributedClientConfig(_Options):
    hyperparams: ClientHyperparamOverrides = Field(default_factory=ClientHyperparamOverrides)
    compile_args: CompileArgs = Field(default_factory=CompileArgs)
    verbose: bool = False
    client_id: Optional[str] = None
    client_id_path: Optional[str] = None
    send_metrics: bool = False
    connection_timeout: float = Field(default=10.0, gt=0)
    upload_timeout: float = Field(default=5.0, gt=0)


class DistributedServerConfig(_Options):
    client_hyperparams: ClientHyperparams = Field(default_factory=ClientHyperparams)
    server_hyperparams: ServerHyperparams = Field(default_factory=ServerHyperparams)
    compile_args: CompileArgs = Field(default_factory=CompileArgs)
    model_dir: Optional[str] = None
    verbose: bool = False
    reclaim_on_disconnect: bool = False


def _build_nested(cls, section, options, nested):
    if options is None or isinstance(options, cls):
        return _build(cls, section, options)
    options = dict(options)
    for name, builder in nested.items():
        for key in (name, to_camel(name)):
            if key in options:
                options[key] = builder(options[key])
    return _build(cls, section, options)


def client_config(options: Union[None, DistributedClientConfig, Mapping[str, Any]] = None) -> DistributedClientConfig:
    return _build_nested(DistributedClientConfig, "clientConfig", options, {
        "hyperparams": client_overrides,
        "compile_args": compile_args,
    })


def server_config(options: Union[None, DistributedServerConfig, Mapping[str, Any]] = None) -> DistributedServerConfig:
    return _build_nested(DistributedServerConfig, "serverConfig", options, {
        "client_hyperparams": client_hyperparams,
        "server_hyperparams": server_hyperparams,
        "compile_args": compile_args,
    })
