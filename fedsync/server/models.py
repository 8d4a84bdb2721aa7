"""
Server-side models: a DistributedModel that also owns the canonical version
and persists snapshots.

Versions are millisecond timestamps rendered as strings. They are forced to be
strictly increasing within a process, so sorting a snapshot directory by name
sorts it by age.
"""

import asyncio
import json
import logging
import os
import time
from abc import abstractmethod
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence, Union

import torch

from fedsync.core.config import CompileArgs
from fedsync.core.models import (
    AsyncTorchModel,
    DistributedDynamicModel,
    DistributedModel,
    DistributedTorchModel,
)
from fedsync.core.serialization import FlatVars, flat_deserialize, flat_serialize

logger = logging.getLogger(__name__)

CURRENT = "current"
MODEL_FILE = "model.pt"
META_FILE = "meta.json"
DATA_FILE = "data.bin"

_last_issued = 0


def new_version() -> str:
    global _last_issued
    now = time.time_ns() // 1_000_000
    _last_issued = max(now, _last_issued + 1)
    return str(_last_issued)


def force_symlink(target: str, link: Path) -> None:
    """Points `link` at `target`, replacing any existing link atomically."""
    tmp = link.with_name(f".{link.name}.tmp")
    if tmp.is_symlink() or tmp.exists():
        tmp.unlink()
    os.symlink(target, tmp, target_is_directory=True)
    os.replace(tmp, link)


class DistributedServerModel(DistributedModel):
    """A DistributedModel that carries the canonical version and can persist itself."""
    version: Optional[str] = None

    @abstractmethod
    async def setup(self) -> None:
        """Load the newest snapshot, or fetch the initial model and save it."""

    @abstractmethod
    async def save(self) -> None:
        """Persist the current variables under a new version and advance `version`."""


class SnapshotDirectory:
    """
    One subdirectory per version under `save_dir`, plus a `current` symlink
    to the newest.
    """
    save_dir: Path

    def list(self) -> List[str]:
        if not self.save_dir.exists():
            return []
        return sorted(
            entry.name for entry in self.save_dir.iterdir()
            if entry.is_dir() and not entry.is_symlink() and not entry.name.startswith(".")
        )

    def last(self) -> Optional[str]:
        versions = self.list()
        return versions[-1] if versions else None

    def _version_dir(self, version: str) -> Path:
        return self.save_dir / version

    def _point_current(self, version: str) -> None:
        force_symlink(version, self.save_dir / CURRENT)


class DistributedServerInMemoryModel(DistributedTorchModel, DistributedServerModel):
    """Torch model whose versions are only kept in memory."""

    def __init__(self, initial_model: AsyncTorchModel,
                 config: Union[None, CompileArgs, Mapping[str, Any]] = None, **kwargs):
        super().__init__(initial_model, config, **kwargs)
        self._versions: List[str] = []

    async def setup(self):
        await self.fetch_initial()
        await self.save()

    async def save(self):
        self.version = new_version()
        self._versions.append(self.version)

    def list(self) -> List[str]:
        return list(self._versions)

    def last(self) -> Optional[str]:
        return self._versions[-1] if self._versions else None


class DistributedServerTorchModel(SnapshotDirectory, DistributedTorchModel, DistributedServerModel):
    """
    Wraps an `nn.Module` (or something `fetch_model` can resolve) and stores
    each version as `<save_dir>/<version>/model.pt`.
    """
    def __init__(self, save_dir: Union[str, Path], initial_model: Optional[AsyncTorchModel] = None,
                 config: Union[None, CompileArgs, Mapping[str, Any]] = None, **kwargs):
        super().__init__(initial_model, config, **kwargs)
        self.save_dir = Path(save_dir)

    async def setup(self):
        self.save_dir.mkdir(parents=True, exist_ok=True)
        last = self.last()
        if last:
            logger.info("resuming from saved model %s", last)
            await self.load(last)
        else:
            if self._initial_model is None:
                raise ValueError(f"no saved model in {self.save_dir} and no initial model given")
            await self.fetch_initial()
            await self.save()

    async def save(self):
        version = new_version()
        path = self._version_dir(version)
        path.mkdir(parents=True)
        await asyncio.to_thread(torch.save, self.model, path / MODEL_FILE)
        self._point_current(version)
        self.version = version

    async def load(self, version: str):
        path = self._version_dir(version) / MODEL_FILE
        self.model = await asyncio.to_thread(torch.load, path, weights_only=False)
        self.version = version
        self._point_current(version)


class DistributedServerDynamicModel(SnapshotDirectory, DistributedDynamicModel, DistributedServerModel):
    """
    Raw-parameter model stored as `meta.json` (shapes, dtypes, byte offsets)
    plus one flat `data.bin` per version.
    """
    def __init__(self, save_dir: Union[str, Path], vars: Sequence[torch.Tensor], predict, loss,
                 input_shape: Sequence[int], output_shape: Sequence[int], **kwargs):
        super().__init__(vars, predict, loss, input_shape, output_shape, **kwargs)
        self.save_dir = Path(save_dir)

    async def setup(self):
        self.save_dir.mkdir(parents=True, exist_ok=True)
        last = self.last()
        if last:
            logger.info("resuming from saved variables %s", last)
            await self.load(last)
        else:
            await self.save()

    async def save(self):
        version = new_version()
        path = self._version_dir(version)
        path.mkdir(parents=True)
        flat = flat_serialize(self.vars)
        await asyncio.to_thread(_write_flat, path, flat)
        self._point_current(version)
        self.version = version

    async def load(self, version: str):
        flat = await asyncio.to_thread(_read_flat, self._version_dir(version))
        self.set_vars(flat_deserialize(flat))
        self.version = version
        self._point_current(version)


def _write_flat(path: Path, flat: FlatVars) -> None:
    (path / META_FILE).write_text(json.dumps(flat.to_json()))
    (path / DATA_FILE).write_bytes(flat.data)


def _read_flat(path: Path) -> FlatVars:
    json_obj = json.loads((path / META_FILE).read_text(encoding="utf-8"))
    return FlatVars.from_json((path / DATA_FILE).read_bytes(), json_obj)
