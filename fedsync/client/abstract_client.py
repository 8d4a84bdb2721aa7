import asyncio
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import socketio
from socketio import exceptions as sio_exceptions
import torch

from fedsync.client.utils import load_client_id
from fedsync.core.config import DistributedClientConfig, client_config, resolve_hyperparam
from fedsync.core.errors import ConnectionTimeout, UploadTimeout
from fedsync.core.models import AsyncTorchModel, DistributedModel, DistributedTorchModel
from fedsync.core.schema import DownloadMsg, Events, UploadMsg
from fedsync.core.serialization import SerializedVariable, deserialize_vars
from fedsync.core.timing import timed

logger = logging.getLogger(__name__)

UNSYNCED = "unsynced"

VersionCallback = Callable[[Optional[str], str], None]
UploadCallback = Callable[[UploadMsg], None]
SocketFactory = Callable[[], Any]


class AbstractClient:
    """
    Client side of the synchronisation protocol.

    Connects to a server, keeps the local model in sync with every download
    the server sends, and uploads results. Server broadcasts can arrive at any
    await point, including while an update is in flight; the in-flight update
    still uploads against the version it started from.
    """
    def __init__(self, server: str, model: Union[DistributedModel, AsyncTorchModel],
                 config: Union[None, DistributedClientConfig, Mapping[str, Any]] = None,
                 socket_factory: SocketFactory = socketio.AsyncClient):
        self.server = server
        self.config = client_config(config)
        if isinstance(model, DistributedModel):
            self.model = model
        else:
            self.model = DistributedTorchModel(model, self.config.compile_args)

        self.socket_factory = socket_factory
        self.socket = None
        self.msg: Optional[DownloadMsg] = None
        self.hyperparams = self.config.hyperparams
        self.verbose = self.config.verbose
        self.send_metrics = self.config.send_metrics
        self.client_id = self.config.client_id or load_client_id(self.config.client_id_path)

        self.version_callbacks: List[VersionCallback] = [self._log_version]
        self.upload_callbacks: List[UploadCallback] = []
        self.version_update_counts: Dict[str, int] = {}
        self._first_download: Optional[asyncio.Future] = None

    def model_version(self) -> str:
        """The version of the model we're currently training."""
        return UNSYNCED if self.msg is None else self.msg.model.version

    def on_new_version(self, callback: VersionCallback) -> None:
        """Registers a callback invoked with (old_version, new_version) whenever the synced version changes."""
        self.version_callbacks.append(callback)

    def on_upload(self, callback: UploadCallback) -> None:
        """Registers a callback invoked with each acknowledged upload message."""
        self.upload_callbacks.append(callback)

    def evaluate(self, x: torch.Tensor, y: torch.Tensor) -> List[float]:
        return self.model.evaluate(x, y)

    def predict(self, x: torch.Tensor) -> torch.Tensor:
        return self.model.predict(x)

    def num_updates(self) -> int:
        return sum(self.version_update_counts.values())

    def num_versions(self) -> int:
        return len(self.version_update_counts)

    @property
    def input_shape(self) -> List[int]:
        return self.model.input_shape

    @property
    def output_shape(self) -> List[int]:
        return self.model.output_shape

    async def setup(self) -> None:
        """
        Initializes the local model, connects, and applies the first download.

        Raises:
            ConnectionTimeout: if no download arrives within the connection timeout.
        """
        with self.timed("Initial model setup"):
            await self.model.setup()

        with self.timed("Download weights from server"):
            await self.connect_to(self.server)

    async def dispose(self) -> None:
        if self.socket is not None:
            await self.socket.disconnect()
        self._log("Disconnected")

    def hyperparam(self, key: str) -> Any:
        downloaded = self.msg.hyperparams if self.msg is not None else None
        return resolve_hyperparam(key, self.hyperparams, downloaded)

    async def connect_to(self, server: str) -> DownloadMsg:
        loop = asyncio.get_running_loop()
        self._first_download = loop.create_future()
        self.socket = self.socket_factory()
        self.socket.on(Events.DOWNLOAD.value, self._on_download)

        async def first_download() -> DownloadMsg:
            await self.socket.connect(server)
            return await self._first_download

        timeout = self.config.connection_timeout
        try:
            return await asyncio.wait_for(first_download(), timeout)
        except asyncio.TimeoutError:
            await self.socket.disconnect()
            raise ConnectionTimeout(server, timeout) from None

    async def upload_vars(self, msg: UploadMsg) -> None:
        """
        Sends an upload and waits for the server's acknowledgement.
        No retry is attempted.

        Raises:
            UploadTimeout: if the acknowledgement does not arrive in time.
        """
        timeout = self.config.upload_timeout
        try:
            await self.socket.call(Events.UPLOAD.value, msg.to_wire(), timeout=timeout)
        except sio_exceptions.TimeoutError:
            raise UploadTimeout(self.client_id, timeout) from None

    def set_vars(self, new_vars: List[SerializedVariable]) -> None:
        self.model.set_vars(deserialize_vars(new_vars))

    async def _on_download(self, data: Dict[str, Any]) -> None:
        msg = DownloadMsg.model_validate(data)
        old_version = None if self.msg is None else self.model_version()
        new_version = msg.model.version
        self.msg = msg
        self.set_vars(msg.model.vars)
        self.on_synced(msg)
        # a re-sent version (e.g. a new batch at the same version) keeps its count
        if new_version != old_version:
            self.version_update_counts[new_version] = 0
            for callback in self.version_callbacks:
                callback(old_version, new_version)
        if self._first_download is not None and not self._first_download.done():
            self._first_download.set_result(msg)

    def on_synced(self, msg: DownloadMsg) -> None:
        """Hook for subclasses, called after a download has been applied."""

    def _notify_upload(self, msg: UploadMsg) -> None:
        for callback in self.upload_callbacks:
            callback(msg)

    def _log_version(self, old_version: Optional[str], new_version: str) -> None:
        self._log("Updated model: %s -> %s", old_version, new_version)

    def _log(self, msg: str, *args: Any) -> None:
        logger.log(logging.INFO if self.verbose else logging.DEBUG, msg, *args)

    def timed(self, what: str):
        return timed(logger, logging.INFO if self.verbose else logging.DEBUG, what)
