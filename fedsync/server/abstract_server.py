import asyncio
import logging
from collections import deque
from pathlib import Path
from typing import Any, Callable, Coroutine, Deque, List, Mapping, Optional, Set, Union

from fedsync.core.config import (
    ClientHyperparamOverrides,
    DistributedServerConfig,
    server_config,
)
from fedsync.core.models import AsyncTorchModel
from fedsync.core.schema import DownloadMsg, Events, ModelMsg, UploadMsg
from fedsync.core.serialization import SerializedVariable, serialize_vars
from fedsync.core.timing import timed
from fedsync.server.aggregator import Aggregator
from fedsync.server.models import DistributedServerModel, DistributedServerTorchModel

logger = logging.getLogger(__name__)

VersionCallback = Callable[[Optional[str], str], None]
UploadCallback = Callable[[UploadMsg], None]

# failures kept for wait_idle(); older ones are only logged
MAX_RETAINED_FAILURES = 16


class AbstractServer:
    """
    State shared by the aggregation servers: the canonical model, the
    buffered updates, observers and the current download message.

    `sio` is a socketio.AsyncServer (or anything with its `on`/`emit`
    interface). Create it with `always_connect=True` so the download emitted
    from the connect handler reaches the client.
    """
    def __init__(self, sio: Any, model: Union[DistributedServerModel, AsyncTorchModel],
                 config: Union[None, DistributedServerConfig, Mapping[str, Any]] = None):
        self.sio = sio
        self.config = server_config(config)
        if isinstance(model, DistributedServerModel):
            self.model = model
        else:
            model_dir = self.config.model_dir or str(Path.cwd() / "saved-models")
            self.model = DistributedServerTorchModel(model_dir, model, self.config.compile_args)

        self.client_hyperparams = self.config.client_hyperparams
        self.server_hyperparams = self.config.server_hyperparams
        self.verbose = self.config.verbose
        self.aggregator = Aggregator(self.server_hyperparams.aggregation)

        self.download_msg: Optional[DownloadMsg] = None
        self.num_clients = 0
        self.num_updates = 0
        self.updates: List[List[SerializedVariable]] = []
        self.updating = False
        self.version_callbacks: List[VersionCallback] = [self._log_version]
        self.upload_callbacks: List[UploadCallback] = []

        self._tasks: Set[asyncio.Task] = set()
        self._failures: Deque[BaseException] = deque(maxlen=MAX_RETAINED_FAILURES)

    def on_new_version(self, callback: VersionCallback) -> None:
        """Registers a callback invoked with (old_version, new_version) after every merge."""
        self.version_callbacks.append(callback)

    def on_upload(self, callback: UploadCallback) -> None:
        """Registers a callback invoked with every accepted upload message."""
        self.upload_callbacks.append(callback)

    async def setup(self) -> None:
        """Initializes the model, computes the first download and starts accepting clients."""
        with self.timed("setting up model"):
            await self.model.setup()

        self.download_msg = self.compute_download_msg()
        self.perform_callbacks()

        self.sio.on("connect", self._on_connect)
        self.sio.on("disconnect", self._on_disconnect)
        self.sio.on(Events.UPLOAD.value, self._on_upload)

    def compute_download_msg(self) -> DownloadMsg:
        return DownloadMsg(
            model=ModelMsg(
                version=self.model.version,
                vars=serialize_vars(self.model.get_vars()),
            ),
            hyperparams=ClientHyperparamOverrides(**self.client_hyperparams.model_dump()),
        )

    def perform_callbacks(self, old_version: Optional[str] = None) -> None:
        with self.timed("performing callbacks"):
            for callback in self.version_callbacks:
                callback(old_version, self.model.version)

    def notify_upload(self, msg: UploadMsg) -> None:
        with self.timed("upload callbacks"):
            for callback in self.upload_callbacks:
                callback(msg)

    async def wait_idle(self) -> None:
        """
        Waits for every scheduled upload handler to finish, then re-raises the
        oldest retained failure, if any. At most MAX_RETAINED_FAILURES are kept
        between calls.
        """
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._failures:
            failure = self._failures[0]
            self._failures.clear()
            raise failure

    async def _on_connect(self, sid: str, environ: Any, auth: Any = None) -> None:
        self.num_clients += 1
        self._log("connection: %d clients", self.num_clients)
        await self.client_connected(sid)

    async def _on_disconnect(self, sid: str, reason: Any = None) -> None:
        self.num_clients -= 1
        self._log("disconnection: %d clients", self.num_clients)
        await self.client_disconnected(sid)

    async def _on_upload(self, sid: str, data: Any) -> bool:
        # acknowledge receipt now; aggregation happens in its own task
        self._spawn(self._process_upload(sid, data))
        return True

    async def _process_upload(self, sid: str, data: Any) -> None:
        await self.handle_upload(sid, UploadMsg.model_validate(data))

    async def client_connected(self, sid: str) -> None:
        await self.sio.emit(Events.DOWNLOAD.value, self.download_msg.to_wire(), to=sid)

    async def client_disconnected(self, sid: str) -> None:
        pass

    async def handle_upload(self, sid: str, msg: UploadMsg) -> None:
        raise NotImplementedError

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("upload handler failed: %s", exc, exc_info=exc)
            self._failures.append(exc)

    def _log_version(self, old_version: Optional[str], new_version: str) -> None:
        self._log("updated model: %s -> %s", old_version, new_version)

    def _log(self, msg: str, *args: Any) -> None:
        logger.log(logging.INFO if self.verbose else logging.DEBUG, msg, *args)

    def timed(self, what: str):
        return timed(logger, logging.INFO if self.verbose else logging.DEBUG, what)
