import asyncio
import logging
from typing import Any, Dict, Mapping, Union

from fedsync.core.config import DistributedServerConfig
from fedsync.core.dataset import DistributedDataset, to_data_msg
from fedsync.core.schema import Events, UploadMsg
from fedsync.server.abstract_server import AbstractServer

logger = logging.getLogger(__name__)


class AsynchronousSGDServer(AbstractServer):
    """
    Hands out dataset batches one client at a time and applies each returned
    gradient as soon as it arrives.

    A client receives the model plus a batch on connect, and a fresh model
    plus the next batch after each upload. Once the dataset is exhausted a
    connecting client gets the model only, and uploads get no reply beyond
    the acknowledgement.
    Gradients computed against a superseded version are dropped; their batch
    stays outstanding and is handed out again later in the epoch.
    """
    def __init__(self, sio: Any, model, dataset: DistributedDataset,
                 config: Union[None, DistributedServerConfig, Mapping[str, Any]] = None):
        super().__init__(sio, model, config)
        self.dataset = dataset
        self.reclaim_on_disconnect = self.config.reclaim_on_disconnect
        self.assignments: Dict[str, int] = {}
        self._merge_lock = asyncio.Lock()

    async def client_connected(self, sid: str) -> None:
        if not await self.send_next_batch(sid):
            # nothing left to train on, but the client still needs the model
            await self.sio.emit(Events.DOWNLOAD.value, self.download_msg.to_wire(), to=sid)

    async def client_disconnected(self, sid: str) -> None:
        batch = self.assignments.pop(sid, None)
        if batch is not None and self.reclaim_on_disconnect:
            if self.dataset.reclaim(batch):
                self._log("reclaimed batch %d from %s", batch, sid)

    async def send_next_batch(self, sid: str) -> bool:
        """
        Sends the current model and the next batch to one client.

        Returns:
            False if the dataset is exhausted (nothing is sent).
        """
        item = self.dataset.next()
        if item.done:
            self.assignments.pop(sid, None)
            self._log("dataset exhausted, no batch for %s", sid)
            return False
        self.assignments[sid] = item.value.batch
        msg = self.download_msg.model_copy(update={"data": to_data_msg(item.value)})
        await self.sio.emit(Events.DOWNLOAD.value, msg.to_wire(), to=sid)
        return True

    async def handle_upload(self, sid: str, msg: UploadMsg) -> None:
        payload = msg.gradients
        if payload is None or msg.batch is None:
            logger.warning("upload from %s is missing gradients or a batch index", msg.client_id)
            return

        async with self._merge_lock:
            try:
                if payload.version != self.model.version:
                    self._log("discarding gradients from %s against version %s", msg.client_id, payload.version)
                elif not self.dataset.is_outstanding(msg.batch, msg.epoch):
                    self._log("batch %d from %s is already complete", msg.batch, msg.client_id)
                else:
                    self.notify_upload(msg)
                    await self.update_model(msg)
            finally:
                # a failed step still leaves the client with work
                self.assignments.pop(sid, None)
                await self.send_next_batch(sid)

    async def update_model(self, msg: UploadMsg) -> None:
        self.updating = True
        old_version = self.model.version
        try:
            with self.timed(f"applying gradients for batch {msg.batch}"):
                grads = self.aggregator.merge([msg.gradients.vars])
                self.model.update(grads)
            await self.model.save()
            self.dataset.complete_batch(msg.batch, msg.epoch)
            self.download_msg = self.compute_download_msg()
        finally:
            self.updating = False
        self.perform_callbacks(old_version)
