import asyncio
import logging
from typing import Optional

from fedsync.client.abstract_client import AbstractClient
from fedsync.core.schema import DownloadMsg, ModelMsg, UploadMsg
from fedsync.core.serialization import deserialize_var, serialize_vars

logger = logging.getLogger(__name__)


class AsynchronousSGDClient(AbstractClient):
    """
    Trains on batches handed out by an AsynchronousSGDServer.

    Each download may carry a batch; the client computes gradients on it
    against the downloaded weights (no local step) and uploads them. The
    server answers with the next batch until its dataset is exhausted.
    """
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        # created in setup() so it binds to the loop that runs the session
        self._batch_ready: Optional[asyncio.Event] = None

    async def setup(self) -> None:
        self._batch_ready = asyncio.Event()
        await super().setup()

    def on_synced(self, msg: DownloadMsg) -> None:
        if msg.data is not None and self._batch_ready is not None:
            self._batch_ready.set()

    def has_batch(self) -> bool:
        return self.msg is not None and self.msg.data is not None

    async def wait_for_batch(self, timeout: Optional[float] = None) -> bool:
        if self.has_batch() or self._batch_ready is None:
            return self.has_batch()
        try:
            await asyncio.wait_for(self._batch_ready.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return self.has_batch()

    async def distributed_update(self) -> bool:
        """
        Computes gradients on the pending batch and uploads them.

        Returns:
            False if there was no pending batch.
        """
        msg = self.msg
        if msg is None or msg.data is None:
            return False

        data = msg.data
        # consume the batch before awaiting so the server's reply is not mistaken for it
        self.msg = msg.model_copy(update={"data": None})
        if self._batch_ready is not None:
            self._batch_ready.clear()

        x = deserialize_var(data.x)
        y = deserialize_var(data.y)

        metrics = None
        if self.send_metrics:
            metrics = self.model.evaluate(x, y)

        with self.timed(f"Compute gradients for batch {data.batch}"):
            try:
                grads = self.model.compute_gradients(x, y)
            except Exception:
                logger.exception("Local training failed on batch %d", data.batch)
                raise

        upload_msg = UploadMsg(
            client_id=self.client_id,
            gradients=ModelMsg(version=msg.model.version, vars=serialize_vars(grads)),
            batch=data.batch,
            epoch=data.epoch,
            metrics=metrics,
        )
        with self.timed("Upload gradients to server"):
            await self.upload_vars(upload_msg)
        self._notify_upload(upload_msg)
        version = msg.model.version
        self.version_update_counts[version] = self.version_update_counts.get(version, 0) + 1
        return True

    async def run(self, idle_timeout: Optional[float] = None) -> int:
        """
        Processes batches until none arrives within `idle_timeout` seconds.

        Returns:
            The number of batches uploaded.
        """
        count = 0
        while await self.wait_for_batch(idle_timeout):
            if await self.distributed_update():
                count += 1
        return count
