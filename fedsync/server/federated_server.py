import logging
from typing import List

from fedsync.core.schema import Events, UploadMsg
from fedsync.server.abstract_server import AbstractServer

logger = logging.getLogger(__name__)

WEIGHTS = "weights"
GRADIENTS = "gradients"


class FederatedServer(AbstractServer):
    """
    Aggregates client updates and publishes a new model version to every
    client once `min_updates_per_version` updates have been accepted.

    Example usage:

        sio = create_socket_server()
        server = FederatedServer(sio, model, {"serverHyperparams": {"minUpdatesPerVersion": 10}})
        await server.setup()

    Uploads carrying weights (`model`) replace the weights with their
    aggregate; uploads carrying `gradients` apply the aggregate as one step.
    Only uploads computed against the current version are accepted, and
    nothing is accepted while a merge is running.
    """
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.update_kinds: List[str] = []

    def should_update(self) -> bool:
        return self.num_updates >= self.server_hyperparams.min_updates_per_version

    async def handle_upload(self, sid: str, msg: UploadMsg) -> None:
        payload = msg.payload
        if payload is None:
            logger.warning("upload from %s carries neither weights nor gradients", msg.client_id)
            return
        if payload.version != self.model.version or self.updating:
            self._log("discarding update from %s against version %s", msg.client_id, payload.version)
            return

        kind = WEIGHTS if msg.model is not None else GRADIENTS
        if self.update_kinds and self.update_kinds[0] != kind:
            logger.warning("discarding %s update from %s: buffer holds %s",
                           kind, msg.client_id, self.update_kinds[0])
            return

        self._log("new update from %s", msg.client_id)
        self.updates.append(payload.vars)
        self.update_kinds.append(kind)
        self.num_updates += 1
        self.notify_upload(msg)

        if self.should_update():
            await self.update_model()
            await self.sio.emit(Events.DOWNLOAD.value, self.download_msg.to_wire())

    async def update_model(self) -> None:
        """
        Merges the buffered updates into a new version.

        The buffer is cleared whether or not the merge succeeds, so a failed
        merge (e.g. UnsupportedAggregation) does not wedge later ones.
        """
        self.updating = True
        old_version = self.model.version
        try:
            with self.timed("computing new weights"):
                new_vars = self.aggregator.merge(self.updates)
                if self.update_kinds[0] == GRADIENTS:
                    self.model.update(new_vars)
                else:
                    self.model.set_vars(new_vars)

            await self.model.save()
            self.download_msg = self.compute_download_msg()
        finally:
            self.updates = []
            self.update_kinds = []
            self.num_updates = 0
            self.updating = False
        self.perform_callbacks(old_version)
