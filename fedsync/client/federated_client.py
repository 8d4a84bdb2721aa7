import logging
from typing import List, Optional

import torch

from fedsync.client.abstract_client import AbstractClient
from fedsync.client.utils import add_rows, empty_rows
from fedsync.core.schema import ModelMsg, UploadMsg
from fedsync.core.serialization import serialize_vars

logger = logging.getLogger(__name__)


class FederatedClient(AbstractClient):
    """
    Federated averaging client.

    Example usage:

        client = FederatedClient("http://server:8080", model)
        await client.setup()
        await client.distributed_update(x, y)

    Server-to-client syncs happen whenever the server broadcasts weights.
    Client-to-server uploads happen once enough examples have been passed to
    `distributed_update`.
    """
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.x: Optional[torch.Tensor] = None
        self.y: Optional[torch.Tensor] = None

    async def setup(self) -> None:
        await super().setup()
        self.x = empty_rows(self.model.input_shape)
        self.y = empty_rows(self.model.output_shape)

    async def distributed_update(self, x: torch.Tensor, y: torch.Tensor) -> None:
        """
        Buffers (x, y); for every `examples_per_update` buffered examples,
        trains on them, uploads the resulting weights, then reverts to the
        synced weights so each upload is relative to the same model.

        Raises:
            UploadTimeout: if the server does not acknowledge an upload. The
                examples of that upload stay buffered.
        """
        self.x = add_rows(self.x, x, self.model.input_shape)
        self.y = add_rows(self.y, y, self.model.output_shape)

        examples_per_update = self.hyperparam("examples_per_update")
        while self.x.shape[0] >= examples_per_update:
            # the version may change during training/serialization
            model_version = self.model_version()

            x_train = self.x[:examples_per_update]
            y_train = self.y[:examples_per_update]

            metrics = None
            if self.send_metrics:
                metrics = self.model.evaluate(x_train, y_train)

            with self.timed("Fit model"):
                try:
                    grads = self.model.fit(
                        x_train, y_train,
                        epochs=self.hyperparam("epochs"),
                        batch_size=self.hyperparam("batch_size"),
                        learning_rate=self.hyperparam("learning_rate"),
                    )
                    if grads is not None:
                        self.model.update(grads)
                except Exception:
                    logger.exception("Local training failed for client %s", self.client_id)
                    raise

            new_vars = serialize_vars(self._noisy_vars(self.hyperparam("weight_noise_stddev")))

            self.set_vars(self.msg.model.vars)

            upload_msg = UploadMsg(
                client_id=self.client_id,
                model=ModelMsg(version=model_version, vars=new_vars),
                metrics=metrics,
            )
            with self.timed("Upload weights to server"):
                await self.upload_vars(upload_msg)
            self._notify_upload(upload_msg)
            self.version_update_counts[model_version] = self.version_update_counts.get(model_version, 0) + 1

            self.x = self.x[examples_per_update:]
            self.y = self.y[examples_per_update:]

    def _noisy_vars(self, stddev: float) -> List[torch.Tensor]:
        variables = self.model.get_vars()
        if not stddev:
            return variables
        return [v + torch.randn_like(v) * stddev if v.is_floating_point() else v for v in variables]

    def num_examples(self) -> int:
        return 0 if self.x is None else self.x.shape[0]

    def num_examples_per_update(self) -> int:
        return self.hyperparam("examples_per_update")

    def num_examples_remaining(self) -> int:
        return self.num_examples_per_update() - self.num_examples()
