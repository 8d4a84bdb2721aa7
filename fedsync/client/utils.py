import logging
import os
import uuid
from pathlib import Path
from typing import List, Optional, Sequence, Union

import torch

from fedsync.core.errors import ShapeMismatch

logger = logging.getLogger(__name__)

CLIENT_ID_ENV = "FEDSYNC_CLIENT_ID_FILE"


def default_client_id_path() -> Path:
    env_path = os.environ.get(CLIENT_ID_ENV)
    if env_path:
        return Path(env_path)
    return Path.home() / ".fedsync" / "client_id"


def load_client_id(path: Optional[Union[str, Path]] = None) -> str:
    """
    Loads the persisted client ID, generating and saving a new one if missing.
    A failed save only costs stability across restarts, so it is logged and ignored.
    """
    id_file = Path(path) if path is not None else default_client_id_path()

    if id_file.exists():
        try:
            client_id = id_file.read_text().strip()
            if client_id:
                return client_id
        except OSError as e:
            logger.warning("Failed to read client id from %s: %s", id_file, e)

    client_id = str(uuid.uuid4())
    try:
        id_file.parent.mkdir(parents=True, exist_ok=True)
        id_file.write_text(client_id)
    except OSError as e:
        logger.warning("Failed to save client id to %s: %s", id_file, e)
    return client_id


def empty_rows(unit_shape: Sequence[int], dtype: torch.dtype = torch.float32) -> torch.Tensor:
    return torch.empty([0] + list(unit_shape), dtype=dtype)


def add_rows(existing: torch.Tensor, new_rows: torch.Tensor, unit_shape: Sequence[int]) -> torch.Tensor:
    """
    Appends examples to a buffer. `new_rows` is either a single example of
    `unit_shape` or a batch of them.
    """
    unit: List[int] = list(unit_shape)
    if list(new_rows.shape) == unit:
        new_rows = new_rows.unsqueeze(0)
    elif list(new_rows.shape[1:]) != unit:
        raise ShapeMismatch(
            f"examples of shape {list(new_rows.shape)} do not match unit shape {unit}",
            expected=unit,
            actual=list(new_rows.shape),
        )
    if existing.shape[0] == 0:
        return new_rows.detach().clone()
    return torch.cat([existing, new_rows.detach().to(existing.dtype)])
