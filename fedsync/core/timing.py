import logging
import time
from contextlib import contextmanager
from typing import Iterator


@contextmanager
def timed(logger: logging.Logger, level: int, what: str) -> Iterator[None]:
    """Logs how long the body took, e.g. `fit model took 12.3ms`."""
    start = time.perf_counter()
    yield
    logger.log(level, "%s took %.1fms", what, (time.perf_counter() - start) * 1000)
