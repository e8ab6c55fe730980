# util/timing.py
import time
from contextlib import contextmanager
from typing import Any, Iterator
import logging


@contextmanager
def timed(logger: logging.Logger, name: str, **kv: Any) -> Iterator[None]:
    """
    Usage:
      with timed(logger, "pdf.parse", pages=10):
          ...
    Emits one INFO on success: "<name>.done ms=<int> key=val ..."
    and one WARNING when the block raises: "<name>.error ms=<int> err=<Type> ..."
    """
    t0 = time.perf_counter()
    suffix = "".join(f" {k}={v}" for k, v in kv.items())
    try:
        yield
    except BaseException as exc:
        dt_ms = int((time.perf_counter() - t0) * 1000)
        logger.warning(
            "%s.error ms=%d err=%s%s", name, dt_ms, type(exc).__name__, suffix
        )
        raise
    dt_ms = int((time.perf_counter() - t0) * 1000)
    logger.info("%s.done ms=%d%s", name, dt_ms, suffix)
