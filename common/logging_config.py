# common/logging_config.py
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Union

LOGGER_NAME = "sales-ledger"

_partition: ContextVar[str] = ContextVar("partition", default="-")


def _mask_partition(key: str) -> str:
    key = (key or "").strip()
    if len(key) <= 4:
        return key or "-"
    return "*" * 3 + key[-4:]


@contextmanager
def partition_context(partition_key: str) -> Iterator[None]:
    """Stamp every record logged inside the block with the (masked) sender partition."""
    token = _partition.set(_mask_partition(partition_key))
    try:
        yield
    finally:
        _partition.reset(token)


class PartitionFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.partition = _partition.get()  # type: ignore[attr-defined]
        return True


def configure_logging(level: Union[int, str] = logging.INFO) -> logging.Logger:
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    if not logger.handlers:
        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.addFilter(PartitionFilter())
        fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s [%(partition)s]: %(message)s")
        ch.setFormatter(fmt)
        logger.addHandler(ch)
    return logger
