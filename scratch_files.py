"""Per-request scratch files.

Every request downloads its source image into a file of its own. Names
come from ``uuid4`` and the file is created with exclusive-create mode, so
concurrent requests never share a path and no locking is needed.
"""

import logging
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union

from service_config import LOG_NAME

logger = logging.getLogger(f"{LOG_NAME}.scratch")

SCRATCH_PREFIX = "temp_"


def acquire(directory: Union[str, Path], suffix: str = "") -> Path:
    scratch_dir = Path(directory)
    scratch_dir.mkdir(parents=True, exist_ok=True)
    path = scratch_dir / f"{SCRATCH_PREFIX}{uuid.uuid4().hex}{suffix}"
    with open(path, "xb"):
        pass
    logger.debug("acquired scratch file %s", path)
    return path


def release(path: Path) -> None:
    """Remove a scratch file; failures are logged, never raised."""
    try:
        path.unlink()
    except OSError as exc:
        logger.warning("Failed to remove scratch file %s: %s", path, exc)
        return
    logger.debug("released scratch file %s", path)


@contextmanager
def scratch_file(directory: Union[str, Path], suffix: str = "") -> Iterator[Path]:
    path = acquire(directory, suffix)
    try:
        yield path
    finally:
        release(path)
