"""JSON snapshot persistence with write-then-replace semantics."""
import json
import logging
import uuid
from pathlib import Path
from typing import Any, Optional

import aiofiles
import aiofiles.os

from ..graph.exceptions import SnapshotError


logger = logging.getLogger(__name__)


async def write_snapshot(path: Path, payload: Any) -> None:
    """Atomically overwrite a snapshot file.

    The payload is serialized before any I/O so the written state reflects
    the caller's view at call time. Readers see either the old or the new
    file, never a partial one.

    Raises:
        SnapshotError: If the file cannot be written or replaced
    """
    path = Path(path)
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    temp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")

    try:
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        async with aiofiles.open(temp_path, mode="w", encoding="utf-8") as f:
            await f.write(body)
        await aiofiles.os.replace(temp_path, path)
    except OSError as exc:
        await _remove_file_best_effort(temp_path)
        raise SnapshotError(str(path), str(exc)) from exc

    logger.debug("Wrote snapshot %s (%s bytes)", path, len(body))


async def read_snapshot(path: Path) -> Optional[Any]:
    """Read a snapshot file, returning None when missing or unreadable."""
    path = Path(path)
    try:
        async with aiofiles.open(path, mode="r", encoding="utf-8") as f:
            body = await f.read()
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning("Failed to read snapshot %s: %s", path, exc)
        return None

    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        logger.warning("Corrupt snapshot %s: %s", path, exc)
        return None


async def _remove_file_best_effort(path: Path) -> None:
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        return
    except OSError as exc:
        logger.error("Failed to remove temp snapshot %s: %s", path, exc)
