from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path

from couchstream.core.models import Checkpoint, SequenceToken
from couchstream.errors import CheckpointStoreError


class FileCheckpointStore:
    """Checkpoints kept in a single JSON file.

    Every put rewrites the whole file through a temp file, fsync and
    `os.replace`, so a crash leaves either the previous or the new content.

    Args:
        path: JSON file holding ``{source_key: {token, updated_at, ...}}``
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    async def get(self, source_key: str) -> SequenceToken | None:
        entry = (await asyncio.to_thread(self._read_all)).get(source_key)
        return entry["token"] if entry else None

    async def put(self, source_key: str, token: SequenceToken) -> None:
        async with self._lock:
            try:
                await asyncio.to_thread(self._update, source_key, token)
            except OSError as e:
                raise CheckpointStoreError(f"cannot write {self.path}: {e}") from e

    async def aclose(self) -> None:
        return None

    def _read_all(self) -> dict[str, dict]:
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            raise CheckpointStoreError(f"unreadable checkpoint file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise CheckpointStoreError(f"checkpoint file {self.path} is not a JSON object")
        return data

    def _update(self, source_key: str, token: SequenceToken) -> None:
        data = self._read_all()
        data[source_key] = Checkpoint(source_key=source_key, token=token).to_dict()
        self._write_atomic(self.path, json.dumps(data, indent=2, sort_keys=True))

    @staticmethod
    def _write_atomic(path: Path, text: str) -> None:
        """Replace `path` with `text` durably."""
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        # persist the rename itself
        if hasattr(os, "O_DIRECTORY"):
            dir_fd = os.open(path.parent, os.O_DIRECTORY)
            try:
                os.fsync(dir_fd)
            finally:
                os.close(dir_fd)
