"""File accessor for the read-file and file-output nodes, confined to a root directory."""

from __future__ import annotations

import asyncio
from pathlib import Path

from ..errors import ConfigurationError

WRITE_MODES = {"overwrite": "wb", "append": "ab", "create": "xb"}


class LocalFileAccessor:
    def __init__(self, root: str):
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        candidate = (self.root / path).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise ConfigurationError(f"Path '{path}' is outside the files root", field="path")
        return candidate

    async def read_bytes(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        return await asyncio.to_thread(target.read_bytes)

    async def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    async def size(self, path: str) -> int:
        target = self._resolve(path)
        return target.stat().st_size if target.is_file() else 0

    async def write_bytes(self, path: str, data: bytes, mode: str = "overwrite", create_dirs: bool = True) -> int:
        """Write ``data`` under the root and return the resulting file size.

        ``create`` refuses to replace an existing file (FileExistsError).
        """
        if mode not in WRITE_MODES:
            raise ConfigurationError(f"Unknown write mode '{mode}'", field="writeMode")
        target = self._resolve(path)
        if target == self.root or target.is_dir():
            raise ConfigurationError(f"Path '{path}' is a directory", field="path")
        if not target.parent.is_dir():
            if not create_dirs:
                raise FileNotFoundError(f"Directory not found: {target.parent.relative_to(self.root)}")
            target.parent.mkdir(parents=True, exist_ok=True)

        def _write() -> int:
            with open(target, WRITE_MODES[mode]) as handle:
                handle.write(data)
            return target.stat().st_size

        return await asyncio.to_thread(_write)
