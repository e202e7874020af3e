from __future__ import annotations

import logging
import os
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO

from shieldagent.core.plugins import runtime
from shieldagent.core.plugins.base import (
    Endpoint,
    EndpointDataError,
    Plugin,
    PluginFeatures,
    PluginInfo,
    report_keys,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class LocalStorePlugin(Plugin):
    """Store archives as files under `base_dir`.

    Restore keys look like `2024/05/01/20240501T101500-<hex>`; they are
    paths relative to `base_dir` and are rejected if they escape it.
    """

    info = PluginInfo(
        name="files",
        author="SHIELD",
        version="0.1.0",
        features=PluginFeatures(target="no", store="yes"),
        example='{"base_dir": "/var/backups/shield"}',
    )

    async def validate(self, endpoint: Endpoint, out: BinaryIO) -> None:
        report_keys(endpoint, ["base_dir"], out)
        base_dir = endpoint.string_value("base_dir")
        if os.path.exists(base_dir) and not os.path.isdir(base_dir):
            out.write(f"✗ base_dir   {base_dir} is not a directory\n".encode())
            raise EndpointDataError("base_dir", f"{base_dir} is not a directory")

    async def store(self, endpoint: Endpoint, inp: BinaryIO) -> str:
        base_dir = Path(endpoint.string_value("base_dir"))
        now = datetime.now(timezone.utc)
        key = f"{now:%Y/%m/%d}/{now:%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:12]}"
        path = self._path(base_dir, key)
        path.parent.mkdir(parents=True, exist_ok=True)

        partial = path.with_name(path.name + ".partial")
        written = 0
        try:
            with open(partial, "wb") as fh:
                while True:
                    chunk = inp.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    fh.write(chunk)
                    written += len(chunk)
            os.replace(partial, path)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        logger.info("files_store_done | key=%s bytes=%s", key, written)
        return key

    async def retrieve(self, endpoint: Endpoint, key: str, out: BinaryIO) -> None:
        path = self._path(Path(endpoint.string_value("base_dir")), key)
        if not path.is_file():
            raise FileNotFoundError(f"no archive stored under key {key}")
        with open(path, "rb") as fh:
            shutil.copyfileobj(fh, out, CHUNK_SIZE)
        logger.info("files_retrieve_done | key=%s", key)

    async def purge(self, endpoint: Endpoint, key: str) -> None:
        path = self._path(Path(endpoint.string_value("base_dir")), key)
        if not path.exists():
            logger.info("files_purge_missing | key=%s", key)
            return
        path.unlink()
        logger.info("files_purge_done | key=%s", key)

    @staticmethod
    def _path(base_dir: Path, key: str) -> Path:
        root = base_dir.resolve()
        path = (root / key).resolve()
        if path == root or root not in path.parents:
            raise ValueError(f"restore key {key!r} points outside of base_dir")
        return path


def main() -> None:
    runtime.main(LocalStorePlugin())


if __name__ == "__main__":
    main()
