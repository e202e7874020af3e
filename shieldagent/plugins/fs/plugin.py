from __future__ import annotations

import logging
import os
import tarfile
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


class FilesystemPlugin(Plugin):
    """Local directory target.

    - backup: streams `base_dir` as a tar archive (gzip unless `compress`
      is false) to stdout; nothing is staged on disk.
    - restore: extracts a tar stream from stdin into `base_dir`. Absolute
      paths, `..` components and special files are refused by the "data"
      extraction filter.
    """

    info = PluginInfo(
        name="fs",
        author="SHIELD",
        version="0.1.0",
        features=PluginFeatures(target="yes", store="no"),
        example='{"base_dir": "/srv/data"}',
        defaults='{"compress": true}',
    )

    async def validate(self, endpoint: Endpoint, out: BinaryIO) -> None:
        report_keys(endpoint, ["base_dir"], out)
        base_dir = endpoint.string_value("base_dir")
        if not os.path.isdir(base_dir):
            out.write(f"✗ base_dir   {base_dir} is not a directory\n".encode())
            raise EndpointDataError("base_dir", f"{base_dir} is not a directory")
        compress = endpoint.boolean_value_default("compress", True)
        out.write(f"✓ compress   {'yes' if compress else 'no'}\n".encode())

    async def backup(self, endpoint: Endpoint, out: BinaryIO) -> None:
        base_dir = endpoint.string_value("base_dir")
        if not os.path.isdir(base_dir):
            raise FileNotFoundError(f"base_dir {base_dir} does not exist")
        mode = "w|gz" if endpoint.boolean_value_default("compress", True) else "w|"
        logger.info("fs_backup_start | base_dir=%s mode=%s", base_dir, mode)
        with tarfile.open(fileobj=out, mode=mode) as tar:
            for entry in sorted(os.listdir(base_dir)):
                tar.add(os.path.join(base_dir, entry), arcname=entry)
        logger.info("fs_backup_done | base_dir=%s", base_dir)

    async def restore(self, endpoint: Endpoint, inp: BinaryIO) -> None:
        base_dir = endpoint.string_value("base_dir")
        os.makedirs(base_dir, exist_ok=True)
        logger.info("fs_restore_start | base_dir=%s", base_dir)
        with tarfile.open(fileobj=inp, mode="r|*") as tar:
            tar.extractall(path=base_dir, filter="data")
        logger.info("fs_restore_done | base_dir=%s", base_dir)


def main() -> None:
    runtime.main(FilesystemPlugin())


if __name__ == "__main__":
    main()
