from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import AsyncIterator, BinaryIO, Optional

import httpx

from shieldagent.core.plugins import runtime
from shieldagent.core.plugins.base import (
    Endpoint,
    Plugin,
    PluginFeatures,
    PluginInfo,
    report_keys,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
DEFAULT_DIRECTORY = "shield"


class WebDAVPlugin(Plugin):
    """WebDAV store using httpx.

    - store: creates `<directory>/<YYYY>/<MM>/<DD>` collections with MKCOL
      and PUTs the archive as a streamed body.
    - retrieve: GETs the object and streams it to stdout.
    - purge: DELETE; a missing object counts as purged.

    Restore keys are object paths relative to `url`.
    """

    info = PluginInfo(
        name="webdav",
        author="SHIELD",
        version="0.1.0",
        features=PluginFeatures(target="no", store="yes"),
        example='{"url": "https://dav.example.com/remote.php/dav/files/backup", "username": "shield", "password": "secret"}',
        defaults='{"directory": "shield"}',
    )

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        super().__init__()
        self._transport = transport

    async def validate(self, endpoint: Endpoint, out: BinaryIO) -> None:
        report_keys(endpoint, ["url"], out)
        directory = endpoint.string_value_default("directory", DEFAULT_DIRECTORY)
        out.write(f"✓ directory   {directory}\n".encode())
        if endpoint.get("username") is not None:
            report_keys(endpoint, ["username", "password"], out)

    async def store(self, endpoint: Endpoint, inp: BinaryIO) -> str:
        directory = endpoint.string_value_default("directory", DEFAULT_DIRECTORY).strip("/")
        now = datetime.now(timezone.utc)
        folder = f"{directory}/{now:%Y/%m/%d}"
        key = f"{folder}/{now:%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:12]}"

        async with self._client(endpoint) as client:
            await self._make_collections(client, folder)
            logger.info("webdav_store_start | key=%s", key)
            resp = await client.put(key, content=self._iter_chunks(inp))
            if resp.status_code // 100 != 2:
                raise RuntimeError(f"webdav PUT {key} failed: {resp.status_code} {resp.reason_phrase}")
        logger.info("webdav_store_done | key=%s", key)
        return key

    async def retrieve(self, endpoint: Endpoint, key: str, out: BinaryIO) -> None:
        async with self._client(endpoint) as client:
            async with client.stream("GET", key) as resp:
                if resp.status_code == 404:
                    raise FileNotFoundError(f"no archive stored under key {key}")
                resp.raise_for_status()
                async for chunk in resp.aiter_bytes():
                    out.write(chunk)
        logger.info("webdav_retrieve_done | key=%s", key)

    async def purge(self, endpoint: Endpoint, key: str) -> None:
        async with self._client(endpoint) as client:
            resp = await client.delete(key)
        if resp.status_code == 404:
            logger.info("webdav_purge_missing | key=%s", key)
            return
        resp.raise_for_status()
        logger.info("webdav_purge_done | key=%s", key)

    def _client(self, endpoint: Endpoint) -> httpx.AsyncClient:
        url = endpoint.string_value("url").rstrip("/") + "/"
        auth = None
        if endpoint.get("username") is not None:
            auth = httpx.BasicAuth(endpoint.string_value("username"), endpoint.string_value("password"))
        return httpx.AsyncClient(
            base_url=url,
            auth=auth,
            transport=self._transport,
            verify=not endpoint.boolean_value_default("skip_ssl_validation", False),
            timeout=httpx.Timeout(30.0, connect=10.0),
        )

    async def _make_collections(self, client: httpx.AsyncClient, folder: str) -> None:
        path = ""
        for segment in folder.split("/"):
            path = f"{path}{segment}/"
            resp = await client.request("MKCOL", path)
            # 405: collection already exists
            if resp.status_code not in (201, 405) and resp.status_code // 100 != 2:
                raise RuntimeError(f"webdav MKCOL {path} failed: {resp.status_code} {resp.reason_phrase}")

    async def _iter_chunks(self, inp: BinaryIO) -> AsyncIterator[bytes]:
        while True:
            chunk = inp.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk


def main() -> None:
    runtime.main(WebDAVPlugin())


if __name__ == "__main__":
    main()
