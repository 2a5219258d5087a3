"""
Shared test fixtures for market-installer tests.

This module provides:
- A small, fast installer configuration rooted in a temporary directory
- Package archive builders (zip and tar)
- A real HTTP artifact server built on aiohttp's TestServer
"""

import asyncio
import gzip
import io
import json
import random
import struct
import tarfile
import zipfile
from collections import defaultdict

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from market_installer.models.config import MIB, InstallerConfig

# =============================================================================
# Package Builders
# =============================================================================


def make_manifest(app_id: str = "notes", version: str = "1.0.0", **overrides) -> dict:
    manifest = {
        "id": app_id,
        "name": app_id.capitalize(),
        "version": version,
        "description": f"The {app_id} application",
        "author": "Marketplace Tests",
        "license": "MIT",
        "main": "index.html",
        "type": "web",
        "permissions": [],
    }
    manifest.update(overrides)
    return manifest


def build_zip(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_STORED) as archive:
        for name, data in files.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def build_tar(files: dict[str, bytes], mode: str = "w:gz") -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode=mode) as archive:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def build_package(
    app_id: str = "notes",
    version: str = "1.0.0",
    payload_bytes: int = 0,
    manifest: dict | None = None,
    extra: dict[str, bytes] | None = None,
) -> bytes:
    """A zip package with a manifest, an index page and optional filler."""
    files = {
        "manifest.json": json.dumps(manifest or make_manifest(app_id, version)).encode(),
        "index.html": f"<h1>{app_id} {version}</h1>".encode(),
    }
    if payload_bytes:
        files["assets/payload.bin"] = random.Random(0).randbytes(payload_bytes)
    files.update(extra or {})
    return build_zip(files)


# A deflate block header with BFINAL set and the reserved block type 0b11.
RESERVED_DEFLATE_BLOCK = 0x07


def build_damaged_tar_gz(files: dict[str, bytes], intact_bytes: int = 1024) -> bytes:
    """
    A gzip tar whose first ``intact_bytes`` decompress cleanly and whose
    remainder sits in a second gzip member with an undecodable deflate stream.
    """
    body = build_tar(files, mode="w")
    tail = bytearray(gzip.compress(body[intact_bytes:]))
    tail[10] = RESERVED_DEFLATE_BLOCK
    return gzip.compress(body[:intact_bytes]) + bytes(tail)


def build_damaged_deflate_zip(name: str, data: bytes) -> bytes:
    """A deflated single-entry zip whose compressed data cannot be decoded."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(name, data)
    body = bytearray(buffer.getvalue())
    name_length, extra_length = struct.unpack("<HH", body[26:30])
    body[30 + name_length + extra_length] = RESERVED_DEFLATE_BLOCK
    return bytes(body)


# =============================================================================
# Artifact Server
# =============================================================================


class ArtifactServer:
    """Serves package bytes by name, with scriptable failures."""

    CHUNK = 64 * 1024

    def __init__(self):
        self.artifacts: dict[str, bytes] = {}
        self.failures: dict[str, list[int]] = {}
        self.hits: dict[str, int] = defaultdict(int)
        self.chunked: set[str] = set()
        self.chunk_delay = 0.0
        app = web.Application()
        app.router.add_get("/{name}", self._handle)
        self.server = TestServer(app)

    def add(self, name: str, body: bytes, chunked: bool = False) -> str:
        self.artifacts[name] = body
        if chunked:
            self.chunked.add(name)
        return self.url(name)

    def fail(self, name: str, *statuses: int) -> None:
        self.failures[name] = list(statuses)

    def url(self, name: str) -> str:
        return str(self.server.make_url(f"/{name}"))

    async def _handle(self, request: web.Request) -> web.StreamResponse:
        name = request.match_info["name"]
        self.hits[name] += 1
        pending = self.failures.get(name)
        if pending:
            return web.Response(status=pending.pop(0))
        body = self.artifacts.get(name)
        if body is None:
            return web.Response(status=404)
        if name not in self.chunked and not self.chunk_delay:
            return web.Response(body=body, content_type="application/zip")

        response = web.StreamResponse()
        response.enable_chunked_encoding()
        await response.prepare(request)
        for start in range(0, len(body), self.CHUNK):
            await response.write(body[start : start + self.CHUNK])
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
        await response.write_eof()
        return response


@pytest.fixture
async def artifact_server():
    server = ArtifactServer()
    await server.server.start_server()
    try:
        yield server
    finally:
        await server.server.close()


# =============================================================================
# Configuration
# =============================================================================


@pytest.fixture
def config(tmp_path) -> InstallerConfig:
    return InstallerConfig(
        marketplace_root=tmp_path / "marketplace",
        max_artifact_bytes=10 * MIB,
        max_unpacked_bytes=20 * MIB,
        lock_lease_seconds=5.0,
        lock_timeout_seconds=2.0,
        retry_max_attempts=3,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        staging_grace_seconds=0.0,
        network_timeout_seconds=30.0,
    )
