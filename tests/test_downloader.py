"""Tests for streaming artifact downloads against a real HTTP server."""

import pytest

from market_installer.artifact.downloader import Downloader, is_retryable_status
from market_installer.exceptions import ArtifactTooLargeError, NetworkFailureError

MIB = 1024 * 1024


@pytest.fixture
async def downloader():
    instance = Downloader(max_connections=2, timeout_seconds=10)
    try:
        yield instance
    finally:
        await instance.close()


class TestFetch:
    """Happy path and size ceilings."""

    async def test_fetch_writes_whole_body(self, artifact_server, downloader, tmp_path):
        body = b"x" * (3 * MIB + 17)
        url = artifact_server.add("pkg.zip", body)
        destination = tmp_path / "artifact.bin"
        seen = []

        written = await downloader.fetch(
            url, str(destination), 10 * MIB, progress=lambda done, total: seen.append(done)
        )

        assert written == len(body)
        assert destination.read_bytes() == body
        assert seen[-1] == len(body)

    async def test_declared_length_over_ceiling_aborts(
        self, artifact_server, downloader, tmp_path
    ):
        url = artifact_server.add("big.zip", b"x" * (2 * MIB))
        destination = tmp_path / "artifact.bin"

        with pytest.raises(ArtifactTooLargeError, match="declares"):
            await downloader.fetch(url, str(destination), 1 * MIB)
        assert not destination.exists()

    async def test_undeclared_body_over_ceiling_aborts(
        self, artifact_server, downloader, tmp_path
    ):
        url = artifact_server.add("stream.zip", b"x" * (2 * MIB), chunked=True)
        destination = tmp_path / "artifact.bin"

        with pytest.raises(ArtifactTooLargeError, match="while downloading"):
            await downloader.fetch(url, str(destination), 1 * MIB)
        assert not destination.exists()

    async def test_body_exactly_at_ceiling_is_accepted(
        self, artifact_server, downloader, tmp_path
    ):
        url = artifact_server.add("exact.zip", b"y" * MIB, chunked=True)
        destination = tmp_path / "artifact.bin"

        assert await downloader.fetch(url, str(destination), MIB) == MIB


class TestFailures:
    """HTTP and transport errors."""

    @pytest.mark.parametrize("status", [500, 503, 408, 429])
    async def test_transient_status_is_retryable(
        self, artifact_server, downloader, tmp_path, status
    ):
        artifact_server.add("pkg.zip", b"data")
        artifact_server.fail("pkg.zip", status)

        with pytest.raises(NetworkFailureError) as info:
            await downloader.fetch(
                artifact_server.url("pkg.zip"), str(tmp_path / "a.bin"), MIB
            )
        assert info.value.retryable

    async def test_missing_artifact_is_permanent(self, artifact_server, downloader, tmp_path):
        with pytest.raises(NetworkFailureError) as info:
            await downloader.fetch(
                artifact_server.url("missing.zip"), str(tmp_path / "a.bin"), MIB
            )
        assert not info.value.retryable

    async def test_connection_refused_is_retryable(self, downloader, tmp_path):
        with pytest.raises(NetworkFailureError) as info:
            await downloader.fetch(
                "http://127.0.0.1:9/pkg.zip", str(tmp_path / "a.bin"), MIB
            )
        assert info.value.retryable
        assert not (tmp_path / "a.bin").exists()

    def test_status_classification(self):
        assert is_retryable_status(502)
        assert is_retryable_status(429)
        assert not is_retryable_status(403)
        assert not is_retryable_status(404)
