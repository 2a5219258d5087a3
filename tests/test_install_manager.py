"""End-to-end tests for install, update and uninstall jobs."""

import asyncio
import hashlib
import json
import os
import socket
import uuid

import pytest
from conftest import build_damaged_tar_gz, build_package, make_manifest

from market_installer.core.install_manager import InstallManager
from market_installer.exceptions import ErrorKind, InvalidRequestError
from market_installer.models.config import MIB
from market_installer.models.job import JobKind, JobStatus, JobView
from market_installer.storage.job_store import JobStore
from market_installer.storage.lock_manager import LockState, lock_key

FULL_HISTORY = ["queued", "locking", "downloading", "staging", "committing", "succeeded"]
DEAD_PID = 4_999_999


@pytest.fixture
async def manager(config):
    instance = InstallManager(config)
    await instance.start(maintenance=False)
    try:
        yield instance
    finally:
        await instance.close()


async def run(manager: InstallManager, job_id: str, timeout: float = 10) -> JobView:
    return await manager.wait(job_id, timeout=timeout)


async def wait_for_status(manager, job_id, status, min_bytes=0, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        view = manager.poll(job_id)
        if view.status is status and view.bytes_downloaded >= min_bytes:
            return view
        await asyncio.sleep(0.005)
    raise AssertionError(f"Job {job_id} never reached {status.value}")


def assert_clean(manager: InstallManager, app_id: str = "notes"):
    """No lock held, no staging left, no hidden siblings in the registry."""
    assert manager.locks.state(lock_key(app_id)) is LockState.UNLOCKED
    assert manager.staging.entries() == []
    assert [p.name for p in manager.config.apps_dir.iterdir() if p.name.startswith(".")] == []


class TestInstall:
    """The install pipeline from request to registry entry."""

    async def test_install_succeeds(self, manager, artifact_server):
        body = build_package("notes", "1.0.0", payload_bytes=2 * MIB)
        url = artifact_server.add("notes.zip", body)
        digest = hashlib.sha256(body).hexdigest()

        job_id = await manager.start_install("notes", url, digest)
        view = await run(manager, job_id)

        assert view.status is JobStatus.SUCCEEDED
        assert list(view.history) == FULL_HISTORY
        assert view.installed_version == "1.0.0"
        assert view.bytes_downloaded == len(body)
        assert view.error is None

        app_dir = manager.config.apps_dir / "notes"
        assert (app_dir / "manifest.json").is_file()
        assert (app_dir / "assets" / "payload.bin").stat().st_size == 2 * MIB
        assert (app_dir / "metadata.json").is_file()

        entries = await manager.list_registry()
        assert [entry.to_listing()["app_id"] for entry in entries] == ["notes"]
        entry = await manager.get_entry("notes")
        assert entry.version == "1.0.0"
        assert entry.content_hash == digest
        assert_clean(manager)

    async def test_install_without_checksum(self, manager, artifact_server):
        url = artifact_server.add("notes.zip", build_package("notes"))

        view = await run(manager, await manager.start_install("notes", url))

        assert view.status is JobStatus.SUCCEEDED

    async def test_forced_cross_device_install(self, config, artifact_server):
        url = artifact_server.add("notes.zip", build_package("notes", payload_bytes=MIB))

        async with InstallManager(config, force_cross_device=True) as manager:
            view = await run(manager, await manager.start_install("notes", url))

            assert view.status is JobStatus.SUCCEEDED
            assert (config.apps_dir / "notes" / "assets" / "payload.bin").is_file()
            assert_clean(manager)

    async def test_already_installed(self, manager, artifact_server):
        url = artifact_server.add("notes.zip", build_package("notes"))
        await run(manager, await manager.start_install("notes", url))

        view = await run(manager, await manager.start_install("notes", url))

        assert view.status is JobStatus.FAILED
        assert view.error.kind is ErrorKind.ALREADY_INSTALLED
        assert artifact_server.hits["notes.zip"] == 1

    async def test_manifest_for_another_app_fails(self, manager, artifact_server):
        url = artifact_server.add("notes.zip", build_package("paint"))

        view = await run(manager, await manager.start_install("notes", url))

        assert view.error.kind is ErrorKind.INTEGRITY_FAILURE
        assert not (manager.config.apps_dir / "notes").exists()
        assert_clean(manager)

    async def test_executable_content_fails(self, manager, artifact_server):
        body = build_package("notes", extra={"bin/tool.exe": b"MZ"})
        url = artifact_server.add("notes.zip", body)

        view = await run(manager, await manager.start_install("notes", url))

        assert view.error.kind is ErrorKind.INTEGRITY_FAILURE
        assert "blocked file type" in view.error.message


class TestFailures:
    """Every failure ends in a terminal state with resources released."""

    async def test_checksum_mismatch(self, manager, artifact_server):
        url = artifact_server.add("notes.zip", build_package("notes"))

        view = await run(manager, await manager.start_install("notes", url, "0" * 64))

        assert view.status is JobStatus.FAILED
        assert view.error.kind is ErrorKind.INTEGRITY_FAILURE
        assert view.history[-2:] == ("staging", "failed")
        assert not (manager.config.apps_dir / "notes").exists()
        assert_clean(manager)

    async def test_artifact_too_large(self, config, artifact_server):
        small = config.model_copy(update={"max_artifact_bytes": MIB})
        url = artifact_server.add("notes.zip", build_package("notes", payload_bytes=2 * MIB))

        async with InstallManager(small) as manager:
            view = await run(manager, await manager.start_install("notes", url))

            assert view.error.kind is ErrorKind.TOO_LARGE
            assert artifact_server.hits["notes.zip"] == 1
            assert_clean(manager)

    async def test_transient_errors_are_retried(self, manager, artifact_server):
        url = artifact_server.add("notes.zip", build_package("notes"))
        artifact_server.fail("notes.zip", 503, 500)

        view = await run(manager, await manager.start_install("notes", url))

        assert view.status is JobStatus.SUCCEEDED
        assert artifact_server.hits["notes.zip"] == 3

    async def test_retries_exhausted(self, manager, artifact_server):
        url = artifact_server.add("notes.zip", build_package("notes"))
        artifact_server.fail("notes.zip", 503, 503, 503)

        view = await run(manager, await manager.start_install("notes", url))

        assert view.error.kind is ErrorKind.NETWORK_FAILURE
        assert artifact_server.hits["notes.zip"] == 3
        assert_clean(manager)

    async def test_missing_artifact_is_not_retried(self, manager, artifact_server):
        view = await run(
            manager,
            await manager.start_install("notes", artifact_server.url("missing.zip")),
        )

        assert view.error.kind is ErrorKind.NETWORK_FAILURE
        assert artifact_server.hits["missing.zip"] == 1

    async def test_conflict_at_promotion(self, manager, artifact_server):
        artifact_server.chunk_delay = 0.01
        url = artifact_server.add("notes.zip", build_package("notes", payload_bytes=MIB))

        job_id = await manager.start_install("notes", url)
        await wait_for_status(manager, job_id, JobStatus.DOWNLOADING)
        intruder = manager.config.apps_dir / "notes"
        intruder.mkdir()
        (intruder / "marker.txt").write_text("placed by hand")
        view = await run(manager, job_id)

        assert view.error.kind is ErrorKind.CONFLICT_EXISTS
        assert (intruder / "marker.txt").read_text() == "placed by hand"
        assert_clean(manager)

    async def test_not_a_package(self, manager, artifact_server):
        url = artifact_server.add("notes.zip", b"<html>not found</html>")

        view = await run(manager, await manager.start_install("notes", url))

        assert view.error.kind is ErrorKind.INTEGRITY_FAILURE

    async def test_undecodable_archive_is_integrity_failure(self, manager, artifact_server):
        files = {
            "manifest.json": json.dumps(make_manifest("notes")).encode(),
            "index.html": b"<p>notes</p>\n" * 500,
        }
        url = artifact_server.add("notes.tar.gz", build_damaged_tar_gz(files))

        view = await run(manager, await manager.start_install("notes", url))

        assert view.status is JobStatus.FAILED
        assert view.error.kind is ErrorKind.INTEGRITY_FAILURE
        assert not (manager.config.apps_dir / "notes").exists()
        assert_clean(manager)


class TestConcurrency:
    """One writer per application."""

    async def test_second_install_is_busy(self, config, artifact_server):
        impatient = config.model_copy(update={"lock_timeout_seconds": 0.0})
        artifact_server.chunk_delay = 0.01
        url = artifact_server.add("notes.zip", build_package("notes", payload_bytes=MIB))

        async with InstallManager(impatient) as manager:
            first = await manager.start_install("notes", url)
            await wait_for_status(manager, first, JobStatus.DOWNLOADING)
            second = await manager.start_install("notes", url)
            views = [await run(manager, first), await run(manager, second)]

            assert views[0].status is JobStatus.SUCCEEDED
            assert views[1].error.kind is ErrorKind.BUSY
            assert list(views[1].history) == ["queued", "locking", "failed"]
            assert_clean(manager)

    async def test_waiting_install_sees_result_of_first(self, manager, artifact_server):
        artifact_server.chunk_delay = 0.005
        url = artifact_server.add("notes.zip", build_package("notes", payload_bytes=MIB))

        first = await manager.start_install("notes", url)
        second = await manager.start_install("notes", url)
        views = await asyncio.gather(run(manager, first), run(manager, second))

        statuses = sorted(view.status.value for view in views)
        assert statuses == ["failed", "succeeded"]
        failed = next(view for view in views if view.status is JobStatus.FAILED)
        assert failed.error.kind is ErrorKind.ALREADY_INSTALLED

    async def test_different_apps_run_in_parallel(self, manager, artifact_server):
        notes = artifact_server.add("notes.zip", build_package("notes"))
        paint = artifact_server.add("paint.zip", build_package("paint"))

        views = await asyncio.gather(
            run(manager, await manager.start_install("notes", notes)),
            run(manager, await manager.start_install("paint", paint)),
        )

        assert all(view.status is JobStatus.SUCCEEDED for view in views)
        assert [entry.app_id for entry in await manager.list_registry()] == [
            "notes",
            "paint",
        ]


class TestCancellation:
    """Cancelling queued and running jobs."""

    async def test_cancel_during_download(self, manager, artifact_server):
        artifact_server.chunk_delay = 0.02
        url = artifact_server.add("notes.zip", build_package("notes", payload_bytes=2 * MIB))

        job_id = await manager.start_install("notes", url)
        await wait_for_status(manager, job_id, JobStatus.DOWNLOADING, min_bytes=1)
        assert await manager.cancel(job_id) is True
        view = await run(manager, job_id)

        assert view.status is JobStatus.CANCELLED
        assert view.error is None
        assert not (manager.config.apps_dir / "notes").exists()
        assert_clean(manager)

    async def test_cancel_finished_job(self, manager, artifact_server):
        url = artifact_server.add("notes.zip", build_package("notes"))
        job_id = await manager.start_install("notes", url)
        await run(manager, job_id)

        assert await manager.cancel(job_id) is False

    async def test_close_cancels_running_jobs(self, config, artifact_server):
        artifact_server.chunk_delay = 0.02
        url = artifact_server.add("notes.zip", build_package("notes", payload_bytes=2 * MIB))
        manager = InstallManager(config)
        await manager.start(maintenance=False)

        job_id = await manager.start_install("notes", url)
        await wait_for_status(manager, job_id, JobStatus.DOWNLOADING, min_bytes=1)
        await manager.close()

        assert manager.poll(job_id).status is JobStatus.CANCELLED
        assert manager.staging.entries() == []


class TestUpdateAndUninstall:
    """Replacing and removing installed applications."""

    async def test_update_replaces_version(self, manager, artifact_server):
        v1 = artifact_server.add("notes-1.zip", build_package("notes", "1.0.0"))
        v2 = artifact_server.add("notes-2.zip", build_package("notes", "2.0.0"))
        await run(manager, await manager.start_install("notes", v1))

        view = await run(manager, await manager.start_update("notes", v2))

        assert view.status is JobStatus.SUCCEEDED
        assert view.kind is JobKind.UPDATE
        assert (await manager.get_entry("notes")).version == "2.0.0"
        assert_clean(manager)

    async def test_failed_update_keeps_old_version(self, manager, artifact_server):
        v1 = artifact_server.add("notes-1.zip", build_package("notes", "1.0.0"))
        await run(manager, await manager.start_install("notes", v1))
        broken = artifact_server.add("broken.zip", b"garbage")

        view = await run(manager, await manager.start_update("notes", broken))

        assert view.status is JobStatus.FAILED
        assert (await manager.get_entry("notes")).version == "1.0.0"
        assert_clean(manager)

    async def test_update_requires_installed_app(self, manager, artifact_server):
        url = artifact_server.add("notes.zip", build_package("notes"))

        view = await run(manager, await manager.start_update("notes", url))

        assert view.error.kind is ErrorKind.NOT_INSTALLED

    async def test_uninstall(self, manager, artifact_server):
        url = artifact_server.add("notes.zip", build_package("notes"))
        await run(manager, await manager.start_install("notes", url))

        view = await run(manager, await manager.start_uninstall("notes"))

        assert view.status is JobStatus.SUCCEEDED
        assert list(view.history) == ["queued", "locking", "committing", "succeeded"]
        assert await manager.get_entry("notes") is None
        assert await manager.list_registry() == []
        assert_clean(manager)

    async def test_uninstall_missing_app(self, manager):
        view = await run(manager, await manager.start_uninstall("notes"))

        assert view.status is JobStatus.FAILED
        assert view.error.kind is ErrorKind.NOT_INSTALLED


class TestRequests:
    """Validation before a job is created."""

    @pytest.mark.parametrize("app_id", ["", "../etc", "my app", ".hidden", "a/b"])
    async def test_invalid_app_id(self, manager, app_id):
        with pytest.raises(InvalidRequestError):
            await manager.start_install(app_id, "https://example.com/a.zip")

    @pytest.mark.parametrize("url", ["", "ftp://example.com/a.zip", "not a url", "file:///tmp/a"])
    async def test_invalid_url(self, manager, url):
        with pytest.raises(InvalidRequestError):
            await manager.start_install("notes", url)

    async def test_invalid_checksum(self, manager):
        with pytest.raises(InvalidRequestError):
            await manager.start_install("notes", "https://example.com/a.zip", "abc")

    async def test_rejected_request_creates_no_job(self, manager):
        with pytest.raises(InvalidRequestError):
            await manager.start_uninstall("../etc")
        assert manager.tracker.jobs() == []


class TestPersistence:
    """The job log outlives the process that wrote it."""

    async def test_finished_job_visible_to_new_manager(self, config, artifact_server):
        url = artifact_server.add("notes.zip", build_package("notes"))
        async with InstallManager(config) as first:
            job_id = await first.start_install("notes", url)
            await run(first, job_id)

        async with InstallManager(config) as second:
            view = second.poll(job_id)

        assert view.status is JobStatus.SUCCEEDED
        assert list(view.history) == FULL_HISTORY

    async def test_interrupted_update_is_rolled_back(self, config, artifact_server):
        url = artifact_server.add("notes.zip", build_package("notes"))
        async with InstallManager(config) as manager:
            await run(manager, await manager.start_install("notes", url))

        # Simulate a process that died between moving the old tree aside and
        # promoting the new one.
        job_id = uuid.uuid4().hex
        os.rename(config.apps_dir / "notes", config.apps_dir / f".previous-{job_id}")
        store = JobStore(config.jobs_dir)
        await store.append(
            JobView(
                job_id=job_id,
                kind=JobKind.UPDATE,
                app_id="notes",
                source_url=url,
                expected_sha256=None,
                status=JobStatus.COMMITTING,
                created_at="2026-01-01T00:00:00+00:00",
                updated_at="2026-01-01T00:00:00+00:00",
                owner_pid=DEAD_PID,
                owner_host=socket.gethostname(),
                history=("queued", "locking", "downloading", "staging", "committing"),
            )
        )

        async with InstallManager(config) as manager:
            view = manager.poll(job_id)
            assert view.status is JobStatus.FAILED
            assert view.error.kind is ErrorKind.INTERNAL_ERROR
            assert (await manager.get_entry("notes")).version == "1.0.0"
            assert not (config.apps_dir / f".previous-{job_id}").exists()

    async def test_disabled_job_log(self, config, artifact_server):
        quiet = config.model_copy(update={"job_log_enabled": False})
        url = artifact_server.add("notes.zip", build_package("notes"))

        async with InstallManager(quiet) as manager:
            assert manager.store is None
            view = await run(manager, await manager.start_install("notes", url))

        assert view.status is JobStatus.SUCCEEDED
        assert not config.jobs_dir.exists()
