"""
Tests for the Export Orchestrator

End-to-end against the fake dump utility: background archival, inline
streaming, duplicate rejection, failure capture and cancellation.
"""
import asyncio
import json
import zipfile
from pathlib import Path

import pytest

from dbmanager.core.archive import manifest_path_for
from dbmanager.core.artifact_sinks import FileTarget, InlineTarget
from dbmanager.core.errors import (
    DuplicateJobError,
    ExportCancelledError,
    ProcessExecutionError,
    ValidationError,
)
from dbmanager.core.job_registry import ExportState, JobStatus
from dbmanager.core.models import ArtifactKind, OperationKind, OutputMode
from dbmanager.core.response_stream import ResponseStream


def export_dir(settings) -> Path:
    return Path(settings.temp_root) / "dbmanager" / "cache" / "export"


class TestBackground:

    @pytest.mark.asyncio
    async def test_structure_and_data_archived(self, exporter, settings, registry, make_request):
        submission = await exporter.submit_background(make_request())

        assert submission.message == "The task has been started in the background"
        assert submission.download_url == settings.download_url
        assert registry.get(OperationKind.EXPORT, submission.fingerprint) is submission.handle

        await asyncio.wait_for(submission.task, timeout=10)

        handle = submission.handle
        assert handle.status is JobStatus.COMPLETED
        assert handle.state is ExportState.DONE
        # Released on success
        assert registry.get(OperationKind.EXPORT, submission.fingerprint) is None

        entries = handle.manifest.entries
        assert len(entries) == 3
        assert [e.compressed for e in entries] == [False, False, True]
        assert "-struct-" in entries[0].path
        assert "-data-" in entries[1].path
        assert all(e.error == "" for e in entries)
        assert entries[0].end <= entries[1].start

        archive = Path(handle.archive_path)
        assert archive.parent == export_dir(settings)
        assert archive.name.startswith("shop-sql-")
        with zipfile.ZipFile(archive) as zf:
            names = sorted(zf.namelist())
            assert len(names) == 2
            struct = zf.read(next(n for n in names if "-struct-" in n))
        assert b"CREATE TABLE `users`" in struct
        assert b"AUTO_INCREMENT=17" not in struct

        remaining = sorted(p.name for p in export_dir(settings).iterdir())
        assert remaining == [archive.name, archive.name + ".txt"]
        sidecar = json.loads(manifest_path_for(archive).read_text())
        assert len(sidecar) == 3

    @pytest.mark.asyncio
    async def test_reset_disabled_keeps_counters(self, exporter, make_request):
        submission = await exporter.submit_background(
            make_request(kinds=[ArtifactKind.STRUCTURE], reset_auto_increment=False)
        )
        await asyncio.wait_for(submission.task, timeout=10)

        with zipfile.ZipFile(submission.handle.archive_path) as zf:
            (name,) = zf.namelist()
            assert b"AUTO_INCREMENT=17" in zf.read(name)
        assert len(submission.handle.manifest) == 2

    @pytest.mark.asyncio
    async def test_data_only_runs_one_pass(self, exporter, make_request, args_log):
        submission = await exporter.submit_background(make_request(kinds=[ArtifactKind.DATA]))
        await asyncio.wait_for(submission.task, timeout=10)

        passes = args_log.read_text().splitlines()
        assert len(passes) == 1
        assert " -t " in passes[0]

    @pytest.mark.asyncio
    async def test_duplicate_rejected_while_running(self, exporter, make_request, monkeypatch):
        monkeypatch.setenv("FAKE_DUMP_MODE", "slow")
        first = await exporter.submit_background(make_request(tables=["users", "orders"]))

        with pytest.raises(DuplicateJobError):
            await exporter.submit_background(make_request(tables=["orders", "users"]))

        await asyncio.wait_for(first.task, timeout=10)
        assert first.handle.status is JobStatus.COMPLETED

        again = await exporter.submit_background(make_request())
        await asyncio.wait_for(again.task, timeout=10)
        assert again.handle.status is JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failure_captured_and_entry_kept(self, exporter, settings, registry,
                                                  make_request, monkeypatch):
        monkeypatch.setenv("FAKE_DUMP_MODE", "fail-data")
        submission = await exporter.submit_background(make_request())
        await asyncio.wait_for(submission.task, timeout=10)

        handle = submission.handle
        assert handle.status is JobStatus.FAILED
        assert handle.error_code == "DBM-5002"
        assert "Access denied" in handle.error
        assert registry.get(OperationKind.EXPORT, submission.fingerprint) is handle

        struct_entry, data_entry = handle.manifest.entries
        assert struct_entry.error == ""
        assert "Access denied" in data_entry.error
        assert handle.archive_path is None
        # Nothing archived, produced files are left for inspection
        assert not list(export_dir(settings).glob("*.zip"))

        # The failed entry blocks nothing: resubmitting retries
        monkeypatch.setenv("FAKE_DUMP_MODE", "ok")
        retry = await exporter.submit_background(make_request())
        assert retry.handle is not handle
        await asyncio.wait_for(retry.task, timeout=10)
        assert retry.handle.status is JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_spawn_failure_captured(self, exporter, make_request, tmp_path):
        exporter.settings.dump_command = str(tmp_path / "missing-mysqldump")
        submission = await exporter.submit_background(make_request())
        await asyncio.wait_for(submission.task, timeout=10)

        assert submission.handle.status is JobStatus.FAILED
        assert submission.handle.error_code == "DBM-5001"

    @pytest.mark.asyncio
    async def test_archive_failure_keeps_entry_and_files(self, exporter, settings, registry,
                                                        make_request, monkeypatch, tmp_path):
        plan_files = exporter.plan_files
        unwritable = {"on": True}

        def plan_into_missing_dir(request, fingerprint, timestamp=None):
            plan = plan_files(request, fingerprint, timestamp)
            if unwritable["on"]:
                plan.archive = tmp_path / "no-such-dir" / plan.archive.name
            return plan

        monkeypatch.setattr(exporter, "plan_files", plan_into_missing_dir)
        submission = await exporter.submit_background(make_request())
        await asyncio.wait_for(submission.task, timeout=10)

        handle = submission.handle
        assert handle.status is JobStatus.FAILED
        assert handle.error_code == "DBM-5005"
        assert handle.archive_path is None
        assert registry.get(OperationKind.EXPORT, submission.fingerprint) is handle

        # Both dumps finished and stay on disk; no archive, no sidecar
        entries = handle.manifest.entries
        assert len(entries) == 2
        assert all(Path(e.path).exists() for e in entries)
        assert not list(export_dir(settings).glob("*.zip*"))
        assert not (tmp_path / "no-such-dir").exists()

        unwritable["on"] = False
        retry = await exporter.submit_background(make_request())
        assert retry.handle is not handle
        await asyncio.wait_for(retry.task, timeout=10)
        assert retry.handle.status is JobStatus.COMPLETED
        assert registry.get(OperationKind.EXPORT, retry.fingerprint) is None

    @pytest.mark.asyncio
    async def test_wait_background(self, exporter, make_request):
        submission = await exporter.submit_background(make_request())
        await asyncio.wait_for(exporter.wait_background(), timeout=10)
        assert submission.task.done()


class TestInline:

    @pytest.mark.asyncio
    async def test_stream_contains_both_passes(self, exporter, settings, registry, make_request):
        request = make_request(mode=OutputMode.INLINE_DOWNLOAD)
        stream = ResponseStream(maxsize=1000)

        handle = exporter.start_inline(request)
        copied = await exporter.run_inline(request, handle, stream)
        stream.close()
        body = await stream.collect()

        assert body.index(b"CREATE TABLE `users`") < body.index(b"INSERT INTO `users`")
        # Inline structure dumps are never rewritten
        assert b"AUTO_INCREMENT=17" in body
        assert copied[ArtifactKind.STRUCTURE] + copied[ArtifactKind.DATA] == len(body)
        assert handle.status is JobStatus.COMPLETED
        assert registry.get(OperationKind.EXPORT, handle.fingerprint) is None
        # No files are produced for inline modes
        assert not export_dir(settings).exists() or not list(export_dir(settings).iterdir())

    @pytest.mark.asyncio
    async def test_duplicate_inline_rejected(self, exporter, make_request, monkeypatch):
        monkeypatch.setenv("FAKE_DUMP_MODE", "slow")
        request = make_request(mode=OutputMode.INLINE_STREAM)
        stream = ResponseStream(maxsize=1000)

        handle = exporter.start_inline(request)
        running = asyncio.ensure_future(exporter.run_inline(request, handle, stream))
        await asyncio.sleep(0.05)

        with pytest.raises(DuplicateJobError):
            exporter.start_inline(make_request(mode=OutputMode.INLINE_STREAM))

        await asyncio.wait_for(running, timeout=10)
        assert exporter.start_inline(request) is not handle

    @pytest.mark.asyncio
    async def test_cancellation_releases_registry(self, exporter, registry, make_request,
                                                  monkeypatch):
        monkeypatch.setenv("FAKE_DUMP_MODE", "hang")
        request = make_request(mode=OutputMode.INLINE_STREAM)
        stream = ResponseStream()
        cancel = asyncio.Event()

        handle = exporter.start_inline(request)
        running = asyncio.ensure_future(exporter.run_inline(request, handle, stream, cancel))
        assert await asyncio.wait_for(stream.read(), timeout=10) == b"-- MySQL dump 10.13\n"

        cancel.set()
        with pytest.raises(ExportCancelledError):
            await asyncio.wait_for(running, timeout=10)

        assert handle.status is JobStatus.CANCELLED
        assert registry.get(OperationKind.EXPORT, handle.fingerprint) is None

    @pytest.mark.asyncio
    async def test_failure_releases_registry(self, exporter, registry, make_request, monkeypatch):
        monkeypatch.setenv("FAKE_DUMP_MODE", "fail")
        request = make_request(mode=OutputMode.INLINE_STREAM)
        handle = exporter.start_inline(request)

        with pytest.raises(ProcessExecutionError):
            await exporter.run_inline(request, handle, ResponseStream())

        assert handle.status is JobStatus.FAILED
        assert registry.get(OperationKind.EXPORT, handle.fingerprint) is None

    def test_start_inline_rejects_background_mode(self, exporter, make_request):
        with pytest.raises(ValidationError):
            exporter.start_inline(make_request(mode=OutputMode.BACKGROUND_FILE))

    def test_download_filename(self, exporter, make_request):
        assert exporter.download_filename(make_request(), timestamp=1700000000) == \
            "shop-sql-1700000000.sql"


class TestDump:

    @pytest.mark.asyncio
    async def test_validation_before_subprocess(self, exporter, auth, args_log):
        with pytest.raises(ValidationError):
            await exporter.dump(auth, [], structure=InlineTarget(ResponseStream()))
        auth.charset = "klingon"
        with pytest.raises(ValidationError):
            await exporter.dump(auth, ["users"], structure=InlineTarget(ResponseStream()))
        assert not args_log.exists()

    @pytest.mark.asyncio
    async def test_passes_are_sequential_and_share_arguments(self, exporter, auth, args_log):
        stream = ResponseStream(maxsize=1000)
        target = InlineTarget(stream)
        seen = []

        await exporter.dump(
            auth, ["users"], structure=target, data=target,
            on_pass_start=lambda kind, t: seen.append(("start", kind)),
            on_pass_finished=lambda kind, t: seen.append(("end", kind)),
        )

        assert seen == [
            ("start", ArtifactKind.STRUCTURE), ("end", ArtifactKind.STRUCTURE),
            ("start", ArtifactKind.DATA), ("end", ArtifactKind.DATA),
        ]
        structure_args, data_args = args_log.read_text().splitlines()
        assert structure_args.replace(" -d ", " -t ") == data_args

    @pytest.mark.asyncio
    async def test_first_failure_aborts_remaining_pass(self, exporter, auth, args_log,
                                                      monkeypatch):
        monkeypatch.setenv("FAKE_DUMP_MODE", "fail")
        target = InlineTarget(ResponseStream())
        with pytest.raises(ProcessExecutionError):
            await exporter.dump(auth, ["users"], structure=target, data=target)
        assert len(args_log.read_text().splitlines()) == 1

    @pytest.mark.asyncio
    async def test_structure_file_reset_after_pass(self, exporter, auth, tmp_path):
        path = tmp_path / "out" / "shop-struct.sql"
        copied = await exporter.dump(
            auth, ["users", "orders"],
            structure=FileTarget(path, ArtifactKind.STRUCTURE),
            reset_auto_increment=True,
        )

        text = path.read_text()
        assert copied[ArtifactKind.STRUCTURE] > 0
        assert text.count("CREATE TABLE") == 2
        assert "AUTO_INCREMENT=17" not in text
        assert "AUTO_INCREMENT," in text


class TestInspection:

    @pytest.mark.asyncio
    async def test_list_and_status(self, exporter, make_request, monkeypatch):
        monkeypatch.setenv("FAKE_DUMP_MODE", "slow")
        submission = await exporter.submit_background(make_request())

        assert [h.fingerprint for h in exporter.list_jobs()] == [submission.fingerprint]
        assert exporter.job_status(submission.fingerprint) is submission.handle
        assert exporter.list_jobs(OperationKind.IMPORT) == []

        await asyncio.wait_for(submission.task, timeout=10)
        assert exporter.job_status(submission.fingerprint) is None


@pytest.mark.asyncio
async def test_inline_structure_only_keeps_table_order(exporter, settings, make_request, args_log):
    request = make_request(tables=["orders", "users", "orders", "items"],
                           kinds=[ArtifactKind.STRUCTURE], mode=OutputMode.INLINE_DOWNLOAD)
    stream = ResponseStream(maxsize=1000)

    await exporter.export(request, stream)
    stream.close()

    (invocation,) = args_log.read_text().splitlines()
    assert invocation.split()[-3:] == ["orders", "users", "items"]
    assert b"CREATE TABLE `orders`" in await stream.collect()
    assert not export_dir(settings).exists()
