"""
Tests for the encoder process manager.

Real subprocesses are spawned, but the ffmpeg binary is replaced by small
fake encoders (see conftest.py) so the tests run without ffmpeg installed.
"""

import asyncio
import signal
import sys
import time

import pytest

from utils.ffmpeg_process import (
    FFmpegProcessError,
    FFmpegProcessManager,
    InputPayload,
    ProcessCancelledError,
    convert_recording,
    validate_output_artifact,
)


pytestmark = pytest.mark.skipif(
    sys.platform == "win32", reason="fake encoders rely on shebang scripts"
)

COPY_INPUT = """
src = pathlib.Path(args[args.index("-i") + 1])
pathlib.Path(args[-1]).write_bytes(b"\\x00\\x00\\x00\\x18ftypisom" + src.read_bytes())
"""

IGNORE_SIGTERM = """
signal.signal(signal.SIGTERM, signal.SIG_IGN)
pathlib.Path(args[0]).write_text("ready")
time.sleep(30)
"""


def manager_for(binary: str, scratch_dir, **kwargs) -> FFmpegProcessManager:
    kwargs.setdefault("grace_period", 2.0)
    return FFmpegProcessManager(ffmpeg_bin=binary, scratch_dir=scratch_dir, **kwargs)


async def wait_for_file(path, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not path.exists():
        if time.monotonic() > deadline:
            raise AssertionError(f"{path} never appeared")
        await asyncio.sleep(0.02)


# =============================================================================
# OUTPUT VALIDATION
# =============================================================================


class TestValidateOutputArtifact:
    def test_missing_file(self, tmp_path):
        with pytest.raises(FFmpegProcessError, match="no output"):
            validate_output_artifact(tmp_path / "out.mp4")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "out.mp4"
        path.write_bytes(b"")

        with pytest.raises(FFmpegProcessError, match="empty"):
            validate_output_artifact(path)

    def test_missing_ftyp_box(self, tmp_path):
        path = tmp_path / "out.mov"
        path.write_bytes(b"not a quicktime file at all")

        with pytest.raises(FFmpegProcessError, match="container header"):
            validate_output_artifact(path)

    def test_other_containers_only_need_bytes(self, tmp_path):
        path = tmp_path / "out.mkv"
        path.write_bytes(b"\x1aE\xdf\xa3")

        validate_output_artifact(path)


# =============================================================================
# EXECUTION
# =============================================================================


class TestExecute:
    """Tests for spawning and classifying encoder runs."""

    @pytest.mark.asyncio
    async def test_success_returns_output_path(self, writing_encoder, scratch_dir, tmp_path):
        manager = manager_for(writing_encoder, scratch_dir)
        output = tmp_path / "out.mp4"

        result = await manager.execute(["-y", str(output)], output_path=str(output))

        assert result.returncode == 0
        assert result.output_path == str(output)
        assert result.output_data is None
        assert output.read_bytes()[4:8] == b"ftyp"
        assert manager.active_handles == []

    @pytest.mark.asyncio
    async def test_non_zero_exit_carries_stderr_tail(self, failing_encoder, scratch_dir, tmp_path):
        manager = manager_for(failing_encoder, scratch_dir)
        output = tmp_path / "out.mp4"

        with pytest.raises(FFmpegProcessError) as exc_info:
            await manager.execute([str(output)], output_path=str(output))

        assert exc_info.value.returncode == 1
        assert "Invalid data found" in exc_info.value.stderr
        assert manager.active_handles == []

    @pytest.mark.asyncio
    async def test_clean_exit_without_output_is_a_failure(self, make_encoder, scratch_dir, tmp_path):
        manager = manager_for(make_encoder("pass\n"), scratch_dir)
        output = tmp_path / "out.mp4"

        with pytest.raises(FFmpegProcessError, match="no output") as exc_info:
            await manager.execute([str(output)], output_path=str(output))

        assert exc_info.value.returncode == 0

    @pytest.mark.asyncio
    async def test_malformed_output_is_a_failure(self, make_encoder, scratch_dir, tmp_path):
        binary = make_encoder('pathlib.Path(args[-1]).write_bytes(b"garbage bytes")\n')
        manager = manager_for(binary, scratch_dir)
        output = tmp_path / "out.mp4"

        with pytest.raises(FFmpegProcessError, match="container header"):
            await manager.execute([str(output)], output_path=str(output))

    @pytest.mark.asyncio
    async def test_payloads_are_materialized_and_read_back(self, make_encoder, scratch_dir):
        manager = manager_for(make_encoder(COPY_INPUT), scratch_dir)

        result = await manager.execute(
            ["-i", "clip.webm", "out.mp4"],
            input_payloads=[InputPayload(file_name="clip.webm", data=b"payload")],
            output_file_name="out.mp4",
        )

        assert result.output_data == b"\x00\x00\x00\x18ftypisom" + b"payload"
        assert result.output_path is None
        assert list(scratch_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_spawn_failure(self, tmp_path, scratch_dir):
        manager = manager_for(str(tmp_path / "missing-ffmpeg"), scratch_dir)

        with pytest.raises(FFmpegProcessError, match="Failed to start"):
            await manager.start(
                ["-i", "clip.webm", "out.mp4"],
                input_payloads=[InputPayload(file_name="clip.webm", data=b"payload")],
                output_file_name="out.mp4",
            )

        assert list(scratch_dir.iterdir()) == []
        assert manager.active_handles == []

    @pytest.mark.asyncio
    async def test_timeout_stops_the_process(self, sleeping_encoder, scratch_dir):
        manager = manager_for(sleeping_encoder, scratch_dir, timeout=0.3)

        with pytest.raises(FFmpegProcessError, match="timed out"):
            await manager.execute(["out.mp4"])

        assert manager.active_handles == []

    @pytest.mark.asyncio
    async def test_unknown_handle(self, writing_encoder, scratch_dir):
        manager = manager_for(writing_encoder, scratch_dir)

        with pytest.raises(FFmpegProcessError, match="Unknown process handle"):
            await manager.wait("nope")

    @pytest.mark.asyncio
    async def test_convert_recording(self, make_encoder, scratch_dir):
        manager = manager_for(make_encoder(COPY_INPUT), scratch_dir)

        data = await convert_recording(manager, b"webm-bytes")

        assert data == b"\x00\x00\x00\x18ftypisom" + b"webm-bytes"
        assert list(scratch_dir.iterdir()) == []


# =============================================================================
# CANCELLATION
# =============================================================================


class TestCancel:
    """Tests for terminate/kill escalation and handle bookkeeping."""

    @pytest.mark.asyncio
    async def test_cancel_running_process(self, sleeping_encoder, scratch_dir):
        manager = manager_for(sleeping_encoder, scratch_dir)
        handle = await manager.start(["out.mp4"])
        waiter = asyncio.create_task(manager.wait(handle))
        await asyncio.sleep(0.05)

        assert manager.is_active(handle)
        assert await manager.cancel(handle) is True

        with pytest.raises(ProcessCancelledError) as exc_info:
            await waiter
        assert exc_info.value.handle == handle
        assert manager.active_handles == []

    @pytest.mark.asyncio
    async def test_cancel_without_waiter_forgets_handle(self, sleeping_encoder, scratch_dir):
        manager = manager_for(sleeping_encoder, scratch_dir)
        handle = await manager.start(
            ["clip.webm"], input_payloads=[InputPayload(file_name="clip.webm", data=b"x")]
        )

        assert await manager.cancel(handle) is True
        assert manager.is_active(handle) is False
        assert manager.active_handles == []
        assert list(scratch_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_cancel_unknown_or_finished_is_a_no_op(self, writing_encoder, scratch_dir, tmp_path):
        manager = manager_for(writing_encoder, scratch_dir)
        output = tmp_path / "out.mp4"
        result = await manager.execute([str(output)], output_path=str(output))

        assert await manager.cancel(result.handle) is True
        assert await manager.cancel("never-existed") is True
        assert output.exists()

    @pytest.mark.asyncio
    async def test_kill_after_grace_period(self, make_encoder, scratch_dir, tmp_path):
        manager = manager_for(make_encoder(IGNORE_SIGTERM), scratch_dir, grace_period=0.3)
        marker = tmp_path / "ready"
        handle = await manager.start([str(marker)])
        process = manager._active[handle].process
        await wait_for_file(marker)

        assert await manager.cancel(handle) is True
        assert process.returncode == -signal.SIGKILL

    @pytest.mark.asyncio
    async def test_cancel_all(self, sleeping_encoder, scratch_dir):
        manager = manager_for(sleeping_encoder, scratch_dir)
        await manager.start(["a.mp4"])
        await manager.start(["b.mp4"])

        assert len(manager.active_handles) == 2
        await manager.cancel_all()

        assert manager.active_handles == []
