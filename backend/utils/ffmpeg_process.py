from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


FFMPEG_BIN = os.environ.get("FFMPEG_BIN", "ffmpeg")
EXPORT_SCRATCH_DIR = os.getenv(
    "EXPORT_SCRATCH_DIR", os.path.join(tempfile.gettempdir(), "timeline-export")
)
EXPORT_CANCEL_GRACE_SECONDS = float(os.getenv("EXPORT_CANCEL_GRACE_SECONDS", "5"))
FFMPEG_TIMEOUT_SECONDS = float(os.getenv("FFMPEG_TIMEOUT_SECONDS", "7200"))

# Containers whose files must start with an ISO BMFF "ftyp" box.
FTYP_SUFFIXES = {".mp4", ".mov", ".m4a", ".m4v"}
STDERR_TAIL_LINES = 40


class FFmpegProcessError(Exception):
    def __init__(self, message: str, returncode: int | None = None, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


class ProcessCancelledError(Exception):
    def __init__(self, handle: str):
        self.handle = handle
        super().__init__(f"Process {handle} was cancelled")


@dataclass
class InputPayload:
    """In-memory media written to a temp file before the encoder starts."""

    file_name: str
    data: bytes


@dataclass
class ProcessResult:
    handle: str
    returncode: int
    stdout: str
    stderr: str
    output_path: str | None = None
    output_data: bytes | None = None


@dataclass
class _ActiveProcess:
    process: asyncio.subprocess.Process
    command: list[str]
    temp_files: list[Path] = field(default_factory=list)
    output_path: Path | None = None
    read_back: bool = False
    cancelled: bool = False
    waited: bool = False


def _format_command(cmd: list[str]) -> str:
    text = " ".join(cmd)
    if len(text) > 4000:
        return f"{text[:4000]}... [truncated]"
    return text


def _tail(text: str, lines: int = STDERR_TAIL_LINES) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


def validate_output_artifact(path: Path) -> None:
    """Reject missing, empty or malformed encoder output."""
    if not path.exists():
        raise FFmpegProcessError(f"Encoder produced no output at {path}")
    if path.stat().st_size == 0:
        raise FFmpegProcessError(f"Encoder produced an empty file at {path}")
    if path.suffix.lower() in FTYP_SUFFIXES:
        with path.open("rb") as fh:
            header = fh.read(12)
        if len(header) < 8 or header[4:8] != b"ftyp":
            raise FFmpegProcessError(f"Output {path} is missing its container header")


def remove_files(paths: list[Path]) -> None:
    for path in paths:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning(f"Failed to remove temp file {path}: {exc}")


class FFmpegProcessManager:
    """
    Runs encoder processes and tracks them by opaque handle.

    The active table only holds processes that have not been reaped yet.
    Cancelling a handle that is unknown or already exited is a no-op.
    """

    def __init__(
        self,
        ffmpeg_bin: str = FFMPEG_BIN,
        scratch_dir: str | Path = EXPORT_SCRATCH_DIR,
        grace_period: float = EXPORT_CANCEL_GRACE_SECONDS,
        timeout: float = FFMPEG_TIMEOUT_SECONDS,
    ):
        self.ffmpeg_bin = ffmpeg_bin
        self.scratch_dir = Path(scratch_dir)
        self.grace_period = grace_period
        self.timeout = timeout
        self._active: dict[str, _ActiveProcess] = {}

    @property
    def active_handles(self) -> list[str]:
        return list(self._active)

    def is_active(self, handle: str) -> bool:
        entry = self._active.get(handle)
        return entry is not None and entry.process.returncode is None

    async def start(
        self,
        args: list[str],
        input_payloads: list[InputPayload] | None = None,
        output_file_name: str | None = None,
        output_path: str | None = None,
    ) -> str:
        """
        Spawn the encoder and return its handle.

        Arguments equal to a payload's ``file_name`` are replaced by the temp
        file holding that payload. An argument equal to ``output_file_name``
        is redirected to a temp file that is read back by ``wait``; otherwise
        ``output_path`` (if given) is validated in place after exit.
        """
        handle = uuid.uuid4().hex
        args = list(args)
        temp_files: list[Path] = []
        artifact: Path | None = Path(output_path) if output_path else None

        try:
            if input_payloads or output_file_name:
                await asyncio.to_thread(self.scratch_dir.mkdir, parents=True, exist_ok=True)

            for payload in input_payloads or []:
                temp_path = self.scratch_dir / f"{handle}_in_{Path(payload.file_name).name}"
                temp_files.append(temp_path)
                await asyncio.to_thread(temp_path.write_bytes, payload.data)
                args = [str(temp_path) if arg == payload.file_name else arg for arg in args]

            if output_file_name:
                artifact = self.scratch_dir / f"{handle}_out_{Path(output_file_name).name}"
                temp_files.append(artifact)
                args = [str(artifact) if arg == output_file_name else arg for arg in args]

            command = [self.ffmpeg_bin, *args]
            logger.info(f"Starting encoder {handle}: {_format_command(command)}")
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            await asyncio.to_thread(remove_files, temp_files)
            raise FFmpegProcessError(f"Failed to start encoder: {exc}") from exc

        self._active[handle] = _ActiveProcess(
            process=process,
            command=command,
            temp_files=temp_files,
            output_path=artifact,
            read_back=output_file_name is not None,
        )
        return handle

    async def wait(self, handle: str) -> ProcessResult:
        """
        Wait for ``handle`` to exit and classify the result.

        Temp inputs and outputs are removed on every path out of here,
        including a failure while reading the artifact back.
        """
        entry = self._active.get(handle)
        if entry is None:
            raise FFmpegProcessError(f"Unknown process handle: {handle}")
        entry.waited = True

        try:
            try:
                stdout_raw, stderr_raw = await asyncio.wait_for(
                    entry.process.communicate(), timeout=self.timeout
                )
            except asyncio.TimeoutError:
                await self._stop(entry)
                raise FFmpegProcessError(
                    f"Encoder timed out after {self.timeout:.0f}s", returncode=None
                )

            stdout = stdout_raw.decode("utf-8", errors="replace")
            stderr = stderr_raw.decode("utf-8", errors="replace")
            returncode = entry.process.returncode

            if entry.cancelled:
                raise ProcessCancelledError(handle)

            if returncode != 0:
                tail = _tail(stderr)
                logger.error(f"Encoder {handle} failed (code {returncode}):\n{tail}")
                raise FFmpegProcessError(
                    f"Encoder failed (code {returncode})",
                    returncode=returncode,
                    stderr=tail,
                )

            output_data: bytes | None = None
            output_path: str | None = None
            if entry.output_path is not None:
                try:
                    await asyncio.to_thread(validate_output_artifact, entry.output_path)
                except FFmpegProcessError as exc:
                    exc.returncode = returncode
                    exc.stderr = _tail(stderr)
                    raise
                if entry.read_back:
                    output_data = await asyncio.to_thread(entry.output_path.read_bytes)
                else:
                    output_path = str(entry.output_path)

            logger.info(f"Encoder {handle} finished successfully")
            return ProcessResult(
                handle=handle,
                returncode=returncode,
                stdout=stdout,
                stderr=stderr,
                output_path=output_path,
                output_data=output_data,
            )
        finally:
            self._active.pop(handle, None)
            await asyncio.to_thread(remove_files, entry.temp_files)

    async def execute(
        self,
        args: list[str],
        input_payloads: list[InputPayload] | None = None,
        output_file_name: str | None = None,
        output_path: str | None = None,
    ) -> ProcessResult:
        handle = await self.start(args, input_payloads, output_file_name, output_path)
        return await self.wait(handle)

    async def cancel(self, handle: str) -> bool:
        """
        Terminate ``handle``, escalating to a kill after the grace period.

        Returns True once the process is gone. An unknown or already exited
        handle returns True without doing anything.
        """
        entry = self._active.get(handle)
        if entry is None or entry.process.returncode is not None:
            logger.info(f"Cancel for {handle} ignored, process already finished")
            return True

        entry.cancelled = True
        logger.info(f"Cancelling encoder {handle} (pid {entry.process.pid})")
        stopped = await self._stop(entry)

        if not entry.waited:
            self._active.pop(handle, None)
            await asyncio.to_thread(remove_files, entry.temp_files)
        return stopped

    async def cancel_all(self) -> None:
        for handle in self.active_handles:
            await self.cancel(handle)

    async def _stop(self, entry: _ActiveProcess) -> bool:
        process = entry.process
        try:
            process.terminate()
        except ProcessLookupError:
            return True

        try:
            await asyncio.wait_for(process.wait(), timeout=self.grace_period)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Process {process.pid} did not terminate, sending SIGKILL")

        try:
            process.kill()
        except ProcessLookupError:
            return True
        try:
            await asyncio.wait_for(process.wait(), timeout=self.grace_period)
        except asyncio.TimeoutError:
            logger.error(f"Process {process.pid} survived SIGKILL")
            return False
        return True


async def convert_recording(
    manager: FFmpegProcessManager,
    data: bytes,
    input_format: str = "webm",
    crf: int = 18,
) -> bytes:
    """Convert an in-memory recording (e.g. a browser webm) to mp4 bytes."""
    input_name = f"recording.{input_format}"
    output_name = "converted.mp4"
    args = [
        "-y",
        "-i",
        input_name,
        "-c:v",
        "libx264",
        "-preset",
        "fast",
        "-crf",
        str(crf),
        "-pix_fmt",
        "yuv420p",
        "-c:a",
        "aac",
        "-b:a",
        "128k",
        "-movflags",
        "+faststart",
        output_name,
    ]
    result = await manager.execute(
        args,
        input_payloads=[InputPayload(file_name=input_name, data=data)],
        output_file_name=output_name,
    )
    return result.output_data or b""
