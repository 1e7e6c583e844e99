from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from models.export_models import (
    Container,
    ExportCancelResult,
    ExportOptions,
    ExportProgress,
    ExportRejection,
    ExportStage,
    ExportStartResult,
    PreparedTimeline,
)
from utils.caption_utils import merge_clip_captions, write_caption_artifact
from utils.ffmpeg_builder import (
    CompilationError,
    CompiledCommand,
    ScratchArtifact,
    build_export_command,
)
from utils.ffmpeg_process import (
    EXPORT_SCRATCH_DIR,
    FFmpegProcessError,
    FFmpegProcessManager,
    ProcessCancelledError,
    remove_files,
)

logger = logging.getLogger(__name__)


EXPORT_PROGRESS_INTERVAL_SECONDS = float(
    os.getenv("EXPORT_PROGRESS_INTERVAL_SECONDS", "1")
)

PROGRESS_START = 10
PROGRESS_STEP = 5
PROGRESS_CAP = 90


class ExportError(Exception):
    pass


def estimate_progress(
    elapsed: float,
    start: int = PROGRESS_START,
    step: int = PROGRESS_STEP,
    interval: float = 1.0,
    cap: int = PROGRESS_CAP,
) -> int:
    """
    Synthesized encode progress for ``elapsed`` seconds of wall time.

    The encoder reports nothing until it exits, so this is only an
    approximation: ``start`` plus ``step`` per full ``interval``, never
    above ``cap``. Completion is detected separately from process exit.
    """
    if elapsed <= 0 or interval <= 0:
        return min(start, cap)
    return min(cap, start + step * int(elapsed // interval))


def resolve_output_path(output_path: str, container: Container) -> Path:
    """Expand ``~``, absolutize, force the container extension, create the parent."""
    if not output_path or not output_path.strip():
        raise ExportError("Please select an output file.")

    resolved = Path(os.path.expanduser(output_path.strip())).resolve()
    desired = f".{container.value}"
    if resolved.suffix.lower() != desired:
        resolved = resolved.with_name(resolved.name + desired)

    resolved.parent.mkdir(parents=True, exist_ok=True)
    return resolved


def _write_artifact(artifact: ScratchArtifact) -> Path:
    path = Path(artifact.path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(artifact.content, encoding="utf-8")
    return path


@dataclass
class ExportSession:
    session_id: str
    output_path: Path | None = None
    command: CompiledCommand | None = None
    handle: str | None = None
    temp_files: list[Path] = field(default_factory=list)
    started_at: float = 0.0
    cancelled: bool = False
    task: asyncio.Task | None = None
    poll_task: asyncio.Task | None = None
    # Set once start_export has either handed off to the supervisor or unwound.
    start_settled: asyncio.Event = field(default_factory=asyncio.Event)


class ExportSessionController:
    """
    Owns the single active export.

    ``idle -> preparing -> encoding -> complete | error``; cancel returns a
    preparing or encoding session to idle. A terminal state stays visible
    in ``get_progress`` until the next export starts.
    """

    def __init__(
        self,
        process_manager: FFmpegProcessManager | None = None,
        scratch_dir: str | Path = EXPORT_SCRATCH_DIR,
        poll_interval: float = EXPORT_PROGRESS_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.process_manager = process_manager or FFmpegProcessManager(scratch_dir=scratch_dir)
        self.scratch_dir = Path(scratch_dir)
        self.poll_interval = poll_interval
        self._clock = clock
        self._session: ExportSession | None = None
        self._progress = ExportProgress()

    @property
    def session(self) -> ExportSession | None:
        return self._session

    @property
    def is_busy(self) -> bool:
        return self._session is not None

    def get_progress(self) -> ExportProgress:
        return self._progress.model_copy()

    async def start_export(
        self, options: ExportOptions, prepared: PreparedTimeline
    ) -> ExportStartResult:
        if self._session is not None:
            return ExportStartResult(
                accepted=False,
                reason="Export already in progress",
                rejection=ExportRejection.IN_PROGRESS,
            )

        if not prepared.validation.is_valid:
            return ExportStartResult(
                accepted=False,
                reason="; ".join(prepared.validation.errors),
                rejection=ExportRejection.INVALID_TIMELINE,
            )

        # Claim the slot before the first await so a concurrent start is refused.
        session = ExportSession(session_id=uuid.uuid4().hex)
        self._session = session
        self._progress = ExportProgress(
            stage=ExportStage.PREPARING, progress=0, message="Preparing export..."
        )
        logger.info(f"Export {session.session_id} preparing {len(prepared.clips)} clips")

        try:
            return await self._prepare_and_spawn(session, options, prepared)
        finally:
            session.start_settled.set()

    async def _prepare_and_spawn(
        self, session: ExportSession, options: ExportOptions, prepared: PreparedTimeline
    ) -> ExportStartResult:
        try:
            session.output_path = await asyncio.to_thread(
                resolve_output_path, options.output_path, options.container
            )
            self._progress.output_path = str(session.output_path)
            if session.cancelled:
                return await self._abandon(session)

            caption_path = await self._write_captions(session, prepared)
            if session.cancelled:
                return await self._abandon(session)

            command = build_export_command(
                prepared,
                options,
                str(session.output_path),
                caption_path=str(caption_path) if caption_path else None,
                scratch_dir=str(self.scratch_dir),
            )
            session.command = command
            for artifact in command.artifacts:
                session.temp_files.append(Path(artifact.path))
                await asyncio.to_thread(_write_artifact, artifact)
                if session.cancelled:
                    return await self._abandon(session)

            handle = await self.process_manager.start(
                command.to_args(), output_path=command.output_path
            )
        except ExportError as exc:
            return await self._reject(
                session, str(exc), None, ExportRejection.INVALID_TIMELINE, str(exc)
            )
        except CompilationError as exc:
            logger.error(f"Export {session.session_id} failed to compile: {exc}")
            return await self._reject(
                session,
                "Failed to build the export command",
                str(exc),
                ExportRejection.COMPILATION_FAILED,
                f"Failed to build the export command: {exc}",
            )
        except (FFmpegProcessError, OSError) as exc:
            logger.error(f"Export {session.session_id} failed to start: {exc}")
            return await self._reject(
                session,
                "Failed to start the encoder",
                str(exc),
                ExportRejection.SPAWN_FAILED,
                f"Failed to start the encoder: {exc}",
            )

        session.handle = handle
        if session.cancelled:
            await self.process_manager.cancel(handle)
            return await self._abandon(session)

        session.started_at = self._clock()
        self._progress.stage = ExportStage.ENCODING
        self._progress.progress = PROGRESS_START
        self._progress.message = "Encoding video..."
        session.task = asyncio.create_task(self._supervise(session))
        session.poll_task = asyncio.create_task(self._poll_progress(session))

        logger.info(
            f"Export {session.session_id} encoding with {command.strategy.value} "
            f"strategy to {session.output_path}"
        )
        return ExportStartResult(accepted=True, output_path=str(session.output_path))

    async def cancel_export(self) -> ExportCancelResult:
        session = self._session
        if session is None:
            if self._progress.stage == ExportStage.COMPLETE:
                return ExportCancelResult(success=True, message="Export already finished")
            return ExportCancelResult(success=False, message="No export in progress")

        session.cancelled = True
        if session.handle is None:
            # Still preparing: start_export owns the slot and its temp files
            # until it notices the flag and unwinds through _abandon.
            await session.start_settled.wait()
            logger.info(f"Export {session.session_id} cancelled while preparing")
            return ExportCancelResult(success=True, message="Export cancelled successfully")

        stopped = await self.process_manager.cancel(session.handle)
        if not stopped:
            return ExportCancelResult(
                success=False, message="Failed to cancel export: encoder did not stop"
            )
        if session.task is not None:
            await session.task

        if self._session is not session:
            # The process exited on its own before the termination request.
            return ExportCancelResult(success=True, message="Export already finished")

        await self._stop_polling(session)
        await self._purge(session, remove_output=True)
        self._progress = ExportProgress(stage=ExportStage.IDLE, message="Export cancelled")
        self._session = None
        logger.info(f"Export {session.session_id} cancelled")
        return ExportCancelResult(success=True, message="Export cancelled successfully")

    async def wait_until_finished(self) -> ExportProgress:
        session = self._session
        if session is not None and session.task is not None:
            await session.task
        return self.get_progress()

    async def shutdown(self) -> None:
        if self._session is not None:
            await self.cancel_export()

    async def _write_captions(
        self, session: ExportSession, prepared: PreparedTimeline
    ) -> Path | None:
        if not any(clip.has_video for clip in prepared.clips):
            return None
        merged = merge_clip_captions(prepared.clips)
        if merged.is_empty:
            return None
        path = await asyncio.to_thread(write_caption_artifact, merged, self.scratch_dir)
        session.temp_files.append(path)
        return path

    async def _supervise(self, session: ExportSession) -> None:
        try:
            await self.process_manager.wait(session.handle)
        except ProcessCancelledError:
            return
        except FFmpegProcessError as exc:
            await self._fail(session, f"Export failed: {exc}", exc.stderr or str(exc))
            return
        except Exception as exc:
            logger.exception(f"Export {session.session_id} supervisor error")
            await self._fail(session, f"Export failed: {exc}", repr(exc))
            return

        await self._stop_polling(session)
        await self._purge(session)
        self._progress = ExportProgress(
            stage=ExportStage.COMPLETE,
            progress=100,
            message="Export complete",
            output_path=str(session.output_path),
        )
        self._session = None
        logger.info(f"Export {session.session_id} complete: {session.output_path}")

    async def _poll_progress(self, session: ExportSession) -> None:
        while self._session is session:
            await asyncio.sleep(self.poll_interval)
            if self._session is not session:
                return
            elapsed = self._clock() - session.started_at
            value = estimate_progress(elapsed, interval=self.poll_interval)
            if value > self._progress.progress:
                self._progress.progress = value

    async def _stop_polling(self, session: ExportSession) -> None:
        task = session.poll_task
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _purge(self, session: ExportSession, remove_output: bool = False) -> None:
        paths = list(session.temp_files)
        if remove_output and session.output_path is not None:
            paths.append(session.output_path)
        await asyncio.to_thread(remove_files, paths)
        session.temp_files.clear()

    async def _fail(self, session: ExportSession, message: str, detail: str | None) -> None:
        await self._stop_polling(session)
        await self._purge(session, remove_output=session.handle is not None)
        if session.cancelled:
            # cancel_export already reset the visible state.
            return
        self._progress = ExportProgress(
            stage=ExportStage.ERROR,
            progress=0,
            message=message,
            output_path=str(session.output_path) if session.output_path else None,
            error_detail=detail,
        )
        if self._session is session:
            self._session = None
        logger.error(f"Export {session.session_id} failed: {message}")

    async def _reject(
        self,
        session: ExportSession,
        message: str,
        detail: str | None,
        rejection: ExportRejection,
        reason: str,
    ) -> ExportStartResult:
        if session.cancelled:
            return await self._abandon(session)
        await self._fail(session, message, detail)
        return ExportStartResult(accepted=False, reason=reason, rejection=rejection)

    async def _abandon(self, session: ExportSession) -> ExportStartResult:
        await self._purge(session, remove_output=session.handle is not None)
        self._progress = ExportProgress(stage=ExportStage.IDLE, message="Export cancelled")
        if self._session is session:
            self._session = None
        logger.info(f"Export {session.session_id} abandoned before encoding")
        return ExportStartResult(
            accepted=False,
            reason="Export cancelled",
            rejection=ExportRejection.CANCELLED,
        )
