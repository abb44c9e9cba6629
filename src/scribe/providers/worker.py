"""On-device transcription: shared model handle and the worker channel.

SharedModelHandle is a single-flight cache around an expensive model load.
Its lifecycle is uninitialized -> loading(future) -> ready(handle) |
failed(error). The first acquire() starts the load in a worker thread;
every caller that arrives while it is loading awaits the same future. A
failed load is delivered to every waiter and the next acquire() retries.

TranscriptionWorker is a request/response channel keyed by job id. One
``transcribe`` request yields zero or more ``status`` messages with
increasing progress, then exactly one terminal ``result`` or ``error``.
Transcription runs in a thread executor so it never blocks the event
loop. Cancellation is cooperative: the segment loop stops at its next
check and anything it produces afterwards is dropped.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from pathlib import Path
from typing import Any, Generic, TypeVar

import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)

T = TypeVar("T")


# ── Shared Model Handle ──────────────────────────────────────────────────────


class HandleState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class SharedModelHandle(Generic[T]):
    """Single-flight lazy loader.

    Args:
        loader: Blocking callable that builds the model; run in a thread.
        name: Label used in logs.
    """

    def __init__(self, loader: Callable[[], T], name: str = "model") -> None:
        self._loader = loader
        self._name = name
        self._state = HandleState.UNINITIALIZED
        self._future: asyncio.Future[T] | None = None
        self._load_task: asyncio.Task[None] | None = None
        self._handle: T | None = None
        self._error: BaseException | None = None
        self.load_count = 0

    @property
    def state(self) -> HandleState:
        return self._state

    @property
    def error(self) -> BaseException | None:
        return self._error

    async def acquire(self) -> T:
        """Return the loaded handle, loading it at most once at a time."""
        if self._state == HandleState.READY:
            return self._handle  # type: ignore[return-value]

        if self._future is None:
            loop = asyncio.get_running_loop()
            self._future = loop.create_future()
            self._state = HandleState.LOADING
            self._error = None
            self.load_count += 1
            logger.info("model_load_started", model=self._name, attempt=self.load_count)
            self._load_task = loop.create_task(self._load(self._future))

        # shield: one waiter being cancelled must not cancel the shared load
        return await asyncio.shield(self._future)

    async def _load(self, future: asyncio.Future[T]) -> None:
        try:
            handle = await asyncio.to_thread(self._loader)
        except Exception as exc:
            self._state = HandleState.FAILED
            self._error = exc
            self._future = None
            logger.error("model_load_failed", model=self._name, error=str(exc))
            if not future.done():
                future.set_exception(exc)
                # Mark retrieved so an unobserved failure is not reported twice.
                future.exception()
            return

        self._handle = handle
        self._state = HandleState.READY
        logger.info("model_load_ready", model=self._name)
        if not future.done():
            future.set_result(handle)


# ── Worker Protocol ──────────────────────────────────────────────────────────


class WorkerMessageType(str, Enum):
    TRANSCRIBE = "transcribe"
    STATUS = "status"
    RESULT = "result"
    ERROR = "error"


class WorkerMessage(BaseModel):
    type: WorkerMessageType
    job_id: str
    audio_path: str | None = None
    transcript: str | None = None
    message: str | None = None
    progress: int | None = None
    phase: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type in (WorkerMessageType.RESULT, WorkerMessageType.ERROR)


class _PendingRequest:
    """Outbox for one request; enforces monotonic progress and one terminal."""

    def __init__(self, job_id: str, loop: asyncio.AbstractEventLoop) -> None:
        self.job_id = job_id
        self.queue: asyncio.Queue[WorkerMessage] = asyncio.Queue()
        self.cancelled = False
        self.finished = False
        self._last_progress = -1
        self._loop = loop

    def status(self, progress: int, phase: str) -> None:
        progress = min(progress, 99)
        if self.finished or progress <= self._last_progress:
            return
        self._last_progress = progress
        self.queue.put_nowait(
            WorkerMessage(
                type=WorkerMessageType.STATUS,
                job_id=self.job_id,
                progress=self._last_progress,
                phase=phase,
            )
        )

    def status_threadsafe(self, progress: int, phase: str) -> None:
        self._loop.call_soon_threadsafe(self.status, progress, phase)

    def finish(self, message: WorkerMessage) -> None:
        if self.finished:
            return
        self.finished = True
        self.queue.put_nowait(message)


TranscribeFn = Callable[[Any, Path, Callable[[int], None], Callable[[], bool]], str]


def transcribe_with_faster_whisper(
    model: Any,
    audio_path: Path,
    on_progress: Callable[[int], None],
    is_cancelled: Callable[[], bool],
) -> str:
    """Run faster-whisper over ``audio_path``; blocking, call from a thread.

    Progress is the position of the last decoded segment relative to the
    audio duration. Stops early when ``is_cancelled()`` turns true.
    """
    segments, info = model.transcribe(str(audio_path), vad_filter=True, beam_size=5)
    duration = float(getattr(info, "duration", 0.0) or 0.0)
    lines: list[str] = []
    for segment in segments:
        if is_cancelled():
            break
        text = (getattr(segment, "text", "") or "").strip()
        if text:
            lines.append(text)
        if duration > 0:
            on_progress(int(float(getattr(segment, "end", 0.0)) / duration * 100))
    return "\n".join(lines).strip()


class TranscriptionWorker:
    """Request/response channel for on-device transcription.

    Args:
        handle: Shared model handle.
        transcribe_fn: Blocking transcription function (faster-whisper by default).
        max_workers: Size of the transcription thread pool.
    """

    LOAD_PROGRESS = 5
    TRANSCRIBE_START = 10

    def __init__(
        self,
        handle: SharedModelHandle,
        transcribe_fn: TranscribeFn = transcribe_with_faster_whisper,
        max_workers: int = 1,
    ) -> None:
        self._handle = handle
        self._transcribe_fn = transcribe_fn
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="whisper")
        self._pending: dict[str, _PendingRequest] = {}

    async def request(self, message: WorkerMessage) -> AsyncIterator[WorkerMessage]:
        """Send a transcribe request; yield its status and terminal messages."""
        if message.type != WorkerMessageType.TRANSCRIBE or not message.audio_path:
            raise ValueError("worker requests must be 'transcribe' messages with audio_path")
        if message.job_id in self._pending:
            raise ValueError(f"request already in flight for job {message.job_id}")

        pending = _PendingRequest(message.job_id, asyncio.get_running_loop())
        self._pending[message.job_id] = pending
        task = asyncio.create_task(self._run(pending, Path(message.audio_path)))
        try:
            while True:
                reply = await pending.queue.get()
                yield reply
                if reply.is_terminal:
                    break
        finally:
            self._pending.pop(message.job_id, None)
            if not task.done():
                pending.cancelled = True

    def cancel(self, job_id: str) -> bool:
        """Mark a request cancelled and close it with an error message."""
        pending = self._pending.get(job_id)
        if pending is None:
            return False
        pending.cancelled = True
        pending.finish(
            WorkerMessage(
                type=WorkerMessageType.ERROR,
                job_id=job_id,
                message="Transcription cancelled",
            )
        )
        logger.info("worker_request_cancelled", job_id=job_id)
        return True

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    async def _run(self, pending: _PendingRequest, audio_path: Path) -> None:
        try:
            pending.status(0, "loading model")
            model = await self._handle.acquire()
            pending.status(self.LOAD_PROGRESS, "loading model")
            pending.status(self.TRANSCRIBE_START, "transcribing")

            def on_progress(percent: int) -> None:
                scaled = self.TRANSCRIBE_START + int(percent * (100 - self.TRANSCRIBE_START) / 100)
                pending.status_threadsafe(scaled, "transcribing")

            loop = asyncio.get_running_loop()
            transcript = await loop.run_in_executor(
                self._executor,
                self._transcribe_fn,
                model,
                audio_path,
                on_progress,
                lambda: pending.cancelled,
            )
        except Exception as exc:
            logger.warning("worker_request_failed", job_id=pending.job_id, error=str(exc))
            pending.finish(
                WorkerMessage(type=WorkerMessageType.ERROR, job_id=pending.job_id, message=str(exc))
            )
            return

        if pending.cancelled:
            logger.info("worker_late_result_dropped", job_id=pending.job_id)
            return
        # Let progress callbacks scheduled from the thread land before the result.
        await asyncio.sleep(0)
        pending.finish(
            WorkerMessage(type=WorkerMessageType.RESULT, job_id=pending.job_id, transcript=transcript)
        )
