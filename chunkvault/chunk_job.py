"""Chunk write jobs and the thread pools that write them to disk.

A single shared pipeline holds three bounded queues: jobs waiting to be
written, jobs whose write failed and jobs whose write succeeded.  Separate
pools of worker threads drain each queue, so the write path is decoupled
from reporting acknowledgements and errors back to the upload session.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from dataclasses import dataclass, field
from os import PathLike
from pathlib import Path
from typing import Any, Callable

log = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05


def _compact_json(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


@dataclass(eq=False)
class ChunkJob:
    """A chunk of bytes to be written, with the queues to report back on."""

    upload_id: str
    parent_path: Path
    chunk_no: int
    data: bytes = field(repr=False)
    ack_queue: queue.Queue = field(repr=False)
    err_queue: queue.Queue = field(repr=False)

    def __str__(self) -> str:
        return f"ChunkJob(upload={self.upload_id}, chunk={self.chunk_no})"

    def file_path(self) -> Path:
        """Path of the file this chunk is written to."""
        return Path(self.parent_path) / str(self)


def create_chunk_job(
    upload_id: str,
    chunk_no: int,
    base_directory: str | PathLike,
    data: bytes,
    ack_queue: queue.Queue,
    err_queue: queue.Queue,
) -> ChunkJob:
    """Build a job whose file lives in ``base_directory/upload_id``."""
    return ChunkJob(
        upload_id=upload_id,
        parent_path=Path(base_directory) / upload_id,
        chunk_no=chunk_no,
        data=data,
        ack_queue=ack_queue,
        err_queue=err_queue,
    )


@dataclass
class ChunkJobError:
    """Report that a chunk could not be received or written."""

    upload_id: str
    chunk_no: int
    error: BaseException | None = None

    def to_json(self) -> bytes:
        """Encode as the JSON message sent back to the client."""
        return _compact_json(
            {
                "uploadID": self.upload_id,
                "chunk_no": self.chunk_no,
                "error": "" if self.error is None else str(self.error),
            }
        )


@dataclass(frozen=True)
class ChunkJobAck:
    """Acknowledgement that a chunk was written to disk."""

    upload_id: str
    chunk_no: int

    def to_json(self) -> bytes:
        """Encode as the JSON message sent back to the client."""
        return _compact_json(
            {"uploadID": self.upload_id, "chunk_no": self.chunk_no, "status": "ok"}
        )


class PipelineNotInitializedError(RuntimeError):
    """Raised when the shared pipeline is used before it is created."""


class ChunkJobPipeline:
    """Bounded queues of chunk jobs and the worker pools that drain them."""

    def __init__(self, buffer_size: int) -> None:
        self.jobs: queue.Queue[ChunkJob] = queue.Queue(maxsize=buffer_size)
        self.job_errors: queue.Queue[tuple[ChunkJob, BaseException]] = queue.Queue(
            maxsize=buffer_size
        )
        self.job_confirmations: queue.Queue[ChunkJob] = queue.Queue(
            maxsize=buffer_size
        )

    def start_worker_pool(
        self, stop_event: threading.Event, pool_size: int
    ) -> list[threading.Thread]:
        """Start threads that write queued jobs until ``stop_event`` is set."""
        return self._spawn("chunk-writer", pool_size, stop_event, self.jobs, self.write_chunk)

    def start_error_handler_pool(
        self, stop_event: threading.Event, handler_count: int
    ) -> list[threading.Thread]:
        """Start threads that report failed writes to each job's error queue."""
        return self._spawn(
            "chunk-error", handler_count, stop_event, self.job_errors, self._handle_failure
        )

    def start_confirmation_handler_pool(
        self, stop_event: threading.Event, handler_count: int
    ) -> list[threading.Thread]:
        """Start threads that acknowledge written jobs on each job's ack queue."""
        return self._spawn(
            "chunk-confirm",
            handler_count,
            stop_event,
            self.job_confirmations,
            self._handle_confirmation,
        )

    def add_chunk_job(self, job: ChunkJob) -> None:
        """Enqueue a job, blocking while the queue is full."""
        log.debug("queued %s", job)
        self.jobs.put(job)

    def write_chunk(self, job: ChunkJob) -> bool:
        """Write one job to disk and route it to the matching result queue."""
        try:
            Path(job.parent_path).mkdir(parents=True, exist_ok=True)
            job.file_path().write_bytes(job.data)
        except OSError as exc:
            log.error("error writing %s: %s", job, exc)
            self.job_errors.put((job, exc))
            return False
        log.info("%s written to disk", job)
        self.job_confirmations.put(job)
        return True

    @staticmethod
    def _handle_confirmation(job: ChunkJob) -> None:
        job.ack_queue.put(ChunkJobAck(upload_id=job.upload_id, chunk_no=job.chunk_no))

    @staticmethod
    def _handle_failure(failed: tuple[ChunkJob, BaseException]) -> None:
        job, exc = failed
        job.err_queue.put(
            ChunkJobError(upload_id=job.upload_id, chunk_no=job.chunk_no, error=exc)
        )

    @staticmethod
    def _spawn(
        name: str,
        count: int,
        stop_event: threading.Event,
        source: queue.Queue,
        handle: Callable[[Any], Any],
    ) -> list[threading.Thread]:
        def drain() -> None:
            while not stop_event.is_set():
                try:
                    item = source.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    continue
                handle(item)

        threads = [
            threading.Thread(target=drain, name=f"{name}-{i}", daemon=True)
            for i in range(count)
        ]
        for thread in threads:
            thread.start()
        return threads


_instance: ChunkJobPipeline | None = None
_instance_lock = threading.Lock()


def instantiate_pipeline(buffer_size: int) -> ChunkJobPipeline:
    """Create the shared pipeline once; later calls return the same one."""
    global _instance
    with _instance_lock:
        if _instance is None:
            _instance = ChunkJobPipeline(buffer_size)
        return _instance


def get_pipeline() -> ChunkJobPipeline:
    """Return the shared pipeline, which must already be instantiated."""
    if _instance is None:
        raise PipelineNotInitializedError(
            "chunk job pipeline not initialized; call instantiate_pipeline first"
        )
    return _instance