"""State of one file upload, shared by the connection and the write pipeline."""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


@dataclass(eq=False)
class UploadSession:
    """Progress counters and message queues for a single upload."""

    upload_id: str
    total_chunks: int
    chunk_size: int
    parent_path: str
    file_name: str
    conn: Any = None
    chunks_uploaded: int = 0
    chunks_uploaded_since_last_update: int = 0
    last_activity: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_complete: bool = False
    in_queue: queue.Queue = field(default_factory=queue.Queue, repr=False)
    err_queue: queue.Queue = field(default_factory=queue.Queue, repr=False)
    ack_queue: queue.Queue = field(default_factory=queue.Queue, repr=False)
    done: threading.Event = field(default_factory=threading.Event, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def notify_confirmation(self) -> None:
        """Count one confirmed chunk and mark the session done when all are in."""
        with self._lock:
            self.chunks_uploaded += 1
            self.chunks_uploaded_since_last_update += 1
            if self.chunks_uploaded < self.total_chunks:
                return
            self.is_complete = True
        self.done.set()