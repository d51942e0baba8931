"""
Admission control for the upload queue.

Holds the FIFO backlog of queued job ids and the count of occupied
processing slots. Not thread-safe on its own: UploadQueue calls it only
while holding its lock.
"""

from collections import deque
from typing import Deque, Optional, Tuple


class Scheduler:

    def __init__(self, max_concurrency: int):
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {max_concurrency}")
        self.max_concurrency = max_concurrency
        self.processing = 0
        self._backlog: Deque[str] = deque()

    def enqueue(self, job_id: str) -> None:
        """Appends job_id at the back of the backlog."""
        if job_id in self._backlog:
            raise ValueError(f"{job_id} is already queued")
        self._backlog.append(job_id)

    def discard(self, job_id: str) -> bool:
        try:
            self._backlog.remove(job_id)
        except ValueError:
            return False
        return True

    def admit_next(self) -> Optional[str]:
        """
        Pops the oldest backlog entry and takes a slot for it.
        Returns None when every slot is taken or the backlog is empty.
        """
        if self.processing >= self.max_concurrency or not self._backlog:
            return None
        self.processing += 1
        return self._backlog.popleft()

    def release_slot(self) -> None:
        if self.processing == 0:
            raise RuntimeError("release_slot() called with no slot in use")
        self.processing -= 1

    @property
    def backlog(self) -> Tuple[str, ...]:
        return tuple(self._backlog)

    @property
    def free_slots(self) -> int:
        return self.max_concurrency - self.processing

    def __len__(self) -> int:
        return len(self._backlog)
