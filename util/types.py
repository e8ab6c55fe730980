# util/types.py
from typing import Callable, Literal, TypedDict


# Flow: narrow types for queue lifecycle events.
EventName = Literal["added", "processing", "progress", "completed", "failed", "cancelled"]

# (done, total) -> None; called after each unit of work inside a stage.
ProgressCallback = Callable[[int, int], None]


class QueueStats(TypedDict):
    total: int
    pending: int
    processing: int
    completed: int
    failed: int
