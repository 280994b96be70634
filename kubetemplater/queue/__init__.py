"""Work queue package."""

from .work_queue import QueueMetrics, WorkItem, WorkQueue

__all__ = ["QueueMetrics", "WorkItem", "WorkQueue"]
