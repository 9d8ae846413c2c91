"""
dataplane_orchestrator/controllers/result.py

What a reconcile pass asks of the work queue when it returns.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class Result(BaseModel):
    """
    Outcome of one reconcile pass.

    Attributes:
        requeue_after (Optional[float]): Seconds until the record should be
            reconciled again; None means wait for the next change notification.
    """

    requeue_after: Optional[float] = None

    class Config:
        frozen = True

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None
