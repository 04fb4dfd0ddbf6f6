"""Progress events emitted while the embedding engine initializes."""

import logging
from dataclasses import asdict, dataclass
from typing import Callable, Literal, Optional

logger = logging.getLogger(__name__)

ProgressStatus = Literal["downloading", "loading", "processing", "ready", "error"]


@dataclass(frozen=True)
class ProgressEvent:
    """A single initialization progress update for UI feedback."""
    status: ProgressStatus
    message: str = ""
    progress: Optional[int] = None      # percent, downloading only
    load_time_ms: Optional[int] = None  # ready only
    from_cache: Optional[bool] = None   # ready only

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


ProgressCallback = Callable[[ProgressEvent], None]


def notify(observer: Optional[ProgressCallback], event: ProgressEvent) -> None:
    """Deliver an event; observer failures never affect initialization."""
    if observer is None:
        return
    try:
        observer(event)
    except Exception:
        logger.warning("Progress observer raised on %s event", event.status, exc_info=True)
