"""Cancellation token and progress events passed into an import run."""
import threading
from dataclasses import dataclass
from typing import Callable, Optional

STAGE_PARSING = "parsing"
STAGE_CATEGORIES = "categories"
STAGE_BRANDS = "brands"
STAGE_PRODUCTS = "products"
STAGE_QUALITY = "quality"
STAGE_COMPLETED = "completed"


class CancelToken:
    """Cooperative cancellation; safe to set from another thread."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class ProgressEvent:
    stage: str
    current: int
    total: int
    import_id: Optional[int] = None
    step: Optional[str] = None  # products sub-step: prices | stock | images

    def to_dict(self) -> dict:
        return {"stage": self.stage, "current": self.current, "total": self.total,
                "import_id": self.import_id, "step": self.step}


ProgressCallback = Callable[[ProgressEvent], None]
