from __future__ import annotations

import threading
import uuid
from collections.abc import Sequence
from concurrent.futures import Future

from .config import Settings
from .errors import ErrorCode, app_error
from .inference.types import PredictOutput
from .ink.surface import InkSurface, Point
from .reader import DigitReader, ReadResult


class DrawingSession:
    """One drawing surface with at most one prediction in flight.

    ``predict`` captures a snapshot before any work starts, so strokes or a
    ``clear`` arriving mid-prediction only affect the next request.
    """

    def __init__(self, session_id: str, surface: InkSurface, reader: DigitReader) -> None:
        self.session_id = session_id
        self.surface = surface
        self._reader = reader
        self._inflight = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._inflight.locked()

    def add_stroke(self, points: Sequence[Point]) -> int:
        self.surface.add_stroke(points)
        return self.surface.stroke_count

    def clear(self) -> None:
        self.surface.clear()

    def predict(self, *, visualize: bool = False) -> ReadResult:
        """Read the current drawing.

        Once the model call is submitted the surface stays busy until that call
        finishes, even when this request gives up on a timeout.
        """
        if not self._inflight.acquire(blocking=False):
            raise app_error(ErrorCode.busy)
        submitted: list[Future[PredictOutput]] = []

        def _hold(fut: Future[PredictOutput]) -> None:
            submitted.append(fut)
            fut.add_done_callback(lambda _f: self._inflight.release())

        try:
            snapshot = self.surface.snapshot()
            return self._reader.read(snapshot, visualize=visualize, on_submit=_hold)
        finally:
            if not submitted:
                self._inflight.release()


class SessionRegistry:
    """Bounded map of live drawing sessions keyed by an opaque id."""

    def __init__(self, settings: Settings, reader: DigitReader) -> None:
        self._settings = settings
        self._reader = reader
        self._lock = threading.Lock()
        self._sessions: dict[str, DrawingSession] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def create(self) -> DrawingSession:
        digits = self._settings.digits
        surface = InkSurface(digits.surface_size, digits.surface_size, digits.stroke_width)
        sid = uuid.uuid4().hex
        sess = DrawingSession(sid, surface, self._reader)
        with self._lock:
            if len(self._sessions) >= digits.max_surfaces:
                # evict the oldest idle session
                victim = next((k for k, v in self._sessions.items() if not v.busy), None)
                if victim is None:
                    raise app_error(ErrorCode.busy, "All drawing surfaces are busy")
                del self._sessions[victim]
            self._sessions[sid] = sess
        return sess

    def get(self, session_id: str) -> DrawingSession:
        with self._lock:
            sess = self._sessions.get(session_id)
        if sess is None:
            raise app_error(ErrorCode.surface_not_found)
        return sess

    def remove(self, session_id: str) -> None:
        with self._lock:
            if self._sessions.pop(session_id, None) is None:
                raise app_error(ErrorCode.surface_not_found)
