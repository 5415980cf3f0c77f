"""Platform capture/recognition capability used by the OCR worker.

The worker never talks to a screen-capture or text-recognition API directly.
It goes through a CaptureBackend, which keeps the state machine testable
without a real picker, and lets unsupported platforms fail cleanly.
"""

from __future__ import annotations

import platform
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, List, Optional

from ScreenLookup.util.communication.ocr_protocol import CaptureFailed, RecognitionFailed, TextObservation, \
    WindowBounds
from ScreenLookup.util.logging_config import logger

WINDOW_MATCH_TOLERANCE = 2.0
FALLBACK_SCALE_FACTOR = 2.0


@dataclass(frozen=True)
class CaptureTarget:
    """The window selected for capture.

    ``handle`` is whatever the platform needs to capture the window again
    (a content filter on macOS). ``window_id`` is the stable id used to
    re-resolve the window's bounds, and may be unknown.
    """

    content_rect: WindowBounds
    handle: Any = None
    point_pixel_scale: float = 0.0
    window_id: Optional[int] = None
    app_name: Optional[str] = None
    window_title: Optional[str] = None


@dataclass(frozen=True)
class WindowInfo:
    window_id: int
    bounds: WindowBounds
    app_name: Optional[str] = None
    window_title: Optional[str] = None


SelectedCallback = Callable[[CaptureTarget], None]
CancelledCallback = Callable[[], None]
FailedCallback = Callable[[str], None]


class CaptureBackend(ABC):
    """Opaque capture and recognition capability.

    ``present_picker`` returns immediately; the outcome arrives later through
    exactly one of the bound callbacks, possibly on another thread.
    """

    def __init__(self):
        self._on_selected: Optional[SelectedCallback] = None
        self._on_cancelled: Optional[CancelledCallback] = None
        self._on_failed: Optional[FailedCallback] = None

    def bind(self, on_selected: SelectedCallback, on_cancelled: CancelledCallback,
             on_failed: FailedCallback) -> None:
        self._on_selected = on_selected
        self._on_cancelled = on_cancelled
        self._on_failed = on_failed

    def start(self) -> None:
        """Prepare platform state. Called once on the worker's control thread."""

    def pump(self, timeout: float = 0.0) -> None:
        """Give the platform event loop a chance to deliver callbacks."""

    def default_scale_factor(self) -> float:
        return FALLBACK_SCALE_FACTOR

    @abstractmethod
    def present_picker(self) -> None:
        ...

    @abstractmethod
    def capture_image(self, target: CaptureTarget, width: int, height: int):
        """Return a PIL image of the target, ``width`` x ``height`` pixels."""

    @abstractmethod
    def recognize_text(self, image, languages: List[str]) -> List[TextObservation]:
        ...

    @abstractmethod
    def list_windows(self) -> List[WindowInfo]:
        ...

    @abstractmethod
    def window_bounds(self, window_id: int) -> Optional[WindowBounds]:
        ...

    def _emit_selected(self, target: CaptureTarget) -> None:
        if self._on_selected:
            self._on_selected(target)

    def _emit_cancelled(self) -> None:
        if self._on_cancelled:
            self._on_cancelled()

    def _emit_failed(self, cause: str) -> None:
        if self._on_failed:
            self._on_failed(cause)


def _close(a: float, b: float, tolerance: float) -> bool:
    return abs(a - b) < tolerance


def match_window(rect: WindowBounds, windows: Iterable[WindowInfo],
                 tolerance: float = WINDOW_MATCH_TOLERANCE) -> Optional[WindowInfo]:
    """First window whose position and size are within ``tolerance`` of ``rect``."""
    for window in windows:
        bounds = window.bounds
        if (_close(bounds.x, rect.x, tolerance)
                and _close(bounds.y, rect.y, tolerance)
                and _close(bounds.width, rect.width, tolerance)
                and _close(bounds.height, rect.height, tolerance)):
            return window
    return None


def identify_target(target: CaptureTarget, backend: CaptureBackend) -> CaptureTarget:
    """Recover a window id for a picked target that came without one."""
    if target.window_id is not None:
        return target
    try:
        windows = backend.list_windows()
    except Exception as e:
        logger.warning(f"Could not list windows to identify the selection: {e}")
        return target
    match = match_window(target.content_rect, windows)
    if match is None:
        logger.debug(f"No on-screen window matches {target.content_rect}; bounds will not be refreshed")
        return target
    logger.debug(f"Selection matched window {match.window_id} ({match.app_name}: {match.window_title})")
    return replace(
        target,
        window_id=match.window_id,
        app_name=target.app_name or match.app_name,
        window_title=target.window_title or match.window_title,
    )


class UnsupportedCaptureBackend(CaptureBackend):
    """Backend for platforms without window capture. The picker never starts."""

    def __init__(self, reason: str):
        super().__init__()
        self.reason = reason

    def present_picker(self) -> None:
        logger.warning(f"Window picker unavailable: {self.reason}")
        self._emit_failed(self.reason)

    def capture_image(self, target: CaptureTarget, width: int, height: int):
        raise CaptureFailed(self.reason)

    def recognize_text(self, image, languages: List[str]) -> List[TextObservation]:
        raise RecognitionFailed(self.reason)

    def list_windows(self) -> List[WindowInfo]:
        return []

    def window_bounds(self, window_id: int) -> Optional[WindowBounds]:
        return None


def create_backend() -> CaptureBackend:
    if sys.platform != 'darwin':
        return UnsupportedCaptureBackend("Window capture is only supported on macOS")
    major = int((platform.mac_ver()[0] or "0").split('.')[0])
    if major < 14:
        return UnsupportedCaptureBackend("Window capture requires macOS 14 (Sonoma) or newer")
    try:
        from ScreenLookup.ocr.macos_capture import MacOSCaptureBackend
    except ImportError as e:
        logger.error(f"pyobjc frameworks are missing, window capture disabled: {e}")
        return UnsupportedCaptureBackend(f"pyobjc frameworks are missing: {e}")
    return MacOSCaptureBackend()
