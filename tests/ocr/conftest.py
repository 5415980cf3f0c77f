import pytest
from PIL import Image

from ScreenLookup.ocr.capture_backend import CaptureBackend, CaptureTarget, WindowInfo
from ScreenLookup.util.communication.ocr_protocol import NormalizedPoint, NormalizedRect, TextObservation, \
    WindowBounds


def make_text(text="テスト"):
    return TextObservation(
        text=text,
        confidence=0.95,
        bounding_box=NormalizedRect(0.1, 0.1, 0.5, 0.1),
        top_left=NormalizedPoint(0.1, 0.2),
        top_right=NormalizedPoint(0.6, 0.2),
        bottom_right=NormalizedPoint(0.6, 0.1),
        bottom_left=NormalizedPoint(0.1, 0.1),
    )


class FakeBackend(CaptureBackend):
    """Scriptable capture backend. The picker resolves on the next pump()."""

    def __init__(self):
        super().__init__()
        self.started = False
        self.picker_calls = 0
        self.picker_outcome = ("selected", CaptureTarget(
            content_rect=WindowBounds(100, 100, 400, 300), handle="filter", point_pixel_scale=2.0))
        self.windows = [WindowInfo(42, WindowBounds(100.5, 99, 401, 300), "Notes", "Untitled")]
        self.fresh_bounds = {42: WindowBounds(120, 110, 400, 300)}
        self.capture_calls = []
        self.recognize_calls = []
        self.capture_error = None
        self.recognize_error = None
        self.observations = [make_text()]
        self._queued = []

    def start(self):
        self.started = True

    def pump(self, timeout=0.0):
        queued, self._queued = self._queued, []
        for outcome in queued:
            kind = outcome[0]
            if kind == "selected":
                self._emit_selected(outcome[1])
            elif kind == "cancelled":
                self._emit_cancelled()
            else:
                self._emit_failed(outcome[1])

    def present_picker(self):
        self.picker_calls += 1
        if self.picker_outcome[0] == "raise":
            raise RuntimeError(self.picker_outcome[1])
        self._queued.append(self.picker_outcome)

    def capture_image(self, target, width, height):
        self.capture_calls.append((target, width, height))
        if self.capture_error:
            raise self.capture_error
        return Image.new("RGBA", (width, height))

    def recognize_text(self, image, languages):
        self.recognize_calls.append((image.size, list(languages)))
        if self.recognize_error:
            raise self.recognize_error
        return list(self.observations)

    def list_windows(self):
        return list(self.windows)

    def window_bounds(self, window_id):
        return self.fresh_bounds.get(window_id)


@pytest.fixture
def fake_backend():
    return FakeBackend()
