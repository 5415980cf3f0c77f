"""Runs the real OCR worker over stdio with a backend whose capture stalls.

Usage: python slow_ocr_worker.py <capture seconds>
"""

import sys
import time

from PIL import Image

from ScreenLookup.ocr.capture_backend import CaptureBackend, CaptureTarget, WindowInfo
from ScreenLookup.ocr.ocr_worker import OCRWorker
from ScreenLookup.util.communication.ocr_protocol import WindowBounds


class SlowBackend(CaptureBackend):
    def __init__(self, capture_seconds):
        super().__init__()
        self.capture_seconds = capture_seconds
        self._selected = False

    def pump(self, timeout=0.0):
        if self._selected:
            self._selected = False
            self._emit_selected(CaptureTarget(content_rect=WindowBounds(0, 0, 100, 100), handle="filter"))

    def present_picker(self):
        self._selected = True

    def capture_image(self, target, width, height):
        time.sleep(self.capture_seconds)
        return Image.new("RGBA", (width, height))

    def recognize_text(self, image, languages):
        return []

    def list_windows(self):
        return [WindowInfo(7, WindowBounds(0, 0, 100, 100), "Slow", "Capture")]

    def window_bounds(self, window_id):
        return WindowBounds(0, 0, 100, 100)


if __name__ == "__main__":
    sys.exit(OCRWorker(SlowBackend(float(sys.argv[1]))).run())
