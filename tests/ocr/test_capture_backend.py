import pytest

from ScreenLookup.ocr import capture_backend
from ScreenLookup.ocr.capture_backend import CaptureTarget, UnsupportedCaptureBackend, WindowInfo, \
    identify_target, match_window
from ScreenLookup.util.communication.ocr_protocol import CaptureFailed, RecognitionFailed, WindowBounds

RECT = WindowBounds(100, 100, 400, 300)


def test_match_window_within_tolerance():
    windows = [
        WindowInfo(1, WindowBounds(0, 0, 400, 300)),
        WindowInfo(2, WindowBounds(101.9, 98.1, 398.5, 301)),
        WindowInfo(3, WindowBounds(100, 100, 400, 300)),
    ]
    assert match_window(RECT, windows).window_id == 2


def test_match_window_rejects_difference_of_two_or_more():
    windows = [WindowInfo(1, WindowBounds(102, 100, 400, 300)), WindowInfo(2, WindowBounds(100, 100, 400, 297))]
    assert match_window(RECT, windows) is None


def test_identify_target_fills_window_details(fake_backend):
    target = CaptureTarget(content_rect=RECT, handle="filter")

    identified = identify_target(target, fake_backend)

    assert identified.window_id == 42
    assert identified.app_name == "Notes"
    assert identified.window_title == "Untitled"
    assert identified.handle == "filter"


def test_identify_target_keeps_known_id(fake_backend):
    target = CaptureTarget(content_rect=RECT, window_id=7)
    assert identify_target(target, fake_backend) is target


def test_identify_target_without_match_keeps_target(fake_backend):
    fake_backend.windows = []
    target = CaptureTarget(content_rect=RECT)
    assert identify_target(target, fake_backend) == target


def test_identify_target_tolerates_listing_errors(fake_backend, monkeypatch):
    def boom():
        raise RuntimeError("no window server")

    monkeypatch.setattr(fake_backend, "list_windows", boom)
    target = CaptureTarget(content_rect=RECT)
    assert identify_target(target, fake_backend) == target


def test_unsupported_backend_picker_fails_to_start():
    backend = UnsupportedCaptureBackend("Window capture is only supported on macOS")
    failures = []
    backend.bind(lambda target: None, lambda: None, failures.append)

    backend.present_picker()

    assert failures == ["Window capture is only supported on macOS"]
    assert backend.list_windows() == []
    assert backend.window_bounds(1) is None
    with pytest.raises(CaptureFailed):
        backend.capture_image(CaptureTarget(content_rect=RECT), 10, 10)
    with pytest.raises(RecognitionFailed):
        backend.recognize_text(None, ["en"])


def test_create_backend_off_macos_is_unsupported(monkeypatch):
    monkeypatch.setattr(capture_backend.sys, "platform", "linux")
    backend = capture_backend.create_backend()
    assert isinstance(backend, UnsupportedCaptureBackend)
    assert "macOS" in backend.reason


def test_create_backend_on_old_macos_is_unsupported(monkeypatch):
    monkeypatch.setattr(capture_backend.sys, "platform", "darwin")
    monkeypatch.setattr(capture_backend.platform, "mac_ver", lambda: ("13.6", ("", "", ""), "arm64"))
    backend = capture_backend.create_backend()
    assert isinstance(backend, UnsupportedCaptureBackend)
    assert "14" in backend.reason


def test_default_scale_factor_fallback():
    assert UnsupportedCaptureBackend("x").default_scale_factor() == 2.0
