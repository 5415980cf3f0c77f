import asyncio
from concurrent.futures import Future

import pytest

from ScreenLookup import lookup
from ScreenLookup.lookup import CRASH_MESSAGE, LookupController
from ScreenLookup.util.communication.ocr_protocol import CaptureFailed, PickCancelled, RecognitionResult, \
    ScanTimedOut, WindowBounds, WindowSelection
from ScreenLookup.util.config.configuration import Config


class FakeOverlay:
    def __init__(self):
        self.calls = []

    def __getattr__(self, name):
        def record(*args):
            self.calls.append((name,) + args)
        return record

    def names(self):
        return [call[0] for call in self.calls]


class FakeBridge:
    def __init__(self, scan_outcome=None, pick_outcome=None):
        self.scan_outcome = scan_outcome
        self.pick_outcome = pick_outcome
        self.scan_args = []
        self.stopped = False

    async def scan(self, languages=None, save_to=None):
        self.scan_args.append((languages, save_to))
        if isinstance(self.scan_outcome, BaseException):
            raise self.scan_outcome
        return self.scan_outcome

    async def pick(self):
        if isinstance(self.pick_outcome, BaseException):
            raise self.pick_outcome
        return self.pick_outcome

    async def stop(self):
        self.stopped = True


class InlineRunner:
    """Runs each coroutine to completion right away."""

    def __init__(self):
        self.shut_down = False

    def submit(self, coro):
        future = Future()
        try:
            future.set_result(asyncio.run(coro))
        except Exception as e:
            future.set_exception(e)
        return future

    def shutdown(self):
        self.shut_down = True


RESULT = RecognitionResult(800, 600, [], WindowBounds(10.4, 20.6, 400, 300))


@pytest.fixture
def announced(monkeypatch):
    messages = []
    monkeypatch.setattr(lookup.control_ipc, "announce_error", messages.append)
    return messages


def make_controller(bridge, config=None):
    overlay = FakeOverlay()
    quits = []
    controller = LookupController(overlay, lambda func: func(), config or Config(), on_quit=lambda: quits.append(1))
    controller.attach(bridge, InlineRunner())
    return controller, overlay, quits


def test_scan_renders_and_shows_overlay(announced):
    config = Config()
    config.ocr.languages = ["en"]
    config.ocr.save_captures_to = "/tmp/last.png"
    bridge = FakeBridge(scan_outcome=RESULT)
    controller, overlay, _ = make_controller(bridge, config)

    controller.request_scan()

    assert bridge.scan_args == [(["en"], "/tmp/last.png")]
    assert overlay.calls == [
        ("set_loading", True),
        ("set_loading", False),
        ("clear_error",),
        ("position_overlay", RESULT.bounds),
        ("render_results", RESULT),
        ("show_overlay",),
    ]
    assert controller.scan_in_progress is False
    assert announced == []


def test_scan_failure_shows_error(announced):
    controller, overlay, _ = make_controller(FakeBridge(scan_outcome=CaptureFailed("Failed: no permission")))

    controller.request_scan()

    assert overlay.calls[-1] == ("show_error", "Failed: no permission")
    assert ("set_loading", False) in overlay.calls
    assert announced == ["Failed: no permission"]


def test_scan_timeout_is_shown(announced):
    controller, overlay, _ = make_controller(FakeBridge(scan_outcome=ScanTimedOut(30.0)))

    controller.request_scan()

    assert overlay.calls[-1] == ("show_error", "OCR scan timed out")


def test_cancellation_is_not_shown(announced):
    controller, overlay, _ = make_controller(FakeBridge(
        scan_outcome=PickCancelled("User cancelled window selection"),
        pick_outcome=PickCancelled("User cancelled window selection")))

    controller.request_scan()
    controller.request_pick()

    assert "show_error" not in overlay.names()
    assert announced == []


def test_pick_moves_overlay_to_selection():
    selection = WindowSelection(42, "Notes", "Untitled", WindowBounds(1, 2, 3, 4))
    controller, overlay, _ = make_controller(FakeBridge(pick_outcome=selection))

    controller.request_pick()

    assert overlay.calls == [("position_overlay", selection.bounds), ("show_overlay",)]
    assert controller.pick_in_progress is False


def test_requests_are_ignored_while_a_call_is_pending():
    bridge = FakeBridge(scan_outcome=RESULT)
    controller, overlay, _ = make_controller(bridge)
    controller.scan_in_progress = True

    controller.request_scan()
    controller.request_pick()

    assert bridge.scan_args == []
    assert overlay.calls == []


def test_requests_without_bridge_do_nothing():
    overlay = FakeOverlay()
    controller = LookupController(overlay, lambda func: func(), Config())

    controller.request_scan()
    controller.request_pick()

    assert overlay.calls == []


def test_crash_shows_restart_message(announced):
    controller, overlay, _ = make_controller(FakeBridge())

    controller.on_worker_exit(3, False)

    assert overlay.calls == [("show_error", CRASH_MESSAGE)]
    assert announced == [CRASH_MESSAGE]


@pytest.mark.parametrize("code,expected", [(0, False), (0, True), (-9, True)])
def test_normal_exit_is_not_reported(code, expected):
    controller, overlay, _ = make_controller(FakeBridge())

    controller.on_worker_exit(code, expected)

    assert overlay.calls == []


def test_fault_shows_cause():
    controller, overlay, _ = make_controller(FakeBridge())

    controller.on_worker_fault(BrokenPipeError("pipe closed"))

    assert overlay.calls == [("show_error", "OCR engine error: pipe closed")]


def test_control_commands_are_routed():
    selection = WindowSelection(bounds=WindowBounds(1, 2, 3, 4))
    controller, overlay, quits = make_controller(FakeBridge(pick_outcome=selection))

    controller.handle_control_command({"function": "toggle_overlay"})
    controller.handle_control_command({"function": "hide_overlay"})
    controller.handle_control_command({"function": "pick"})
    controller.handle_control_command({"function": "unknown"})
    controller.handle_control_command({"function": "quit"})

    assert overlay.names() == ["toggle_overlay", "hide_overlay", "position_overlay", "show_overlay"]
    assert quits == [1]


def test_shutdown_stops_worker_and_loop():
    bridge = FakeBridge()
    controller, _, _ = make_controller(bridge)
    runner = controller.runner

    controller.shutdown()

    assert bridge.stopped is True
    assert runner.shut_down is True
    assert controller.bridge is None


def test_parse_args():
    args = lookup.parse_args(["--scan", "--no-stdin"])
    assert args.scan is True
    assert args.pick is False
    assert args.no_stdin is True
