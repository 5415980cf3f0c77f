"""OCR worker process.

Reads one JSON command per line from stdin and prints one JSON response per
line to stdout. stdout belongs to the protocol; logging goes to stderr.

Threads:
    OCR_Worker_Stdin  reads and decodes stdin lines, posts events
    OCR_Scan          runs one capture+recognize sequence, posts its result
    main              the control loop: owns the state, runs every transition
                      and is the only writer of stdout

Run with ``python -m ScreenLookup.ocr.ocr_worker``.
"""

from __future__ import annotations

import queue
import sys
import threading
from typing import Optional, Sequence, TextIO

from ScreenLookup import __version__
from ScreenLookup.ocr.capture_backend import CaptureBackend, CaptureTarget, create_backend, identify_target
from ScreenLookup.ocr.scan import capture_and_recognize
from ScreenLookup.ocr.worker_state import CommandReceived, Event, InputClosed, InvalidLine, NoTarget, \
    PickerCancelled, PickerFailed, PickerSelected, PresentPicker, RunScan, ScanFinished, Terminate, WorkerState, \
    step
from ScreenLookup.util.communication.ocr_protocol import MSG_CAPTURE_FAILED, MalformedMessage, ReadyInfo, \
    Response, ResponseType, decode_command, encode_response
from ScreenLookup.util.config.configuration import get_config
from ScreenLookup.util.logging_config import logger, initialize_logging

POLL_INTERVAL = 0.05


class OCRWorker:
    def __init__(self, backend: CaptureBackend, stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None,
                 default_languages: Optional[Sequence[str]] = None, poll_interval: float = POLL_INTERVAL):
        self.backend = backend
        self.state: WorkerState = NoTarget()
        self.default_languages = list(default_languages) if default_languages else None
        self.poll_interval = poll_interval
        self._stdin = stdin
        self._stdout = stdout
        self._events: "queue.Queue[Event]" = queue.Queue()
        self._running = False
        self._stdin_thread: Optional[threading.Thread] = None
        self._scan_thread: Optional[threading.Thread] = None

    # Output -----------------------------------------------------------------

    def send_response(self, response: Response) -> None:
        line = encode_response(response)
        out = self._stdout or sys.stdout
        out.write(line)
        out.flush()
        logger.debug(f"OCR worker sent: {line.strip()}")

    # Input ------------------------------------------------------------------

    def post(self, event: Event) -> None:
        """Queue an event for the control loop. Safe from any thread."""
        self._events.put(event)

    def _stdin_loop(self) -> None:
        """Blocking loop reading stdin for commands."""
        logger.debug("Starting OCR worker stdin loop...")
        stream = self._stdin or sys.stdin
        try:
            for raw in stream:
                line = raw.strip()
                if not line:
                    continue
                try:
                    command = decode_command(line)
                except MalformedMessage as e:
                    logger.warning(f"Failed to parse command line: {line} error={e}")
                    self.post(InvalidLine(str(e)))
                    continue
                logger.debug(f"OCR worker received command: {command}")
                self.post(CommandReceived(command))
        except (OSError, ValueError) as e:
            logger.error(f"OCR worker stdin loop error: {e}")
        finally:
            logger.debug("stdin closed")
            self.post(InputClosed())

    def start_ipc_listener(self) -> threading.Thread:
        """Start stdin reading in a daemon thread so the control loop is never blocked."""
        if self._stdin_thread and self._stdin_thread.is_alive():
            logger.warning("OCR worker stdin listener already running")
            return self._stdin_thread
        self._stdin_thread = threading.Thread(target=self._stdin_loop, name="OCR_Worker_Stdin", daemon=True)
        self._stdin_thread.start()
        return self._stdin_thread

    # Platform callbacks (any thread) ----------------------------------------

    def _on_picker_selected(self, target: CaptureTarget) -> None:
        self.post(PickerSelected(target))

    def _on_picker_cancelled(self) -> None:
        self.post(PickerCancelled())

    def _on_picker_failed(self, cause: str) -> None:
        self.post(PickerFailed(cause))

    # Control loop -----------------------------------------------------------

    def handle(self, event: Event) -> None:
        if isinstance(event, PickerSelected):
            event = PickerSelected(identify_target(event.target, self.backend))
        transition = step(self.state, event)
        self.state = transition.state
        for response in transition.responses:
            self.send_response(response)
        for effect in transition.effects:
            self._execute(effect)

    def _execute(self, effect) -> None:
        if isinstance(effect, PresentPicker):
            logger.info("Presenting window picker")
            try:
                self.backend.present_picker()
            except Exception as e:
                logger.error(f"Window picker failed to start: {e}")
                self.post(PickerFailed(str(e)))
        elif isinstance(effect, RunScan):
            self._scan_thread = threading.Thread(target=self._run_scan, args=(effect,), name="OCR_Scan",
                                                 daemon=True)
            self._scan_thread.start()
        elif isinstance(effect, Terminate):
            logger.info("OCR worker terminating")
            self._running = False

    def _run_scan(self, effect: RunScan) -> None:
        try:
            response = capture_and_recognize(self.backend, effect.target, effect.command, self.default_languages)
        except Exception as e:
            logger.exception(f"Unexpected scan failure: {e}")
            response = Response.fail(ResponseType.SCAN.value, MSG_CAPTURE_FAILED.format(cause=e))
        self.post(ScanFinished(response))

    def _drain_events(self) -> None:
        try:
            event = self._events.get(timeout=self.poll_interval)
        except queue.Empty:
            return
        while True:
            self.handle(event)
            if not self._running:
                return
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return

    def run(self) -> int:
        """Run until quit or end of input. Returns the process exit code."""
        self.backend.bind(self._on_picker_selected, self._on_picker_cancelled, self._on_picker_failed)
        self.backend.start()
        self._running = True
        self.send_response(Response.ok(ResponseType.READY.value, ReadyInfo(version=__version__)))
        self.start_ipc_listener()
        # An in-flight scan thread is a daemon and does not hold up exit.
        while self._running:
            self.backend.pump()
            self._drain_events()
        return 0


def main() -> int:
    initialize_logging(logger_name="ocr_worker", console_level="WARNING", console_sink=sys.stderr)
    languages = get_config().ocr.languages
    backend = create_backend()
    logger.info(f"OCR worker {__version__} starting with {backend.__class__.__name__}")
    return OCRWorker(backend, default_languages=languages).run()


if __name__ == "__main__":
    sys.exit(main())
