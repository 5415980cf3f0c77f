import argparse
import sys
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional

from ScreenLookup import __version__
from ScreenLookup.util.communication import control_ipc
from ScreenLookup.util.communication.control_ipc import FunctionName
from ScreenLookup.util.communication.ocr_bridge import BridgeThread, OCRBridge
from ScreenLookup.util.communication.ocr_protocol import OCRError, RecognitionResult, WindowSelection, \
    is_cancellation
from ScreenLookup.util.config.configuration import Config, get_config
from ScreenLookup.util.logging_config import cleanup_old_logs, initialize_logging, logger

CRASH_MESSAGE = "OCR engine crashed. Restart the app."
FAULT_MESSAGE = "OCR engine error: {cause}"
STARTUP_FAILED_TITLE = "Failed to start the OCR worker"

Dispatch = Callable[[Callable[[], None]], None]


class LookupController:
    """
    Connects triggers, the OCR bridge and the overlay.

    GUI methods (request_*, _on_*) run on the GUI thread. Bridge callbacks
    arrive on the bridge loop thread and are handed over through ``dispatch``.
    """

    def __init__(self, overlay, dispatch: Dispatch, config: Config, on_quit: Optional[Callable[[], None]] = None):
        self.overlay = overlay
        self.dispatch = dispatch
        self.config = config
        self.on_quit = on_quit
        self.bridge: Optional[OCRBridge] = None
        self.runner: Optional[BridgeThread] = None
        self.scan_in_progress = False
        self.pick_in_progress = False

    def attach(self, bridge: OCRBridge, runner: BridgeThread) -> None:
        self.bridge = bridge
        self.runner = runner

    # Triggers ---------------------------------------------------------------

    def request_scan(self) -> None:
        if self.bridge is None:
            logger.warning("Scan requested before the OCR worker is running")
            return
        if self.scan_in_progress or self.pick_in_progress:
            logger.info("Scan requested while another OCR call is pending, ignoring")
            return
        self.scan_in_progress = True
        self.overlay.set_loading(True)
        ocr = self.config.ocr
        future = self.runner.submit(self.bridge.scan(languages=ocr.languages, save_to=ocr.save_captures_to))
        future.add_done_callback(lambda f: self._deliver(f, self._on_scan_result, self._on_scan_failed))

    def request_pick(self) -> None:
        if self.bridge is None:
            logger.warning("Pick requested before the OCR worker is running")
            return
        if self.scan_in_progress or self.pick_in_progress:
            logger.info("Pick requested while another OCR call is pending, ignoring")
            return
        self.pick_in_progress = True
        future = self.runner.submit(self.bridge.pick())
        future.add_done_callback(lambda f: self._deliver(f, self._on_pick_result, self._on_pick_failed))

    def _deliver(self, future: Future, on_result: Callable[[Any], None],
                 on_error: Callable[[BaseException], None]) -> None:
        error = future.exception()
        if error is not None:
            self.dispatch(lambda: on_error(error))
        else:
            result = future.result()
            self.dispatch(lambda: on_result(result))

    # Results (GUI thread) ---------------------------------------------------

    def _on_scan_result(self, result: RecognitionResult) -> None:
        self.scan_in_progress = False
        self.overlay.set_loading(False)
        self.overlay.clear_error()
        self.overlay.position_overlay(result.bounds)
        self.overlay.render_results(result)
        self.overlay.show_overlay()
        logger.info(f"Scan complete: {len(result.observations)} observations "
                    f"({result.image_width}x{result.image_height})")

    def _on_scan_failed(self, error: BaseException) -> None:
        self.scan_in_progress = False
        self.overlay.set_loading(False)
        self._report(error, "Scan")

    def _on_pick_result(self, selection: WindowSelection) -> None:
        self.pick_in_progress = False
        logger.info(f"Window selected: {selection.app_name} - {selection.window_title}")
        self.overlay.position_overlay(selection.bounds)
        self.overlay.show_overlay()

    def _on_pick_failed(self, error: BaseException) -> None:
        self.pick_in_progress = False
        self._report(error, "Pick")

    def _report(self, error: BaseException, what: str) -> None:
        if is_cancellation(error):
            logger.info(f"{what} cancelled by user")
            return
        logger.error(f"{what} failed: {error}")
        self.overlay.show_error(str(error))
        control_ipc.announce_error(str(error))

    # Worker notifications (bridge thread) -------------------------------------

    def on_worker_exit(self, returncode: Optional[int], expected: bool) -> None:
        if expected or returncode == 0:
            logger.info(f"OCR worker stopped (code {returncode})")
            return
        logger.error(f"OCR worker crashed with code: {returncode}")
        control_ipc.announce_error(CRASH_MESSAGE)
        self.dispatch(lambda: self.overlay.show_error(CRASH_MESSAGE))

    def on_worker_fault(self, error: BaseException) -> None:
        message = FAULT_MESSAGE.format(cause=error)
        self.dispatch(lambda: self.overlay.show_error(message))

    # Control channel (IPC listener thread) ------------------------------------

    def handle_control_command(self, msg: Dict[str, Any]) -> None:
        function = msg.get("function")
        handlers = {
            FunctionName.SCAN.value: self.request_scan,
            FunctionName.PICK.value: self.request_pick,
            FunctionName.TOGGLE_OVERLAY.value: self.overlay.toggle_overlay,
            FunctionName.HIDE_OVERLAY.value: self.overlay.hide_overlay,
            FunctionName.QUIT.value: self.quit,
        }
        handler = handlers.get(function)
        if handler is None:
            logger.warning(f"Unknown control command: {function}")
            return
        self.dispatch(handler)

    def quit(self) -> None:
        logger.info("Quit requested")
        if self.on_quit:
            self.on_quit()

    def shutdown(self) -> None:
        """Stop the worker (quit, bounded wait, kill) and the bridge loop."""
        if self.bridge is not None and self.runner is not None:
            timeout = self.config.worker.stop_timeout + 1
            try:
                self.runner.submit(self.bridge.stop()).result(timeout)
            except Exception as e:
                logger.warning(f"Error while stopping OCR worker: {e}")
        if self.runner is not None:
            self.runner.shutdown()
        self.bridge = None


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="screenlookup",
                                     description="Scan a window with OCR and overlay the recognized text.")
    parser.add_argument("--scan", action="store_true", help="Scan as soon as the OCR worker is ready")
    parser.add_argument("--pick", action="store_true", help="Open the window picker as soon as the worker is ready")
    parser.add_argument("--no-stdin", action="store_true", help="Do not listen for LOOKUPCMD lines on stdin")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    initialize_logging(logger_name="screenlookup")
    cleanup_old_logs()

    from PyQt6.QtWidgets import QApplication, QMessageBox
    from ScreenLookup.ui.overlay_window import GuiDispatcher, OverlayWindow

    config = get_config()
    app = QApplication.instance() or QApplication(sys.argv[:1])
    app.setQuitOnLastWindowClosed(False)

    overlay = OverlayWindow(config.overlay)
    dispatcher = GuiDispatcher()
    controller = LookupController(overlay, dispatcher, config, on_quit=app.quit)

    runner = BridgeThread()
    runner.start()
    bridge = OCRBridge.from_config(config, on_exit=controller.on_worker_exit, on_fault=controller.on_worker_fault)
    try:
        version = runner.submit(bridge.start()).result()
    except OCRError as e:
        logger.error(f"{STARTUP_FAILED_TITLE}: {e}")
        QMessageBox.critical(None, "ScreenLookup", f"{STARTUP_FAILED_TITLE}\n\n{e}")
        runner.shutdown()
        return 1

    controller.attach(bridge, runner)
    app.aboutToQuit.connect(controller.shutdown)

    control_ipc.register_command_handler(controller.handle_control_command)
    if not args.no_stdin:
        control_ipc.start_ipc_listener_in_thread()
    control_ipc.announce_ready(version)

    if args.scan:
        controller.request_scan()
    elif args.pick:
        controller.request_pick()

    logger.info(f"ScreenLookup {__version__} running with OCR worker {version}")
    return app.exec()


if __name__ == "__main__":
    sys.exit(main())
