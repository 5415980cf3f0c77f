"""Coordinator side of the OCR worker link.

OCRBridge launches the worker as a child process, writes commands to its
stdin and correlates the responses read from its stdout. The protocol has no
request id, so replies are matched by ``type``, and at most one call of each
kind may be outstanding. Every call is bounded by a local timeout; a late reply
after a timeout is logged and dropped.
"""

import asyncio
import sys
import threading
from concurrent.futures import Future as ConcurrentFuture
from typing import Any, Callable, Coroutine, Dict, List, Optional, Sequence

from ScreenLookup.util.communication.ocr_protocol import Action, BridgeBusy, Command, MalformedMessage, \
    OCRError, PickTimedOut, RecognitionResult, Response, ResponseType, ScanTimedOut, StartupTimeout, \
    WindowSelection, WorkerCrashed, WorkerNotRunning, classify_failure, decode_response, encode_command
from ScreenLookup.util.logging_config import logger

DEFAULT_WORKER_COMMAND = [sys.executable, "-m", "ScreenLookup.ocr.ocr_worker"]
READ_CHUNK_SIZE = 65536

# (exit code, whether the exit followed a quit command)
ExitCallback = Callable[[Optional[int], bool], None]
FaultCallback = Callable[[BaseException], None]


class OCRBridge:
    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        *,
        ready_timeout: float = 5.0,
        pick_timeout: float = 60.0,
        scan_timeout: float = 30.0,
        stop_timeout: float = 2.0,
        on_exit: Optional[ExitCallback] = None,
        on_fault: Optional[FaultCallback] = None,
    ):
        self.command: List[str] = list(command) if command else list(DEFAULT_WORKER_COMMAND)
        self.ready_timeout = ready_timeout
        self.pick_timeout = pick_timeout
        self.scan_timeout = scan_timeout
        self.stop_timeout = stop_timeout
        self.on_exit = on_exit
        self.on_fault = on_fault
        self.version: Optional[str] = None

        self._process: Optional[asyncio.subprocess.Process] = None
        self._buffer = b""
        self._slots: Dict[str, asyncio.Future] = {}
        self._ready = False
        self._quit_sent = False
        self._exit_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config, **kwargs) -> "OCRBridge":
        worker = config.worker
        return cls(
            config.worker_command(),
            ready_timeout=worker.ready_timeout,
            pick_timeout=worker.pick_timeout,
            scan_timeout=worker.scan_timeout,
            stop_timeout=worker.stop_timeout,
            **kwargs,
        )

    @property
    def is_ready(self) -> bool:
        return self._ready and self.is_running

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    # Lifecycle --------------------------------------------------------------

    async def start(self) -> str:
        """Launch the worker and wait for its ``ready`` message. Returns the worker version."""
        if self.is_running:
            raise OCRError("OCR worker is already running")
        self._buffer = b""
        self._ready = False
        self._quit_sent = False
        ready = self._claim(ResponseType.READY.value)
        logger.info(f"Starting OCR worker: {' '.join(self.command)}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self._release(ResponseType.READY.value, ready)
            raise WorkerNotRunning(f"Could not launch OCR worker: {e}") from e

        readers = [
            asyncio.ensure_future(self._read_stdout(self._process)),
            asyncio.ensure_future(self._read_stderr(self._process)),
        ]
        self._exit_task = asyncio.ensure_future(self._watch_exit(self._process, readers))

        try:
            info = await asyncio.wait_for(ready, self.ready_timeout)
        except asyncio.TimeoutError:
            logger.error(f"OCR worker did not become ready within {self.ready_timeout}s")
            await self.stop()
            raise StartupTimeout(self.ready_timeout)
        finally:
            self._release(ResponseType.READY.value, ready)

        self._ready = True
        self.version = getattr(info, "version", None)
        logger.info(f"OCR worker ready (version {self.version})")
        return self.version

    def quit(self) -> None:
        """Send ``quit`` and close the worker's stdin without waiting for a reply."""
        process = self._process
        if process is None or process.returncode is not None:
            return
        self._quit_sent = True
        try:
            process.stdin.write(encode_command(Command(Action.QUIT.value)).encode("utf-8"))
            process.stdin.close()
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            logger.debug(f"Could not send quit to OCR worker: {e}")

    async def stop(self) -> None:
        """Quit the worker, then kill it if it has not exited within ``stop_timeout``."""
        process = self._process
        if process is None:
            return
        if process.returncode is None:
            self.quit()
            try:
                await asyncio.wait_for(process.wait(), self.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"OCR worker did not exit within {self.stop_timeout}s, killing it")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
        if self._exit_task is not None:
            await self._exit_task

    # Calls ------------------------------------------------------------------

    async def pick(self) -> WindowSelection:
        """Open the window picker. Rejects with PickCancelled when the user dismisses it."""
        slot = self._claim(ResponseType.PICK.value)
        try:
            await self._send(Command(Action.PICK.value))
            return await asyncio.wait_for(slot, self.pick_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Window selection timed out after {self.pick_timeout}s")
            raise PickTimedOut(self.pick_timeout)
        finally:
            self._release(ResponseType.PICK.value, slot)

    async def scan(self, languages: Optional[Sequence[str]] = None, save_to: Optional[str] = None) -> RecognitionResult:
        """Capture and recognize the selected window, picking one first if needed."""
        slot = self._claim(ResponseType.SCAN.value)
        command = Command(
            Action.SCAN.value,
            languages=list(languages) if languages is not None else None,
            save_to=save_to,
        )
        try:
            await self._send(command)
            return await asyncio.wait_for(slot, self.scan_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"OCR scan timed out after {self.scan_timeout}s")
            raise ScanTimedOut(self.scan_timeout)
        finally:
            self._release(ResponseType.SCAN.value, slot)

    def _claim(self, kind: str) -> asyncio.Future:
        pending = self._slots.get(kind)
        if pending is not None and not pending.done():
            raise BridgeBusy(f"A {kind} call is already pending")
        future = asyncio.get_running_loop().create_future()
        self._slots[kind] = future
        return future

    def _release(self, kind: str, future: asyncio.Future) -> None:
        if self._slots.get(kind) is future:
            del self._slots[kind]

    async def _send(self, command: Command) -> None:
        process = self._process
        if process is None or process.returncode is not None or self._quit_sent:
            raise WorkerNotRunning("OCR worker is not running")
        line = encode_command(command)
        logger.debug(f"Sending to OCR worker: {line.strip()}")
        try:
            process.stdin.write(line.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            self._fault(e)
            raise WorkerNotRunning(f"OCR worker input closed: {e}") from e

    # Incoming ---------------------------------------------------------------

    def feed(self, data: bytes) -> None:
        """Append raw stdout bytes and handle every complete line."""
        self._buffer += data
        *lines, self._buffer = self._buffer.split(b"\n")
        for line in lines:
            if line.strip():
                self._handle_line(line)

    def _handle_line(self, line: bytes) -> None:
        try:
            response = decode_response(line)
        except MalformedMessage as e:
            logger.warning(f"Dropping malformed line from OCR worker: {e} ({line[:200]!r})")
            return
        self._dispatch(response)

    def _dispatch(self, response: Response) -> None:
        kind = response.type
        if kind == ResponseType.READY.value:
            self._resolve(kind, response, "OCR worker failed to start")
        elif kind == ResponseType.PICK.value:
            self._dispatch_pick(response)
        elif kind == ResponseType.SCAN.value:
            self._resolve(kind, response, "OCR failed")
        elif kind == ResponseType.ERROR.value:
            logger.warning(f"OCR worker reported an error: {response.error}")
        else:
            logger.warning(f"Ignoring OCR worker response of unknown type: {kind}")

    def _dispatch_pick(self, response: Response) -> None:
        pick = self._pending(ResponseType.PICK.value)
        scan = self._pending(ResponseType.SCAN.value)
        if pick is None and scan is None:
            logger.debug(f"Unsolicited pick response: success={response.success}")
            return
        if pick is not None:
            self._resolve(ResponseType.PICK.value, response, "Window selection failed")
        if scan is not None:
            if response.success:
                # Picked on behalf of the scan; its result follows.
                logger.debug("Window selected for pending scan")
            else:
                scan.set_exception(classify_failure(response.error, "Window selection failed"))

    def _pending(self, kind: str) -> Optional[asyncio.Future]:
        future = self._slots.get(kind)
        if future is None or future.done():
            return None
        return future

    def _resolve(self, kind: str, response: Response, default_error: str) -> None:
        future = self._pending(kind)
        if future is None:
            logger.debug(f"Late or unsolicited {kind} response dropped: success={response.success}")
            return
        if response.success:
            future.set_result(response.data)
        else:
            future.set_exception(classify_failure(response.error, default_error))

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        while True:
            chunk = await process.stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            self.feed(chunk)
        if self._buffer.strip():
            logger.debug(f"OCR worker closed stdout mid-line: {self._buffer[:200]!r}")
        self._buffer = b""

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.debug(f"OCR worker stderr >> {text}")

    async def _watch_exit(self, process: asyncio.subprocess.Process, readers: List[asyncio.Task]) -> None:
        returncode = await process.wait()
        # Let any final responses be dispatched before pending calls are rejected.
        await asyncio.gather(*readers, return_exceptions=True)
        expected = self._quit_sent
        self._ready = False
        if returncode != 0 and not expected:
            logger.error(f"OCR worker crashed with code: {returncode}")
            error: OCRError = WorkerCrashed(returncode)
        else:
            logger.info(f"OCR worker exited with code: {returncode}")
            error = WorkerNotRunning(f"OCR worker exited with code: {returncode}")
        for future in list(self._slots.values()):
            if not future.done():
                future.set_exception(error)
        if self.on_exit:
            try:
                self.on_exit(returncode, expected)
            except Exception as e:
                logger.exception(f"Error in OCR worker exit handler: {e}")

    def _fault(self, error: BaseException) -> None:
        logger.error(f"OCR worker link fault: {error}")
        if self.on_fault:
            try:
                self.on_fault(error)
            except Exception as e:
                logger.exception(f"Error in OCR worker fault handler: {e}")


class BridgeThread(threading.Thread):
    """Runs an asyncio loop in a daemon thread for the bridge and its calls."""

    def __init__(self):
        super().__init__(name="OCR_Bridge_Loop", daemon=True)
        self.loop = asyncio.new_event_loop()
        self._started = threading.Event()

    def run(self):
        asyncio.set_event_loop(self.loop)
        self.loop.call_soon(self._started.set)
        self.loop.run_forever()
        self.loop.close()

    def start(self):
        super().start()
        self._started.wait()

    def submit(self, coro: Coroutine[Any, Any, Any]) -> ConcurrentFuture:
        """Schedule ``coro`` on the bridge loop from any thread."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def shutdown(self, timeout: float = 5.0) -> None:
        if not self.is_alive():
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.join(timeout)
