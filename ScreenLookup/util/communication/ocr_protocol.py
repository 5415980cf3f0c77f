"""Line-delimited JSON protocol between the coordinator and the OCR worker.

The coordinator writes one command per line to the worker's stdin:
    {"action": "pick"|"scan"|"quit", "languages"?: [...], "saveTo"?: "..."}

The worker prints one response per line to stdout and flushes after each:
    {"type": "ready"|"pick"|"scan"|"error", "success": bool, "data"?: {...}, "error"?: "..."}

There is no request id. The concrete shape of ``data`` follows from ``type``.
Decoding is best-effort per line: a bad line raises MalformedMessage and the
caller drops that line only.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from dataclasses_json import LetterCase, dataclass_json


class Action(Enum):
    """Commands the coordinator can send to the worker."""
    PICK = "pick"
    SCAN = "scan"
    QUIT = "quit"


class ResponseType(Enum):
    """Values of the ``type`` field of worker responses."""
    READY = "ready"
    PICK = "pick"
    SCAN = "scan"
    ERROR = "error"


KNOWN_ACTIONS = frozenset(action.value for action in Action)
CANCELLATION_INDICATOR = "cancelled"

# Human-readable failure messages emitted by the worker.
MSG_PICK_CANCELLED = "User cancelled window selection"
MSG_PICK_START_FAILED = "Picker failed to start: {cause}"
MSG_NO_TARGET = "No window selected"
MSG_CAPTURE_FAILED = "Failed: {cause}"
MSG_RECOGNITION_FAILED = "OCR failed: {cause}"
MSG_INVALID_COMMAND = "Invalid JSON command"
MSG_UNKNOWN_ACTION = "Unknown action: {action}"


# --- Errors -----------------------------------------------------------------

class OCRError(Exception):
    """Base class for every protocol, worker and bridge failure."""


class MalformedMessage(OCRError, ValueError):
    """One line could not be decoded. Only that line is dropped."""

    def __init__(self, message: str, line: str = ""):
        super().__init__(message)
        self.line = line


class UnknownAction(OCRError):
    def __init__(self, action: str):
        super().__init__(MSG_UNKNOWN_ACTION.format(action=action))
        self.action = action


class NoTargetForScan(OCRError):
    def __init__(self):
        super().__init__(MSG_NO_TARGET)


class CallTimedOut(OCRError):
    def __init__(self, message: str, timeout: float):
        super().__init__(message)
        self.timeout = timeout


class StartupTimeout(CallTimedOut):
    def __init__(self, timeout: float):
        super().__init__("OCR worker did not become ready in time", timeout)


class PickTimedOut(CallTimedOut):
    def __init__(self, timeout: float):
        super().__init__("Window selection timed out", timeout)


class ScanTimedOut(CallTimedOut):
    def __init__(self, timeout: float):
        super().__init__("OCR scan timed out", timeout)


class WorkerCallFailed(OCRError):
    """The worker answered a call with ``success: false``."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PickCancelled(WorkerCallFailed):
    """The user dismissed the picker. Not an application error."""


class PickStartFailed(WorkerCallFailed):
    pass


class CaptureFailed(WorkerCallFailed):
    pass


class RecognitionFailed(WorkerCallFailed):
    pass


class WorkerCrashed(OCRError):
    def __init__(self, returncode: Optional[int]):
        super().__init__(f"OCR worker crashed with code: {returncode}")
        self.returncode = returncode


class WorkerNotRunning(OCRError):
    pass


class BridgeBusy(OCRError, RuntimeError):
    """A second call of the same kind was issued while one is still pending."""


def is_cancellation(error: Union[BaseException, str, None]) -> bool:
    """True when the error or message carries the cancellation indicator."""
    if error is None:
        return False
    if isinstance(error, PickCancelled):
        return True
    return CANCELLATION_INDICATOR in str(error).lower()


def classify_failure(message: Optional[str], default: str) -> WorkerCallFailed:
    """Map a worker failure message onto the matching exception class."""
    message = message or default
    if is_cancellation(message):
        return PickCancelled(message)
    if message.startswith(MSG_PICK_START_FAILED.split("{")[0]):
        return PickStartFailed(message)
    if message.startswith(MSG_RECOGNITION_FAILED.split("{")[0]):
        return RecognitionFailed(message)
    if message.startswith(MSG_CAPTURE_FAILED.split("{")[0]):
        return CaptureFailed(message)
    return WorkerCallFailed(message)


# --- Data model -------------------------------------------------------------

@dataclass_json(letter_case=LetterCase.CAMEL)
@dataclass
class WindowBounds:
    """Screen rectangle of a window in points, top-left origin."""
    x: float
    y: float
    width: float
    height: float


@dataclass_json(letter_case=LetterCase.CAMEL)
@dataclass
class NormalizedRect:
    """Unit-square rectangle, bottom-left origin."""
    x: float
    y: float
    width: float
    height: float


@dataclass_json(letter_case=LetterCase.CAMEL)
@dataclass
class NormalizedPoint:
    x: float
    y: float


@dataclass_json(letter_case=LetterCase.CAMEL)
@dataclass
class TextObservation:
    text: str
    confidence: float
    bounding_box: NormalizedRect
    top_left: NormalizedPoint
    top_right: NormalizedPoint
    bottom_right: NormalizedPoint
    bottom_left: NormalizedPoint


@dataclass_json(letter_case=LetterCase.CAMEL)
@dataclass
class ReadyInfo:
    version: str


@dataclass_json(letter_case=LetterCase.CAMEL)
@dataclass
class WindowSelection:
    window_id: Optional[int] = None
    app_name: Optional[str] = None
    window_title: Optional[str] = None
    bounds: Optional[WindowBounds] = None


@dataclass_json(letter_case=LetterCase.CAMEL)
@dataclass
class RecognitionResult:
    image_width: int
    image_height: int
    observations: List[TextObservation] = field(default_factory=list)
    bounds: Optional[WindowBounds] = None


ResponseData = Union[ReadyInfo, WindowSelection, RecognitionResult, Dict[str, Any]]

_DATA_TYPES = {
    ResponseType.READY.value: ReadyInfo,
    ResponseType.PICK.value: WindowSelection,
    ResponseType.SCAN.value: RecognitionResult,
}


@dataclass
class Command:
    action: str
    languages: Optional[List[str]] = None
    save_to: Optional[str] = None


@dataclass
class Response:
    type: str
    success: bool
    data: Optional[ResponseData] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, type: str, data: Optional[ResponseData] = None) -> "Response":
        return cls(type=type, success=True, data=data)

    @classmethod
    def fail(cls, type: str, message: str) -> "Response":
        return cls(type=type, success=False, error=message)


# --- Codec ------------------------------------------------------------------

def _to_line(payload: Dict[str, Any]) -> str:
    # Sorted keys only make the stream easier to read in logs.
    return json.dumps(payload, ensure_ascii=False, sort_keys=True) + "\n"


def _parse_object(line: Union[str, bytes]) -> Dict[str, Any]:
    if isinstance(line, bytes):
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedMessage(f"Line is not valid UTF-8: {e}", repr(line)) from e
    text = line.strip()
    if not text:
        raise MalformedMessage("Empty line", line)
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedMessage(f"Invalid JSON: {e}", text) from e
    if not isinstance(payload, dict):
        raise MalformedMessage("Message is not a JSON object", text)
    return payload


def encode_command(command: Command) -> str:
    payload: Dict[str, Any] = {"action": command.action}
    if command.languages is not None:
        payload["languages"] = list(command.languages)
    if command.save_to is not None:
        payload["saveTo"] = command.save_to
    return _to_line(payload)


def decode_command(line: Union[str, bytes]) -> Command:
    """Parse one command line. Unknown actions decode fine and are rejected later."""
    payload = _parse_object(line)
    action = payload.get("action")
    if not isinstance(action, str):
        raise MalformedMessage("Command has no action", str(payload))
    languages = payload.get("languages")
    if languages is not None and (not isinstance(languages, list)
                                  or not all(isinstance(lang, str) for lang in languages)):
        raise MalformedMessage("languages must be a list of strings", str(payload))
    save_to = payload.get("saveTo")
    if save_to is not None and not isinstance(save_to, str):
        raise MalformedMessage("saveTo must be a string", str(payload))
    return Command(action=action, languages=languages, save_to=save_to)


def encode_response(response: Response) -> str:
    payload: Dict[str, Any] = {"type": response.type, "success": response.success}
    if response.data is not None:
        data = response.data
        payload["data"] = data if isinstance(data, dict) else data.to_dict()
    if response.error is not None:
        payload["error"] = response.error
    return _to_line(payload)


def decode_response(line: Union[str, bytes]) -> Response:
    payload = _parse_object(line)
    type_ = payload.get("type")
    success = payload.get("success")
    if not isinstance(type_, str):
        raise MalformedMessage("Response has no type", str(payload))
    if not isinstance(success, bool):
        raise MalformedMessage("Response has no success flag", str(payload))

    error = payload.get("error")
    if error is not None and not isinstance(error, str):
        error = str(error)

    raw_data = payload.get("data")
    data: Optional[ResponseData] = None
    if raw_data is not None:
        if not isinstance(raw_data, dict):
            raise MalformedMessage("data must be a JSON object", str(payload))
        data_type = _DATA_TYPES.get(type_)
        if data_type is None:
            data = raw_data
        else:
            try:
                data = data_type.from_dict(raw_data)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                raise MalformedMessage(f"Invalid {type_} data: {e}", str(payload)) from e
    return Response(type=type_, success=success, data=data, error=error)
