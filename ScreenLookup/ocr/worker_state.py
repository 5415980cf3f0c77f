"""Pure state machine of the OCR worker.

``step(state, event)`` returns the next state, the responses to print and the
side effects to run. It never touches the picker, the screen, the filesystem
or stdout, so every transition can be tested without a platform backend.

States:
    NoTarget        no window selected yet
    TargetAcquired  a window is selected and can be captured

Both carry ``picker_open`` while the picker is displayed, and ``pending_scan``
when a scan is waiting for the picker to produce a target. While a
capture+recognize sequence is in flight, further commands are queued in
``backlog`` and replayed in order once the scan response has been emitted.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Tuple, Union

from ScreenLookup.ocr.capture_backend import CaptureTarget
from ScreenLookup.util.communication.ocr_protocol import Action, Command, MSG_INVALID_COMMAND, \
    MSG_PICK_CANCELLED, MSG_PICK_START_FAILED, Response, ResponseType, UnknownAction, WindowSelection


# --- States -----------------------------------------------------------------

@dataclass(frozen=True)
class NoTarget:
    picker_open: bool = False
    pending_scan: Optional[Command] = None


@dataclass(frozen=True)
class TargetAcquired:
    target: CaptureTarget
    picker_open: bool = False
    pending_scan: Optional[Command] = None
    scan_in_flight: bool = False
    backlog: Tuple[Command, ...] = ()


WorkerState = Union[NoTarget, TargetAcquired]


# --- Events -----------------------------------------------------------------

@dataclass(frozen=True)
class CommandReceived:
    command: Command


@dataclass(frozen=True)
class InvalidLine:
    reason: str = ""


@dataclass(frozen=True)
class PickerSelected:
    target: CaptureTarget


@dataclass(frozen=True)
class PickerCancelled:
    pass


@dataclass(frozen=True)
class PickerFailed:
    cause: str


@dataclass(frozen=True)
class ScanFinished:
    response: Response


@dataclass(frozen=True)
class InputClosed:
    pass


Event = Union[CommandReceived, InvalidLine, PickerSelected, PickerCancelled, PickerFailed, ScanFinished, InputClosed]


# --- Effects ----------------------------------------------------------------

@dataclass(frozen=True)
class PresentPicker:
    pass


@dataclass(frozen=True)
class RunScan:
    target: CaptureTarget
    command: Command


@dataclass(frozen=True)
class Terminate:
    pass


Effect = Union[PresentPicker, RunScan, Terminate]


@dataclass(frozen=True)
class Transition:
    state: WorkerState
    responses: Tuple[Response, ...] = ()
    effects: Tuple[Effect, ...] = ()


def is_scan_in_flight(state: WorkerState) -> bool:
    return isinstance(state, TargetAcquired) and state.scan_in_flight


def selection_for(target: CaptureTarget) -> WindowSelection:
    return WindowSelection(
        window_id=target.window_id,
        app_name=target.app_name,
        window_title=target.window_title,
        bounds=target.content_rect,
    )


# --- Transitions --------------------------------------------------------------

def _open_picker(state: WorkerState, pending_scan: Optional[Command] = None) -> Transition:
    if pending_scan is not None:
        state = replace(state, pending_scan=pending_scan)
    if state.picker_open:
        # One picker at a time; its outcome answers every waiting request.
        return Transition(state)
    return Transition(replace(state, picker_open=True), effects=(PresentPicker(),))


def _start_scan(state: TargetAcquired, command: Command, target: Optional[CaptureTarget] = None) -> Transition:
    target = target or state.target
    return Transition(replace(state, scan_in_flight=True), effects=(RunScan(target, command),))


def _on_command(state: WorkerState, command: Command) -> Transition:
    action = command.action
    if action == Action.QUIT.value:
        return Transition(state, effects=(Terminate(),))

    if is_scan_in_flight(state):
        return Transition(replace(state, backlog=state.backlog + (command,)))

    if action == Action.PICK.value:
        return _open_picker(state)

    if action == Action.SCAN.value:
        if isinstance(state, TargetAcquired):
            return _start_scan(state, command)
        return _open_picker(state, pending_scan=command)

    return Transition(state, responses=(
        Response.fail(ResponseType.ERROR.value, str(UnknownAction(action))),
    ))


def _on_selected(state: WorkerState, target: CaptureTarget) -> Transition:
    response = Response.ok(ResponseType.PICK.value, selection_for(target))
    if isinstance(state, TargetAcquired):
        acquired = replace(state, target=target, picker_open=False, pending_scan=None)
    else:
        acquired = TargetAcquired(target=target)

    if state.pending_scan is None:
        return Transition(acquired, responses=(response,))

    # A scan was waiting for this selection: run it now against the new target.
    started = _start_scan(acquired, state.pending_scan, target)
    return Transition(started.state, responses=(response,), effects=started.effects)


def _on_picker_failure(state: WorkerState, message: str) -> Transition:
    # The pending scan is dropped: the pick failure is its only answer.
    restored = replace(state, picker_open=False, pending_scan=None)
    return Transition(restored, responses=(Response.fail(ResponseType.PICK.value, message),))


def _on_scan_finished(state: WorkerState, response: Response) -> Transition:
    responses = [response]
    effects = []
    if not isinstance(state, TargetAcquired):
        return Transition(state, responses=tuple(responses))

    backlog = state.backlog
    current: WorkerState = replace(state, scan_in_flight=False, backlog=())
    for index, command in enumerate(backlog):
        transition = _on_command(current, command)
        current = transition.state
        responses.extend(transition.responses)
        effects.extend(transition.effects)
        if any(isinstance(effect, Terminate) for effect in transition.effects):
            break
        if is_scan_in_flight(current):
            current = replace(current, backlog=current.backlog + backlog[index + 1:])
            break
    return Transition(current, responses=tuple(responses), effects=tuple(effects))


def step(state: WorkerState, event: Event) -> Transition:
    if isinstance(event, CommandReceived):
        return _on_command(state, event.command)
    if isinstance(event, InvalidLine):
        return Transition(state, responses=(Response.fail(ResponseType.ERROR.value, MSG_INVALID_COMMAND),))
    if isinstance(event, PickerSelected):
        return _on_selected(state, event.target)
    if isinstance(event, PickerCancelled):
        return _on_picker_failure(state, MSG_PICK_CANCELLED)
    if isinstance(event, PickerFailed):
        return _on_picker_failure(state, MSG_PICK_START_FAILED.format(cause=event.cause))
    if isinstance(event, ScanFinished):
        return _on_scan_finished(state, event.response)
    if isinstance(event, InputClosed):
        return Transition(state, effects=(Terminate(),))
    raise TypeError(f"Unknown worker event: {event!r}")
