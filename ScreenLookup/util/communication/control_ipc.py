"""Stdin/stdout trigger channel for the ScreenLookup coordinator.

Any external process (a hotkey daemon, a shell script) drives the app by
writing command lines to its stdin:
    LOOKUPCMD:{"function": <name>, "data": {...}, "id": optional}

The app answers with status lines on stdout:
    LOOKUPMSG:{"function": <name>, "data": {...}, "id": optional}

Lines without the command prefix are ignored.
"""

from __future__ import annotations

import json
import sys
import threading
from enum import Enum
from typing import Any, Callable, Dict, Optional, TextIO

from ScreenLookup.util.logging_config import logger

COMMAND_PREFIX = "LOOKUPCMD:"
MESSAGE_PREFIX = "LOOKUPMSG:"


class FunctionName(Enum):
    SCAN = "scan"
    PICK = "pick"
    TOGGLE_OVERLAY = "toggle_overlay"
    HIDE_OVERLAY = "hide_overlay"
    QUIT = "quit"
    READY = "ready"
    ERROR = "error"


CommandHandler = Callable[[Dict[str, Any]], None]
_command_handler: Optional[CommandHandler] = None


def register_command_handler(handler: Optional[CommandHandler]) -> None:
    """Register a handler invoked for each parsed LOOKUPCMD JSON object.
    Handler receives a dict with keys: function, data, id (optional)."""
    global _command_handler
    _command_handler = handler


def parse_command_line(raw: str) -> Optional[Dict[str, Any]]:
    """Return the command object of a LOOKUPCMD line, or None for any other line.

    Raises ValueError when the prefix is present but the payload is not a JSON
    object with a string ``function``.
    """
    line = raw.strip()
    if not line.startswith(COMMAND_PREFIX):
        return None
    msg = json.loads(line[len(COMMAND_PREFIX):])
    if not isinstance(msg, dict) or not isinstance(msg.get("function"), str):
        raise ValueError("command must be an object with a 'function' name")
    return msg


def send_message(function: str, data: Optional[Dict[str, Any]] = None, id: Optional[str] = None,
                 stream: Optional[TextIO] = None) -> None:
    """Print a structured status message to stdout."""
    payload: Dict[str, Any] = {"function": function}
    if data is not None:
        payload["data"] = data
    if id is not None:
        payload["id"] = id
    line = MESSAGE_PREFIX + json.dumps(payload, ensure_ascii=False)
    print(line, file=stream or sys.stdout, flush=True)
    logger.debug(f"IPC Sent: {line}")


def _stdin_loop(stream: Optional[TextIO] = None) -> None:
    """Blocking loop reading stdin for LOOKUPCMD lines."""
    logger.debug("Starting stdin IPC loop (LOOKUPCMD)...")
    for raw in stream or sys.stdin:
        try:
            msg = parse_command_line(raw)
        except ValueError as e:
            logger.warning(f"Failed to parse LOOKUPCMD line: {raw.strip()} error={e}")
            continue
        if msg is None:
            continue
        logger.debug(f"IPC Received command: {msg}")
        if _command_handler:
            try:
                _command_handler(msg)
            except Exception as e:
                logger.exception(f"Error handling IPC command {msg.get('function')}: {e}")
    logger.debug("stdin IPC loop ended")


def start_ipc_listener_in_thread(stream: Optional[TextIO] = None) -> threading.Thread:
    """Start stdin reading in a daemon thread so the Qt event loop is not blocked."""
    t = threading.Thread(target=_stdin_loop, args=(stream,), name="Lookup_IPC_Listener", daemon=True)
    t.start()
    return t


def announce_ready(version: Optional[str] = None):
    send_message(FunctionName.READY.value, {"version": version} if version else None)


def announce_error(message: str):
    send_message(FunctionName.ERROR.value, {"message": message})
