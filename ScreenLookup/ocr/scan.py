from __future__ import annotations

import time
from typing import List, Optional, Sequence, Tuple

from ScreenLookup.ocr.capture_backend import CaptureBackend, CaptureTarget
from ScreenLookup.util.communication.ocr_protocol import Command, MSG_CAPTURE_FAILED, MSG_RECOGNITION_FAILED, \
    NoTargetForScan, RecognitionResult, Response, ResponseType, WindowBounds
from ScreenLookup.util.config.configuration import DEFAULT_LANGUAGES
from ScreenLookup.util.logging_config import logger


def _cause(error: BaseException) -> str:
    return str(error) or error.__class__.__name__


def pixel_dimensions(target: CaptureTarget, backend: CaptureBackend) -> Tuple[int, int]:
    """Logical window size times the device scale factor."""
    scale = target.point_pixel_scale if target.point_pixel_scale > 0 else backend.default_scale_factor()
    rect = target.content_rect
    return int(rect.width * scale), int(rect.height * scale)


def save_capture(image, path: str) -> bool:
    """Write the capture as PNG. Failures are logged and otherwise ignored."""
    try:
        image.save(path, format="PNG")
        logger.debug(f"Saved capture to {path}")
        return True
    except Exception as e:
        logger.debug(f"Could not save capture to {path}: {e}")
        return False


def current_bounds(backend: CaptureBackend, target: CaptureTarget) -> WindowBounds:
    """Fresh on-screen bounds of the target, or the bounds seen at selection time."""
    if target.window_id is not None:
        try:
            bounds = backend.window_bounds(target.window_id)
        except Exception as e:
            logger.debug(f"Could not refresh bounds of window {target.window_id}: {e}")
            bounds = None
        if bounds is not None:
            return bounds
    return target.content_rect


def capture_and_recognize(
    backend: CaptureBackend,
    target: Optional[CaptureTarget],
    command: Command,
    default_languages: Optional[Sequence[str]] = None,
) -> Response:
    """Capture the target, run text recognition and build the scan response."""
    if target is None:
        error = NoTargetForScan()
        logger.error(f"Scan requested without a target: {error}")
        return Response.fail(ResponseType.SCAN.value, str(error))
    start_time = time.time()
    try:
        width, height = pixel_dimensions(target, backend)
        image = backend.capture_image(target, width, height)
    except Exception as e:
        logger.error(f"Capture failed: {e}")
        return Response.fail(ResponseType.SCAN.value, MSG_CAPTURE_FAILED.format(cause=_cause(e)))

    if command.save_to:
        save_capture(image, command.save_to)

    bounds = current_bounds(backend, target)

    if command.languages is not None:
        languages: List[str] = list(command.languages)
    else:
        languages = list(default_languages or DEFAULT_LANGUAGES)

    try:
        observations = backend.recognize_text(image, languages)
    except Exception as e:
        logger.error(f"Text recognition failed: {e}")
        return Response.fail(ResponseType.SCAN.value, MSG_RECOGNITION_FAILED.format(cause=_cause(e)))

    logger.info(f"Recognized {len(observations)} text regions in {time.time() - start_time:.2f}s "
                f"({image.width}x{image.height}, languages={languages})")
    return Response.ok(ResponseType.SCAN.value, RecognitionResult(
        image_width=image.width,
        image_height=image.height,
        observations=list(observations),
        bounds=bounds,
    ))
