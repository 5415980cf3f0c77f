from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from ScreenLookup.util.communication.ocr_protocol import NormalizedRect, TextObservation

# Returns the unconstrained rendered width of ``text`` at ``font_size`` pixels.
MeasureText = Callable[[str, float], float]

DEFAULT_MIN_BOX_WIDTH = 10.0
DEFAULT_MIN_BOX_HEIGHT = 8.0
DEFAULT_BOX_PADDING = 1.0
DEFAULT_ROTATION_THRESHOLD = 0.5
DEFAULT_MIN_FONT_SIZE = 8.0


@dataclass(frozen=True)
class PixelRect:
    """Rectangle in overlay surface pixels, top-left origin."""

    x: float
    y: float
    width: float
    height: float

    def padded(self, padding: float) -> "PixelRect":
        return PixelRect(
            self.x - padding,
            self.y - padding,
            self.width + 2 * padding,
            self.height + 2 * padding,
        )


@dataclass(frozen=True)
class TextPlacement:
    """One positioned text element of the overlay.

    ``rotation`` is None when the line is close enough to horizontal that no
    rotation should be applied. Rotation pivots on the element's top-left corner.
    """

    text: str
    rect: PixelRect
    font_size: float
    rotation: Optional[float] = None


@dataclass(frozen=True)
class LayoutSettings:
    min_box_width: float = DEFAULT_MIN_BOX_WIDTH
    min_box_height: float = DEFAULT_MIN_BOX_HEIGHT
    box_padding: float = DEFAULT_BOX_PADDING
    rotation_threshold: float = DEFAULT_ROTATION_THRESHOLD
    min_font_size: float = DEFAULT_MIN_FONT_SIZE

    @classmethod
    def from_overlay_config(cls, overlay_config) -> "LayoutSettings":
        return cls(
            min_box_width=overlay_config.min_box_width,
            min_box_height=overlay_config.min_box_height,
            box_padding=overlay_config.box_padding,
            rotation_threshold=overlay_config.rotation_threshold,
            min_font_size=overlay_config.min_font_size,
        )


def normalized_to_pixels(box: NormalizedRect, surface_width: float, surface_height: float) -> PixelRect:
    """Map a bottom-left-origin unit rectangle onto a top-left-origin surface."""
    return PixelRect(
        x=box.x * surface_width,
        y=(1 - box.y - box.height) * surface_height,
        width=box.width * surface_width,
        height=box.height * surface_height,
    )


def rotation_degrees(observation: TextObservation) -> float:
    """Angle of the text baseline, from the top-left to the top-right corner.

    The y delta is negated because recognition geometry grows upwards while
    the overlay grows downwards.
    """
    dx = observation.top_right.x - observation.top_left.x
    dy = observation.top_right.y - observation.top_left.y
    return math.degrees(math.atan2(-dy, dx))


def visible_rotation(angle: float, threshold: float = DEFAULT_ROTATION_THRESHOLD) -> Optional[float]:
    return angle if abs(angle) > threshold else None


def is_noise(rect: PixelRect, min_width: float = DEFAULT_MIN_BOX_WIDTH,
             min_height: float = DEFAULT_MIN_BOX_HEIGHT) -> bool:
    return rect.width < min_width or rect.height < min_height


def fit_font_size(
    text: str,
    target_width: float,
    max_font_size: float,
    measure: MeasureText,
    min_font_size: float = DEFAULT_MIN_FONT_SIZE,
) -> float:
    """Largest font size that keeps ``text`` within ``target_width``, single pass.

    Starts at ``max_font_size`` (the box height). Text that already fits keeps
    that size; overflowing text is shrunk proportionally, assuming rendered
    width scales linearly with font size, and never below ``min_font_size``.
    """
    measured = measure(text, max_font_size)
    if measured <= target_width or measured <= 0:
        return max_font_size
    scaled = max_font_size * (target_width / measured)
    return min(max(scaled, min_font_size), max_font_size)


def layout_observation(
    observation: TextObservation,
    surface_width: float,
    surface_height: float,
    measure: MeasureText,
    settings: LayoutSettings = LayoutSettings(),
) -> Optional[TextPlacement]:
    base = normalized_to_pixels(observation.bounding_box, surface_width, surface_height)
    if is_noise(base, settings.min_box_width, settings.min_box_height):
        return None
    rect = base.padded(settings.box_padding)
    font_size = fit_font_size(observation.text, rect.width, rect.height, measure, settings.min_font_size)
    rotation = visible_rotation(rotation_degrees(observation), settings.rotation_threshold)
    return TextPlacement(text=observation.text, rect=rect, font_size=font_size, rotation=rotation)


def layout_observations(
    observations: Iterable[TextObservation],
    surface_width: float,
    surface_height: float,
    measure: MeasureText,
    settings: LayoutSettings = LayoutSettings(),
) -> List[TextPlacement]:
    """Place every non-noise observation, in recognition order.

    ``surface_width``/``surface_height`` are the overlay's current rendered size,
    not the capture's pixel size.
    """
    placements = []
    for observation in observations:
        placement = layout_observation(observation, surface_width, surface_height, measure, settings)
        if placement is not None:
            placements.append(placement)
    return placements
