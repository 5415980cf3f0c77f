import math

import pytest

from ScreenLookup.util.communication.ocr_protocol import NormalizedPoint, NormalizedRect, TextObservation
from ScreenLookup.util.config.configuration import Overlay
from ScreenLookup.util.overlay.overlay_layout import (
    LayoutSettings,
    PixelRect,
    fit_font_size,
    is_noise,
    layout_observation,
    layout_observations,
    normalized_to_pixels,
    rotation_degrees,
    visible_rotation,
)


def fixed_width_measure(char_width_ratio=0.5):
    """Width grows linearly with font size, like a monospace font."""
    def measure(text, font_size):
        return len(text) * font_size * char_width_ratio
    return measure


def make_observation(box, text="text", top_left=None, top_right=None):
    x, y, w, h = box
    top_left = top_left or (x, y + h)
    top_right = top_right or (x + w, y + h)
    return TextObservation(
        text=text,
        confidence=1.0,
        bounding_box=NormalizedRect(x, y, w, h),
        top_left=NormalizedPoint(*top_left),
        top_right=NormalizedPoint(*top_right),
        bottom_right=NormalizedPoint(x + w, y),
        bottom_left=NormalizedPoint(x, y),
    )


def test_normalized_to_pixels_flips_vertical_origin():
    rect = normalized_to_pixels(NormalizedRect(0.1, 0.2, 0.5, 0.1), 1000, 500)

    assert rect.x == pytest.approx(100)
    assert rect.y == pytest.approx(350)
    assert rect.width == pytest.approx(500)
    assert rect.height == pytest.approx(50)


def test_box_at_top_of_image_maps_to_top_of_surface():
    rect = normalized_to_pixels(NormalizedRect(0, 0.9, 1, 0.1), 200, 100)
    assert rect.y == pytest.approx(0)


def test_padding_expands_every_side():
    assert PixelRect(10, 20, 30, 40).padded(1) == PixelRect(9, 19, 32, 42)


@pytest.mark.parametrize("width,height,expected", [
    (9.9, 20, True),
    (20, 7.9, True),
    (10, 8, False),
    (100, 30, False),
])
def test_is_noise_thresholds(width, height, expected):
    assert is_noise(PixelRect(0, 0, width, height)) is expected


def test_axis_aligned_observation_has_no_rotation():
    observation = make_observation((0, 0, 1, 1), top_left=(0, 1), top_right=(1, 1))

    assert rotation_degrees(observation) == 0
    assert visible_rotation(rotation_degrees(observation)) is None


def test_rotation_sign_is_flipped_for_top_left_origin():
    # Baseline rising to the right in recognition space tilts upwards on
    # screen, which is a negative (counter-clockwise) rotation.
    observation = make_observation((0.1, 0.1, 0.5, 0.1), top_left=(0.1, 0.2), top_right=(0.6, 0.7))
    assert rotation_degrees(observation) == pytest.approx(-45)


@pytest.mark.parametrize("angle,expected", [
    (0.5, None),
    (-0.5, None),
    (0.51, 0.51),
    (-3.0, -3.0),
])
def test_visible_rotation_threshold(angle, expected):
    assert visible_rotation(angle) == expected


def test_fit_font_size_keeps_box_height_when_text_fits():
    assert fit_font_size("ab", 100, 20, fixed_width_measure()) == 20


def test_fit_font_size_shrinks_proportionally():
    # 10 chars at 20px -> 100px wide, target 50 -> 10px
    assert fit_font_size("a" * 10, 50, 20, fixed_width_measure()) == pytest.approx(10)


def test_fit_font_size_never_goes_below_minimum():
    assert fit_font_size("a" * 100, 10, 20, fixed_width_measure()) == 8


def test_fit_font_size_never_exceeds_box_height_for_tiny_boxes():
    assert fit_font_size("a" * 100, 10, 6, fixed_width_measure()) == 6


def test_layout_drops_noise_and_keeps_order():
    observations = [
        make_observation((0.0, 0.5, 0.5, 0.1), text="first"),
        make_observation((0.0, 0.0, 0.001, 0.1), text="too narrow"),
        make_observation((0.0, 0.0, 0.5, 0.001), text="too short"),
        make_observation((0.5, 0.0, 0.5, 0.1), text="second"),
    ]

    placements = layout_observations(observations, 1000, 1000, fixed_width_measure())

    assert [p.text for p in placements] == ["first", "second"]


@pytest.mark.parametrize("width,height", [(50, 50), (320, 240), (1920, 1080), (3840, 2160)])
def test_noise_never_rendered_for_any_surface(width, height):
    observations = [
        make_observation((0.1, 0.1, 0.003, 0.5)),
        make_observation((0.1, 0.1, 0.5, 0.002)),
    ]
    for placement in layout_observations(observations, width, height, fixed_width_measure()):
        assert placement.rect.width - 2 >= 10
        assert placement.rect.height - 2 >= 8


def test_layout_observation_pads_and_sizes():
    observation = make_observation((0.1, 0.2, 0.5, 0.1), text="hi")

    placement = layout_observation(observation, 1000, 500, fixed_width_measure())

    assert placement.rect.x == pytest.approx(99)
    assert placement.rect.y == pytest.approx(349)
    assert placement.rect.width == pytest.approx(502)
    assert placement.rect.height == pytest.approx(52)
    assert placement.font_size == pytest.approx(52)
    assert placement.rotation is None


def test_layout_is_idempotent():
    observations = [
        make_observation((0.1, 0.2, 0.5, 0.1), text="a long line of recognized text"),
        make_observation((0.1, 0.5, 0.3, 0.05), text="tilted", top_right=(0.4, 0.58)),
    ]
    measure = fixed_width_measure()

    first = layout_observations(observations, 800, 600, measure)
    second = layout_observations(observations, 800, 600, measure)

    assert first == second
    assert first[1].rotation is not None


def test_font_size_bounds_hold_across_many_texts():
    measure = fixed_width_measure(0.7)
    for length in range(1, 60):
        observation = make_observation((0.05, 0.4, 0.3, 0.04), text="x" * length)
        placement = layout_observation(observation, 1280, 720, measure)
        assert 8 <= placement.font_size <= placement.rect.height


def test_settings_from_overlay_config():
    settings = LayoutSettings.from_overlay_config(Overlay(min_font_size=12, box_padding=2))
    assert settings.min_font_size == 12
    assert settings.box_padding == 2
    assert settings.min_box_width == 10


def test_custom_settings_are_applied():
    observation = make_observation((0.0, 0.0, 0.05, 0.05), top_right=(0.05, 0.06))
    strict = LayoutSettings(min_box_width=100)
    relaxed = LayoutSettings(rotation_threshold=45)

    assert layout_observation(observation, 1000, 1000, fixed_width_measure(), strict) is None
    placement = layout_observation(observation, 1000, 1000, fixed_width_measure(), relaxed)
    assert placement.rotation is None
    assert math.isclose(rotation_degrees(observation), -math.degrees(math.atan2(0.01, 0.05)))
