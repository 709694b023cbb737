"""Colour conversions for the dingz LED and myStrom bulbs.

The devices report colour either as an ``"h;s;v"`` string (hue 0-360,
saturation and value 0-100) or as an ``RRGGBB`` hex string.  Live state
always holds the HSV form.
"""

from __future__ import annotations

import colorsys

HSV = tuple[int, int, int]


def rgb_to_hsv(rgb: str) -> HSV:
    """Convert ``RRGGBB`` (``#`` optional) to ``(hue, saturation, value)``.

    >>> rgb_to_hsv("FF0000")
    (0, 100, 100)
    >>> rgb_to_hsv("FFFFFF")
    (0, 0, 100)

    Raises:
        ValueError: If *rgb* is not six hex digits.
    """
    digits = rgb.strip().removeprefix("#")
    if len(digits) != 6:
        msg = f"Expected RRGGBB, got {rgb!r}"
        raise ValueError(msg)
    red, green, blue = (int(digits[i : i + 2], 16) / 255 for i in (0, 2, 4))
    hue, saturation, value = colorsys.rgb_to_hsv(red, green, blue)
    return round(hue * 360) % 360, round(saturation * 100), round(value * 100)


def parse_hsv(hsv: str) -> HSV:
    """Parse the devices' ``"h;s;v"`` notation.

    Raises:
        ValueError: If the string does not hold three integers.
    """
    parts = hsv.split(";")
    if len(parts) != 3:
        msg = f"Expected 'h;s;v', got {hsv!r}"
        raise ValueError(msg)
    hue, saturation, value = (round(float(p)) for p in parts)
    return hue, saturation, value


def format_hsv(hue: int, saturation: int, value: int) -> str:
    return f"{hue};{saturation};{value}"
