# pdfforge/placement.py
"""
Text and image placement on a page.

All coordinates here use PDF user space: origin at the bottom-left corner,
y growing upwards, (x, y) being the start of the text baseline.
"""
import math
from typing import Callable, List, Tuple

EDGE_PADDING = 20
MIN_FONT_SIZE = 8
CLAMP_MARGIN = 10

POSITIONS = (
    "top-left",
    "top-center",
    "top-right",
    "bottom-left",
    "bottom-center",
    "bottom-right",
)

Measure = Callable[[str, float], float]


def fit_font_size(text: str, font_size: float, page_width: float, measure: Measure) -> Tuple[float, float]:
    """
    Shrink `font_size` until `text` fits inside the page width minus the edge
    padding on both sides. Never goes below MIN_FONT_SIZE.
    Returns (font_size, text_width).
    """
    max_width = max(10, page_width - 2 * EDGE_PADDING)
    size = font_size
    width = measure(text, size)
    while width > max_width and size > MIN_FONT_SIZE:
        size = max(MIN_FONT_SIZE, math.floor(size * max_width / width))
        width = measure(text, size)
    return size, width


def _clamp(value: float, dim: float, text_dim: float) -> float:
    return max(CLAMP_MARGIN, min(value, dim - text_dim - CLAMP_MARGIN))


def anchor_position(
    position: str,
    page_width: float,
    page_height: float,
    text_width: float,
    text_height: float,
    margin_x: float,
    margin_y: float,
) -> Tuple[float, float]:
    vertical, _, horizontal = (position or "").partition("-")
    if position not in POSITIONS:
        vertical, horizontal = "bottom", "right"

    if horizontal == "left":
        x = margin_x
    elif horizontal == "center":
        x = (page_width - text_width) / 2
    else:
        x = page_width - text_width - margin_x

    if vertical == "top":
        y = page_height - margin_y - text_height
    else:
        y = margin_y

    return _clamp(x, page_width, text_width), _clamp(y, page_height, text_height)


def watermark_tiles(
    page_width: float,
    page_height: float,
    text_width: float,
    text_height: float,
) -> List[Tuple[float, float]]:
    """Brick-pattern grid of text origins covering the page."""
    spacing_x = max(text_width * 1.8, 180)
    spacing_y = max(text_height * 3, 120)

    cols = math.ceil((page_width + spacing_x) / spacing_x) + 1
    rows = math.ceil((page_height + spacing_y) / spacing_y) + 1

    start_x = -spacing_x / 2
    start_y = -spacing_y / 2

    tiles = []
    for row in range(rows):
        offset = (row % 2) * (spacing_x / 2)
        for col in range(cols):
            x = start_x + col * spacing_x + offset
            y = start_y + row * spacing_y
            if -text_width < x < page_width + text_width and -text_height < y < page_height + text_height:
                tiles.append((x, y))
    return tiles


def fit_centered(src_width: float, src_height: float, box_width: float, box_height: float) -> Tuple[float, float, float, float]:
    """Scale (never stretch) a source box into the target and centre it: (x, y, w, h)."""
    scale = min(box_width / src_width, box_height / src_height)
    w = src_width * scale
    h = src_height * scale
    return (box_width - w) / 2, (box_height - h) / 2, w, h


def hex_to_rgb(value: str) -> Tuple[float, float, float]:
    v = (value or "").strip().lstrip("#")
    if len(v) != 6:
        return 0.0, 0.0, 0.0
    try:
        return tuple(int(v[i:i + 2], 16) / 255 for i in (0, 2, 4))
    except ValueError:
        return 0.0, 0.0, 0.0
