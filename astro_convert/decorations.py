"""
Annotation overlays and watermark text composited onto RGBA exports.

Drawing always happens on a copy; the rendered buffer passed in is never
modified.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import numpy as np

from .config import RenderOptions
from .models import AstrometryAnnotation, StarAnnotationPoint

# (r, g, b, alpha)
STAR_MANUAL_COLOR = (34, 197, 94, 0.95)
STAR_DETECTED_COLOR = (245, 158, 11, 0.95)
ASTROMETRY_COLOR = (56, 189, 248, 0.9)
WATERMARK_BG = (17, 24, 39, 0.68)
WATERMARK_FG = (255, 255, 255, 0.9)

GLYPH_WIDTH = 5
GLYPH_HEIGHT = 7
CHAR_ADVANCE = 6
MAX_WATERMARK_CHARS = 120
MAX_LABEL_CHARS = 18

# 5x7 bitmap font, one string of five bits per row
FONT_5X7 = {
    " ": ("00000", "00000", "00000", "00000", "00000", "00000", "00000"),
    "?": ("01110", "10001", "00010", "00100", "00100", "00000", "00100"),
    ".": ("00000", "00000", "00000", "00000", "00000", "00110", "00110"),
    "-": ("00000", "00000", "00000", "11111", "00000", "00000", "00000"),
    "_": ("00000", "00000", "00000", "00000", "00000", "00000", "11111"),
    ":": ("00000", "00110", "00110", "00000", "00110", "00110", "00000"),
    "|": ("00100", "00100", "00100", "00100", "00100", "00100", "00100"),
    "/": ("00001", "00010", "00100", "01000", "10000", "00000", "00000"),
    "0": ("01110", "10001", "10011", "10101", "11001", "10001", "01110"),
    "1": ("00100", "01100", "00100", "00100", "00100", "00100", "01110"),
    "2": ("01110", "10001", "00001", "00010", "00100", "01000", "11111"),
    "3": ("11110", "00001", "00001", "01110", "00001", "00001", "11110"),
    "4": ("00010", "00110", "01010", "10010", "11111", "00010", "00010"),
    "5": ("11111", "10000", "10000", "11110", "00001", "00001", "11110"),
    "6": ("01110", "10000", "10000", "11110", "10001", "10001", "01110"),
    "7": ("11111", "00001", "00010", "00100", "01000", "10000", "10000"),
    "8": ("01110", "10001", "10001", "01110", "10001", "10001", "01110"),
    "9": ("01110", "10001", "10001", "01111", "00001", "00001", "01110"),
    "A": ("01110", "10001", "10001", "11111", "10001", "10001", "10001"),
    "B": ("11110", "10001", "10001", "11110", "10001", "10001", "11110"),
    "C": ("01110", "10001", "10000", "10000", "10000", "10001", "01110"),
    "D": ("11100", "10010", "10001", "10001", "10001", "10010", "11100"),
    "E": ("11111", "10000", "10000", "11110", "10000", "10000", "11111"),
    "F": ("11111", "10000", "10000", "11110", "10000", "10000", "10000"),
    "G": ("01110", "10001", "10000", "10111", "10001", "10001", "01110"),
    "H": ("10001", "10001", "10001", "11111", "10001", "10001", "10001"),
    "I": ("01110", "00100", "00100", "00100", "00100", "00100", "01110"),
    "J": ("00111", "00010", "00010", "00010", "10010", "10010", "01100"),
    "K": ("10001", "10010", "10100", "11000", "10100", "10010", "10001"),
    "L": ("10000", "10000", "10000", "10000", "10000", "10000", "11111"),
    "M": ("10001", "11011", "10101", "10001", "10001", "10001", "10001"),
    "N": ("10001", "11001", "10101", "10011", "10001", "10001", "10001"),
    "O": ("01110", "10001", "10001", "10001", "10001", "10001", "01110"),
    "P": ("11110", "10001", "10001", "11110", "10000", "10000", "10000"),
    "Q": ("01110", "10001", "10001", "10001", "10101", "10010", "01101"),
    "R": ("11110", "10001", "10001", "11110", "10100", "10010", "10001"),
    "S": ("01111", "10000", "10000", "01110", "00001", "00001", "11110"),
    "T": ("11111", "00100", "00100", "00100", "00100", "00100", "00100"),
    "U": ("10001", "10001", "10001", "10001", "10001", "10001", "01110"),
    "V": ("10001", "10001", "10001", "10001", "10001", "01010", "00100"),
    "W": ("10001", "10001", "10001", "10001", "10101", "11011", "10001"),
    "X": ("10001", "10001", "01010", "00100", "01010", "10001", "10001"),
    "Y": ("10001", "10001", "01010", "00100", "00100", "00100", "00100"),
    "Z": ("11111", "00001", "00010", "00100", "01000", "10000", "11111"),
}


@dataclass
class DecorationResult:
    """Decorated copy of the buffer plus what was drawn."""

    rgba: np.ndarray
    annotations_drawn: int = 0
    watermark_applied: bool = False
    warnings: list[str] = field(default_factory=list)


def _blend(out: np.ndarray, y0: int, x0: int, mask: np.ndarray, color) -> None:
    """Alpha-blend a color through a boolean mask placed at (y0, x0)."""
    height, width = out.shape[:2]
    mh, mw = mask.shape
    ys, xs = max(0, y0), max(0, x0)
    ye, xe = min(height, y0 + mh), min(width, x0 + mw)
    if ys >= ye or xs >= xe:
        return
    sub = mask[ys - y0:ye - y0, xs - x0:xe - x0]
    if not sub.any():
        return

    r, g, b, alpha = color
    src_a = min(max(float(alpha), 0.0), 1.0)
    region = out[ys:ye, xs:xe].astype(np.float32) / 255.0
    dst_a = region[..., 3]
    out_a = src_a + dst_a * (1.0 - src_a)
    src = np.array([r, g, b], dtype=np.float32) / 255.0
    with np.errstate(divide="ignore", invalid="ignore"):
        rgb = (src * src_a + region[..., :3] * (dst_a * (1.0 - src_a))[..., np.newaxis]) \
            / out_a[..., np.newaxis]
    rgb = np.nan_to_num(rgb, nan=0.0)

    blended = np.empty_like(region)
    blended[..., :3] = rgb
    blended[..., 3] = out_a
    pixels = np.clip(np.round(blended * 255.0), 0, 255).astype(np.uint8)
    target = out[ys:ye, xs:xe]
    target[sub] = pixels[sub]


def draw_rect(out: np.ndarray, x: int, y: int, w: int, h: int, color) -> None:
    if w <= 0 or h <= 0:
        return
    _blend(out, int(y), int(x), np.ones((int(h), int(w)), dtype=bool), color)


def draw_circle(out: np.ndarray, cx: float, cy: float, radius: float,
                stroke: float, color) -> None:
    """Stroke a circle outline of the given width."""
    r = max(1.0, float(radius))
    t = max(1.0, float(stroke))
    outer = r + t / 2
    inner = max(0.0, r - t / 2)
    x0 = int(np.floor(cx - outer - 1))
    y0 = int(np.floor(cy - outer - 1))
    x1 = int(np.ceil(cx + outer + 1))
    y1 = int(np.ceil(cy + outer + 1))
    yy, xx = np.mgrid[y0:y1 + 1, x0:x1 + 1]
    d2 = (xx - cx) ** 2 + (yy - cy) ** 2
    mask = (d2 <= outer * outer) & (d2 >= inner * inner)
    _blend(out, y0, x0, mask, color)


def _glyph(ch: str) -> np.ndarray:
    rows = FONT_5X7.get(ch.upper(), FONT_5X7.get(ch, FONT_5X7["?"]))
    return np.array([[bit == "1" for bit in row] for row in rows], dtype=bool)


def text_mask(text: str, scale: int = 1) -> np.ndarray:
    """Boolean mask of a text line in the 5x7 font."""
    s = max(1, int(scale))
    mask = np.zeros((GLYPH_HEIGHT * s, max(1, len(text)) * CHAR_ADVANCE * s), dtype=bool)
    for i, ch in enumerate(text):
        glyph = np.kron(_glyph(ch), np.ones((s, s), dtype=bool))
        x = i * CHAR_ADVANCE * s
        mask[:, x:x + GLYPH_WIDTH * s] = glyph
    return mask


def draw_text(out: np.ndarray, x: int, y: int, text: str, color, scale: int = 1) -> None:
    width = out.shape[1]
    advance = CHAR_ADVANCE * max(1, int(scale))
    # Stop at the right edge
    room = max(0, (width - int(x)) // advance)
    text = text[:room]
    if text:
        _blend(out, int(y), int(x), text_mask(text, scale), color)


def default_watermark_text(filename: str, fmt: str) -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    return f"{filename} | {fmt.upper()} | {stamp}"


def apply_decorations(rgba: np.ndarray, render: RenderOptions,
                      stars: Optional[list[StarAnnotationPoint]] = None,
                      astrometry: Optional[list[AstrometryAnnotation]] = None,
                      filename: str = "image", fmt: str = "png") -> DecorationResult:
    """Composite annotations and watermark onto a copy of an RGBA buffer."""
    out = np.array(rgba, dtype=np.uint8, copy=True)
    result = DecorationResult(rgba=out)
    height, width = out.shape[:2]

    if render.include_annotations:
        for point in stars or []:
            if not point.enabled:
                continue
            manual = point.source == "manual"
            radius = point.radius if point.radius else (4 if manual else 3)
            color = STAR_MANUAL_COLOR if manual else STAR_DETECTED_COLOR
            draw_circle(out, point.x, point.y, radius, 1.5, color)
            result.annotations_drawn += 1

        for ann in astrometry or []:
            radius = 5.0 if ann.radius is None else min(max(float(ann.radius), 3.0), 24.0)
            draw_circle(out, ann.pixelx, ann.pixely, radius, 1.2, ASTROMETRY_COLOR)
            label = ann.names[0] if ann.names else ann.type
            if label:
                draw_text(out, round(ann.pixelx + radius + 3), round(ann.pixely - 3),
                          label[:MAX_LABEL_CHARS], ASTROMETRY_COLOR)
            result.annotations_drawn += 1

        if result.annotations_drawn == 0:
            result.warnings.append("No annotations available for export.")

    if render.include_watermark:
        text = (render.watermark_text or "").strip() or default_watermark_text(filename, fmt)
        text = text[:MAX_WATERMARK_CHARS]
        pad_x, pad_y = 6, 4
        box_w = min(width - 2, len(text) * CHAR_ADVANCE + pad_x * 2)
        box_h = GLYPH_HEIGHT + pad_y * 2
        x = max(1, width - box_w - 6)
        y = max(1, height - box_h - 6)
        draw_rect(out, x, y, box_w, box_h, WATERMARK_BG)
        draw_text(out, x + pad_x, y + pad_y, text, WATERMARK_FG)
        result.watermark_applied = True

    return result
