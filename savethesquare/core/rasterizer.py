# savethesquare/core/rasterizer.py
"""Text rasterizer: turn a string into the grid cells under its glyphs.

The text is drawn with Pillow onto an offscreen RGBA canvas, sampled on a
stride derived from font size and density, and every ink pixel is projected
through the current map viewport into a geographic coordinate.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Mapping, Optional, Set, Tuple

from PIL import Image, ImageDraw, ImageFont

from .geometry import Coordinate, to_cell_key
from .selection import SelectionStore, TextProvenance, TextSelectionResult

log = logging.getLogger(__name__)

MIN_FONT_SIZE = 12
MAX_FONT_SIZE = 400
MIN_DENSITY = 1
MAX_DENSITY = 10

# stride = font_size / (density * STRIDE_DIVISOR)
STRIDE_DIVISOR = 10
INK_ALPHA_THRESHOLD = 127

# offscreen canvas and sampling loop bounds, so one request stays short
MAX_CANVAS_PIXELS = 8_000_000
MAX_SAMPLE_POINTS = 1_000_000

_BOLD_FONT_CANDIDATES = (
    "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    "/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf",
    "/usr/share/fonts/truetype/freefont/FreeSansBold.ttf",
    "/usr/share/fonts/TTF/DejaVuSans-Bold.ttf",
    "/System/Library/Fonts/Supplemental/Arial Bold.ttf",
    "/Library/Fonts/Arial Bold.ttf",
    "C:/Windows/Fonts/arialbd.ttf",
    "DejaVuSans-Bold.ttf",
    "Arial Bold.ttf",
)

BoundaryTest = Callable[[Coordinate], bool]


def finite_number(value: Any, field: str) -> float:
    """float(value), rejecting NaN and +/-Infinity (JSON bodies may carry them)."""
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"{field} must be a finite number")
    return number


# ----------------------------
# Viewport
# ----------------------------
@dataclass(frozen=True)
class ViewportTransform:
    """The visible map: centre, pixel size and geographic span."""

    center: Coordinate
    width_px: int
    height_px: int
    lat_span: float
    lon_span: float
    zoom: Optional[float] = None

    def __post_init__(self) -> None:
        if self.width_px <= 0 or self.height_px <= 0:
            raise ValueError("Viewport must have a positive pixel size")
        if self.lat_span <= 0 or self.lon_span <= 0:
            raise ValueError("Viewport must have a positive geographic span")

    @classmethod
    def from_bounds(
        cls,
        *,
        north: float,
        south: float,
        east: float,
        west: float,
        width_px: int,
        height_px: int,
        zoom: Optional[float] = None,
    ) -> "ViewportTransform":
        return cls(
            center=Coordinate(lat=(north + south) / 2.0, lon=(east + west) / 2.0),
            width_px=int(width_px),
            height_px=int(height_px),
            lat_span=float(north - south),
            lon_span=float(east - west),
            zoom=zoom,
        )

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ViewportTransform":
        zoom = raw.get("zoom")
        return cls.from_bounds(
            north=finite_number(raw["north"], "north"),
            south=finite_number(raw["south"], "south"),
            east=finite_number(raw["east"], "east"),
            west=finite_number(raw["west"], "west"),
            width_px=int(finite_number(raw["width"], "width")),
            height_px=int(finite_number(raw["height"], "height")),
            zoom=finite_number(zoom, "zoom") if zoom is not None else None,
        )

    @property
    def lat_per_px(self) -> float:
        return self.lat_span / self.height_px

    @property
    def lon_per_px(self) -> float:
        return self.lon_span / self.width_px

    def offset_to_coordinate(self, dx: float, dy: float) -> Coordinate:
        """Pixel offset from the viewport centre (y grows downward) to lat/lon."""
        return Coordinate(
            lat=self.center.lat - dy * self.lat_per_px,
            lon=self.center.lon + dx * self.lon_per_px,
        )


# ----------------------------
# Fonts
# ----------------------------
_FONT_CACHE: Dict[int, Any] = {}


def _load_bold_font(size: int) -> Any:
    font = _FONT_CACHE.get(size)
    if font is not None:
        return font

    for path in _BOLD_FONT_CANDIDATES:
        try:
            font = ImageFont.truetype(path, size)
            break
        except OSError:
            continue
    else:
        log.warning("No bold TrueType font found; using Pillow's default font")
        font = ImageFont.load_default(size=size)

    _FONT_CACHE[size] = font
    return font


def clamp_font_size(font_size: Any) -> int:
    return max(MIN_FONT_SIZE, min(MAX_FONT_SIZE, int(font_size)))


def clamp_density(density: Any) -> int:
    return max(MIN_DENSITY, min(MAX_DENSITY, int(density)))


def sampling_stride(font_size: int, density: int) -> int:
    return max(1, int(font_size / (max(1, density) * STRIDE_DIVISOR)))


# ----------------------------
# Rasterization
# ----------------------------
def canvas_size(text: str, font_size: int) -> Tuple[int, int]:
    width = max(font_size * 2, int(len(text) * font_size * 1.2) + font_size)
    height = font_size * 2 + font_size // 2
    return width, height


def check_renderable(text: str, font_size: Any, sampling_density: Any) -> None:
    """Raise ValueError when ``text`` at these settings exceeds the canvas or sampling limits."""
    size = clamp_font_size(font_size)
    step = sampling_stride(size, clamp_density(sampling_density))
    width, height = canvas_size(text, size)
    if width * height > MAX_CANVAS_PIXELS:
        raise ValueError(
            f"Text is too large to draw at {size}px ({width}x{height} canvas); use fewer characters or a smaller font"
        )
    samples = math.ceil(width / step) * math.ceil(height / step)
    if samples > MAX_SAMPLE_POINTS:
        raise ValueError(f"Text needs {samples} sample points at this density; lower the density or the font size")


def render_text_mask(text: str, font_size: int) -> Image.Image:
    """Centred bold text on a transparent canvas; only the alpha band matters."""
    width, height = canvas_size(text, font_size)
    if width * height > MAX_CANVAS_PIXELS:
        raise ValueError(f"Canvas {width}x{height} exceeds {MAX_CANVAS_PIXELS} pixels")
    font = _load_bold_font(font_size)

    canvas = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    draw = ImageDraw.Draw(canvas)
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    x = (width - (right - left)) / 2.0 - left
    y = (height - (bottom - top)) / 2.0 - top
    draw.text((x, y), text, font=font, fill=(0, 0, 0, 255))
    return canvas


def rasterize(
    text: str,
    font_size: int,
    sampling_density: int,
    viewport: ViewportTransform,
    boundary_test: BoundaryTest,
) -> Set[str]:
    if not text or not text.strip():
        return set()

    check_renderable(text, font_size, sampling_density)
    size = clamp_font_size(font_size)
    step = sampling_stride(size, clamp_density(sampling_density))

    mask = render_text_mask(text, size)
    alpha = mask.getchannel("A")
    width, height = alpha.size
    cx, cy = width / 2.0, height / 2.0
    pixels = alpha.load()

    keys: Set[str] = set()
    for py in range(0, height, step):
        for px in range(0, width, step):
            if pixels[px, py] <= INK_ALPHA_THRESHOLD:
                continue
            coordinate = viewport.offset_to_coordinate(px - cx, py - cy)
            if boundary_test(coordinate):
                keys.add(to_cell_key(coordinate))

    log.debug("rasterized %r at %dpx step=%d -> %d cell(s)", text, size, step, len(keys))
    return keys


# ----------------------------
# Text mode configuration
# ----------------------------
@dataclass(frozen=True)
class TextModeConfig:
    font_size: int = 40
    density: int = 2
    color: str = "#ff6b35"
    radius: float = 3.0
    zoom: Optional[float] = None

    def normalized(self) -> "TextModeConfig":
        return replace(self, font_size=clamp_font_size(self.font_size), density=clamp_density(self.density))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "fontSize": self.font_size,
            "pixelDensity": self.density,
            "color": self.color,
            "pixelRadius": self.radius,
            "zoom": self.zoom,
        }

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "TextModeConfig":
        data = dict(raw or {})
        base = cls()
        zoom = data.get("zoom")
        return cls(
            font_size=int(finite_number(data.get("fontSize", data.get("font_size", base.font_size)), "fontSize")),
            density=int(finite_number(data.get("pixelDensity", data.get("density", base.density)), "pixelDensity")),
            color=str(data.get("color") or base.color),
            radius=finite_number(data.get("pixelRadius", data.get("radius", base.radius)), "pixelRadius"),
            zoom=finite_number(zoom, "zoom") if zoom is not None else None,
        ).normalized()


# ----------------------------
# Debounced preview
# ----------------------------
class TextPreview:
    """Coalesces text/config/viewport changes into one trailing recompute.

    ``submit`` records the latest inputs; ``poll`` runs the recompute once the
    inputs have been quiet for ``delay_s``; ``flush`` runs it immediately.
    """

    def __init__(
        self,
        store: SelectionStore,
        *,
        delay_s: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
        config: Optional[TextModeConfig] = None,
        on_config_change: Optional[Callable[[TextModeConfig], None]] = None,
    ) -> None:
        self.store = store
        self.delay_s = float(delay_s)
        self._clock = clock
        self._on_config_change = on_config_change

        self.text = ""
        self.config = (config or TextModeConfig()).normalized()
        self.viewport: Optional[ViewportTransform] = None

        self._pending_since: Optional[float] = None
        self.runs = 0
        self.last_result: Optional[TextSelectionResult] = None

    @property
    def pending(self) -> bool:
        return self._pending_since is not None

    def submit(
        self,
        *,
        text: Optional[str] = None,
        config: Optional[TextModeConfig] = None,
        viewport: Optional[ViewportTransform] = None,
    ) -> None:
        if text is not None:
            self.text = text
        if config is not None:
            self.config = config.normalized()
            if self._on_config_change is not None:
                self._on_config_change(self.config)
        if viewport is not None:
            self.viewport = viewport
        self._pending_since = self._clock()

    def poll(self) -> Optional[TextSelectionResult]:
        if self._pending_since is None:
            return None
        if self._clock() - self._pending_since < self.delay_s:
            return None
        return self.flush()

    def flush(self) -> Optional[TextSelectionResult]:
        if self._pending_since is None:
            return None
        self._pending_since = None
        return self._recompute()

    def _recompute(self) -> TextSelectionResult:
        cfg = self.config
        if not self.text.strip() or self.viewport is None:
            keys: Set[str] = set()
        else:
            keys = rasterize(
                self.text,
                cfg.font_size,
                cfg.density,
                self.viewport,
                self.store.boundary.is_inside,
            )

        zoom = self.viewport.zoom if self.viewport is not None and self.viewport.zoom is not None else cfg.zoom
        provenance = TextProvenance(
            text=self.text,
            color=cfg.color,
            font_size=cfg.font_size,
            pixel_density=cfg.density,
            radius=cfg.radius,
            zoom=zoom,
        )
        self.runs += 1
        self.last_result = self.store.apply_text_selection(keys, provenance)
        return self.last_result


def preview_cells(
    text: str,
    config: TextModeConfig,
    viewport: ViewportTransform,
    boundary_test: BoundaryTest,
) -> Tuple[Set[str], TextProvenance]:
    """One-shot rasterization with the provenance it would be tagged with."""
    cfg = config.normalized()
    keys = rasterize(text, cfg.font_size, cfg.density, viewport, boundary_test)
    provenance = TextProvenance(
        text=text,
        color=cfg.color,
        font_size=cfg.font_size,
        pixel_density=cfg.density,
        radius=cfg.radius,
        zoom=viewport.zoom if viewport.zoom is not None else cfg.zoom,
    )
    return keys, provenance


__all__ = [
    "MIN_FONT_SIZE",
    "MAX_FONT_SIZE",
    "MAX_CANVAS_PIXELS",
    "MAX_SAMPLE_POINTS",
    "ViewportTransform",
    "TextModeConfig",
    "TextPreview",
    "rasterize",
    "render_text_mask",
    "canvas_size",
    "check_renderable",
    "finite_number",
    "sampling_stride",
    "preview_cells",
]
