"""Blocking Pillow and pdfium helpers. Callers run these through ``anyio.to_thread.run_sync``."""

from __future__ import annotations

import hashlib
import math
from pathlib import Path
from typing import Any

import pypdfium2 as pdfium
from PIL import Image

EMBEDDING_MODEL = "pillow-grid-hist-v1"
GRID_SIZE = 8
HISTOGRAM_BINS = 8
EMBEDDING_DIMENSIONS = GRID_SIZE * GRID_SIZE + 3 * HISTOGRAM_BINS
PDF_RENDER_DPI = 220
_PDF_MAGIC = b"%PDF-"

_NAMED_COLORS: dict[str, tuple[int, int, int]] = {
    "black": (0, 0, 0),
    "white": (255, 255, 255),
    "gray": (128, 128, 128),
    "red": (220, 40, 40),
    "orange": (240, 140, 30),
    "yellow": (240, 220, 40),
    "green": (40, 170, 70),
    "teal": (30, 150, 150),
    "blue": (40, 80, 220),
    "purple": (130, 60, 180),
    "pink": (240, 130, 180),
    "brown": (120, 80, 40),
}


def sha256_for_path(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        while True:
            chunk = fh.read(1024 * 1024)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def image_dimensions(path: Path) -> tuple[int | None, int | None]:
    try:
        with Image.open(path) as img:
            w, h = img.size
            return int(w), int(h)
    except (OSError, ValueError):
        return None, None


def is_pdf(path: Path) -> bool:
    with path.open("rb") as fh:
        return fh.read(len(_PDF_MAGIC)) == _PDF_MAGIC


def render_pdf_page(path: Path, *, page_number: int = 1, dpi: int = PDF_RENDER_DPI) -> tuple[Image.Image, int]:
    """Rasterize one page (1-based). Returns the RGB image and the document page count."""
    if page_number < 1:
        raise ValueError("PDF page must be >= 1")
    pdf = pdfium.PdfDocument(str(path))
    try:
        page_count = len(pdf)
        if page_number > page_count:
            raise ValueError(f"PDF has {page_count} pages, page {page_number} requested")
        page = pdf[page_number - 1]
        try:
            image = page.render(scale=dpi / 72).to_pil().convert("RGB")
        finally:
            page.close()
    finally:
        pdf.close()
    return image, page_count


def _load_rgb(src_path: Path) -> Image.Image:
    if is_pdf(src_path):
        image, _pages = render_pdf_page(src_path)
        return image
    with Image.open(src_path) as img:
        return img.convert("RGB")


def render_thumbnails(src_path: Path, targets: dict[str, tuple[Path, int]]) -> dict[str, dict[str, int]]:
    """Render each style as an RGB JPEG bounded by its max edge. Returns style -> {width, height, size_bytes}."""
    rendered: dict[str, dict[str, int]] = {}
    base = _load_rgb(src_path)
    for style, (destination, max_edge) in targets.items():
        destination.parent.mkdir(parents=True, exist_ok=True)
        out = base.copy()
        out.thumbnail((int(max_edge), int(max_edge)))
        out.save(destination, format="JPEG", optimize=True, quality=85)
        rendered[style] = {
            "width": int(out.size[0]),
            "height": int(out.size[1]),
            "size_bytes": int(destination.stat().st_size),
        }
    return rendered


def _hex(rgb: tuple[int, int, int]) -> str:
    return "#{:02x}{:02x}{:02x}".format(*rgb)


def dominant_colors(path: Path, *, limit: int = 5, palette_size: int = 8) -> list[dict[str, Any]]:
    with Image.open(path) as img:
        sample = img.convert("RGB")
    sample.thumbnail((128, 128))
    quantized = sample.quantize(colors=palette_size)
    palette = quantized.getpalette() or []
    counts = quantized.getcolors() or []
    total = sum(count for count, _ in counts) or 1
    colors: list[dict[str, Any]] = []
    for count, index in sorted(counts, key=lambda row: row[0], reverse=True)[:limit]:
        rgb = tuple(palette[index * 3 : index * 3 + 3])
        if len(rgb) != 3:
            continue
        colors.append({"hex": _hex(rgb), "rgb": list(rgb), "coverage": round(count / total, 4)})
    return colors


def color_name(hex_value: str) -> str:
    raw = str(hex_value or "").lstrip("#")
    try:
        rgb = (int(raw[0:2], 16), int(raw[2:4], 16), int(raw[4:6], 16))
    except ValueError:
        return "unknown"
    return min(
        _NAMED_COLORS,
        key=lambda name: sum((a - b) ** 2 for a, b in zip(rgb, _NAMED_COLORS[name])),
    )


def describe_tags(width: int | None, height: int | None, colors: list[dict[str, Any]]) -> list[str]:
    tags: set[str] = set()
    if width and height:
        if width == height:
            tags.add("square")
        else:
            tags.add("landscape" if width > height else "portrait")
        longest = max(width, height)
        if longest >= 3000:
            tags.add("high-resolution")
        elif longest < 640:
            tags.add("low-resolution")
        else:
            tags.add("standard-resolution")
    for color in colors[:3]:
        tags.add(f"color-{color_name(str(color.get('hex') or ''))}")
    return sorted(tags)


def embedding_vector(path: Path) -> list[float]:
    """64-cell grayscale grid followed by a per-channel RGB histogram, L2-normalised."""
    with Image.open(path) as img:
        rgb = img.convert("RGB")
    grid = rgb.convert("L").resize((GRID_SIZE, GRID_SIZE))
    values = [float(px) / 255.0 for px in grid.getdata()]

    histogram = rgb.histogram()
    pixels = float(rgb.size[0] * rgb.size[1]) or 1.0
    step = 256 // HISTOGRAM_BINS
    for channel in range(3):
        counts = histogram[channel * 256 : (channel + 1) * 256]
        for bucket in range(HISTOGRAM_BINS):
            values.append(sum(counts[bucket * step : (bucket + 1) * step]) / pixels)

    norm = math.sqrt(sum(v * v for v in values))
    if norm == 0:
        return [0.0] * len(values)
    return [round(v / norm, 6) for v in values]
