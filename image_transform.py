#!/usr/bin/env python3
"""Probe, resize and convert images with Pillow."""

import argparse
import io
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

from PIL import Image, ImageFilter

from service_config import DEFAULT_MAX_OUTPUT_PIXELS, LOG_NAME

logger = logging.getLogger(f"{LOG_NAME}.transform")

DEFAULT_QUALITY = 80
CONVERT_EFFORT = 4
MAX_DIMENSION = 65500
EXIF_ORIENTATION_TAG = 0x0112
ORIENTATION_DEGREES = {3: 180, 6: 90, 8: 270}
CONTENT_TYPES = {"JPEG": "image/jpeg", "PNG": "image/png", "WEBP": "image/webp"}


class UnreadableImageError(Exception):
    """Raised when a file is missing or is not a recognisable image."""


class TransformError(Exception):
    """Raised when the codec fails to resize or encode an image."""


@dataclass(frozen=True)
class ImageGeometry:
    width: int
    height: int


@dataclass(frozen=True)
class TransformResult:
    data: bytes
    geometry: ImageGeometry
    content_type: str
    image_format: str
    filename: str = ""


def probe_image(path: Union[str, Path]) -> ImageGeometry:
    return inspect_image(path)[0]


def read_rotation(path: Union[str, Path]) -> int:
    """Return the clockwise rotation in degrees encoded by the EXIF orientation tag."""
    return inspect_image(path)[1]


def inspect_image(path: Union[str, Path]) -> Tuple[ImageGeometry, int]:
    """Read dimensions and EXIF rotation from a single header parse."""
    # Image.open only parses the header; pixel data stays undecoded.
    try:
        with Image.open(path) as img:
            width, height = img.size
            orientation = img.getexif().get(EXIF_ORIENTATION_TAG)
    except OSError as exc:
        raise UnreadableImageError(f"Unable to read image header from {path}: {exc}") from exc
    return ImageGeometry(width=width, height=height), ORIENTATION_DEGREES.get(orientation, 0)


def target_height(target_width: int, source: ImageGeometry) -> int:
    """Height that keeps the source aspect ratio, rounded half-up.

    Integer arithmetic keeps the rounding exact: 800x600 at width 9999
    gives 7499.25, which rounds to 7499.
    """
    if target_width <= 0:
        raise ValueError("target_width must be positive")
    numerator = 2 * target_width * source.height + source.width
    return numerator // (2 * source.width)


def size_delta_percent(original_bytes: int, new_bytes: int) -> float:
    if original_bytes <= 0:
        return 0.0
    return abs((new_bytes / original_bytes - 1) * 100)


def check_output_size(width: int, height: int, max_pixels: int = DEFAULT_MAX_OUTPUT_PIXELS) -> None:
    """Reject output sizes the encoders cannot hold before any pixels are allocated."""
    if width > MAX_DIMENSION or height > MAX_DIMENSION:
        raise TransformError(f"Output size {width}x{height} exceeds the {MAX_DIMENSION} pixel side limit")
    if width * height > max_pixels:
        raise TransformError(f"Output size {width}x{height} exceeds the {max_pixels} pixel budget")


def _metadata_kwargs(img: Image.Image) -> dict:
    kwargs = {}
    exif = img.info.get("exif")
    if exif:
        kwargs["exif"] = exif
    icc_profile = img.info.get("icc_profile")
    if icc_profile:
        kwargs["icc_profile"] = icc_profile
    return kwargs


def _flatten_for_jpeg(img: Image.Image) -> Image.Image:
    if img.mode in ("RGB", "L", "CMYK"):
        return img
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (0, 0, 0))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return img.convert("RGB")


def resize_image(
    path: Union[str, Path],
    target_width: int,
    blur: Optional[int] = None,
    *,
    output_format: str = "JPEG",
    source: Optional[ImageGeometry] = None,
    max_pixels: int = DEFAULT_MAX_OUTPUT_PIXELS,
) -> TransformResult:
    """Resize to ``target_width`` keeping the aspect ratio, optionally blurring first.

    The blur step only runs for a radius greater than zero. EXIF and ICC
    metadata from the source are carried into the output.
    """
    if source is None:
        source = probe_image(path)
    height = target_height(target_width, source)
    check_output_size(target_width, height, max_pixels)
    try:
        with Image.open(path) as img:
            img.load()
            metadata = _metadata_kwargs(img)
            working = img
            if blur is not None and blur > 0:
                if working.mode == "P":
                    working = working.convert("RGBA")
                working = working.filter(ImageFilter.GaussianBlur(radius=blur))
            resized = working.resize((target_width, height), Image.LANCZOS)
            if output_format == "JPEG":
                resized = _flatten_for_jpeg(resized)
            buffer = io.BytesIO()
            resized.save(buffer, format=output_format, **metadata)
    except (OSError, ValueError) as exc:
        raise TransformError(f"Failed to resize {path} to {target_width}x{height}: {exc}") from exc
    return TransformResult(
        data=buffer.getvalue(),
        geometry=ImageGeometry(width=resized.width, height=resized.height),
        content_type=CONTENT_TYPES[output_format],
        image_format=output_format,
    )


def convert_image(
    path: Union[str, Path],
    quality: Union[int, float] = DEFAULT_QUALITY,
    *,
    source: Optional[ImageGeometry] = None,
) -> TransformResult:
    """Re-encode as WebP. ``quality`` reaches the encoder untouched, NaN included."""
    if source is None:
        probe_image(path)
    try:
        with Image.open(path) as img:
            img.load()
            metadata = _metadata_kwargs(img)
            buffer = io.BytesIO()
            img.save(buffer, format="WEBP", quality=quality, method=CONVERT_EFFORT, **metadata)
            geometry = ImageGeometry(width=img.width, height=img.height)
    except (OSError, ValueError, TypeError) as exc:
        raise TransformError(f"Failed to convert {path} to WebP (quality={quality}): {exc}") from exc
    return TransformResult(
        data=buffer.getvalue(),
        geometry=geometry,
        content_type=CONTENT_TYPES["WEBP"],
        image_format="WEBP",
    )


def log_size_delta(original_bytes: int, result: TransformResult) -> None:
    new_size_kb = len(result.data) / 1024
    delta = size_delta_percent(original_bytes, len(result.data))
    logger.info("New image is %.2f%% less in size - %.2fKb", delta, new_size_kb)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Resize or convert a local image file.")
    subparsers = parser.add_subparsers(dest="operation", required=True)

    resize_parser = subparsers.add_parser("resize", help="Resize keeping the aspect ratio.")
    resize_parser.add_argument("input", help="Source image path.")
    resize_parser.add_argument("output", help="Destination path (PNG output when it ends in .png).")
    resize_parser.add_argument("--width", type=int, required=True, help="Target width in pixels.")
    resize_parser.add_argument("--blur", type=int, default=None, help="Optional blur radius (> 0 to apply).")

    convert_parser = subparsers.add_parser("convert", help="Convert to WebP.")
    convert_parser.add_argument("input", help="Source image path.")
    convert_parser.add_argument("output", help="Destination WebP path.")
    convert_parser.add_argument(
        "--quality",
        type=int,
        default=DEFAULT_QUALITY,
        help=f"WebP quality (default: {DEFAULT_QUALITY}).",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    if args.operation == "resize":
        output_format = "PNG" if args.output.lower().endswith(".png") else "JPEG"
        result = resize_image(args.input, args.width, args.blur, output_format=output_format)
    else:
        result = convert_image(args.input, args.quality)

    folder = os.path.dirname(args.output)
    if folder:
        os.makedirs(folder, exist_ok=True)
    with open(args.output, "wb") as handle:
        handle.write(result.data)
    print(f"Saved {result.geometry.width}x{result.geometry.height} {result.image_format} to {args.output}")


if __name__ == "__main__":
    main()
