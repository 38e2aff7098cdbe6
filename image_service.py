import argparse
import asyncio
import dataclasses
import logging
import math
import re
import time
import uuid
from typing import Any, Literal, Mapping, Optional, Union

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from filenames import CONVERT, RESIZE, source_extension, suggest_filename
from image_fetch import DownloadError, download_image
from image_transform import (
    DEFAULT_QUALITY,
    TransformError,
    TransformResult,
    UnreadableImageError,
    convert_image,
    inspect_image,
    log_size_delta,
    resize_image,
)
from scratch_files import scratch_file
from service_config import LOG_NAME, ServiceConfig, configure_logging, load_config

logger = logging.getLogger(LOG_NAME)

RESIZE_INVALID_MESSAGE = "Invalid parameters"
CONVERT_INVALID_MESSAGE = "Invalid parameters: image URL is required"
FAILURE_MESSAGES = {
    RESIZE: "Error processing the image",
    CONVERT: "Error converting the image",
}
SCRATCH_SUFFIX = ".download"

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def parse_leading_int(value: Any) -> Optional[int]:
    """Parse the integer prefix of a query value ("400px" -> 400); None when there is none."""
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    match = _LEADING_INT.match(str(value))
    if not match:
        return None
    return int(match.group(1))


class InvalidParameters(Exception):
    """Raised when required query parameters are missing or unusable."""


class ResizeRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    operation: Literal["resize"] = RESIZE
    image: str = Field(..., min_length=1)
    width: int = Field(..., gt=0)
    blur: Optional[int] = None

    @field_validator("width", mode="before")
    @classmethod
    def _parse_width(cls, value):
        return parse_leading_int(value)

    @field_validator("blur", mode="before")
    @classmethod
    def _parse_blur(cls, value):
        return parse_leading_int(value)


class ConvertRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    operation: Literal["convert"] = CONVERT
    image: str = Field(..., min_length=1)
    quality: Union[int, float] = DEFAULT_QUALITY

    @field_validator("quality", mode="before")
    @classmethod
    def _parse_quality(cls, value):
        if value is None:
            return DEFAULT_QUALITY
        parsed = parse_leading_int(value)
        # Non-numeric quality is handed to the encoder as NaN.
        return math.nan if parsed is None else parsed


TransformRequest = Union[ResizeRequest, ConvertRequest]


def build_resize_request(params: Mapping[str, str]) -> ResizeRequest:
    if not params.get("image") or not params.get("width"):
        raise InvalidParameters(RESIZE_INVALID_MESSAGE)
    try:
        return ResizeRequest(image=params["image"], width=params["width"], blur=params.get("blur"))
    except ValidationError as exc:
        raise InvalidParameters(RESIZE_INVALID_MESSAGE) from exc


def build_convert_request(params: Mapping[str, str]) -> ConvertRequest:
    if not params.get("image"):
        raise InvalidParameters(CONVERT_INVALID_MESSAGE)
    try:
        return ConvertRequest(image=params["image"], quality=params.get("quality"))
    except ValidationError as exc:
        raise InvalidParameters(CONVERT_INVALID_MESSAGE) from exc


def _filename_params(transform_request: TransformRequest) -> dict:
    if isinstance(transform_request, ResizeRequest):
        return {"width": transform_request.width, "blur": transform_request.blur}
    return {"quality": transform_request.quality}


async def run_transform(job_id: str, transform_request: TransformRequest, config: ServiceConfig) -> TransformResult:
    """Fetch, inspect and transform one request's image.

    The scratch file is released on every exit path, including failures in
    any stage.
    """
    source_url = transform_request.image
    with scratch_file(config.scratch_dir, SCRATCH_SUFFIX) as scratch_path:
        await download_image(
            source_url,
            scratch_path,
            timeout=config.fetch_timeout_seconds,
            max_bytes=config.max_download_bytes,
        )
        original_bytes = scratch_path.stat().st_size

        geometry, rotation = await asyncio.to_thread(inspect_image, scratch_path)

        if isinstance(transform_request, ResizeRequest):
            logger.info(
                "job %s: original image %s (%sx%s, rotation %s) [blur %s]",
                job_id,
                source_url,
                geometry.width,
                geometry.height,
                rotation,
                transform_request.blur or 0,
            )
            output_format = "PNG" if source_extension(source_url) == ".png" else "JPEG"
            result = await asyncio.to_thread(
                resize_image,
                scratch_path,
                transform_request.width,
                transform_request.blur,
                output_format=output_format,
                source=geometry,
                max_pixels=config.max_output_pixels,
            )
        else:
            logger.info(
                "job %s: original image %s (%sx%s, rotation %s) [quality %s]",
                job_id,
                source_url,
                geometry.width,
                geometry.height,
                rotation,
                transform_request.quality,
            )
            result = await asyncio.to_thread(
                convert_image, scratch_path, transform_request.quality, source=geometry
            )

        log_size_delta(original_bytes, result)

    filename = suggest_filename(source_url, transform_request.operation, _filename_params(transform_request))
    return dataclasses.replace(result, filename=filename)


def _image_headers(result: TransformResult) -> dict:
    return {
        "Content-Length": str(len(result.data)),
        "X-Image-Width": str(result.geometry.width),
        "X-Image-Height": str(result.geometry.height),
        "Content-Disposition": f'inline; filename="{result.filename}"',
    }


async def _handle(request: Request, transform_request: TransformRequest, extra_headers: Optional[dict] = None):
    config: ServiceConfig = request.app.state.config
    operation = transform_request.operation
    job_id = str(uuid.uuid4())
    logger.info("job %s: received /%s request for %s", job_id, operation, transform_request.image)
    start = time.perf_counter()
    try:
        result = await run_transform(job_id, transform_request, config)
        headers = _image_headers(result)
        if extra_headers:
            headers.update(extra_headers)
        response = StreamingResponse(iter([result.data]), media_type=result.content_type, headers=headers)
    except (DownloadError, UnreadableImageError, TransformError):
        logger.exception("job %s: %s failed for %s", job_id, operation, transform_request.image)
        return PlainTextResponse(FAILURE_MESSAGES[operation], status_code=500)
    except Exception:
        logger.exception("job %s: unexpected error during %s of %s", job_id, operation, transform_request.image)
        return PlainTextResponse(FAILURE_MESSAGES[operation], status_code=500)

    logger.info(
        "job %s: completed %s (%sx%s, %s bytes) in %.2fs",
        job_id,
        operation,
        result.geometry.width,
        result.geometry.height,
        len(result.data),
        time.perf_counter() - start,
    )
    return response


def create_app(config: Optional[ServiceConfig] = None) -> FastAPI:
    app = FastAPI(title="Image Transform Service")
    app.state.config = config or ServiceConfig()

    @app.get("/resize")
    async def resize(request: Request):
        try:
            transform_request = build_resize_request(request.query_params)
        except InvalidParameters as exc:
            logger.warning("rejected /resize request: %s", exc)
            return PlainTextResponse(str(exc), status_code=400)
        return await _handle(request, transform_request)

    @app.get("/convert")
    async def convert(request: Request):
        try:
            transform_request = build_convert_request(request.query_params)
        except InvalidParameters as exc:
            logger.warning("rejected /convert request: %s", exc)
            return PlainTextResponse(str(exc), status_code=400)
        original_format = source_extension(transform_request.image) or "unknown"
        return await _handle(request, transform_request, {"X-Original-Format": original_format})

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/")
    async def root():
        return {
            "message": "Image transform API",
            "endpoints": ["/resize", "/convert"],
            "docs": "/docs",
            "example_resize": 'curl "http://localhost:3000/resize?image=https://example.com/photo.jpg&width=400" --output photo_400w.jpg',
            "example_resize_blur": 'curl "http://localhost:3000/resize?image=https://example.com/photo.jpg&width=400&blur=5" --output photo_400w_blur5.jpg',
            "example_convert": 'curl "http://localhost:3000/convert?image=https://example.com/photo.jpg&quality=90" --output photo_q90.webp',
        }

    return app


default_config = load_config()
configure_logging(default_config)
app = create_app(default_config)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve the image transform API.")
    parser.add_argument("--host", default=default_config.host, help=f"Bind address (default: {default_config.host}).")
    parser.add_argument("--port", type=int, default=default_config.port, help=f"Port (default: {default_config.port}).")
    return parser.parse_args()


def main() -> None:
    import uvicorn

    args = parse_args()
    logger.info("Server listening on port %s", args.port)
    uvicorn.run(app, host=args.host, port=args.port, log_level=default_config.log_level.lower())


if __name__ == "__main__":
    main()
