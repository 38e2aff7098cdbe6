import io
from typing import Optional

import pytest
from PIL import Image


def image_bytes(size=(800, 600), fmt: str = "JPEG", mode: str = "RGB", orientation: Optional[int] = None) -> bytes:
    img = Image.new(mode, size, color=(200, 40, 40) if mode == "RGB" else (200, 40, 40, 128))
    buffer = io.BytesIO()
    save_kwargs = {}
    if orientation is not None:
        exif = Image.Exif()
        exif[0x0112] = orientation
        save_kwargs["exif"] = exif
    img.save(buffer, format=fmt, **save_kwargs)
    return buffer.getvalue()


@pytest.fixture
def jpeg_file(tmp_path):
    path = tmp_path / "source.jpg"
    path.write_bytes(image_bytes())
    return path
