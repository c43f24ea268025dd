"""Shared fixtures: small real images written with Pillow."""

from __future__ import annotations

from pathlib import Path

import pytest
from PIL import Image


def write_image(
    path: Path,
    fmt: str = "JPEG",
    mode: str = "RGB",
    size: tuple[int, int] = (64, 48),
    alpha: bool = False,
    **save_kwargs,
) -> Path:
    """Write a gradient image so the encoder has real content to compress.

    ``alpha`` adds a real (non-opaque) alpha gradient; an all-255 alpha
    channel is dropped by the WebP encoder.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    img = Image.linear_gradient("L").resize(size)
    if mode != "L":
        img = img.convert(mode)
    if alpha:
        img.putalpha(Image.linear_gradient("L").rotate(90).resize(size))
    img.save(path, fmt, **save_kwargs)
    return path


@pytest.fixture
def image_tree(tmp_path: Path) -> tuple[Path, Path]:
    """Input tree with three JPEGs (one nested) and a text file, plus an output dir."""
    input_dir = tmp_path / "images"
    output_dir = tmp_path / "output"
    write_image(input_dir / "a.jpg")
    write_image(input_dir / "b.jpg")
    write_image(input_dir / "nested" / "deeper" / "c.jpg")
    (input_dir / "notes.txt").write_text("not an image")
    return input_dir, output_dir


@pytest.fixture
def make_image():
    """Expose ``write_image`` to tests that need custom formats or modes."""
    return write_image
