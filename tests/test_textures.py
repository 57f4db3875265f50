import io
from pathlib import Path

from PIL import Image

from bundlegen.staging.textures import (
    downsize_if_needed,
    downsized_dimensions,
    encode_png,
)


def _write_png(path: Path, size) -> Path:
    Image.new("RGB", size, (10, 20, 30)).save(path, format="PNG")
    return path


def test_texture_at_ceiling_is_untouched(tmp_path: Path):
    path = _write_png(tmp_path / "a.png", (512, 300))
    before = path.read_bytes()
    assert downsize_if_needed(path, 512) is False
    assert path.read_bytes() == before


def test_texture_over_ceiling_is_downsized_keeping_aspect(tmp_path: Path):
    path = _write_png(tmp_path / "b.png", (513, 256))
    assert downsize_if_needed(path, 512) is True
    with Image.open(path) as img:
        assert img.size == (512, 255)


def test_downsized_dimensions_never_reach_zero():
    assert downsized_dimensions(4096, 2, 512) == (512, 1)
    assert downsized_dimensions(1024, 1024, 512) == (512, 512)


def test_zero_byte_and_undecodable_textures_are_left_alone(tmp_path: Path):
    empty = tmp_path / "empty.png"
    empty.write_bytes(b"")
    junk = tmp_path / "junk.png"
    junk.write_bytes(b"not an image")
    assert downsize_if_needed(empty, 512) is False
    assert downsize_if_needed(junk, 512) is False
    assert junk.read_bytes() == b"not an image"


def test_png_encode_falls_back_to_rgba_readback():
    cmyk = Image.new("CMYK", (3, 2), (0, 0, 0, 0))
    data = encode_png(cmyk)
    with Image.open(io.BytesIO(data)) as img:
        assert img.format == "PNG"
        assert img.mode == "RGBA"
        assert img.size == (3, 2)
