import cv2
import numpy as np
import pytest

from adaptive_compressor.buffer import PixelBuffer
from adaptive_compressor.classifier import ContentKind
from adaptive_compressor.codecs import JpegCodec, PngCodec, WebpCodec, codec_for, flatten_alpha
from adaptive_compressor.errors import InvalidInput, UnsupportedFormat
from adaptive_compressor.quantization import quantize
from adaptive_compressor.source import ImageSource, decode_image, sniff_format

from conftest import noise


@pytest.mark.parametrize("codec", [JpegCodec(), PngCodec(), WebpCodec()], ids=lambda c: c.name)
def test_max_quality_round_trip_keeps_dimensions(codec):
    buffer = noise(73, 41, seed=1)
    quantize(buffer, ContentKind.PHOTOGRAPHIC)
    data = codec.encode(buffer, 1.0)
    decoded = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
    assert decoded.shape[:2] == (41, 73)


def test_png_at_full_quality_is_lossless():
    buffer = noise(32, 16, seed=2, alpha=True)
    decoded = decode_image(PngCodec().encode(buffer, 1.0))
    assert decoded == buffer


def test_png_lower_quality_posterizes_colour_but_keeps_alpha():
    codec = PngCodec()
    assert codec.step_for(1.0) == 1
    assert codec.step_for(0.0) == 16
    buffer = PixelBuffer.blank(8, 8, (37, 201, 99, 255))
    decoded = decode_image(codec.encode(buffer, 0.0))
    assert decoded.pixels[0, 0].tolist() == [32, 192, 96, 255]


def test_black_png_is_tiny(black_buffer):
    quantize(black_buffer, ContentKind.GRAPHICAL)
    assert len(PngCodec().encode(black_buffer, 0.5)) < 400


def test_jpeg_size_grows_with_quality():
    buffer = noise(64, 64, seed=3)
    codec = JpegCodec()
    assert len(codec.encode(buffer, 0.2)) < len(codec.encode(buffer, 0.9))


def test_jpeg_progressive_variant_decodes():
    buffer = noise(40, 30, seed=4)
    data = JpegCodec().encode_progressive(buffer, 0.5)
    assert decode_image(data).width == 40


def test_flatten_alpha_uses_background():
    pixels = np.zeros((1, 2, 4), dtype=np.uint8)
    pixels[0, 1] = (0, 0, 255, 255)
    bgr = flatten_alpha(pixels, (255, 255, 255))
    assert bgr[0, 0].tolist() == [255, 255, 255]
    assert bgr[0, 1].tolist() == [255, 0, 0]


def test_codec_lookup():
    assert codec_for("JPG").name == "jpeg"
    assert codec_for(".png").name == "png"
    with pytest.raises(UnsupportedFormat):
        codec_for("gif")


def test_sniff_and_decode():
    buffer = noise(10, 10)
    assert sniff_format(JpegCodec().encode(buffer, 0.8)) == "jpeg"
    assert sniff_format(PngCodec().encode(buffer, 1.0)) == "png"
    assert sniff_format(WebpCodec().encode(buffer, 0.8)) == "webp"
    assert sniff_format(b"GIF89a") is None
    with pytest.raises(UnsupportedFormat):
        decode_image(b"\x89PNG\r\n\x1a\n garbage")


def test_image_source_from_path(tmp_path):
    path = tmp_path / "sample.png"
    path.write_bytes(PngCodec().encode(noise(12, 9), 1.0))
    source = ImageSource.from_path(str(path))
    assert source.format == "png"
    decoded = source.decode()
    assert (decoded.width, decoded.height) == (12, 9)
    assert source.decode() is not decoded
    with pytest.raises(InvalidInput):
        ImageSource.from_path(str(tmp_path / "missing.png"))


def test_image_source_from_buffer_returns_fresh_copies():
    buffer = noise(6, 6)
    source = ImageSource.from_buffer(buffer, PngCodec())
    copy = source.decode()
    copy.pixels[...] = 0
    assert source.decode() == buffer


def test_pixel_buffer_validates_length():
    with pytest.raises(InvalidInput):
        PixelBuffer(4, 4, bytes(63))
    with pytest.raises(InvalidInput):
        PixelBuffer(0, 4, bytes(0))
    buffer = PixelBuffer.from_bytes(bytes(range(64)), 4, 4)
    assert buffer.to_bytes() == bytes(range(64))


def test_take_moves_ownership():
    buffer = noise(4, 4)
    moved = buffer.take()
    assert moved.width == 4
    with pytest.raises(InvalidInput):
        buffer.pixels
