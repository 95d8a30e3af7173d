import io
import json

import pytest
from PIL import Image

from src.core.exceptions import TransformError
from src.engines.imaging.operations import run
from src.modules.imagery.models import ImageOptions, Operation, OutputFormat


def opened(result):
    return Image.open(io.BytesIO(result.body))


def test_resize_fills_requested_box(png_bytes):
    result = run(Operation.RESIZE, png_bytes, ImageOptions(width=32, height=32))
    img = opened(result)
    assert img.size == (32, 32)
    assert result.mime == "image/png"


def test_resize_one_side_keeps_aspect_ratio(png_bytes):
    img = opened(run(Operation.RESIZE, png_bytes, ImageOptions(width=32)))
    assert img.size == (32, 24)


def test_resize_without_dimensions_is_a_transform_error(png_bytes):
    with pytest.raises(TransformError) as exc_info:
        run(Operation.RESIZE, png_bytes, ImageOptions())
    assert exc_info.value.code == 400
    assert "height or width" in exc_info.value.message


def test_rotate_swaps_dimensions(png_bytes):
    img = opened(run(Operation.ROTATE, png_bytes, ImageOptions(rotate=90)))
    assert img.size == (48, 64)


def test_extract_area(png_bytes):
    options = ImageOptions(left=10, top=5, areawidth=20, areaheight=10)
    assert opened(run(Operation.EXTRACT, png_bytes, options)).size == (20, 10)


def test_extract_outside_bounds(png_bytes):
    options = ImageOptions(left=60, top=0, areawidth=20, areaheight=10)
    with pytest.raises(TransformError):
        run(Operation.EXTRACT, png_bytes, options)


def test_thumbnail_fits_within_bounds(png_bytes):
    img = opened(run(Operation.THUMBNAIL, png_bytes, ImageOptions(width=16)))
    assert img.width == 16
    assert img.height <= 16


def test_zoom_multiplies_size(png_bytes):
    assert opened(run(Operation.ZOOM, png_bytes, ImageOptions(factor=2))).size == (128, 96)


def test_convert_requires_type(png_bytes):
    with pytest.raises(TransformError):
        run(Operation.CONVERT, png_bytes, ImageOptions())


def test_convert_to_jpeg_flattens_alpha(png_bytes):
    result = run(Operation.CONVERT, png_bytes, ImageOptions(type="jpeg"), OutputFormat.JPEG)
    assert result.mime == "image/jpeg"
    assert opened(result).mode == "RGB"


def test_explicit_output_format(jpeg_bytes):
    result = run(Operation.FLIP, jpeg_bytes, ImageOptions(), OutputFormat.WEBP)
    assert result.mime == "image/webp"
    assert opened(result).format == "WEBP"


def test_source_format_kept_without_explicit_type(jpeg_bytes):
    assert run(Operation.FLOP, jpeg_bytes, ImageOptions()).mime == "image/jpeg"


def test_blur_and_smartcrop(png_bytes):
    assert opened(run(Operation.BLUR, png_bytes, ImageOptions(sigma=1.5))).size == (64, 48)
    assert opened(run(Operation.SMARTCROP, png_bytes, ImageOptions(width=20, height=20))).size == (20, 20)


def test_text_watermark(jpeg_bytes):
    result = run(Operation.WATERMARK, jpeg_bytes, ImageOptions(text="(c) imagery", opacity=0.5))
    assert opened(result).size == (64, 48)


def test_image_watermark(jpeg_bytes, image_factory):
    overlay = image_factory("PNG", size=(8, 8), color=(0, 0, 255))
    result = run(Operation.WATERMARK_IMAGE, jpeg_bytes, ImageOptions(opacity=1.0), overlay=overlay)
    img = opened(result).convert("RGB")
    assert img.getpixel((32, 24))[2] > 200


def test_info_reports_metadata(png_bytes):
    result = run(Operation.INFO, png_bytes, ImageOptions())
    body = json.loads(result.body)
    assert result.mime == "application/json"
    assert (body["width"], body["height"], body["type"]) == (64, 48, "png")
    assert body["hasAlpha"] is True


def test_undecodable_input():
    with pytest.raises(TransformError):
        run(Operation.RESIZE, b"<svg></svg> not really", ImageOptions(width=10))


SVG_SQUARE = (
    b'<svg xmlns="http://www.w3.org/2000/svg" width="8" height="8">'
    b'<rect width="8" height="8" fill="#0000ff"/></svg>'
)


def test_svg_input_defaults_to_engine_format():
    result = run(Operation.RESIZE, SVG_SQUARE, ImageOptions(width=4))
    assert result.mime == "image/jpeg"
    assert opened(result).size == (4, 4)


def test_svg_overlay(jpeg_bytes):
    result = run(Operation.WATERMARK_IMAGE, jpeg_bytes, ImageOptions(opacity=1.0), overlay=SVG_SQUARE)
    img = opened(result).convert("RGB")
    assert img.getpixel((32, 24))[2] > 200


def test_heif_decoder_registered():
    assert "HEIF" in Image.OPEN


def test_pipeline_applies_steps_in_order(png_bytes):
    options = ImageOptions(operations=json.dumps([
        {"operation": "crop", "params": {"width": 30, "height": 20}},
        {"operation": "rotate", "params": {"rotate": 90}},
    ]))
    img = opened(run(Operation.PIPELINE, png_bytes, options))
    assert img.size == (20, 30)


def test_pipeline_encodes_with_last_step_params(png_bytes):
    options = ImageOptions(operations=[
        {"operation": "flip"},
        {"operation": "convert", "params": {"type": "jpeg", "quality": 10}},
    ])
    low = run(Operation.PIPELINE, png_bytes, options, output_format=OutputFormat.JPEG)
    high = run(Operation.CONVERT, png_bytes, ImageOptions(quality=100), output_format=OutputFormat.JPEG)
    assert low.mime == "image/jpeg"
    assert sum(opened(low).quantization[0]) > sum(opened(high).quantization[0])


def test_pipeline_without_steps(png_bytes):
    with pytest.raises(TransformError) as exc_info:
        run(Operation.PIPELINE, png_bytes, ImageOptions())
    assert "operations" in exc_info.value.message
