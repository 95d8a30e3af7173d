"""
Pillow Image Engine

Implements the image operations behind /api/v1/images/{operation}. Every
failure (undecodable input, missing or inconsistent parameters, encoder
errors) surfaces as TransformError, which the API treats as a client error.

SVG inputs and overlays are rasterised with cairosvg before decoding; HEIC
and HEIF are decoded through the pillow-heif opener.
"""

import io
import json
from typing import Callable, Dict, Optional, Tuple

from PIL import Image, ImageDraw, ImageFilter, ImageFont, ImageOps, UnidentifiedImageError
from pillow_heif import register_heif_opener

from src.core.exceptions import TransformError
from src.modules.imagery.content import is_svg_image
from src.modules.imagery.models import (
    DEFAULT_OUTPUT_FORMAT,
    FORMAT_MIME_TYPES,
    Gravity,
    ImageOptions,
    ImageResult,
    Operation,
    OutputFormat,
)

register_heif_opener()

RESAMPLE = Image.Resampling.LANCZOS

SVG_FORMAT = "SVG"

# Pillow format name -> output format
_PIL_FORMATS = {
    "JPEG": OutputFormat.JPEG,
    "PNG": OutputFormat.PNG,
    "WEBP": OutputFormat.WEBP,
    "GIF": OutputFormat.GIF,
    "TIFF": OutputFormat.TIFF,
    "BMP": OutputFormat.BMP,
}

_GRAVITY_CENTERING = {
    Gravity.CENTRE: (0.5, 0.5),
    Gravity.NORTH: (0.5, 0.0),
    Gravity.SOUTH: (0.5, 1.0),
    Gravity.EAST: (1.0, 0.5),
    Gravity.WEST: (0.0, 0.5),
}

_UNBOUNDED = 1 << 16


class _ParamError(ValueError):
    pass


def _require(condition: bool, message: str):
    if not condition:
        raise _ParamError(message)


# =============================================================================
# Geometry helpers
# =============================================================================

def _smart_centering(img: Image.Image, width: int, height: int) -> Tuple[float, float]:
    """Pick the crop window with the highest entropy along the cropped axis."""
    scale = max(width / img.width, height / img.height)
    scaled = img.resize((max(1, round(img.width * scale)), max(1, round(img.height * scale))), RESAMPLE)

    best, best_entropy = (0.5, 0.5), -1.0
    for position in (0.0, 0.25, 0.5, 0.75, 1.0):
        centering = (position, 0.5) if scaled.width > width else (0.5, position)
        left = int((scaled.width - width) * centering[0])
        top = int((scaled.height - height) * centering[1])
        entropy = scaled.crop((left, top, left + width, top + height)).entropy()
        if entropy > best_entropy:
            best, best_entropy = centering, entropy
    return best


def _fill(img: Image.Image, width: int, height: int, gravity: Gravity) -> Image.Image:
    if gravity is Gravity.SMART:
        centering = _smart_centering(img, width, height)
    else:
        centering = _GRAVITY_CENTERING[gravity]
    return ImageOps.fit(img, (width, height), method=RESAMPLE, centering=centering)


def _scale_to(img: Image.Image, width: int, height: int) -> Image.Image:
    """Proportional resize when only one side is given."""
    if width and not height:
        height = max(1, round(img.height * width / img.width))
    elif height and not width:
        width = max(1, round(img.width * height / img.height))
    return img.resize((width, height), RESAMPLE)


# =============================================================================
# Decoding
# =============================================================================

def rasterize_svg(data: bytes) -> bytes:
    """Render an SVG document to PNG at its intrinsic size."""
    # cairosvg loads the cairo shared library on import
    import cairosvg

    try:
        return cairosvg.svg2png(bytestring=data)
    except (ValueError, SyntaxError, OSError) as e:
        raise _ParamError(f"cannot render SVG: {e}") from e


def _decode(data: bytes) -> Tuple[bytes, Optional[str]]:
    """Raster bytes Pillow can open, plus the source format when it is not raster."""
    if is_svg_image(data):
        return rasterize_svg(data), SVG_FORMAT
    return data, None


# =============================================================================
# Operations
# =============================================================================

def _resize(img: Image.Image, o: ImageOptions, overlay: Optional[bytes]) -> Image.Image:
    _require(o.width or o.height, "Missing required param: height or width")
    if o.force or not (o.width and o.height):
        return _scale_to(img, o.width, o.height)
    if o.nocrop:
        return ImageOps.contain(img, (o.width, o.height), method=RESAMPLE)
    return _fill(img, o.width, o.height, o.gravity)


def _enlarge(img: Image.Image, o: ImageOptions, overlay: Optional[bytes]) -> Image.Image:
    _require(o.width and o.height, "Missing required params: height, width")
    return _fill(img, o.width, o.height, o.gravity)


def _crop(img: Image.Image, o: ImageOptions, overlay: Optional[bytes]) -> Image.Image:
    _require(o.width or o.height, "Missing required param: height or width")
    return _fill(img, o.width or img.width, o.height or img.height, o.gravity)


def _smartcrop(img: Image.Image, o: ImageOptions, overlay: Optional[bytes]) -> Image.Image:
    _require(o.width or o.height, "Missing required param: height or width")
    return _fill(img, o.width or img.width, o.height or img.height, Gravity.SMART)


def _extract(img: Image.Image, o: ImageOptions, overlay: Optional[bytes]) -> Image.Image:
    _require(o.areawidth and o.areaheight, "Missing required params: areawidth or areaheight")
    _require(
        o.left + o.areawidth <= img.width and o.top + o.areaheight <= img.height,
        "extract area is outside the image bounds",
    )
    return img.crop((o.left, o.top, o.left + o.areawidth, o.top + o.areaheight))


def _rotate(img: Image.Image, o: ImageOptions, overlay: Optional[bytes]) -> Image.Image:
    _require(o.rotate != 0, "Missing required param: rotate")
    # Pillow rotates counter-clockwise
    return img.rotate(-o.rotate, expand=True)


def _autorotate(img: Image.Image, o: ImageOptions, overlay: Optional[bytes]) -> Image.Image:
    return ImageOps.exif_transpose(img)


def _flip(img: Image.Image, o: ImageOptions, overlay: Optional[bytes]) -> Image.Image:
    return ImageOps.flip(img)


def _flop(img: Image.Image, o: ImageOptions, overlay: Optional[bytes]) -> Image.Image:
    return ImageOps.mirror(img)


def _thumbnail(img: Image.Image, o: ImageOptions, overlay: Optional[bytes]) -> Image.Image:
    _require(o.width or o.height, "Missing required params: width or height")
    thumb = img.copy()
    thumb.thumbnail((o.width or _UNBOUNDED, o.height or _UNBOUNDED), RESAMPLE)
    return thumb


def _zoom(img: Image.Image, o: ImageOptions, overlay: Optional[bytes]) -> Image.Image:
    _require(o.factor > 0, "Missing required param: factor")
    if o.areawidth and o.areaheight:
        img = _extract(img, o, overlay)
    return img.resize((img.width * o.factor, img.height * o.factor), RESAMPLE)


def _convert(img: Image.Image, o: ImageOptions, overlay: Optional[bytes]) -> Image.Image:
    # the output type itself is enforced in run()
    return img


def _blur(img: Image.Image, o: ImageOptions, overlay: Optional[bytes]) -> Image.Image:
    _require(o.sigma > 0, "Missing required param: sigma")
    return img.filter(ImageFilter.GaussianBlur(radius=o.sigma))


def _font(spec: str) -> ImageFont.ImageFont:
    size = 10
    for token in reversed(spec.split()):
        if token.isdigit():
            size = int(token)
            break
    return ImageFont.load_default(size=size)


def _watermark(img: Image.Image, o: ImageOptions, overlay: Optional[bytes]) -> Image.Image:
    _require(bool(o.text), "Missing required param: text")
    base = img.convert("RGBA")
    layer = Image.new("RGBA", base.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(layer)
    r, g, b = o.color or (255, 255, 255)
    alpha = int(255 * o.opacity)
    font = _font(o.font)

    # repeat the text as a tiled pattern across the image
    box = draw.textbbox((0, 0), o.text, font=font)
    step_x = max(o.textwidth, box[2] - box[0]) + 10
    step_y = (box[3] - box[1]) + 10
    for y in range(o.top, base.height, step_y * 4):
        for x in range(o.left, base.width, step_x * 2):
            draw.text((x, y), o.text, font=font, fill=(r, g, b, alpha))
    return Image.alpha_composite(base, layer)


def _watermark_image(img: Image.Image, o: ImageOptions, overlay: Optional[bytes]) -> Image.Image:
    _require(overlay is not None, "Missing required param: image")
    raster, _ = _decode(overlay)
    mark = Image.open(io.BytesIO(raster)).convert("RGBA")
    if o.opacity < 1:
        mark.putalpha(mark.getchannel("A").point(lambda a: int(a * o.opacity)))

    base = img.convert("RGBA")
    if o.left or o.top:
        position = (o.left, o.top)
    else:
        position = ((base.width - mark.width) // 2, (base.height - mark.height) // 2)
    base.alpha_composite(mark, dest=(max(0, position[0]), max(0, position[1])))
    return base


def _pipeline(img: Image.Image, o: ImageOptions, overlay: Optional[bytes]) -> Image.Image:
    _require(bool(o.operations), "Missing required param: operations")
    for step in o.operations:
        img = _OPERATIONS[step.operation](img, step.params, overlay)
    return img


_OPERATIONS: Dict[Operation, Callable[[Image.Image, ImageOptions, Optional[bytes]], Image.Image]] = {
    Operation.RESIZE: _resize,
    Operation.ENLARGE: _enlarge,
    Operation.CROP: _crop,
    Operation.SMARTCROP: _smartcrop,
    Operation.EXTRACT: _extract,
    Operation.ROTATE: _rotate,
    Operation.AUTOROTATE: _autorotate,
    Operation.FLIP: _flip,
    Operation.FLOP: _flop,
    Operation.THUMBNAIL: _thumbnail,
    Operation.ZOOM: _zoom,
    Operation.CONVERT: _convert,
    Operation.BLUR: _blur,
    Operation.WATERMARK: _watermark,
    Operation.WATERMARK_IMAGE: _watermark_image,
    Operation.PIPELINE: _pipeline,
}


# =============================================================================
# Encoding
# =============================================================================

def _encode(img: Image.Image, output_format: OutputFormat, o: ImageOptions, exif: Optional[bytes]) -> bytes:
    if o.colorspace == "bw":
        img = img.convert("LA" if "A" in img.getbands() else "L")

    if output_format in (OutputFormat.JPEG, OutputFormat.BMP) and img.mode not in ("RGB", "L"):
        background = Image.new("RGB", img.size, o.background or (255, 255, 255))
        rgba = img.convert("RGBA")
        background.paste(rgba, mask=rgba.getchannel("A"))
        img = background

    params = {}
    if output_format in (OutputFormat.JPEG, OutputFormat.WEBP):
        params["quality"] = o.quality
    if output_format is OutputFormat.PNG:
        params["compress_level"] = o.compression
    if exif and not o.stripmeta and output_format in (OutputFormat.JPEG, OutputFormat.WEBP, OutputFormat.PNG):
        params["exif"] = exif

    buf = io.BytesIO()
    img.save(buf, format=output_format.value.upper(), **params)
    return buf.getvalue()


def _info(img: Image.Image, source_format: Optional[str]) -> ImageResult:
    exif = img.getexif()
    body = {
        "width": img.width,
        "height": img.height,
        "type": (source_format or "").lower(),
        "space": img.mode,
        "hasAlpha": "A" in img.getbands() or "transparency" in img.info,
        "hasProfile": "icc_profile" in img.info,
        "channels": len(img.getbands()),
        "orientation": exif.get(0x0112, 0),
    }
    return ImageResult(body=json.dumps(body).encode("utf-8"), mime="application/json")


def run(
    operation: Operation,
    data: bytes,
    options: ImageOptions,
    output_format: Optional[OutputFormat] = None,
    overlay: Optional[bytes] = None,
) -> ImageResult:
    """
    Apply one operation and encode the result.

    With no explicit output format the source format is kept when Pillow can
    encode it, otherwise the engine default is used.

    Raises:
        TransformError: the engine could not process the input with these options
    """
    if operation is Operation.CONVERT and output_format is None:
        raise TransformError("Missing required param: type", operation=operation.value)

    encode_options = options
    if operation is Operation.PIPELINE and options.operations:
        encode_options = options.operations[-1].params

    try:
        raster, vector_format = _decode(data)
        with Image.open(io.BytesIO(raster)) as source:
            source.load()
            source_format = vector_format or source.format
            if operation is Operation.INFO:
                return _info(source, source_format)

            exif = source.info.get("exif")
            img = _OPERATIONS[operation](source, options, overlay)
            target = output_format or _PIL_FORMATS.get(source_format or "", DEFAULT_OUTPUT_FORMAT)
            body = _encode(img, target, encode_options, exif)
    except TransformError:
        raise
    except (_ParamError, UnidentifiedImageError, OSError, ValueError, KeyError) as e:
        raise TransformError(str(e) or type(e).__name__, operation=operation.value) from e

    return ImageResult(body=body, mime=FORMAT_MIME_TYPES[target])
