# imaging.py
"""
Image handling for uploads: data URL decoding, compression, thumbnails and
the photo edit pipeline.

The edit pipeline is a pure function of (image, settings): the same input
always renders the same output, so an edit can be re-applied on the server
from the settings the client sent.
"""

import base64
import binascii
import io
import logging
import re
from collections import namedtuple

from PIL import Image, ImageChops, ImageEnhance, ImageFilter, ImageOps

logger = logging.getLogger("monolog.imaging")

DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.*)$", re.DOTALL)

EXPORT_QUALITY = 92
THUMB_QUALITY = 80


# -----------------------
# Decoding / encoding
# -----------------------
def decode_data_url(data_url):
    """Split ``data:<mime>;base64,<payload>`` into ``(mime, bytes)``."""
    m = DATA_URL_RE.match((data_url or "").strip())
    if not m:
        raise ValueError("Invalid data URL")
    try:
        payload = base64.b64decode(m.group("data"), validate=True)
    except (binascii.Error, ValueError):
        raise ValueError("Invalid base64 payload")
    if not payload:
        raise ValueError("Empty image payload")
    return m.group("mime").lower(), payload


def sniff_extension(data):
    if data[:3] == b"\xff\xd8\xff":
        return "jpg"
    if data[:8].startswith(b"\x89PNG"):
        return "png"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    return None


def open_image(data):
    """Open image bytes, apply the EXIF orientation and return an RGB image."""
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (OSError, Image.DecompressionBombError) as exc:
        raise ValueError(f"Unreadable image: {exc}")
    img = ImageOps.exif_transpose(img)
    if img.mode in ("RGBA", "LA", "P"):
        img = img.convert("RGBA")
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img, mask=img.split()[-1])
        return background
    return img.convert("RGB")


def encode_jpeg(img, quality=EXPORT_QUALITY):
    buf = io.BytesIO()
    img.convert("RGB").save(buf, format="JPEG", quality=quality, optimize=True)
    return buf.getvalue()


def to_webp(img, quality=80):
    buf = io.BytesIO()
    img.save(buf, format="WEBP", quality=quality)
    return buf.getvalue()


def compress_image(img, max_edge=1920, target_bytes=2 * 1024 * 1024, quality=86):
    """
    Downscale so the long edge is at most ``max_edge`` and encode as JPEG.
    Quality drops by 10 (never below 50, at most 4 tries) until the result
    fits ``target_bytes``. Returns the smallest encoding produced.
    """
    img = img.copy()
    img.thumbnail((max_edge, max_edge), Image.LANCZOS)
    data = encode_jpeg(img, quality)
    tries = 0
    while len(data) > target_bytes and tries < 4 and quality > 50:
        quality = max(50, quality - 10)
        data = encode_jpeg(img, quality)
        tries += 1
    logger.debug("compressed to %d bytes at quality %d (%dx%d)", len(data), quality, img.width, img.height)
    return data


def make_thumbnail(img, edge=700):
    thumb = img.copy()
    thumb.thumbnail((edge, edge), Image.LANCZOS)
    return encode_jpeg(thumb, THUMB_QUALITY)


# -----------------------
# Basic adjustments
# -----------------------
BasicAdjustments = namedtuple("BasicAdjustments", ["brightness", "contrast", "saturation", "hue"])


def map_basic_adjustments(exposure=0.0, contrast=0.0, saturation=0.0, temperature=0.0):
    """
    Map slider values (exposure/contrast/saturation in -1..1, temperature in
    -100..100) to filter factors. Brightening also lowers contrast a little
    to keep highlights from clipping.
    """
    hue = round((-temperature / 100) * 30)
    css_saturation = 1 + saturation * 0.5
    if exposure >= 0:
        brightness = 1 + exposure * 0.45
    else:
        brightness = 0.85 ** (-exposure)
    protection = max(0.7, 1 - exposure * 0.08) if exposure > 0 else 1.0
    final_contrast = (1 + contrast * 0.5) * protection
    return BasicAdjustments(brightness, final_contrast, css_saturation, hue)


def _brightness(img, amount):
    return ImageEnhance.Brightness(img).enhance(amount)


def _contrast(img, amount):
    # linear around mid-grey, same as the CSS contrast() function
    lut = [max(0, min(255, int(round((v - 128) * amount + 128)))) for v in range(256)]
    return img.point(lut * 3)


def _saturate(img, amount):
    return ImageEnhance.Color(img).enhance(amount)


def _hue_rotate(img, degrees):
    if not degrees:
        return img
    shift = int(round(degrees / 360.0 * 256)) % 256
    h, s, v = img.convert("HSV").split()
    h = h.point(lambda x: (x + shift) % 256)
    return Image.merge("HSV", (h, s, v)).convert("RGB")


def _matrix_blend(img, matrix, amount):
    amount = max(0.0, min(1.0, amount))
    identity = (1, 0, 0, 0, 0, 1, 0, 0, 0, 0, 1, 0)
    blended = tuple(i + (m - i) * amount for i, m in zip(identity, matrix))
    return img.convert("RGB", blended)


def _sepia(img, amount):
    matrix = (
        0.393, 0.769, 0.189, 0,
        0.349, 0.686, 0.168, 0,
        0.272, 0.534, 0.131, 0,
    )
    return _matrix_blend(img, matrix, amount)


def _grayscale(img, amount):
    matrix = (
        0.2126, 0.7152, 0.0722, 0,
        0.2126, 0.7152, 0.0722, 0,
        0.2126, 0.7152, 0.0722, 0,
    )
    return _matrix_blend(img, matrix, amount)


def _invert(img, amount):
    return Image.blend(img, ImageOps.invert(img), max(0.0, min(1.0, amount)))


FILTER_OPS = {
    "brightness": _brightness,
    "contrast": _contrast,
    "saturate": _saturate,
    "hue_rotate": _hue_rotate,
    "sepia": _sepia,
    "grayscale": _grayscale,
    "invert": _invert,
}

FILTER_PRESETS = {
    "none": (),
    "sepia": (("sepia", 0.45),),
    "mono": (("grayscale", 0.95),),
    "cinema": (("contrast", 1.15), ("saturate", 1.05), ("hue_rotate", -5)),
    "bleach": (("saturate", 1.3), ("contrast", 0.95), ("brightness", 1.02)),
    "vintage": (("sepia", 0.35), ("contrast", 0.95), ("saturate", 0.9), ("brightness", 0.98)),
    "lomo": (("contrast", 1.25), ("saturate", 1.35), ("brightness", 1.02), ("sepia", 0.08)),
    "warm": (("saturate", 1.05), ("hue_rotate", 6), ("brightness", 1.01)),
    "cool": (("saturate", 0.95), ("hue_rotate", -6), ("brightness", 0.99)),
    "invert": (("invert", 1),),
    "film": (("contrast", 1.08), ("saturate", 0.92), ("brightness", 0.98)),
}


def apply_filter_chain(img, chain):
    for name, amount in chain:
        img = FILTER_OPS[name](img, amount)
    return img


# -----------------------
# Effects
# -----------------------
def _soft_focus(img, amount):
    blurred = img.filter(ImageFilter.GaussianBlur(max(3, amount * 12)))
    blurred = _brightness(blurred, 1.05)
    glow = ImageChops.lighter(img, blurred)
    return Image.blend(img, glow, min(0.4, amount * 0.45))


def _fade(img, amount):
    lifted = ImageChops.lighter(img, Image.new("RGB", img.size, (230, 230, 230)))
    img = Image.blend(img, lifted, min(0.35, amount * 0.4))
    grey = Image.new("RGB", img.size, (200, 200, 200))
    return Image.blend(img, grey, min(0.25, amount * 0.3) * 0.6)


def _vignette(img, amount):
    strength = min(0.85, amount)
    # 0 at the centre, 255 at the edge midpoints and beyond
    gradient = Image.radial_gradient("L").resize(img.size, Image.BILINEAR)
    lut = []
    for v in range(256):
        r = v / 255.0
        t = 0.0 if r <= 0.3 else min(1.0, (r - 0.3) / 0.7)
        lut.append(int(round(t * strength * 255)))
    mask = gradient.point(lut)
    return Image.composite(Image.new("RGB", img.size, (0, 0, 0)), img, mask)


def _frame(img, color, thickness):
    border = int(round(min(img.size) * thickness))
    if border <= 0:
        return img
    fill = (255, 255, 255) if color == "white" else (0, 0, 0)
    return ImageOps.expand(img, border=border, fill=fill)


# -----------------------
# Edit pipeline
# -----------------------
EDIT_FIELDS = (
    "exposure", "contrast", "saturation", "temperature", "rotation", "crop",
    "filter", "filter_strength", "vignette", "fade", "soft_focus",
    "frame_color", "frame_thickness",
)
EditSettings = namedtuple(
    "EditSettings",
    EDIT_FIELDS,
    defaults=(0.0, 0.0, 0.0, 0.0, 0.0, None, "none", 1.0, 0.0, 0.0, 0.0, None, 0.0),
)

# JSON (camelCase) names accepted from clients
_EDIT_ALIASES = {
    "filterStrength": "filter_strength",
    "softFocus": "soft_focus",
    "frameColor": "frame_color",
    "frameThickness": "frame_thickness",
    "selectedFilter": "filter",
}


def edit_settings_from_dict(data):
    """Build ``EditSettings`` from request JSON. Bad values raise ValueError."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("edits must be an object")
    values = {}
    for key, value in data.items():
        field = _EDIT_ALIASES.get(key, key)
        if field in EDIT_FIELDS and value is not None:
            values[field] = value
    try:
        if "crop" in values:
            crop = values["crop"]
            if isinstance(crop, dict):
                crop = (crop.get("x", 0), crop.get("y", 0), crop.get("w", 1), crop.get("h", 1))
            values["crop"] = tuple(float(c) for c in crop)
        for field in EDIT_FIELDS:
            if field in values and field not in ("crop", "filter", "frame_color"):
                values[field] = float(values[field])
    except TypeError as exc:
        raise ValueError(f"Invalid edit settings: {exc}") from exc
    for field in ("filter", "frame_color"):
        if field in values and not isinstance(values[field], str):
            raise ValueError(f"{field} must be a string")
    if "crop" in values and len(values["crop"]) != 4:
        raise ValueError("crop needs x, y, w and h")
    settings = EditSettings(**values)
    if settings.filter not in FILTER_PRESETS:
        raise ValueError(f"Unknown filter preset: {settings.filter}")
    return settings


def _crop(img, crop):
    x, y, w, h = crop
    x = max(0.0, min(1.0, x))
    y = max(0.0, min(1.0, y))
    w = max(0.0, min(1.0 - x, w))
    h = max(0.0, min(1.0 - y, h))
    box = (
        int(round(x * img.width)),
        int(round(y * img.height)),
        int(round((x + w) * img.width)),
        int(round((y + h) * img.height)),
    )
    if box[2] - box[0] < 1 or box[3] - box[1] < 1:
        raise ValueError("Crop area is empty")
    return img.crop(box)


def render_edits(img, settings):
    """
    Render ``settings`` onto ``img``. Order: rotate, crop, basic
    adjustments, preset (blended by strength), soft focus, fade, vignette,
    frame.
    """
    if settings.filter not in FILTER_PRESETS:
        raise ValueError(f"Unknown filter preset: {settings.filter}")

    img = img.convert("RGB")
    if settings.rotation:
        # positive rotation turns clockwise
        img = img.rotate(-settings.rotation, resample=Image.BICUBIC, expand=True, fillcolor=(0, 0, 0))
    if settings.crop:
        img = _crop(img, settings.crop)

    basic = map_basic_adjustments(
        exposure=settings.exposure,
        contrast=settings.contrast,
        saturation=settings.saturation,
        temperature=settings.temperature,
    )
    img = apply_filter_chain(img, (
        ("brightness", basic.brightness),
        ("contrast", basic.contrast),
        ("saturate", basic.saturation),
        ("hue_rotate", basic.hue),
    ))

    chain = FILTER_PRESETS[settings.filter]
    strength = max(0.0, min(1.0, settings.filter_strength))
    if chain and strength > 0:
        filtered = apply_filter_chain(img, chain)
        img = filtered if strength >= 1 else Image.blend(img, filtered, strength)

    if settings.soft_focus > 0.001:
        img = _soft_focus(img, settings.soft_focus)
    if settings.fade > 0.001:
        img = _fade(img, settings.fade)
    if settings.vignette > 0:
        img = _vignette(img, settings.vignette)
    if settings.frame_color and settings.frame_thickness > 0:
        img = _frame(img, settings.frame_color, settings.frame_thickness)
    return img
