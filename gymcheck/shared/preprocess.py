"""Image preconditioning: format/size checks, brightness and screenshot heuristics.

Two entry points share the same checks:

- ``prepare_gym_image``: upscales small photos, then rejects screenshot-shaped
  and very dark images.
- ``prepare_meal_image``: upscales small photos and downscales very large ones.

Both return either a ``PreparedImage`` or a ``Rejection``; neither raises on bad
input. Everything happens on in-memory buffers.
"""

from __future__ import annotations

import base64
import io
import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
from PIL import Image, ImageStat

from gymcheck.shared.contract import message_for, tips_for

LOGGER = logging.getLogger(__name__)

warnings.filterwarnings(
    "ignore",
    message="Palette images with Transparency expressed in bytes should be converted",
    category=UserWarning,
)

ALLOWED_MIMES = ("image/jpeg", "image/png", "image/webp")
_FORMAT_TO_MIME = {"JPEG": "image/jpeg", "PNG": "image/png", "WEBP": "image/webp"}

GYM_MAX_BYTES = 5 * 1024 * 1024
GYM_MIN_BYTES = 200 * 1024
GYM_MIN_SIDE = 600
SCREENSHOT_RATIO = 0.6
DARK_THRESHOLD = 40

MEAL_MAX_BYTES = 8 * 1024 * 1024
MEAL_MIN_SIDE = 512
MEAL_MAX_SIDE = 1280

JPEG_QUALITY = 88

IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)


@dataclass
class PreparedImage:
    data: bytes
    image: Image.Image
    width: int
    height: int
    size_bytes: int
    mime: str
    mean_brightness: Optional[int] = None
    upscaled: bool = False
    downscaled: bool = False

    def details(self) -> Dict[str, int]:
        return {"width": self.width, "height": self.height, "size_bytes": self.size_bytes}


@dataclass
class Rejection:
    code: str
    message: str
    tips: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "tips": list(self.tips),
            "details": dict(self.details),
        }


Outcome = Union[PreparedImage, Rejection]


def _reject(code: str, **details: Any) -> Rejection:
    LOGGER.info("[precondition] rejected code=%s details=%s", code, details)
    return Rejection(code=code, message=message_for(code), tips=tips_for(code), details=details)


def ensure_rgb(img: Image.Image) -> Image.Image:
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def mean_brightness(img: Image.Image) -> Optional[int]:
    """Mean of the first three channel means (0-255), rounded."""

    try:
        means = ImageStat.Stat(img).mean
    except (ValueError, OSError):
        return None
    if not means:
        return None
    head = means[:3]
    return int(round(sum(head) / len(head)))


def aspect_ratio(width: int, height: int) -> float:
    return float(width) / float(height or 1)


def looks_like_screenshot(width: int, height: int, bound: float = SCREENSHOT_RATIO) -> bool:
    ratio = aspect_ratio(width, height)
    return ratio < bound or ratio > 1.0 / bound


def encode_image(img: Image.Image, mime: str) -> bytes:
    buf = io.BytesIO()
    if mime == "image/png":
        img.save(buf, format="PNG", compress_level=6)
    elif mime == "image/webp":
        img.save(buf, format="WEBP", quality=85)
    else:
        ensure_rgb(img).save(buf, format="JPEG", quality=JPEG_QUALITY)
    return buf.getvalue()


def scale_to_min_side(img: Image.Image, min_side: int) -> Optional[Image.Image]:
    """Proportionally upscale so the shorter side reaches ``min_side``.

    Returns ``None`` when the image already meets the floor.
    """

    width, height = img.size
    short = min(width, height)
    if short <= 0 or short >= min_side:
        return None
    scale = min_side / float(short)
    if width <= height:
        new_w, new_h = min_side, int(round(height * scale))
    else:
        new_w, new_h = int(round(width * scale)), min_side
    return img.resize((new_w, new_h), resample=Image.BICUBIC)


def scale_to_max_side(img: Image.Image, max_side: int) -> Optional[Image.Image]:
    width, height = img.size
    longest = max(width, height)
    if longest <= max_side:
        return None
    scale = max_side / float(longest)
    new_w = max(1, min(max_side, int(round(width * scale))))
    new_h = max(1, min(max_side, int(round(height * scale))))
    return img.resize((new_w, new_h), resample=Image.BICUBIC)


def _decode(data: bytes) -> Optional[Image.Image]:
    try:
        img = Image.open(io.BytesIO(data))
        # Avoid holding an Image bound to a closed buffer.
        img.load()
    except (OSError, ValueError, Image.DecompressionBombError):
        return None
    return img


def _basic_checks(data: bytes, mime: Optional[str], max_bytes: int) -> Optional[Rejection]:
    declared = (mime or "").strip().lower()
    if declared and declared not in ALLOWED_MIMES:
        return _reject("unsupported_format", mime=declared)
    if not data:
        return _reject("invalid_file")
    if len(data) > max_bytes:
        return _reject("too_large", size_bytes=len(data), max_bytes=max_bytes)
    return None


def _resolve_mime(img: Image.Image, declared: Optional[str]) -> Optional[str]:
    detected = _FORMAT_TO_MIME.get(str(img.format or "").upper())
    if detected is None:
        return None
    return detected if not declared else declared.strip().lower()


def prepare_gym_image(
    data: bytes,
    mime: Optional[str] = None,
    *,
    max_bytes: int = GYM_MAX_BYTES,
    min_bytes: int = GYM_MIN_BYTES,
    min_side: int = GYM_MIN_SIDE,
    screenshot_ratio: float = SCREENSHOT_RATIO,
    dark_threshold: int = DARK_THRESHOLD,
) -> Outcome:
    rejected = _basic_checks(data, mime, max_bytes)
    if rejected is not None:
        return rejected

    img = _decode(data)
    if img is None:
        return _reject("invalid_file")
    resolved = _resolve_mime(img, mime)
    if resolved is None:
        return _reject("unsupported_format", format=str(img.format or ""))

    width, height = img.size
    out_bytes = data
    out_mime = resolved
    upscaled = False

    # Proportional upscaling keeps the ratio, so reject before paying for it.
    if looks_like_screenshot(width, height, screenshot_ratio):
        return _reject(
            "screenshot_suspected",
            ratio=round(aspect_ratio(width, height), 2),
            width=width,
            height=height,
            size_bytes=len(data),
        )

    too_small = len(data) < min_bytes or min(width, height) < min_side
    if too_small:
        try:
            resized = scale_to_min_side(img, min_side)
            if resized is not None:
                out_bytes = encode_image(resized, "image/jpeg")
                out_mime = "image/jpeg"
        except (OSError, ValueError, MemoryError) as exc:
            LOGGER.warning("[precondition] gym upscale failed: %s", exc)
            return _reject("invalid_file", width=width, height=height)
        if resized is not None:
            reopened = _decode(out_bytes)
            if reopened is None:
                return _reject("invalid_file")
            LOGGER.info(
                "[precondition] upscaled %dx%d -> %dx%d",
                width, height, reopened.width, reopened.height,
            )
            img = reopened
            width, height = img.size
            upscaled = True

    details = {"width": width, "height": height, "size_bytes": len(out_bytes)}

    brightness = mean_brightness(img)
    if brightness is not None and brightness < dark_threshold:
        return _reject("too_dark", mean_brightness=brightness, **details)

    return PreparedImage(
        data=out_bytes,
        image=img,
        width=width,
        height=height,
        size_bytes=len(out_bytes),
        mime=out_mime,
        mean_brightness=brightness,
        upscaled=upscaled,
    )


def prepare_meal_image(
    data: bytes,
    mime: Optional[str] = None,
    *,
    max_bytes: int = MEAL_MAX_BYTES,
    min_side: int = MEAL_MIN_SIDE,
    max_side: int = MEAL_MAX_SIDE,
) -> Outcome:
    rejected = _basic_checks(data, mime, max_bytes)
    if rejected is not None:
        return rejected

    img = _decode(data)
    if img is None:
        return _reject("invalid_file")
    resolved = _resolve_mime(img, mime)
    if resolved is None:
        return _reject("unsupported_format", format=str(img.format or ""))

    out_bytes = data
    upscaled = downscaled = False
    original = img.size

    try:
        resized = scale_to_min_side(img, min_side)
        if resized is not None:
            img = resized
            upscaled = True
            out_bytes = encode_image(img, resolved)
    except (OSError, ValueError) as exc:
        LOGGER.warning("[precondition] meal upscale failed: %s", exc)
        return _reject("too_small", width=original[0], height=original[1])

    try:
        shrunk = scale_to_max_side(img, max_side)
        if shrunk is not None:
            img = shrunk
            downscaled = True
            out_bytes = encode_image(img, resolved)
    except (OSError, ValueError) as exc:
        # Oversized but still valid; send as is.
        LOGGER.warning("[precondition] meal downscale failed: %s", exc)

    if upscaled or downscaled:
        LOGGER.info("[precondition] meal resized %dx%d -> %dx%d", original[0], original[1], img.width, img.height)

    return PreparedImage(
        data=out_bytes,
        image=img,
        width=img.width,
        height=img.height,
        size_bytes=len(out_bytes),
        mime=resolved,
        mean_brightness=mean_brightness(img),
        upscaled=upscaled,
        downscaled=downscaled,
    )


def bytes_to_data_url(data: bytes, mime: str) -> str:
    m = mime if mime in ALLOWED_MIMES else "image/jpeg"
    return f"data:{m};base64,{base64.b64encode(data).decode('ascii')}"


def image_to_data_url(img: Image.Image, max_side: int = MEAL_MAX_SIDE) -> str:
    """Downscale + encode as a JPEG data URL for remote vision input."""

    img_rgb = ensure_rgb(img)
    shrunk = scale_to_max_side(img_rgb, max_side)
    if shrunk is not None:
        img_rgb = shrunk
    buf = io.BytesIO()
    img_rgb.save(buf, format="JPEG", quality=85, optimize=True)
    return bytes_to_data_url(buf.getvalue(), "image/jpeg")


# Tensor preparation for the legacy ONNX tier.


def resize_shorter_side(
    img: Image.Image,
    size: int,
    resample: int = Image.BICUBIC,
) -> Image.Image:
    width, height = img.size
    short = min(width, height)
    if short == size:
        return img
    scale = size / float(short)
    new_w = int(round(width * scale))
    new_h = int(round(height * scale))
    return img.resize((new_w, new_h), resample=resample)


def center_crop(img: Image.Image, size: int) -> Image.Image:
    width, height = img.size
    left = max(0, int(round((width - size) / 2.0)))
    top = max(0, int(round((height - size) / 2.0)))
    return img.crop((left, top, left + size, top + size))


def to_tensor(
    img: Image.Image,
    mean: Sequence[float],
    std: Sequence[float],
) -> np.ndarray:
    arr = np.asarray(img).astype(np.float32) / 255.0
    if arr.ndim == 2:
        arr = np.repeat(arr[:, :, None], 3, axis=2)
    if arr.shape[2] == 4:
        arr = arr[:, :, :3]
    mean_arr = np.asarray(mean, dtype=np.float32).reshape(1, 1, 3)
    std_arr = np.asarray(std, dtype=np.float32).reshape(1, 1, 3)
    arr = (arr - mean_arr) / std_arr
    arr = np.transpose(arr, (2, 0, 1))
    return arr[None, :, :, :]


def preprocess_image(
    img: Image.Image,
    img_size: int = 224,
    mean: Sequence[float] = IMAGENET_MEAN,
    std: Sequence[float] = IMAGENET_STD,
    resize_scale: float = 1.15,
) -> np.ndarray:
    img = ensure_rgb(img)
    resized = resize_shorter_side(img, int(round(img_size * resize_scale)))
    cropped = center_crop(resized, img_size)
    return to_tensor(cropped, mean, std)
