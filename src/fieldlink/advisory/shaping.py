"""Payload shaping: fit a multimodal advisory request under a byte ceiling.

Body format (JSON, UTF-8):
    {...envelope, "images": [base64 jpeg], "text": str|null,
     "audio": base64|null, "transcript": str|null}

Degradation ladder, applied until the encoded body fits:
    1. images as captured
    2. JPEG recompression, quality 85 -> 40 in steps of 15, at each scale
       1.0, 0.75, 0.5625, ... (shortest edge stays >= IMAGE_MIN_EDGE_PX)
    3. audio replaced by its transcript, or dropped
    4. images dropped from the end
    5. PayloadTooLarge
"""
import base64
import io
import json
from dataclasses import dataclass, field
from typing import Callable

from PIL import Image, UnidentifiedImageError

from fieldlink.connectivity.monitor import ConnectivityState
from fieldlink.core.constants import (
    CEILING_FAST_BYTES,
    CEILING_MEDIUM_BYTES,
    CEILING_SLOW_BYTES,
    IMAGE_MIN_EDGE_PX,
    IMAGE_SCALE_STEP,
    JPEG_QUALITY_FLOOR,
    JPEG_QUALITY_START,
    JPEG_QUALITY_STEP,
)
from fieldlink.core.errors import PayloadTooLarge

from .types import MultimodalInput

PAYLOAD_CEILINGS = {
    ConnectivityState.SLOW: CEILING_SLOW_BYTES,
    ConnectivityState.MEDIUM: CEILING_MEDIUM_BYTES,
    ConnectivityState.FAST: CEILING_FAST_BYTES,
}

Recognizer = Callable[[bytes], str | None]


@dataclass
class ShapedPayload:
    body: bytes
    image_quality: int | None = None
    image_scale: float = 1.0
    dropped: list[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.body)


def ceiling_for(state: ConnectivityState) -> int:
    """Byte ceiling for the current link class.

    Raises:
        ValueError: OFFLINE has no ceiling (nothing is sent)
    """
    if state not in PAYLOAD_CEILINGS:
        raise ValueError(f"no payload ceiling for {state.value}")
    return PAYLOAD_CEILINGS[state]


def _b64(data: bytes | None) -> str | None:
    if data is None:
        return None
    return base64.b64encode(data).decode("ascii")


def encode_body(
    envelope: dict,
    images: list[bytes],
    text: str | None,
    audio: bytes | None,
    transcript: str | None = None,
) -> bytes:
    body = dict(envelope)
    body["images"] = [_b64(i) for i in images]
    body["text"] = text
    body["audio"] = _b64(audio)
    body["transcript"] = transcript
    return json.dumps(body, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def decode_body(body: bytes) -> dict:
    """Inverse of encode_body; media fields come back as bytes."""
    data = json.loads(body.decode("utf-8"))
    data["images"] = [base64.b64decode(i) for i in data.get("images") or []]
    if data.get("audio") is not None:
        data["audio"] = base64.b64decode(data["audio"])
    return data


def _open(image: bytes) -> Image.Image | None:
    try:
        img = Image.open(io.BytesIO(image))
        img.load()
    except (UnidentifiedImageError, OSError):
        return None
    if img.mode != "RGB":
        img = img.convert("RGB")
    return img


def recompress(img: Image.Image, quality: int, scale: float = 1.0) -> bytes:
    """JPEG-encode an image at the given quality and scale."""
    if scale < 1.0:
        width, height = img.size
        img = img.resize(
            (max(1, int(width * scale)), max(1, int(height * scale))),
            Image.Resampling.LANCZOS,
        )
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=quality, optimize=True)
    return buf.getvalue()


def _ladder(decoded: list[Image.Image | None]):
    """Yield (quality, scale) steps in degradation order."""
    smallest = min((min(img.size) for img in decoded if img is not None), default=0)
    scale = 1.0
    while True:
        quality = JPEG_QUALITY_START
        while quality >= JPEG_QUALITY_FLOOR:
            yield quality, scale
            quality -= JPEG_QUALITY_STEP
        next_scale = scale * IMAGE_SCALE_STEP
        if smallest * next_scale < IMAGE_MIN_EDGE_PX:
            return
        scale = next_scale


def shape_payload(
    media: MultimodalInput,
    ceiling: int,
    envelope: dict | None = None,
    recognizer: Recognizer | None = None,
) -> ShapedPayload:
    """Shape media plus envelope into a body no larger than ceiling bytes.

    Args:
        media: Images, text and audio captured by the farmer
        ceiling: Maximum body size in bytes
        envelope: Non-media fields sent as-is (detection, context, history)
        recognizer: Speech-to-text used to replace audio by a transcript

    Returns:
        ShapedPayload whose body is <= ceiling

    Raises:
        PayloadTooLarge: Even the text-only body exceeds the ceiling
    """
    envelope = envelope or {}
    images = list(media.images)
    audio = media.audio

    body = encode_body(envelope, images, media.text, audio)
    if len(body) <= ceiling:
        return ShapedPayload(body=body)

    decoded = [_open(i) for i in images]
    quality = None
    scale = 1.0
    if any(img is not None for img in decoded):
        for quality, scale in _ladder(decoded):
            images = [
                recompress(img, quality, scale) if img is not None else raw
                for img, raw in zip(decoded, media.images)
            ]
            body = encode_body(envelope, images, media.text, audio)
            if len(body) <= ceiling:
                return ShapedPayload(body=body, image_quality=quality, image_scale=scale)

    dropped = []
    transcript = None
    if audio is not None:
        transcript = recognizer(audio) if recognizer is not None else None
        audio = None
        dropped.append("audio")
        body = encode_body(envelope, images, media.text, audio, transcript)
        if len(body) <= ceiling:
            return ShapedPayload(body=body, image_quality=quality, image_scale=scale, dropped=dropped)

    while images:
        images.pop()
        dropped.append(f"image[{len(images)}]")
        body = encode_body(envelope, images, media.text, audio, transcript)
        if len(body) <= ceiling:
            return ShapedPayload(body=body, image_quality=quality, image_scale=scale, dropped=dropped)

    raise PayloadTooLarge(len(body), ceiling)
