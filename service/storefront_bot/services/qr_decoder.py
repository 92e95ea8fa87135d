"""
Local QR decoding.

Vision models often describe a QR code without reading it, so every photo
is also run through OpenCV's detector. A decoded payload wins over the
model's guess only when the model returned nothing.
"""

import logging
from typing import Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)


def decode_qr(image_bytes: bytes) -> Optional[str]:
    """
    Decode the first QR code found in an image.

    Returns None when the bytes are not an image or no code is readable.
    """
    if not image_bytes:
        return None

    buffer = np.frombuffer(image_bytes, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if image is None:
        logger.warning("QR decode skipped: bytes are not a readable image")
        return None

    detector = cv2.QRCodeDetector()
    try:
        payload, points, _ = detector.detectAndDecode(image)
    except cv2.error as e:
        logger.warning(f"QR decode failed: {e}")
        return None

    if points is None or not payload:
        return None

    payload = payload.strip()
    logger.info(f"QR decoded locally: {payload[:80]}")
    return payload or None
