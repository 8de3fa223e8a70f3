"""Image uploads to Cloudinary (product images, banners, bundles, receipts)."""

import io
import logging
import os
from typing import Union

import cloudinary
import cloudinary.uploader

from errors import UpstreamFailure, ValidationError

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", 5 * 1024 * 1024))
RECEIPT_FOLDER = os.getenv("RECEIPT_FOLDER", "receipts")

cloudinary.config(
    cloud_name=os.getenv("CLOUDINARY_CLOUD_NAME"),
    api_key=os.getenv("CLOUDINARY_API_KEY"),
    api_secret=os.getenv("CLOUDINARY_API_SECRET"),
    secure=True,
)


def upload_image(source: Union[bytes, str], folder: str) -> str:
    """Upload raw bytes or a ``data:image/...`` URL and return the secure URL."""
    if isinstance(source, bytes):
        if not source:
            raise ValidationError("Uploaded file is empty")
        if len(source) > MAX_UPLOAD_BYTES:
            raise ValidationError(f"Uploaded file exceeds {MAX_UPLOAD_BYTES} bytes")
        payload = io.BytesIO(source)
    elif isinstance(source, str) and source.startswith("data:image/"):
        payload = source
    else:
        raise ValidationError("Image must be a file upload or a data:image URL")

    try:
        result = cloudinary.uploader.upload(payload, folder=folder)
    except Exception as e:
        logger.error("Upload to folder %s failed: %s", folder, e)
        raise UpstreamFailure(f"Image upload failed: {str(e)[:100]}") from e

    url = result.get("secure_url") if result else None
    if not url:
        raise UpstreamFailure("Image upload failed: no URL returned")
    return url
