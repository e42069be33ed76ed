import logging
import os
import random
import time
from datetime import datetime, timezone
from typing import Optional

import cloudinary
import cloudinary.exceptions
import cloudinary.uploader
from fastapi import HTTPException, UploadFile

from config import CLOUDINARY_URL, MAX_UPLOAD_BYTES, UPLOAD_DIR

logger = logging.getLogger(__name__)

if CLOUDINARY_URL:
    # cloudinary reads CLOUDINARY_URL from the environment on config()
    cloudinary.config(secure=True)


def save_upload(upload: UploadFile, folder: str, prefix: str = "img") -> dict:
    """
    Store an uploaded image under UPLOAD_DIR/<folder>.

    Only image/* content up to 5MB is accepted. When Cloudinary is configured
    the file is forwarded there and the returned url points at Cloudinary;
    on any Cloudinary error the local copy is used instead.
    """
    if not (upload.content_type or "").startswith("image/"):
        raise HTTPException(status_code=400, detail="Only image files are allowed")
    data = upload.file.read(MAX_UPLOAD_BYTES + 1)
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail="File too large. Maximum size is 5MB")
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")

    ext = os.path.splitext(upload.filename or "")[1].lower() or ".jpg"
    filename = f"{prefix}-{int(time.time() * 1000)}-{random.randint(0, 10**9)}{ext}"
    directory = os.path.join(UPLOAD_DIR, folder)
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, filename)
    with open(path, "wb") as fh:
        fh.write(data)

    url = f"/uploads/{folder}/{filename}"
    public_id = None
    if CLOUDINARY_URL:
        try:
            result = cloudinary.uploader.upload(path, folder=folder, resource_type="image")
            url = result.get("secure_url") or url
            public_id = result.get("public_id")
        except (cloudinary.exceptions.Error, OSError) as e:
            logger.warning("Cloudinary upload failed for %s, keeping local file: %s", filename, e)

    return {
        "filename": filename,
        "path": path,
        "url": url,
        "public_id": public_id,
        "original_name": upload.filename,
        "size": len(data),
        "uploaded_at": datetime.now(timezone.utc),
    }


def delete_upload(path: str, public_id: Optional[str] = None):
    try:
        if path and os.path.isfile(path):
            os.remove(path)
    except OSError as e:
        logger.warning("Could not delete upload %s: %s", path, e)
    if public_id and CLOUDINARY_URL:
        try:
            cloudinary.uploader.destroy(public_id)
        except cloudinary.exceptions.Error as e:
            logger.warning("Could not delete Cloudinary asset %s: %s", public_id, e)
