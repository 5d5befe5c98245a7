"""Blob storage for uploaded verification documents.

Uses Cloudinary when credentials are configured, otherwise falls back to a
local directory (suitable for development and tests).
"""

import logging
import os
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import cloudinary
import cloudinary.uploader

from config import Settings
from errors import AppError, ValidationFailed

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024
ALLOWED_MIME_TYPES = (
    "image/jpeg",
    "image/jpg",
    "image/png",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
)
DOCUMENT_FOLDER = "garage-documents"


class StorageError(AppError):
    default_message = "Error storing file"


@dataclass
class StoredBlob:
    url: str
    public_id: str
    size: int


def validate_upload(filename: str, content_type: Optional[str], size: int) -> None:
    if content_type not in ALLOWED_MIME_TYPES:
        raise ValidationFailed(f"Invalid file type for {filename}. Only JPEG, PNG, PDF, DOC, DOCX are allowed.")
    if size > MAX_UPLOAD_BYTES:
        raise ValidationFailed(f"File {filename} is too large. Maximum size is 10MB.")
    if size == 0:
        raise ValidationFailed(f"File {filename} is empty")


class BlobStore(ABC):
    @abstractmethod
    def upload(self, data: bytes, filename: str, folder: str = DOCUMENT_FOLDER) -> StoredBlob:
        ...

    @abstractmethod
    def delete(self, public_id: str) -> None:
        ...


class CloudinaryBlobStore(BlobStore):
    def __init__(self, cloud_name: str, api_key: str, api_secret: str):
        cloudinary.config(cloud_name=cloud_name, api_key=api_key, api_secret=api_secret, secure=True)

    def upload(self, data: bytes, filename: str, folder: str = DOCUMENT_FOLDER) -> StoredBlob:
        try:
            result = cloudinary.uploader.upload(data, folder=folder, resource_type="auto")
        except Exception as e:
            logger.error("Cloudinary upload failed for %s: %s", filename, e)
            raise StorageError(f"Error uploading {filename}")
        return StoredBlob(url=result["secure_url"], public_id=result["public_id"], size=len(data))

    def delete(self, public_id: str) -> None:
        result = cloudinary.uploader.destroy(public_id)
        if result.get("result") not in ("ok", "not found"):
            raise StorageError(f"Cloudinary refused to delete {public_id}")


class LocalBlobStore(BlobStore):
    def __init__(self, root: str):
        self.root = root

    @staticmethod
    def _safe_name(filename: str) -> str:
        return re.sub(r"[^A-Za-z0-9._-]", "_", os.path.basename(filename)) or "file"

    def upload(self, data: bytes, filename: str, folder: str = DOCUMENT_FOLDER) -> StoredBlob:
        public_id = f"{folder}/{uuid.uuid4().hex}-{self._safe_name(filename)}"
        path = os.path.join(self.root, public_id)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
        return StoredBlob(url=f"/uploads/{public_id}", public_id=public_id, size=len(data))

    def delete(self, public_id: str) -> None:
        path = os.path.join(self.root, public_id)
        if os.path.exists(path):
            os.remove(path)


def get_blob_store(settings: Settings) -> BlobStore:
    if settings.cloudinary_configured:
        logger.info("Using Cloudinary blob store (cloud=%s)", settings.cloudinary_cloud_name)
        return CloudinaryBlobStore(
            settings.cloudinary_cloud_name,
            settings.cloudinary_api_key,
            settings.cloudinary_api_secret,
        )
    logger.info("Cloudinary not configured, storing uploads under %s", settings.upload_dir)
    return LocalBlobStore(settings.upload_dir)
