"""Object storage with signed URLs, and image upload validation."""
from __future__ import annotations

import hashlib
import hmac
import io
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional
from urllib.parse import quote, urlencode

from PIL import Image, UnidentifiedImageError

from ..config import Settings, get_settings
from ..errors import ServiceError
from ..logger import log_detail
from ..security import generate_object_name

logger = logging.getLogger(__name__)

BUCKETS = ("consultation-images", "animal-images", "portfolio-images")

# Pillow format names for each accepted MIME type
PILLOW_FORMATS = {
    "image/jpeg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
}


@dataclass
class UploadFile:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class UploadOutcome:
    urls: List[str] = field(default_factory=list)
    paths: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class ObjectStorage:
    """Filesystem-backed buckets. Objects live under ``<storage_dir>/<bucket>/<path>``."""

    def __init__(self, settings: Settings | None = None, root: str | Path | None = None) -> None:
        self.settings = settings or get_settings()
        self.root = Path(root or self.settings.storage_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        owner_id: str,
        content_type: str,
        upsert: bool = False,
    ) -> str:
        target = self._resolve(bucket, path)
        if PurePosixPath(path).parts[0] != owner_id:
            raise ServiceError("storage/unauthorized", "folder does not belong to uploader", status=403)
        if target.exists() and not upsert:
            raise ServiceError("storage/duplicate", "The resource already exists", status=409)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.info("Stored %s/%s (%s, %d bytes)", bucket, path, content_type, len(data))
        return path

    def create_signed_url(self, bucket: str, path: str, expires_in: int | None = None) -> str:
        if not self._resolve(bucket, path).exists():
            raise ServiceError("storage/object-not-found", "Object not found", status=404)
        expires = int(time.time()) + (expires_in or self.settings.signed_url_exp_seconds)
        query = urlencode({"expires": expires, "signature": self._sign(bucket, path, expires)})
        return f"{self.settings.public_base_url}/storage/{bucket}/{quote(path)}?{query}"

    def verify_signed_url(self, bucket: str, path: str, expires: int, signature: str) -> bool:
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self._sign(bucket, path, expires), signature)

    def open(self, bucket: str, path: str) -> Path:
        target = self._resolve(bucket, path)
        if not target.is_file():
            raise ServiceError("storage/object-not-found", "Object not found", status=404)
        return target

    def _sign(self, bucket: str, path: str, expires: int) -> str:
        secret = self.settings.jwt_secret_key.encode("utf-8")
        message = f"{bucket}/{path}:{expires}".encode("utf-8")
        return hmac.new(secret, message, hashlib.sha256).hexdigest()

    def _resolve(self, bucket: str, path: str) -> Path:
        if bucket not in BUCKETS:
            raise ServiceError("storage/invalid-argument", f"unknown bucket {bucket}", status=400)
        parts = PurePosixPath(path).parts
        if not parts or any(part in ("..", "/") for part in parts):
            raise ServiceError("storage/invalid-argument", "invalid object path", status=400)
        return self.root / bucket / Path(*parts)


class FileUploadService:
    """Validate and upload user images, returning signed URLs for what succeeded."""

    def __init__(self, storage: ObjectStorage | None = None, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.storage = storage or ObjectStorage(self.settings)

    def validate_file(self, file: UploadFile) -> Optional[str]:
        """Return an error message for an unacceptable file, ``None`` if it is fine."""

        max_mb = self.settings.upload_max_bytes // (1024 * 1024)
        if file.size > self.settings.upload_max_bytes:
            return f"{file.filename} exceeds {max_mb}MB limit"
        if file.content_type not in self.settings.upload_allowed_mime_types:
            return f"{file.filename} must be JPEG, PNG, or WebP"
        if _sniff_format(file.data) != PILLOW_FORMATS.get(file.content_type):
            return f"{file.filename} must be JPEG, PNG, or WebP"
        return None

    def upload_files(
        self,
        files: Iterable[UploadFile],
        *,
        bucket: str,
        folder: str,
        max_files: int | None = None,
    ) -> UploadOutcome:
        files = list(files)
        outcome = UploadOutcome()
        if max_files and len(files) > max_files:
            outcome.errors.append(f"Maximum {max_files} files allowed")
            return outcome

        valid = []
        for file in files:
            error = self.validate_file(file)
            if error:
                outcome.errors.append(error)
            else:
                valid.append(file)

        for file in valid:
            extension = PurePosixPath(file.filename).suffix.lstrip(".").lower() or "bin"
            path = f"{folder}/{generate_object_name()}.{extension}"
            try:
                self.storage.upload(bucket, path, file.data, owner_id=folder, content_type=file.content_type)
                url = self.storage.create_signed_url(bucket, path)
            except ServiceError as exc:
                log_detail(logger, "Upload error", {"file": file.filename, "code": exc.code, "message": exc.message})
                outcome.errors.append(f"Failed to upload {file.filename}")
                continue
            outcome.paths.append(path)
            outcome.urls.append(url)

        if outcome.urls:
            logger.info("%d file(s) uploaded to %s", len(outcome.urls), bucket)
        return outcome


def _sniff_format(data: bytes) -> Optional[str]:
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.verify()
            return image.format
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return None
