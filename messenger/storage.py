import logging
import shutil
from pathlib import Path
from typing import Iterable, Optional
from uuid import uuid4

from fastapi import UploadFile
from fastapi.concurrency import run_in_threadpool

from messenger.config import settings
from messenger.exceptions import ValidationError
from messenger.schemas.message import AttachmentCreate

logger = logging.getLogger(__name__)


class LocalMediaStorage:
    """Хранит загруженные файлы на диске; в базе остаются только метаданные и URL."""

    def __init__(self, root: Optional[str] = None, base_url: Optional[str] = None):
        self.root = Path(root or settings.MEDIA_DIR)
        self.base_url = (base_url or settings.MEDIA_URL).rstrip("/")

    def _write(self, upload: UploadFile, path: Path) -> int:
        path.parent.mkdir(parents=True, exist_ok=True)
        upload.file.seek(0)
        with path.open("wb") as target:
            shutil.copyfileobj(upload.file, target)
        return path.stat().st_size

    async def save(self, upload: UploadFile, folder: str = "files") -> AttachmentCreate:
        filename = upload.filename or "file"
        stored_name = f"{uuid4().hex}{Path(filename).suffix.lower()}"
        size = await run_in_threadpool(self._write, upload, self.root / folder / stored_name)

        logger.debug("Stored upload %s as %s/%s (%d bytes)", filename, folder, stored_name, size)
        return AttachmentCreate(
            name=filename,
            mime_type=upload.content_type or "application/octet-stream",
            size=size,
            url=f"{self.base_url}/{folder}/{stored_name}",
        )

    def _remove(self, url: str) -> None:
        prefix = f"{self.base_url}/"
        if not url.startswith(prefix):
            return
        path = self.root / url[len(prefix):]
        try:
            path.unlink(missing_ok=True)
        except OSError:
            logger.warning("Could not remove stored file %s", path, exc_info=True)

    async def discard(self, attachments: Iterable[AttachmentCreate]) -> None:
        """Удаляет файлы, сохранённые для сообщения, которое не было записано"""
        for attachment in attachments:
            await run_in_threadpool(self._remove, attachment.url)
            logger.debug("Discarded stored upload %s", attachment.url)

    async def save_image(self, upload: UploadFile, folder: str = "avatars") -> str:
        if not (upload.content_type or "").startswith("image/"):
            raise ValidationError("Avatar must be an image", error_code="INVALID_IMAGE")
        stored = await self.save(upload, folder=folder)
        return stored.url


storage = LocalMediaStorage()
