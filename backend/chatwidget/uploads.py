import os
import uuid
from pathlib import Path

import structlog
from fastapi.concurrency import run_in_threadpool

from .config import MAX_FILE_SIZE, MEDIA_ROOT, MEDIA_URL
from .errors import AttachmentTooLarge, UploadError
from .schemas import AttachmentOut

logger = structlog.get_logger(__name__)


class AttachmentStore:
    """Writes chat attachments under MEDIA_ROOT; main.py serves them at MEDIA_URL."""

    def __init__(self, root: str = MEDIA_ROOT, base_url: str = MEDIA_URL, max_size: int = MAX_FILE_SIZE):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self.max_size = max_size

    def check_size(self, size: int) -> None:
        if size > self.max_size:
            raise AttachmentTooLarge(size, self.max_size)

    async def upload(self, name: str, mime_type: str, data: bytes) -> AttachmentOut:
        self.check_size(len(data))
        ext = os.path.splitext(name)[1] or ".bin"
        stored_name = f"{uuid.uuid4()}{ext}"

        def write():
            self.root.mkdir(parents=True, exist_ok=True)
            (self.root / stored_name).write_bytes(data)

        try:
            await run_in_threadpool(write)
        except OSError as e:
            logger.warning("Attachment upload failed", name=name, error=str(e))
            raise UploadError(str(e)) from e

        return AttachmentOut(
            url=f"{self.base_url}/{stored_name}",
            name=name,
            mime_type=mime_type or "application/octet-stream",
            size=len(data),
        )
