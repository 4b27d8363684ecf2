"""
Receipt attachment storage collaborators.

The engine never reads receipt contents; it only keeps the reference
(url/path) the storage hands back.
"""

import logging
import re
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from ..claims.errors import UpstreamError
from ..claims.schema import Attachment

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class AttachmentStorage(ABC):
    """External receipt storage."""

    @abstractmethod
    async def upload(
        self,
        content: bytes,
        filename: str,
        owner_id: str,
        claim_id: Optional[str] = None,
        content_type: str = "application/octet-stream",
    ) -> Attachment:
        """Store a receipt and return its reference."""

    @abstractmethod
    async def delete(self, path: str) -> bool:
        """Delete a stored receipt. Returns False if it did not exist."""


class LocalAttachmentStorage(AttachmentStorage):
    """
    Stores receipts on the local filesystem.

    Files land under ``<root>/<owner_id>/<claim_id or 'unassigned'>/``.
    """

    def __init__(self, root: Path, base_url: str = "http://localhost:8000"):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    async def upload(
        self,
        content: bytes,
        filename: str,
        owner_id: str,
        claim_id: Optional[str] = None,
        content_type: str = "application/octet-stream",
    ) -> Attachment:
        attachment_id = f"ATT-{uuid.uuid4().hex[:8].upper()}"
        safe_name = _UNSAFE_CHARS.sub("_", filename) or "receipt"
        relative = Path(owner_id) / (claim_id or "unassigned") / f"{attachment_id}_{safe_name}"
        target = self.root / relative
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as e:
            raise UpstreamError("upload", str(e)) from e

        logger.info(f"📎 Stored receipt {filename} ({len(content)} bytes) at {target}")
        return Attachment(
            id=attachment_id,
            url=f"{self.base_url}/receipts/{relative.as_posix()}",
            path=relative.as_posix(),
            filename=filename,
            size=len(content),
            content_type=content_type,
        )

    async def delete(self, path: str) -> bool:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            logger.warning(f"Refusing to delete outside storage root: {path}")
            return False
        if not target.exists():
            return False
        target.unlink()
        return True
