"""
desk/attachments.py -- Attachment index used when tickets are read or deleted.

Upload handling lives outside this service; AttachmentIndex only lists the
attachment rows for a record and removes them together with their files when
the record is deleted. Files are only ever unlinked inside uploads_dir.
"""

import logging
from pathlib import Path

from core.errors import DependencyFailure
from core.models import Attachment
from desk.store import DeskStore

logger = logging.getLogger("helpdesk.attachments")


class AttachmentIndex:
    def __init__(self, store: DeskStore, uploads_dir: str) -> None:
        self.store = store
        self.uploads_dir = Path(uploads_dir).resolve()

    def list_attachments(self, record_type: str, record_id: int) -> list[Attachment]:
        return self.store.list_attachments(record_type, record_id)

    def delete_attachments(self, record_type: str, record_id: int) -> int:
        """Delete every attachment of a record, files first. Returns rows removed."""
        for attachment in self.store.list_attachments(record_type, record_id):
            path = (self.uploads_dir / attachment.filename).resolve()
            if not path.is_relative_to(self.uploads_dir):
                logger.warning("Skipping attachment %s outside uploads dir", attachment.id)
                continue
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                raise DependencyFailure(
                    "Could not remove attachment file.",
                    attachment_id=attachment.id,
                ) from exc
        return self.store.delete_attachment_rows(record_type, record_id)
