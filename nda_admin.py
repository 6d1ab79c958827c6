from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from typing import Optional

from nda_errors import AuthorizationError, ConfigurationError

log = logging.getLogger("nda-gate")


@dataclass
class DocumentReceipt:
    file_id: str
    file_name: Optional[str] = None
    file_size: Optional[int] = None

    def describe(self) -> str:
        size_kb = (self.file_size or 0) / 1024
        return (
            "✅ NDA file set successfully!\n"
            f"📄 File: {html.escape(self.file_name or 'document')}\n"
            f"📦 Size: {size_kb:.2f} KB\n"
            "This file will be used for all new members."
        )


@dataclass
class AdminConfig:
    document_ref: Optional[str] = None
    awaiting_upload: bool = False
    last_receipt: Optional[DocumentReceipt] = None


class AdminStore:
    """Process-wide NDA document reference, changed only by the admin."""

    def __init__(self, admin_id: int, config: Optional[AdminConfig] = None):
        self.admin_id = int(admin_id)
        self.config = config or AdminConfig()

    def is_admin(self, actor_id: Optional[int]) -> bool:
        return actor_id is not None and int(actor_id) == self.admin_id

    @property
    def document_ref(self) -> Optional[str]:
        return self.config.document_ref

    def require_document(self) -> str:
        if not self.config.document_ref:
            raise ConfigurationError("no NDA document configured; admin must run /upload_nda")
        return self.config.document_ref

    def request_upload(self, actor_id: Optional[int]) -> None:
        if not self.is_admin(actor_id):
            raise AuthorizationError(f"uid={actor_id} is not the admin")
        self.config.awaiting_upload = True
        log.info("ADMIN: upload armed uid=%s", actor_id)

    def receive_document(
        self,
        actor_id: Optional[int],
        file_id: str,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
    ) -> Optional[DocumentReceipt]:
        """Store the document if the admin armed an upload; otherwise ignore it."""
        if not self.is_admin(actor_id) or not self.config.awaiting_upload:
            return None
        self.config.awaiting_upload = False
        self.config.document_ref = file_id
        receipt = DocumentReceipt(file_id=file_id, file_name=file_name, file_size=file_size)
        self.config.last_receipt = receipt
        log.info("ADMIN: NDA file updated name=%s file_id=%s", file_name, file_id)
        return receipt
