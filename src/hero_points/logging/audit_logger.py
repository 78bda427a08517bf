from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..db.base import BaseDBManager
from ..models.audit import AuditEvent, AuditEventType


logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


class AuditLogger:
    """
    Records every grant, debit, rejection and payment as an AuditEvent.

    The row goes through the same BaseDBManager as the effect it describes,
    so inside a transaction both commit or neither does. Each event is also
    appended as one JSON line to `file_path` for shipping to log storage,
    once the surrounding transaction has committed.
    """

    def __init__(self, db: BaseDBManager, file_path: Path) -> None:
        self._db = db
        self._file_path = file_path
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_event(
        self,
        event_type: AuditEventType,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        event = await self._db.add_audit_event(
            AuditEvent(
                event_type=event_type,
                user_id=user_id,
                message=message,
                details=details,
                correlation_id=correlation_id,
            )
        )
        logger.info("%s: %s", event_type.value, message, extra={"user_id": user_id})
        self._db.after_commit(lambda: self._append_line(event))

    async def log_rejection(self, message: str, details: dict[str, Any], **context: Any) -> None:
        await self.log_event(AuditEventType.REJECTION, message, details, **context)

    async def log_error(self, message: str, details: dict[str, Any], **context: Any) -> None:
        await self.log_event(AuditEventType.ERROR, message, details, **context)

    def _append_line(self, event: AuditEvent) -> None:
        # Best-effort mirror; the DB row is authoritative.
        try:
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(event.serialize_for_db(), default=str) + "\n")
        except OSError:
            logger.warning("audit file write failed", extra={"path": str(self._file_path)})
