"""Client-facing activity log. Append-only; a failed write never fails the
operation that triggered it."""

import logging
import uuid
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tierpay.models.activity import ActivityLogEntry

logger = logging.getLogger(__name__)


class ActivityLog:
    @staticmethod
    def record(
        db: Session,
        client_id: uuid.UUID,
        activity_type: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> ActivityLogEntry | None:
        entry = ActivityLogEntry(
            client_id=client_id,
            activity_type=activity_type,
            description=description,
            metadata_=metadata,
        )
        try:
            with db.begin_nested():
                db.add(entry)
        except SQLAlchemyError:
            logger.exception(
                "Failed to write activity log entry (%s)",
                activity_type,
                extra={"client_id": str(client_id)},
            )
            return None
        logger.info(
            "Activity logged: %s",
            activity_type,
            extra={"client_id": str(client_id)},
        )
        return entry


activity_log = ActivityLog()
