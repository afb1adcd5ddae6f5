"""Activity logging service for audit trail."""

import json
import logging
import uuid
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.models import ActivityLog

logger = logging.getLogger(__name__)


class ActivityService:
    """Service for logging subscription lifecycle actions.

    Entries are added to the caller's session and committed together with
    the transition they describe.
    """

    @staticmethod
    def log_activity(
        db: AsyncSession,
        action: str,
        user_id: Optional[uuid.UUID] = None,
        target_type: Optional[str] = None,
        target_id: Optional[Any] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ActivityLog:
        """Log an activity/action."""
        metadata_value = json.dumps(metadata, default=str) if metadata is not None else None

        activity = ActivityLog(
            actor_user_id=user_id,
            action=action,
            target_type=target_type,
            target_id=str(target_id) if target_id is not None else None,
            activity_metadata=metadata_value,
            created_by=user_id,
        )
        db.add(activity)

        logger.info(
            "Subscription activity %s",
            action,
            extra={"activity.action": action, "activity.target_id": activity.target_id, "user_id": str(user_id)},
        )
        return activity

    @staticmethod
    async def list_for_target(db: AsyncSession, target_type: str, target_id: Any) -> list[ActivityLog]:
        result = await db.execute(
            select(ActivityLog)
            .where(ActivityLog.target_type == target_type, ActivityLog.target_id == str(target_id))
            .order_by(ActivityLog.created_date.asc())
        )
        return list(result.scalars().all())
