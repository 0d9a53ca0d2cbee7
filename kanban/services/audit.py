"""
Audit trail for card status changes.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from kanban.database.models import AuditLog, Card, CardStatus
from kanban.database.repository import AuditLogRepository

logger = logging.getLogger(__name__)

STATUS_CHANGE = "STATUS_CHANGE"


class AuditService:
    """Writes audit entries; a failed write is logged, never raised."""

    def __init__(
        self,
        audit_repo: AuditLogRepository,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.audit_repo = audit_repo
        self.clock = clock

    def record_status_change(
        self,
        user_id: int,
        card: Card,
        from_status: Optional[CardStatus],
        to_status: CardStatus,
        reason: str,
    ) -> Optional[AuditLog]:
        """
        Record that a card moved between columns.

        Args:
            user_id: Owner of the card
            card: Card that moved
            from_status: Previous status
            to_status: New status
            reason: Why it moved (the rule name for automated moves)

        Returns:
            The stored entry, or None if it could not be written
        """
        entry = AuditLog(
            user_id=user_id,
            card_id=card.id,
            action=STATUS_CHANGE,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            created_at=self.clock(),
        )
        try:
            return self.audit_repo.create(entry)
        except Exception as e:
            logger.error(f"Failed to write audit log for card {card.id}: {e}")
            return None
