"""
Audit Trail Service - Append-only log of deposit state transitions
Every automated or administrative change to a deposit's status or payment status
is paired with exactly one entry capturing both fields before and after.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from models import (
    AuditAction,
    AuditLogEntry,
    Deposit,
    SYSTEM_ACTOR,
    SYSTEM_AUDIT_ACTIONS,
    coerce_enum_value,
)
from utils.datetime_helpers import Clock, get_naive_utc_now
from utils.exceptions import InvalidInput, InvalidState

logger = logging.getLogger(__name__)


class AuditTrailService:
    """Service for audit trail recording and paginated queries"""

    DEFAULT_PAGE_SIZE = 50

    def __init__(self, clock: Clock = get_naive_utc_now):
        self.clock = clock
        self._entries: List[AuditLogEntry] = []
        self._mutex = threading.Lock()

    def record(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Append ``entry`` and return the stored entry"""
        try:
            action = coerce_enum_value(AuditAction, entry.action)
        except InvalidState as e:
            raise InvalidInput(str(e), field="action")

        if action not in SYSTEM_AUDIT_ACTIONS:
            if not entry.reason or not str(entry.reason).strip():
                raise InvalidInput(f"A reason is required for {action}", field="reason")
            if not entry.actor or entry.actor == SYSTEM_ACTOR:
                raise InvalidInput(f"An admin actor is required for {action}", field="actor")

        with self._mutex:
            self._entries.append(entry)

        logger.info(
            f"📝 AUDIT_LOGGED: {action} deposit={entry.deposit_id} actor={entry.actor} "
            f"status {entry.previous_status}→{entry.new_status} "
            f"payment {entry.previous_payment_status}→{entry.new_payment_status}"
        )
        return entry

    def log_transition(
        self,
        deposit: Deposit,
        action: AuditAction,
        previous_status: str,
        previous_payment_status: str,
        actor: str = SYSTEM_ACTOR,
        reason: Optional[str] = None,
        metadata: Dict[str, Any] = None,
    ) -> AuditLogEntry:
        """Record one entry for a change already applied to ``deposit``"""
        entry = AuditLogEntry(
            deposit_id=deposit.id,
            action=action.value if isinstance(action, AuditAction) else action,
            previous_status=previous_status,
            new_status=deposit.status,
            previous_payment_status=previous_payment_status,
            new_payment_status=deposit.payment_status,
            actor=actor,
            reason=reason,
            metadata=dict(metadata or {}),
            timestamp=self.clock(),
        )
        return self.record(entry)

    def query(
        self,
        deposit_id: Optional[str] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """
        Entries newest first, optionally filtered by deposit
        Returns: {'audit_logs': [...], 'total': int, 'limit': int, 'offset': int}
        """
        limit = max(0, int(limit))
        offset = max(0, int(offset))

        with self._mutex:
            # Insertion order breaks timestamp ties so the newest write sorts first
            indexed = list(enumerate(self._entries))

        if deposit_id is not None:
            indexed = [(i, e) for i, e in indexed if e.deposit_id == deposit_id]

        indexed.sort(key=lambda pair: (pair[1].timestamp, pair[0]), reverse=True)
        entries = [entry for _, entry in indexed]

        return {
            "audit_logs": entries[offset:offset + limit],
            "total": len(entries),
            "limit": limit,
            "offset": offset,
        }

    def entries_for(self, deposit_id: str, action: Optional[AuditAction] = None) -> List[AuditLogEntry]:
        """All entries of a deposit in insertion order, optionally by action"""
        wanted = action.value if isinstance(action, AuditAction) else action
        with self._mutex:
            return [
                e for e in self._entries
                if e.deposit_id == deposit_id and (wanted is None or e.action == wanted)
            ]

    def count(self) -> int:
        with self._mutex:
            return len(self._entries)
