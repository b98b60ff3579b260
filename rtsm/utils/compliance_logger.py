"""
RTSM - Compliance & Audit Engine (21 CFR Part 11)
=================================================
Append-only audit trail with HMAC-SHA256 integrity chaining.

Entries are written through the caller's session, so an audit row commits
or rolls back together with the business change it describes.
"""

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from rtsm.config import get_settings
from rtsm.database.enums import AuditEventKind
from rtsm.database.models import AuditLog, utcnow
from rtsm.database.repositories import AuditLogRepository

logger = logging.getLogger(__name__)


def _serialize(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, default=str)


class ComplianceLogger:
    """
    Handles immutable audit trail logging with integrity chaining.
    """

    def __init__(self, secret_key: Optional[str] = None):
        self._secret_key = (secret_key or get_settings().AUDIT_SECRET_KEY).encode()

    def _checksum(self, payload: Dict[str, Any]) -> str:
        payload_str = json.dumps(payload, sort_keys=True, default=str)
        return hmac.new(self._secret_key, payload_str.encode(), hashlib.sha256).hexdigest()

    @staticmethod
    def _payload(log: AuditLog, previous: Optional[str]) -> Dict[str, Any]:
        return {
            "timestamp": log.timestamp.isoformat(),
            "user_id": log.user_id,
            "action": log.action,
            "entity": f"{log.entity_type}:{log.entity_id}",
            "refs": log.entity_refs,
            "old": log.old_value,
            "new": log.new_value,
            "reason": log.reason,
            "previous": previous or "GENESIS",
        }

    def log_event(self,
                  session: Session,
                  event_kind: AuditEventKind,
                  actor_id: str,
                  entity_refs: Dict[str, Any],
                  old_value: Any = None,
                  new_value: Any = None,
                  reason: Optional[str] = None) -> AuditLog:
        """
        Record a verifiable event in the audit trail.

        Args:
            session: Session whose transaction the entry joins
            event_kind: What happened
            actor_id: User performing the action
            entity_refs: Ordered {entity_type: entity_id}; the first pair is the primary entity
            old_value: Previous state, if any
            new_value: New state, if any
            reason: Free-text reason
        """
        if not entity_refs:
            raise ValueError("entity_refs must name at least one entity")

        entity_type, entity_id = next(iter(entity_refs.items()))
        repo = AuditLogRepository(session)
        previous = repo.latest_checksum()

        log = AuditLog(
            timestamp=utcnow(),
            user_id=str(actor_id),
            action=AuditEventKind(event_kind).value,
            entity_type=str(entity_type),
            entity_id=str(entity_id),
            entity_refs={str(k): str(v) for k, v in entity_refs.items()},
            old_value=_serialize(old_value),
            new_value=_serialize(new_value),
            reason=reason,
            previous_checksum=previous,
        )
        log.checksum = self._checksum(self._payload(log, previous))
        repo.add(log)

        logger.info(f"Compliance audit logged: {log.action} on {log.entity_type}/{log.entity_id}")
        return log

    def verify_chain(self, session: Session) -> List[str]:
        """
        Recompute every checksum in insertion order.

        Returns:
            log_ids of entries whose checksum or chain link does not match
        """
        broken = []
        seen = set()
        for log in reversed(AuditLogRepository(session).get_recent(limit=None)):
            expected = self._checksum(self._payload(log, log.previous_checksum))
            # Concurrent writers may link to the same predecessor, so a link
            # only has to point at an earlier entry
            linked = log.previous_checksum is None or log.previous_checksum in seen
            if log.checksum != expected or not linked:
                broken.append(log.log_id)
            seen.add(log.checksum)
        if broken:
            logger.warning(f"Audit chain verification failed for {len(broken)} entries")
        return broken


_logger: Optional[ComplianceLogger] = None


def get_compliance_logger() -> ComplianceLogger:
    global _logger
    if _logger is None:
        _logger = ComplianceLogger()
    return _logger
