"""
RTSM - Data Repositories
========================
Data access layer for schemes, sealed lists, assignments and the arm taxonomy.
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, case, delete, func, select, update
from sqlalchemy.orm import Session

from .enums import SchemeStatus
from .models import (
    AuditLog, RandomizationListEntry, RandomizationScheme, StudyGroup,
    StudyGroupClass, SubjectAssignment, utcnow,
)

logger = logging.getLogger(__name__)


class BaseRepository:
    """Base repository bound to the caller's session (and transaction)."""

    def __init__(self, session: Session):
        """
        Initialize repository.

        Args:
            session: SQLAlchemy session owned by the caller
        """
        self.session = session


class SchemeRepository(BaseRepository):
    """Repository for RandomizationScheme operations."""

    def get_by_id(self, config_id: int) -> Optional[RandomizationScheme]:
        """Get scheme by primary key."""
        return self.session.get(RandomizationScheme, config_id)

    def get_latest_for_study(self, study_id: str) -> Optional[RandomizationScheme]:
        """Most recently created scheme for a study."""
        stmt = (
            select(RandomizationScheme)
            .where(RandomizationScheme.study_id == study_id)
            .order_by(RandomizationScheme.created_at.desc(), RandomizationScheme.config_id.desc())
            .limit(1)
        )
        return self.session.scalars(stmt).first()

    def get_active_for_study(self, study_id: str) -> Optional[RandomizationScheme]:
        """The active scheme for a study, if any."""
        stmt = select(RandomizationScheme).where(
            and_(
                RandomizationScheme.study_id == study_id,
                RandomizationScheme.status == SchemeStatus.ACTIVE.value,
            )
        )
        return self.session.scalars(stmt).first()

    def create(self, scheme: RandomizationScheme) -> RandomizationScheme:
        """Create a new scheme."""
        self.session.add(scheme)
        self.session.flush()
        return scheme

    def retire_other_active(self, study_id: str, keep_config_id: int) -> List[int]:
        """Move every other active scheme of the study to retired."""
        others = self.session.scalars(
            select(RandomizationScheme).where(
                and_(
                    RandomizationScheme.study_id == study_id,
                    RandomizationScheme.status == SchemeStatus.ACTIVE.value,
                    RandomizationScheme.config_id != keep_config_id,
                )
            )
        ).all()
        for other in others:
            other.status = SchemeStatus.RETIRED.value
        self.session.flush()
        return [other.config_id for other in others]


class ListEntryRepository(BaseRepository):
    """Repository for sealed-list entries."""

    def count_for_config(self, config_id: int) -> int:
        """Total entries generated for a scheme."""
        return self.session.scalar(
            select(func.count(RandomizationListEntry.list_entry_id))
            .where(RandomizationListEntry.config_id == config_id)
        ) or 0

    def get_for_config(self, config_id: int) -> List[RandomizationListEntry]:
        """All entries, ordered by stratum then sequence."""
        stmt = (
            select(RandomizationListEntry)
            .where(RandomizationListEntry.config_id == config_id)
            .order_by(RandomizationListEntry.stratum_key, RandomizationListEntry.sequence_number)
        )
        return list(self.session.scalars(stmt))

    def delete_unused(self, config_id: int) -> int:
        """Drop the unused tail before regeneration. Claimed entries are kept."""
        result = self.session.execute(
            delete(RandomizationListEntry).where(
                and_(
                    RandomizationListEntry.config_id == config_id,
                    RandomizationListEntry.is_used.is_(False),
                )
            )
        )
        return result.rowcount or 0

    def retained_by_stratum(self, config_id: int) -> Dict[str, Tuple[int, int, int]]:
        """
        Entries that survive regeneration, per stratum.

        Returns:
            {stratum_key: (count, highest sequence_number, highest block_number)}
        """
        rows = self.session.execute(
            select(
                RandomizationListEntry.stratum_key,
                func.count(RandomizationListEntry.list_entry_id),
                func.max(RandomizationListEntry.sequence_number),
                func.max(RandomizationListEntry.block_number),
            )
            .where(RandomizationListEntry.config_id == config_id)
            .group_by(RandomizationListEntry.stratum_key)
        ).all()
        return {
            stratum: (count, max_seq or 0, max_block or 0)
            for stratum, count, max_seq, max_block in rows
        }

    def bulk_create(self, entries: Iterable[RandomizationListEntry]) -> int:
        """Insert generated entries."""
        entries = list(entries)
        self.session.add_all(entries)
        self.session.flush()
        return len(entries)

    def next_unused(
        self,
        config_id: int,
        stratum_key: str,
        skip_locked: bool = False,
    ) -> Optional[RandomizationListEntry]:
        """
        Lowest unused entry of a stratum.

        With skip_locked the row is locked FOR UPDATE and rows already locked
        by concurrent claims are skipped.
        """
        stmt = (
            select(RandomizationListEntry)
            .where(
                and_(
                    RandomizationListEntry.config_id == config_id,
                    RandomizationListEntry.stratum_key == stratum_key,
                    RandomizationListEntry.is_used.is_(False),
                )
            )
            .order_by(RandomizationListEntry.sequence_number.asc())
            .limit(1)
        )
        if skip_locked:
            stmt = stmt.with_for_update(skip_locked=True)
        return self.session.scalars(stmt).first()

    def mark_used(self, list_entry_id: int, subject_id: str, user_id: str) -> bool:
        """
        Conditionally flip an entry to used.

        Returns:
            False when another transaction claimed the entry first
        """
        result = self.session.execute(
            update(RandomizationListEntry)
            .where(
                and_(
                    RandomizationListEntry.list_entry_id == list_entry_id,
                    RandomizationListEntry.is_used.is_(False),
                )
            )
            .values(
                is_used=True,
                used_by_subject_id=subject_id,
                used_by_user_id=user_id,
                used_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def stats_by_stratum(self, config_id: int) -> List[Tuple[str, int, int]]:
        """(stratum_key, total, used) per stratum."""
        used = func.sum(case((RandomizationListEntry.is_used.is_(True), 1), else_=0))
        rows = self.session.execute(
            select(
                RandomizationListEntry.stratum_key,
                func.count(RandomizationListEntry.list_entry_id),
                used,
            )
            .where(RandomizationListEntry.config_id == config_id)
            .group_by(RandomizationListEntry.stratum_key)
            .order_by(RandomizationListEntry.stratum_key)
        ).all()
        return [(stratum, total, int(used_count or 0)) for stratum, total, used_count in rows]

    def stats_by_arm(self, config_id: int) -> List[Tuple[str, int, int]]:
        """(arm_id, total, used) per arm."""
        used = func.sum(case((RandomizationListEntry.is_used.is_(True), 1), else_=0))
        rows = self.session.execute(
            select(
                RandomizationListEntry.arm_id,
                func.count(RandomizationListEntry.list_entry_id),
                used,
            )
            .where(RandomizationListEntry.config_id == config_id)
            .group_by(RandomizationListEntry.arm_id)
            .order_by(RandomizationListEntry.arm_id)
        ).all()
        return [(arm_id, total, int(used_count or 0)) for arm_id, total, used_count in rows]


class AssignmentRepository(BaseRepository):
    """Repository for SubjectAssignment operations."""

    def get_by_subject(self, study_subject_id: str) -> Optional[SubjectAssignment]:
        """The subject's assignment, if randomized."""
        return self.session.scalars(
            select(SubjectAssignment).where(SubjectAssignment.study_subject_id == study_subject_id)
        ).first()

    def create(self, assignment: SubjectAssignment) -> SubjectAssignment:
        """
        Insert an assignment. Raises IntegrityError when the subject or the
        list entry is already assigned.
        """
        self.session.add(assignment)
        self.session.flush()
        return assignment


class StudyGroupRepository(BaseRepository):
    """Read-only lookups into the arm taxonomy."""

    def get_class(self, study_group_class_id: str) -> Optional[StudyGroupClass]:
        return self.session.get(StudyGroupClass, study_group_class_id)

    def get_groups(self, study_group_class_id: str) -> List[StudyGroup]:
        stmt = (
            select(StudyGroup)
            .where(StudyGroup.study_group_class_id == study_group_class_id)
            .order_by(StudyGroup.study_group_id)
        )
        return list(self.session.scalars(stmt))

    def get_names(self, arm_ids: Iterable[str]) -> Dict[str, str]:
        """Display names for the given arm ids; unknown ids are omitted."""
        arm_ids = list(arm_ids)
        if not arm_ids:
            return {}
        rows = self.session.execute(
            select(StudyGroup.study_group_id, StudyGroup.name)
            .where(StudyGroup.study_group_id.in_(arm_ids))
        ).all()
        return {group_id: name for group_id, name in rows}


class AuditLogRepository(BaseRepository):
    """Repository for AuditLog reads. Writes go through ComplianceLogger."""

    def latest_checksum(self) -> Optional[str]:
        """Checksum of the most recent entry, the link for the next one."""
        return self.session.scalar(
            select(AuditLog.checksum)
            .order_by(AuditLog.audit_id.desc())
            .limit(1)
        )

    def add(self, log: AuditLog) -> AuditLog:
        self.session.add(log)
        self.session.flush()
        return log

    def get_by_entity(self, entity_type: str, entity_id: str) -> List[AuditLog]:
        """Audit history for an entity, oldest first."""
        return list(self.session.scalars(
            select(AuditLog)
            .where(and_(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id))
            .order_by(AuditLog.audit_id.asc())
        ))

    def get_by_action(self, action: str) -> List[AuditLog]:
        return list(self.session.scalars(
            select(AuditLog).where(AuditLog.action == action).order_by(AuditLog.audit_id.asc())
        ))

    def get_recent(self, limit: Optional[int] = 100) -> List[AuditLog]:
        """Get recent audit logs."""
        return list(self.session.scalars(
            select(AuditLog).order_by(AuditLog.audit_id.desc()).limit(limit)
        ))
