"""
RTSM - Database Models
======================
SQLAlchemy ORM models for sealed-list subject randomization.

Models:
- StudyGroupClass, StudyGroup (Arm taxonomy, owned by the EDC)
- RandomizationScheme (Scheme store)
- RandomizationListEntry (Sealed list)
- SubjectAssignment (One row per randomized subject)
- AuditLog (Compliance - 21 CFR Part 11)
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import (
    JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .enums import (
    BlindingLevel, RandomizationType, SchemeStatus, SlotPolicy,
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every DateTime column here."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# =============================================================================
# ARM TAXONOMY
# =============================================================================

class StudyGroupClass(Base):
    """A set of treatment arms defined for a study."""
    __tablename__ = "study_group_classes"

    study_group_class_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    study_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    groups: Mapped[List["StudyGroup"]] = relationship(back_populates="group_class")

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class StudyGroup(Base):
    """An individual treatment arm."""
    __tablename__ = "study_groups"

    study_group_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    study_group_class_id: Mapped[str] = mapped_column(
        String(50), ForeignKey('study_group_classes.study_group_class_id'), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    group_class: Mapped["StudyGroupClass"] = relationship(back_populates="groups")

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


# =============================================================================
# RANDOMIZATION
# =============================================================================

class RandomizationScheme(Base):
    """Randomization configuration for a study. Never hard-deleted."""
    __tablename__ = "randomization_schemes"

    config_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    study_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Algorithm
    randomization_type: Mapped[str] = mapped_column(String(30), default=RandomizationType.BLOCK.value)
    blinding_level: Mapped[str] = mapped_column(String(30), default=BlindingLevel.DOUBLE_BLIND.value)
    block_size: Mapped[int] = mapped_column(Integer, default=4)
    block_size_varied: Mapped[bool] = mapped_column(Boolean, default=False)
    block_sizes_list: Mapped[List[int]] = mapped_column(JSON, default=list)

    # [{"arm_id": "A", "weight": 1}, ...] in declared order
    allocation_ratios: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False)
    # [{"name": "age", "values": ["<65", ">=65"]}, ...]
    stratification_factors: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)

    study_group_class_id: Mapped[Optional[str]] = mapped_column(
        String(50), ForeignKey('study_group_classes.study_group_class_id'), nullable=True
    )
    seed: Mapped[str] = mapped_column(String(128), nullable=False)
    total_slots: Mapped[int] = mapped_column(Integer, default=100)
    slot_policy: Mapped[str] = mapped_column(String(30), default=SlotPolicy.ACROSS_STRATA.value)

    # Supply
    drug_kit_management: Mapped[bool] = mapped_column(Boolean, default=False)
    drug_kit_prefix: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    site_specific: Mapped[bool] = mapped_column(Boolean, default=False)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), default=SchemeStatus.DRAFT.value, index=True)
    activated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_by: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_rand_scheme_study_status', 'study_id', 'status'),
    )

    @property
    def lifecycle(self) -> SchemeStatus:
        return SchemeStatus(self.status)

    @property
    def is_active(self) -> bool:
        return self.lifecycle == SchemeStatus.ACTIVE

    @property
    def is_locked(self) -> bool:
        return self.lifecycle.is_locked

    @property
    def ratios(self) -> List[Tuple[str, int]]:
        """Allocation ratios as ordered (arm_id, weight) pairs."""
        return [(str(r["arm_id"]), int(r["weight"])) for r in self.allocation_ratios]

    @property
    def arm_ids(self) -> List[str]:
        return [arm_id for arm_id, _ in self.ratios]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "config_id": self.config_id,
            "study_id": self.study_id,
            "name": self.name,
            "description": self.description,
            "randomization_type": self.randomization_type,
            "blinding_level": self.blinding_level,
            "block_size": self.block_size,
            "block_size_varied": self.block_size_varied,
            "block_sizes_list": list(self.block_sizes_list or []),
            "allocation_ratios": [dict(r) for r in self.allocation_ratios],
            "stratification_factors": [dict(f) for f in self.stratification_factors or []],
            "study_group_class_id": self.study_group_class_id,
            "total_slots": self.total_slots,
            "slot_policy": self.slot_policy,
            "drug_kit_management": self.drug_kit_management,
            "drug_kit_prefix": self.drug_kit_prefix,
            "site_specific": self.site_specific,
            "status": self.status,
            "is_active": self.is_active,
            "is_locked": self.is_locked,
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class RandomizationListEntry(Base):
    """
    One sealed envelope. Everything except the used_* fields is immutable
    after generation; the used_* fields are set exactly once by a claim.
    """
    __tablename__ = "randomization_list_entries"

    list_entry_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    config_id: Mapped[int] = mapped_column(
        Integer, ForeignKey('randomization_schemes.config_id'), nullable=False, index=True
    )
    stratum_key: Mapped[str] = mapped_column(String(500), nullable=False, default="default")
    block_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    arm_id: Mapped[str] = mapped_column(String(50), nullable=False)
    randomization_number: Mapped[str] = mapped_column(String(80), nullable=False)

    is_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    used_by_subject_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    used_by_user_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint('config_id', 'stratum_key', 'sequence_number', name='uq_rand_list_position'),
        UniqueConstraint('randomization_number', name='uq_rand_list_number'),
        Index(
            'idx_rand_list_unused', 'config_id', 'stratum_key', 'sequence_number',
            postgresql_where=text('NOT is_used'),
            sqlite_where=text('is_used = 0'),
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "list_entry_id": self.list_entry_id,
            "config_id": self.config_id,
            "stratum_key": self.stratum_key,
            "block_number": self.block_number,
            "sequence_number": self.sequence_number,
            "arm_id": self.arm_id,
            "randomization_number": self.randomization_number,
            "is_used": self.is_used,
            "used_by_subject_id": self.used_by_subject_id,
            "used_at": self.used_at.isoformat() if self.used_at else None,
        }


class SubjectAssignment(Base):
    """A subject's randomization. Existence means the subject is randomized."""
    __tablename__ = "subject_assignments"

    assignment_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    study_subject_id: Mapped[str] = mapped_column(String(50), nullable=False)
    config_id: Mapped[int] = mapped_column(
        Integer, ForeignKey('randomization_schemes.config_id'), nullable=False, index=True
    )
    list_entry_id: Mapped[int] = mapped_column(
        Integer, ForeignKey('randomization_list_entries.list_entry_id'), nullable=False
    )
    arm_id: Mapped[str] = mapped_column(String(50), nullable=False)
    stratum_key: Mapped[str] = mapped_column(String(500), nullable=False)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    randomization_number: Mapped[str] = mapped_column(String(80), nullable=False)

    assigned_by: Mapped[str] = mapped_column(String(50), nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint('study_subject_id', name='uq_assignment_subject'),
        UniqueConstraint('list_entry_id', name='uq_assignment_entry'),
    )


# =============================================================================
# COMPLIANCE
# =============================================================================

class AuditLog(Base):
    """Immutable audit trail for compliance."""
    __tablename__ = "audit_logs"

    audit_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    log_id: Mapped[str] = mapped_column(String(50), unique=True, default=lambda: f"AUD-{uuid.uuid4().hex[:12]}")

    # Timestamp
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    # Actor
    user_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # Event
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # Entity
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_refs: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    # Change details
    old_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    new_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Reason for change
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Integrity chain
    checksum: Mapped[str] = mapped_column(String(128), nullable=False)  # HMAC-SHA256 of this entry
    previous_checksum: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)  # Chain to previous

    # Indexes for compliance queries
    __table_args__ = (
        Index('idx_audit_user_time', 'user_id', 'timestamp'),
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
    )
