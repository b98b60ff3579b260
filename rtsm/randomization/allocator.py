"""
RTSM - Claim Allocator
======================
Opens the next sealed envelope for an enrolling subject.

One claim is one database transaction:
1. resolve the study's active scheme and the subject's stratum
2. take the lowest unused entry of the stratum with a conditional update
3. insert the subject's assignment (unique per subject)
4. write the unblinded audit record

Coordination between concurrent claims happens only in the database: row
locks where the backend has them, the conditional `is_used = false` update,
and unique constraints on the assignment. Nothing here holds an in-process
lock, so any number of stateless workers can run claims side by side.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from rtsm.config import get_settings
from rtsm.database.connection import DatabaseManager
from rtsm.database.enums import AuditEventKind, EntityType
from rtsm.database.models import SubjectAssignment
from rtsm.database.repositories import (
    AssignmentRepository, ListEntryRepository, SchemeRepository, StudyGroupRepository,
)
from rtsm.utils.compliance_logger import ComplianceLogger, get_compliance_logger

from .blinding import BlindedArm, present
from .exceptions import (
    ClaimConflictError, DuplicateAssignmentError, ExhaustedError,
    NoActiveSchemeError, RandomizationError,
)
from .generator import resolve_stratum_key

logger = logging.getLogger(__name__)


@dataclass
class ClaimResult:
    """A committed assignment plus its caller-visible arm."""
    assignment_id: int
    config_id: int
    study_id: str
    study_subject_id: str
    stratum_key: str
    sequence_number: int
    randomization_number: str
    assigned_by: str
    assigned_at: datetime
    arm: BlindedArm

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "randomization_number": self.randomization_number,
            "arm_id": self.arm.arm_id,
            "label": self.arm.label,
            "is_blinded": self.arm.is_blinded,
            "sequence_number": self.sequence_number,
            "stratum_key": self.stratum_key,
        }


class ClaimAllocator:
    """Atomic, exactly-once subject randomization."""

    def __init__(self,
                 db: DatabaseManager,
                 audit: Optional[ComplianceLogger] = None,
                 max_attempts: Optional[int] = None):
        self._db = db
        self._audit = audit or get_compliance_logger()
        self._max_attempts = max_attempts or get_settings().CLAIM_MAX_ATTEMPTS

    def claim(self,
              study_id: str,
              study_subject_id: str,
              user_id: str,
              stratum_values: Optional[Mapping[str, str]] = None) -> ClaimResult:
        """
        Randomize a subject.

        Raises:
            NoActiveSchemeError: the study has no active scheme
            ValidationError: stratification values missing or undeclared
            DuplicateAssignmentError: the subject is already randomized
            ExhaustedError: no unused entry left in the subject's stratum
            ClaimConflictError: every attempt lost to concurrent claims
        """
        study_subject_id = str(study_subject_id)
        try:
            with self._db.session() as session:
                result = self._claim(session, str(study_id), study_subject_id, str(user_id), stratum_values)
        except RandomizationError as e:
            kind = "business outcome" if e.business_outcome else "rejected"
            logger.warning(
                f"Randomization {kind} [{e.code}]: study={study_id} subject={study_subject_id} - {e.message}"
            )
            self._record_rejection(study_id, study_subject_id, user_id, e)
            raise
        except SQLAlchemyError:
            logger.exception(f"Randomization failed: study={study_id} subject={study_subject_id}")
            raise

        logger.info(
            f"Subject randomized: subject={study_subject_id} config={result.config_id} "
            f"number={result.randomization_number} stratum={result.stratum_key} "
            f"blinded={result.arm.is_blinded}"
        )
        return result

    def _claim(self,
               session: Session,
               study_id: str,
               study_subject_id: str,
               user_id: str,
               stratum_values: Optional[Mapping[str, str]]) -> ClaimResult:
        scheme = SchemeRepository(session).get_active_for_study(study_id)
        if scheme is None:
            raise NoActiveSchemeError(
                "No active randomization scheme for this study. Configure and activate a scheme first.",
                {"study_id": study_id},
            )

        factors = [(f["name"], [str(v) for v in f["values"]]) for f in scheme.stratification_factors or []]
        stratum_key = resolve_stratum_key(factors, stratum_values)

        assignments = AssignmentRepository(session)
        # Fast path only; the unique constraint below is what guarantees it
        if assignments.get_by_subject(study_subject_id) is not None:
            raise DuplicateAssignmentError(
                "Subject is already randomized", {"study_subject_id": study_subject_id}
            )

        entries = ListEntryRepository(session)
        skip_locked = self._db.supports_skip_locked
        entry = None
        for attempt in range(1, self._max_attempts + 1):
            candidate = entries.next_unused(scheme.config_id, stratum_key, skip_locked=skip_locked)
            if candidate is None:
                raise ExhaustedError(
                    f"No available randomization slots for stratum: {stratum_key}. The list may be exhausted.",
                    {"config_id": scheme.config_id, "stratum_key": stratum_key},
                )
            if entries.mark_used(candidate.list_entry_id, study_subject_id, user_id):
                entry = candidate
                break
            logger.debug(f"Entry {candidate.list_entry_id} taken concurrently, attempt {attempt}")

        if entry is None:
            raise ClaimConflictError(
                "Randomization list is under heavy contention, please retry",
                {"config_id": scheme.config_id, "stratum_key": stratum_key},
            )

        try:
            assignment = assignments.create(SubjectAssignment(
                study_subject_id=study_subject_id,
                config_id=scheme.config_id,
                list_entry_id=entry.list_entry_id,
                arm_id=entry.arm_id,
                stratum_key=entry.stratum_key,
                sequence_number=entry.sequence_number,
                randomization_number=entry.randomization_number,
                assigned_by=user_id,
            ))
        except IntegrityError as e:
            raise DuplicateAssignmentError(
                "Subject is already randomized", {"study_subject_id": study_subject_id}
            ) from e

        arm_name = StudyGroupRepository(session).get_names([entry.arm_id]).get(entry.arm_id)

        # Audit trails are never blinded
        self._audit.log_event(
            session,
            AuditEventKind.SUBJECT_RANDOMIZED,
            user_id,
            {
                EntityType.SUBJECT.value: study_subject_id,
                EntityType.SCHEME.value: scheme.config_id,
                EntityType.LIST_ENTRY.value: entry.list_entry_id,
                EntityType.ASSIGNMENT.value: assignment.assignment_id,
            },
            new_value={
                "arm_id": entry.arm_id,
                "arm_name": arm_name,
                "randomization_number": entry.randomization_number,
                "sequence_number": entry.sequence_number,
                "stratum_key": entry.stratum_key,
            },
        )

        return ClaimResult(
            assignment_id=assignment.assignment_id,
            config_id=scheme.config_id,
            study_id=study_id,
            study_subject_id=study_subject_id,
            stratum_key=entry.stratum_key,
            sequence_number=entry.sequence_number,
            randomization_number=entry.randomization_number,
            assigned_by=user_id,
            assigned_at=assignment.assigned_at,
            arm=present(entry.arm_id, arm_name, scheme.blinding_level),
        )

    def _record_rejection(self,
                          study_id: str,
                          study_subject_id: str,
                          user_id: str,
                          error: RandomizationError) -> None:
        """Audit a failed attempt in its own transaction, after the claim rolled back."""
        try:
            with self._db.session() as session:
                self._audit.log_event(
                    session,
                    AuditEventKind.RANDOMIZATION_REJECTED,
                    user_id,
                    {EntityType.SUBJECT.value: study_subject_id, "study": study_id},
                    new_value={"code": error.code, "details": error.details},
                    reason=error.message,
                )
        except SQLAlchemyError:
            # The claim error is what the caller needs; this one only goes to the log
            logger.exception(
                f"Could not audit rejected randomization for subject {study_subject_id} [{error.code}]"
            )
