"""
RTSM - Database Enums
=====================
Enum types for consistent randomization database values.
"""

from enum import Enum


# =============================================================================
# SCHEME ENUMS
# =============================================================================

class RandomizationType(str, Enum):
    """Randomization algorithm used to build the sealed list."""
    SIMPLE = "simple"
    BLOCK = "block"
    STRATIFIED = "stratified"


class BlindingLevel(str, Enum):
    """Who is kept from seeing the assigned arm."""
    OPEN_LABEL = "open_label"
    SINGLE_BLIND = "single_blind"      # Subject
    DOUBLE_BLIND = "double_blind"      # Subject + investigator
    TRIPLE_BLIND = "triple_blind"      # Subject + investigator + assessor


class SlotPolicy(str, Enum):
    """How total_slots is interpreted when the list is stratified."""
    ACROSS_STRATA = "across_strata"    # Split evenly over all strata
    PER_STRATUM = "per_stratum"        # Every stratum gets total_slots


class SchemeStatus(str, Enum):
    """Scheme lifecycle. Transitions are one-way, see SCHEME_TRANSITIONS."""
    DRAFT = "draft"
    GENERATED = "generated"
    ACTIVE = "active"
    RETIRED = "retired"

    @property
    def is_locked(self) -> bool:
        return self in (SchemeStatus.ACTIVE, SchemeStatus.RETIRED)

    def can_transition_to(self, target: "SchemeStatus") -> bool:
        return target in SCHEME_TRANSITIONS[self]


SCHEME_TRANSITIONS = {
    SchemeStatus.DRAFT: {SchemeStatus.GENERATED},
    SchemeStatus.GENERATED: {SchemeStatus.GENERATED, SchemeStatus.DRAFT, SchemeStatus.ACTIVE},
    SchemeStatus.ACTIVE: {SchemeStatus.RETIRED},
    SchemeStatus.RETIRED: set(),
}


# =============================================================================
# AUDIT ENUMS
# =============================================================================

class AuditEventKind(str, Enum):
    """Audit trail event kinds emitted by the engine."""
    SCHEME_CREATED = "randomization_scheme_created"
    SCHEME_UPDATED = "randomization_scheme_updated"
    LIST_GENERATED = "randomization_list_generated"
    SCHEME_ACTIVATED = "randomization_scheme_activated"
    SCHEME_RETIRED = "randomization_scheme_retired"
    SUBJECT_RANDOMIZED = "subject_randomized"
    RANDOMIZATION_REJECTED = "subject_randomization_rejected"


class EntityType(str, Enum):
    """Entity types referenced by audit records."""
    SCHEME = "randomization_scheme"
    LIST = "randomization_list"
    LIST_ENTRY = "randomization_list_entry"
    ASSIGNMENT = "subject_assignment"
    SUBJECT = "study_subject"
