"""
RTSM - Scheme Store
===================
Create, edit and activate randomization schemes.

A scheme moves draft -> generated -> active -> retired. Editing is only
possible before activation, and an edit sends a generated scheme back to
draft because its list no longer matches.
"""

import logging
import secrets
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from rtsm.database.enums import AuditEventKind, EntityType, SchemeStatus
from rtsm.database.models import RandomizationScheme, utcnow
from rtsm.database.repositories import (
    ListEntryRepository, SchemeRepository, StudyGroupRepository,
)
from rtsm.utils.compliance_logger import ComplianceLogger, get_compliance_logger

from .exceptions import LockedError, NoListError, NotFoundError, ValidationError
from .schemas import SchemeDefinition, parse_patch, parse_scheme

logger = logging.getLogger(__name__)

# Fields a patch may touch; everything SchemeDefinition knows except identity and seed
EDITABLE_FIELDS = (
    "name", "description", "randomization_type", "blinding_level",
    "block_size", "block_size_varied", "block_sizes_list",
    "allocation_ratios", "stratification_factors", "study_group_class_id",
    "total_slots", "slot_policy", "drug_kit_management", "drug_kit_prefix",
    "site_specific",
)


def new_seed() -> str:
    """256-bit hex seed for a scheme's list generator."""
    return secrets.token_hex(32)


def transition(scheme: RandomizationScheme, target: SchemeStatus) -> None:
    """Move a scheme along its lifecycle or fail fast."""
    current = scheme.lifecycle
    if current.can_transition_to(target):
        scheme.status = target.value
        return
    if current.is_locked:
        raise LockedError(
            "Configuration is locked and cannot be modified",
            {"config_id": scheme.config_id, "status": current.value},
        )
    raise NoListError(
        "Cannot activate: No randomization list generated. Generate the list first.",
        {"config_id": scheme.config_id, "status": current.value},
    )


class SchemeStore:
    """Scheme persistence and lifecycle inside the caller's transaction."""

    def __init__(self, session: Session, audit: Optional[ComplianceLogger] = None):
        self.session = session
        self.schemes = SchemeRepository(session)
        self.entries = ListEntryRepository(session)
        self.groups = StudyGroupRepository(session)
        self.audit = audit or get_compliance_logger()

    def get(self, config_id: int) -> RandomizationScheme:
        scheme = self.schemes.get_by_id(config_id)
        if scheme is None:
            raise NotFoundError(f"Configuration {config_id} not found", {"config_id": config_id})
        return scheme

    def get_active(self, study_id: str) -> Optional[RandomizationScheme]:
        return self.schemes.get_active_for_study(study_id)

    def _check_arm_taxonomy(self, definition: SchemeDefinition) -> None:
        """Arms must belong to the referenced study group class."""
        if not definition.study_group_class_id:
            return

        group_class = self.groups.get_class(definition.study_group_class_id)
        if group_class is None:
            raise ValidationError(
                f"Study group class {definition.study_group_class_id} does not exist",
                {"study_group_class_id": definition.study_group_class_id},
            )
        if group_class.study_id != definition.study_id:
            raise ValidationError(
                f"Study group class {group_class.study_group_class_id} belongs to another study",
                {"study_group_class_id": group_class.study_group_class_id},
            )

        known = {group.study_group_id for group in self.groups.get_groups(group_class.study_group_class_id)}
        unknown = [arm_id for arm_id, _ in definition.ratio_pairs if arm_id not in known]
        if unknown:
            raise ValidationError(
                f"Arms not defined in study group class {group_class.study_group_class_id}: {', '.join(unknown)}",
                {"unknown_arms": unknown},
            )

    def create(self, data: Any, actor_id: str) -> RandomizationScheme:
        """Validate and persist a new draft scheme."""
        definition = parse_scheme(data)
        self._check_arm_taxonomy(definition)

        record = definition.to_record()
        record["seed"] = definition.seed or new_seed()
        scheme = RandomizationScheme(**record, status=SchemeStatus.DRAFT.value, created_by=str(actor_id))
        self.schemes.create(scheme)

        self.audit.log_event(
            self.session,
            AuditEventKind.SCHEME_CREATED,
            actor_id,
            {EntityType.SCHEME.value: scheme.config_id, "study": scheme.study_id},
            new_value={"name": scheme.name, "randomization_type": scheme.randomization_type},
        )
        logger.info(f"Randomization config saved: config={scheme.config_id} study={scheme.study_id}")
        return scheme

    def update(self, config_id: int, data: Any, actor_id: str) -> RandomizationScheme:
        """Merge a patch into an unlocked scheme."""
        scheme = self.get(config_id)
        if scheme.is_locked:
            raise LockedError(
                "Configuration is locked and cannot be modified", {"config_id": config_id}
            )

        patch = parse_patch(data).model_dump(exclude_unset=True, mode="json")
        if not patch:
            return scheme

        current = {name: getattr(scheme, name) for name in EDITABLE_FIELDS}
        merged = dict(current, **patch, study_id=scheme.study_id)
        definition = parse_scheme(merged)
        self._check_arm_taxonomy(definition)

        record = definition.to_record()
        changes: Dict[str, Dict[str, Any]] = {}
        for name in EDITABLE_FIELDS:
            if record[name] != current[name]:
                changes[name] = {"old": current[name], "new": record[name]}
                setattr(scheme, name, record[name])

        if not changes:
            return scheme

        if scheme.lifecycle == SchemeStatus.GENERATED:
            transition(scheme, SchemeStatus.DRAFT)
        scheme.updated_at = utcnow()
        self.session.flush()

        self.audit.log_event(
            self.session,
            AuditEventKind.SCHEME_UPDATED,
            actor_id,
            {EntityType.SCHEME.value: config_id},
            old_value={name: change["old"] for name, change in changes.items()},
            new_value={name: change["new"] for name, change in changes.items()},
        )
        logger.info(f"Randomization config updated: config={config_id} fields={sorted(changes)}")
        return scheme

    def activate(self, config_id: int, actor_id: str) -> RandomizationScheme:
        """Lock the scheme and its list and make it the study's active scheme."""
        scheme = self.get(config_id)
        if scheme.is_locked:
            raise LockedError("Configuration is already activated", {"config_id": config_id})

        if self.entries.count_for_config(config_id) == 0:
            raise NoListError(
                "Cannot activate: No randomization list generated. Generate the list first.",
                {"config_id": config_id},
            )
        if scheme.lifecycle == SchemeStatus.DRAFT:
            raise NoListError(
                "Cannot activate: the randomization list is out of date. Regenerate the list first.",
                {"config_id": config_id},
            )

        retired = self.schemes.retire_other_active(scheme.study_id, config_id)
        for other_id in retired:
            self.audit.log_event(
                self.session,
                AuditEventKind.SCHEME_RETIRED,
                actor_id,
                {EntityType.SCHEME.value: other_id, "superseded_by": config_id},
                old_value=SchemeStatus.ACTIVE.value,
                new_value=SchemeStatus.RETIRED.value,
            )

        transition(scheme, SchemeStatus.ACTIVE)
        scheme.activated_at = utcnow()
        self.session.flush()

        self.audit.log_event(
            self.session,
            AuditEventKind.SCHEME_ACTIVATED,
            actor_id,
            {EntityType.SCHEME.value: config_id, "study": scheme.study_id},
            old_value=SchemeStatus.GENERATED.value,
            new_value=SchemeStatus.ACTIVE.value,
        )
        logger.info(f"Randomization config activated: config={config_id} retired={retired}")
        return scheme
