"""
RTSM - Sealed List Store
========================
Materializes a scheme's generated list into randomization_list_entries.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from rtsm.database.enums import AuditEventKind, EntityType, SchemeStatus
from rtsm.database.models import RandomizationListEntry
from rtsm.database.repositories import ListEntryRepository
from rtsm.utils.compliance_logger import ComplianceLogger, get_compliance_logger

from .exceptions import LockedError
from .generator import GenerationPlan, RetainedStratum, generate
from .schemes import SchemeStore, transition

logger = logging.getLogger(__name__)


class SealedListStore:
    """
    (Re)generates the list of an unlocked scheme.

    Regeneration removes only unused entries; claimed entries keep their
    sequence and randomization numbers and new entries continue after them.
    The caller's transaction makes the whole operation all-or-nothing.
    """

    def __init__(self, session: Session, audit: Optional[ComplianceLogger] = None):
        self.session = session
        self.audit = audit or get_compliance_logger()
        self.entries = ListEntryRepository(session)
        self.schemes = SchemeStore(session, self.audit)

    def generate(self, config_id: int, actor_id: str) -> int:
        """
        Generate the sealed list.

        Returns:
            Number of entries in the list after generation
        """
        scheme = self.schemes.get(config_id)
        if scheme.is_locked:
            raise LockedError(
                "Configuration is locked. List already generated.", {"config_id": config_id}
            )

        plan = GenerationPlan.from_scheme(scheme)
        removed = self.entries.delete_unused(config_id)
        retained = {
            stratum: RetainedStratum(count, max_seq, max_block)
            for stratum, (count, max_seq, max_block) in self.entries.retained_by_stratum(config_id).items()
        }

        generated = generate(plan, config_id, retained=retained)
        self.entries.bulk_create(
            RandomizationListEntry(
                config_id=config_id,
                stratum_key=entry.stratum_key,
                block_number=entry.block_number,
                sequence_number=entry.sequence_number,
                arm_id=entry.arm_id,
                randomization_number=entry.randomization_number,
                is_used=False,
            )
            for entry in generated.entries
        )
        transition(scheme, SchemeStatus.GENERATED)
        self.session.flush()

        total = self.entries.count_for_config(config_id)
        kept = sum(stratum.count for stratum in retained.values())
        self.audit.log_event(
            self.session,
            AuditEventKind.LIST_GENERATED,
            actor_id,
            {EntityType.LIST.value: config_id},
            old_value={"removed_unused": removed, "retained_claimed": kept} if removed or kept else None,
            new_value=f"{total} entries across {len(generated.strata)} strata",
        )
        logger.info(
            f"Randomization list generated: config={config_id} entries={total} strata={len(generated.strata)}"
        )
        return total
