"""
RTSM - Randomization Service
============================
Facade over scheme management, sealed-list generation, reporting and
subject randomization.

Each operation runs in its own transaction. Failures are raised as
RandomizationError subclasses; `to_dict()` on the error gives the
structured `{success: False, code, message, details}` response.

Usage:
    from rtsm.randomization import get_randomization_service

    service = get_randomization_service()
    created = service.save_config({...}, acting_user_id="admin")
    service.generate_list(created["config_id"], "admin")
    service.activate_config(created["config_id"], "admin")
    service.randomize_subject("STUDY-01", "SUBJ-0001", "coordinator")
"""

import logging
from typing import Any, Dict, Mapping, Optional

from rtsm.config import get_settings
from rtsm.database.connection import DatabaseManager, get_db_manager
from rtsm.database.models import RandomizationScheme
from rtsm.database.repositories import SchemeRepository, StudyGroupRepository
from rtsm.utils.compliance_logger import ComplianceLogger, get_compliance_logger

from .allocator import ClaimAllocator
from .reports import list_stats, preview
from .schemas import parse_preview
from .schemes import SchemeStore
from .sealed_list import SealedListStore

logger = logging.getLogger(__name__)


class RandomizationService:
    """Entry point for callers of the randomization engine."""

    def __init__(self,
                 db_manager: Optional[DatabaseManager] = None,
                 audit: Optional[ComplianceLogger] = None):
        self.db = db_manager or get_db_manager()
        self.audit = audit or get_compliance_logger()
        self.allocator = ClaimAllocator(self.db, self.audit)

    # =========================================================================
    # SCHEMES
    # =========================================================================

    def save_config(self, scheme: Any, acting_user_id: str) -> Dict[str, Any]:
        """Create a new draft scheme."""
        with self.db.session() as session:
            created = SchemeStore(session, self.audit).create(scheme, acting_user_id)
            return {"success": True, "config_id": created.config_id}

    def update_config(self, config_id: int, patch: Any, acting_user_id: str) -> Dict[str, Any]:
        with self.db.session() as session:
            SchemeStore(session, self.audit).update(config_id, patch, acting_user_id)
            return {"success": True}

    def _describe(self, session, scheme: Optional[RandomizationScheme]) -> Optional[Dict[str, Any]]:
        if scheme is None:
            return None
        result = scheme.to_dict()
        if scheme.is_active:
            result["stats"] = list_stats(session, scheme)
        return result

    def get_config(self, study_id: str) -> Optional[Dict[str, Any]]:
        """Latest scheme of a study, with live list stats when active."""
        with self.db.session() as session:
            return self._describe(session, SchemeRepository(session).get_latest_for_study(study_id))

    def get_config_by_id(self, config_id: int) -> Optional[Dict[str, Any]]:
        with self.db.session() as session:
            return self._describe(session, SchemeRepository(session).get_by_id(config_id))

    # =========================================================================
    # SEALED LIST
    # =========================================================================

    def generate_list(self, config_id: int, acting_user_id: str) -> Dict[str, Any]:
        """Generate (or regenerate) the sealed list of an unlocked scheme."""
        with self.db.session() as session:
            total = SealedListStore(session, self.audit).generate(config_id, acting_user_id)
            return {"success": True, "total_entries": total}

    def activate_config(self, config_id: int, acting_user_id: str) -> Dict[str, Any]:
        """Lock the scheme and its list; retires any other active scheme of the study."""
        with self.db.session() as session:
            SchemeStore(session, self.audit).activate(config_id, acting_user_id)
            return {"success": True}

    # =========================================================================
    # REPORTS
    # =========================================================================

    def test_config(self, scheme: Any, limit: Optional[int] = None) -> Dict[str, Any]:
        """Preview an unsaved scheme. Nothing is written."""
        definition = parse_preview(scheme)
        arm_names: Dict[str, str] = {}
        if definition.study_group_class_id:
            with self.db.session() as session:
                arm_names = StudyGroupRepository(session).get_names(arm_id for arm_id, _ in definition.ratio_pairs)
        return preview(definition, arm_names, limit or get_settings().PREVIEW_LIMIT)

    def get_list_stats(self, config_id: int) -> Dict[str, Any]:
        with self.db.session() as session:
            scheme = SchemeStore(session, self.audit).get(config_id)
            return list_stats(session, scheme)

    # =========================================================================
    # ENROLLMENT
    # =========================================================================

    def randomize_subject(self,
                          study_id: str,
                          study_subject_id: str,
                          acting_user_id: str,
                          stratum_values: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
        """Assign a subject to an arm from the study's active sealed list."""
        result = self.allocator.claim(study_id, study_subject_id, acting_user_id, stratum_values)
        return result.to_dict()


# =============================================================================
# SINGLETON
# =============================================================================

_service: Optional[RandomizationService] = None


def get_randomization_service() -> RandomizationService:
    """Get the randomization service singleton."""
    global _service
    if _service is None:
        _service = RandomizationService()
    return _service
