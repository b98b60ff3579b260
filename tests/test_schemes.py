"""
Scheme Store Test Suite

Tests for scheme validation and the draft -> generated -> active -> retired
lifecycle through the service facade.
"""
from collections import Counter

import pytest
from sqlalchemy import func, select

from conftest import STUDY_ID, scheme_data
from rtsm.database.enums import AuditEventKind, SchemeStatus
from rtsm.database.models import RandomizationListEntry
from rtsm.database.repositories import AuditLogRepository
from rtsm.randomization.exceptions import (
    ConfigError, LockedError, NoListError, NotFoundError, ValidationError,
)


def entry_count(db, config_id):
    with db.session() as session:
        return session.scalar(
            select(func.count()).select_from(RandomizationListEntry)
            .where(RandomizationListEntry.config_id == config_id)
        )


# =============================================================================
# Validation
# =============================================================================

def test_save_config_creates_draft(service):
    result = service.save_config(scheme_data(), "admin")

    assert result["success"] is True
    scheme = service.get_config_by_id(result["config_id"])
    assert scheme["status"] == SchemeStatus.DRAFT.value
    assert scheme["is_active"] is False
    assert scheme["is_locked"] is False
    assert scheme["allocation_ratios"] == [
        {"arm_id": "ARM-A", "weight": 1},
        {"arm_id": "ARM-B", "weight": 1},
    ]
    assert "stats" not in scheme


def test_defaults_applied(service):
    data = scheme_data()
    for name in ("randomization_type", "blinding_level", "block_size", "total_slots"):
        data.pop(name)
    scheme = service.get_config_by_id(service.save_config(data, "admin")["config_id"])

    assert scheme["randomization_type"] == "block"
    assert scheme["blinding_level"] == "double_blind"
    assert scheme["block_size"] == 4
    assert scheme["total_slots"] == 100
    assert scheme["slot_policy"] == "across_strata"


def test_ratio_mapping_keeps_declared_order(service):
    config_id = service.save_config(
        scheme_data(allocation_ratios={"ARM-B": 1, "ARM-A": 2}, block_size=3), "admin"
    )["config_id"]
    scheme = service.get_config_by_id(config_id)
    assert [r["arm_id"] for r in scheme["allocation_ratios"]] == ["ARM-B", "ARM-A"]


def test_single_arm_rejected(service):
    with pytest.raises(ValidationError, match="At least 2 treatment arms"):
        service.save_config(scheme_data(allocation_ratios=[{"arm_id": "ARM-A", "weight": 1}]), "admin")


def test_non_positive_weight_rejected(service):
    with pytest.raises(ValidationError):
        service.save_config(scheme_data(allocation_ratios={"ARM-A": 1, "ARM-B": 0}), "admin")


def test_stratified_requires_factors(service):
    with pytest.raises(ValidationError, match="stratification factor"):
        service.save_config(scheme_data(randomization_type="stratified"), "admin")


def test_duplicate_factor_values_rejected(service):
    with pytest.raises(ValidationError, match="distinct"):
        service.save_config(
            scheme_data(stratification_factors=[{"name": "age", "values": ["<65", "<65"]}]), "admin"
        )


def test_unknown_arm_rejected(service):
    with pytest.raises(ValidationError, match="ARM-Z"):
        service.save_config(scheme_data(allocation_ratios={"ARM-A": 1, "ARM-Z": 1}), "admin")


def test_unknown_group_class_rejected(service):
    with pytest.raises(ValidationError, match="does not exist"):
        service.save_config(scheme_data(study_group_class_id="SGC-99"), "admin")


def test_group_class_of_other_study_rejected(service):
    with pytest.raises(ValidationError, match="another study"):
        service.save_config(scheme_data(study_id="STUDY-02"), "admin")


def test_scheme_without_taxonomy_reference(service):
    data = scheme_data(allocation_ratios={"X": 1, "Y": 1})
    data.pop("study_group_class_id")
    assert service.save_config(data, "admin")["success"] is True


def test_blank_name_rejected(service):
    with pytest.raises(ValidationError, match="blank"):
        service.save_config(scheme_data(name="   "), "admin")


def test_name_is_stripped(service):
    config_id = service.save_config(scheme_data(name="  Primary  "), "admin")["config_id"]
    assert service.get_config_by_id(config_id)["name"] == "Primary"


def test_validation_error_structure(service):
    with pytest.raises(ValidationError) as excinfo:
        service.save_config(scheme_data(block_size=1), "admin")

    failure = excinfo.value.to_dict()
    assert failure["success"] is False
    assert failure["code"] == "VALIDATION_ERROR"
    assert "block_size" in failure["message"]


# =============================================================================
# Generation
# =============================================================================

def test_generate_list(service, db):
    config_id = service.save_config(scheme_data(), "admin")["config_id"]

    result = service.generate_list(config_id, "admin")

    assert result == {"success": True, "total_entries": 20}
    assert entry_count(db, config_id) == 20
    assert service.get_config_by_id(config_id)["status"] == SchemeStatus.GENERATED.value


def test_regenerate_replaces_unused_entries(service, db):
    config_id = service.save_config(scheme_data(), "admin")["config_id"]
    service.generate_list(config_id, "admin")
    service.update_config(config_id, {"total_slots": 40}, "admin")

    assert service.generate_list(config_id, "admin")["total_entries"] == 40
    assert entry_count(db, config_id) == 40


def test_generate_with_indivisible_block_size(service, db):
    config_id = service.save_config(
        scheme_data(allocation_ratios={"ARM-A": 2, "ARM-B": 1}, block_size=4), "admin"
    )["config_id"]

    with pytest.raises(ConfigError):
        service.generate_list(config_id, "admin")

    assert entry_count(db, config_id) == 0
    assert service.get_config_by_id(config_id)["status"] == SchemeStatus.DRAFT.value


def test_generate_unknown_config(service):
    with pytest.raises(NotFoundError):
        service.generate_list(9999, "admin")


# =============================================================================
# Lifecycle
# =============================================================================

def test_update_draft(service):
    config_id = service.save_config(scheme_data(), "admin")["config_id"]

    assert service.update_config(config_id, {"name": "Renamed", "block_size": 8}, "admin") == {"success": True}

    scheme = service.get_config_by_id(config_id)
    assert scheme["name"] == "Renamed"
    assert scheme["block_size"] == 8


def test_varied_scheme_follows_edited_block_size(service, db):
    config_id = service.save_config(scheme_data(block_size_varied=True), "admin")["config_id"]
    assert service.get_config_by_id(config_id)["block_sizes_list"] == []

    service.update_config(config_id, {"block_size": 6, "allocation_ratios": {"ARM-A": 2, "ARM-B": 1}}, "admin")
    result = service.generate_list(config_id, "admin")

    assert result["total_entries"] == 24
    with db.session() as session:
        blocks = Counter(session.scalars(
            select(RandomizationListEntry.block_number).where(RandomizationListEntry.config_id == config_id)
        ))
    assert set(blocks.values()) == {6}


def test_update_without_changes_is_not_audited(service, db):
    config_id = service.save_config(scheme_data(), "admin")["config_id"]

    service.update_config(config_id, {"name": "Primary randomization", "block_size": 4}, "admin")

    with db.session() as session:
        actions = [log.action for log in AuditLogRepository(session).get_recent(limit=None)]
    assert actions == [AuditEventKind.SCHEME_CREATED.value]


def test_update_rejects_unknown_field(service):
    config_id = service.save_config(scheme_data(), "admin")["config_id"]
    with pytest.raises(ValidationError):
        service.update_config(config_id, {"study_id": "STUDY-99"}, "admin")


def test_update_after_generation_invalidates_list(service):
    config_id = service.save_config(scheme_data(), "admin")["config_id"]
    service.generate_list(config_id, "admin")

    service.update_config(config_id, {"blinding_level": "open_label"}, "admin")

    assert service.get_config_by_id(config_id)["status"] == SchemeStatus.DRAFT.value
    with pytest.raises(NoListError):
        service.activate_config(config_id, "admin")


def test_activate_without_list(service):
    config_id = service.save_config(scheme_data(), "admin")["config_id"]
    with pytest.raises(NoListError, match="Generate the list first"):
        service.activate_config(config_id, "admin")


def test_activate_locks_scheme(service, active_scheme):
    scheme = service.get_config_by_id(active_scheme)
    assert scheme["status"] == SchemeStatus.ACTIVE.value
    assert scheme["is_active"] is True
    assert scheme["is_locked"] is True
    assert scheme["activated_at"] is not None

    with pytest.raises(LockedError):
        service.update_config(active_scheme, {"name": "Too late"}, "admin")
    with pytest.raises(LockedError):
        service.generate_list(active_scheme, "admin")
    with pytest.raises(LockedError):
        service.activate_config(active_scheme, "admin")


def test_activation_retires_previous_scheme(service, active_scheme):
    replacement = service.save_config(scheme_data(name="Amended"), "admin")["config_id"]
    service.generate_list(replacement, "admin")
    service.activate_config(replacement, "admin")

    assert service.get_config_by_id(active_scheme)["status"] == SchemeStatus.RETIRED.value
    assert service.get_config(STUDY_ID)["config_id"] == replacement


def test_get_config_includes_live_stats_when_active(service, active_scheme):
    scheme = service.get_config(STUDY_ID)

    assert scheme["config_id"] == active_scheme
    assert scheme["stats"]["total"] == 20
    assert scheme["stats"]["available"] == 20


def test_get_config_unknown_study(service):
    assert service.get_config("NO-SUCH-STUDY") is None
    assert service.get_config_by_id(424242) is None


def test_lifecycle_is_audited(service, db, audit, active_scheme):
    with db.session() as session:
        actions = [log.action for log in reversed(AuditLogRepository(session).get_recent(limit=None))]
        assert audit.verify_chain(session) == []

    assert actions == [
        AuditEventKind.SCHEME_CREATED.value,
        AuditEventKind.LIST_GENERATED.value,
        AuditEventKind.SCHEME_ACTIVATED.value,
    ]
