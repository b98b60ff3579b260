"""
Shared fixtures: an isolated file-backed SQLite database per test, the arm
taxonomy of a two-arm study, and a service wired to both.
"""
import pytest

from rtsm.database.config import DatabaseConfig
from rtsm.database.connection import DatabaseManager
from rtsm.database.models import StudyGroup, StudyGroupClass
from rtsm.randomization.service import RandomizationService
from rtsm.utils.compliance_logger import ComplianceLogger

STUDY_ID = "STUDY-01"
GROUP_CLASS_ID = "SGC-01"
ARM_NAMES = {"ARM-A": "Active 10mg", "ARM-B": "Placebo"}


def scheme_data(**overrides):
    """A valid 1:1 block scheme for STUDY_ID; keyword arguments override fields."""
    data = {
        "study_id": STUDY_ID,
        "name": "Primary randomization",
        "randomization_type": "block",
        "blinding_level": "double_blind",
        "block_size": 4,
        "allocation_ratios": [
            {"arm_id": "ARM-A", "weight": 1},
            {"arm_id": "ARM-B", "weight": 1},
        ],
        "study_group_class_id": GROUP_CLASS_ID,
        "total_slots": 20,
    }
    data.update(overrides)
    return data


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def db(tmp_path) -> DatabaseManager:
    """Fresh database with all tables."""
    manager = DatabaseManager(DatabaseConfig(url=f"sqlite:///{tmp_path / 'rtsm.db'}"))
    manager.create_tables()
    yield manager
    manager.close()


@pytest.fixture
def audit() -> ComplianceLogger:
    return ComplianceLogger(secret_key="test-audit-secret")


@pytest.fixture
def arms(db: DatabaseManager):
    """Two-arm taxonomy for STUDY_ID."""
    with db.session() as session:
        session.add(StudyGroupClass(study_group_class_id=GROUP_CLASS_ID, study_id=STUDY_ID, name="Treatment"))
        session.flush()
        session.add_all([
            StudyGroup(study_group_id=arm_id, study_group_class_id=GROUP_CLASS_ID, name=name)
            for arm_id, name in ARM_NAMES.items()
        ])
    return ARM_NAMES


@pytest.fixture
def service(db: DatabaseManager, audit: ComplianceLogger, arms) -> RandomizationService:
    return RandomizationService(db, audit)


@pytest.fixture
def active_scheme(service: RandomizationService) -> int:
    """Generated and activated 20-slot double-blind scheme."""
    config_id = service.save_config(scheme_data(), "admin")["config_id"]
    service.generate_list(config_id, "admin")
    service.activate_config(config_id, "admin")
    return config_id
