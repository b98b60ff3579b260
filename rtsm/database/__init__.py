"""
RTSM - Database Package
=======================
Relational persistence for schemes, sealed lists and subject assignments.
"""

from .models import (
    Base, StudyGroupClass, StudyGroup, RandomizationScheme,
    RandomizationListEntry, SubjectAssignment, AuditLog,
)
from .connection import DatabaseManager, get_db_manager, reset_db_manager

__all__ = [
    'Base',
    'StudyGroupClass',
    'StudyGroup',
    'RandomizationScheme',
    'RandomizationListEntry',
    'SubjectAssignment',
    'AuditLog',
    'DatabaseManager',
    'get_db_manager',
    'reset_db_manager',
]
