"""
RTSM - Randomization Package
============================
Scheme management, sealed-list generation, claiming and blinding.
"""

from .exceptions import (
    RandomizationError, ValidationError, ConfigError, NotFoundError, LockedError,
    NoListError, NoActiveSchemeError, DuplicateAssignmentError, ExhaustedError,
    ClaimConflictError,
)
from .blinding import BLINDED_LABEL, BlindedArm, present
from .generator import GenerationPlan, SeededRandom, generate
from .allocator import ClaimAllocator, ClaimResult
from .service import RandomizationService, get_randomization_service

__all__ = [
    'RandomizationError',
    'ValidationError',
    'ConfigError',
    'NotFoundError',
    'LockedError',
    'NoListError',
    'NoActiveSchemeError',
    'DuplicateAssignmentError',
    'ExhaustedError',
    'ClaimConflictError',
    'BLINDED_LABEL',
    'BlindedArm',
    'present',
    'GenerationPlan',
    'SeededRandom',
    'generate',
    'ClaimAllocator',
    'ClaimResult',
    'RandomizationService',
    'get_randomization_service',
]
