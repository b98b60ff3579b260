"""
RTSM - Utilities
================
"""

from .compliance_logger import ComplianceLogger, get_compliance_logger

__all__ = ['ComplianceLogger', 'get_compliance_logger']
