"""
RTSM Randomization Engine
=========================
Sealed-list subject randomization for clinical trials.
"""

__version__ = "1.0.0"
