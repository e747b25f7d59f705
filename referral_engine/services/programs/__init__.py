"""
Program Lifecycle Package
"""

from referral_engine.services.programs.service import (
    ProgramHealthReport,
    process_program_health,
    process_program_expiration,
)

__all__ = [
    "ProgramHealthReport",
    "process_program_health",
    "process_program_expiration",
]
