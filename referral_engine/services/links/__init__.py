"""
Referral Link Service Package
"""

from referral_engine.services.links.service import (
    ExpiryReport,
    create_link,
    cancel_links_by_user,
    cancel_links_by_program,
    expire_by_program_ids,
)

__all__ = [
    "ExpiryReport",
    "create_link",
    "cancel_links_by_user",
    "cancel_links_by_program",
    "expire_by_program_ids",
]
