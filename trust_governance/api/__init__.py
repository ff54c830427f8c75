"""
API routers package
"""
from trust_governance.api import (
    system,
    trust,
    invites,
    promotions,
    appeals,
    jury,
    governance
)

__all__ = [
    "system",
    "trust",
    "invites",
    "promotions",
    "appeals",
    "jury",
    "governance"
]
