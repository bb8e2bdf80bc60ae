"""
Core services: resolution, link lifecycle, membership and system collections.
"""

from .membership import MembershipDrift, MembershipService
from .resolver import (
    ResolveOutcome,
    ResolveResult,
    Resolver,
    build_projection,
    evaluate_safety_gate,
)
from .system_collections import SystemCollectionService

__all__ = [
    "MembershipDrift",
    "MembershipService",
    "ResolveOutcome",
    "ResolveResult",
    "Resolver",
    "build_projection",
    "evaluate_safety_gate",
    "SystemCollectionService",
]
