"""
Team inheritance boundary.

A team member may inherit access from the owner of their organization. The
team service itself lives elsewhere; the evaluator only needs this lookup.
"""
from typing import Dict, Mapping, Optional, Protocol


class InheritanceLookup(Protocol):
    def get_owner_for_inheritance(self, owner_id: str) -> Optional[str]:
        """Return the org owner whose subscription `owner_id` inherits, if any."""
        ...


class NoInheritance:
    def get_owner_for_inheritance(self, owner_id: str) -> Optional[str]:
        return None


class StaticInheritanceLookup:
    """Member -> org owner mapping held in memory."""

    def __init__(self, mapping: Optional[Mapping[str, str]] = None):
        self._mapping: Dict[str, str] = dict(mapping or {})

    def add_member(self, member_id: str, org_owner_id: str) -> None:
        self._mapping[member_id] = org_owner_id

    def get_owner_for_inheritance(self, owner_id: str) -> Optional[str]:
        org_owner = self._mapping.get(owner_id)
        if org_owner == owner_id:
            return None
        return org_owner
