"""
Domain dataclasses used across the application.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional

from medvault.errors import InvalidDecision


class GrantStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    REVOKED = "revoked"


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class Decision(str, enum.Enum):
    APPROVE = "approve"
    DENY = "deny"

    @classmethod
    def parse(cls, raw: Any) -> "Decision":
        if isinstance(raw, Decision):
            return raw
        value = str(raw or "").strip().lower()
        for member in cls:
            if member.value == value:
                return member
        raise InvalidDecision('Action must be "approve" or "deny".', action=raw)


@dataclass
class AccessContext:
    """Represents the authenticated party's identity."""
    party_id: int
    display_name: str
    role: str                  # "patient" (holder) or "doctor" (requester)


@dataclass
class ConsentGrant:
    """Authorization relating one holder-requester pair to approved fields."""
    id: int
    holder_id: int
    requester_id: int
    approved_fields: FrozenSet[str]
    status: GrantStatus
    created_at: datetime
    updated_at: datetime
    contract_address: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == GrantStatus.ACTIVE

    def allows(self, field: str) -> bool:
        return self.is_active and field in self.approved_fields

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "holder_id": self.holder_id,
            "requester_id": self.requester_id,
            "contract_address": self.contract_address,
            "approved_fields": sorted(self.approved_fields),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class AccessRequest:
    """One ask by a requester for a specific set of fields."""
    id: int
    holder_id: int
    requester_id: int
    requested_fields: FrozenSet[str]
    status: RequestStatus
    created_at: datetime
    updated_at: datetime

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "holder_id": self.holder_id,
            "requester_id": self.requester_id,
            "requested_fields": sorted(self.requested_fields),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
