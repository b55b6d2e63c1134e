from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set


class ReserveStatus(Enum):
    ACTIVE = "active"
    SELF_PAUSED = "self_paused"
    UNDER_REVIEW = "under_review"
    REVOKED = "revoked"
    EMERGENCY_PAUSED = "emergency_paused"  # reported only; never stored as `status`


ALLOWED_TRANSITIONS: Dict[ReserveStatus, Set[ReserveStatus]] = {
    ReserveStatus.ACTIVE: {ReserveStatus.SELF_PAUSED, ReserveStatus.UNDER_REVIEW, ReserveStatus.REVOKED},
    ReserveStatus.SELF_PAUSED: {ReserveStatus.ACTIVE, ReserveStatus.UNDER_REVIEW, ReserveStatus.REVOKED},
    ReserveStatus.UNDER_REVIEW: {ReserveStatus.ACTIVE, ReserveStatus.REVOKED},
    ReserveStatus.REVOKED: set(),
}

REDEEMABLE_STATUSES = {ReserveStatus.ACTIVE, ReserveStatus.SELF_PAUSED, ReserveStatus.UNDER_REVIEW}


def is_valid_transition(current: ReserveStatus, new: ReserveStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


@dataclass
class StatusChange:
    old_status: ReserveStatus
    new_status: ReserveStatus
    reason: str
    changed_at: Optional[int]


@dataclass
class ReserveAccount:
    """Accounting record of one reserve holder"""
    reserve_id: str
    minting_cap: int  # satoshis
    registered_at: Optional[int] = None
    backing: int = 0  # satoshis, last confirmed
    backing_updated_at: Optional[int] = None
    minted: int = 0
    status: ReserveStatus = ReserveStatus.ACTIVE
    emergency_paused: bool = False
    last_synced_at: Optional[int] = None
    wallets: Set[str] = field(default_factory=set)
    status_history: List[StatusChange] = field(default_factory=list)

    @property
    def effective_status(self) -> ReserveStatus:
        if self.emergency_paused:
            return ReserveStatus.EMERGENCY_PAUSED
        return self.status

    @property
    def minting_disabled(self) -> bool:
        """Backing has fallen below minted supply"""
        return self.backing < self.minted

    @property
    def available_to_mint(self) -> int:
        return max(0, min(self.backing, self.minting_cap) - self.minted)

    def can_mint(self) -> bool:
        return (self.status == ReserveStatus.ACTIVE and not self.emergency_paused
                and not self.minting_disabled)

    def can_redeem(self) -> bool:
        return self.status in REDEEMABLE_STATUSES and not self.emergency_paused

    def to_dict(self) -> dict:
        return {
            'reserve_id': self.reserve_id,
            'minting_cap': self.minting_cap,
            'backing': self.backing,
            'backing_updated_at': self.backing_updated_at,
            'minted': self.minted,
            'status': self.status.value,
            'effective_status': self.effective_status.value,
            'emergency_paused': self.emergency_paused,
            'minting_disabled': self.minting_disabled,
            'available_to_mint': self.available_to_mint,
            'wallets': sorted(self.wallets)
        }
