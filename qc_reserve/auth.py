import logging
from enum import Enum
from typing import Dict, Iterable, Set

from .errors import ErrorKind, ReserveError

log = logging.getLogger(__name__)


class Role(Enum):
    REGISTRAR = "registrar"
    MINTER = "minter"
    ATTESTER = "attester"
    ARBITER = "arbiter"
    WATCHDOG = "watchdog"
    GOVERNANCE = "governance"
    REDEMPTION_FULFILLER = "redemption_fulfiller"
    SYNCER = "syncer"


class Authorizer:
    """Opaque permission predicate injected into every component"""

    def check(self, actor: str, capability: Role) -> bool:
        raise NotImplementedError

    def require(self, actor: str, capability: Role):
        if not self.check(actor, capability):
            log.warning(f"Rejected {actor} for capability {capability.value}")
            raise ReserveError(
                ErrorKind.NOT_AUTHORIZED,
                f"{actor} lacks the {capability.value} capability")


class RoleAuthorizer(Authorizer):
    """In-memory role table"""

    def __init__(self, grants: Dict[str, Iterable[Role]] = None):
        self._roles: Dict[str, Set[Role]] = {}
        for actor, roles in (grants or {}).items():
            for role in roles:
                self.grant(actor, role)

    @classmethod
    def from_dict(cls, data: Dict[str, Iterable[str]]) -> 'RoleAuthorizer':
        """Build from a mapping of actor to role names"""
        return cls({actor: [Role(name) for name in names] for actor, names in data.items()})

    def grant(self, actor: str, role: Role):
        self._roles.setdefault(actor, set()).add(role)

    def revoke(self, actor: str, role: Role):
        self._roles.get(actor, set()).discard(role)

    def check(self, actor: str, capability: Role) -> bool:
        return capability in self._roles.get(actor, set())

    def members(self, role: Role) -> Set[str]:
        return {actor for actor, roles in self._roles.items() if role in roles}


class AllowAll(Authorizer):
    """Grants every capability; for wiring components without access control"""

    def check(self, actor: str, capability: Role) -> bool:
        return True
