from enum import Enum
from typing import FrozenSet, Optional, Set

from chainindex.errors import AuthorizationError
from chainindex.models import Paper


class Role(str, Enum):
    SUBMITTER = "submitter"
    ADMINISTRATOR = "administrator"


# Roles allowed to perform each mutating operation on an existing paper
UPDATE: FrozenSet[Role] = frozenset({Role.SUBMITTER})
DEACTIVATE: FrozenSet[Role] = frozenset({Role.SUBMITTER})
STORE_EMBEDDING: FrozenSet[Role] = frozenset({Role.SUBMITTER, Role.ADMINISTRATOR})
TRIGGER_ASSIGNMENT: FrozenSet[Role] = frozenset({Role.SUBMITTER})


def roles_of(paper: Paper, identity: str, admin_identity: Optional[str]) -> Set[Role]:
    roles = set()
    if identity and identity == paper.submitter:
        roles.add(Role.SUBMITTER)
    if identity and admin_identity and identity == admin_identity:
        roles.add(Role.ADMINISTRATOR)
    return roles


def require_role(paper: Paper, identity: str, allowed: FrozenSet[Role], admin_identity: Optional[str] = None):
    if not roles_of(paper, identity, admin_identity) & allowed:
        needed = " or ".join(sorted(role.value for role in allowed))
        raise AuthorizationError(f"Identity {identity!r} must be the {needed} of paper {paper.id}")
