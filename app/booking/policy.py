from __future__ import annotations

from dataclasses import dataclass

from app.core.models import ActorRole


@dataclass(frozen=True)
class ActorPolicy:
    auto_approve: bool
    requires_proof: bool
    enforce_fee_floor: bool
    may_review: bool
    may_delete: bool
    may_manage_resources: bool


ROLE_POLICIES: dict[ActorRole, ActorPolicy] = {
    ActorRole.CLIENT: ActorPolicy(
        auto_approve=False,
        requires_proof=True,
        enforce_fee_floor=True,
        may_review=False,
        may_delete=False,
        may_manage_resources=False,
    ),
    ActorRole.STAFF: ActorPolicy(
        auto_approve=True,
        requires_proof=False,
        enforce_fee_floor=False,
        may_review=True,
        may_delete=False,
        may_manage_resources=False,
    ),
    ActorRole.ADMIN: ActorPolicy(
        auto_approve=True,
        requires_proof=False,
        enforce_fee_floor=False,
        may_review=True,
        may_delete=True,
        may_manage_resources=True,
    ),
}


def policy_for(role: ActorRole | str) -> ActorPolicy:
    try:
        return ROLE_POLICIES[ActorRole(role)]
    except ValueError as exc:
        raise ValueError(f"Unknown role: {role}") from exc


@dataclass(frozen=True)
class Actor:
    user_id: int | None
    role: ActorRole
    name: str = ""
    email: str = ""

    @property
    def policy(self) -> ActorPolicy:
        return policy_for(self.role)

    @classmethod
    def from_user(cls, user) -> Actor:
        return cls(user_id=user.id, role=ActorRole(user.role), name=user.full_name, email=user.email)

    @classmethod
    def system(cls) -> Actor:
        return cls(user_id=None, role=ActorRole.ADMIN, name="system")
