from __future__ import annotations

from dataclasses import dataclass


ROLES = ("waiting", "teacher", "manager", "admin")

RIGHTS_BY_ROLE = {
    "admin": {
        "browse": True,
        "checkout": True,
        "manageItems": True,
        "manageCategories": True,
        "manageRentals": True,
        "approveUsers": True,
        "grantAdmin": True,
    },
    "manager": {
        "browse": True,
        "checkout": True,
        "manageItems": True,
        "manageCategories": True,
        "manageRentals": True,
        "approveUsers": True,
        "grantAdmin": False,
    },
    "teacher": {
        "browse": True,
        "checkout": True,
        "manageItems": False,
        "manageCategories": False,
        "manageRentals": False,
        "approveUsers": False,
        "grantAdmin": False,
    },
    "waiting": {
        "browse": False,
        "checkout": False,
        "manageItems": False,
        "manageCategories": False,
        "manageRentals": False,
        "approveUsers": False,
        "grantAdmin": False,
    },
}


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str

    def __bool__(self) -> bool:
        return self.allowed


def normalize_role(raw_role: str | None) -> str:
    role = (raw_role or "").strip().lower()
    if role in RIGHTS_BY_ROLE:
        return role
    return "waiting"


def rights_for(role: str | None) -> dict[str, bool]:
    return dict(RIGHTS_BY_ROLE[normalize_role(role)])


def authorize(role: str | None, action: str) -> AccessDecision:
    normalized = normalize_role(role)
    rights = RIGHTS_BY_ROLE[normalized]
    if action not in rights:
        return AccessDecision(False, f"Unknown action '{action}'.")
    if normalized == "waiting":
        return AccessDecision(False, "Account is waiting for approval.")
    if not rights[action]:
        return AccessDecision(False, f"Role '{normalized}' may not perform '{action}'.")
    return AccessDecision(True, "ok")
