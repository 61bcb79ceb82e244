"""Role resolution — aliases, acceptable-role sets, and the career ladder.

Tasks carry free-text role requests ("FrontendDev", "mid_dev", "QA Engineer").
Everything downstream works with the typed `Role` enum, so every request is
resolved here; names that cannot be resolved raise `UnknownRoleError`.
"""

from __future__ import annotations

import re

from evoteam.exceptions import UnknownRoleError
from evoteam.types import Role

DEVELOPER_ROLES: tuple[Role, ...] = (Role.MID_DEV, Role.SENIOR_DEV, Role.JUNIOR_DEV)

# normalized request -> acceptable roles, preferred first
_ALIASES: dict[str, tuple[Role, ...]] = {
    "architect": (Role.ARCHITECT,),
    "softwarearchitect": (Role.ARCHITECT,),
    "teamlead": (Role.TEAM_LEAD,),
    "lead": (Role.TEAM_LEAD,),
    "techlead": (Role.TEAM_LEAD,),
    "seniordev": (Role.SENIOR_DEV,),
    "seniordeveloper": (Role.SENIOR_DEV,),
    "middev": (Role.MID_DEV,),
    "midleveldev": (Role.MID_DEV,),
    "middeveloper": (Role.MID_DEV,),
    "juniordev": (Role.JUNIOR_DEV,),
    "juniordeveloper": (Role.JUNIOR_DEV,),
    "dev": DEVELOPER_ROLES,
    "developer": DEVELOPER_ROLES,
    "engineer": DEVELOPER_ROLES,
    "frontenddev": (Role.MID_DEV, Role.SENIOR_DEV),
    "frontenddeveloper": (Role.MID_DEV, Role.SENIOR_DEV),
    "backenddev": (Role.MID_DEV, Role.SENIOR_DEV),
    "backenddeveloper": (Role.MID_DEV, Role.SENIOR_DEV),
    "fullstackdev": (Role.SENIOR_DEV, Role.MID_DEV),
    "qa": (Role.QA, Role.SENIOR_QA),
    "qaengineer": (Role.QA, Role.SENIOR_QA),
    "tester": (Role.QA, Role.SENIOR_QA),
    "seniorqa": (Role.SENIOR_QA,),
    "designer": (Role.DESIGNER,),
    "uidesigner": (Role.DESIGNER,),
    "uxdesigner": (Role.DESIGNER,),
}

_NEXT_ROLE: dict[Role, Role] = {
    Role.JUNIOR_DEV: Role.MID_DEV,
    Role.MID_DEV: Role.SENIOR_DEV,
    Role.QA: Role.SENIOR_QA,
}

_PREVIOUS_ROLE: dict[Role, Role] = {
    Role.SENIOR_DEV: Role.MID_DEV,
    Role.MID_DEV: Role.JUNIOR_DEV,
    Role.SENIOR_QA: Role.QA,
}

_SEPARATORS = re.compile(r"[\s_\-./]+")


def normalize_role_name(name: str) -> str:
    """Lowercase and strip separators: "Mid_Dev" and "mid dev" -> "middev"."""
    return _SEPARATORS.sub("", name).lower()


def acceptable_roles(name: str | Role) -> tuple[Role, ...]:
    """All concrete roles that may work a request for `name`."""
    if isinstance(name, Role):
        name = name.value
    key = normalize_role_name(name)
    roles = _ALIASES.get(key)
    if roles is None:
        for role in Role:
            if normalize_role_name(role.value) == key:
                return (role,)
        raise UnknownRoleError(f"Unknown role '{name}'")
    return roles


def resolve_role(name: str | Role) -> Role:
    """The canonical role for a request."""
    return acceptable_roles(name)[0]


def is_developer_request(name: str | Role) -> bool:
    return any(r in DEVELOPER_ROLES for r in acceptable_roles(name))


def loosely_matches(request: str, role: Role, specialization: str = "") -> bool:
    """Substring match between a request and a role or specialization label."""
    key = normalize_role_name(request)
    for label in (role.value, specialization):
        norm = normalize_role_name(label)
        if norm and (norm in key or key in norm):
            return True
    # "FrontendDev" vs specialization "Frontend"
    stem = key.removesuffix("developer").removesuffix("dev")
    if stem and stem != key and stem in normalize_role_name(specialization):
        return True
    return False


def next_role(role: Role) -> Role | None:
    """Promotion target, or None for terminal roles."""
    return _NEXT_ROLE.get(role)


def previous_role(role: Role) -> Role | None:
    """Demotion target, or None when the role is the bottom of its ladder."""
    return _PREVIOUS_ROLE.get(role)
