"""Genome defaults and valid gene ranges."""

from __future__ import annotations

from evoteam.types import Genome, Role

# Inclusive bounds for each numeric gene.
GENE_RANGES: dict[str, tuple[float, float]] = {
    "temperature": (0.1, 1.0),
    "risk_tolerance": (0.0, 1.0),
    "collaboration_preference": (0.0, 1.0),
}
SPECIALIZATION_RANGE: tuple[float, float] = (0.0, 1.0)

_ROLE_DEFAULTS: dict[Role, dict] = {
    Role.MID_DEV: {
        "system_prompt": "You are a Mid-Level Developer. Write clean, efficient code.",
        "temperature": 0.7,
        "risk_tolerance": 0.5,
        "collaboration_preference": 0.6,
    },
    Role.SENIOR_DEV: {
        "system_prompt": "You are a Senior Developer. Focus on architecture and code quality.",
        "temperature": 0.6,
        "risk_tolerance": 0.4,
        "collaboration_preference": 0.7,
    },
    Role.QA: {
        "system_prompt": "You are a QA Engineer. Find bugs and ensure quality.",
        "temperature": 0.5,
        "risk_tolerance": 0.3,
        "collaboration_preference": 0.8,
    },
    Role.ARCHITECT: {
        "system_prompt": "You are a Software Architect. Design scalable systems.",
        "temperature": 0.7,
        "risk_tolerance": 0.5,
        "collaboration_preference": 0.6,
    },
    Role.TEAM_LEAD: {
        "system_prompt": "You are a Team Lead. Coordinate work and review code.",
        "temperature": 0.6,
        "risk_tolerance": 0.4,
        "collaboration_preference": 0.9,
    },
}


def clamp_gene(name: str, value: float) -> float:
    low, high = GENE_RANGES.get(name, SPECIALIZATION_RANGE)
    return max(low, min(high, value))


def default_genome(role: Role) -> Genome:
    """Generation-0 genome for a role."""
    defaults = _ROLE_DEFAULTS.get(role)
    if defaults is None:
        defaults = {"system_prompt": f"You are a {role.value}."}
    return Genome(generation=0, **defaults)
