"""Heuristic pre-filter for out-of-domain candidates (no LLM calls)."""

from __future__ import annotations

from typing import NamedTuple

from models import CandidateRecord


class _Rule(NamedTuple):
    """Exclusion rule: fires when any trigger appears, all `requires` appear,
    and none of the `unless` terms appear."""

    name: str
    triggers: tuple[str, ...]
    requires: tuple[str, ...] = ()
    unless: tuple[str, ...] = ()


# Ordered by domain; the first matching rule names the rejection.
_EXCLUSION_RULES: tuple[_Rule, ...] = (
    # "CBD" collides with the Convention on Biological Diversity.
    _Rule("cannabis", ("cannabidiol", "cannabis sativa", "cannabis indica", "cbd oil", "cbd extract")),
    _Rule("business_district", ("central business district",)),
    # Clinical / medical
    _Rule("clinical_procedure", ("post-stroke", "post-operative", "postoperative", "post-surgical")),
    _Rule("clinical_trial", ("clinical trial",), unless=("species",)),
    _Rule("randomized_trial", ("randomized controlled trial",)),
    _Rule("human_infection", ("gastroenteritis", "virus genotype", "viral genotype")),
    _Rule("acute_disease", ("acute",), requires=("disease",), unless=("wildlife",)),
    _Rule("hospital", ("hospitalized",), unless=("wildlife",)),
    _Rule("patients", ("patients",), unless=("wildlife", "conservation")),
    _Rule("therapy", ("therapeutic", "medical treatment"), unless=("wildlife", "conservation")),
    _Rule(
        "clinical_science",
        ("pharmacological", "pathogenesis", "diagnosis", "fibrinogen", "angiography"),
        unless=("wildlife",),
    ),
    _Rule(
        "cardiovascular",
        (
            "ischemia",
            "ischaemic",
            "ischemic",
            "apheresis",
            "ldl-c",
            "ldl cholesterol",
            "low-density lipoprotein",
            "limb-threatening",
            "limb threatening",
            "perfusion pressure",
            "chronic limb",
        ),
    ),
    _Rule("wound_care", ("wound healing",), requires=("ulcer",), unless=("wildlife",)),
    # Physics / materials engineering
    _Rule("quantum", ("quantum",), unless=("ecology",)),
    _Rule(
        "materials",
        ("graphite", "graphene", "nano-bridge", "nanobridge", "superconducting", "superconductor"),
    ),
    # Computing without an ecological subject
    _Rule(
        "soft_computing",
        ("fuzzy system", "fuzzy logic", "fuzzy clustering", "computational intelligence"),
        unless=("species", "ecological"),
    ),
    # Mining and underground engineering
    _Rule(
        "mining",
        (
            "lignite mine",
            "coal mine",
            "cavity-filling",
            "cavity filling",
            "mine exploration",
            "mining exploration",
            "underground cavity",
            "underground space",
        ),
    ),
    _Rule("abandoned_mine", ("abandoned mine",), unless=("ecological",)),
    _Rule("exploration_robot", ("robotic exploration system", "rescue robot"), unless=("wildlife",)),
    # Disaster robotics
    _Rule("disaster_robotics", ("evacuation support", "disaster robot")),
    _Rule("robot_disaster", ("robot technology",), requires=("disaster",), unless=("ecological",)),
    _Rule("robot_hazard", ("robot",), requires=("earthquake", "flood"), unless=("ecological",)),
    # Business / economics
    _Rule("markets", ("stock price", "stock market")),
    _Rule("finance", ("financial stability",), unless=("ecosystem",)),
    _Rule("trade", ("trade dispute",), unless=("wildlife",)),
    # Other
    _Rule("consumer_behavior", ("post-pandemic",), requires=("consumer behavior",)),
    _Rule("post_covid", ("post-covid",), unless=("wildlife", "conservation")),
)

_EXCLUDED_TITLES: frozenset[str] = frozenset({"poems"})


def matching_rule(candidate: CandidateRecord) -> str | None:
    """Return the name of the first exclusion rule the candidate trips, if any."""
    if (candidate.title or "").strip().lower() in _EXCLUDED_TITLES:
        return "excluded_title"

    text = f"{candidate.title or ''} {candidate.abstract or ''}".lower()

    for rule in _EXCLUSION_RULES:
        if not any(term in text for term in rule.triggers):
            continue
        if not all(term in text for term in rule.requires):
            continue
        if any(term in text for term in rule.unless):
            continue
        return rule.name

    return None


def is_likely_irrelevant(candidate: CandidateRecord) -> bool:
    """Return True if the candidate is obviously outside conservation science.

    Deterministic keyword check on lower-cased title + abstract. Tuned to prefer
    false negatives: ambiguous candidates are kept and left to enrichment.
    """
    return matching_rule(candidate) is not None
