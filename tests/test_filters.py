import pytest

from filters import is_likely_irrelevant, matching_rule
from models import CandidateRecord


def _candidate(title: str, abstract: str = "") -> CandidateRecord:
    return CandidateRecord(
        external_id="10.1000/test.00001",
        title=title,
        abstract=abstract,
    )


@pytest.mark.parametrize(("title", "abstract", "rule"), [
    ("Cannabidiol extraction yields", "We optimise CBD oil production.", "cannabis"),
    ("Traffic in the central business district", "Commuter flows were measured.", "business_district"),
    ("Outcomes of a randomized controlled trial", "Participants received a placebo.", "randomized_trial"),
    ("Gastroenteritis outbreaks in schools", "Norovirus cases were counted.", "human_infection"),
    ("Acute kidney disease in adults", "Incidence rose over the decade.", "acute_disease"),
    ("Quantum dots for solar cells", "Efficiency improved by 3%.", "quantum"),
    ("Graphene electrodes", "Conductivity was characterised.", "materials"),
    ("Fuzzy logic controllers for HVAC", "A tuning method is proposed.", "soft_computing"),
    ("Backfilling a lignite mine", "Cavity-filling materials were tested.", "mining"),
    ("Stock market volatility", "We model daily returns.", "markets"),
    ("Shopping after lockdown", "Post-pandemic consumer behavior shifted online.", "consumer_behavior"),
    ("Robot teams for relief", "A robot maps flood and earthquake damage zones.", "robot_hazard"),
])
def test_out_of_domain_candidates_match_a_rule(title: str, abstract: str, rule: str) -> None:
    assert matching_rule(_candidate(title, abstract)) == rule
    assert is_likely_irrelevant(_candidate(title, abstract)) is True


@pytest.mark.parametrize(("title", "abstract"), [
    ("Snow leopard occupancy in the Altai", "Camera traps recorded 40 individuals across three valleys."),
    ("CBD targets and protected area coverage", "We assess progress toward Convention on Biological Diversity goals."),
    ("Coral reef recovery after bleaching", "Reef surveys show partial recovery of hard coral cover."),
    ("Wetland restoration outcomes", "Restored sites supported more waterbird species."),
])
def test_conservation_candidates_pass(title: str, abstract: str) -> None:
    assert matching_rule(_candidate(title, abstract)) is None
    assert is_likely_irrelevant(_candidate(title, abstract)) is False


def test_unless_term_keeps_wildlife_clinical_study() -> None:
    """A clinical trial involving species is left to enrichment."""
    candidate = _candidate(
        "A clinical trial of vaccines for endangered species",
        "Ferrets in a captive breeding programme were vaccinated.",
    )
    assert matching_rule(candidate) is None


def test_requires_term_must_also_appear() -> None:
    """'acute' alone is not enough; the rule needs 'disease' too."""
    assert matching_rule(_candidate("Acute drought stress in grasslands", "Biomass fell sharply.")) is None


def test_patients_rule_skipped_when_conservation_mentioned() -> None:
    candidate = _candidate(
        "Green space and patients' wellbeing",
        "Urban conservation areas improved recovery of patients.",
    )
    assert matching_rule(candidate) is None


def test_excluded_title_matches_exactly() -> None:
    assert matching_rule(_candidate("Poems", "Verses about rivers.")) == "excluded_title"
    assert matching_rule(_candidate("Poems of the forest and its birds", "Verses.")) is None


def test_match_is_case_insensitive() -> None:
    assert matching_rule(_candidate("QUANTUM SENSORS", "")) == "quantum"


def test_missing_abstract_uses_title_only() -> None:
    candidate = CandidateRecord(external_id="10.1/x", title="Stock price prediction", abstract=None)
    assert matching_rule(candidate) == "markets"
