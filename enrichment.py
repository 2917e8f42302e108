"""Conservation metadata extraction for one candidate via an LLM service."""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Callable
from json import JSONDecodeError
from typing import Any

from models import (
    CandidateRecord,
    ChatReply,
    EnrichedMetadata,
    EnrichmentResult,
    GeoPoint,
    ParseError,
    ParseOk,
    ParseResult,
    TemporalRange,
)

ENRICHMENT_PROVIDER = os.getenv("ENRICHMENT_PROVIDER", "anthropic")
MAX_OUTPUT_TOKENS = 1000

LOGGER = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert in environmental research metadata extraction. You analyze research "
    "papers and extract comprehensive metadata including geographic location, ecosystem types, "
    "research methods, policy framework alignment, taxonomic coverage, and study "
    "characteristics. You have deep knowledge of world geography, ecosystems, conservation "
    "biology, and international policy frameworks."
)

_INSTRUCTIONS = """Analyze this research paper and extract conservation metadata.

Title: {title}

Abstract: {abstract}

Return ONLY valid JSON in exactly this format, no additional text:
{{
  "location": {{"name": "Primary study location", "latitude": <number>, "longitude": <number>, "confidence": <0.0-1.0>}},
  "ecosystem_types": ["One or more of: Marine & Coastal, Tropical Forests, Temperate Forests, Grasslands & Savannas, Wetlands, Mountains & Alpine, Desert & Arid, Freshwater, Urban & Built, Agricultural, Other/Mixed"],
  "research_methods": ["Standard method names, e.g. 'Remote Sensing', 'Camera Traps', 'eDNA (Environmental DNA)', 'Species Distribution Modeling', 'Field Surveys', 'Meta-Analysis'"],
  "frameworks": ["Exact names only, e.g. 'SDG 14', 'SDG 15', 'CBD', 'Paris Agreement', 'Ramsar Convention', 'CITES', 'IUCN Red List', 'Kunming-Montreal Global Biodiversity Framework'. Never SDG 3 or SDG 11"],
  "taxonomic_coverage": ["'Group: Common name (Scientific name) [IUCN status]', e.g. 'Birds: California condor (Gymnogyps californianus) [CR]'; use the broad group alone when no species is named"],
  "geographic_scope": "One of: Site-specific, Local, Regional, National, Continental, Global",
  "temporal_range": {{"start": <year>, "end": <year>}},
  "data_availability": "One of: Open Access, Public Dataset Available, Code/Scripts Available, Restricted Access, No Data Available",
  "threat_types": ["Habitat Loss, Climate Change, Overexploitation, Invasive Species, Pollution, Disease, Human-Wildlife Conflict, Other"],
  "conservation_actions": ["Protected Areas, Habitat Restoration, Species Reintroduction, Legislation/Policy, Community-Based Conservation, Indigenous-Led Conservation, Traditional Ecological Knowledge (TEK), Ex-situ Conservation, Monitoring, Co-Management, Other"],
  "study_type": "One of: Field Study, Modeling/Simulation, Literature Review, Meta-Analysis, Experimental, Mixed Methods, Other",
  "traditional_knowledge_present": <true if the paper discusses traditional, indigenous or local ecological knowledge>,
  "rationale": "Brief explanation of extraction choices"
}}

Guidelines:
- temporal_range covers the study period (data collection years), not the publication year.
- Extract taxa from BOTH title and abstract, including every Latin binomial mentioned.
- Omit a field or use an empty list when the paper gives no evidence for it."""

_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)\n?\s*```", re.DOTALL)

ChatFn = Callable[[list[dict[str, str]], int], ChatReply]


def build_messages(candidate: CandidateRecord) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {
            "role": "user",
            "content": _INSTRUCTIONS.format(
                title=candidate.title,
                abstract=candidate.abstract or "Not available.",
            ),
        },
    ]


def extract_json_object(content: str) -> ParseResult:
    """Recover a JSON object from model output without raising.

    Fallback order: strip a fenced code block, take the span between the first
    "{" and the last "}", and finally scan for the first decodable object.
    """
    text = (content or "").strip()
    if not text:
        return ParseError(reason="empty response", raw=content or "")

    fenced = _FENCE_PATTERN.search(text)
    if fenced:
        text = fenced.group(1).strip()
    elif text.startswith("```"):
        text = text.strip("`").strip()
        if text[:4].lower() == "json":
            text = text[4:].strip()

    first, last = text.find("{"), text.rfind("}")
    if first == -1 or last <= first:
        return ParseError(reason="no JSON object found in response", raw=content)

    try:
        parsed = json.loads(text[first:last + 1])
    except JSONDecodeError:
        parsed = _first_decodable_object(text)

    if not isinstance(parsed, dict):
        return ParseError(reason="response is not a valid JSON object", raw=content)
    return ParseOk(data=parsed)


def _first_decodable_object(content: str) -> dict[str, Any] | None:
    decoder = json.JSONDecoder()
    for index, char in enumerate(content):
        if char != "{":
            continue
        try:
            candidate, _ = decoder.raw_decode(content[index:])
        except JSONDecodeError:
            continue
        if isinstance(candidate, dict):
            return candidate
    return None


def coerce_metadata(data: dict[str, Any]) -> EnrichedMetadata:
    """Validate a parsed response into EnrichedMetadata, defaulting what is missing."""
    ecosystems = _str_list(data.get("ecosystem_types"))
    ecosystem = ecosystems[0] if ecosystems else _opt_str(data.get("ecosystem"))

    return EnrichedMetadata(
        ecosystem=ecosystem,
        methods=_str_list(data.get("research_methods", data.get("methods"))),
        taxonomic_coverage=_str_list(data.get("taxonomic_coverage")),
        frameworks=_str_list(data.get("frameworks")),
        geographic_scope=_opt_str(data.get("geographic_scope")),
        location=_location(data.get("location")),
        temporal_range=_temporal_range(data.get("temporal_range")),
        threat_types=_str_list(data.get("threat_types")),
        conservation_actions=_str_list(data.get("conservation_actions")),
        study_type=_opt_str(data.get("study_type")),
        traditional_knowledge_present=_as_bool(data.get("traditional_knowledge_present")),
        data_availability=_opt_str(data.get("data_availability")),
        rationale=_opt_str(data.get("rationale")),
    )


def _chat_backend() -> ChatFn:
    if ENRICHMENT_PROVIDER == "openai":
        from llm_client import openai_chat  # noqa: PLC0415

        return openai_chat

    from anthropic_client import claude_chat  # noqa: PLC0415

    return claude_chat


def enrich(candidate: CandidateRecord, chat: ChatFn | None = None) -> EnrichmentResult:
    """Extract metadata for one candidate. Never raises; failures come back typed."""
    chat = chat or _chat_backend()
    LOGGER.info("Extracting metadata for %s", candidate.external_id)

    try:
        reply = chat(build_messages(candidate), MAX_OUTPUT_TOKENS)
    except Exception as exc:  # broad: SDK, network and timeout errors are all per-record
        LOGGER.warning("Enrichment call failed for %s: %s", candidate.external_id, exc)
        return EnrichmentResult(success=False, error=str(exc) or exc.__class__.__name__)

    parsed = extract_json_object(reply.text)
    if isinstance(parsed, ParseError):
        LOGGER.warning(
            "Unparsable enrichment response for %s: %s", candidate.external_id, parsed.reason
        )
        return EnrichmentResult(
            success=False,
            error=f"Failed to parse metadata response: {parsed.reason}",
            tokens_used=reply.tokens_used,
        )

    return EnrichmentResult(
        success=True,
        data=coerce_metadata(parsed.data),
        tokens_used=reply.tokens_used,
    )


def _location(value: Any) -> GeoPoint | None:
    if not isinstance(value, dict):
        return None

    latitude = _as_float(value.get("latitude"))
    longitude = _as_float(value.get("longitude"))
    if latitude is None or longitude is None or not -90 <= latitude <= 90 or not -180 <= longitude <= 180:
        latitude = longitude = None

    name = _opt_str(value.get("name"))
    if name is None and latitude is None:
        return None

    confidence = _as_float(value.get("confidence"))
    if confidence is None or not 0.0 <= confidence <= 1.0:
        confidence = 0.5
    return GeoPoint(name=name, latitude=latitude, longitude=longitude, confidence=confidence)


def _temporal_range(value: Any) -> TemporalRange:
    if not isinstance(value, dict):
        return TemporalRange()
    start, end = _as_year(value.get("start")), _as_year(value.get("end"))
    if start is not None and end is not None and start > end:
        start, end = end, start
    return TemporalRange(start=start, end=end)


def _as_year(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int) and 1000 <= value <= 2100:
        return value
    return None


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1"}
    return bool(value) if isinstance(value, (bool, int)) else False


def _str_list(value: Any) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _opt_str(value: Any) -> str | None:
    return value.strip() if isinstance(value, str) and value.strip() else None
