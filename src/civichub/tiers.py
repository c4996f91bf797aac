"""Relevance tier routing for tiered search.

Pure business logic with no knowledge of AppState or I/O.

``get_search_tiers`` widens a query's scope to state-level content when it
mentions state government topics (taxes, benefit programs, registry,
statutes, housing or education policy, public safety, environment).
``classify_url_tier`` assigns a tier to a document at ingestion time.
"""

from __future__ import annotations

import re
from urllib.parse import urlsplit

from civichub.models.search import RelevanceTier

DEFAULT_SEARCH_TIERS: tuple[RelevanceTier, ...] = (
    RelevanceTier.PRIMARY,
    RelevanceTier.REGIONAL,
)
EXPANDED_SEARCH_TIERS: tuple[RelevanceTier, ...] = (
    RelevanceTier.PRIMARY,
    RelevanceTier.REGIONAL,
    RelevanceTier.STATE,
)

_STATE_QUERY_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        # Tax
        r"\b(state|income|excise|sales|estate)\s*tax",
        r"\btax\s*(rate|bracket|return|filing|deadline|due|form)",
        r"\bproperty\s*tax\s*(exemption|abatement|deferral)",
        r"\bchapter\s*\d+[a-z]?\b",  # Chapter 40B, Chapter 70
        # Benefit programs
        r"\bmass\s*health",
        r"\bmedicaid",
        r"\bsnap\b",
        r"\bebt\b",
        r"\bwic\b",
        r"\bunemployment\s*(insurance|benefits|claim)",
        r"\bworkers?\s*comp",
        # Registry / licensing
        r"\bregistry\s*of\s*(motor|deed)",
        r"\brmv\b",
        r"\bdriver.?\s*license",
        r"\bvehicle\s*registration",
        # Statutes and regulation
        r"\bstate\s*(law|regulation|statute|code)",
        r"\bmassachusetts\s*(law|regulation|general\s*law)",
        r"\bm\.?g\.?l\.?\b",
        # Housing
        r"\bmbta\s*communities",
        r"\baffordable\s*housing\s*act",
        r"\bzoning\s*(reform|act)\b",
        # Education
        r"\bstate\s*(education|school)\s*(funding|aid)",
        r"\bmcas\b",
        # Public safety
        r"\bstate\s*police",
        r"\bfire\s*marshal",
        r"\bbuilding\s*code",
        # Environment
        r"\bdep\b.*\b(regulation|permit)",
        r"\bwetlands?\s*(protection|act)",
        r"\btitle\s*5\b",  # septic
    )
)


def is_state_query(query: str) -> bool:
    return any(pattern.search(query) for pattern in _STATE_QUERY_PATTERNS)


def get_search_tiers(query: str) -> list[RelevanceTier]:
    """Return the tiers a query may draw from, in tier order.

    Default queries → primary + regional.
    State-level queries → primary + regional + state.
    """
    tiers = EXPANDED_SEARCH_TIERS if is_state_query(query) else DEFAULT_SEARCH_TIERS
    return list(tiers)


def classify_url_tier(url: str, domain_tiers: dict[str, str]) -> RelevanceTier:
    """Map a document URL to a tier by its host.

    ``domain_tiers`` keys match the host itself or any parent domain, so
    ``"mass.gov"`` covers ``www.mass.gov`` and ``dor.mass.gov``. Unknown
    hosts are primary.
    """
    try:
        hostname = (urlsplit(url).hostname or "").rstrip(".")
    except ValueError:
        return RelevanceTier.PRIMARY

    labels = hostname.split(".")
    for i in range(len(labels)):
        tier = domain_tiers.get(".".join(labels[i:]))
        if tier is not None:
            return RelevanceTier(tier)
    return RelevanceTier.PRIMARY
