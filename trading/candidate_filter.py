"""Strategy filter predicates over discovered candidates."""

from __future__ import annotations

from typing import Iterable

import config
from trading.models import Candidate
from trading.strategy import Strategy


def has_real_image(candidate: Candidate) -> bool:
    url = str(candidate.image_url or "").strip().lower()
    if not url:
        return False
    marker = str(getattr(config, "PLACEHOLDER_IMAGE_MARKER", "placeholder") or "placeholder")
    return marker not in url


def filter_reason(candidate: Candidate, strategy: Strategy) -> str:
    """Return the first failing predicate name, or "" when the candidate passes."""
    filters = strategy.filters
    social = strategy.social_filters
    if not filters.liquidity_usd.contains(candidate.liquidity_usd):
        return "liquidity"
    if not filters.market_cap_usd.contains(candidate.market_cap_usd):
        return "market_cap"
    if not filters.token_age_minutes.contains(candidate.age_minutes):
        return "age"
    if social.require_image and not has_real_image(candidate):
        return "no_image"
    if social.require_twitter and not candidate.has_twitter:
        return "no_twitter"
    if social.require_telegram and not candidate.has_telegram:
        return "no_telegram"
    keywords = social.keyword_list
    if keywords:
        haystack = f"{candidate.ticker} {candidate.name}".lower()
        if not any(word in haystack for word in keywords):
            return "keywords"
    return ""


def filter_candidates(candidates: Iterable[Candidate], strategy: Strategy) -> list[Candidate]:
    return [c for c in candidates if not filter_reason(c, strategy)]
