"""
Scoring functions for feed candidates.

All functions here are pure: no I/O, no shared state, and missing inputs
default to neutral values instead of raising.

Formulas:
- Popularity: view*1.0 + like*5.0 + comment*3.0 + save*7.0 + share*10.0
- Language weight: 2.0 when content language matches the user's preferred
  language, 0.5 otherwise (1.0 when no preference is known)
- Time decay: exp(-rate * days_since_created)

Example:
    >>> from feed_service.recommender.scoring import popularity_score
    >>> popularity_score({'view': 10, 'like': 2})
    20.0
"""

from typing import Dict, Mapping, Optional
from datetime import datetime, timezone
import math


# ============================================================================
# Constants
# ============================================================================

POPULARITY_WEIGHTS: Dict[str, float] = {
    'view': 1.0,
    'like': 5.0,
    'comment': 3.0,
    'save': 7.0,
    'share': 10.0,
}

# Collaborative filtering interaction weights (comments carry no signal)
INTERACTION_WEIGHTS: Dict[str, float] = {
    'like': 1.0,
    'save': 1.5,
    'share': 2.0,
    'comment': 0.0,
}

LANGUAGE_WEIGHT_MATCH = 2.0
LANGUAGE_WEIGHT_MISMATCH = 0.5

SECONDS_PER_DAY = 86400.0


# ============================================================================
# Score Functions
# ============================================================================

def popularity_score(counts: Optional[Mapping[str, float]]) -> float:
    """
    Weighted interaction count for a piece of content.

    Args:
        counts: Mapping with any of view/like/comment/save/share

    Returns:
        Popularity score (0.0 for empty or missing counts)
    """
    if not counts:
        return 0.0

    return float(sum(
        weight * float(counts.get(name) or 0)
        for name, weight in POPULARITY_WEIGHTS.items()
    ))


def language_weight(
    preferred_language: Optional[str],
    content_language: Optional[str],
    match_weight: float = LANGUAGE_WEIGHT_MATCH,
    mismatch_weight: float = LANGUAGE_WEIGHT_MISMATCH
) -> float:
    """Multiplier favouring content in the user's preferred language."""
    if not preferred_language:
        return 1.0
    if content_language and content_language.lower() == preferred_language.lower():
        return match_weight
    return mismatch_weight


def time_decay(
    created_at: Optional[datetime],
    now: Optional[datetime] = None,
    rate: float = 0.05
) -> float:
    """
    Exponential age decay in (0, 1].

    Args:
        created_at: Content creation time (naive values are treated as UTC)
        now: Reference time (defaults to current UTC time)
        rate: Decay rate per day; 0 disables decay

    Returns:
        exp(-rate * days), 1.0 when created_at is unknown or in the future
    """
    if created_at is None or rate <= 0:
        return 1.0

    now = now or datetime.now(timezone.utc)
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    days = (now - created_at).total_seconds() / SECONDS_PER_DAY
    if days <= 0:
        return 1.0
    return math.exp(-rate * days)


def interaction_weight(interaction_type: str) -> float:
    """Weight of a single interaction for item-based collaborative filtering."""
    return INTERACTION_WEIGHTS.get(str(interaction_type).lower(), 0.0)


def score(
    raw_score: float,
    preferred_language: Optional[str],
    content_language: Optional[str],
    match_weight: float = LANGUAGE_WEIGHT_MATCH,
    mismatch_weight: float = LANGUAGE_WEIGHT_MISMATCH
) -> float:
    """
    Final candidate score: raw_score * language weight.

    Applied once, at composition time, for every strategy. External
    relevance scores (search) flow through here unchanged apart from
    the language multiplier.
    """
    return float(raw_score or 0.0) * language_weight(
        preferred_language,
        content_language,
        match_weight=match_weight,
        mismatch_weight=mismatch_weight
    )
