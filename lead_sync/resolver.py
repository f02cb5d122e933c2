"""Weighted similarity scoring between canonical records and CRM entities."""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from rapidfuzz.distance import Levenshtein

from .canonical import Canonicalizer
from .config import MatchingConfig
from .models import CanonicalFields, EntityRecord, MatchCandidate, MatchClassification

LOGGER = logging.getLogger(__name__)

PHONE_SUFFIX_SCORE = 0.9


def email_similarity(left: str, right: str) -> float:
    return 1.0 if left == right else 0.0


def edit_similarity(left: str, right: str) -> float:
    """``1 - distance / max_length`` using Levenshtein distance."""

    if not left and not right:
        return 1.0
    return Levenshtein.normalized_similarity(left, right)


def phone_similarity(left: str, right: str) -> float:
    if left == right:
        return 1.0
    shorter, longer = sorted((left, right), key=len)
    if len(shorter) < len(longer) and longer.endswith(shorter):
        return PHONE_SUFFIX_SCORE
    return 0.0


def _pairs(incoming: CanonicalFields, existing: CanonicalFields):
    yield "email", incoming.email, existing.email, email_similarity
    yield "name", incoming.full_name, existing.full_name, edit_similarity
    yield "phone", incoming.phone, existing.phone, phone_similarity
    yield "company", incoming.company, existing.company, edit_similarity


def _discriminating(field_scores: Dict[str, float]) -> bool:
    if "email" in field_scores or "phone" in field_scores:
        return True
    return "name" in field_scores and "company" in field_scores


class IdentityResolver:
    """Scores and classifies candidate entities for an incoming record.

    Only fields present on both sides contribute. When a discriminating
    identifier was compared (email, phone, or name together with company) the
    weighted sum is normalised by the weights of the compared fields, so a
    record that only carries an email can still be classified as the same
    entity. Otherwise the plain weighted sum is used, which keeps a lone
    company or name match well below the duplicate thresholds.
    """

    def __init__(self, config: Optional[MatchingConfig] = None, canonicalizer: Optional[Canonicalizer] = None) -> None:
        self.config = config or MatchingConfig()
        self.canonicalizer = canonicalizer or Canonicalizer()

    def classify(self, score: float) -> MatchClassification:
        if score >= self.config.same_threshold:
            return MatchClassification.SAME
        if score >= self.config.possible_duplicate_threshold:
            return MatchClassification.POSSIBLE_DUPLICATE
        return MatchClassification.DISTINCT

    def score(self, incoming: CanonicalFields, entity: EntityRecord) -> MatchCandidate:
        existing = self.canonicalizer.canonicalize_entity(entity)
        field_scores: Dict[str, float] = {}
        weighted = 0.0
        compared_weight = 0.0
        for name, left, right, similarity in _pairs(incoming, existing):
            if not left or not right:
                continue
            value = similarity(left, right)
            weight = self.config.weights.get(name, 0.0)
            field_scores[name] = value
            weighted += weight * value
            compared_weight += weight

        if compared_weight and _discriminating(field_scores):
            aggregate = round(weighted / compared_weight, 9)
        else:
            aggregate = round(weighted, 9)
        return MatchCandidate(
            entity=entity,
            field_scores=field_scores,
            score=aggregate,
            classification=self.classify(aggregate),
        )

    def resolve(self, incoming: CanonicalFields, candidates: Iterable[EntityRecord]) -> List[MatchCandidate]:
        """Score every candidate, best first.

        Equal scores prefer the most recently modified entity, then the lowest
        identifier, so the order is total and reproducible.
        """

        matches = [self.score(incoming, entity) for entity in candidates]
        matches.sort(
            key=lambda match: (
                -match.score,
                -match.entity.last_modified_at.timestamp(),
                match.entity.id,
            )
        )
        if matches:
            LOGGER.debug(
                "Best candidate %s scored %.3f (%s)",
                matches[0].entity_id,
                matches[0].score,
                matches[0].classification.value,
            )
        return matches

    def best_match(self, incoming: CanonicalFields, candidates: Iterable[EntityRecord]) -> Optional[MatchCandidate]:
        matches = self.resolve(incoming, candidates)
        return matches[0] if matches else None


__all__ = [
    "IdentityResolver",
    "email_similarity",
    "edit_similarity",
    "phone_similarity",
    "PHONE_SUFFIX_SCORE",
]
