"""Data-quality scoring for ZIP lookup results."""

import logging
from typing import Optional

from .models import DistrictSet, JurisdictionInfo, Source

logger = logging.getLogger(__name__)

# Base score by source; GEOCODER is derived from provider accuracy instead
_BASE_SCORE = {
    Source.STATIC_TABLE: 1.0,
    Source.GEOCODER: 0.9,
    Source.FALLBACK_DEFAULT: 0.3,
}

# Every result lands inside its source's band whatever the penalties
_SCORE_BANDS = {
    Source.STATIC_TABLE: (0.9, 1.0),
    Source.GEOCODER: (0.5, 0.9),
    Source.FALLBACK_DEFAULT: (0.0, 0.45),
}

_PENALTY_UNRESOLVED = 0.25
_PENALTY_MULTI_DISTRICT = 0.05
_PENALTY_INFERRED = 0.05

# Classifier methods backed by curated data rather than inference
_CURATED_METHODS = ("reference", "registry", "special_area")

FALLBACK_MESSAGE = "Approximate location from ZIP prefix; districts unavailable"
LOW_CONFIDENCE_MESSAGE = "Low-confidence result; verify your location"


def geocoder_base(accuracy: float) -> float:
    """Map provider accuracy (0–1) onto the GEOCODER band."""
    accuracy = max(0.0, min(1.0, accuracy))
    return 0.5 + 0.4 * accuracy


class QualityScorer:
    """Scores results by source, then subtracts for ambiguity and missing data."""

    def score(
        self,
        source: Source,
        districts: DistrictSet,
        classification: JurisdictionInfo,
        geocoder_accuracy: Optional[float] = None,
    ) -> float:
        if source == Source.GEOCODER and geocoder_accuracy is not None:
            score = geocoder_base(geocoder_accuracy)
        else:
            score = _BASE_SCORE[source]

        if districts.unresolved:
            score -= _PENALTY_UNRESOLVED
        if districts.multi_district:
            score -= _PENALTY_MULTI_DISTRICT
        if classification.method not in _CURATED_METHODS:
            score -= _PENALTY_INFERRED

        low, high = _SCORE_BANDS[source]
        return round(max(low, min(high, score)), 3)
