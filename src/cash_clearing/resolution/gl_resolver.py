"""
GL resolution.

Maps a match candidate to a GL account and decides auto-approval
eligibility:

    confidence = clamp(candidate.score * mapping_confidence, 0, 1)
    auto_approvable = confidence >= auto_approve_threshold and not requires_approval

A candidate without a GL mapping (including UNKNOWN) resolves to the
UNMAPPED category with confidence 0 and always goes to human review.
"""

import logging

from ..schemas.catalog import GLPattern, PatternCatalog
from ..schemas.suggestion import GLResolution, MatchCandidate

logger = logging.getLogger(__name__)


class GLResolver:
    """Resolves match candidates against the catalog's GL patterns."""

    def __init__(self, catalog: PatternCatalog):
        """Initialize with the run's catalog snapshot."""
        self.catalog = catalog

    def select_gl_pattern(self, candidate: MatchCandidate) -> GLPattern | None:
        """Pick the GL mapping for a candidate.

        With several mappings for one processor pattern the highest
        mapping_confidence wins, then the lowest id.
        """
        if candidate.is_unknown:
            return None
        mappings = self.catalog.gl_patterns_for(candidate.pattern_id)
        return mappings[0] if mappings else None

    def resolve(self, candidate: MatchCandidate) -> GLResolution:
        """Resolve a candidate to a GL account proposal."""
        gl = self.select_gl_pattern(candidate)
        if gl is None:
            if not candidate.is_unknown:
                logger.debug("No GL pattern for processor pattern %s", candidate.pattern_id)
            return GLResolution.unmapped()

        confidence = max(0.0, min(1.0, candidate.score * gl.mapping_confidence))
        auto_approvable = confidence >= gl.auto_approve_threshold and not gl.requires_approval

        return GLResolution(
            gl_account_code=gl.gl_account_code,
            gl_account_name=gl.gl_account_name,
            debit_credit=gl.debit_credit.value,
            account_category=gl.account_category.value,
            confidence_score=confidence,
            auto_approvable=auto_approvable,
            gl_pattern_id=gl.id,
            auto_approve_threshold=gl.auto_approve_threshold,
            requires_approval=gl.requires_approval,
            ft_id=gl.ft_id,
        )
