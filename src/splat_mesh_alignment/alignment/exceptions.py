"""Errors reported by the alignment engine."""

from __future__ import annotations


class AlignmentError(Exception):
    """Base class for alignment failures; nothing was modified when raised."""

    reason = "alignment failed"


class InsufficientPointsError(AlignmentError):
    """One of the input point sets is too small to align."""

    reason = "insufficient points"

    def __init__(self, source_count: int, target_count: int, minimum: int):
        self.source_count = source_count
        self.target_count = target_count
        self.minimum = minimum
        super().__init__(
            f"Alignment needs at least {minimum} points in each set "
            f"(source={source_count}, target={target_count})"
        )


class InsufficientCorrespondencesError(AlignmentError):
    """Too few nearest-neighbor matches were found during an iteration."""

    reason = "insufficient correspondences"

    def __init__(self, iteration: int, count: int, minimum: int):
        self.iteration = iteration
        self.count = count
        self.minimum = minimum
        super().__init__(
            f"Only {count} correspondences found in iteration {iteration} (need {minimum})"
        )
