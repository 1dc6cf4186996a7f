"""Detection of target postcodes and anti-bot pages in rendered listings."""

from sublet_finder.filters.detection import PairResolution, analyze, resolve_pair

__all__ = ["PairResolution", "analyze", "resolve_pair"]
