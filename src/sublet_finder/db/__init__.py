"""Database storage for processing jobs and the review ledger."""

from sublet_finder.db.row_mappers import AttemptRecord
from sublet_finder.db.storage import MatchStorage

__all__ = ["AttemptRecord", "MatchStorage"]
