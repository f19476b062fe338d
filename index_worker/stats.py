from collections.abc import Iterable

from .models import IndexStats, IndexStatsKey


def aggregate_index_stats(stats: Iterable[IndexStats]) -> IndexStats:
    """Sum per-indexer counters into one record with every key present."""
    res: IndexStats = {key: 0 for key in IndexStatsKey}
    for s in stats:
        for key, count in s.items():
            res[IndexStatsKey(key)] += count or 0
    return res
