"""
Topic lifecycle: matching, naming, event timelines, rebuilds, curation and the nightly refresh.
"""

from smart_topics.topics.curation import MergeResult, TopicCurator, TopicDetail
from smart_topics.topics.nightly import NightlyRefresher, NightlyResult
from smart_topics.topics.rebuild import RebuildOptions, RebuildResult, TopicRebuilder, rebuild_topics

__all__ = [
    "MergeResult",
    "NightlyRefresher",
    "NightlyResult",
    "RebuildOptions",
    "RebuildResult",
    "TopicCurator",
    "TopicDetail",
    "TopicRebuilder",
    "rebuild_topics",
]
