"""
Unit tests for rebuild options and result shapes.
"""
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from smart_topics.topics.rebuild import RebuildOptions, RebuildResult


class TestRebuildOptions:
    """Tests for option parsing and clamping."""

    def test_defaults(self):
        options = RebuildOptions()
        assert options.algorithm == "dbscan"
        assert options.recent_days is None
        assert options.k is None
        assert options.eps is None
        assert options.min_samples is None

    def test_camel_case_aliases(self):
        options = RebuildOptions.model_validate(
            {"recentDays": 30, "minSamples": 4, "markIngestedSince": "2025-03-01T00:00:00Z"}
        )
        assert options.recent_days == 30
        assert options.min_samples == 4
        assert options.mark_ingested_since == datetime(2025, 3, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "field,value,expected",
        [
            ("recent_days", 1000, 365),
            ("recent_days", 0, None),
            ("recent_days", 7.9, 7),
            ("k", 50, 12),
            ("k", -3, None),
            ("min_samples", 40, 12),
            ("min_samples", "", None),
        ],
    )
    def test_numeric_options_are_clamped(self, field, value, expected):
        assert getattr(RebuildOptions(**{field: value}), field) == expected

    @pytest.mark.parametrize("value,expected", [(0.2, 0.2), (0, None), (-1, None), (float("inf"), None)])
    def test_eps_must_be_positive(self, value, expected):
        assert RebuildOptions(eps=value).eps == expected

    def test_naive_mark_since_is_utc(self):
        options = RebuildOptions(mark_ingested_since=datetime(2025, 3, 1, 6, 0))
        assert options.mark_ingested_since.tzinfo is not None

    def test_unknown_algorithm_rejected(self):
        with pytest.raises(ValidationError):
            RebuildOptions(algorithm="hdbscan")

    def test_unknown_keys_ignored(self):
        assert RebuildOptions.model_validate({"somethingElse": 1}).algorithm == "dbscan"


class TestRebuildResult:
    """Tests for RebuildResult."""

    def test_counts_and_dict(self):
        result = RebuildResult(matching={"created": 2, "updated": 1})
        assert result.created == 2
        assert result.updated == 1
        payload = result.to_dict()
        assert set(payload) == {
            "topics",
            "built_at",
            "clustering",
            "matching",
            "embeddings",
            "warnings",
            "message",
        }
        assert isinstance(payload["built_at"], str)
