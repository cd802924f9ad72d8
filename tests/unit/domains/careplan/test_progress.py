"""Tests for progress counter aggregation."""

from __future__ import annotations

from careflow.domains.careplan.domain_logic.progress import CounterPair, ProgressAggregator
from careflow.domains.careplan.domain_logic.recorder import ProgressDelta


class TestCounterPair:
    def test_from_garbage(self):
        assert CounterPair.from_dict(None) == CounterPair()
        assert CounterPair.from_dict("12") == CounterPair()

    def test_apply(self):
        pair = CounterPair(3, 2)
        pair.apply(ProgressDelta(1, 0))
        pair.apply(ProgressDelta(0, 1))
        assert pair.to_dict() == {"totalCount": 4, "positiveCount": 3}


class TestProgressAggregator:
    def test_unsubtyped_measure_single_pair(self):
        progress = {}
        ProgressAggregator.apply(progress, {None: ProgressDelta(1, 1)}, "medication")
        ProgressAggregator.apply(progress, {None: ProgressDelta(1, 0)}, "medication")
        assert progress == {"medication": {"totalCount": 2, "positiveCount": 1}}

    def test_subtyped_measure_pair_per_subtype(self):
        progress = {"vital": {"weight": {"totalCount": 5, "positiveCount": 5}}}
        ProgressAggregator.apply(
            progress,
            {"heartRate": ProgressDelta(1, 0), "weight": ProgressDelta(0, -1)},
            "vital",
        )
        assert progress["vital"] == {
            "weight": {"totalCount": 5, "positiveCount": 4},
            "heartRate": {"totalCount": 1, "positiveCount": 0},
        }

    def test_applies_in_place(self):
        progress = {}
        assert ProgressAggregator.apply(progress, {"mood": ProgressDelta(1, 1)}, "wellness") is progress

    def test_empty_deltas_change_nothing(self):
        progress = {"activity": {"totalCount": 1, "positiveCount": 1}}
        ProgressAggregator.apply(progress, {}, "activity")
        assert progress == {"activity": {"totalCount": 1, "positiveCount": 1}}

    def test_counter_reads(self):
        progress = {
            "activity": {"totalCount": 2, "positiveCount": 1},
            "diet": {"sodium": {"totalCount": 3, "positiveCount": 3}},
        }
        assert ProgressAggregator.counter(progress, "activity") == CounterPair(2, 1)
        assert ProgressAggregator.counter(progress, "diet", "sodium") == CounterPair(3, 3)
        assert ProgressAggregator.counter(progress, "diet", "fluids") == CounterPair()
        assert ProgressAggregator.counter(progress, "diet") == CounterPair()
        assert ProgressAggregator.counter(progress, "vital", "weight") == CounterPair()
