"""Tests for ralph_moss.resolver — ready set, block explanations, round planning."""

from __future__ import annotations

from ralph_moss.resolver import explain_block, plan_rounds, ready


class TestReady:
    def test_no_deps_all_ready(self, make_story, make_store):
        store = make_store([make_story("A"), make_story("B"), make_story("C")])
        assert ready(store) == ["A", "B", "C"]

    def test_dependency_must_pass(self, make_story, make_store):
        store = make_store([make_story("A"), make_story("B", depends_on=["A"])])
        assert ready(store) == ["A"]

        store.get_story("A").passes = True
        assert ready(store) == ["B"]

    def test_passing_stories_excluded(self, make_story, make_store):
        store = make_store([make_story("A", passes=True), make_story("B")])
        assert ready(store) == ["B"]

    def test_blocked_excluded_and_never_satisfies(self, make_story, make_store):
        store = make_store([
            make_story("A", blocked=True),
            make_story("B", depends_on=["A"]),
            make_story("C"),
        ])
        assert ready(store) == ["C"]

    def test_store_order_is_kept(self, make_story, make_store):
        store = make_store([make_story("Z"), make_story("A"), make_story("M")])
        assert ready(store) == ["Z", "A", "M"]

    def test_idempotent(self, make_story, make_store):
        store = make_store([
            make_story("A"),
            make_story("B", depends_on=["A"]),
            make_story("C", passes=True),
            make_story("D", depends_on=["C"]),
        ])
        assert ready(store) == ready(store) == ["A", "D"]

    def test_cycle_never_ready(self, make_story, make_store):
        store = make_store([
            make_story("A", depends_on=["B"]),
            make_story("B", depends_on=["A"]),
        ])
        assert ready(store) == []

    def test_self_dependency_never_ready(self, make_story, make_store):
        store = make_store([make_story("X", depends_on=["X"])])
        assert ready(store) == []


class TestExplainBlock:
    def test_pending_dependency(self, make_story, make_store):
        store = make_store([make_story("A"), make_story("B", depends_on=["A"])])
        assert explain_block(store, "B") == "dependsOn: A (pending)"

    def test_blocked_dependency(self, make_story, make_store):
        store = make_store([make_story("A", blocked=True), make_story("B", depends_on=["A"])])
        assert explain_block(store, "B") == "dependsOn: A (blocked)"
        assert explain_block(store, "A") == "blocked (retries exhausted)"

    def test_other_states(self, make_story, make_store):
        store = make_store([make_story("A", passes=True), make_story("B")])
        assert explain_block(store, "A") == "already passes"
        assert explain_block(store, "B") == "ready"
        assert explain_block(store, "NOPE") == "unknown story"


class TestPlanRounds:
    def test_chain_and_fan_out(self, make_story, make_store):
        store = make_store([
            make_story("A"),
            make_story("B", depends_on=["A"]),
            make_story("C", depends_on=["A"]),
            make_story("D", depends_on=["B", "C"]),
        ])
        assert plan_rounds(store, 3) == [["A"], ["B", "C"], ["D"]]

    def test_max_parallel_truncates(self, make_story, make_store):
        store = make_store([make_story("A"), make_story("B"), make_story("C")])
        assert plan_rounds(store, 2) == [["A", "B"], ["C"]]
        assert plan_rounds(store, 1) == [["A"], ["B"], ["C"]]

    def test_stops_at_cycle(self, make_story, make_store):
        store = make_store([
            make_story("A"),
            make_story("B", depends_on=["C"]),
            make_story("C", depends_on=["B"]),
        ])
        assert plan_rounds(store, 3) == [["A"]]
