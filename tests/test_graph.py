"""
依赖图测试 — 覆盖：
  1. 构图校验（重复目标、未知依赖、环检测）
  2. 拓扑排序与就绪集合
  3. 失败级联传播（含 ignore_errors）
  4. 目标生命周期的合法 / 非法转移
  5. 指纹（内容寻址缓存键）

运行方式:
    python -m pytest tests/test_graph.py -v
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from dag.fingerprint import command_identity, compute_fingerprint
from dag.graph import DependencyGraph
from errors import CycleError, DuplicateTargetError, InvalidTransitionError, MissingDependencyError
from schema import Target, TargetStatus


def _noop(deps):
    return None


def _t(name: str, *deps: str, **kwargs) -> Target:
    return Target(name=name, command=_noop, deps=list(deps), command_key=name, **kwargs)


# ======================================================================
# Helper: 菱形依赖图
# ======================================================================


def _diamond() -> DependencyGraph:
    """
        a ──> b ──> d
          └─> c ──┘
    """
    return DependencyGraph([_t("a"), _t("b", "a"), _t("c", "a"), _t("d", "b", "c")])


# ======================================================================
# Test 1: 构图校验
# ======================================================================


class TestConstruction:

    def test_duplicate_names_rejected(self):
        with pytest.raises(DuplicateTargetError):
            DependencyGraph([_t("a"), _t("a")])

    def test_unknown_dependency_rejected(self):
        with pytest.raises(MissingDependencyError) as exc_info:
            DependencyGraph([_t("a", "ghost")])
        assert exc_info.value.dependency == "ghost"

    def test_cycle_detected(self):
        """a -> b -> c -> a 构成环，构图阶段直接抛出 CycleError。"""
        with pytest.raises(CycleError) as exc_info:
            DependencyGraph([_t("a", "c"), _t("b", "a"), _t("c", "b"), _t("free")])
        cycle = exc_info.value.nodes
        assert cycle[0] == cycle[-1], "环路径首尾应相同"
        assert set(cycle) == {"a", "b", "c"}, "独立目标 free 不应出现在环中"

    def test_self_dependency_is_a_cycle(self):
        with pytest.raises(CycleError):
            DependencyGraph([_t("a", "a")])

    def test_cycle_rejects_before_any_transition(self):
        on_transition = MagicMock()
        with pytest.raises(CycleError):
            DependencyGraph([_t("a", "b"), _t("b", "a")], on_transition=on_transition)
        on_transition.assert_not_called()


# ======================================================================
# Test 2: 拓扑排序与就绪集合
# ======================================================================


class TestOrdering:

    def test_topological_order(self):
        order = _diamond().topological_sort()
        idx = {name: i for i, name in enumerate(order)}
        assert idx["a"] < idx["b"] < idx["d"]
        assert idx["a"] < idx["c"] < idx["d"]

    def test_declaration_order_breaks_ties(self):
        graph = DependencyGraph([_t("z"), _t("y"), _t("x")])
        assert graph.topological_sort() == ["z", "y", "x"]

    def test_ready_set_progression(self):
        """a 完成后 b、c 同时就绪；d 需要等待 b 和 c。"""
        graph = _diamond()
        assert [t.name for t in graph.ready_set()] == ["a"]
        assert graph.targets["a"].status == TargetStatus.READY, "就绪目标应被提升为 READY"

        graph.mark_running("a")
        assert graph.ready_set() == [], "RUNNING 目标不应出现在就绪集合中"
        graph.mark_built("a")

        ready = [t.name for t in graph.ready_set()]
        assert ready == ["b", "c"], "a 完成后 b、c 应并行就绪"

        graph.mark_running("b")
        graph.mark_built("b")
        assert [t.name for t in graph.ready_set()] == ["c"], "d 仍在等待 c"

    def test_complete_and_remaining(self):
        graph = DependencyGraph([_t("a")])
        assert not graph.is_complete()
        graph.ready_set()
        graph.mark_running("a")
        assert [t.name for t in graph.remaining()] == ["a"]
        graph.mark_built("a")
        assert graph.is_complete()
        assert graph.remaining() == []

    def test_downstream(self):
        graph = _diamond()
        assert graph.downstream("a") == ["b", "c", "d"]
        assert graph.downstream("d") == []


# ======================================================================
# Test 3: 失败级联
# ======================================================================


class TestFailurePropagation:

    def test_chain_failure_cascades(self):
        """A -> B -> C，A 失败后 B、C 因依赖失败。"""
        graph = DependencyGraph([_t("A"), _t("B", "A"), _t("C", "B")])
        graph.ready_set()
        graph.mark_running("A")

        cascaded = graph.mark_failed("A")

        assert cascaded == ["B", "C"]
        assert all(graph.targets[n].status == TargetStatus.FAILED for n in "ABC")
        assert graph.failed_by == {"A": "A", "B": "A", "C": "A"}
        assert graph.failure_chain("C") == ["A", "B", "C"], "因果链应为 根因 -> 目标"
        assert graph.failure_chain("missing") == []
        assert graph.is_complete()

    def test_independent_branch_unaffected(self):
        graph = DependencyGraph([_t("A"), _t("B", "A"), _t("X")])
        graph.ready_set()
        graph.mark_running("A")
        graph.mark_failed("A")
        assert graph.targets["X"].status == TargetStatus.READY, "独立目标不受影响"

    def test_ignore_errors_root_does_not_cascade(self):
        graph = DependencyGraph([_t("lint", ignore_errors=True), _t("pkg", "lint")])
        graph.ready_set()
        graph.mark_running("lint")

        assert graph.mark_failed("lint") == []
        assert graph.is_satisfied("lint"), "ignore_errors 的失败目标视为已满足"
        assert [t.name for t in graph.ready_set()] == ["pkg"]

    def test_ignore_errors_dependent_stops_cascade(self):
        """A 失败 -> B(ignore_errors) 因依赖失败，但 C 仍可运行。"""
        graph = DependencyGraph([_t("A"), _t("B", "A", ignore_errors=True), _t("C", "B")])
        graph.ready_set()
        graph.mark_running("A")

        assert graph.mark_failed("A") == ["B"]
        assert graph.targets["C"].status == TargetStatus.PENDING
        assert [t.name for t in graph.ready_set()] == ["C"]


# ======================================================================
# Test 4: 生命周期转移
# ======================================================================


class TestLifecycle:

    def test_transitions_reach_the_observer(self):
        callback = MagicMock()
        graph = DependencyGraph([_t("a")], on_transition=callback)

        graph.ready_set()
        graph.mark_running("a")
        graph.mark_built("a")

        assert graph.targets["a"].status == TargetStatus.BUILT
        assert callback.call_count == 3
        callback.assert_called_with("a", TargetStatus.RUNNING, TargetStatus.BUILT)

    def test_built_target_cannot_run_again(self):
        graph = DependencyGraph([_t("a")])
        graph.ready_set()
        graph.mark_built("a")

        assert not graph.can_transition("a", TargetStatus.RUNNING)
        with pytest.raises(InvalidTransitionError) as exc_info:
            graph.mark_running("a")
        assert exc_info.value.current == "built"
        assert graph.targets["a"].status == TargetStatus.BUILT, "非法转移不应改变状态"

    def test_pending_cannot_jump_to_running(self):
        graph = DependencyGraph([_t("a"), _t("b", "a")])
        assert not graph.can_transition("b", TargetStatus.RUNNING)
        with pytest.raises(InvalidTransitionError):
            graph.mark_running("b")

    def test_failed_target_is_final(self):
        graph = DependencyGraph([_t("a")])
        graph.ready_set()
        graph.mark_failed("a")
        with pytest.raises(InvalidTransitionError):
            graph.mark_retry("a")

    def test_observer_error_does_not_block_transition(self):
        graph = DependencyGraph([_t("a")], on_transition=MagicMock(side_effect=RuntimeError("ui broke")))
        graph.ready_set()
        assert graph.targets["a"].status == TargetStatus.READY


# ======================================================================
# Test 5: 指纹
# ======================================================================


def _square(deps):
    return 4


def _cube(deps):
    return 8


class TestFingerprint:

    def test_stable_for_same_definition(self):
        a1 = DependencyGraph([Target(name="a", command=_square)]).fingerprint("a")
        a2 = DependencyGraph([Target(name="a", command=_square)]).fingerprint("a")
        assert a1 == a2

    def test_changes_with_command(self):
        a1 = DependencyGraph([Target(name="a", command=_square)]).fingerprint("a")
        a2 = DependencyGraph([Target(name="a", command=_cube)]).fingerprint("a")
        assert a1 != a2

    def test_upstream_change_propagates(self):
        """上游计算变化会改变所有下游指纹。"""
        g1 = DependencyGraph([Target(name="a", command=_square), Target(name="b", command=_noop, deps=["a"])])
        g2 = DependencyGraph([Target(name="a", command=_cube), Target(name="b", command=_noop, deps=["a"])])
        assert g1.fingerprint("b") != g2.fingerprint("b")

    def test_command_key_overrides_source(self):
        t1 = Target(name="a", command=_square, command_key="v1")
        t2 = Target(name="a", command=_cube, command_key="v1")
        assert compute_fingerprint(t1, {}) == compute_fingerprint(t2, {})

    def test_builtin_identity_falls_back_to_qualname(self):
        assert command_identity(len) == "builtins.len"
