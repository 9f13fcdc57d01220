import pytest

from arch_provision.graph import StageGraph, order
from arch_provision.models import Stage
from arch_provision.utils.exceptions import CycleError, DuplicateStageError, UnknownDependencyError


def names(stages):
    return [stage.name for stage in stages]


def test_order_places_dependencies_first():
    stages = [
        Stage("packages", depends_on=("users", "bootloader")),
        Stage("users", depends_on=("configure",)),
        Stage("configure"),
        Stage("bootloader", depends_on=("configure",)),
    ]

    result = names(order(stages))

    assert result.index("configure") < result.index("users") < result.index("packages")
    assert result.index("bootloader") < result.index("packages")


def test_order_breaks_ties_by_input_order():
    stages = [Stage("b"), Stage("a"), Stage("c", depends_on=("a",))]

    assert names(order(stages)) == ["b", "a", "c"]
    assert names(order(stages)) == names(order(list(stages)))


def test_order_of_already_sorted_chain_is_unchanged():
    chain = ["partition", "format", "mount", "bootstrap"]
    stages = [Stage(name, depends_on=(chain[i - 1],) if i else ()) for i, name in enumerate(chain)]

    assert names(order(stages)) == chain


def test_cycle_is_reported_with_its_members():
    stages = [
        Stage("a", depends_on=("c",)),
        Stage("b", depends_on=("a",)),
        Stage("c", depends_on=("b",)),
        Stage("d"),
    ]

    with pytest.raises(CycleError) as excinfo:
        order(stages)

    cycle = excinfo.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}


def test_self_dependency_is_a_cycle():
    with pytest.raises(CycleError):
        order([Stage("a", depends_on=("a",))])


def test_unknown_dependency_is_rejected():
    with pytest.raises(UnknownDependencyError) as excinfo:
        StageGraph([Stage("a", depends_on=("missing",))])

    assert excinfo.value.dependency == "missing"


def test_duplicate_stage_is_rejected():
    with pytest.raises(DuplicateStageError):
        StageGraph([Stage("a"), Stage("a")])


def test_graph_lookup():
    graph = StageGraph([Stage("a"), Stage("b", depends_on=("a",))])

    assert "a" in graph
    assert "z" not in graph
    assert graph["b"].depends_on == ("a",)
    assert graph.names == ["a", "b"]
