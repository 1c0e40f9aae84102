import pytest

from semfirewall.topology import (
    FunctionTopology,
    generate_fuzzy_hash,
    map_similarity,
    short_func_name,
    topology_fingerprint,
    topology_similarity,
    type_list_similarity,
)


def _beacon() -> FunctionTopology:
    return FunctionTopology(
        param_count=2,
        return_count=1,
        block_count=5,
        instr_count=30,
        loop_count=1,
        branch_count=2,
        call_signatures={"net.Dial": 1, "time.Sleep": 1},
        instr_counts={"*ssa.Call": 2, "*ssa.If": 2},
        param_types=["string", "int"],
        return_types=["error"],
        has_defer=True,
        bin_op_counts={"<": 1, "+": 1},
    )


def _network() -> FunctionTopology:
    return FunctionTopology(
        block_count=3,
        instr_count=12,
        loop_count=0,
        branch_count=1,
        call_signatures={"net.Dial": 1, "invoke:net.Conn.Close": 1},
        instr_counts={"*ssa.Call": 2, "*ssa.If": 1},
        return_types=[],
        has_panic=True,
    )


def test_fuzzy_hash_bucket_from_source_example():
    topo = FunctionTopology(block_count=5, loop_count=1, branch_count=2)
    assert generate_fuzzy_hash(topo) == "B2L1BR1"


def test_fuzzy_hash_of_empty_topology():
    assert generate_fuzzy_hash(FunctionTopology()) == "B0L0BR0"


def test_fuzzy_hash_caps_loop_bucket():
    many = FunctionTopology(block_count=5, loop_count=40, branch_count=2)
    five = FunctionTopology(block_count=5, loop_count=5, branch_count=2)
    assert generate_fuzzy_hash(many) == generate_fuzzy_hash(five)


def test_fuzzy_hash_groups_nearby_block_counts():
    a = FunctionTopology(block_count=4, loop_count=1, branch_count=2)
    b = FunctionTopology(block_count=7, loop_count=1, branch_count=3)
    assert generate_fuzzy_hash(a) == generate_fuzzy_hash(b)


def test_similarity_with_none_is_zero():
    assert topology_similarity(None, _beacon()) == 0.0
    assert topology_similarity(_beacon(), None) == 0.0


def test_similarity_of_identical_topologies_is_one():
    assert topology_similarity(_beacon(), _beacon()) == pytest.approx(1.0)


def test_similarity_of_empty_topologies_is_one():
    assert topology_similarity(FunctionTopology(), FunctionTopology()) == pytest.approx(1.0)


def test_similarity_is_symmetric_and_bounded():
    a, b = _beacon(), _network()
    ab = topology_similarity(a, b)
    ba = topology_similarity(b, a)
    assert ab == pytest.approx(ba)
    assert 0.0 <= ab <= 1.0


def test_different_structures_score_low():
    assert topology_similarity(_beacon(), _network()) <= 0.6


def test_small_change_scores_higher_than_large_change():
    base = _beacon()
    near = _beacon()
    near.branch_count = 3
    far = _network()
    assert topology_similarity(base, near) > topology_similarity(base, far)
    assert topology_similarity(base, near) < 1.0


def test_type_list_similarity_rules():
    assert type_list_similarity([], []) == 1.0
    assert type_list_similarity(["int"], ["int", "string"]) == 0.0
    assert type_list_similarity(["int", "string"], ["int", "string"]) == 1.0
    assert type_list_similarity(["int", "string"], ["int", "bool"]) == pytest.approx(0.5)


def test_map_similarity_empty_maps():
    assert map_similarity({}, {}) == 1.0
    assert map_similarity(None, None) == 1.0


def test_map_similarity_identical_and_disjoint():
    counts = {"net.Dial": 1, "fmt.Println": 2}
    assert map_similarity(counts, dict(counts)) == 1.0
    assert map_similarity({"a": 1}, {"b": 1}) == 0.0


def test_map_similarity_is_symmetric_and_bounded():
    a = {"net.Dial": 1, "fmt.Println": 2}
    b = {"fmt.Println": 1, "time.Sleep": 3}
    value = map_similarity(a, b)
    assert value == pytest.approx(map_similarity(b, a))
    assert 0.0 < value < 1.0


def test_map_similarity_zero_counts_count_as_match():
    assert map_similarity({"a": 0}, {}) == 1.0


@pytest.mark.parametrize(
    "full_name, expected",
    [
        ("main.simpleLoop", "simpleLoop"),
        ("example.com/mod/pkg.StartBeacon", "StartBeacon"),
        ("pkg.(*T).Method", "(*T).Method"),
        ("plain", "plain"),
    ],
)
def test_short_func_name(full_name, expected):
    assert short_func_name(full_name) == expected


def test_short_func_name_ignores_dots_inside_parentheses():
    assert short_func_name("(a.b).rest") == "rest"


def test_fingerprint_of_none():
    assert topology_fingerprint(None) == "nil"


def test_fingerprint_lists_sorted_calls():
    topo = FunctionTopology(
        loop_count=1,
        branch_count=2,
        instr_count=30,
        call_signatures={"time.Sleep": 1, "net.Dial": 1},
    )
    assert topology_fingerprint(topo) == "L1B2I30[net.Dial,time.Sleep]"


def test_fingerprint_truncates_long_call_list():
    topo = FunctionTopology(
        loop_count=0,
        branch_count=0,
        instr_count=4,
        call_signatures={"d.D": 1, "a.A": 1, "c.C": 1, "b.B": 1},
    )
    assert topology_fingerprint(topo) == "L0B0I4[a.A,b.B,c.C,...(4)]"


def test_fingerprint_without_calls():
    topo = FunctionTopology(loop_count=2, branch_count=1, instr_count=7)
    assert topology_fingerprint(topo) == "L2B1I7[]"


def test_topology_defaults_are_independent():
    a = FunctionTopology()
    b = FunctionTopology()
    a.call_signatures["net.Dial"] = 1
    assert b.call_signatures == {}