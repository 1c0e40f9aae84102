"""Structural function topologies and similarity measures between them."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence


@dataclass
class FunctionTopology:
    """The structural shape of a function, independent of identifier names."""

    fuzzy_hash: str = ""

    param_count: int = 0
    return_count: int = 0
    block_count: int = 0
    instr_count: int = 0
    loop_count: int = 0
    branch_count: int = 0
    phi_count: int = 0

    cyclomatic_complexity: int = 0

    call_signatures: dict[str, int] = field(default_factory=dict)
    instr_counts: dict[str, int] = field(default_factory=dict)

    param_types: list[str] = field(default_factory=list)
    return_types: list[str] = field(default_factory=list)

    has_defer: bool = False
    has_recover: bool = False
    has_panic: bool = False
    has_go: bool = False
    has_select: bool = False
    has_range: bool = False

    bin_op_counts: dict[str, int] = field(default_factory=dict)
    un_op_counts: dict[str, int] = field(default_factory=dict)

    string_literals: list[str] = field(default_factory=list)

    entropy_score: float = 0.0


def generate_fuzzy_hash(topology: FunctionTopology) -> str:
    """Return a coarse bucket label such as ``B2L1BR1`` for a topology."""
    block_bucket = int(math.log2(topology.block_count)) if topology.block_count > 0 else 0
    branch_bucket = int(math.log2(topology.branch_count)) if topology.branch_count > 0 else 0
    loop_bucket = min(topology.loop_count, 5)
    return f"B{block_bucket}L{loop_bucket}BR{branch_bucket}"


def type_list_similarity(a: Sequence[str], b: Sequence[str]) -> float:
    """Fraction of positions at which two equally long type lists agree."""
    if len(a) != len(b):
        return 0.0
    if not a:
        return 1.0
    matches = sum(1 for x, y in zip(a, b) if x == y)
    return matches / len(a)


def map_similarity(a: Optional[Mapping[str, int]], b: Optional[Mapping[str, int]]) -> float:
    """Weighted Jaccard similarity of two frequency maps."""
    a = a or {}
    b = b or {}
    if not a and not b:
        return 1.0

    intersection = 0
    union = 0
    for key, count_a in a.items():
        count_b = b.get(key, 0)
        intersection += min(count_a, count_b)
        union += max(count_a, count_b)
    for key, count_b in b.items():
        if key not in a:
            union += count_b

    if union == 0:
        return 1.0
    return intersection / union


def _bool_match(a: bool, b: bool) -> float:
    return 1.0 if a == b else 0.0


def topology_similarity(a: Optional[FunctionTopology], b: Optional[FunctionTopology]) -> float:
    """Weighted structural similarity of two topologies, in [0, 1]."""
    if a is None or b is None:
        return 0.0

    score = 0.0
    weights = 0.0

    score += type_list_similarity(a.param_types, b.param_types) * 3.0
    weights += 3.0

    score += type_list_similarity(a.return_types, b.return_types) * 2.0
    weights += 2.0

    if a.loop_count == b.loop_count:
        score += 2.0
    elif abs(a.loop_count - b.loop_count) == 1:
        score += 1.0
    weights += 2.0

    branch_diff = abs(a.branch_count - b.branch_count)
    max_branch = max(a.branch_count, b.branch_count)
    if max_branch > 0:
        score += (1.0 - branch_diff / max_branch) * 1.5
    else:
        score += 1.5
    weights += 1.5

    score += map_similarity(a.call_signatures, b.call_signatures) * 4.0
    weights += 4.0

    score += map_similarity(a.bin_op_counts, b.bin_op_counts) * 1.0
    weights += 1.0

    score += map_similarity(a.instr_counts, b.instr_counts) * 0.5
    weights += 0.5

    flags = [
        _bool_match(a.has_defer, b.has_defer),
        _bool_match(a.has_panic, b.has_panic),
        _bool_match(a.has_go, b.has_go),
        _bool_match(a.has_select, b.has_select),
        _bool_match(a.has_range, b.has_range),
    ]
    score += (sum(flags) / len(flags)) * 1.0
    weights += 1.0

    block_diff = abs(a.block_count - b.block_count)
    max_block = max(a.block_count, b.block_count)
    if max_block > 0:
        score += (1.0 - block_diff / (max_block * 2)) * 0.5
    else:
        score += 0.5
    weights += 0.5

    return score / weights


def short_func_name(full_name: str) -> str:
    """Strip the import path and package qualifier from a function name."""
    name = full_name.rsplit("/", 1)[-1]
    depth = 0
    for i, ch in enumerate(name):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "." and depth == 0:
            return name[i + 1:]
    return name


def topology_fingerprint(topology: Optional[FunctionTopology]) -> str:
    """Return a short human-readable summary of a topology."""
    if topology is None:
        return "nil"

    calls = sorted(topology.call_signatures)
    if len(calls) > 3:
        call_str = f"{','.join(calls[:3])},...({len(calls)})"
    else:
        call_str = ",".join(calls)

    return (
        f"L{topology.loop_count}B{topology.branch_count}"
        f"I{topology.instr_count}[{call_str}]"
    )