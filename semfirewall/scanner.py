"""Signature-based detection of known function topologies.

Signatures are built from the topology of known samples with
:func:`index_function` and matched against the topology of unknown code with
:class:`Scanner`.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence, Union

from semfirewall.topology import FunctionTopology, generate_fuzzy_hash

PathLike = Union[str, Path]

DEFAULT_MATCH_THRESHOLD = 0.75
DEFAULT_ENTROPY_TOLERANCE = 0.5


def _str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"expected a list of strings, got {type(value).__name__}")
    return [str(item) for item in value]


def _mapping(value: Any, what: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"expected an object for {what}, got {type(value).__name__}")
    return value


@dataclass
class ControlFlowHints:
    """Control-flow patterns that characterise a signature."""

    has_infinite_loop: bool = False
    has_reconnect_logic: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.has_infinite_loop:
            data["has_infinite_loop"] = True
        if self.has_reconnect_logic:
            data["has_reconnect_logic"] = True
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "ControlFlowHints":
        data = _mapping(data, "control_flow")
        return cls(
            has_infinite_loop=bool(data.get("has_infinite_loop", False)),
            has_reconnect_logic=bool(data.get("has_reconnect_logic", False)),
        )


@dataclass
class IdentifyingFeatures:
    """Behavioural markers used for detection."""

    required_calls: list[str] = field(default_factory=list)
    optional_calls: list[str] = field(default_factory=list)
    string_patterns: list[str] = field(default_factory=list)
    control_flow: Optional[ControlFlowHints] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.required_calls:
            data["required_calls"] = list(self.required_calls)
        if self.optional_calls:
            data["optional_calls"] = list(self.optional_calls)
        if self.string_patterns:
            data["string_patterns"] = list(self.string_patterns)
        if self.control_flow is not None:
            data["control_flow"] = self.control_flow.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "IdentifyingFeatures":
        data = _mapping(data, "identifying_features")
        control_flow = data.get("control_flow")
        return cls(
            required_calls=_str_list(data.get("required_calls")),
            optional_calls=_str_list(data.get("optional_calls")),
            string_patterns=_str_list(data.get("string_patterns")),
            control_flow=None if control_flow is None else ControlFlowHints.from_dict(control_flow),
        )


@dataclass
class SignatureMetadata:
    """Provenance of a signature."""

    author: str = ""
    created: str = ""
    references: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"author": self.author, "created": self.created}
        if self.references:
            data["references"] = list(self.references)
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "SignatureMetadata":
        data = _mapping(data, "metadata")
        return cls(
            author=str(data.get("author") or ""),
            created=str(data.get("created") or ""),
            references=_str_list(data.get("references")),
        )


@dataclass
class Signature:
    """A single malware signature entry."""

    id: str = ""
    name: str = ""
    description: str = ""
    severity: str = ""
    category: str = ""
    topology_hash: str = ""
    fuzzy_hash: str = ""
    entropy_score: float = 0.0
    entropy_tolerance: float = 0.0
    node_count: int = 0
    loop_depth: int = 0
    identifying_features: IdentifyingFeatures = field(default_factory=IdentifyingFeatures)
    metadata: SignatureMetadata = field(default_factory=SignatureMetadata)

    def to_dict(self) -> dict[str, Any]:
        """The JSON object form of the signature."""
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "severity": self.severity,
            "category": self.category,
            "topology_hash": self.topology_hash,
        }
        if self.fuzzy_hash:
            data["fuzzy_hash"] = self.fuzzy_hash
        data.update(
            {
                "entropy_score": self.entropy_score,
                "entropy_tolerance": self.entropy_tolerance,
                "node_count": self.node_count,
                "loop_depth": self.loop_depth,
                "identifying_features": self.identifying_features.to_dict(),
                "metadata": self.metadata.to_dict(),
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "Signature":
        """Build a signature from its JSON object form; unknown keys are ignored."""
        data = _mapping(data, "signature")
        try:
            return cls(
                id=str(data.get("id") or ""),
                name=str(data.get("name") or ""),
                description=str(data.get("description") or ""),
                severity=str(data.get("severity") or ""),
                category=str(data.get("category") or ""),
                topology_hash=str(data.get("topology_hash") or ""),
                fuzzy_hash=str(data.get("fuzzy_hash") or ""),
                entropy_score=float(data.get("entropy_score") or 0.0),
                entropy_tolerance=float(data.get("entropy_tolerance") or 0.0),
                node_count=int(data.get("node_count") or 0),
                loop_depth=int(data.get("loop_depth") or 0),
                identifying_features=IdentifyingFeatures.from_dict(data.get("identifying_features")),
                metadata=SignatureMetadata.from_dict(data.get("metadata")),
            )
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid signature: {exc}") from exc


@dataclass
class SignatureDatabase:
    """A collection of signatures with a version and description."""

    version: str = ""
    description: str = ""
    signatures: list[Signature] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "description": self.description,
            "signatures": [sig.to_dict() for sig in self.signatures],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "SignatureDatabase":
        data = _mapping(data, "signature database")
        raw_signatures = data.get("signatures")
        if raw_signatures is None:
            raw_signatures = []
        if not isinstance(raw_signatures, list):
            raise ValueError("signatures must be a list")
        return cls(
            version=str(data.get("version") or ""),
            description=str(data.get("description") or ""),
            signatures=[Signature.from_dict(item) for item in raw_signatures],
        )


@dataclass
class MatchDetails:
    """Per-criterion outcome of matching a topology against a signature."""

    topology_match: bool = False
    entropy_match: bool = False
    calls_matched: list[str] = field(default_factory=list)
    calls_missing: list[str] = field(default_factory=list)
    strings_matched: list[str] = field(default_factory=list)
    topology_similarity: float = 0.0
    entropy_distance: float = 0.0


@dataclass
class ScanResult:
    """A match between analysed code and a signature."""

    signature_id: str = ""
    signature_name: str = ""
    severity: str = ""
    matched_function: str = ""
    confidence: float = 0.0
    match_details: MatchDetails = field(default_factory=MatchDetails)


def _go_len(text: str) -> int:
    return len(text.encode("utf-8"))


def generate_topology_hash(topology: FunctionTopology) -> str:
    """Hash of the structural features of a topology, as 32 hex digits."""
    parts = [
        f"P{topology.param_count}",
        f"R{topology.return_count}",
        f"B{topology.block_count}",
        f"I{topology.instr_count}",
        f"L{topology.loop_count}",
        f"BR{topology.branch_count}",
    ]
    # Length-prefixed entries keep distinct call sets from colliding.
    calls = sorted(
        f"{_go_len(call)}:{call}:{count}" for call, count in topology.call_signatures.items()
    )
    parts.append(";".join(calls))
    for flag, marker in (
        (topology.has_defer, "D"),
        (topology.has_go, "G"),
        (topology.has_select, "S"),
        (topology.has_panic, "P"),
    ):
        if flag:
            parts.append(marker)

    digest = hashlib.sha256("".join(parts).encode("utf-8")).digest()
    return digest[:16].hex()


def _extract_string_patterns(literals: Iterable[str]) -> list[str]:
    patterns = set()
    for literal in literals:
        if _go_len(literal) < 3:
            continue
        clean = literal.strip("\"'`")
        if _go_len(clean) >= 3:
            patterns.add(clean)
    return sorted(patterns)


def _has_reconnect_pattern(topology: FunctionTopology) -> bool:
    calls = topology.call_signatures
    has_dial = any("net.Dial" in call for call in calls)
    has_sleep = any("time.Sleep" in call for call in calls)
    return has_dial and has_sleep and topology.loop_count > 0


def index_function(
    topology: FunctionTopology,
    name: str,
    description: str,
    severity: str,
    category: str,
) -> Signature:
    """Build a signature entry from the topology of a known sample."""
    return Signature(
        name=name,
        description=description,
        severity=severity,
        category=category,
        topology_hash=generate_topology_hash(topology),
        fuzzy_hash=generate_fuzzy_hash(topology),
        entropy_score=topology.entropy_score,
        entropy_tolerance=DEFAULT_ENTROPY_TOLERANCE,
        node_count=topology.block_count,
        loop_depth=topology.loop_count,
        identifying_features=IdentifyingFeatures(
            required_calls=sorted(topology.call_signatures),
            string_patterns=_extract_string_patterns(topology.string_literals),
            control_flow=ControlFlowHints(
                has_infinite_loop=topology.loop_count > 0 and not topology.has_range,
                has_reconnect_logic=_has_reconnect_pattern(topology),
            ),
        ),
    )


def _ratio(a: int, b: int) -> float:
    ratio = a / b
    return 1 / ratio if ratio > 1 else ratio


def compute_topology_similarity(topology: FunctionTopology, signature: Signature) -> float:
    """Structural similarity of a topology to a signature, in [0, 1]."""
    scores: list[float] = []

    if signature.node_count > 0:
        if topology.block_count >= 0:
            scores.append(_ratio(topology.block_count, signature.node_count))
        else:
            scores.append(0.0)

    if signature.loop_depth > 0:
        if topology.loop_count == signature.loop_depth:
            scores.append(1.0)
        elif topology.loop_count > 0:
            scores.append(_ratio(topology.loop_count, signature.loop_depth))
        else:
            scores.append(0.0)

    if not scores:
        return 0.5
    return sum(scores) / len(scores)


def match_calls(
    topology: FunctionTopology, required: Sequence[str]
) -> tuple[float, list[str], list[str]]:
    """Return the fraction of required calls present, the matched and the missing ones."""
    matched: list[str] = []
    missing: list[str] = []
    for req in required:
        if any(req in call for call in topology.call_signatures):
            matched.append(req)
        else:
            missing.append(req)
    score = len(matched) / len(required) if required else 0.0
    return score, matched, missing


def match_strings(
    topology: FunctionTopology, patterns: Sequence[str]
) -> tuple[float, list[str]]:
    """Return the fraction of patterns found case-insensitively, and those found."""
    lowered = [literal.lower() for literal in topology.string_literals]
    matched = [p for p in patterns if any(p.lower() in lit for lit in lowered)]
    score = len(matched) / len(patterns) if patterns else 0.0
    return score, matched


def _entropy_distance(a: float, b: float) -> float:
    return abs(a - b)


def match_signature(
    topology: FunctionTopology,
    func_name: str,
    signature: Signature,
    tolerance: float,
) -> ScanResult:
    """Score how well a topology matches a signature.

    ``tolerance`` is the entropy window used when the signature has none.
    """
    result = ScanResult(
        signature_id=signature.id,
        signature_name=signature.name,
        severity=signature.severity,
        matched_function=func_name,
    )
    details = MatchDetails()
    scores: list[float] = []

    if generate_topology_hash(topology) == signature.topology_hash:
        details.topology_match = True
        details.topology_similarity = 1.0
        scores.append(1.0)
    else:
        similarity = compute_topology_similarity(topology, signature)
        details.topology_similarity = similarity
        details.topology_match = similarity > 0.8
        scores.append(similarity)

    sig_tolerance = signature.entropy_tolerance or tolerance
    distance = _entropy_distance(topology.entropy_score, signature.entropy_score)
    details.entropy_distance = distance
    details.entropy_match = distance <= sig_tolerance
    if details.entropy_match:
        # A zero window yields an undefined score, which never reaches a threshold.
        scores.append(1.0 - distance / sig_tolerance if sig_tolerance else math.nan)
    else:
        scores.append(0.5)

    required = signature.identifying_features.required_calls
    if required:
        call_score, matched, missing = match_calls(topology, required)
        details.calls_matched = matched
        details.calls_missing = missing
        if missing:
            result.confidence = 0.0
            result.match_details = details
            return result
        scores.append(call_score)

    patterns = signature.identifying_features.string_patterns
    if patterns:
        string_score, matched_strings = match_strings(topology, patterns)
        details.strings_matched = matched_strings
        if string_score > 0:
            scores.append(string_score)

    result.confidence = sum(scores) / len(scores)
    result.match_details = details
    return result


class Scanner:
    """Matches function topologies against an in-memory signature database."""

    def __init__(
        self,
        threshold: float = DEFAULT_MATCH_THRESHOLD,
        entropy_tolerance: float = DEFAULT_ENTROPY_TOLERANCE,
    ) -> None:
        self.database = SignatureDatabase()
        self.threshold = threshold
        self.entropy_tolerance = entropy_tolerance

    def load_database(self, path: PathLike) -> None:
        """Replace the database with the signatures stored in a JSON file."""
        with open(path, encoding="utf-8") as fh:
            try:
                data = json.load(fh)
                database = SignatureDatabase.from_dict(data)
            except ValueError as exc:
                raise ValueError(f"failed to parse signature database: {exc}") from exc
        self.database = database

    def save_database(self, path: PathLike) -> None:
        """Write the database to a JSON file."""
        Path(path).write_text(json.dumps(self.database.to_dict(), indent=2), encoding="utf-8")

    def add_signature(self, signature: Signature) -> Signature:
        """Append a signature, assigning an ID if it has none, and return it."""
        if not signature.id:
            signature = dataclasses.replace(
                signature, id=f"SFW-AUTO-{len(self.database.signatures) + 1}"
            )
        self.database.signatures.append(signature)
        return signature

    def scan_topology(self, topology: FunctionTopology, func_name: str) -> list[ScanResult]:
        """Signatures matching a topology at or above the threshold, best first."""
        results = [
            result
            for result in (
                match_signature(topology, func_name, sig, self.entropy_tolerance)
                for sig in self.database.signatures
            )
            if result.confidence >= self.threshold
        ]
        results.sort(key=lambda r: r.confidence, reverse=True)
        return results