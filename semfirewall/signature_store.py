"""Persistent signature storage with topology, fuzzy and entropy indexes.

Records live in a single LMDB key space, separated by key prefixes:

* ``sig:<id>``                  the signature as JSON
* ``topo:<topology hash>:<id>`` exact topology index, value is the ID
* ``fuzzy:<fuzzy hash>:<id>``   fuzzy bucket index, value is the ID
* ``entr:<entropy>:<id>``       entropy index, sortable, value is the ID

Other prefixes, such as ``meta:``, are free for callers through the raw
key/value methods.
"""

from __future__ import annotations

import dataclasses
import json
import os
import secrets
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Optional, Union

import lmdb

from semfirewall.scanner import ScanResult, Signature, generate_topology_hash, match_signature
from semfirewall.topology import FunctionTopology, generate_fuzzy_hash

PathLike = Union[str, Path]
KeyLike = Union[str, bytes]

PREFIX_SIGNATURES = b"sig:"
PREFIX_TOPOLOGY = b"topo:"
PREFIX_FUZZY = b"fuzzy:"
PREFIX_ENTROPY = b"entr:"

DEFAULT_MATCH_THRESHOLD = 0.75
DEFAULT_ENTROPY_TOLERANCE = 0.5
DEFAULT_MAP_SIZE = 128 << 20


class StoreError(Exception):
    """A signature store operation failed."""


class SignatureNotFoundError(StoreError):
    """The requested signature does not exist."""


@dataclass
class StoreOptions:
    """Settings for opening a :class:`SignatureStore`; zero values mean the default."""

    match_threshold: float = DEFAULT_MATCH_THRESHOLD
    entropy_tolerance: float = DEFAULT_ENTROPY_TOLERANCE
    read_only: bool = False
    map_size: int = DEFAULT_MAP_SIZE


@dataclass
class StoreStats:
    """Record counts and disk usage of a store."""

    signature_count: int = 0
    topo_index_count: int = 0
    fuzzy_index_count: int = 0
    entropy_index_count: int = 0
    disk_space_used: int = 0


def _to_bytes(value: KeyLike) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


def _signature_key(signature_id: str) -> bytes:
    return PREFIX_SIGNATURES + signature_id.encode("utf-8")


def _topology_prefix(topology_hash: str) -> bytes:
    return PREFIX_TOPOLOGY + f"{topology_hash}:".encode("utf-8")


def _fuzzy_prefix(fuzzy_hash: str) -> bytes:
    return PREFIX_FUZZY + f"{fuzzy_hash}:".encode("utf-8")


def _topology_key(topology_hash: str, signature_id: str) -> bytes:
    return _topology_prefix(topology_hash) + signature_id.encode("utf-8")


def _fuzzy_key(fuzzy_hash: str, signature_id: str) -> bytes:
    return _fuzzy_prefix(fuzzy_hash) + signature_id.encode("utf-8")


def _entropy_key(entropy: float, signature_id: str) -> bytes:
    return PREFIX_ENTROPY + f"{entropy:08.4f}:{signature_id}".encode("utf-8")


def _random_id() -> str:
    return f"SFW-AUTO-{secrets.token_hex(8)}"


def _rfc3339_now() -> str:
    now = datetime.now().astimezone().replace(microsecond=0)
    text = now.isoformat()
    if now.utcoffset() == timedelta(0):
        return text[:-6] + "Z"
    return text


def _decode_signature(data: bytes, signature_id: str) -> Signature:
    try:
        return Signature.from_dict(json.loads(data))
    except ValueError as exc:
        raise StoreError(f"corrupt signature {signature_id!r}: {exc}") from exc


def _encode_signature(signature: Signature) -> bytes:
    return json.dumps(signature.to_dict(), separators=(",", ":")).encode("utf-8")


def _prefix_items(txn: Any, prefix: bytes) -> Iterator[tuple[bytes, bytes]]:
    cursor = txn.cursor()
    if not cursor.set_range(prefix):
        return
    for key, value in cursor:
        if not key.startswith(prefix):
            break
        yield bytes(key), bytes(value)


def _load_signature(txn: Any, signature_id: str) -> Optional[Signature]:
    data = txn.get(_signature_key(signature_id))
    if data is None:
        return None
    try:
        return _decode_signature(data, signature_id)
    except StoreError:
        return None


class _Snapshot:
    """A read-only, point-in-time view of a store."""

    def __init__(self, txn: Any) -> None:
        self._txn = txn

    def get(self, key: KeyLike) -> Optional[bytes]:
        value = self._txn.get(_to_bytes(key))
        return None if value is None else bytes(value)

    def items(self, prefix: KeyLike) -> Iterator[tuple[bytes, bytes]]:
        return _prefix_items(self._txn, _to_bytes(prefix))

    def close(self) -> None:
        if self._txn is not None:
            self._txn.abort()
            self._txn = None

    def __enter__(self) -> "_Snapshot":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class SignatureStore:
    """Signature database on disk with indexed topology scanning."""

    def __init__(self, path: PathLike, options: Optional[StoreOptions] = None) -> None:
        options = options or StoreOptions()
        self.threshold = options.match_threshold or DEFAULT_MATCH_THRESHOLD
        self.entropy_tolerance = options.entropy_tolerance or DEFAULT_ENTROPY_TOLERANCE
        self.read_only = options.read_only
        self._map_size = options.map_size or DEFAULT_MAP_SIZE
        self._path = Path(path)

        if self.read_only and not self._path.exists():
            raise StoreError(f"database does not exist: {self._path}")
        self._env: Optional[Any] = self._open()

    def _open(self) -> Any:
        try:
            return lmdb.open(
                str(self._path),
                subdir=True,
                readonly=self.read_only,
                create=not self.read_only,
                map_size=self._map_size,
            )
        except lmdb.Error as exc:
            raise StoreError(f"failed to open signature db {str(self._path)!r}: {exc}") from exc

    @property
    def _db(self) -> Any:
        if self._env is None:
            raise StoreError("signature store is closed")
        return self._env

    def close(self) -> None:
        """Flush and close the database; further calls do nothing."""
        if self._env is not None:
            self._env.close()
            self._env = None

    def __enter__(self) -> "SignatureStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @contextmanager
    def _write_txn(self) -> Iterator[Any]:
        try:
            with self._db.begin(write=True) as txn:
                yield txn
        except lmdb.Error as exc:
            raise StoreError(f"write failed: {exc}") from exc

    @contextmanager
    def _read_txn(self) -> Iterator[Any]:
        try:
            with self._db.begin() as txn:
                yield txn
        except lmdb.Error as exc:
            raise StoreError(f"read failed: {exc}") from exc

    # -- writing signatures --

    @staticmethod
    def _put_signature(txn: Any, signature: Signature) -> Signature:
        if not signature.id:
            signature = dataclasses.replace(signature, id=_random_id())
        if not signature.topology_hash:
            raise ValueError(f"signature {signature.id!r} missing required topology hash")

        sig_key = _signature_key(signature.id)
        existing = txn.get(sig_key)
        if existing is not None:
            try:
                old = _decode_signature(existing, signature.id)
            except StoreError:
                old = None
            if old is not None:
                if old.topology_hash != signature.topology_hash:
                    txn.delete(_topology_key(old.topology_hash, old.id))
                if old.fuzzy_hash and old.fuzzy_hash != signature.fuzzy_hash:
                    txn.delete(_fuzzy_key(old.fuzzy_hash, old.id))
                if old.entropy_score != signature.entropy_score:
                    txn.delete(_entropy_key(old.entropy_score, old.id))

        id_bytes = signature.id.encode("utf-8")
        txn.put(sig_key, _encode_signature(signature))
        txn.put(_topology_key(signature.topology_hash, signature.id), id_bytes)
        if signature.fuzzy_hash:
            txn.put(_fuzzy_key(signature.fuzzy_hash, signature.id), id_bytes)
        txn.put(_entropy_key(signature.entropy_score, signature.id), id_bytes)
        return signature

    def add_signature(self, signature: Signature) -> Signature:
        """Store a signature and its indexes atomically; return it with its ID."""
        with self._write_txn() as txn:
            return self._put_signature(txn, signature)

    def add_signatures(self, signatures: Iterable[Signature]) -> list[Signature]:
        """Store several signatures in a single atomic transaction."""
        with self._write_txn() as txn:
            return [self._put_signature(txn, sig) for sig in signatures]

    def delete_signature(self, signature_id: str) -> None:
        """Remove a signature and its index entries atomically."""
        with self._write_txn() as txn:
            sig_key = _signature_key(signature_id)
            data = txn.get(sig_key)
            if data is None:
                raise SignatureNotFoundError(f"signature {signature_id!r} not found")
            signature = _decode_signature(data, signature_id)
            txn.delete(_topology_key(signature.topology_hash, signature.id))
            if signature.fuzzy_hash:
                txn.delete(_fuzzy_key(signature.fuzzy_hash, signature.id))
            txn.delete(_entropy_key(signature.entropy_score, signature.id))
            txn.delete(sig_key)

    def mark_false_positive(self, signature_id: str, notes: str) -> Signature:
        """Append a timestamped false-positive note to a signature's references."""
        with self._write_txn() as txn:
            sig_key = _signature_key(signature_id)
            data = txn.get(sig_key)
            if data is None:
                raise SignatureNotFoundError(f"signature {signature_id!r} not found")
            signature = _decode_signature(data, signature_id)
            signature.metadata.references.append(f"FP:{_rfc3339_now()}:{notes}")
            txn.put(sig_key, _encode_signature(signature))
            return signature

    # -- scanning --

    def _scan(self, txn: Any, topology: FunctionTopology, func_name: str) -> list[ScanResult]:
        threshold = self.threshold
        tolerance = self.entropy_tolerance
        prefixes = (
            _topology_prefix(generate_topology_hash(topology)),
            _fuzzy_prefix(generate_fuzzy_hash(topology)),
        )

        results: list[ScanResult] = []
        seen: set[str] = set()
        for prefix in prefixes:
            for _, value in _prefix_items(txn, prefix):
                signature_id = value.decode("utf-8")
                if signature_id in seen:
                    continue
                seen.add(signature_id)
                signature = _load_signature(txn, signature_id)
                if signature is None:
                    continue
                result = match_signature(topology, func_name, signature, tolerance)
                if result.confidence >= threshold:
                    results.append(result)

        results.sort(key=lambda r: r.confidence, reverse=True)
        return results

    def scan_topology(
        self, topology: Optional[FunctionTopology], func_name: str
    ) -> list[ScanResult]:
        """Match a topology against its exact and fuzzy index buckets, best first."""
        if topology is None:
            return []
        with self._read_txn() as txn:
            return self._scan(txn, topology, func_name)

    def scan_topology_exact(
        self, topology: Optional[FunctionTopology], func_name: str
    ) -> Optional[ScanResult]:
        """Best match among signatures with the exact topology hash, if any."""
        if topology is None:
            return None
        threshold = self.threshold
        tolerance = self.entropy_tolerance
        best: Optional[ScanResult] = None
        with self._read_txn() as txn:
            prefix = _topology_prefix(generate_topology_hash(topology))
            for _, value in _prefix_items(txn, prefix):
                signature = _load_signature(txn, value.decode("utf-8"))
                if signature is None:
                    continue
                result = match_signature(topology, func_name, signature, tolerance)
                if result.confidence >= threshold and (
                    best is None or result.confidence > best.confidence
                ):
                    best = result
        return best

    def snapshot(self) -> _Snapshot:
        """A consistent read-only view; close it, or use it as a context manager."""
        try:
            return _Snapshot(self._db.begin())
        except lmdb.Error as exc:
            raise StoreError(f"snapshot failed: {exc}") from exc

    def scan_topology_with_snapshot(
        self, snapshot: Optional[_Snapshot], topology: Optional[FunctionTopology], func_name: str
    ) -> list[ScanResult]:
        """Like :meth:`scan_topology`, reading from ``snapshot``."""
        if snapshot is None or topology is None:
            return []
        if snapshot._txn is None:
            raise StoreError("snapshot is closed")
        return self._scan(snapshot._txn, topology, func_name)

    def scan_batch(
        self, topologies: Mapping[str, Optional[FunctionTopology]]
    ) -> dict[str, list[ScanResult]]:
        """Scan many topologies against one snapshot; only names with matches appear."""
        results: dict[str, list[ScanResult]] = {}
        with self.snapshot() as snap:
            for func_name, topology in topologies.items():
                if topology is None:
                    continue
                matches = self.scan_topology_with_snapshot(snap, topology, func_name)
                if matches:
                    results[func_name] = matches
        return results

    def scan_by_entropy_range(self, min_entropy: float, max_entropy: float) -> list[Signature]:
        """Signatures whose entropy score lies in ``[min_entropy, max_entropy]``."""
        lower = PREFIX_ENTROPY + f"{min_entropy:08.4f}:".encode("utf-8")
        upper = PREFIX_ENTROPY + f"{max_entropy + 0.0001:08.4f}:".encode("utf-8")
        found: list[Signature] = []
        seen: set[str] = set()
        with self._read_txn() as txn:
            cursor = txn.cursor()
            if not cursor.set_range(lower):
                return found
            for key, value in cursor:
                if bytes(key) >= upper:
                    break
                signature_id = bytes(value).decode("utf-8")
                if signature_id in seen:
                    continue
                seen.add(signature_id)
                signature = _load_signature(txn, signature_id)
                if signature is not None:
                    found.append(signature)
        return found

    # -- reading signatures --

    def get_signature(self, signature_id: str) -> Signature:
        """The signature with ``signature_id``."""
        with self._read_txn() as txn:
            data = txn.get(_signature_key(signature_id))
            if data is None:
                raise SignatureNotFoundError(f"signature {signature_id!r} not found")
            return _decode_signature(bytes(data), signature_id)

    def get_signature_by_topology(self, topology_hash: str) -> Signature:
        """The first signature indexed under ``topology_hash``."""
        with self._read_txn() as txn:
            first = next(_prefix_items(txn, _topology_prefix(topology_hash)), None)
            if first is None:
                raise SignatureNotFoundError(f"no signature with topology hash {topology_hash!r}")
            signature_id = first[1].decode("utf-8")
            data = txn.get(_signature_key(signature_id))
            if data is None:
                raise SignatureNotFoundError(f"signature {signature_id!r} not found")
            return _decode_signature(bytes(data), signature_id)

    def _count(self, prefix: bytes) -> int:
        with self._read_txn() as txn:
            return sum(1 for _ in _prefix_items(txn, prefix))

    def count_signatures(self) -> int:
        """Number of stored signatures."""
        return self._count(PREFIX_SIGNATURES)

    def list_signature_ids(self) -> list[str]:
        """All signature IDs in key order."""
        with self._read_txn() as txn:
            return [
                key[len(PREFIX_SIGNATURES):].decode("utf-8")
                for key, _ in _prefix_items(txn, PREFIX_SIGNATURES)
                if len(key) > len(PREFIX_SIGNATURES)
            ]

    def iter_signatures(self) -> Iterator[Signature]:
        """Yield every stored signature; a corrupt record raises StoreError."""
        with self._read_txn() as txn:
            for key, value in _prefix_items(txn, PREFIX_SIGNATURES):
                yield _decode_signature(value, key[len(PREFIX_SIGNATURES):].decode("utf-8"))

    # -- maintenance --

    def rebuild_indexes(self) -> None:
        """Recreate every index entry from the master signature records."""
        signatures = list(self.iter_signatures())
        with self._write_txn() as txn:
            stale = [
                key
                for prefix in (PREFIX_TOPOLOGY, PREFIX_FUZZY, PREFIX_ENTROPY)
                for key, _ in _prefix_items(txn, prefix)
            ]
            for key in stale:
                txn.delete(key)
            for signature in signatures:
                id_bytes = signature.id.encode("utf-8")
                txn.put(_topology_key(signature.topology_hash, signature.id), id_bytes)
                if signature.fuzzy_hash:
                    txn.put(_fuzzy_key(signature.fuzzy_hash, signature.id), id_bytes)
                txn.put(_entropy_key(signature.entropy_score, signature.id), id_bytes)

    def compact(self) -> None:
        """Rewrite the data file without free pages to reclaim space."""
        if self.read_only:
            raise StoreError("cannot compact a read-only store")
        env = self._db
        with tempfile.TemporaryDirectory(dir=self._path.parent) as tmp:
            try:
                env.copy(tmp, compact=True)
            except lmdb.Error as exc:
                raise StoreError(f"compaction failed: {exc}") from exc
            env.close()
            self._env = None
            try:
                os.replace(Path(tmp) / "data.mdb", self._path / "data.mdb")
            finally:
                self._env = self._open()

    def checkpoint(self) -> None:
        """Force all written data to disk."""
        try:
            self._db.sync(True)
        except lmdb.Error as exc:
            raise StoreError(f"checkpoint failed: {exc}") from exc

    def stats(self) -> StoreStats:
        """Counts of records and index entries, and pages in use in bytes."""
        with self._read_txn() as txn:
            counts = [
                sum(1 for _ in _prefix_items(txn, prefix))
                for prefix in (PREFIX_SIGNATURES, PREFIX_TOPOLOGY, PREFIX_FUZZY, PREFIX_ENTROPY)
            ]
        info = self._db.info()
        page_size = self._db.stat()["psize"]
        return StoreStats(
            signature_count=counts[0],
            topo_index_count=counts[1],
            fuzzy_index_count=counts[2],
            entropy_index_count=counts[3],
            disk_space_used=(info["last_pgno"] + 1) * page_size,
        )

    # -- raw key/value access --

    def set_raw(self, key: KeyLike, value: KeyLike) -> None:
        """Store ``value`` under ``key``."""
        with self._write_txn() as txn:
            txn.put(_to_bytes(key), _to_bytes(value))

    def get_raw(self, key: KeyLike) -> Optional[bytes]:
        """The value under ``key``, or None."""
        with self._read_txn() as txn:
            value = txn.get(_to_bytes(key))
            return None if value is None else bytes(value)

    def delete_raw(self, key: KeyLike) -> bool:
        """Remove ``key``; return whether it existed."""
        with self._write_txn() as txn:
            return bool(txn.delete(_to_bytes(key)))

    def iter_prefix(self, prefix: KeyLike) -> Iterator[tuple[bytes, bytes]]:
        """Yield ``(key, value)`` pairs whose key starts with ``prefix``, in key order."""
        with self._read_txn() as txn:
            yield from _prefix_items(txn, _to_bytes(prefix))

    def write_many(self, items: Iterable[tuple[KeyLike, Optional[KeyLike]]]) -> None:
        """Apply puts, and deletes where the value is None, in one transaction."""
        with self._write_txn() as txn:
            for key, value in items:
                if value is None:
                    txn.delete(_to_bytes(key))
                else:
                    txn.put(_to_bytes(key), _to_bytes(value))