"""Import and export of signature stores as JSON documents.

The document layout is an object with a ``signatures`` array holding one
object per signature, in the form produced by
:meth:`~semfirewall.scanner.Signature.to_dict`.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Iterator, Sequence, TypeVar, Union

from semfirewall.scanner import Signature
from semfirewall.signature_store import SignatureStore

PathLike = Union[str, Path]

IMPORT_BATCH_SIZE = 1000
EXPORT_VERSION = "2.0"

_T = TypeVar("_T")


def _chunks(items: Sequence[_T], size: int) -> Iterator[Sequence[_T]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def migrate_from_json(store: SignatureStore, json_path: PathLike) -> int:
    """Import the signatures of a JSON document into ``store``.

    Signatures are written in batches of :data:`IMPORT_BATCH_SIZE`; batches
    written before a failure stay in the store. Returns the number imported.
    """
    with open(json_path, encoding="utf-8") as fh:
        try:
            data = json.load(fh)
        except ValueError as exc:
            raise ValueError(f"invalid json: {exc}") from exc

    if not isinstance(data, dict):
        raise ValueError("invalid json start: expected an object")
    if "signatures" not in data:
        raise ValueError("json file missing 'signatures' array")
    raw_signatures = data["signatures"]
    if not isinstance(raw_signatures, list):
        raise ValueError("'signatures' must be an array")

    processed = 0
    for chunk in _chunks(raw_signatures, IMPORT_BATCH_SIZE):
        try:
            signatures = [Signature.from_dict(item) for item in chunk]
        except ValueError as exc:
            raise ValueError(f"decode signature error: {exc}") from exc
        store.add_signatures(signatures)
        processed += len(signatures)
    return processed


def export_to_json(store: SignatureStore, json_path: PathLike) -> None:
    """Write every signature in ``store`` to a JSON document at ``json_path``."""
    signatures = list(store.iter_signatures())
    document = {
        "version": EXPORT_VERSION,
        "generated_at": datetime.now().astimezone().isoformat(),
        "signatures": [sig.to_dict() for sig in signatures],
    }
    Path(json_path).write_text(json.dumps(document, indent=2), encoding="utf-8")