"""Versioning and provenance metadata kept alongside a signature store.

Entries are stored under the ``meta:`` key prefix of a
:class:`~semfirewall.signature_store.SignatureStore`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from semfirewall.signature_store import SignatureStore, StoreError

PREFIX_METADATA = b"meta:"

_KNOWN_KEYS = ("version", "description", "created_at", "last_updated_at", "source_hash")


@dataclass
class DatabaseMetadata:
    """Information about a signature database."""

    version: str = ""
    description: str = ""
    created_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None
    signature_count: int = 0
    source_hash: str = ""
    custom: dict[str, str] = field(default_factory=dict)


def _meta_key(key: str) -> bytes:
    return PREFIX_METADATA + key.encode("utf-8")


def _format_rfc3339(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.astimezone()
    moment = moment.replace(microsecond=0)
    text = moment.isoformat()
    if moment.utcoffset() == timedelta(0):
        return text[:-6] + "Z"
    return text


def _parse_rfc3339(text: str) -> Optional[datetime]:
    candidate = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    try:
        moment = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if moment.tzinfo is None or "T" not in candidate.upper():
        return None
    return moment


def _now() -> datetime:
    return datetime.now().astimezone()


class MetadataStore:
    """Key/value metadata of a :class:`SignatureStore`."""

    def __init__(self, store: SignatureStore) -> None:
        self.store = store

    def set(self, key: str, value: str) -> None:
        """Store ``value`` under the metadata ``key``."""
        self.store.set_raw(_meta_key(key), value)

    def get(self, key: str) -> str:
        """The value of metadata ``key``; KeyError if it is not set."""
        value = self.store.get_raw(_meta_key(key))
        if value is None:
            raise KeyError(f"metadata key {key!r} not found")
        return value.decode("utf-8")

    def delete(self, key: str) -> bool:
        """Remove metadata ``key``; return whether it existed."""
        return self.store.delete_raw(_meta_key(key))

    def get_all(self) -> DatabaseMetadata:
        """All metadata, with the current signature count; unset fields keep defaults."""
        meta = DatabaseMetadata()
        for raw_key, raw_value in self.store.iter_prefix(PREFIX_METADATA):
            key = raw_key[len(PREFIX_METADATA):].decode("utf-8")
            value = raw_value.decode("utf-8")
            if key == "version":
                meta.version = value
            elif key == "description":
                meta.description = value
            elif key == "created_at":
                meta.created_at = _parse_rfc3339(value)
            elif key == "last_updated_at":
                meta.last_updated_at = _parse_rfc3339(value)
            elif key == "source_hash":
                meta.source_hash = value
            else:
                meta.custom[key] = value
        try:
            meta.signature_count = self.store.count_signatures()
        except StoreError:
            meta.signature_count = 0
        return meta

    def set_all(self, metadata: DatabaseMetadata) -> None:
        """Store every non-empty field of ``metadata`` in one transaction."""
        items: list[tuple[bytes, str]] = []
        if metadata.version:
            items.append((_meta_key("version"), metadata.version))
        if metadata.description:
            items.append((_meta_key("description"), metadata.description))
        if metadata.created_at is not None:
            items.append((_meta_key("created_at"), _format_rfc3339(metadata.created_at)))
        if metadata.last_updated_at is not None:
            items.append(
                (_meta_key("last_updated_at"), _format_rfc3339(metadata.last_updated_at))
            )
        if metadata.source_hash:
            items.append((_meta_key("source_hash"), metadata.source_hash))
        for key, value in metadata.custom.items():
            items.append((_meta_key(key), value))
        self.store.write_many(items)

    def initialize(self, version: str, description: str) -> None:
        """Record the version, description and creation time of a new database."""
        now = _now()
        self.set_all(
            DatabaseMetadata(
                version=version,
                description=description,
                created_at=now,
                last_updated_at=now,
            )
        )

    def touch_last_updated(self) -> None:
        """Set the last-updated time to now."""
        self.set("last_updated_at", _format_rfc3339(_now()))