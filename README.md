# semfirewall

Semantic malware detection built on the structural "shape" of functions rather
than their names or byte patterns.

The package provides:

- **`semfirewall.topology`**: `FunctionTopology`, a name-independent summary of a
  function (block, loop, branch and instruction counts, call profile, operator
  profile, parameter and return types, control-flow flags, string literals and an
  entropy score). It also has similarity measures (`topology_similarity`,
  `map_similarity`, `type_list_similarity`), a short bucketed
  `generate_fuzzy_hash` (such as `B2L1BR1`), `short_func_name` and a readable
  `topology_fingerprint`.
- **`semfirewall.scanner`**: the signature model (`Signature`,
  `SignatureDatabase`, `IdentifyingFeatures`, `ControlFlowHints`,
  `SignatureMetadata`, `ScanResult`, `MatchDetails`) and an in-memory `Scanner`
  that loads and saves JSON signature databases. `index_function` builds a
  signature from a topology, `generate_topology_hash` hashes a topology's
  structure, and `Scanner.scan_topology` scores a topology against every
  signature.
- **`semfirewall.signature_store`**: `SignatureStore`, a persistent signature
  database on LMDB. It keeps exact topology-hash, fuzzy-hash and entropy indexes,
  and offers snapshots, batch scans, entropy range queries, index rebuilds,
  compaction and statistics.
- **`semfirewall.metadata`**: `MetadataStore` and `DatabaseMetadata`, which keep
  versioning and provenance information in the same store as the signatures.
- **`semfirewall.store_io`**: `migrate_from_json` and `export_to_json`, which move
  signatures between a store and a JSON document.

## Installation

```
pip install semfirewall
```

## Building a signature and scanning

```python
from semfirewall.topology import FunctionTopology
from semfirewall.scanner import Scanner, index_function

beacon = FunctionTopology(
    block_count=5,
    loop_count=1,
    branch_count=2,
    call_signatures={"net.Dial": 1, "time.Sleep": 1},
    entropy_score=5.2,
)

signature = index_function(beacon, "Beacon", "Reconnecting beacon", "HIGH", "backdoor")

scanner = Scanner()                      # threshold 0.75, entropy tolerance 0.5
signature = scanner.add_signature(signature)   # assigns an ID such as SFW-AUTO-1
scanner.save_database("signatures.json")

for result in scanner.scan_topology(beacon, "suspicious_func"):
    print(result.signature_id, result.confidence)
```

A match is scored from the topology (an exact topology-hash match scores 1.0,
otherwise block and loop counts are compared), the entropy distance, the
required calls and any string patterns. Required calls have veto power: if any
of them is missing from the scanned function, the confidence is 0. Results
below the scanner's threshold are dropped and the rest are returned best first.

## Persistent store

```python
from semfirewall.signature_store import SignatureStore, StoreOptions
from semfirewall.store_io import migrate_from_json, export_to_json
from semfirewall.metadata import MetadataStore

with SignatureStore("signatures.db", StoreOptions()) as store:
    migrate_from_json(store, "signatures.json")
    MetadataStore(store).initialize("1.0.0", "Production signatures")
    print(store.count_signatures(), store.stats())

    hits = store.scan_topology(beacon, "suspicious_func")
    best = store.scan_topology_exact(beacon, "suspicious_func")
    per_function = store.scan_batch({"suspicious_func": beacon})

    export_to_json(store, "export.json")
```

`SignatureStore.scan_topology` looks only at signatures indexed under the
topology's exact hash or its fuzzy bucket. `StoreOptions` holds
`match_threshold`, `entropy_tolerance`, `read_only` and `map_size`; a zero value
means the default. A store opened with `StoreOptions(read_only=True)` refuses to
open a database that does not exist yet.

Failures raise `StoreError`; a missing signature raises
`SignatureNotFoundError`, and a missing metadata key raises `KeyError`.

## What this package does not do

- It does not read or analyse program code. A `FunctionTopology` is built by
  the caller, who supplies its counts, call profile, string literals and
  entropy score; nothing here derives them from source or compiled code.
- It does not match functions between two versions of a program; it only
  compares topologies that it is given.
- It has no command-line tool; it is used as a library.

## Running the tests

```
pip install "semfirewall[test]"
pytest
```