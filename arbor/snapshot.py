"""
ARBOR State Snapshots

Persisted layout of a composition protocol's state: the Edges table
(source -> target) and the Attachments table (resource, owner -> amount).
The reverse adjacency index is not persisted; it is rebuilt on load.

    {
      "format": "arbor.state/1",
      "protocol_address": "0x...",
      "edges":       [{"source": {...}, "target": {...}}, ...],
      "attachments": [{"kind": ..., "contract": ..., "asset_id": ...,
                       "owner": {...}, "amount": "100"}, ...],
      "digest": "<sha256 of the canonical JSON of every other field>"
    }

Loading validates against the JSON Schemas shipped in ``arbor/schemas``,
recomputes the digest, and rejects duplicate rows and cycles before handing
back a fresh LinkGraph and AttachmentLedger.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union

import yaml
from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from arbor.errors import ArborError, GraphCorrupted, SnapshotError
from arbor.graph import DEFAULT_MAX_DEPTH, LinkGraph
from arbor.hardening import UINT256_MAX
from arbor.ledger import AttachmentLedger
from arbor.registry import NodeRef, ResourceKey

logger = logging.getLogger(__name__)

STATE_FORMAT = "arbor.state/1"
SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"
STATE_SCHEMA = "state.schema.json"


# =============================================================================
# CANONICAL JSON
# =============================================================================

def _coerce_json_types(obj: Any) -> Any:
    """Coerce Python objects into strict JSON types.

    - Decimals become plain (non-exponent) strings.
    - Floats are rejected to avoid non-canonical number edge cases.
    """
    if obj is None:
        return None
    if isinstance(obj, (str, bool, int)):
        return obj
    if isinstance(obj, float):
        raise ValueError("Floats are not allowed in canonical JSON. Use strings or integers.")
    if isinstance(obj, Decimal):
        return format(obj, "f")
    if isinstance(obj, (datetime, date)):
        if isinstance(obj, datetime):
            if obj.tzinfo is None:
                obj = obj.replace(tzinfo=timezone.utc)
            return obj.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
        return obj.isoformat()
    if isinstance(obj, (list, tuple)):
        return [_coerce_json_types(x) for x in obj]
    if isinstance(obj, dict):
        return {str(k): _coerce_json_types(v) for k, v in obj.items()}
    return str(obj)


def canonicalize(obj: Any) -> bytes:
    """Sorted-key, whitespace-free UTF-8 JSON (RFC 8785 compatible without floats)."""
    clean = _coerce_json_types(obj)
    return json.dumps(clean, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def state_digest(state: Dict[str, Any]) -> str:
    """SHA-256 over every field except ``digest`` itself."""
    body = {k: v for k, v in state.items() if k != "digest"}
    return hashlib.sha256(canonicalize(body)).hexdigest()


# =============================================================================
# SCHEMA VALIDATION
# =============================================================================

@lru_cache(maxsize=1)
def _schema_registry() -> Registry:
    """Registry of the bundled schemas, keyed by ``$id`` for ``$ref`` resolution."""
    resources = []
    for schema_path in sorted(SCHEMAS_DIR.glob("*.schema.json")):
        schema = json.loads(schema_path.read_text(encoding="utf-8"))
        schema_id = schema.get("$id") or f"https://schemas.arbor.dev/{schema_path.name}"
        resources.append((schema_id, Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


@lru_cache(maxsize=None)
def schema_validator(name: str = STATE_SCHEMA) -> Draft202012Validator:
    schema = json.loads((SCHEMAS_DIR / name).read_text(encoding="utf-8"))
    return Draft202012Validator(schema, registry=_schema_registry())


def validate_state(state: Any) -> List[str]:
    """Schema errors for a persisted state document (empty if valid)."""
    validator = schema_validator()
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(validator.iter_errors(state), key=lambda e: e.json_path)
    ]


# =============================================================================
# EXPORT / LOAD
# =============================================================================

@dataclass
class LoadedState:
    """Graph and ledger rebuilt from a persisted state document."""
    protocol_address: str
    graph: LinkGraph
    ledger: AttachmentLedger
    digest: str


def export_state(graph: LinkGraph, ledger: AttachmentLedger, protocol_address: str) -> Dict[str, Any]:
    """Serialise the Edges and Attachments tables with their digest."""
    state: Dict[str, Any] = {
        "format": STATE_FORMAT,
        "protocol_address": protocol_address,
        "edges": [
            {"source": source.to_dict(), "target": target.to_dict()}
            for source, target in graph.edges()
        ],
        "attachments": [
            {**attachment.to_dict(), "amount": format(attachment.amount, "f")}
            for attachment in ledger.attachments()
        ],
    }
    state["digest"] = state_digest(state)
    return state


def load_state(
    state: Dict[str, Any],
    max_depth: int = DEFAULT_MAX_DEPTH,
    max_amount: Decimal = Decimal(UINT256_MAX),
    verify_digest: bool = True,
) -> LoadedState:
    """
    Rebuild graph and ledger from a state document.

    Raises SnapshotError listing every problem found.
    """
    errors = validate_state(state)
    if errors:
        raise SnapshotError(f"State failed schema validation ({len(errors)} errors)", errors)

    digest = state_digest(state)
    if verify_digest and digest != state["digest"]:
        raise SnapshotError(
            "State digest mismatch",
            [f"recorded {state['digest']}, computed {digest}"],
        )

    graph = LinkGraph(max_depth=max_depth)
    ledger = AttachmentLedger(max_amount=max_amount)
    problems: List[str] = []

    seen_sources: Set[NodeRef] = set()
    for index, row in enumerate(state["edges"]):
        try:
            source = NodeRef.from_dict(row["source"])
            target = NodeRef.from_dict(row["target"])
        except ArborError as e:
            problems.append(f"edges[{index}]: {e}")
            continue
        if source in seen_sources:
            problems.append(f"edges[{index}]: duplicate source {source}")
            continue
        if source == target:
            problems.append(f"edges[{index}]: {source} linked to itself")
            continue
        seen_sources.add(source)
        graph.restore(source, target)

    seen_rows: Set[Tuple[ResourceKey, NodeRef]] = set()
    for index, row in enumerate(state["attachments"]):
        try:
            key = ResourceKey.from_dict(row)
            owner = NodeRef.from_dict(row["owner"])
            if (key, owner) in seen_rows:
                problems.append(f"attachments[{index}]: duplicate row for {key} on {owner}")
                continue
            seen_rows.add((key, owner))
            ledger.deposit(key, owner, row["amount"])
        except ArborError as e:
            problems.append(f"attachments[{index}]: {e}")

    if not problems:
        try:
            graph.check_invariants()
        except GraphCorrupted as e:
            problems.append(e.message)

    if problems:
        raise SnapshotError(f"State is inconsistent ({len(problems)} problems)", problems)

    logger.info(
        "Loaded state %s: %d edges, %d attachments",
        digest[:12], len(graph), len(ledger),
    )
    return LoadedState(
        protocol_address=state["protocol_address"].lower(),
        graph=graph,
        ledger=ledger,
        digest=digest,
    )


# =============================================================================
# FILES
# =============================================================================

def write_state(path: Union[str, Path], state: Dict[str, Any]) -> Path:
    """Write a state document as YAML (.yaml/.yml) or JSON (anything else)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix in (".yaml", ".yml"):
        text = yaml.safe_dump(state, sort_keys=False, default_flow_style=False)
    else:
        text = json.dumps(state, indent=2) + "\n"
    path.write_text(text, encoding="utf-8")
    return path


def read_state(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a state document written by write_state."""
    path = Path(path)
    if not path.exists():
        raise SnapshotError(f"State file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix in (".yaml", ".yml"):
            data: Optional[Any] = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise SnapshotError(f"Cannot parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise SnapshotError(f"State root must be a mapping: {path}")
    return data
