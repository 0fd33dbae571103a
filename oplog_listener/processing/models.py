"""
Oplog operation model.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from bson import Timestamp


class OpKind(str, Enum):
    """Oplog operation kind, keyed by the oplog ``op`` code."""
    INSERT = "i"
    UPDATE = "u"
    DELETE = "d"
    OTHER = "other"

    @classmethod
    def from_code(cls, code: Optional[str]) -> "OpKind":
        for kind in (cls.INSERT, cls.UPDATE, cls.DELETE):
            if code == kind.value:
                return kind
        return cls.OTHER


@dataclass
class Op:
    """
    A single oplog entry.

    Attributes:
        kind: insert/update/delete/other
        namespace: ``db.collection`` the op applies to
        id: Identifier of the affected document (from ``o2`` for updates)
        payload: Full document (insert, replacement update) or update operators
        position: Oplog timestamp; resume cursor and checkpoint value
        target: The ``o2`` selector of updates, if any
    """
    kind: OpKind
    namespace: str
    id: Any
    payload: Optional[Dict[str, Any]]
    position: Optional[Timestamp]
    target: Optional[Dict[str, Any]] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_entry(cls, entry: Mapping[str, Any]) -> "Op":
        """Parse a raw oplog document (``{op, ns, o, o2?, ts}``)."""
        payload = entry.get("o")
        target = entry.get("o2")
        selector = target or payload or {}
        return cls(
            kind=OpKind.from_code(entry.get("op")),
            namespace=entry.get("ns", ""),
            id=selector.get("_id") if isinstance(selector, Mapping) else None,
            payload=payload,
            position=entry.get("ts"),
            target=target,
            raw=dict(entry),
        )

    @property
    def is_upsert_kind(self) -> bool:
        return self.kind in (OpKind.INSERT, OpKind.UPDATE)
