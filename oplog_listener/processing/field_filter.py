"""
Field inclusion filtering for documents and update field paths.

A filter tree maps field names to either ``ALLOW`` (the field and everything
under it passes) or a nested ``Node``. Fields missing from the tree are pruned.
No tree at all means every field passes.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union
import logging

logger = logging.getLogger(__name__)

ID_FIELD = "_id"


@dataclass(frozen=True)
class Allow:
    """Leaf marker: the field and all of its sub-fields are allowed."""

    def __repr__(self) -> str:
        return "ALLOW"


ALLOW = Allow()


@dataclass(frozen=True)
class Node:
    """Subtree: only the listed children are allowed."""
    children: Dict[str, "FilterTree"] = field(default_factory=dict)

    def get(self, name: str) -> Optional["FilterTree"]:
        return self.children.get(name)


FilterTree = Union[Allow, Node]


def build_filter_tree(mapping: Mapping[str, Any]) -> Node:
    """
    Build a filter tree from a plain mapping.

    Mappings become ``Node``; truthy scalars become ``ALLOW``; falsy values
    leave the field out of the tree (so it is disallowed).

    Example:
        >>> build_filter_tree({"profile": {"name": True}, "age": 1, "ssn": False})
        Node(children={'profile': Node(children={'name': ALLOW}), 'age': ALLOW})
    """
    if not isinstance(mapping, Mapping):
        raise TypeError(f"filter must be a mapping, got {type(mapping).__name__}")

    children: Dict[str, FilterTree] = {}
    for name, value in mapping.items():
        if isinstance(value, (Allow, Node)):
            children[name] = value
        elif isinstance(value, Mapping):
            children[name] = build_filter_tree(value)
        elif value:
            children[name] = ALLOW
    return Node(children)


def _is_positional(segment: str) -> bool:
    return segment.isdigit() or segment.startswith("$")


def filter_field(path: str, tree: Optional[FilterTree]) -> bool:
    """
    Check whether a dotted field path (as used in update operators) passes the tree.

    Array index and positional segments (``items.0.sku``, ``items.$.sku``,
    ``items.$[].sku``) are stripped first, so element updates are matched
    against the element schema.

    Args:
        path: Dotted field path
        tree: Filter tree, or None to allow everything

    Returns:
        True if the path, or one of its ancestors, is allowed
    """
    if tree is None:
        return True

    node: FilterTree = tree
    for member in (s for s in path.split(".") if s and not _is_positional(s)):
        if isinstance(node, Allow):
            return True
        child = node.get(member)
        if child is None:
            return False
        node = child
    return True


def _prune(value: Any, node: Node) -> None:
    if isinstance(value, list):
        for item in value:
            _prune(item, node)
        return
    if not isinstance(value, dict):
        return

    for name in list(value):
        child = node.get(name)
        if child is None:
            del value[name]
        elif isinstance(child, Node) and isinstance(value[name], (dict, list)):
            _prune(value[name], child)
            if not value[name]:
                del value[name]


def filter_document(
    doc: Optional[Dict[str, Any]],
    tree: Optional[FilterTree],
    id_field: str = ID_FIELD
) -> Optional[Dict[str, Any]]:
    """
    Prune every field of ``doc`` that the tree does not allow (in place).

    The top-level identifier always survives so the sink can upsert by it, but it
    does not count as content: a document left with nothing else yields None.

    Args:
        doc: Document to filter; owned by the caller for the duration of the call
        tree: Filter tree, or None to return ``doc`` unchanged
        id_field: Name of the identifier field

    Returns:
        The pruned document, or None when nothing worth upserting is left
    """
    if doc is None or tree is None:
        return doc
    if isinstance(tree, Allow):
        return doc

    has_id = id_field in doc
    doc_id = doc.pop(id_field, None)
    _prune(doc, tree)

    if not doc:
        return None
    if has_id:
        doc[id_field] = doc_id
    return doc


class FieldFilter:
    """Filter bound to one configured tree."""

    def __init__(self, tree: Optional[FilterTree] = None, id_field: str = ID_FIELD):
        self.tree = tree
        self.id_field = id_field

    @property
    def allows_all(self) -> bool:
        return self.tree is None or isinstance(self.tree, Allow)

    def filter_field(self, path: str) -> bool:
        return filter_field(path, self.tree)

    def filter_document(self, doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        return filter_document(doc, self.tree, self.id_field)
