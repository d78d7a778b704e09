from __future__ import annotations

from typing import Any, Dict, Iterable, List

from warden.storage.models import Permission, PermissionType


def generate_menus(permissions: Iterable[Permission]) -> List[Dict[str, Any]]:
    """Nest permission records into a menu tree by ``parent_id``.

    ``BUTTON`` entries never appear. A node whose parent is not in the input
    becomes a root. Siblings are ordered by ``sort`` then ``id``.
    """

    records = [p for p in permissions if p.type != PermissionType.BUTTON]
    nodes: Dict[int, Dict[str, Any]] = {
        p.id: {
            "id": p.id,
            "name": p.name,
            "path": p.path,
            "icon": p.icon,
            "permission": p.permission,
            "type": p.type.value,
            "sort": p.sort,
            "children": [],
        }
        for p in records
    }
    roots: List[Dict[str, Any]] = []
    for p in records:
        node = nodes[p.id]
        parent = nodes.get(p.parent_id) if p.parent_id is not None else None
        if parent is None or parent is node:
            roots.append(node)
        else:
            parent["children"].append(node)

    def _order(siblings: List[Dict[str, Any]]) -> None:
        siblings.sort(key=lambda n: (n["sort"], n["id"]))
        for child in siblings:
            _order(child["children"])

    _order(roots)
    return roots
