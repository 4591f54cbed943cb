"""Parent/child grouping of work items from explicit ``System.Parent`` links."""

from __future__ import annotations

from typing import Dict, List, Sequence

from api.schemas.query import WorkItem


def group_by_parent(items: Sequence[WorkItem]) -> Dict[int, List[int]]:
    """
    Map parent id to child ids for parents present in ``items``.

    Items whose parent is outside the result set, or that carry no parent
    link, are left ungrouped. No relationship is inferred from item types.
    """
    present = {item.id for item in items}
    groups: Dict[int, List[int]] = {}
    for item in items:
        if item.parent_id is not None and item.parent_id in present:
            groups.setdefault(item.parent_id, []).append(item.id)
    return groups
