"""
Organization hierarchy validation.

The organization tree is meant to be acyclic and shallow (root = depth 0,
at most ``ORG_MAX_DEPTH`` levels below it). Because this module is also what
keeps cycles from being written, no traversal here trusts that invariant:
every walk goes through an ``OrganizationTree`` index and is bounded by an
explicit iteration or size cap so it terminates even on corrupt data.
"""
import logging
import uuid
from typing import Dict, List, Optional

from django.conf import settings
from django.db import DEFAULT_DB_ALIAS, connections, transaction

from apps.core.exceptions import OrgCycleDetected, OrgDepthExceeded
from apps.core.logging import SecurityLogger
from apps.tenants.models import Organization

logger = logging.getLogger(__name__)

MAX_PARENT_WALK_ITERATIONS = 10
MAX_ORG_DEPTH = 3
MAX_DESCENDANTS = 1000

# Key for pg_advisory_xact_lock; serializes hierarchy mutations cluster-wide
HIERARCHY_LOCK_KEY = 0x7E55E4A


def max_org_depth():
    return getattr(settings, 'ORG_MAX_DEPTH', MAX_ORG_DEPTH)


def normalize_org_id(org_id) -> Optional[uuid.UUID]:
    """
    Parse any accepted UUID spelling (hex, upper case, braces) into a UUID.

    Raises:
        ValueError: If org_id is not a UUID
    """
    if org_id is None or isinstance(org_id, uuid.UUID):
        return org_id
    return uuid.UUID(str(org_id))


def _key(org_id):
    return str(normalize_org_id(org_id)) if org_id is not None else None


# Marks ids that were looked up but do not exist
_MISSING = object()


class OrganizationTree:
    """
    Flat id -> parent id index over live organizations.

    Nodes are loaded on first access (one query per unseen node for parents,
    one query per frontier for children) and memoized, so a validation pass
    sees one consistent view of the tree. With ``lock=True`` on PostgreSQL
    every row read is locked ``FOR UPDATE`` until the transaction ends.
    """

    def __init__(self, using=DEFAULT_DB_ALIAS, lock=False):
        self.using = using
        self.lock = lock and connections[using].vendor == 'postgresql'
        self._parents: Dict[str, Optional[str]] = {}
        self._children: Dict[str, List[str]] = {}

    def _queryset(self):
        qs = Organization.objects.using(self.using)
        if self.lock:
            qs = qs.select_for_update()
        return qs

    def exists(self, org_id):
        self.parent_of(org_id)
        return self._parents[_key(org_id)] is not _MISSING

    def parent_of(self, org_id) -> Optional[str]:
        key = _key(org_id)
        if key not in self._parents:
            rows = list(
                self._queryset()
                .filter(id=key)
                .values_list('parent_organization_id', flat=True)[:1]
            )
            self._parents[key] = _key(rows[0]) if rows else _MISSING
        parent = self._parents[key]
        return None if parent is _MISSING else parent

    def children_of_many(self, org_ids) -> Dict[str, List[str]]:
        """Children for each id in org_ids, fetching all unseen ids in one query."""
        keys = [_key(o) for o in org_ids]
        missing = [k for k in keys if k not in self._children]
        if missing:
            for k in missing:
                self._children[k] = []
            rows = (
                self._queryset()
                .filter(parent_organization_id__in=missing)
                .values_list('id', 'parent_organization_id')
            )
            for child_id, parent_id in rows:
                child, parent = _key(child_id), _key(parent_id)
                self._children[parent].append(child)
                self._parents.setdefault(child, parent)
        return {k: self._children[k] for k in keys}

    def children_of(self, org_id) -> List[str]:
        return self.children_of_many([org_id])[_key(org_id)]


def lock_hierarchy(using=DEFAULT_DB_ALIAS):
    """
    Serialize hierarchy mutations for the rest of the current transaction.

    PostgreSQL only; other engines serialize writers at the database level.
    """
    connection = connections[using]
    if connection.vendor == 'postgresql':
        with connection.cursor() as cursor:
            cursor.execute('SELECT pg_advisory_xact_lock(%s)', [HIERARCHY_LOCK_KEY])


def get_depth(org_id, tree: Optional[OrganizationTree] = None) -> int:
    """
    Number of ancestors between org_id and its root.

    Stops at the root, at an unknown id, or after MAX_PARENT_WALK_ITERATIONS
    hops, whichever comes first.
    """
    tree = tree or OrganizationTree()
    depth = 0
    current = _key(org_id)
    for _ in range(MAX_PARENT_WALK_ITERATIONS):
        current = tree.parent_of(current)
        if current is None:
            break
        depth += 1
    return depth


def walk_parent_chain(target_id, start_id, tree: Optional[OrganizationTree] = None) -> int:
    """
    Walk upward from start_id and return its depth.

    Raises:
        OrgCycleDetected: If target_id is start_id or one of its ancestors,
            i.e. making start_id the parent of target_id would close a loop
    """
    tree = tree or OrganizationTree()
    target = _key(target_id)
    current = _key(start_id)
    if current == target:
        raise OrgCycleDetected(
            "An organization cannot be its own parent",
            details={'organization_id': target},
        )

    depth = 0
    for _ in range(MAX_PARENT_WALK_ITERATIONS):
        current = tree.parent_of(current)
        if current is None:
            break
        depth += 1
        if current == target:
            raise OrgCycleDetected(
                "Organization is an ancestor of the requested parent",
                details={'organization_id': target, 'parent_id': _key(start_id)},
            )
    return depth


def get_subtree_depth(org_id, tree: Optional[OrganizationTree] = None) -> int:
    """
    Levels between org_id and its deepest descendant (0 for a leaf).

    Walks breadth-first, one level per query; bounded by
    MAX_PARENT_WALK_ITERATIONS levels and a visited set.
    """
    tree = tree or OrganizationTree()
    root = _key(org_id)
    seen = {root}
    frontier = [root]
    depth = 0
    while frontier and depth < MAX_PARENT_WALK_ITERATIONS:
        next_frontier = []
        for children in tree.children_of_many(frontier).values():
            for child in children:
                if child not in seen:
                    seen.add(child)
                    next_frontier.append(child)
        if not next_frontier:
            break
        depth += 1
        frontier = next_frontier
    return depth


def collect_descendants(org_id, tree: Optional[OrganizationTree] = None,
                        limit: int = MAX_DESCENDANTS) -> List[str]:
    """
    All descendant ids of org_id, nearest first, capped at ``limit``.

    Used to size the blast radius of a deletion.
    """
    tree = tree or OrganizationTree()
    root = _key(org_id)
    seen = {root}
    collected: List[str] = []
    frontier = [root]
    while frontier and len(collected) < limit:
        next_frontier = []
        for children in tree.children_of_many(frontier).values():
            for child in children:
                if child in seen:
                    continue
                seen.add(child)
                collected.append(child)
                next_frontier.append(child)
                if len(collected) >= limit:
                    logger.warning(
                        "Descendant collection hit the safety cap",
                        extra={'organization_id': root, 'limit': limit},
                    )
                    return collected
        frontier = next_frontier
    return collected


def validate_reparent(org_id, new_parent_id, tree: Optional[OrganizationTree] = None) -> int:
    """
    Check that org_id may be moved under new_parent_id.

    Call inside the transaction that performs the write (see
    ``OrganizationService.update_organization``) so the decision and the
    write see the same tree.

    Returns:
        The depth org_id will have after the move

    Raises:
        OrgCycleDetected: Self-parenting, or new_parent_id is a descendant
        OrgDepthExceeded: Some node of the moved subtree would sit deeper
            than ORG_MAX_DEPTH
    """
    tree = tree or OrganizationTree()
    with transaction.atomic(using=tree.using):
        try:
            parent_depth = walk_parent_chain(org_id, new_parent_id, tree)
        except OrgCycleDetected:
            SecurityLogger.log_cycle_rejected(org_id, new_parent_id)
            raise
        subtree_depth = get_subtree_depth(org_id, tree)

    limit = max_org_depth()
    if parent_depth + 1 + subtree_depth > limit:
        raise OrgDepthExceeded(
            f"Organization hierarchy cannot be deeper than {limit} levels",
            details={
                'organization_id': _key(org_id),
                'parent_id': _key(new_parent_id),
                'parent_depth': parent_depth,
                'subtree_depth': subtree_depth,
                'max_depth': limit,
            },
        )
    return parent_depth + 1


def validate_new_child(parent_id, tree: Optional[OrganizationTree] = None) -> int:
    """
    Check that a new organization may be created under parent_id.

    Returns:
        The depth of the new organization

    Raises:
        OrgDepthExceeded: If the child would sit deeper than ORG_MAX_DEPTH
    """
    tree = tree or OrganizationTree()
    depth = get_depth(parent_id, tree) + 1
    limit = max_org_depth()
    if depth > limit:
        raise OrgDepthExceeded(
            f"Organization hierarchy cannot be deeper than {limit} levels",
            details={'parent_id': _key(parent_id), 'max_depth': limit},
        )
    return depth
