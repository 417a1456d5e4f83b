"""
irlock/grouping.py
══════════════════

May-be-the-same-lock relation between lock sites.

Sites are bucketed by the static type of their resource value.  Within a
bucket every pair is decided once:

* both resources defined in the same function → ask the alias oracle;
* otherwise → compare :class:`~irlock.identity.ResourceIdentity` keys.

Pairs of two shared (read) acquisitions are never grouped.  A site whose
resource has no static type is left out of grouping with a
``missingTypeInfo`` note.

Public API
──────────
    AliasGroups
    build_alias_groups(sites, oracle) -> (AliasGroups, notes)
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Dict, FrozenSet, Iterator, List, Optional, Sequence, Set, Tuple

from .alias import AliasOracle, BasicAliasOracle, same_owner
from .classifier import LockSite
from .errors import MISSING_TYPE_INFO, AnalysisNote
from .identity import ResourceIdentity, resolve_identity
from .ir import IRType, Operation

logger = logging.getLogger(__name__)


class AliasGroups:
    """Symmetric site → group mapping."""

    def __init__(self, sites: Sequence[LockSite]) -> None:
        self._groups: Dict[LockSite, Set[LockSite]] = {s: set() for s in sites}
        self.identities: Dict[LockSite, ResourceIdentity] = {}

    def link(self, a: LockSite, b: LockSite) -> None:
        self._groups[a].add(b)
        self._groups[b].add(a)

    def group(self, site: LockSite) -> Tuple[LockSite, ...]:
        return tuple(sorted(self._groups.get(site, ())))

    def group_ops(self, site: LockSite) -> FrozenSet[Operation]:
        """Operations at which a member of *site*'s group acquires the lock."""
        return frozenset(s.op for s in self._groups.get(site, ()))

    def members_at(self, site: LockSite, op: Operation) -> Tuple[LockSite, ...]:
        return tuple(sorted(s for s in self._groups.get(site, ()) if s.op is op))

    def is_symmetric(self) -> bool:
        return all(a in self._groups[b] for a, grp in self._groups.items() for b in grp)

    def __contains__(self, site: object) -> bool:
        return site in self._groups

    def __iter__(self) -> Iterator[LockSite]:
        return iter(sorted(self._groups))

    def __len__(self) -> int:
        return sum(1 for grp in self._groups.values() if grp)


def _may_alias(a: LockSite, b: LockSite, oracle: AliasOracle,
               ids: Dict[LockSite, ResourceIdentity]) -> bool:
    if a.is_shared and b.is_shared:
        return False
    if same_owner(a.resource, b.resource):
        return oracle.must_alias(a.resource, b.resource)
    return ids[a] == ids[b]


def build_alias_groups(
    sites: Sequence[LockSite],
    oracle: Optional[AliasOracle] = None,
) -> Tuple[AliasGroups, List[AnalysisNote]]:
    """Compute the alias group of every site in *sites*."""
    oracle = oracle or BasicAliasOracle()
    ordered = sorted(sites)
    groups = AliasGroups(ordered)
    notes: List[AnalysisNote] = []

    buckets: "OrderedDict[IRType, List[LockSite]]" = OrderedDict()
    for site in ordered:
        rtype = site.resource.type
        if rtype is None:
            note = AnalysisNote(
                MISSING_TYPE_INFO,
                f"cannot determine the type of the lock object of {site.describe()}",
                site.location,
                site.function.name,
            )
            logger.warning("%s", note)
            notes.append(note)
            continue
        buckets.setdefault(rtype, []).append(site)
        groups.identities[site] = resolve_identity(site.resource)

    for rtype, members in buckets.items():
        for i, a in enumerate(members):
            for b in members[i + 1:]:
                if a.op is b.op:
                    continue
                if _may_alias(a, b, oracle, groups.identities):
                    groups.link(a, b)
        logger.debug("bucket %s: %d site(s)", rtype, len(members))

    logger.info("alias grouping: %d bucket(s), %d site(s) with a non-empty group",
                len(buckets), len(groups))
    return groups, notes
