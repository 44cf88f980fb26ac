# processes/trap_grouping.py

import itertools
import logging
from dataclasses import dataclass
from typing import Dict, Hashable, List, NamedTuple, Optional, Set

from slice_dfm.core.geometry import ContourGroup, contours_intersect

logger = logging.getLogger(__name__)


class TrapMember(NamedTuple):
    contour: ContourGroup
    layer_index: int


class DisjointSet:
    """Union-find over hashable keys, with path halving."""

    def __init__(self):
        self._parent: Dict[Hashable, Hashable] = {}

    def __contains__(self, key: Hashable) -> bool:
        return key in self._parent

    def add(self, key: Hashable) -> None:
        self._parent.setdefault(key, key)

    def find(self, key: Hashable) -> Hashable:
        parent = self._parent
        while parent[key] is not key:
            parent[key] = parent[parent[key]]
            key = parent[key]
        return key

    def union(self, first: Hashable, second: Hashable) -> Hashable:
        """Merges the sets of both keys, the root of `first` stays root."""
        root = self.find(first)
        other = self.find(second)
        if other is not root:
            self._parent[other] = root
        return root


@dataclass
class _GroupState:
    members: List[TrapMember]
    sequence: int

    @property
    def tail(self) -> TrapMember:
        return self.members[-1]


class TrapGrouper:
    """
    Groups hollow contours that overlap across consecutive layers.

    Contours must be fed from the top layer downwards: a contour on layer L can join a group
    whose most recent member is on layer L or L + 1 and overlaps it. Groups are union-find sets
    keyed by the contours themselves (identity).
    """

    def __init__(self):
        self._sets = DisjointSet()
        self._groups: Dict[ContourGroup, _GroupState] = {}       # root -> group
        self._by_tail_layer: Dict[int, Set[ContourGroup]] = {}   # tail layer -> roots
        self._sequence = itertools.count()

    def __len__(self) -> int:
        return len(self._groups)

    def _attach(self, root: ContourGroup, state: _GroupState) -> None:
        self._groups[root] = state
        self._by_tail_layer.setdefault(state.tail.layer_index, set()).add(root)

    def _detach(self, root: ContourGroup) -> _GroupState:
        state = self._groups.pop(root)
        roots = self._by_tail_layer.get(state.tail.layer_index)
        if roots is not None:
            roots.discard(root)
            if not roots:
                del self._by_tail_layer[state.tail.layer_index]
        return state

    def _active_roots(self, layer_index: int) -> List[ContourGroup]:
        """Roots of groups whose most recent member is on this or the layer above, oldest first."""
        roots = set()
        for tail_layer in (layer_index, layer_index + 1):
            roots.update(self._by_tail_layer.get(tail_layer, ()))
        return sorted(roots, key=lambda root: self._groups[root].sequence)

    def add(self, contour: ContourGroup, layer_index: int) -> List[TrapMember]:
        """
        Inserts a contour, appending it to the single matching group, merging several matching
        groups into one, or starting a new group.

        Returns:
            Members of the group the contour ended up in.
        """
        member = TrapMember(contour, layer_index)
        self._sets.add(contour)
        matches = [root for root in self._active_roots(layer_index)
                   if contours_intersect(self._groups[root].tail.contour, contour)]

        if not matches:
            state = _GroupState([member], next(self._sequence))
            root = contour
        elif len(matches) == 1:
            root = matches[0]
            state = self._detach(root)
            self._sets.union(root, contour)
            state.members.append(member)
        else:
            members: List[TrapMember] = []
            root = matches[0]
            for match in matches:
                members.extend(self._detach(match).members)
                root = self._sets.union(root, match)
            root = self._sets.union(root, contour)
            members.append(member)
            state = _GroupState(members, next(self._sequence))
            logger.debug(f"Merged {len(matches)} trap groups on layer {layer_index}")

        self._attach(root, state)
        return state.members

    def convert(self, contour: ContourGroup, layer_index: int) -> List[List[TrapMember]]:
        """
        Removes every group with a member on this or the layer above that overlaps `contour`.

        Returns:
            The removed groups' members.
        """
        removed = []
        for root in reversed(self._active_roots(layer_index)):
            for member in reversed(self._groups[root].members):
                if member.layer_index > layer_index + 1:
                    break
                if contours_intersect(member.contour, contour):
                    removed.append(self._detach(root).members)
                    break
        return removed

    def group_of(self, contour: ContourGroup) -> Optional[List[TrapMember]]:
        """Members of the live group holding `contour`, None if it is not grouped (or was converted)."""
        if contour not in self._sets:
            return None
        state = self._groups.get(self._sets.find(contour))
        return state.members if state is not None else None

    def groups(self) -> List[List[TrapMember]]:
        """Live groups, in creation order."""
        return [state.members for state in sorted(self._groups.values(), key=lambda state: state.sequence)]
