"""Composite VSP splitters built from other splitters.

CombinedSplitter stacks the VSPs of several splitters into one index space
and can append union VSPs. ProductSplitter intersects them.

Both own clones of their child splitters and delegate membership through
the children's vectorized ``_match`` kernels; they never call a child's
``activate``, because a second activation would overwrite the visibility
set by the first.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

import numpy as np

from vspfit.errors import ConfigurationError
from vspfit.splitters import Splitter


def _clone_children(splitters: Sequence[Splitter], owner: str) -> List[Splitter]:
    children = list(splitters)
    if not children:
        raise ConfigurationError(f"{owner} needs at least one splitter")
    for i, s in enumerate(children):
        if not isinstance(s, Splitter):
            raise ConfigurationError(
                f"{owner}: item {i} is not a VSP splitter ({type(s).__name__})"
            )
    return [s.clone() for s in children]


class CombinedSplitter(Splitter):
    """Stack the VSPs of several splitters, optionally adding unions.

    ``CombinedSplitter([SexSplitter(), AffectionSplitter()])`` defines four
    VSPs: male (0), female (1), unaffected (2) and affected (3). With
    ``vsp_map=[[0, 2], [1, 3]]`` two more VSPs are appended: male OR
    unaffected (4) and female OR affected (5).

    Args:
        splitters: Child splitters (cloned).
        vsp_map: Groups of stacked VSP indices; each group becomes a new VSP
            that is the union of its members.
        names: Optional names for all VSPs (stacked + unions).
    """

    def __init__(
        self,
        splitters: Sequence[Splitter],
        vsp_map: Optional[Sequence[Sequence[int]]] = None,
        names: Optional[Sequence[str]] = None,
    ):
        self.splitters = _clone_children(splitters, "CombinedSplitter")
        # flattened VSP -> [(child index, child-local vsp), ...]
        self.vsp_map: List[List[Tuple[int, int]]] = []
        for child_idx, child in enumerate(self.splitters):
            for local in range(child.num_virtual_subpops()):
                self.vsp_map.append([(child_idx, local)])
        n_stacked = len(self.vsp_map)
        for i, group in enumerate(vsp_map or []):
            if isinstance(group, (int, np.integer)):
                group = [group]
            members = [int(v) for v in group]
            if not members:
                raise ConfigurationError(f"vsp_map[{i}] is empty")
            bad = [v for v in members if not 0 <= v < n_stacked]
            if bad:
                raise ConfigurationError(
                    f"vsp_map[{i}] refers to VSPs {bad} outside [0, {n_stacked})"
                )
            self.vsp_map.append([self.vsp_map[v][0] for v in members])
        super().__init__(names)

    def num_virtual_subpops(self) -> int:
        return len(self.vsp_map)

    def delegates(self, vsp: int) -> List[Tuple[int, int]]:
        """(child index, child-local VSP) pairs that make up ``vsp``."""
        return list(self.vsp_map[self._check_vsp(vsp)])

    def _default_name(self, vsp: int) -> str:
        return " or ".join(self.splitters[c].name(v) for c, v in self.vsp_map[vsp])

    def _match(self, pop, subpop, vsp, inds):
        hit = np.zeros(len(inds), dtype=np.bool_)
        for child_idx, local in self.vsp_map[vsp]:
            hit |= self.splitters[child_idx]._match(pop, subpop, local, inds)
        return hit


class ProductSplitter(Splitter):
    """Intersect the VSPs of several splitters.

    With child VSP counts ``[c_0, c_1, ..., c_k]`` there are ``Π c_i`` VSPs.
    VSP ``v`` is decomposed in mixed radix with the first child varying
    slowest: for counts ``[2, 3]``, VSP 4 is (1, 1). An individual belongs
    to ``v`` if it belongs to every decomposed child VSP.

    ``ProductSplitter([SexSplitter(), AffectionSplitter()])`` defines male
    unaffected, male affected, female unaffected and female affected.
    """

    def __init__(self, splitters: Sequence[Splitter], names: Optional[Sequence[str]] = None):
        self.splitters = _clone_children(splitters, "ProductSplitter")
        self.counts = [s.num_virtual_subpops() for s in self.splitters]
        self._num_vsp = int(np.prod(self.counts))
        super().__init__(names)

    def num_virtual_subpops(self) -> int:
        return self._num_vsp

    def decompose(self, vsp: int) -> Tuple[int, ...]:
        """Child-local VSP indices of ``vsp``, one per child splitter."""
        vsp = self._check_vsp(vsp)
        local = []
        for count in reversed(self.counts):
            local.append(vsp % count)
            vsp //= count
        return tuple(reversed(local))

    def _default_name(self, vsp: int) -> str:
        return ", ".join(s.name(v) for s, v in zip(self.splitters, self.decompose(vsp)))

    def _match(self, pop, subpop, vsp, inds):
        hit = np.ones(len(inds), dtype=np.bool_)
        for child, local in zip(self.splitters, self.decompose(vsp)):
            hit &= child._match(pop, subpop, local, inds)
        return hit
