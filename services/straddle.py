"""Straddle lookups with recursive expansion of virtual sources."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple

from models.errors import DataStoreError
from models.records import Source
from models.straddle import SensorDataStraddle, StraddleList

if TYPE_CHECKING:
    from services.manager import DataManager


class StraddleResolver:
    """Finds bracketing readings for sources, expanding virtual ones to leaves.

    Per-leaf data always comes from the manager so that cached readings are
    seen alongside persisted ones.
    """

    def __init__(self, manager: "DataManager") -> None:
        self.manager = manager

    def get_straddle(self, source_name: str, timestamp: datetime) -> Optional[SensorDataStraddle]:
        return self.manager.get_straddle(source_name, timestamp)

    def get_all_sub_sources(self, source: Source) -> List[Source]:
        """Direct sub-sources of ``source``; unknown references are skipped."""
        sub_sources: List[Source] = []
        for name in source.sub_source_names:
            sub_source = self.manager.get_source(name)
            if sub_source is not None:
                sub_sources.append(sub_source)
        return sub_sources

    def get_all_non_virtual_sub_sources(self, source: Source) -> List[Source]:
        """Non-virtual leaves under ``source`` in depth-first sub-source order.

        A non-virtual source is its own single leaf. Raises ``DataStoreError``
        with kind ``cyclic_source`` if a source is reached again below itself.
        """
        leaves: List[Source] = []
        self._collect_leaves(source, (), leaves)
        return leaves

    def _collect_leaves(self, source: Source, path: Tuple[str, ...], leaves: List[Source]) -> None:
        if source.name in path:
            raise DataStoreError.cyclic_source([*path, source.name])
        if not source.virtual:
            leaves.append(source)
            return
        descendant_path = (*path, source.name)
        for sub_source in self.get_all_sub_sources(source):
            self._collect_leaves(sub_source, descendant_path, leaves)

    def get_straddle_list(
        self, source: Source, timestamp: datetime
    ) -> Optional[List[SensorDataStraddle]]:
        """One straddle per leaf, or ``None`` if any leaf has no straddle."""
        straddles: List[SensorDataStraddle] = []
        for leaf in self.get_all_non_virtual_sub_sources(source):
            straddle = self.get_straddle(leaf.name, timestamp)
            if straddle is None:
                return None
            straddles.append(straddle)
        return straddles or None

    def get_straddle_lists(
        self, source: Source, timestamps: Sequence[datetime]
    ) -> Optional[List[StraddleList]]:
        """A ``StraddleList`` per leaf covering every timestamp; all-or-nothing."""
        result: List[StraddleList] = []
        for leaf in self.get_all_non_virtual_sub_sources(source):
            straddles = self._straddles_for(leaf, timestamps)
            if straddles is None:
                return None
            result.append(StraddleList(source=leaf, straddles=straddles))
        return result or None

    def get_straddle_list_of_lists(
        self, source: Source, timestamps: Sequence[datetime]
    ) -> Optional[List[List[SensorDataStraddle]]]:
        straddle_lists = self.get_straddle_lists(source, timestamps)
        if straddle_lists is None:
            return None
        return [straddle_list.straddles for straddle_list in straddle_lists]

    def _straddles_for(
        self, leaf: Source, timestamps: Sequence[datetime]
    ) -> Optional[List[SensorDataStraddle]]:
        straddles: List[SensorDataStraddle] = []
        for timestamp in timestamps:
            straddle = self.get_straddle(leaf.name, timestamp)
            if straddle is None:
                return None
            straddles.append(straddle)
        return straddles or None
