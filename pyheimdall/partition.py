"""
Partition name resolution

Maps an image filename to the partition it should be flashed to.
"""

import re
from typing import Dict, Iterable, Optional

from .pit import PitTable
from .constants import PARTITION_ALIASES, KNOWN_PARTITIONS


def candidate_name(filename: str) -> str:
    """
    Derive the candidate partition name from a filename

    Strips the directory (including drive prefixes such as ``sd:``) and
    the extension, then uppercases what is left.
    """
    base = re.split(r"[/\\:]", filename)[-1]
    stem, dot, _ = base.rpartition(".")
    if dot and stem:
        base = stem
    return base.upper()


class PartitionResolver:
    """
    Resolve filenames to partition names

    With a PIT the result is verified against the table. Without one the
    resolver runs in reduced-confidence mode: it can only infer a name
    from the built-in list of well-known partitions.
    """

    def __init__(
        self,
        aliases: Optional[Dict[str, str]] = None,
        known_partitions: Optional[Iterable[str]] = None
    ):
        self.aliases = {k.upper(): v.upper() for k, v in (aliases or PARTITION_ALIASES).items()}
        self.known_partitions = [name.upper() for name in (known_partitions or KNOWN_PARTITIONS)]

    def _lookup(self, name: str, table: Optional[PitTable]) -> Optional[str]:
        if table is not None:
            entry = table.find(name)
            return entry.partition_name if entry is not None else None

        if name in self.known_partitions:
            return name
        return None

    def resolve(self, filename: str, table: Optional[PitTable] = None) -> Optional[str]:
        """
        Resolve filename to a partition name

        Args:
            filename: Image path, e.g. ``sd:/recovery.img``
            table: Loaded PIT, or None

        Returns:
            Partition name, or None if it cannot be determined
        """
        candidate = candidate_name(filename)
        if not candidate:
            return None

        partition = self._lookup(candidate, table)
        if partition is not None:
            return partition

        alias = self.aliases.get(candidate)
        if alias is not None:
            return self._lookup(alias, table)

        return None
