from __future__ import annotations

from typing import Dict, Optional, Tuple


class LocalIdContext:
    """Per-batch mapping between real segment IDs and the small integers shown to the model.

    Local IDs start at 1 and are assigned on first sight. A context belongs to exactly one
    batch; the same local number means different segments in different batches.
    """

    def __init__(self) -> None:
        self._local_to_real: Dict[int, str] = {}
        self._real_to_local: Dict[str, int] = {}
        self._pair_to_real: Dict[int, Tuple[str, str]] = {}
        self._next = 1

    def __len__(self) -> int:
        return len(self._local_to_real)

    def get_or_assign(self, real_id: str) -> int:
        existing = self._real_to_local.get(real_id)
        if existing is not None:
            return existing
        local_id = self._next
        self._next += 1
        self._local_to_real[local_id] = real_id
        self._real_to_local[real_id] = local_id
        return local_id

    def real_id_for(self, local_id: int) -> Optional[str]:
        return self._local_to_real.get(local_id)

    def local_id_for(self, real_id: str) -> Optional[int]:
        return self._real_to_local.get(real_id)

    def register_pair(self, pair_index: int, real_id_a: str, real_id_b: str) -> None:
        self._pair_to_real[pair_index] = (real_id_a, real_id_b)

    def pair_ids(self, pair_index: int) -> Optional[Tuple[str, str]]:
        return self._pair_to_real.get(pair_index)

    def has_real_id(self, real_id: str) -> bool:
        return real_id in self._real_to_local

    @property
    def pair_count(self) -> int:
        return len(self._pair_to_real)
