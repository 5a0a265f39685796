from collections import OrderedDict
from typing import Any, Hashable, Optional


class AddressCache:
    """
    Bounded LRU map for derived addresses. Derivations never change for a given
    key, so entries have no expiry; the bound only caps memory per session.
    A max_size of 0 or less disables caching.
    """

    def __init__(self, max_size: int = 256):
        self.max_size = max_size
        self.hits = 0
        self.misses = 0
        self._cache: "OrderedDict[Hashable, Any]" = OrderedDict()

    def get(self, key: Hashable) -> Optional[Any]:
        value = self._cache.get(key)
        if value is None:
            self.misses += 1
            return None
        self._cache.move_to_end(key)
        self.hits += 1
        return value

    def set(self, key: Hashable, value: Any):
        if self.max_size <= 0:
            return
        if key in self._cache:
            self._cache.move_to_end(key)
        elif len(self._cache) >= self.max_size:
            self._cache.popitem(last=False)
        self._cache[key] = value

    def __len__(self) -> int:
        return len(self._cache)
