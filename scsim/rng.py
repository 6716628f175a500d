from __future__ import annotations

import hashlib
from typing import Dict, Optional

from numpy.random import Generator, SeedSequence, default_rng


class RNGRegistry:
    """Named generators derived from one root seed.

    The same (seed, name) pair always yields the same stream, independent of
    the order in which names are first requested.
    """

    def __init__(self, root_seed: Optional[int]):
        self.root_seed = int(root_seed) if root_seed is not None else None
        self.cache: Dict[str, Generator] = {}

    def get(self, name: str) -> Generator:
        if name not in self.cache:
            mix = int.from_bytes(hashlib.blake2b(name.encode('utf-8'), digest_size=8).digest(), 'little')
            child_ss = SeedSequence(self.root_seed if self.root_seed is not None else 0, spawn_key=(mix,))
            self.cache[name] = default_rng(child_ss)
        return self.cache[name]

    def entity(self, key: str, entity_id: int) -> Generator:
        return self.get(f"{key}:entity:{int(entity_id)}")


__all__ = ['RNGRegistry']
