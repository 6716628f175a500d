from __future__ import annotations

from typing import Optional

import numpy as np

from scsim.config import StateConfig


def _fit(vec, size: int) -> np.ndarray:
    """Zero-pad or truncate a vector to `size`."""
    v = np.asarray(vec, dtype=np.float64).ravel()
    out = np.zeros(size, dtype=np.float64)
    n = min(size, v.size)
    out[:n] = v[:n]
    return out


class EntityState:
    """Memory, context and trait vectors owned by one entity.

    memory  <- alpha * memory + beta * g(F) + gamma * m
    context <- 0.5 * context + 0.5 * memory[:context_dim]

    Traits are fixed at construction.
    """

    def __init__(self, config: StateConfig, traits: Optional[np.ndarray] = None):
        self.config = config
        self.memory = np.zeros(config.memory_dim, dtype=np.float64)
        self.context = np.zeros(config.context_dim, dtype=np.float64)
        if traits is None:
            traits = np.zeros(config.trait_dim)
        self.traits = _fit(traits, config.trait_dim)
        self.traits.setflags(write=False)

    def update(self, attention_prompt: np.ndarray, memory_input: np.ndarray) -> None:
        cfg = self.config
        self.memory = (
            cfg.decay_alpha * self.memory
            + cfg.beta_attention * _fit(attention_prompt, cfg.memory_dim)
            + cfg.gamma_memory * _fit(memory_input, cfg.memory_dim)
        )
        k = min(cfg.context_dim, cfg.memory_dim)
        ctx = 0.5 * self.context
        ctx[:k] += 0.5 * self.memory[:k]
        self.context = ctx

    def norm(self) -> float:
        return float(np.linalg.norm(self.memory))

    def dot(self, other: 'EntityState') -> float:
        return float(np.dot(self.memory, other.memory))

    def copy(self) -> 'EntityState':
        out = EntityState(self.config, self.traits)
        out.memory = self.memory.copy()
        out.context = self.context.copy()
        return out


__all__ = ['EntityState']
