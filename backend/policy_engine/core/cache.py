"""Cache TTL em memória com invalidação por partição.

Partições são tuplas como ``("role", role_id, group_id)`` ou
``("user", user_id, group_id)``. Uma escrita invalida apenas as partições
afetadas (ou todas com um prefixo comum), nunca o cache inteiro.

Um carregamento guarda a época em que começou; se a partição (ou um prefixo
dela) for invalidada no meio, o resultado não entra no cache. As marcas de
invalidação só vivem enquanto há carregamentos em andamento.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Hashable
from typing import Any

from policy_engine.core.metrics import record_cache_request

Partition = tuple[Hashable, ...]

CACHE_MISS = object()


class PartitionedTTLCache:
    """Cache de leitura com TTL curto, injetado nos componentes."""

    def __init__(
        self,
        name: str,
        ttl_seconds: float,
        *,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = max(int(max_entries), 1)
        self._clock = clock
        self._entries: dict[tuple[Partition, Hashable], tuple[float, Any]] = {}
        self._index: dict[Partition, set[Hashable]] = {}
        self._epoch = 0
        self._invalidated: dict[Partition, int] = {}
        self._loads_in_flight = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, partition: Partition, key: Hashable = None) -> Any:
        """Retorna o valor ou ``CACHE_MISS`` quando ausente/expirado."""
        entry = self._entries.get((partition, key))
        if entry is None:
            record_cache_request(self.name, hit=False)
            return CACHE_MISS

        expires_at, value = entry
        if expires_at <= self._clock():
            self._drop(partition, key)
            record_cache_request(self.name, hit=False)
            return CACHE_MISS

        record_cache_request(self.name, hit=True)
        return value

    def generation(self, partition: Partition) -> int:
        """Época atual; passe para ``set(generation=)`` ao fim de um carregamento."""
        return self._epoch

    def _invalidated_since(self, partition: Partition, generation: int) -> bool:
        return any(
            epoch > generation and partition[: len(marked)] == marked
            for marked, epoch in self._invalidated.items()
        )

    def set(
        self,
        partition: Partition,
        key: Hashable,
        value: Any,
        *,
        generation: int | None = None,
    ) -> bool:
        """Armazena valor; ignora escrita se a partição foi invalidada no meio do load."""
        if generation is not None and self._invalidated_since(partition, generation):
            return False
        if self.ttl_seconds <= 0:
            return False

        self._entries[(partition, key)] = (self._clock() + self.ttl_seconds, value)
        self._index.setdefault(partition, set()).add(key)
        if len(self._entries) > self.max_entries:
            self._evict()
        return True

    async def get_or_load(
        self,
        partition: Partition,
        key: Hashable,
        loader: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Lê do cache ou executa ``loader``; erros do loader propagam sem cachear."""
        cached = self.get(partition, key)
        if cached is not CACHE_MISS:
            return cached

        generation = self.generation(partition)
        self._loads_in_flight += 1
        try:
            value = await loader()
            self.set(partition, key, value, generation=generation)
        finally:
            self._loads_in_flight -= 1
            if not self._loads_in_flight:
                self._invalidated.clear()
        return value

    def invalidate(self, partition: Partition) -> int:
        """Remove todas as entradas de uma partição."""
        self._mark_invalidated(partition)
        keys = self._index.pop(partition, set())
        for key in keys:
            self._entries.pop((partition, key), None)
        return len(keys)

    def invalidate_prefix(self, *prefix: Hashable) -> int:
        """Remove todas as partições que começam com ``prefix``."""
        self._mark_invalidated(prefix)
        size = len(prefix)
        partitions = [partition for partition in self._index if partition[:size] == prefix]
        return sum(self.invalidate(partition) for partition in partitions)

    def clear(self) -> None:
        self._mark_invalidated(())
        self._entries.clear()
        self._index.clear()

    def _mark_invalidated(self, prefix: Partition) -> None:
        self._epoch += 1
        if not self._loads_in_flight and len(self._invalidated) >= self.max_entries:
            self._invalidated.clear()
        self._invalidated[prefix] = self._epoch

    def _drop(self, partition: Partition, key: Hashable) -> None:
        self._entries.pop((partition, key), None)
        keys = self._index.get(partition)
        if keys is not None:
            keys.discard(key)
            if not keys:
                self._index.pop(partition, None)

    def _evict(self) -> None:
        now = self._clock()
        for (partition, key), (expires_at, _) in list(self._entries.items()):
            if expires_at <= now:
                self._drop(partition, key)

        # Ainda acima do teto: descarta as entradas mais antigas (ordem de inserção).
        overflow = len(self._entries) - self.max_entries
        for partition, key in list(self._entries.keys())[: max(overflow, 0)]:
            self._drop(partition, key)
