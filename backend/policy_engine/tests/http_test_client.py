"""Cliente HTTP síncrono para testes de rota FastAPI (httpx + ASGITransport).

Todas as requests de um cliente rodam no mesmo event loop: tarefas em
background disparadas por uma request (violações, recálculos de trust)
seguem pendentes até a próxima chamada ou até ``close()``, que as conclui.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, TypeVar

import httpx

T = TypeVar("T")


class SyncASGIClient:
    def __init__(self, app, base_url: str = "http://testserver") -> None:
        self._loop = asyncio.new_event_loop()
        self._client = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url=base_url,
            follow_redirects=True,
        )

    def run(self, awaitable: Awaitable[T]) -> T:
        """Executa uma corrotina no loop do cliente (ex.: ``engine.drain()``)."""
        return self._loop.run_until_complete(awaitable)

    def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return self.run(self._client.request(method, path, **kwargs))

    def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, **kwargs: Any) -> httpx.Response:
        return self.request("POST", path, **kwargs)

    def close(self) -> None:
        try:
            self.run(self._client.aclose())
            pending = asyncio.all_tasks(self._loop)
            if pending:
                self.run(asyncio.gather(*pending, return_exceptions=True))
        finally:
            self._loop.close()

    def __enter__(self) -> "SyncASGIClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def make_sync_asgi_client(app) -> SyncASGIClient:
    return SyncASGIClient(app)
