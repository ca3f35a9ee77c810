"""HTTP client for the server embedded in ``opencode run --port``."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import socket

import aiohttp

log = logging.getLogger("opencode")


def find_free_port() -> int:
    """Find a free port to use."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class OpenCodeClient:
    """Health probe against a running OpenCode server."""

    def __init__(self, server_url: str):
        self.server_url = server_url.rstrip("/")
        self._auth = self._build_auth()

    @property
    def auth(self) -> aiohttp.BasicAuth | None:
        return self._auth

    def _build_auth(self) -> aiohttp.BasicAuth | None:
        password = os.getenv("OPENCODE_SERVER_PASSWORD")
        if not password:
            return None
        username = os.getenv("OPENCODE_SERVER_USERNAME", "opencode")
        return aiohttp.BasicAuth(username, password)

    def _make_url(self, path: str) -> str:
        return f"{self.server_url}{path}"

    async def request_json(
        self, session: aiohttp.ClientSession, method: str, url: str, **kwargs
    ) -> object | None:
        async with session.request(method, url, **kwargs) as resp:
            if resp.status == 204:
                return None
            text = await resp.text()
            if resp.status >= 400:
                detail = text.strip() or resp.reason
                raise RuntimeError(f"OpenCode HTTP {resp.status}: {detail}")
            if not text:
                return None
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                return text

    async def check_health(self, session: aiohttp.ClientSession) -> bool:
        url = self._make_url("/global/health")
        response = await self.request_json(session, "GET", url)
        return isinstance(response, dict) and response.get("healthy") is True

    async def wait_until_healthy(
        self, timeout_s: float, interval_s: float = 0.25
    ) -> bool:
        """Poll the health endpoint until it reports healthy or time runs out."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        request_timeout = aiohttp.ClientTimeout(total=max(interval_s, 1.0))
        async with aiohttp.ClientSession(auth=self._auth, timeout=request_timeout) as session:
            while True:
                try:
                    if await self.check_health(session):
                        return True
                except (aiohttp.ClientError, asyncio.TimeoutError, RuntimeError) as e:
                    log.debug(f"Health check failed for {self.server_url}: {e}")
                if loop.time() >= deadline:
                    return False
                await asyncio.sleep(interval_s)
