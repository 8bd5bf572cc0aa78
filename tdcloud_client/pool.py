# tdcloud_client/pool.py
from __future__ import annotations
import logging
import threading

import httpx

from .config import ClientConfig
from .exceptions import ClientClosedError

log = logging.getLogger("tdcloud")


class SharedHttpPool:
    """
    One httpx.Client (connection pool) shared by a client and every client
    derived from it (with_api_key / authenticate).

    Sharing contract:
      * only the client that created the pool may close it;
      * closing a derived client leaves the pool open for its siblings;
      * once closed, every user of the pool gets ClientClosedError, and any
        retry loop sleeping on `closed_event` wakes up immediately.
    """

    def __init__(self, config: ClientConfig, *, transport: httpx.BaseTransport | None = None):
        timeout = httpx.Timeout(
            config.idle_timeout_ms / 1000.0,
            connect=config.connect_timeout_ms / 1000.0,
        )
        limits = httpx.Limits(
            max_connections=config.connection_pool_size,
            max_keepalive_connections=config.connection_pool_size,
            keepalive_expiry=config.idle_timeout_ms / 1000.0,
        )
        kwargs = {}
        if config.proxy is not None and transport is None:
            kwargs["proxy"] = config.proxy.to_httpx()
        self._client = httpx.Client(
            base_url=config.base_url,
            timeout=timeout,
            limits=limits,
            transport=transport,
            **kwargs,
        )
        self.closed_event = threading.Event()
        self._lock = threading.Lock()
        log.debug("[pool] opened %s (size=%d)", config.base_url, config.connection_pool_size)

    @property
    def closed(self) -> bool:
        return self.closed_event.is_set()

    @property
    def client(self) -> httpx.Client:
        if self.closed_event.is_set():
            raise ClientClosedError("connection pool has been closed")
        return self._client

    def close(self) -> None:
        with self._lock:
            if self.closed_event.is_set():
                return
            self.closed_event.set()
        self._client.close()
        log.debug("[pool] closed")
