"""Network status tracking consulted before every push and full sync."""

import httpx
import logging
from typing import Awaitable, Callable, List, Optional

from fieldsync.schemas.sync import NetworkStatus

log = logging.getLogger(__name__)

StatusListener = Callable[[NetworkStatus, NetworkStatus], None]


class HttpHealthProbe:
    """Treats a reachable API health endpoint as 'online'."""

    def __init__(self, base_url: str, path: str = "/health", timeout: float = 5.0):
        self.client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)
        self.path = path

    async def __call__(self) -> NetworkStatus:
        try:
            response = await self.client.get(self.path)
            return NetworkStatus(is_connected=response.status_code < 500, type="unknown")
        except httpx.RequestError as e:
            log.debug(f"Health probe failed, reporting offline: {e}")
            return NetworkStatus(is_connected=False, type="none")

    async def close(self) -> None:
        await self.client.aclose()


class ConnectivityMonitor:
    """
    Holds the last known network status.

    Platform adapters (or the /sync/connectivity endpoint) push transitions
    through `set_status`; when a probe is configured, `fetch` refreshes the
    status on demand. Listeners are told about online/offline transitions only.
    """

    def __init__(
        self,
        initial: Optional[NetworkStatus] = None,
        probe: Optional[Callable[[], Awaitable[NetworkStatus]]] = None,
    ):
        self._status = initial or NetworkStatus(is_connected=True, type="unknown")
        self._probe = probe
        self._listeners: List[StatusListener] = []

    @property
    def current(self) -> NetworkStatus:
        return self._status

    async def fetch(self) -> NetworkStatus:
        if self._probe is not None:
            self._apply(await self._probe())
        return self._status

    def set_status(self, is_connected: bool, type: Optional[str] = None) -> NetworkStatus:
        return self._apply(NetworkStatus(is_connected=is_connected, type=type))

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _apply(self, status: NetworkStatus) -> NetworkStatus:
        previous = self._status
        self._status = status
        if previous.is_connected != status.is_connected:
            log.info(f"Connectivity changed: {'online' if status.is_connected else 'offline'} ({status.type})")
            for listener in list(self._listeners):
                try:
                    listener(previous, status)
                except Exception as e:
                    log.error(f"Connectivity listener failed: {e}", exc_info=True)
        return status

    async def close(self) -> None:
        close = getattr(self._probe, "close", None)
        if close is not None:
            await close()
