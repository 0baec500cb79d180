from __future__ import annotations

import logging
import threading
from typing import Callable

import httpx

from panelhub.models.panel import PanelType
from panelhub.schemas.panel import PanelConfig, PanelTypeInfo
from panelhub.services.adapters.base import PanelAdapter, UnknownPanelError
from panelhub.services.adapters.marzban import MarzbanAdapter
from panelhub.services.adapters.mikrotik import MikroTikAdapter
from panelhub.services.adapters.sui import SUIAdapter
from panelhub.services.adapters.wg_dashboard import WGDashboardAdapter
from panelhub.services.adapters.xui import XUIAdapter
from panelhub.services.routeros.connection import SocketFactory
from panelhub.services.session_store import SessionStore

logger = logging.getLogger(__name__)

HTTP_ADAPTERS = {
    PanelType.marzban: MarzbanAdapter,
    PanelType.xui: XUIAdapter,
    PanelType.sui: SUIAdapter,
    PanelType.wireguard: WGDashboardAdapter,
}


class AdapterFactory:
    """Builds configured adapters and keeps one live instance per panel id.

    ``http_transport`` and ``socket_factory`` replace the network layer
    (tests, proxies); ``session_store`` lets HTTP adapters reuse tokens.
    """

    def __init__(
        self,
        session_store: SessionStore | None = None,
        http_transport: httpx.BaseTransport | None = None,
        socket_factory: SocketFactory | None = None,
    ) -> None:
        self._session_store = session_store
        self._http_transport = http_transport
        self._socket_factory = socket_factory
        self._cache: dict[str, tuple[PanelConfig, PanelAdapter]] = {}
        self._lock = threading.Lock()

    def _builder(self, panel_type: PanelType) -> Callable[[], PanelAdapter]:
        if panel_type == PanelType.mikrotik:
            return lambda: MikroTikAdapter(socket_factory=self._socket_factory)
        cls = HTTP_ADAPTERS.get(panel_type)
        if cls is None:
            raise UnknownPanelError(f"Unsupported panel_type: {panel_type}")
        return lambda: cls(transport=self._http_transport, session_store=self._session_store)

    def create(self, panel_type: PanelType | str, config: PanelConfig) -> PanelAdapter:
        try:
            kind = PanelType.parse(panel_type)
        except ValueError as e:
            raise UnknownPanelError(str(e)) from e
        adapter = self._builder(kind)()
        adapter.configure(config)
        return adapter

    def get(self, config: PanelConfig) -> PanelAdapter:
        """Cached adapter for ``config.id``; rebuilt when the config changed."""
        with self._lock:
            cached = self._cache.get(config.id)
            if cached is not None and cached[0] == config:
                return cached[1]
            adapter = self.create(config.type, config)
            self._cache[config.id] = (config, adapter)
        if cached is not None:
            logger.info("adapter rebuilt panel_id=%s (config changed)", config.id)
            cached[1].close()
        return adapter

    def evict(self, panel_id: str) -> bool:
        with self._lock:
            cached = self._cache.pop(str(panel_id), None)
        if cached is None:
            return False
        cached[1].close()
        return True

    def close(self) -> None:
        with self._lock:
            cached = list(self._cache.values())
            self._cache.clear()
        for _config, adapter in cached:
            adapter.close()

    @staticmethod
    def supported_types() -> list[PanelTypeInfo]:
        out: list[PanelTypeInfo] = []
        for kind in PanelType:
            cls = MikroTikAdapter if kind == PanelType.mikrotik else HTTP_ADAPTERS[kind]
            out.append(PanelTypeInfo(
                type=kind,
                display_name=kind.display_name,
                description=kind.description,
                default_port=kind.default_port,
                capabilities=cls.capabilities,
            ))
        return out

