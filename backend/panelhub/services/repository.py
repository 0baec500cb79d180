from __future__ import annotations
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Protocol

from panelhub.schemas.panel import PanelConfig
from panelhub.schemas.user import ProvisionedUser
from panelhub.services.session_store import MemorySessionStore


@dataclass
class OperationLogEntry:
    panel_id: str
    operation: str
    username: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)
    success: bool = True
    error: Optional[str] = None
    duration_ms: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class SyncResult:
    total: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0


class PanelRepository(Protocol):
    """Persistence collaborator: panel records, session metadata, audit log, user mirror."""

    def get_panel(self, panel_id: str) -> Optional[PanelConfig]: ...

    def get_panel_by_name(self, name: str) -> Optional[PanelConfig]: ...

    def list_panels(self) -> list[PanelConfig]: ...

    def load_session_meta(self, panel_id: str) -> Optional[dict[str, Any]]: ...

    def save_session_meta(self, panel_id: str, meta: dict[str, Any]) -> None: ...

    def log_operation(self, entry: OperationLogEntry) -> None: ...

    def upsert_service_user(self, panel_id: str, user: ProvisionedUser) -> bool:
        """Store the projection; True when the user was not known before."""
        ...


class InMemoryPanelRepository(MemorySessionStore):
    def __init__(self, panels: Iterable[PanelConfig] = ()) -> None:
        super().__init__()
        self._panels: dict[str, PanelConfig] = {p.id: p for p in panels}
        self._users: dict[tuple[str, str], ProvisionedUser] = {}
        self.operations: list[OperationLogEntry] = []
        self._repo_lock = threading.Lock()

    def add_panel(self, config: PanelConfig) -> None:
        with self._repo_lock:
            self._panels[config.id] = config

    def get_panel(self, panel_id: str) -> Optional[PanelConfig]:
        return self._panels.get(str(panel_id))

    def get_panel_by_name(self, name: str) -> Optional[PanelConfig]:
        for panel in self._panels.values():
            if panel.name == name:
                return panel
        return None

    def list_panels(self) -> list[PanelConfig]:
        return list(self._panels.values())

    def log_operation(self, entry: OperationLogEntry) -> None:
        with self._repo_lock:
            self.operations.append(entry)

    def upsert_service_user(self, panel_id: str, user: ProvisionedUser) -> bool:
        key = (str(panel_id), user.username)
        with self._repo_lock:
            created = key not in self._users
            self._users[key] = user
        return created

    def service_users(self, panel_id: str) -> list[ProvisionedUser]:
        return [u for (pid, _), u in self._users.items() if pid == str(panel_id)]
