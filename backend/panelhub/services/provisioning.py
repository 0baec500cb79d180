from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

from panelhub.core.logging import short_error
from panelhub.schemas.panel import CapabilitySet, ConfiguredPanel, PanelConfig, PanelStatus, PanelTypeInfo
from panelhub.schemas.user import ProvisionedUser, UserPatch, UserSpec, UserStats
from panelhub.services.adapters.base import (
    AdapterError,
    ConfigurationError,
    PanelAdapter,
    ProvisionResult,
    UnknownPanelError,
)
from panelhub.services.adapters.factory import AdapterFactory
from panelhub.services.cancellation import CancelToken, operation_scope
from panelhub.services.repository import OperationLogEntry, PanelRepository, SyncResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

SECRET_FIELDS = {"password"}


class ProvisioningService:
    """Single entry point for callers: panel id in, normalized results out.

    Writes run inside an operation scope (``deadline`` seconds, ``cancel``
    token), are logged through the repository and re-raise typed errors.
    Reads take the same scope arguments and delegate to the adapters, which
    degrade to empty results when the backend fails or the deadline passes.
    """

    def __init__(self, repository: PanelRepository, factory: AdapterFactory | None = None):
        self.repository = repository
        self.factory = factory or AdapterFactory(session_store=repository)

    # resolution

    def _panel(self, panel_id: str) -> PanelConfig:
        config = self.repository.get_panel(str(panel_id))
        if config is None:
            raise UnknownPanelError(f"Unknown panel: {panel_id}")
        if not config.enabled:
            raise ConfigurationError(f"Panel {panel_id} is disabled")
        return config

    def adapter(self, panel_id: str) -> PanelAdapter:
        return self.factory.get(self._panel(panel_id))

    def _write(
        self,
        panel_id: str,
        operation: str,
        username: Optional[str],
        payload: dict[str, Any],
        fn: Callable[[PanelAdapter], T],
        deadline: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> T:
        started = time.monotonic()
        entry = OperationLogEntry(
            panel_id=str(panel_id),
            operation=operation,
            username=username,
            payload={k: v for k, v in payload.items() if k not in SECRET_FIELDS},
        )
        try:
            with operation_scope(deadline=deadline, cancel=cancel):
                result = fn(self.adapter(panel_id))
        except Exception as e:
            entry.success = False
            entry.error = short_error(e)
            logger.warning(
                "%s failed panel_id=%s username=%s err=%s", operation, panel_id, username, entry.error
            )
            raise
        finally:
            entry.duration_ms = int((time.monotonic() - started) * 1000)
            self._record(entry)
        logger.info("%s ok panel_id=%s username=%s", operation, panel_id, username)
        return result

    def _record(self, entry: OperationLogEntry) -> None:
        try:
            self.repository.log_operation(entry)
        except Exception as e:
            logger.error("operation log write failed panel_id=%s err=%s", entry.panel_id, short_error(e))

    # catalog

    def available_panel_types(self) -> list[PanelTypeInfo]:
        return self.factory.supported_types()

    def configured_panels(self) -> list[ConfiguredPanel]:
        caps = {info.type: info.capabilities for info in self.factory.supported_types()}
        out: list[ConfiguredPanel] = []
        for config in self.repository.list_panels():
            if not config.enabled:
                continue
            endpoint = config.base_url or f"{config.host}:{config.port or config.type.default_port}"
            out.append(ConfiguredPanel(
                id=config.id,
                name=config.name,
                type=config.type,
                endpoint=endpoint,
                capabilities=caps[config.type],
            ))
        return out

    def get_capabilities(self, panel_id: str) -> CapabilitySet:
        return self.adapter(panel_id).get_capabilities()

    def _read(
        self,
        panel_id: str,
        fn: Callable[[PanelAdapter], T],
        deadline: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> T:
        with operation_scope(deadline=deadline, cancel=cancel):
            return fn(self.adapter(panel_id))

    # status

    def test_connection(
        self, panel_id: str, deadline: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> bool:
        return self._read(panel_id, lambda a: a.test_connection(), deadline, cancel)

    def get_panel_info(
        self, panel_id: str, deadline: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> dict[str, Any]:
        return self._read(panel_id, lambda a: a.get_panel_info(), deadline, cancel)

    def panel_status(
        self, panel_id: str, deadline: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> PanelStatus:
        now = datetime.now(timezone.utc)
        try:
            adapter = self.adapter(panel_id)
        except AdapterError as e:
            return PanelStatus(panel_id=str(panel_id), status="error", message=str(e), checked_at=now)
        with operation_scope(deadline=deadline, cancel=cancel):
            check = adapter.check_connection()
            if not check.ok:
                return PanelStatus(panel_id=str(panel_id), status="offline", message=check.detail, checked_at=now)
            return PanelStatus(panel_id=str(panel_id), status="online", info=adapter.get_panel_info(), checked_at=now)

    def all_panel_status(
        self, deadline: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> list[PanelStatus]:
        """``deadline`` applies to each panel separately."""
        return [self.panel_status(p.id, deadline, cancel) for p in self.repository.list_panels() if p.enabled]

    # reads

    def get_user(
        self, panel_id: str, username: str, deadline: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> ProvisionedUser | None:
        return self._read(panel_id, lambda a: a.get_user(username), deadline, cancel)

    def get_all_users(
        self, panel_id: str, deadline: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> list[ProvisionedUser]:
        return self._read(panel_id, lambda a: a.get_all_users(), deadline, cancel)

    def get_user_config(
        self, panel_id: str, username: str, deadline: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> str | None:
        return self._read(panel_id, lambda a: a.get_user_config(username), deadline, cancel)

    def get_user_stats(
        self, panel_id: str, username: str, deadline: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> UserStats | None:
        return self._read(panel_id, lambda a: a.get_user_stats(username), deadline, cancel)

    def get_inbounds(
        self, panel_id: str, deadline: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> list[Any] | dict[str, Any]:
        return self._read(panel_id, lambda a: a.get_inbounds(), deadline, cancel)

    def get_system_stats(
        self, panel_id: str, deadline: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> dict[str, Any]:
        return self._read(panel_id, lambda a: a.get_system_stats(), deadline, cancel)

    # writes

    def create_user(
        self, panel_id: str, spec: UserSpec, deadline: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> ProvisionResult:
        return self._write(
            panel_id, "create_user", spec.username, spec.model_dump(mode="json"),
            lambda a: a.create_user(spec), deadline, cancel,
        )

    def update_user(
        self,
        panel_id: str,
        username: str,
        patch: UserPatch,
        deadline: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ProvisionedUser:
        return self._write(
            panel_id, "update_user", username, patch.changes(),
            lambda a: a.update_user(username, patch), deadline, cancel,
        )

    def delete_user(
        self, panel_id: str, username: str, deadline: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> bool:
        return self._write(panel_id, "delete_user", username, {}, lambda a: a.delete_user(username), deadline, cancel)

    def enable_user(
        self, panel_id: str, username: str, deadline: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> bool:
        return self._write(panel_id, "enable_user", username, {}, lambda a: a.enable_user(username), deadline, cancel)

    def disable_user(
        self, panel_id: str, username: str, deadline: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> bool:
        return self._write(
            panel_id, "disable_user", username, {}, lambda a: a.disable_user(username), deadline, cancel
        )

    def reset_user_data(
        self, panel_id: str, username: str, deadline: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> bool:
        return self._write(
            panel_id, "reset_user_data", username, {}, lambda a: a.reset_user_data(username), deadline, cancel
        )

    # sync

    def sync_panel_users(
        self, panel_id: str, deadline: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> SyncResult:
        stats = SyncResult()
        started = time.monotonic()
        users = self.get_all_users(panel_id, deadline, cancel)
        stats.total = len(users)
        for user in users:
            try:
                created = self.repository.upsert_service_user(str(panel_id), user)
            except Exception as e:
                stats.errors += 1
                logger.warning(
                    "sync upsert failed panel_id=%s username=%s err=%s", panel_id, user.username, short_error(e)
                )
                continue
            if created:
                stats.created += 1
            else:
                stats.updated += 1
        self._record(OperationLogEntry(
            panel_id=str(panel_id),
            operation="sync_panel_users",
            payload={"total": stats.total, "created": stats.created, "updated": stats.updated},
            success=stats.errors == 0,
            error=f"{stats.errors} upsert failures" if stats.errors else None,
            duration_ms=int((time.monotonic() - started) * 1000),
        ))
        logger.info(
            "sync_panel_users done panel_id=%s total=%s created=%s updated=%s errors=%s",
            panel_id, stats.total, stats.created, stats.updated, stats.errors,
        )
        return stats
