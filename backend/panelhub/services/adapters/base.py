from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import Any, ClassVar, Optional

from panelhub.core.logging import short_error
from panelhub.models.panel import PanelType
from panelhub.schemas.panel import CapabilitySet, PanelConfig
from panelhub.schemas.user import ProvisionedUser, UserPatch, UserSpec, UserStats


class AdapterError(Exception):
    """Generic adapter error (network/auth/panel response)."""


class ConfigurationError(AdapterError):
    """Panel config is missing fields its type requires."""


class UnknownPanelError(ConfigurationError):
    pass


class AuthenticationError(AdapterError):
    pass


class BackendUnavailableError(AdapterError):
    """Network failure, timeout or refused connection."""


class OperationCancelledError(BackendUnavailableError):
    pass


class UserNotFoundError(AdapterError):
    def __init__(self, username: str, detail: str = ""):
        self.username = username
        super().__init__(detail or f"User not found: {username}")


class DuplicateUserError(AdapterError):
    def __init__(self, username: str, detail: str = ""):
        self.username = username
        super().__init__(detail or f"User already exists: {username}")


class UnsupportedOperationError(AdapterError):
    def __init__(self, panel_type: PanelType, operation: str):
        self.panel_type = panel_type
        self.operation = operation
        super().__init__(f"{panel_type.value} does not support {operation}")


class BackendError(AdapterError):
    """Well-formed error reply from the backend; message kept verbatim."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}" if status_code else message)


@dataclass
class TestConnectionResult:
    ok: bool
    detail: str
    meta: dict[str, Any] | None = None


@dataclass
class ProvisionResult:
    username: str
    remote_id: str
    subscription_url: str | None = None
    meta: dict[str, Any] | None = None


class PanelAdapter(abc.ABC):
    """Uniform contract every backend adapter implements.

    Public methods own the policy shared by all backends:

    * capability gating happens here, before any network call;
    * reads (get_user, get_all_users, get_panel_info, get_system_stats,
      get_inbounds, test_connection) log and return an empty/default value
      instead of raising;
    * writes raise typed errors; a missing user on delete_user counts as
      success.

    Subclasses implement the underscored hooks and raise ``AdapterError``
    subclasses from them.
    """

    panel_type: ClassVar[PanelType]
    capabilities: ClassVar[CapabilitySet]

    def __init__(self) -> None:
        self._config: PanelConfig | None = None
        self.logger = logging.getLogger(f"{__name__.rsplit('.', 1)[0]}.{self.panel_type.value}")

    # configuration

    def configure(self, config: PanelConfig) -> None:
        if config.type != self.panel_type:
            raise ConfigurationError(
                f"{type(self).__name__} cannot serve panel_type={config.type.value}"
            )
        self._validate(config)
        self._config = config
        self._on_configure(config)

    @property
    def config(self) -> PanelConfig:
        if self._config is None:
            raise ConfigurationError(f"{type(self).__name__} used before configure()")
        return self._config

    @property
    def panel_id(self) -> str:
        return self._config.id if self._config is not None else "-"

    def get_capabilities(self) -> CapabilitySet:
        return self.capabilities

    def close(self) -> None:
        return None

    def _require(self, capability: str, operation: str) -> None:
        if not self.capabilities.supports(capability):
            raise UnsupportedOperationError(self.panel_type, operation)

    def _degraded(self, operation: str, err: Exception) -> None:
        self.logger.warning(
            "%s degraded panel_id=%s err=%s", operation, self.panel_id, short_error(err)
        )

    # reads

    def test_connection(self) -> bool:
        return self.check_connection().ok

    def check_connection(self) -> TestConnectionResult:
        try:
            meta = self._ping()
            return TestConnectionResult(ok=True, detail="ok", meta=meta or None)
        except Exception as e:
            self._degraded("test_connection", e)
            return TestConnectionResult(ok=False, detail=str(e))

    def get_panel_info(self) -> dict[str, Any]:
        try:
            return self._panel_info()
        except Exception as e:
            self._degraded("get_panel_info", e)
            return {"error": str(e)}

    def get_user(self, username: str) -> ProvisionedUser | None:
        try:
            return self._find_user(username)
        except Exception as e:
            self._degraded("get_user", e)
            return None

    def get_all_users(self) -> list[ProvisionedUser]:
        try:
            return self._list_users()
        except Exception as e:
            self._degraded("get_all_users", e)
            return []

    def get_user_config(self, username: str) -> str | None:
        if not self.capabilities.get_user_config:
            return None
        try:
            return self._user_config(username)
        except UserNotFoundError:
            return None
        except Exception as e:
            self._degraded("get_user_config", e)
            return None

    def get_user_stats(self, username: str) -> UserStats | None:
        if not self.capabilities.get_user_stats:
            return None
        try:
            return self._user_stats(username)
        except UserNotFoundError:
            return None
        except Exception as e:
            self._degraded("get_user_stats", e)
            return None

    def get_inbounds(self) -> list[Any] | dict[str, Any]:
        try:
            return self._inbounds()
        except Exception as e:
            self._degraded("get_inbounds", e)
            return []

    def get_system_stats(self) -> dict[str, Any]:
        if not self.capabilities.system_stats:
            return {}
        try:
            return self._system_stats()
        except Exception as e:
            self._degraded("get_system_stats", e)
            return {}

    # writes

    def create_user(self, spec: UserSpec) -> ProvisionResult:
        self._require("create_user", "create_user")
        return self._create_user(spec)

    def update_user(self, username: str, patch: UserPatch) -> ProvisionedUser:
        self._require("update_user", "update_user")
        return self._update_user(username, patch)

    def delete_user(self, username: str) -> bool:
        self._require("delete_user", "delete_user")
        try:
            self._delete_user(username)
        except UserNotFoundError:
            self.logger.info("delete_user noop panel_id=%s username=%s (absent)", self.panel_id, username)
        return True

    def enable_user(self, username: str) -> bool:
        self._require("enable_disable_user", "enable_user")
        self._set_enabled(username, True)
        return True

    def disable_user(self, username: str) -> bool:
        self._require("enable_disable_user", "disable_user")
        self._set_enabled(username, False)
        return True

    def reset_user_data(self, username: str) -> bool:
        self._require("reset_user_data", "reset_user_data")
        self._reset_user_data(username)
        return True

    # hooks

    def _validate(self, config: PanelConfig) -> None:
        return None

    def _on_configure(self, config: PanelConfig) -> None:
        return None

    def _user_stats(self, username: str) -> UserStats:
        user = self._find_user(username)
        if user is None:
            raise UserNotFoundError(username)
        return UserStats.from_user(user)

    def _user_config(self, username: str) -> str | None:
        user = self._find_user(username)
        return user.subscription_url if user else None

    def _reset_user_data(self, username: str) -> None:
        raise UnsupportedOperationError(self.panel_type, "reset_user_data")

    def _system_stats(self) -> dict[str, Any]:
        return {}

    @abc.abstractmethod
    def _ping(self) -> dict[str, Any] | None: ...

    @abc.abstractmethod
    def _panel_info(self) -> dict[str, Any]: ...

    @abc.abstractmethod
    def _find_user(self, username: str) -> ProvisionedUser | None: ...

    @abc.abstractmethod
    def _list_users(self) -> list[ProvisionedUser]: ...

    @abc.abstractmethod
    def _create_user(self, spec: UserSpec) -> ProvisionResult: ...

    @abc.abstractmethod
    def _update_user(self, username: str, patch: UserPatch) -> ProvisionedUser: ...

    @abc.abstractmethod
    def _delete_user(self, username: str) -> None: ...

    @abc.abstractmethod
    def _set_enabled(self, username: str, enabled: bool) -> None: ...

    @abc.abstractmethod
    def _inbounds(self) -> list[Any] | dict[str, Any]: ...
