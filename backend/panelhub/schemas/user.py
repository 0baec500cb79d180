from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field, computed_field


class UserSpec(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    data_limit_bytes: int = Field(default=0, ge=0)  # 0 = unlimited
    expiry: int = Field(default=0, ge=0)  # epoch seconds, 0 = never
    enabled: bool = True
    note: str = ""
    inbounds: Optional[Any] = None
    password: Optional[str] = None
    profile: Optional[str] = None
    extras: dict[str, Any] = Field(default_factory=dict)


class UserPatch(BaseModel):
    data_limit_bytes: Optional[int] = Field(default=None, ge=0)
    expiry: Optional[int] = Field(default=None, ge=0)
    enabled: Optional[bool] = None
    note: Optional[str] = None
    inbounds: Optional[Any] = None
    password: Optional[str] = None
    profile: Optional[str] = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ProvisionedUser(BaseModel):
    username: str
    data_limit_bytes: int = 0
    expiry: int = 0
    enabled: bool = True
    status: str = "active"
    used_upload: int = 0
    used_download: int = 0
    remote_id: Optional[str] = None
    subscription_url: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def used_total(self) -> int:
        return self.used_upload + self.used_download


class UserStats(BaseModel):
    username: str
    upload: int = 0
    download: int = 0
    limit: int = 0
    expiry: int = 0
    enabled: bool = True
    online: bool = False
    extra: dict[str, Any] = Field(default_factory=dict)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total(self) -> int:
        return self.upload + self.download

    @computed_field  # type: ignore[prop-decorator]
    @property
    def remaining(self) -> Optional[int]:
        if self.limit <= 0:
            return None
        return max(0, self.limit - self.total)

    @classmethod
    def from_user(cls, user: ProvisionedUser, **extra: Any) -> "UserStats":
        return cls(
            username=user.username,
            upload=user.used_upload,
            download=user.used_download,
            limit=user.data_limit_bytes,
            expiry=user.expiry,
            enabled=user.enabled,
            online=bool(extra.pop("online", False)),
            extra=extra,
        )
