"""Session configuration.

Settings are validated once at construction time. ``from_env`` loads the
same settings from ``DEVICE_LINK_*`` environment variables so deployments
can point a client at a device without code changes.
"""

from __future__ import annotations

import os
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_RECONNECT_INTERVAL = 3.0  # seconds
DEFAULT_RESPONSE_TIMEOUT = 5.0  # seconds
DEFAULT_ENCODING = "utf-8"

ENV_PREFIX = "DEVICE_LINK_"


class SessionConfig(BaseModel):
    """Construction-time settings for a single device session.

    ``response_timeout`` is used for three deadlines: the connect handshake,
    the idle timeout while connected, and each request's wait for a reply.
    """

    model_config = ConfigDict(frozen=True)

    host: str = Field(min_length=1)
    port: int = Field(gt=0, le=65535)
    reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL  # <= 0 disables
    response_timeout: float = Field(default=DEFAULT_RESPONSE_TIMEOUT, gt=0)
    encoding: str = DEFAULT_ENCODING

    @property
    def auto_reconnect(self) -> bool:
        """Whether unexpected disconnects schedule a reconnect."""
        return self.reconnect_interval > 0

    @classmethod
    def from_env(cls, **overrides: Any) -> SessionConfig:
        """Build a config from ``DEVICE_LINK_*`` variables.

        Keyword overrides take precedence over the environment. Unset
        variables fall back to the model defaults.
        """
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            env_value = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
            if env_value is not None:
                values[name] = env_value
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)
