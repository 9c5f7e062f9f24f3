"""Document store configuration."""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Optional, Tuple

DEFAULT_INDEX = "distributed-locks"


@dataclass
class StoreConfig:
    """Connection settings for the Elasticsearch lock index."""

    base_url: str = "http://localhost:9200"
    index: str = DEFAULT_INDEX
    timeout: timedelta = field(default_factory=lambda: timedelta(seconds=30))
    username: Optional[str] = None
    password: Optional[str] = None
    api_key: Optional[str] = None
    refresh: bool = True
    verify: bool = True

    @classmethod
    def from_env(cls, prefix: str = "ESLOCK_") -> "StoreConfig":
        """Build a config from environment variables.

        Recognized variables (with the default prefix): ESLOCK_URL,
        ESLOCK_INDEX, ESLOCK_TIMEOUT (seconds), ESLOCK_USERNAME,
        ESLOCK_PASSWORD, ESLOCK_API_KEY, ESLOCK_REFRESH, ESLOCK_VERIFY.
        """
        env = os.environ
        config = cls()
        config.base_url = env.get(f"{prefix}URL", config.base_url)
        config.index = env.get(f"{prefix}INDEX", config.index)
        if f"{prefix}TIMEOUT" in env:
            config.timeout = timedelta(seconds=float(env[f"{prefix}TIMEOUT"]))
        config.username = env.get(f"{prefix}USERNAME")
        config.password = env.get(f"{prefix}PASSWORD")
        config.api_key = env.get(f"{prefix}API_KEY")
        if f"{prefix}REFRESH" in env:
            config.refresh = _truthy(env[f"{prefix}REFRESH"])
        if f"{prefix}VERIFY" in env:
            config.verify = _truthy(env[f"{prefix}VERIFY"])
        return config

    def headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"ApiKey {self.api_key}"
        return headers

    def auth(self) -> Optional[Tuple[str, str]]:
        if self.username is not None:
            return (self.username, self.password or "")
        return None


def _truthy(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")
