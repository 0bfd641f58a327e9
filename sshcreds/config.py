"""Configuration settings."""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

BusyPolicy = Literal["queue", "fail"]
SuperuserMode = Literal["none", "try", "require"]


class Settings(BaseSettings):
    """Broker settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="SSHCREDS_",
        env_file=[".env"],
        extra="ignore",
    )

    # Key discovery
    ssh_dir: Path = Field(default_factory=lambda: Path.home() / ".ssh")
    default_key_names: list[str] = [
        "id_rsa",
        "id_dsa",
        "id_ecdsa",
        "id_ecdsa_sk",
        "id_ed25519",
        "id_ed25519_sk",
        "identity",
    ]

    # Agent
    ssh_add_path: str = "ssh-add"
    agent_socket: str | None = None
    agent_timeout_seconds: float = 30.0
    agent_retry_delays: list[float] = [0.2, 1.0]

    # Broker
    reconcile_interval_seconds: float = 30.0
    busy_policy: BusyPolicy = "queue"

    # Privileged file access
    superuser: SuperuserMode = "try"
    sudo_path: str = "sudo"

    log_level: str = "INFO"


settings = Settings()


def get_settings() -> Settings:
    """Get broker settings (for dependency injection)."""
    return settings
