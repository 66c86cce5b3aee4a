"""
machinist/models/settings.py

Reconciler configuration. Every field has a default suitable for an
in-cluster controller and can be overridden from the environment with the
MACHINIST_ prefix (nested fields use a double underscore, for example
MACHINIST_VAULT__VAULT_ROLE_NAME) or from a YAML document.
"""

from __future__ import annotations

from typing import Literal, Optional

import yaml
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from machinist.models.vault import VaultSettings

SecretBackend = Literal["kubernetes", "vault"]


class ReconcilerSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MACHINIST_", env_nested_delimiter="__"
    )

    controller_namespace: str = "machinist-system"
    controller_name: str = "machinist-controller"
    controller_secret: str = "machinist-controller-secrets"
    seed_plan_config_map: str = "machinist-seed-plan"

    secret_backend: SecretBackend = "kubernetes"
    vault: Optional[VaultSettings] = None

    kubeconfig: Optional[str] = None
    drain_timeout_seconds: float = Field(default=60.0, gt=0)
    drain_ignore_daemonsets: bool = True
    drain_delete_local_data: bool = True
    drain_force: bool = True
    conflict_retry_steps: int = Field(default=5, ge=1)
    conflict_retry_delay: float = Field(default=0.01, ge=0)
    command_retries: int = Field(default=3, ge=1)
    command_retry_delay: float = Field(default=1.0, ge=0)

    @model_validator(mode="after")
    def check_backend(self) -> ReconcilerSettings:
        if self.secret_backend == "vault" and self.vault is None:
            raise ValueError("secret_backend 'vault' requires a 'vault' section.")
        return self

    def to_yaml(self, *, sort_keys: bool = False) -> str:
        return yaml.dump(self.model_dump(mode="json"), sort_keys=sort_keys)

    @classmethod
    def from_yaml(cls, yaml_str: str) -> ReconcilerSettings:
        """
        Deserialize settings from a YAML string. Keys absent from the document
        fall back to the environment, then to the defaults.
        """
        data = yaml.safe_load(yaml_str) or {}
        return cls(**data)
