"""
machinist/models/vault.py

Connection settings for the Vault secret backend.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field
from pydantic.functional_validators import model_validator


class VaultSettings(BaseModel):
    vault_addr: str = Field(default="http://vault.vault.svc.cluster.local:8200")
    vault_role_name: Optional[str] = None
    token_path: str = "/var/run/secrets/kubernetes.io/serviceaccount/token"
    verify_ssl: bool = True
    kv_mount: str = "secret"
    renew_threshold_seconds: float = 60.0
    check_interval_seconds: float = 30.0
    direct_vault_token: Optional[str] = None

    @model_validator(mode="after")
    def check_auth_source(self) -> VaultSettings:
        """
        Exactly one way of authenticating must be configured: a Kubernetes
        auth role or a literal token.
        """
        if self.vault_role_name and self.direct_vault_token:
            raise ValueError(
                "vault_role_name and direct_vault_token are mutually exclusive."
            )
        if not self.vault_role_name and not self.direct_vault_token:
            raise ValueError(
                "one of vault_role_name or direct_vault_token must be set."
            )
        return self
