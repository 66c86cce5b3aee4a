"""
machinist/models/credentials.py

Join credentials, cluster trust material and host identity.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class JoinCredential(BaseModel):
    """A bootstrap token plus the material a new node needs to trust the cluster."""

    token_id: str = Field(..., pattern=r"^[a-z0-9]{6}$")
    token_secret: str = Field(..., pattern=r"^[a-z0-9]{16}$")
    expiration: str
    ca_cert_hash: str = ""
    certificate_key: str = ""

    @property
    def token(self) -> str:
        return f"{self.token_id}.{self.token_secret}"


class TrustMaterial(BaseModel):
    ca_cert_hash: str
    certificate_key: str = ""


class MachineIdentifiers(BaseModel):
    machine_id: str
    system_uuid: str


class PackageFamily(str, Enum):
    DEB = "deb"
    RPM = "rpm"


class OSInfo(BaseModel):
    id: str
    package_family: PackageFamily
