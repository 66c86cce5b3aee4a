"""
machinist/models/machine.py

Desired-state models: the cluster-wide settings and the per-host Machine
declarations the reconciler converges toward.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class MachineRole(str, Enum):
    CONTROL_PLANE = "control-plane"
    WORKER = "worker"


class Endpoint(BaseModel):
    address: str
    port: int = Field(default=22, ge=1, le=65535)


class FileSpec(BaseModel):
    """
    A file to lay down on every host. Content is either inline or read from a
    key of a ConfigMap in the machine's namespace at plan time.
    """

    path: str
    content: Optional[str] = None
    config_map: Optional[str] = None
    key: Optional[str] = None

    @model_validator(mode="after")
    def check_source(self) -> FileSpec:
        if self.content is None and not (self.config_map and self.key):
            raise ValueError(
                f"file '{self.path}' needs inline content or config_map + key"
            )
        if self.content is not None and self.config_map:
            raise ValueError(
                f"file '{self.path}': content and config_map are mutually exclusive"
            )
        return self


class ClusterSpec(BaseModel):
    name: str = "cluster"
    ssh_user: str = "root"
    control_plane_endpoint: Optional[str] = None
    api_server_port: int = Field(default=6443, ge=1, le=65535)
    cloud_provider: Optional[str] = None
    kubelet_extra_args: Dict[str, str] = Field(default_factory=dict)
    files: List[FileSpec] = Field(default_factory=list)


class Machine(BaseModel):
    """
    A host the cluster should contain.

    `public` is the address the reconciler dials over SSH; `private` is the
    address the node advertises inside the cluster. Either may be absent when
    a Provisioner is expected to create the host first.
    """

    name: str
    namespace: str = "default"
    role: MachineRole = MachineRole.WORKER
    version: str
    public: Optional[Endpoint] = None
    private: Optional[Endpoint] = None
    provider_id: Optional[str] = None
    deletion_requested: bool = False

    @property
    def key(self) -> str:
        return f"{self.namespace}:{self.name}"

    @property
    def is_control_plane(self) -> bool:
        return self.role == MachineRole.CONTROL_PLANE
