"""
machinist/models/plan.py

Plan models. A Plan is an ordered list of named resources, each a shell
script applied on the host. The applied plan is recorded on the node as an
annotation holding its canonical JSON; convergence is decided by comparing
canonical JSON, never by comparing objects.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field, model_validator

from machinist.models.validator import parse_json_as


class PlanResource(BaseModel):
    """
    One step of a plan. `env` carries secret inputs (join tokens, keys) that
    the script reads from its environment; it is excluded from serialisation
    so recorded plans never contain secrets and do not change when a token
    is rotated.
    """

    name: str
    script: str
    depends_on: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict, exclude=True)


class Plan(BaseModel):
    resources: List[PlanResource] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_dependencies(self) -> Plan:
        """Each resource may only depend on resources listed before it."""
        seen: Set[str] = set()
        for res in self.resources:
            if res.name in seen:
                raise ValueError(f"duplicate plan resource '{res.name}'")
            missing = [d for d in res.depends_on if d not in seen]
            if missing:
                raise ValueError(
                    f"plan resource '{res.name}' depends on unknown or later "
                    f"resources: {missing}"
                )
            seen.add(res.name)
        return self

    def to_json(self) -> str:
        """Canonical JSON: sorted keys, compact separators."""
        return json.dumps(self.model_dump(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str) -> Plan:
        return parse_json_as(text, cls)


def canonicalize_plan_json(text: str) -> str:
    """
    Re-serialise a plan annotation in canonical form.

    Unparsable text is returned unchanged so that it never compares equal to
    a real plan.
    """
    try:
        decoded: Any = json.loads(text)
    except (TypeError, json.JSONDecodeError):
        return text
    return json.dumps(decoded, sort_keys=True, separators=(",", ":"))


def plans_equal(a: str, b: str) -> bool:
    return canonicalize_plan_json(a) == canonicalize_plan_json(b)


class NodeParams(BaseModel):
    """Everything the plan builder needs to set a host up as a node."""

    is_control_plane: bool
    control_plane_address: str
    control_plane_port: int = 6443
    token: str
    ca_cert_hash: str
    certificate_key: str = ""
    node_ip: str
    version: str
    files: Dict[str, str] = Field(default_factory=dict)
    cloud_provider: Optional[str] = None
    kubelet_extra_args: Dict[str, str] = Field(default_factory=dict)
    namespace: str = "default"
    control_plane_endpoint: Optional[str] = None

    @property
    def api_endpoint(self) -> str:
        if self.control_plane_endpoint:
            return self.control_plane_endpoint
        return f"{self.control_plane_address}:{self.control_plane_port}"


class SeedPlanParams(BaseModel):
    """
    Parameters recorded when the first control-plane node was bootstrapped
    out of band, so the engine can annotate it with the matching plan.
    """

    node_ip: str
    version: str
    files: Dict[str, str] = Field(default_factory=dict)
    cloud_provider: Optional[str] = None
    kubelet_extra_args: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_config_map(cls, data: Dict[str, str]) -> SeedPlanParams:
        raw = data.get("params")
        if raw is None:
            raise ValueError("seed plan config map has no 'params' key")
        return parse_json_as(raw, cls)
