"""
machinist/plans/executor.py

Plans as ordered shell scripts. The executor knows just enough about each
package family (deb, rpm) to install pinned Kubernetes packages and hold
them at that version; everything else is plain POSIX shell.

Scripts are written to be re-runnable: re-applying a plan after a partial
failure converges to the same state.
"""

from __future__ import annotations

import base64
import difflib
import json
import logging
import posixpath
import shlex
from typing import List

from machinist.models.credentials import OSInfo, PackageFamily
from machinist.models.plan import NodeParams, Plan, PlanResource
from machinist.store.interfaces import PlanExecutor, RemoteSession, UpgradeRole
from machinist.utils.versions import less_than, node_style_version

logger = logging.getLogger(__name__)

KUBE_PACKAGES = ("kubelet", "kubeadm", "kubectl")
JOIN_TOKEN_ENV = "MACHINIST_JOIN_TOKEN"
CERTIFICATE_KEY_ENV = "MACHINIST_CERTIFICATE_KEY"
API_ENDPOINT_ENV = "MACHINIST_API_ENDPOINT"


def _bare(version: str) -> str:
    return version[1:] if version.startswith("v") else version


def install_command(family: PackageFamily, package: str, version: str) -> str:
    if family == PackageFamily.DEB:
        return (
            "apt-get update -q && DEBIAN_FRONTEND=noninteractive "
            f"apt-get install -y --allow-change-held-packages {package}={_bare(version)}-00"
        )
    return (
        f"yum install -y {package}-{_bare(version)} --disableexcludes=kubernetes"
    )


def unlock_command(family: PackageFamily) -> str:
    if family == PackageFamily.DEB:
        return "apt-mark unhold " + " ".join(KUBE_PACKAGES) + " || true"
    return "yum versionlock delete 'kube*' || true"


def lock_command(family: PackageFamily) -> str:
    if family == PackageFamily.DEB:
        return "apt-mark hold " + " ".join(KUBE_PACKAGES) + " || true"
    return "yum versionlock add 'kube*' || true"


def kubelet_env_file(family: PackageFamily) -> str:
    if family == PackageFamily.DEB:
        return "/etc/default/kubelet"
    return "/etc/sysconfig/kubelet"


def write_file_script(path: str, content: str) -> str:
    encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
    directory = posixpath.dirname(path) or "/"
    return (
        f"mkdir -p {shlex.quote(directory)} && "
        f"echo {encoded} | base64 -d > {shlex.quote(path)}"
    )


def _kubelet_args(params: NodeParams) -> List[str]:
    args = [f"--node-ip={params.node_ip}"]
    if params.cloud_provider:
        args.append(f"--cloud-provider={params.cloud_provider}")
    args += [f"--{k}={v}" for k, v in sorted(params.kubelet_extra_args.items())]
    return args


def _join_script(params: NodeParams) -> str:
    cmd = [
        "kubeadm",
        "join",
        f'"${API_ENDPOINT_ENV}"',
        "--token",
        f'"${JOIN_TOKEN_ENV}"',
        "--discovery-token-ca-cert-hash",
        params.ca_cert_hash,
    ]
    if params.is_control_plane:
        cmd += [
            "--control-plane",
            "--certificate-key",
            f'"${CERTIFICATE_KEY_ENV}"',
            "--apiserver-advertise-address",
            params.node_ip,
        ]
    return "[ -f /etc/kubernetes/kubelet.conf ] || " + " ".join(cmd)


class ScriptPlanExecutor(PlanExecutor):
    async def node_plan(
        self, session: RemoteSession, os_info: OSInfo, params: NodeParams
    ) -> Plan:
        family = os_info.package_family
        resources: List[PlanResource] = [
            PlanResource(
                name=f"file:{path}", script=write_file_script(path, content)
            )
            for path, content in sorted(params.files.items())
        ]
        file_names = [r.name for r in resources]

        resources.append(
            PlanResource(
                name="install:kubernetes-packages",
                script=" && ".join(
                    [unlock_command(family)]
                    + [install_command(family, p, params.version) for p in KUBE_PACKAGES]
                    + [lock_command(family)]
                ),
                depends_on=file_names,
            )
        )
        resources.append(
            PlanResource(
                name="configure:kubelet",
                script=write_file_script(
                    kubelet_env_file(family),
                    "KUBELET_EXTRA_ARGS=" + " ".join(_kubelet_args(params)) + "\n",
                )
                + " && systemctl enable kubelet",
                depends_on=["install:kubernetes-packages"],
            )
        )
        resources.append(
            PlanResource(
                name="kubeadm:join",
                script=_join_script(params),
                depends_on=["configure:kubelet"],
                env={
                    API_ENDPOINT_ENV: params.api_endpoint,
                    JOIN_TOKEN_ENV: params.token,
                    CERTIFICATE_KEY_ENV: params.certificate_key,
                },
            )
        )
        resources.append(
            PlanResource(
                name="service:kubelet",
                script="systemctl daemon-reload && systemctl restart kubelet",
                depends_on=["kubeadm:join"],
            )
        )
        return Plan(resources=resources)

    async def upgrade_plan(
        self,
        session: RemoteSession,
        os_info: OSInfo,
        version: str,
        role: UpgradeRole,
    ) -> Plan:
        """
        The targeted upgrade sequence: unlock packages, install kubeadm,
        run the role-specific kubeadm upgrade, install and restart kubelet,
        install kubectl, relock packages.
        """
        family = os_info.package_family
        target = node_style_version(version)

        if role == UpgradeRole.ORIGINAL_CONTROL_PLANE:
            upgrade = f"kubeadm upgrade plan && kubeadm upgrade apply -y {target}"
        elif role == UpgradeRole.SECONDARY_CONTROL_PLANE:
            # Before 1.16 secondary control-plane nodes needed the
            # experimental subcommand.
            upgrade = "kubeadm upgrade node"
            if less_than(target, "v1.16.0"):
                upgrade += " experimental-control-plane"
        else:
            upgrade = f"kubeadm upgrade node config --kubelet-version {target}"

        steps = [
            ("upgrade:node-unlock-kubernetes", unlock_command(family)),
            ("upgrade:node-install-kubeadm", install_command(family, "kubeadm", target)),
            ("upgrade:node-kubeadm-upgrade", upgrade),
            ("upgrade:node-kubelet", install_command(family, "kubelet", target)),
            ("upgrade:node-restart-kubelet", "systemctl restart kubelet"),
            ("upgrade:node-kubectl", install_command(family, "kubectl", target)),
            ("upgrade:node-lock-kubernetes", lock_command(family)),
        ]
        return Plan(
            resources=[
                PlanResource(
                    name=name,
                    script=script,
                    depends_on=[steps[i - 1][0]] if i else [],
                )
                for i, (name, script) in enumerate(steps)
            ]
        )

    async def apply(self, session: RemoteSession, plan: Plan) -> None:
        for resource in plan.resources:
            logger.info("Applying %s on %s", resource.name, session.address)
            exports = "".join(
                f"export {key}={shlex.quote(value)}; "
                for key, value in resource.env.items()
            )
            await session.run(exports + resource.script, sensitive=True)

    def diff(self, current: str, desired: str) -> str:
        return "".join(
            difflib.unified_diff(
                _pretty(current).splitlines(keepends=True),
                _pretty(desired).splitlines(keepends=True),
                fromfile="applied",
                tofile="desired",
            )
        )


def _pretty(plan_json: str) -> str:
    if not plan_json:
        return ""
    try:
        return json.dumps(json.loads(plan_json), indent=2, sort_keys=True) + "\n"
    except json.JSONDecodeError:
        return plan_json if plan_json.endswith("\n") else plan_json + "\n"
