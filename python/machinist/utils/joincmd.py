"""
machinist/utils/joincmd.py

Parsing of the join command printed by the cluster bootstrap tool, e.g.

    You can now join any number of machines by running the following:

      kubeadm join 10.0.0.1:6443 --token abcdef.0123456789abcdef \\
          --discovery-token-ca-cert-hash sha256:1234... \\
          --control-plane --certificate-key f00d...

Flags are parsed permissively: unknown flags are skipped and both
"--flag value" and "--flag=value" forms are accepted.
"""

from __future__ import annotations

from typing import List, Optional

from machinist.errors import JoinCommandNotFoundError
from machinist.models.credentials import TrustMaterial

JOIN_MARKER = "kubeadm join"

CA_CERT_HASH_FLAG = "discovery-token-ca-cert-hash"
CERTIFICATE_KEY_FLAG = "certificate-key"
TOKEN_FLAG = "token"

# Prints a control-plane join command for a short-lived token, re-uploading
# the control-plane certificates so the printed certificate key is usable.
PRINT_JOIN_COMMAND = (
    "kubeadm token create --print-join-command --ttl 10m "
    '--certificate-key "$(kubeadm init phase upload-certs --upload-certs | tail -n 1)"'
)


def _sanitize(line: str) -> str:
    return line.rstrip().rstrip("\\").strip()


def extract_join_command(text: str) -> str:
    """
    Find the join command in tool output and return it as a single line.

    The first line containing "kubeadm join" starts the command; each line
    ending in a backslash continues it. Fragments are joined with single
    spaces.

    Raises:
        JoinCommandNotFoundError: If no line contains the join marker.
    """
    lines = text.splitlines()
    start = next((i for i, ln in enumerate(lines) if JOIN_MARKER in ln), None)
    if start is None:
        raise JoinCommandNotFoundError("no join command found in output")

    parts: List[str] = []
    for line in lines[start:]:
        fragment = _sanitize(line)
        if fragment:
            parts.append(fragment)
        if not line.rstrip().endswith("\\"):
            break
    return " ".join(parts)


def _find_flag(tokens: List[str], flag: str) -> Optional[str]:
    long_flag = f"--{flag}"
    for i, tok in enumerate(tokens):
        if tok == long_flag:
            if i + 1 < len(tokens) and not tokens[i + 1].startswith("--"):
                return tokens[i + 1]
            return None
        if tok.startswith(long_flag + "="):
            return tok[len(long_flag) + 1 :]
    return None


def extract_flag_value(command: str, flag: str) -> str:
    """
    Return the value of `--<flag>` in `command`.

    Raises:
        JoinCommandNotFoundError: If the flag is absent or has no value.
    """
    value = _find_flag(command.split(), flag.lstrip("-"))
    if not value:
        raise JoinCommandNotFoundError(f"flag --{flag.lstrip('-')} not found")
    return value


def extract_ca_cert_hash(command: str) -> str:
    return extract_flag_value(command, CA_CERT_HASH_FLAG)


def extract_certificate_key(command: str) -> str:
    return extract_flag_value(command, CERTIFICATE_KEY_FLAG)


def extract_token(command: str) -> str:
    return extract_flag_value(command, TOKEN_FLAG)


def trust_material_from_output(text: str) -> TrustMaterial:
    """
    Build TrustMaterial from bootstrap output. The certificate key is only
    printed for control-plane joins, so its absence is not an error.
    """
    command = extract_join_command(text)
    try:
        certificate_key = extract_certificate_key(command)
    except JoinCommandNotFoundError:
        certificate_key = ""
    return TrustMaterial(
        ca_cert_hash=extract_ca_cert_hash(command),
        certificate_key=certificate_key,
    )
