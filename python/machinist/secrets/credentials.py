"""
machinist/secrets/credentials.py

Join-credential lifecycle. The controller secret holds a pointer
("bootstrapTokenID") to the bootstrap-token secret currently handed out to
joining hosts, plus the cluster trust material. A fresh token is minted when
the pointer is missing, dangling or names a token within a minute of expiry.

Minting is safe across concurrent reconciler replicas: the token secret is
created in a single write with its full data, and the pointer is moved with
a write conditional on the version read before minting. The loser of a race
adopts the winner's token when it is valid.

When the controller secret carries neither a trust hash nor a CA certificate
the trust material is recovered from the join command a control-plane host
prints, and written back to the secret.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from machinist.errors import ConflictError, SecretNotFoundError
from machinist.models.credentials import JoinCredential, TrustMaterial
from machinist.store.interfaces import SecretStore
from machinist.utils.joincmd import trust_material_from_output

logger = logging.getLogger(__name__)

BOOTSTRAP_TOKEN_NAMESPACE = "kube-system"
BOOTSTRAP_TOKEN_PREFIX = "bootstrap-token-"
BOOTSTRAP_TOKEN_AUTH_GROUP = "system:bootstrappers:kubeadm:default-node-token"
BOOTSTRAP_TOKEN_TTL = timedelta(hours=24)
EXPIRY_MARGIN = timedelta(seconds=60)

SSH_KEY = "sshKey"
BOOTSTRAP_TOKEN_ID_KEY = "bootstrapTokenID"
CA_CERT_HASH_KEY = "discoveryTokenCaCertHash"
CERTIFICATE_KEY_KEY = "certificateKey"
CA_CERT_KEY = "caCert"

_TOKEN_ALPHABET = string.ascii_lowercase + string.digits

JoinOutputSource = Callable[[], Awaitable[str]]


def _parse_rfc3339(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def format_rfc3339(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def is_expired(expiration: Optional[str], now: datetime) -> bool:
    """
    True if a token with this expiry must no longer be handed out.

    A missing or unparsable expiry counts as expired, as does one less than
    a minute away. Exactly a minute away is still valid.
    """
    if not expiration:
        return True
    expiry = _parse_rfc3339(expiration)
    if expiry is None:
        return True
    return expiry - now < EXPIRY_MARGIN


def generate_bootstrap_token() -> Tuple[str, str]:
    """Return a fresh (token_id, token_secret) pair: 6 and 16 chars of [a-z0-9]."""
    token_id = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(6))
    token_secret = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(16))
    return token_id, token_secret


def bootstrap_token_secret_name(token_id: str) -> str:
    return f"{BOOTSTRAP_TOKEN_PREFIX}{token_id}"


def bootstrap_token_secret_data(
    token_id: str, token_secret: str, now: datetime
) -> Dict[str, str]:
    """The data of a bootstrap-token secret expiring 24h after `now`."""
    return {
        "token-id": token_id,
        "token-secret": token_secret,
        "expiration": format_rfc3339(now + BOOTSTRAP_TOKEN_TTL),
        "usage-bootstrap-authentication": "true",
        "usage-bootstrap-signing": "true",
        "auth-extra-groups": BOOTSTRAP_TOKEN_AUTH_GROUP,
    }


def ca_cert_hash_from_pem(pem: str) -> str:
    """
    Compute the discovery hash of a CA certificate: "sha256:" followed by
    the hex SHA-256 of its DER-encoded SubjectPublicKeyInfo.
    """
    cert = x509.load_pem_x509_certificate(pem.encode("utf-8"))
    spki = cert.public_key().public_bytes(
        Encoding.DER, PublicFormat.SubjectPublicKeyInfo
    )
    return "sha256:" + hashlib.sha256(spki).hexdigest()


class CredentialManager:
    """
    Hands out join credentials and trust material from the controller secret.

    Args:
        store: Where the controller and bootstrap-token secrets live.
        controller_namespace: Namespace of the controller secret.
        controller_secret: Name of the controller secret.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        store: SecretStore,
        controller_namespace: str,
        controller_secret: str,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._namespace = controller_namespace
        self._secret = controller_secret
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._trust: Optional[TrustMaterial] = None

    async def ssh_private_key(self) -> str:
        record = await self._store.get_secret(self._namespace, self._secret)
        key = record.data.get(SSH_KEY)
        if not key:
            raise SecretNotFoundError(
                f"'{SSH_KEY}' missing from secret {self._namespace}/{self._secret}"
            )
        return key

    async def trust_material(
        self, recover: Optional[JoinOutputSource] = None
    ) -> TrustMaterial:
        """
        Read the trust hash and certificate key once per manager instance.

        Args:
            recover: Returns the output of a join-command print on a
                control-plane host. Used, and its result stored, when the
                controller secret holds neither a hash nor a CA certificate.

        Raises:
            SecretNotFoundError: If no hash is stored and `recover` is None.
            JoinCommandNotFoundError: If the recovered output has no usable
                join command.
        """
        if self._trust is not None:
            return self._trust
        record = await self._store.get_secret(self._namespace, self._secret)
        ca_hash = record.data.get(CA_CERT_HASH_KEY, "")
        if not ca_hash and record.data.get(CA_CERT_KEY):
            ca_hash = ca_cert_hash_from_pem(record.data[CA_CERT_KEY])
        if ca_hash:
            self._trust = TrustMaterial(
                ca_cert_hash=ca_hash,
                certificate_key=record.data.get(CERTIFICATE_KEY_KEY, ""),
            )
            return self._trust
        if recover is None:
            raise SecretNotFoundError(
                f"no '{CA_CERT_HASH_KEY}' or '{CA_CERT_KEY}' in "
                f"secret {self._namespace}/{self._secret}"
            )

        logger.info(
            "Secret %s/%s has no trust material; recovering it from join output",
            self._namespace,
            self._secret,
        )
        recovered = trust_material_from_output(await recover())
        certificate_key = (
            record.data.get(CERTIFICATE_KEY_KEY) or recovered.certificate_key
        )
        update = {CA_CERT_HASH_KEY: recovered.ca_cert_hash}
        if certificate_key:
            update[CERTIFICATE_KEY_KEY] = certificate_key
        await self._store.patch_secret(self._namespace, self._secret, update)
        self._trust = TrustMaterial(
            ca_cert_hash=recovered.ca_cert_hash, certificate_key=certificate_key
        )
        return self._trust

    async def _valid_token(
        self, token_id: str, recover: Optional[JoinOutputSource]
    ) -> Optional[JoinCredential]:
        """The token named by `token_id`, or None if it is gone or expiring."""
        try:
            record = await self._store.get_secret(
                BOOTSTRAP_TOKEN_NAMESPACE, bootstrap_token_secret_name(token_id)
            )
        except SecretNotFoundError:
            logger.info("Bootstrap token %s no longer exists", token_id)
            return None
        expiration = record.data.get("expiration")
        if is_expired(expiration, self._clock()):
            logger.info("Bootstrap token %s has expired", token_id)
            return None
        trust = await self.trust_material(recover)
        return JoinCredential(
            token_id=record.data.get("token-id", token_id),
            token_secret=record.data.get("token-secret", ""),
            expiration=expiration or "",
            ca_cert_hash=trust.ca_cert_hash,
            certificate_key=trust.certificate_key,
        )

    async def obtain_join_credential(
        self, recover: Optional[JoinOutputSource] = None
    ) -> JoinCredential:
        """
        Return a join credential valid for at least another minute, minting
        one if necessary. `recover` is passed on to `trust_material`.

        Raises:
            ConflictError: If another writer moved the pointer to a token that
                is not usable either.
            SecretNotFoundError: If the controller secret does not exist.
        """
        pointer = await self._store.get_secret(self._namespace, self._secret)
        current_id = pointer.data.get(BOOTSTRAP_TOKEN_ID_KEY)
        if current_id:
            existing = await self._valid_token(current_id, recover)
            if existing is not None:
                return existing

        token_id, token_secret = generate_bootstrap_token()
        data = bootstrap_token_secret_data(token_id, token_secret, self._clock())
        await self._store.create_secret(
            BOOTSTRAP_TOKEN_NAMESPACE, bootstrap_token_secret_name(token_id), data
        )
        logger.info("Created bootstrap token %s", token_id)

        try:
            await self._store.patch_secret(
                self._namespace,
                self._secret,
                {BOOTSTRAP_TOKEN_ID_KEY: token_id},
                resource_version=pointer.resource_version,
            )
        except ConflictError:
            logger.warning(
                "Bootstrap token pointer changed while minting %s; re-reading",
                token_id,
            )
            reread = await self._store.get_secret(self._namespace, self._secret)
            raced_id = reread.data.get(BOOTSTRAP_TOKEN_ID_KEY)
            if raced_id:
                raced = await self._valid_token(raced_id, recover)
                if raced is not None:
                    return raced
            raise

        trust = await self.trust_material(recover)
        return JoinCredential(
            token_id=token_id,
            token_secret=token_secret,
            expiration=data["expiration"],
            ca_cert_hash=trust.ca_cert_hash,
            certificate_key=trust.certificate_key,
        )
