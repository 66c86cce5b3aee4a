"""Tests for the join-credential lifecycle."""

import hashlib
import re
from datetime import timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from machinist.errors import ConflictError, JoinCommandNotFoundError, SecretNotFoundError
from machinist.secrets.credentials import (
    CredentialManager,
    bootstrap_token_secret_data,
    ca_cert_hash_from_pem,
    generate_bootstrap_token,
    is_expired,
)
from machinist.tests.fakes import (
    CONTROLLER_NS,
    CONTROLLER_SECRET,
    NOW,
    VALID_TOKEN_ID,
    VALID_TOKEN_SECRET,
    FakeSecretStore,
    seed_secrets,
)


def rfc3339(moment):
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


def self_signed_ca_pem():
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "kubernetes")])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(NOW)
        .not_valid_after(NOW + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode("utf-8"), key


def manager(store, now=NOW):
    return CredentialManager(store, CONTROLLER_NS, CONTROLLER_SECRET, clock=lambda: now)


class TestIsExpired:
    def test_boundaries(self):
        assert is_expired(rfc3339(NOW + timedelta(seconds=59)), NOW)
        assert not is_expired(rfc3339(NOW + timedelta(seconds=60)), NOW)
        assert not is_expired(rfc3339(NOW + timedelta(seconds=61)), NOW)

    def test_past_expiry(self):
        assert is_expired(rfc3339(NOW - timedelta(hours=1)), NOW)

    @pytest.mark.parametrize("value", [None, "", "tomorrow", "2024-13-45T99:00:00Z"])
    def test_missing_or_unparsable(self, value):
        assert is_expired(value, NOW)

    def test_offset_timestamps(self):
        assert not is_expired("2024-01-01T02:00:00+01:00", NOW)


class TestTokenGeneration:
    def test_shape(self):
        token_id, token_secret = generate_bootstrap_token()
        assert re.fullmatch(r"[a-z0-9]{6}", token_id)
        assert re.fullmatch(r"[a-z0-9]{16}", token_secret)

    def test_secret_data(self):
        data = bootstrap_token_secret_data("abcdef", "0123456789abcdef", NOW)
        assert data["expiration"] == "2024-01-02T00:00:00Z"
        assert data["usage-bootstrap-authentication"] == "true"
        assert data["usage-bootstrap-signing"] == "true"
        assert data["auth-extra-groups"] == "system:bootstrappers:kubeadm:default-node-token"


class TestObtainJoinCredential:
    @pytest.mark.asyncio
    async def test_reuses_valid_token(self):
        store = FakeSecretStore()
        seed_secrets(store)
        credential = await manager(store).obtain_join_credential()
        assert credential.token == f"{VALID_TOKEN_ID}.{VALID_TOKEN_SECRET}"
        assert credential.ca_cert_hash == "sha256:" + "d" * 64
        assert store.created == []

    @pytest.mark.asyncio
    async def test_mints_when_expiring(self):
        store = FakeSecretStore()
        seed_secrets(store, expiration=rfc3339(NOW + timedelta(seconds=30)))
        credential = await manager(store).obtain_join_credential()

        assert credential.token_id != VALID_TOKEN_ID
        assert store.created == [f"bootstrap-token-{credential.token_id}"]
        minted = store.secrets[("kube-system", f"bootstrap-token-{credential.token_id}")]
        assert minted.data["token-secret"] == credential.token_secret
        pointer = store.secrets[(CONTROLLER_NS, CONTROLLER_SECRET)]
        assert pointer.data["bootstrapTokenID"] == credential.token_id

    @pytest.mark.asyncio
    async def test_mints_when_token_secret_missing(self):
        store = FakeSecretStore()
        seed_secrets(store)
        del store.secrets[("kube-system", f"bootstrap-token-{VALID_TOKEN_ID}")]
        credential = await manager(store).obtain_join_credential()
        assert credential.token_id != VALID_TOKEN_ID
        assert len(store.created) == 1

    @pytest.mark.asyncio
    async def test_adopts_token_minted_by_racing_replica(self):
        store = FakeSecretStore()
        seed_secrets(store, expiration="garbage")

        def racer():
            store.put(
                "kube-system",
                "bootstrap-token-zzzzzz",
                {
                    "token-id": "zzzzzz",
                    "token-secret": "zzzzzzzzzzzzzzzz",
                    "expiration": "2024-01-02T00:00:00Z",
                },
            )
            current = store.secrets[(CONTROLLER_NS, CONTROLLER_SECRET)]
            store.put(
                CONTROLLER_NS,
                CONTROLLER_SECRET,
                {**current.data, "bootstrapTokenID": "zzzzzz"},
            )

        store.before_patch = racer
        credential = await manager(store).obtain_join_credential()
        assert credential.token == "zzzzzz.zzzzzzzzzzzzzzzz"

    @pytest.mark.asyncio
    async def test_conflict_surfaces_when_racer_token_unusable(self):
        store = FakeSecretStore()
        seed_secrets(store, expiration="garbage")

        def racer():
            current = store.secrets[(CONTROLLER_NS, CONTROLLER_SECRET)]
            store.put(CONTROLLER_NS, CONTROLLER_SECRET, dict(current.data))

        store.before_patch = racer
        with pytest.raises(ConflictError):
            await manager(store).obtain_join_credential()

    @pytest.mark.asyncio
    async def test_missing_controller_secret(self):
        with pytest.raises(SecretNotFoundError):
            await manager(FakeSecretStore()).obtain_join_credential()


class TestTrustMaterial:
    @pytest.mark.asyncio
    async def test_read_once_and_cached(self):
        store = FakeSecretStore()
        seed_secrets(store)
        creds = manager(store)
        first = await creds.trust_material()
        store.put(CONTROLLER_NS, CONTROLLER_SECRET, {"discoveryTokenCaCertHash": "sha256:other"})
        assert await creds.trust_material() == first

    @pytest.mark.asyncio
    async def test_derived_from_ca_certificate(self):
        pem, key = self_signed_ca_pem()
        spki = key.public_key().public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        expected = "sha256:" + hashlib.sha256(spki).hexdigest()

        store = FakeSecretStore()
        store.put(CONTROLLER_NS, CONTROLLER_SECRET, {"caCert": pem})
        trust = await manager(store).trust_material()
        assert trust.ca_cert_hash == expected
        assert ca_cert_hash_from_pem(pem) == expected

    @pytest.mark.asyncio
    async def test_missing(self):
        store = FakeSecretStore()
        store.put(CONTROLLER_NS, CONTROLLER_SECRET, {"sshKey": "k"})
        with pytest.raises(SecretNotFoundError):
            await manager(store).trust_material()

    @pytest.mark.asyncio
    async def test_recovered_from_join_output_and_stored(self):
        store = FakeSecretStore()
        store.put(CONTROLLER_NS, CONTROLLER_SECRET, {"sshKey": "k"})
        printed = []

        async def recover():
            printed.append(1)
            return (
                "kubeadm join 10.0.0.1:6443 --token abcdef.0123456789abcdef \\\n"
                "    --discovery-token-ca-cert-hash sha256:abc \\\n"
                "    --control-plane --certificate-key=f00d\n"
            )

        creds = manager(store)
        trust = await creds.trust_material(recover)
        assert trust.ca_cert_hash == "sha256:abc"
        assert trust.certificate_key == "f00d"
        assert await creds.trust_material(recover) == trust
        assert printed == [1]

        stored = store.secrets[(CONTROLLER_NS, CONTROLLER_SECRET)].data
        assert stored["discoveryTokenCaCertHash"] == "sha256:abc"
        assert stored["certificateKey"] == "f00d"
        assert await manager(store).trust_material() == trust

    @pytest.mark.asyncio
    async def test_stored_certificate_key_wins_over_recovered(self):
        store = FakeSecretStore()
        store.put(CONTROLLER_NS, CONTROLLER_SECRET, {"certificateKey": "cafe"})

        async def recover():
            return "kubeadm join 10.0.0.1:6443 --discovery-token-ca-cert-hash sha256:abc\n"

        trust = await manager(store).trust_material(recover)
        assert trust.certificate_key == "cafe"

    @pytest.mark.asyncio
    async def test_recovery_needs_a_join_command(self):
        store = FakeSecretStore()
        store.put(CONTROLLER_NS, CONTROLLER_SECRET, {"sshKey": "k"})

        async def recover():
            return "error: couldn't create a token\n"

        with pytest.raises(JoinCommandNotFoundError):
            await manager(store).trust_material(recover)
        stored = store.secrets[(CONTROLLER_NS, CONTROLLER_SECRET)].data
        assert "discoveryTokenCaCertHash" not in stored

    @pytest.mark.asyncio
    async def test_ssh_private_key(self):
        store = FakeSecretStore()
        seed_secrets(store)
        assert "PRIVATE KEY" in await manager(store).ssh_private_key()
