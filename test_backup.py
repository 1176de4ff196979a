"""
Tests for encrypted backups and the restore checks.
"""

import json
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

import cipherchat.backup as backup_module
from cipherchat.backup import (
    BACKUP_MAGIC,
    BACKUP_VERSION,
    BACKUP_KDF_ITERATIONS,
    BackupEnvelope,
    BackupPayload,
    BundleRecord,
    Contact,
    build_backup_payload,
    encode_backup,
    decode_backup,
    encode_backup_async,
    decode_backup_async,
    read_envelope,
    format_size
)
from cipherchat.hybrid import encrypt_for_both, decrypt_text
from cipherchat.keys import generate_keypair
from cipherchat.primitives import (
    b64decode,
    b64encode,
    derive_key,
    generate_nonce,
    generate_salt,
    seal,
    InvalidFormat,
    WrongPassword
)
from cipherchat.restore import OwnershipMismatch, verify_backup_owner, open_backup, open_backup_async


@pytest.fixture(scope="module")
def alice():
    return generate_keypair()


@pytest.fixture(scope="module")
def bob():
    return generate_keypair()


def _message(index, text, sender, sender_keys, recipient, recipient_keys, when):
    encrypted = encrypt_for_both(text, recipient_keys.public_key, sender_keys.public_key)
    return {
        "_id": f"msg-{index}",
        "sender": {"username": sender, "publicKey": sender_keys.public_key},
        "recipient": {"username": recipient, "publicKey": recipient_keys.public_key},
        **encrypted.to_dict(),
        "read": index % 2 == 0,
        "createdAt": when.isoformat(),
    }


@pytest.fixture(scope="module")
def payload(alice, bob):
    start = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
    messages = [
        _message(1, "hi bob", "alice", alice, "bob", bob, start),
        _message(2, "hi alice", "bob", bob, "alice", alice, start + timedelta(minutes=1)),
        _message(3, "how are you?", "alice", alice, "bob", bob, start + timedelta(minutes=2)),
    ]
    return build_backup_payload(
        owner={"username": "alice", "publicKey": alice.public_key},
        contacts=[{"username": "bob", "publicKey": bob.public_key}],
        messages=messages
    )


@pytest.fixture(scope="module")
def envelope(payload):
    return encode_backup(payload, "backup123")


def _forbid_key_derivation(monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("key derivation must not run for invalid files")
    monkeypatch.setattr(backup_module, "derive_key", fail)


class TestBuildPayload:

    def test_stats_are_computed(self, payload):
        assert payload.stats.total_messages == 3
        assert payload.stats.total_contacts == 1
        assert payload.version == BACKUP_VERSION
        assert payload.created_at.tzinfo is not None

    def test_invalid_records_rejected(self, alice):
        with pytest.raises(InvalidFormat):
            build_backup_payload(
                owner={"username": "alice", "publicKey": alice.public_key},
                contacts=[],
                messages=[{"_id": "broken"}]
            )

    def test_wire_names(self, payload):
        data = json.loads(payload.model_dump_json(by_alias=True))
        assert set(data) == {"version", "createdAt", "owner", "contacts", "messages", "stats"}
        assert data["stats"] == {"totalMessages": 3, "totalContacts": 1}
        message = data["messages"][0]
        assert message["_id"] == "msg-1"
        assert set(message["encryptedForRecipient"]) == {"ciphertext", "encKey", "iv"}


class TestEncodeBackup:

    def test_envelope_fields(self, envelope):
        document = json.loads(envelope.to_json())
        assert set(document) == {"magic", "version", "createdAt", "salt", "iv", "ciphertext", "stats", "owner"}
        assert document["magic"] == BACKUP_MAGIC
        assert document["version"] == "1.0"
        assert document["owner"] == "alice"
        assert document["stats"] == {"totalMessages": 3, "totalContacts": 1}
        assert len(b64decode(document["salt"])) == 16
        assert len(b64decode(document["iv"])) == 12
        datetime.fromisoformat(document["createdAt"].replace("Z", "+00:00"))

    def test_fresh_salt_and_iv(self, payload, envelope):
        other = encode_backup(payload, "backup123")
        assert other.salt != envelope.salt
        assert other.iv != envelope.iv
        assert other.ciphertext != envelope.ciphertext

    def test_ciphertext_hides_contents(self, envelope, bob):
        raw = b64decode(envelope.ciphertext)
        assert b"hi bob" not in raw
        assert bob.public_key.encode() not in raw


class TestDecodeBackup:

    def test_round_trip(self, payload, envelope):
        assert decode_backup(envelope, "backup123") == payload

    def test_round_trip_from_file_text(self, payload, envelope):
        restored = decode_backup(envelope.to_json(), "backup123")
        assert restored == payload
        assert restored.stats.total_messages == 3
        assert len(restored.messages) == 3

    def test_round_trip_from_bytes_and_dict(self, payload, envelope):
        assert decode_backup(envelope.to_json().encode("utf-8"), "backup123") == payload
        assert decode_backup(envelope.to_dict(), "backup123") == payload

    def test_wrong_password(self, envelope):
        with pytest.raises(WrongPassword):
            decode_backup(envelope.to_json(), "backup124")

    def test_tampered_ciphertext_reports_wrong_password(self, envelope):
        document = envelope.to_dict()
        raw = bytearray(b64decode(document["ciphertext"]))
        raw[5] ^= 0x01
        document["ciphertext"] = b64encode(bytes(raw))
        with pytest.raises(WrongPassword):
            decode_backup(document, "backup123")

    def test_inner_bundles_untouched(self, payload, envelope, bob):
        restored = decode_backup(envelope, "backup123")
        original = payload.messages[0].encrypted_for_recipient
        assert restored.messages[0].encrypted_for_recipient == original
        assert decrypt_text(restored.messages[0].encrypted_for_recipient.to_bundle(), bob.private_key) == "hi bob"

    @pytest.mark.parametrize("content", [
        "not json at all",
        "[1, 2, 3]",
        json.dumps({"hello": "world"}),
        json.dumps({"magic": "SOMETHING_ELSE", "version": "1.0"}),
    ])
    def test_non_backup_rejected_before_key_derivation(self, monkeypatch, content):
        _forbid_key_derivation(monkeypatch)
        with pytest.raises(InvalidFormat):
            decode_backup(content, "backup123")

    @pytest.mark.parametrize("version", ["2.0", None, 1.0, ["1.0"]])
    def test_unsupported_version_rejected_before_key_derivation(self, monkeypatch, envelope, version):
        _forbid_key_derivation(monkeypatch)
        document = envelope.to_dict()
        document["version"] = version
        with pytest.raises(InvalidFormat):
            decode_backup(document, "backup123")

    def test_missing_fields_rejected_before_key_derivation(self, monkeypatch, envelope):
        _forbid_key_derivation(monkeypatch)
        document = envelope.to_dict()
        del document["ciphertext"]
        with pytest.raises(InvalidFormat):
            decode_backup(document, "backup123")

    def test_bad_salt_rejected(self, monkeypatch, envelope):
        _forbid_key_derivation(monkeypatch)
        document = envelope.to_dict()
        document["salt"] = b64encode(b"short")
        with pytest.raises(InvalidFormat):
            decode_backup(document, "backup123")

    def test_read_envelope_does_not_decrypt(self, monkeypatch, envelope):
        _forbid_key_derivation(monkeypatch)
        parsed = read_envelope(envelope.to_json())
        assert isinstance(parsed, BackupEnvelope)
        assert parsed.owner == "alice"
        assert parsed.stats.total_contacts == 1

    def test_iterations_keyed_by_version(self):
        assert BACKUP_KDF_ITERATIONS["1.0"] == 150000


class TestAsync:

    def test_encode_and_decode_async(self, payload):
        async def run():
            envelope = await encode_backup_async(payload, "pw")
            return await decode_backup_async(envelope.to_json(), "pw")

        assert asyncio.run(run()) == payload


class TestRestore:

    def test_owner_matches(self, payload):
        verify_backup_owner(payload, "alice")

    def test_owner_mismatch(self, payload):
        with pytest.raises(OwnershipMismatch):
            verify_backup_owner(payload, "bob")

    def test_open_backup(self, payload, envelope):
        assert open_backup(envelope.to_json(), "backup123", "alice") == payload

    def test_open_backup_wrong_user(self, envelope):
        with pytest.raises(OwnershipMismatch):
            open_backup(envelope.to_json(), "backup123", "mallory")

    def test_open_backup_wrong_password(self, envelope):
        with pytest.raises(WrongPassword):
            open_backup(envelope.to_json(), "backup124", "alice")

    def test_open_backup_async(self, payload, envelope):
        restored = asyncio.run(open_backup_async(envelope.to_json(), "backup123", "alice"))
        assert restored == payload


class TestBundleRecord:

    def test_from_bundle(self, alice):
        encrypted = encrypt_for_both("x", alice.public_key, alice.public_key)
        record = BundleRecord.from_bundle(encrypted.for_sender)
        assert record.to_bundle() == encrypted.for_sender


def _seal_document(document, password):
    salt = generate_salt()
    iv = generate_nonce()
    key = derive_key(password, salt, BACKUP_KDF_ITERATIONS[BACKUP_VERSION])
    return {
        "magic": BACKUP_MAGIC,
        "version": BACKUP_VERSION,
        "createdAt": "2025-03-02T08:00:00.000Z",
        "salt": b64encode(salt),
        "iv": b64encode(iv),
        "ciphertext": b64encode(seal(key, iv, json.dumps(document).encode("utf-8"))),
        "stats": document["stats"],
        "owner": document["owner"]["username"],
    }


class TestStoredShapes:

    def test_contact_without_public_key(self, alice, bob):
        payload = build_backup_payload(
            owner={"username": "alice", "publicKey": alice.public_key},
            contacts=[{"username": "bob", "publicKey": bob.public_key}, {"username": "carol"}],
            messages=[]
        )
        restored = decode_backup(encode_backup(payload, "pw").to_json(), "pw")
        assert restored == payload
        assert isinstance(restored.contacts[1], Contact)
        assert restored.contacts[1].public_key is None

    def test_sealed_document_with_keyless_contact(self, alice, bob):
        message = _message(1, "hi bob", "alice", alice, "bob", bob, datetime(2025, 3, 1, tzinfo=timezone.utc))
        document = {
            "version": "1.0",
            "createdAt": "2025-03-02T08:00:00.000Z",
            "owner": {"username": "alice", "publicKey": alice.public_key},
            "contacts": [{"username": "bob"}],
            "messages": [message],
            "stats": {"totalMessages": 1, "totalContacts": 1},
        }
        restored = open_backup(_seal_document(document, "pw"), "pw", "alice")
        assert restored.contacts[0].username == "bob"
        assert restored.contacts[0].public_key is None
        assert decrypt_text(restored.messages[0].encrypted_for_recipient.to_bundle(), bob.private_key) == "hi bob"

    def test_message_sender_still_needs_public_key(self, alice, bob):
        message = _message(1, "x", "alice", alice, "bob", bob, datetime(2025, 3, 1, tzinfo=timezone.utc))
        del message["sender"]["publicKey"]
        with pytest.raises(InvalidFormat):
            build_backup_payload(
                owner={"username": "alice", "publicKey": alice.public_key},
                contacts=[],
                messages=[message]
            )

    def test_unknown_fields_survive_round_trip(self, alice, bob):
        message = _message(1, "x", "alice", alice, "bob", bob, datetime(2025, 3, 1, tzinfo=timezone.utc))
        message["readAt"] = "2025-03-01T00:05:00Z"
        message["encryptedForSender"]["note"] = "kept"
        payload = build_backup_payload(
            owner={"username": "alice", "publicKey": alice.public_key, "displayName": "Alice"},
            contacts=[{"username": "bob", "publicKey": bob.public_key, "addedAt": "2025-01-01"}],
            messages=[message]
        )

        data = json.loads(decode_backup(encode_backup(payload, "pw"), "pw").model_dump_json(by_alias=True))

        assert data["owner"]["displayName"] == "Alice"
        assert data["contacts"][0]["addedAt"] == "2025-01-01"
        assert data["messages"][0]["readAt"] == "2025-03-01T00:05:00Z"
        assert data["messages"][0]["encryptedForSender"]["note"] == "kept"


@pytest.mark.parametrize("size,expected", [
    (0, "0 B"),
    (1023, "1023 B"),
    (1024, "1.0 KB"),
    (1536, "1.5 KB"),
    (1024 * 1024, "1.0 MB"),
    (5 * 1024 * 1024 + 512 * 1024, "5.5 MB"),
])
def test_format_size(size, expected):
    assert format_size(size) == expected


def test_payload_model_is_pydantic(payload):
    assert isinstance(payload, BackupPayload)
