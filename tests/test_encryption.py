"""
Threshold encryption tests: tokens, sharing, sessions, key-server quorum.
"""

import json
import struct
import threading
import unittest

from opentruth import (
    AccessDeniedError,
    AccessPolicy,
    AuthorizationToken,
    CiphertextFormatError,
    DecryptionError,
    Ed25519Signer,
    InvalidSessionError,
    KeyServerError,
    LocalKeyServer,
    PolicyType,
    ProtocolConfig,
    QuorumNotReachedError,
    Secp256k1Signer,
    SessionExpiredError,
    SessionKey,
    ThresholdEncryption,
    UnsupportedSchemeError,
    build_authorization_token,
    derive_identity,
    parse_encrypted_object,
    parse_identity,
    verify_session_proof,
)
from opentruth.authorization import TOKEN_LENGTH
from opentruth.encryption import MAGIC
from opentruth.sharing import Share, combine_shares, pack_shares, split_secret, unpack_shares

PACKAGE_ID = "0x" + "ab" * 32
START = 1_700_000_000.0


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class DenyingKeyServer(LocalKeyServer):
    def request_key_share(self, key_id, authorization_token, session_proof):
        raise AccessDeniedError("policy says no", server_id=self.server_id)


class OfflineKeyServer(LocalKeyServer):
    def request_key_share(self, key_id, authorization_token, session_proof):
        raise KeyServerError(self.server_id, "connection refused")


class MisbehavingKeyServer(LocalKeyServer):
    def request_key_share(self, key_id, authorization_token, session_proof):
        raise UnsupportedSchemeError("ED448")


class StalledKeyServer(LocalKeyServer):
    def __init__(self, server_id, release, **kwargs):
        super().__init__(server_id, **kwargs)
        self._release = release

    def request_key_share(self, key_id, authorization_token, session_proof):
        self._release.wait(5)
        return super().request_key_share(key_id, authorization_token, session_proof)


class TestAuthorizationToken(unittest.TestCase):

    def setUp(self):
        self.address = Ed25519Signer.from_seed(b"\x11" * 32).address

    def test_layout(self):
        token = build_authorization_token(self.address)
        self.assertEqual(len(token), TOKEN_LENGTH)
        self.assertEqual(token[:4], b"\x00\x00\x00\x00")
        self.assertEqual(token[4:36], bytes.fromhex(self.address[2:]))
        self.assertEqual(token[36], 0)
        self.assertEqual(token[37:69], bytes.fromhex(self.address[2:]))
        self.assertEqual(struct.unpack("<Q", token[69:77])[0], 1000)
        self.assertEqual(struct.unpack("<Q", token[77:85])[0], 10_000_000)
        self.assertEqual(token[85], 0)

    def test_parse(self):
        parsed = AuthorizationToken.parse(build_authorization_token(self.address))
        self.assertEqual(parsed.sender, self.address)
        self.assertEqual(parsed.gas_owner, self.address)

    def test_uppercase_address_normalized(self):
        upper = "0x" + self.address[2:].upper()
        self.assertEqual(build_authorization_token(upper), build_authorization_token(self.address))

    def test_parse_rejects_other_shapes(self):
        token = build_authorization_token(self.address)
        for bad in (token[:-1], token + b"\x00", b"\x01" + token[1:], token[:36] + b"\x01" + token[37:], None):
            with self.assertRaises(ValueError):
                AuthorizationToken.parse(bad)

    def test_invalid_sender(self):
        with self.assertRaises(ValueError):
            build_authorization_token("0x1234")


class TestSharing(unittest.TestCase):

    def setUp(self):
        self.secret = bytes(range(32))

    def test_any_threshold_subset_recovers(self):
        shares = split_secret(self.secret, 2, 3)
        for pair in ((0, 1), (0, 2), (1, 2)):
            self.assertEqual(combine_shares([shares[i] for i in pair]), self.secret)
        self.assertEqual(combine_shares(shares), self.secret)

    def test_threshold_one(self):
        shares = split_secret(self.secret, 1, 4)
        for share in shares:
            self.assertEqual(combine_shares([share]), self.secret)

    def test_share_bytes(self):
        share = split_secret(self.secret, 3, 5)[4]
        raw = share.to_bytes()
        self.assertEqual(len(raw), 67)
        self.assertEqual(Share.from_bytes(raw), share)
        with self.assertRaises(ValueError):
            Share.from_bytes(raw[:-1])
        with self.assertRaises(ValueError):
            Share.from_bytes(b"\x00" + raw[1:])

    def test_bad_parameters(self):
        with self.assertRaises(ValueError):
            split_secret(self.secret, 4, 3)
        with self.assertRaises(ValueError):
            split_secret(self.secret, 0, 3)
        with self.assertRaises(ValueError):
            split_secret(b"short", 2, 3)

    def test_duplicate_indices(self):
        share = split_secret(self.secret, 2, 3)[0]
        with self.assertRaises(ValueError):
            combine_shares([share, share])
        with self.assertRaises(ValueError):
            combine_shares([])

    def test_packed_shares(self):
        shares = split_secret(self.secret, 3, 5)
        raw = pack_shares(shares[1:4])
        self.assertEqual(len(raw), 3 * 67)
        self.assertEqual(unpack_shares(raw), shares[1:4])
        self.assertEqual(combine_shares(unpack_shares(raw)), self.secret)
        for bad in (b"", raw[:-1]):
            with self.assertRaises(ValueError):
                unpack_shares(bad)


class TestIdentity(unittest.TestCase):

    def setUp(self):
        self.owner = Ed25519Signer.from_seed(b"\x12" * 32).address

    def test_round_trip(self):
        key_id = derive_identity(self.owner, 42)
        self.assertEqual(len(key_id), 82)
        self.assertEqual(parse_identity(key_id), (self.owner, 42))
        self.assertTrue(key_id.endswith("000000000000002a"))

    def test_deterministic(self):
        self.assertEqual(derive_identity(self.owner, 7), derive_identity(self.owner, 7))
        self.assertNotEqual(derive_identity(self.owner, 7), derive_identity(self.owner, 8))

    def test_invalid(self):
        for owner, nonce in ((self.owner, -1), (self.owner, 2 ** 64), ("0x12", 1), (self.owner, "1")):
            with self.assertRaises(ValueError):
                derive_identity(owner, nonce)
        with self.assertRaises(ValueError):
            parse_identity(self.owner)


class TestSession(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.wallet = Ed25519Signer.from_seed(b"\x13" * 32)
        self.session = SessionKey.create(self.wallet.address, PACKAGE_ID, ttl_min=10, clock=self.clock)
        self.key_id = derive_identity(self.wallet.address, 1)
        self.token = build_authorization_token(self.wallet.address)

    def certify(self):
        signature = self.wallet.sign(self.session.personal_message())
        self.session.set_personal_message_signature(signature, self.wallet.public_key, self.wallet.scheme)

    def test_personal_message(self):
        message = self.session.personal_message().decode('utf-8')
        self.assertIn(PACKAGE_ID, message)
        self.assertIn("for 10 mins from 2023-11-14 22:13:20 UTC", message)
        self.assertIn(self.session.session_public_key.hex(), message)

    def test_uncertified_session(self):
        self.assertFalse(self.session.is_certified)
        with self.assertRaises(InvalidSessionError):
            self.session.build_proof(self.key_id, self.token)

    def test_wrong_wallet(self):
        other = Ed25519Signer.from_seed(b"\x14" * 32)
        signature = other.sign(self.session.personal_message())
        with self.assertRaises(InvalidSessionError):
            self.session.set_personal_message_signature(signature, other.public_key, other.scheme)

    def test_bad_signature(self):
        with self.assertRaises(InvalidSessionError):
            self.session.set_personal_message_signature(b"\x00" * 64, self.wallet.public_key, self.wallet.scheme)

    def test_proof_verifies(self):
        self.certify()
        proof = self.session.build_proof(self.key_id, self.token)
        verify_session_proof(proof, self.key_id, self.token, now_ms=int(self.clock() * 1000))

    def test_proof_bound_to_request(self):
        self.certify()
        proof = self.session.build_proof(self.key_id, self.token)
        with self.assertRaises(InvalidSessionError):
            verify_session_proof(proof, derive_identity(self.wallet.address, 2), self.token,
                                 now_ms=int(self.clock() * 1000))

    def test_expiry(self):
        self.certify()
        proof = self.session.build_proof(self.key_id, self.token)
        self.assertEqual(proof.expires_at_ms, int(START * 1000) + 10 * 60_000)
        with self.assertRaises(SessionExpiredError):
            verify_session_proof(proof, self.key_id, self.token, now_ms=proof.expires_at_ms)
        self.clock.advance(10 * 60)
        self.assertTrue(self.session.is_expired())
        with self.assertRaises(SessionExpiredError):
            self.session.build_proof(self.key_id, self.token)

    def test_secp256k1_wallet(self):
        wallet = Secp256k1Signer()
        session = SessionKey.create(wallet.address, PACKAGE_ID, clock=self.clock)
        session.set_personal_message_signature(wallet.sign(session.personal_message()),
                                               wallet.public_key, wallet.scheme)
        proof = session.build_proof(self.key_id, self.token)
        verify_session_proof(proof, self.key_id, self.token, now_ms=int(self.clock() * 1000))


class ProtocolTestCase(unittest.TestCase):

    server_types = (LocalKeyServer, LocalKeyServer, LocalKeyServer)
    timeout = 2.0

    def setUp(self):
        self.clock = FakeClock()
        self.owner = Ed25519Signer.from_seed(b"\x21" * 32)
        self.stranger = Ed25519Signer.from_seed(b"\x22" * 32)
        self.servers = [self.make_server(cls, f"ks-{i}") for i, cls in enumerate(self.server_types)]
        config = ProtocolConfig(package_id=PACKAGE_ID, threshold=2, key_server_timeout=self.timeout)
        self.protocol = ThresholdEncryption(config, self.servers, clock=self.clock)

    def make_server(self, cls, server_id):
        return cls(server_id, package_id=PACKAGE_ID, clock=self.clock)

    def seal(self, plaintext=b"secret payload", **kwargs):
        return self.protocol.encrypt_for_owner(plaintext, self.owner.address, nonce=1, **kwargs)


class TestRoundTrip(ProtocolTestCase):

    def test_owner_decrypts(self):
        result = self.seal()
        self.assertNotIn(b"secret payload", result.ciphertext)
        plaintext = self.protocol.decrypt(result.ciphertext, result.key_id, self.owner.address, self.owner)
        self.assertEqual(plaintext, b"secret payload")

    def test_header(self):
        result = self.seal()
        obj = parse_encrypted_object(result.ciphertext)
        self.assertTrue(result.ciphertext.startswith(MAGIC))
        self.assertEqual(obj.key_id, result.key_id)
        self.assertEqual(obj.package_id, PACKAGE_ID)
        self.assertEqual(obj.threshold, 2)
        self.assertEqual(obj.servers, ("ks-0", "ks-1", "ks-2"))
        self.assertEqual(obj.weights, (1, 1, 1))
        self.assertEqual(result.policy, AccessPolicy.owner_only(self.owner.address))

    def test_key_id_from_header(self):
        result = self.seal()
        self.assertEqual(self.protocol.decrypt(result.ciphertext, None, self.owner.address, self.owner),
                         b"secret payload")

    def test_reusable_session(self):
        first = self.seal(b"one")
        second = self.protocol.encrypt_for_owner(b"two", self.owner.address, nonce=2)
        session = self.protocol.open_session(self.owner.address, self.owner)
        self.assertEqual(self.protocol.decrypt(first.ciphertext, first.key_id, self.owner.address, session), b"one")
        self.assertEqual(self.protocol.decrypt(second.ciphertext, second.key_id, self.owner.address, session), b"two")

    def test_empty_plaintext(self):
        result = self.seal(b"")
        self.assertEqual(self.protocol.decrypt(result.ciphertext, result.key_id, self.owner.address, self.owner), b"")

    def test_shares_escrowed_everywhere(self):
        result = self.seal()
        for server in self.servers:
            self.assertIn(result.key_id, server)

    def test_threshold_out_of_range(self):
        with self.assertRaises(ValueError):
            self.seal(threshold=4)
        with self.assertRaises(ValueError):
            self.seal(threshold=0)

    def test_policy_owner_must_match(self):
        with self.assertRaises(ValueError):
            self.seal(policy=AccessPolicy.owner_only(self.stranger.address))

    def test_duplicate_server_ids(self):
        config = ProtocolConfig(package_id=PACKAGE_ID)
        with self.assertRaises(ValueError):
            ThresholdEncryption(config, [LocalKeyServer("a"), LocalKeyServer("a")])


class TestAccessControl(ProtocolTestCase):

    def test_stranger_denied(self):
        result = self.seal()
        with self.assertRaises(AccessDeniedError):
            self.protocol.decrypt(result.ciphertext, result.key_id, self.stranger.address, self.stranger)

    def test_allowlisted_reader(self):
        policy = AccessPolicy(type=PolicyType.ALLOWLIST, owner=self.owner.address,
                              allowlist=[self.stranger.address])
        result = self.seal(policy=policy)
        plaintext = self.protocol.decrypt(result.ciphertext, result.key_id, self.stranger.address, self.stranger)
        self.assertEqual(plaintext, b"secret payload")

    def test_wallet_must_control_requester(self):
        result = self.seal()
        with self.assertRaises(InvalidSessionError):
            self.protocol.decrypt(result.ciphertext, result.key_id, self.owner.address, self.stranger)

    def test_session_for_other_identity(self):
        result = self.seal()
        session = self.protocol.open_session(self.stranger.address, self.stranger)
        with self.assertRaises(AccessDeniedError):
            self.protocol.decrypt(result.ciphertext, result.key_id, self.owner.address, session)

    def test_session_expired_before_request(self):
        result = self.seal()
        session = self.protocol.open_session(self.owner.address, self.owner)
        self.clock.advance(31 * 60)
        with self.assertRaises(SessionExpiredError):
            self.protocol.decrypt(result.ciphertext, result.key_id, self.owner.address, session)

    def test_forged_token_denied(self):
        result = self.seal()
        with self.assertRaises(AccessDeniedError):
            self.protocol.decrypt(result.ciphertext, result.key_id, self.owner.address, self.owner,
                                  transaction_authorizer=lambda sender: b"\x00" * 10)

    def test_token_for_other_sender_denied(self):
        result = self.seal()
        with self.assertRaises(AccessDeniedError):
            self.protocol.decrypt(result.ciphertext, result.key_id, self.owner.address, self.owner,
                                  transaction_authorizer=lambda sender: build_authorization_token(
                                      self.stranger.address))

    def test_revoked_everywhere(self):
        result = self.seal()
        for server in self.servers:
            server.revoke(result.key_id)
        with self.assertRaises(QuorumNotReachedError) as ctx:
            self.protocol.decrypt(result.ciphertext, result.key_id, self.owner.address, self.owner)
        self.assertEqual(ctx.exception.failures, 3)


class TestOneDenial(ProtocolTestCase):
    server_types = (LocalKeyServer, DenyingKeyServer, LocalKeyServer)

    def test_quorum_still_reached(self):
        result = self.seal()
        plaintext = self.protocol.decrypt(result.ciphertext, result.key_id, self.owner.address, self.owner)
        self.assertEqual(plaintext, b"secret payload")


class TestTwoDenials(ProtocolTestCase):
    server_types = (LocalKeyServer, DenyingKeyServer, DenyingKeyServer)

    def test_quorum_not_reached(self):
        result = self.seal()
        with self.assertRaises(QuorumNotReachedError) as ctx:
            self.protocol.decrypt(result.ciphertext, result.key_id, self.owner.address, self.owner)
        self.assertEqual(ctx.exception.successes, 1)
        self.assertEqual(ctx.exception.denials, 2)
        self.assertEqual(ctx.exception.threshold, 2)


class TestAllDeny(ProtocolTestCase):
    server_types = (DenyingKeyServer, DenyingKeyServer, DenyingKeyServer)

    def test_access_denied(self):
        result = self.seal()
        with self.assertRaises(AccessDeniedError):
            self.protocol.decrypt(result.ciphertext, result.key_id, self.owner.address, self.owner)


class TestOffline(ProtocolTestCase):
    server_types = (LocalKeyServer, OfflineKeyServer, OfflineKeyServer)

    def test_failures_are_not_denials(self):
        result = self.seal()
        with self.assertRaises(QuorumNotReachedError) as ctx:
            self.protocol.decrypt(result.ciphertext, result.key_id, self.owner.address, self.owner)
        self.assertEqual(ctx.exception.failures, 2)
        self.assertEqual(ctx.exception.denials, 0)


class TestMisbehavingServer(ProtocolTestCase):
    server_types = (LocalKeyServer, MisbehavingKeyServer, LocalKeyServer)

    def test_quorum_still_reached(self):
        result = self.seal()
        plaintext = self.protocol.decrypt(result.ciphertext, result.key_id, self.owner.address, self.owner)
        self.assertEqual(plaintext, b"secret payload")


class TestMisbehavingMajority(ProtocolTestCase):
    server_types = (LocalKeyServer, MisbehavingKeyServer, MisbehavingKeyServer)

    def test_unexpected_errors_count_as_failures(self):
        result = self.seal()
        with self.assertRaises(QuorumNotReachedError) as ctx:
            self.protocol.decrypt(result.ciphertext, result.key_id, self.owner.address, self.owner)
        self.assertEqual(ctx.exception.successes, 1)
        self.assertEqual(ctx.exception.failures, 2)
        self.assertEqual(ctx.exception.denials, 0)


class WeightedTestCase(ProtocolTestCase):
    """ks-0 carries weight 2, the others weight 1; threshold 3 of 4."""

    weights = (2, 1, 1)

    def setUp(self):
        super().setUp()
        self.servers = [
            cls(f"ks-{i}", package_id=PACKAGE_ID, clock=self.clock, weight=weight)
            for i, (cls, weight) in enumerate(zip(self.server_types, self.weights))
        ]
        config = ProtocolConfig(package_id=PACKAGE_ID, threshold=3, key_server_timeout=self.timeout)
        self.protocol = ThresholdEncryption(config, self.servers, clock=self.clock)


class TestWeightedQuorum(WeightedTestCase):

    def test_header_records_weights(self):
        obj = parse_encrypted_object(self.seal().ciphertext)
        self.assertEqual(obj.weights, (2, 1, 1))
        self.assertEqual(obj.threshold, 3)

    def test_owner_decrypts(self):
        result = self.seal()
        plaintext = self.protocol.decrypt(result.ciphertext, result.key_id, self.owner.address, self.owner)
        self.assertEqual(plaintext, b"secret payload")

    def test_threshold_bounded_by_total_weight(self):
        result = self.seal(threshold=4)
        self.assertEqual(parse_encrypted_object(result.ciphertext).threshold, 4)
        with self.assertRaises(ValueError):
            self.protocol.encrypt_for_owner(b"x", self.owner.address, nonce=2, threshold=5)

    def test_weights_are_authenticated(self):
        result = self.seal()
        obj = parse_encrypted_object(result.ciphertext)
        header = json.loads(obj.header_bytes())
        header["weights"] = [3, 1, 1]
        raw = json.dumps(header, sort_keys=True, separators=(",", ":")).encode()
        forged = MAGIC + struct.pack(">I", len(raw)) + raw + obj.ciphertext
        with self.assertRaises(DecryptionError):
            self.protocol.decrypt(forged, result.key_id, self.owner.address, self.owner)

    def test_bad_weight(self):
        for weight in (0, -1, True, 1.5):
            with self.assertRaises(ValueError):
                LocalKeyServer("ks-x", weight=weight)


class TestWeightedLightDenial(WeightedTestCase):
    server_types = (LocalKeyServer, DenyingKeyServer, LocalKeyServer)

    def test_heavy_server_covers_denial(self):
        result = self.seal()
        plaintext = self.protocol.decrypt(result.ciphertext, result.key_id, self.owner.address, self.owner)
        self.assertEqual(plaintext, b"secret payload")


class TestWeightedHeavyDenial(WeightedTestCase):
    server_types = (DenyingKeyServer, LocalKeyServer, LocalKeyServer)

    def test_light_servers_fall_short(self):
        result = self.seal()
        with self.assertRaises(QuorumNotReachedError) as ctx:
            self.protocol.decrypt(result.ciphertext, result.key_id, self.owner.address, self.owner)
        self.assertEqual(ctx.exception.successes, 2)
        self.assertEqual(ctx.exception.denials, 1)
        self.assertEqual(ctx.exception.threshold, 3)


class TestStalled(ProtocolTestCase):
    server_types = (LocalKeyServer, StalledKeyServer, StalledKeyServer)
    timeout = 0.3

    def make_server(self, cls, server_id):
        if cls is StalledKeyServer:
            return cls(server_id, self.release, package_id=PACKAGE_ID, clock=self.clock)
        return super().make_server(cls, server_id)

    def setUp(self):
        self.release = threading.Event()
        super().setUp()

    def tearDown(self):
        self.release.set()

    def test_timeout_counts_as_failure(self):
        result = self.seal()
        with self.assertRaises(QuorumNotReachedError) as ctx:
            self.protocol.decrypt(result.ciphertext, result.key_id, self.owner.address, self.owner)
        self.assertEqual(ctx.exception.successes, 1)
        self.assertEqual(ctx.exception.failures, 2)


class TestCiphertextFormat(ProtocolTestCase):

    def test_bad_magic(self):
        result = self.seal()
        for bad in (b"", b"XXXX" + result.ciphertext[4:], result.ciphertext[:6], None):
            with self.assertRaises(CiphertextFormatError):
                parse_encrypted_object(bad)

    def test_truncated_header(self):
        result = self.seal()
        with self.assertRaises(CiphertextFormatError):
            parse_encrypted_object(result.ciphertext[:20])

    def test_non_canonical_header(self):
        result = self.seal()
        obj = parse_encrypted_object(result.ciphertext)
        header = json.dumps(json.loads(obj.header_bytes()), indent=1).encode()
        forged = MAGIC + struct.pack(">I", len(header)) + header + obj.ciphertext
        with self.assertRaises(CiphertextFormatError):
            parse_encrypted_object(forged)

    def test_threshold_above_total_weight(self):
        result = self.seal()
        obj = parse_encrypted_object(result.ciphertext)
        header = json.loads(obj.header_bytes())
        header["threshold"] = 4
        raw = json.dumps(header, sort_keys=True, separators=(",", ":")).encode()
        with self.assertRaises(CiphertextFormatError):
            parse_encrypted_object(MAGIC + struct.pack(">I", len(raw)) + raw + obj.ciphertext)

    def test_tampered_body(self):
        result = self.seal()
        tampered = bytearray(result.ciphertext)
        tampered[-1] ^= 0x01
        with self.assertRaises(DecryptionError):
            self.protocol.decrypt(bytes(tampered), result.key_id, self.owner.address, self.owner)

    def test_key_id_mismatch(self):
        result = self.seal()
        with self.assertRaises(DecryptionError):
            self.protocol.decrypt(result.ciphertext, derive_identity(self.owner.address, 99),
                                  self.owner.address, self.owner)

    def test_decrypt_rejects_garbage(self):
        with self.assertRaises(CiphertextFormatError):
            self.protocol.decrypt(b"not a ciphertext", None, self.owner.address, self.owner)


if __name__ == "__main__":
    unittest.main()
