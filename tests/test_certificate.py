"""
Certificate codec tests: canonical signing bytes and structural validation.
"""

import copy
import json
import unittest

from opentruth import (
    AccessPolicy,
    ArtifactKind,
    Certificate,
    CertificateFormatError,
    Ed25519Signer,
    attach_encryption,
    canonicalize,
    canonicalize_certificate,
    certificate_summary,
    complete_certificate,
    digest,
    generate_certificate,
    generate_dataset_certificate,
    load_certificate,
    matches_file,
    merkle_root,
    validate_structure,
)
from opentruth.certificate import dumps_certificate, is_valid_address

from support import TIMESTAMP, signed_certificate


class TestCanonicalBytes(unittest.TestCase):

    def setUp(self):
        self.signer = Ed25519Signer.from_seed(b"\x02" * 32)
        self.cert = signed_certificate(self.signer, model_name="gen-1", prompt="a cat")

    def test_insertion_order_does_not_matter(self):
        d = self.cert.to_dict()
        reordered = json.loads(json.dumps(d, sort_keys=True))
        reversed_dict = dict(reversed(list(reordered.items())))
        self.assertEqual(canonicalize_certificate(d), canonicalize_certificate(reversed_dict))

    def test_unsigned_sections_excluded(self):
        body = json.loads(canonicalize_certificate(self.cert))
        self.assertNotIn("proofs", body)
        self.assertNotIn("storage", body)
        self.assertNotIn("encryption", body)
        self.assertEqual(body["artifact"]["hash"], str(digest(b"hello world")))

    def test_equal_to_unsigned_form(self):
        self.assertEqual(
            canonicalize_certificate(self.cert),
            canonicalize(self.cert.unsigned().to_dict()),
        )

    def test_encryption_annex_does_not_change_bytes(self):
        annotated = attach_encryption(
            self.cert, "BLOB:enc", "0x" + "11" * 40, 2, "0x" + "ab" * 32,
            policy=AccessPolicy.owner_only(self.signer.address),
        )
        self.assertEqual(canonicalize_certificate(annotated), canonicalize_certificate(self.cert))

    def test_model_change_alters_bytes(self):
        other = signed_certificate(self.signer, model_name="gen-2", prompt="a cat")
        self.assertNotEqual(canonicalize_certificate(other), canonicalize_certificate(self.cert))

    def test_prompt_is_hashed_not_stored(self):
        text = canonicalize_certificate(self.cert).decode('utf-8')
        self.assertNotIn("a cat", text)
        self.assertEqual(self.cert.model.prompt_hash, digest("a cat"))


class TestGeneration(unittest.TestCase):

    def setUp(self):
        self.signer = Ed25519Signer.from_seed(b"\x03" * 32)

    def test_artifact_fields(self):
        cert = generate_certificate(b"\x00" * 1024, self.signer.address, mime_type="image/png",
                                    filename="a.png", timestamp=TIMESTAMP)
        self.assertEqual(cert.artifact.kind, ArtifactKind.IMAGE)
        self.assertEqual(cert.artifact.size, 1024)
        self.assertEqual(cert.artifact.hash, digest(b"\x00" * 1024))
        self.assertIsNone(cert.model)
        self.assertFalse(cert.is_signed)

    def test_kind_inference(self):
        for mime, kind in (("video/mp4", ArtifactKind.VIDEO), ("audio/wav", ArtifactKind.AUDIO),
                           ("application/pdf", ArtifactKind.DOCUMENT)):
            cert = generate_certificate(b"x", self.signer.address, mime_type=mime)
            self.assertEqual(cert.artifact.kind, kind)

    def test_bad_author_rejected(self):
        with self.assertRaises(CertificateFormatError):
            generate_certificate(b"x", "0x1234")

    def test_bad_dataset_root_rejected(self):
        with self.assertRaises(CertificateFormatError):
            generate_certificate(b"x", self.signer.address, model_name="m",
                                 dataset_merkle_root="0xABC")

    def test_dataset_certificate(self):
        files = [f"member-{i}".encode() for i in range(7)]
        cert = generate_dataset_certificate(files, self.signer.address, timestamp=TIMESTAMP)
        self.assertEqual(cert.dataset.file_count, 7)
        self.assertEqual(cert.dataset.total_size, sum(len(f) for f in files))
        self.assertEqual(cert.dataset.merkle_root, merkle_root([digest(f) for f in files]))
        self.assertTrue(cert.dataset.root_matches())
        self.assertEqual(cert.artifact.mime_type, "application/json")
        manifest = '{"fileCount":7,"merkleRoot":"' + cert.dataset.merkle_root.root_hex + '"}'
        self.assertEqual(cert.artifact.hash, digest(manifest.encode()))

    def test_complete_refuses_second_proof(self):
        cert = signed_certificate(self.signer)
        with self.assertRaises(ValueError):
            complete_certificate(cert, cert.proofs, cert.storage)

    def test_summary(self):
        summary = certificate_summary(signed_certificate(self.signer, model_name="m"))
        self.assertTrue(summary["has_model"])
        self.assertFalse(summary["has_encryption"])
        self.assertEqual(summary["author"], self.signer.address)

    def test_address_format(self):
        self.assertTrue(is_valid_address(self.signer.address))
        self.assertFalse(is_valid_address("0x" + "g" * 64))
        self.assertFalse(is_valid_address(None))


class TestStructure(unittest.TestCase):

    def setUp(self):
        self.signer = Ed25519Signer.from_seed(b"\x04" * 32)
        self.cert = signed_certificate(self.signer)
        self.data = self.cert.to_dict()

    def test_valid(self):
        self.assertTrue(validate_structure(self.data))
        self.assertTrue(validate_structure(self.cert))

    def test_dict_round_trip(self):
        self.assertEqual(Certificate.from_dict(self.data), self.cert)
        self.assertEqual(load_certificate(dumps_certificate(self.cert)), self.cert)

    def test_missing_required_field(self):
        for field in ("version", "type", "timestamp", "author", "artifact", "proofs"):
            broken = copy.deepcopy(self.data)
            del broken[field]
            self.assertFalse(validate_structure(broken), field)

    def test_bad_artifact_hash(self):
        for bad in ("sha256:xyz", "md5:" + "0" * 64, str(digest(b"a")).upper(), 42):
            broken = copy.deepcopy(self.data)
            broken["artifact"]["hash"] = bad
            self.assertFalse(validate_structure(broken))

    def test_unknown_scheme(self):
        broken = copy.deepcopy(self.data)
        broken["proofs"]["signature"]["scheme"] = "RSA"
        self.assertFalse(validate_structure(broken))

    def test_storage_requirement(self):
        broken = copy.deepcopy(self.data)
        del broken["storage"]
        self.assertTrue(validate_structure(broken))
        self.assertFalse(validate_structure(broken, require_storage=True))

    def test_inconsistent_dataset(self):
        cert = generate_dataset_certificate([b"a", b"b", b"c"], self.signer.address)
        data = cert.to_dict()
        data["proofs"] = self.data["proofs"]
        self.assertTrue(validate_structure(data))
        data["dataset"]["fileHashes"][0] = str(digest(b"z"))
        self.assertFalse(validate_structure(data))

    def test_non_object(self):
        for bad in (None, [], "cert", 5):
            self.assertFalse(validate_structure(bad))

    def test_from_dict_reports_field(self):
        broken = copy.deepcopy(self.data)
        broken["artifact"]["size"] = -1
        with self.assertRaises(CertificateFormatError) as ctx:
            Certificate.from_dict(broken)
        self.assertEqual(ctx.exception.field, "artifact.size")

    def test_load_invalid_json(self):
        with self.assertRaises(CertificateFormatError):
            load_certificate("{not json")

    def test_load_deeply_nested_json(self):
        with self.assertRaises(CertificateFormatError) as ctx:
            load_certificate(b"[" * 200000 + b"]" * 200000)
        self.assertEqual(ctx.exception.field, "certificate")


class TestFileMatch(unittest.TestCase):

    def setUp(self):
        self.signer = Ed25519Signer.from_seed(b"\x05" * 32)
        self.data = bytes(range(256)) * 4
        self.cert = signed_certificate(self.signer, data=self.data)

    def test_exact_bytes_match(self):
        self.assertTrue(matches_file(self.cert, self.data))

    def test_single_bit_flip(self):
        flipped = bytearray(self.data)
        flipped[100] ^= 0x01
        self.assertFalse(matches_file(self.cert, bytes(flipped)))

    def test_truncation(self):
        self.assertFalse(matches_file(self.cert, self.data[:-1]))

    def test_non_bytes(self):
        self.assertFalse(matches_file(self.cert, None))

    def test_from_dict(self):
        self.assertTrue(matches_file(self.cert.to_dict(), self.data))


if __name__ == "__main__":
    unittest.main()
