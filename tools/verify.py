#!/usr/bin/env python3
"""
Offline verifier for exported audit bundles.

Runs without the audittrail package or a database: canonicalization and
link rules are re-implemented here so an auditor can check a bundle with
nothing but this file and PyNaCl.

    python tools/verify.py audit_export.json
    python tools/verify.py audit_export.json --public-key <base64> --json

Exit status:
    0  VERIFIED        every check passed
    1  TAMPERED        hash, link, manifest or signature mismatch
    2  INCOMPLETE      chain start not anchored, or a required signature is absent
    3  INVALID_FORMAT  not a bundle this tool understands
"""

import argparse
import base64
import hashlib
import json
import sys
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

try:
    from nacl.exceptions import BadSignatureError
    from nacl.signing import VerifyKey
except ImportError:
    print("ERROR: PyNaCl not installed. Run: pip install pynacl")
    sys.exit(3)


class VerificationResult(Enum):
    VERIFIED = "VERIFIED"
    TAMPERED = "TAMPERED"
    INCOMPLETE = "INCOMPLETE"
    INVALID_FORMAT = "INVALID_FORMAT"


EXIT_CODES = {
    VerificationResult.VERIFIED: 0,
    VerificationResult.TAMPERED: 1,
    VerificationResult.INCOMPLETE: 2,
    VerificationResult.INVALID_FORMAT: 3,
}


@dataclass
class VerificationReport:
    result: VerificationResult = VerificationResult.VERIFIED
    entry_count: int = 0
    checks_passed: list[str] = field(default_factory=list)
    checks_failed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)
    broken_at: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["result"] = self.result.value
        return data


# Hash format, version 1. Keep in step with audittrail/core/hasher.py.
SUPPORTED_VERSIONS = {1}
GENESIS_HASH = "0" * 64
HASHED_FIELDS = ("actor_id", "action", "entity_type", "entity_id", "timestamp")
ENTRY_FIELDS = HASHED_FIELDS + ("sequence_index", "prev_hash", "curr_hash", "hash_version")
CHECKPOINT_ACTION = "audit.checkpoint"
CHAIN_ENTITY_TYPE = "audit_chain"


def _compact_json(data: dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=True, allow_nan=False)


def canonicalize(entry: dict[str, Any], version: int) -> str:
    """
    The hashed fields of an exported entry in canonical form.

    Exported timestamps are already canonical strings, so every hashed
    value must be a string here.
    """
    data = {"__canon_v": version}
    for name in HASHED_FIELDS:
        if not isinstance(entry[name], str):
            raise ValueError(f"{name} must be a string")
        data[name] = entry[name]
    return _compact_json(data)


def compute_link(prev_hash: str, entry: dict[str, Any], version: int) -> str:
    digest = hashlib.sha256()
    digest.update(f"{prev_hash.lower()}:{canonicalize(entry, version)}".encode("utf-8"))
    return digest.hexdigest()


def manifest_message(manifest: dict[str, Any]) -> str:
    """Keep in step with Signer.manifest_message in audittrail/core/signer.py."""
    return json.dumps(manifest, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def verify_signature(message: str, signature_b64: str, public_key_b64: str) -> bool:
    try:
        key = VerifyKey(base64.b64decode(public_key_b64))
        key.verify(message.encode("utf-8"), base64.b64decode(signature_b64))
    except (BadSignatureError, ValueError, TypeError):
        return False
    return True


class BundleVerifier:
    """
    Checks one bundle, stopping at the first failing step.

    Steps, and the result a failure produces:
        structure  -> INVALID_FORMAT
        hashes     -> TAMPERED
        linkage    -> TAMPERED
        manifest   -> TAMPERED
        signature  -> TAMPERED (bad) or INCOMPLETE (required but missing)
        anchor     -> INCOMPLETE
    """

    def __init__(self, bundle: Any, public_key: Optional[str] = None, verbose: bool = False):
        self.bundle = bundle
        self.public_key = public_key
        self.verbose = verbose
        self.report = VerificationReport()

    def _step(self, title: str) -> None:
        if self.verbose:
            print(f"  {title}...")

    def _fail(self, message: str, broken_at: Optional[int] = None) -> bool:
        self.report.checks_failed.append(message)
        if broken_at is not None:
            self.report.broken_at = broken_at
        return False

    @property
    def _entries(self) -> list[dict[str, Any]]:
        return self.bundle["entries"]

    @property
    def _manifest(self) -> dict[str, Any]:
        return self.bundle["manifest"]

    def verify(self) -> VerificationReport:
        steps = (
            (self._check_structure, VerificationResult.INVALID_FORMAT),
            (self._verify_hashes, VerificationResult.TAMPERED),
            (self._verify_chain_linkage, VerificationResult.TAMPERED),
            (self._verify_manifest, VerificationResult.TAMPERED),
            (self._verify_signature, None),
            (self._verify_anchor, VerificationResult.INCOMPLETE),
        )
        for check, on_failure in steps:
            outcome = check()
            if outcome is True:
                continue
            if on_failure is None:
                # Signature step: False means forged, None means missing
                on_failure = VerificationResult.TAMPERED if outcome is False else VerificationResult.INCOMPLETE
            self.report.result = on_failure
            break

        if isinstance(self.bundle, dict) and isinstance(self.bundle.get("entries"), list):
            self.report.entry_count = len(self.bundle["entries"])
        return self.report

    def _check_structure(self) -> bool:
        self._step("Checking bundle structure")

        if not isinstance(self.bundle, dict):
            return self._fail("Bundle must be a JSON object")
        missing = [key for key in ("manifest", "entries") if key not in self.bundle]
        if missing:
            return self._fail(f"Missing required keys: {missing}")
        if not isinstance(self._manifest, dict):
            return self._fail("'manifest' must be an object")
        if not isinstance(self._entries, list):
            return self._fail("'entries' must be an array")
        if self._manifest.get("hash_algorithm") != "sha256":
            return self._fail(f"Unsupported hash algorithm: {self._manifest.get('hash_algorithm')}")

        for position, entry in enumerate(self._entries):
            if not isinstance(entry, dict):
                return self._fail(f"Entry {position} is not an object")
            absent = [name for name in ENTRY_FIELDS if name not in entry]
            if absent:
                return self._fail(f"Entry {position} missing fields: {absent}")
            if entry["hash_version"] not in SUPPORTED_VERSIONS:
                return self._fail(
                    f"Entry {entry['sequence_index']}: unsupported hash version {entry['hash_version']}"
                )

        for key in ("exported_at", "from_index", "to_index"):
            self.report.details[key] = self._manifest.get(key)
        self.report.checks_passed.append("Bundle structure valid")
        return True

    def _verify_hashes(self) -> bool:
        self._step("Recomputing entry hashes")

        for entry in self._entries:
            index = entry["sequence_index"]
            try:
                computed = compute_link(entry["prev_hash"], entry, entry["hash_version"])
            except (ValueError, AttributeError) as e:
                return self._fail(f"Entry {index}: cannot compute hash ({e})", index)
            stored = str(entry["curr_hash"]).lower()
            if computed != stored:
                return self._fail(
                    f"Entry {index}: hash mismatch (computed {computed[:16]}..., stored {stored[:16]}...)",
                    index,
                )

        self.report.checks_passed.append(f"All {len(self._entries)} entry hashes verified")
        return True

    def _verify_chain_linkage(self) -> bool:
        self._step("Checking links between entries")

        for prev, curr in zip(self._entries, self._entries[1:]):
            expected = prev["sequence_index"] + 1
            if curr["sequence_index"] != expected:
                return self._fail(f"Sequence gap: {prev['sequence_index']} -> {curr['sequence_index']}", expected)
            if curr["prev_hash"].lower() != prev["curr_hash"].lower():
                return self._fail(f"Chain break at entry {expected}: prev_hash doesn't match", expected)
            # Canonical timestamps compare correctly as strings
            if curr["timestamp"] < prev["timestamp"]:
                return self._fail(f"Entry {expected}: timestamp earlier than its predecessor", expected)

        self.report.checks_passed.append("Chain linkage verified")
        return True

    def _verify_manifest(self) -> bool:
        self._step("Comparing manifest with entries")

        entries = self._entries
        expected = {
            "entry_count": len(entries),
            "to_index": entries[-1]["sequence_index"] if entries else None,
            "head_hash": entries[-1]["curr_hash"] if entries else None,
        }
        if entries:
            expected["from_index"] = entries[0]["sequence_index"]

        for key, value in expected.items():
            if self._manifest.get(key) != value:
                return self._fail(f"Manifest {key} is {self._manifest.get(key)!r}, entries say {value!r}")
        if self._manifest.get("genesis_hash", GENESIS_HASH) != GENESIS_HASH:
            return self._fail("Manifest genesis hash is not the standard genesis")

        self.report.checks_passed.append("Manifest matches entries")
        return True

    def _verify_signature(self) -> Optional[bool]:
        """True: valid or not required. False: invalid. None: required but absent."""
        self._step("Checking manifest signature")

        signature = self.bundle.get("signature")
        if not signature:
            if self.public_key:
                self._fail("Public key given but bundle is unsigned")
                return None
            self.report.warnings.append("Bundle is unsigned; origin not checked")
            return True

        if signature.get("algorithm") != "ed25519":
            return self._fail(f"Unsupported signature algorithm: {signature.get('algorithm')}")

        public_key = self.public_key or signature.get("public_key")
        if not public_key:
            self._fail("Signature present but no public key available")
            return None
        if not self.public_key:
            self.report.warnings.append(
                "Signature checked against the key embedded in the bundle; "
                "pass --public-key to pin the expected signer"
            )

        if not verify_signature(manifest_message(self._manifest), signature.get("value", ""), public_key):
            return self._fail("Manifest signature verification failed")

        self.report.checks_passed.append("Manifest signature verified")
        return True

    def _verify_anchor(self) -> bool:
        """The first entry is entry 0, or a checkpoint standing in for a purged prefix."""
        if not self._entries:
            self.report.warnings.append("Bundle has no entries")
            return True

        first = self._entries[0]
        index = first["sequence_index"]
        prev_hash = first["prev_hash"].lower()

        if index == 0:
            if prev_hash != GENESIS_HASH:
                return self._fail("Entry 0 does not link to the genesis hash", 0)
            self.report.checks_passed.append("Chain starts at genesis")
            return True

        if first["action"] == CHECKPOINT_ACTION and first["entity_type"] == CHAIN_ENTITY_TYPE:
            if first["entity_id"] != f"{index - 1}:{prev_hash}":
                return self._fail(f"Checkpoint {index} summary does not match its link", index)
            self.report.checks_passed.append(f"Chain anchored at checkpoint {index}")
            return True

        return self._fail(f"Bundle starts at entry {index}; the preceding entries are not included")


BANNERS = {
    VerificationResult.VERIFIED: "All checks passed",
    VerificationResult.TAMPERED: "Hash, link or signature mismatch detected",
    VerificationResult.INCOMPLETE: "Missing required data",
    VerificationResult.INVALID_FORMAT: "Bundle structure invalid",
}


def print_report(report: VerificationReport, json_output: bool = False) -> None:
    if json_output:
        print(json.dumps(report.to_dict(), indent=2))
        return

    rule = "=" * 60
    print(f"\n{rule}\n  [{report.result.value}] - {BANNERS[report.result]}\n{rule}")
    print(f"\nEntries:  {report.entry_count}")
    if report.broken_at is not None:
        print(f"Broken at: {report.broken_at}")

    for heading, marker, lines in (
        ("Passed", "+", report.checks_passed),
        ("Failed", "-", report.checks_failed),
        ("Warnings", "!", report.warnings),
    ):
        if lines:
            print(f"\n{heading}:")
            print("\n".join(f"  {marker} {line}" for line in lines))
    print()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Verify an exported audit trail bundle",
        epilog="Exit codes: 0=VERIFIED, 1=TAMPERED, 2=INCOMPLETE, 3=INVALID_FORMAT",
    )
    parser.add_argument("bundle", help="Bundle JSON file written by export-entries or GET /audit/export")
    parser.add_argument("--public-key", help="Expected base64 Ed25519 public key of the exporter")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print each step as it runs")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    args = parser.parse_args(argv)

    try:
        with open(args.bundle, encoding="utf-8") as handle:
            bundle = json.load(handle)
    except FileNotFoundError:
        print(f"ERROR: File not found: {args.bundle}")
        return EXIT_CODES[VerificationResult.INVALID_FORMAT]
    except json.JSONDecodeError as e:
        print(f"ERROR: Invalid JSON: {e}")
        return EXIT_CODES[VerificationResult.INVALID_FORMAT]
    except OSError as e:
        print(f"ERROR: Cannot read {args.bundle}: {e}")
        return EXIT_CODES[VerificationResult.INVALID_FORMAT]

    report = BundleVerifier(bundle, public_key=args.public_key, verbose=args.verbose).verify()
    print_report(report, json_output=args.json)
    return EXIT_CODES[report.result]


if __name__ == "__main__":
    sys.exit(main())
