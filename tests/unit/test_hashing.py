"""
Tests for deterministic hashing.

- Canonical JSON: sorted keys, no whitespace, stable Decimal/date/Enum rendering
- Chain hash and exception fingerprints
- External references
"""

from datetime import date
from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from recon_kernel.domain.records import SourceType
from recon_kernel.utils.hashing import (
    canonicalize_json,
    chain_hash,
    exception_fingerprint,
    hash_payload,
    sha256_hex,
)
from recon_kernel.utils.idempotency import generate_external_ref, parse_external_ref


class TestCanonicalJson:
    def test_sorted_and_compact(self):
        assert canonicalize_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'

    def test_special_types(self):
        payload = {"amount": Decimal("1.50"), "on": date(2026, 3, 2), "type": SourceType.BANK, "tags": {"b", "a"}}
        assert canonicalize_json(payload) == '{"amount":"1.5","on":"2026-03-02","tags":["a","b"],"type":"bank"}'

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            canonicalize_json({"x": object()})

    @given(st.dictionaries(st.text(max_size=5), st.integers(), max_size=6))
    def test_key_order_irrelevant(self, data):
        reversed_data = dict(reversed(list(data.items())))
        assert hash_payload(data) == hash_payload(reversed_data)


class TestChain:
    def test_genesis(self):
        payload_hash = hash_payload({"n": 1})
        assert chain_hash("", payload_hash) == sha256_hex(payload_hash)

    def test_link(self):
        assert chain_hash("ab", "cd") == sha256_hex("abcd")


class TestFingerprint:
    def test_order_of_refs_irrelevant(self):
        first = exception_fingerprint("X", {"payout_id": "po_1", "bank_txn_id": "txn_1"})
        second = exception_fingerprint("X", {"bank_txn_id": "txn_1", "payout_id": "po_1"})
        assert first == second

    def test_type_matters(self):
        assert exception_fingerprint("A", {"k": "v"}) != exception_fingerprint("B", {"k": "v"})


class TestExternalRef:
    def test_round_trip(self):
        ref = generate_external_ref(SourceType.PAYOUT, "po_1NvX")
        assert ref == "payout:po_1NvX"
        assert parse_external_ref(ref) == ("payout", "po_1NvX")

    def test_ref_with_colon(self):
        assert parse_external_ref("bank:abc:def") == ("bank", "abc:def")

    @pytest.mark.parametrize("ref", ["nocolon", ":x", "bank:"])
    def test_invalid(self, ref):
        with pytest.raises(ValueError):
            parse_external_ref(ref)
