"""
Tests for payload validation, idempotency tokens and logical keys

Tests cover:
- CIDv0 / CIDv1 format checks
- Product id, doc type and emission range checks
- Unit defaulting and normalization
- Token precedence (body > header > derived)
- Slot round-trips and the polling outcome field
"""

import pytest

from tradechain.models.submission_record import SubmissionRecord
from tradechain.models.write_request import LogicalKey, RecordType, SubmissionStatus
from tradechain.services.errors import InvalidPayload
from tradechain.services.idempotency import generate_idempotency_key, resolve_token
from tradechain.services.validation import (
    DEFAULT_UNIT,
    UINT256_MAX,
    is_valid_cid,
    validate_cid,
    validate_key,
    validate_payload,
)

CID_V0 = "QmYwAPJzv5CZsnA625s3Xf2nemtYgPpHdWEz79ojWnPbdG"
CID_V1 = "bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi"


class TestCidValidation:
    """CID format checks."""

    def test_accepts_v0(self):
        assert is_valid_cid(CID_V0)

    def test_accepts_v1(self):
        assert is_valid_cid(CID_V1)

    @pytest.mark.parametrize("cid", [
        "",
        None,
        42,
        "Qm123",
        CID_V0 + "x",
        "QmYwAPJzv5CZsnA625s3Xf2nemtYgPpHdWEz79ojWnPb0G",  # '0' is not base58
        "bafy",
        "bafy-not-valid!",
    ])
    def test_rejects_malformed(self, cid):
        assert not is_valid_cid(cid)

    def test_validate_cid_raises_invalid_payload(self):
        with pytest.raises(InvalidPayload) as exc_info:
            validate_cid("not-a-cid")
        assert exc_info.value.kind == "invalid_payload"
        assert exc_info.value.http_status == 400


class TestKeyValidation:
    """Logical key range checks."""

    def test_valid_document_key(self):
        key = LogicalKey.document(1, 3)
        assert validate_key(key) is key

    @pytest.mark.parametrize("product_id", [0, -1, True])
    def test_rejects_bad_product_id(self, product_id):
        with pytest.raises(InvalidPayload):
            validate_key(LogicalKey.document(product_id, 0))

    def test_rejects_product_id_above_uint256(self):
        with pytest.raises(InvalidPayload):
            validate_key(LogicalKey.carbon_emission(UINT256_MAX + 1))

    @pytest.mark.parametrize("doc_type", [-1, 4, None])
    def test_rejects_unknown_doc_type(self, doc_type):
        with pytest.raises(InvalidPayload):
            validate_key(LogicalKey.document(1, doc_type))

    def test_carbon_key_rejects_doc_type(self):
        key = LogicalKey(entity_id=1, record_type=RecordType.CARBON_EMISSION, doc_type=2)
        with pytest.raises(InvalidPayload):
            validate_key(key)


class TestPayloadValidation:
    """Payload normalization per record type."""

    def test_document_payload_keeps_only_cid(self):
        payload = validate_payload(LogicalKey.document(1, 0), {"cid": CID_V0, "extra": "ignored"})
        assert payload == {"cid": CID_V0}

    def test_document_payload_requires_cid(self):
        with pytest.raises(InvalidPayload):
            validate_payload(LogicalKey.document(1, 0), {})

    def test_carbon_payload_defaults_unit(self):
        payload = validate_payload(LogicalKey.carbon_emission(1), {"total_emissions": 1500})
        assert payload == {"total_emissions": 1500, "unit": DEFAULT_UNIT}

    def test_carbon_payload_strips_unit(self):
        payload = validate_payload(LogicalKey.carbon_emission(1), {"total_emissions": 10, "unit": "  tCO2e "})
        assert payload["unit"] == "tCO2e"

    def test_carbon_payload_accepts_uint256_max(self):
        payload = validate_payload(LogicalKey.carbon_emission(1), {"total_emissions": UINT256_MAX})
        assert payload["total_emissions"] == UINT256_MAX

    @pytest.mark.parametrize("total", [0, -5, UINT256_MAX + 1, "100", 1.5, True, None])
    def test_carbon_payload_rejects_bad_totals(self, total):
        with pytest.raises(InvalidPayload):
            validate_payload(LogicalKey.carbon_emission(1), {"total_emissions": total})

    def test_carbon_payload_rejects_long_unit(self):
        with pytest.raises(InvalidPayload):
            validate_payload(LogicalKey.carbon_emission(1), {"total_emissions": 1, "unit": "x" * 33})

    def test_payload_must_be_object(self):
        with pytest.raises(InvalidPayload):
            validate_payload(LogicalKey.document(1, 0), [CID_V0])


class TestIdempotencyTokens:
    """Token resolution and derivation."""

    def test_body_token_wins_over_header(self):
        token = resolve_token("body-token", "header-token", "store_document", "document:1:0", {"cid": CID_V0})
        assert token == "body-token"

    def test_header_token_used_without_body(self):
        token = resolve_token(None, "header-token", "store_document", "document:1:0", {"cid": CID_V0})
        assert token == "header-token"

    def test_blank_tokens_fall_back_to_derived(self):
        derived = generate_idempotency_key("store_document", "document:1:0", {"cid": CID_V0})
        assert resolve_token("  ", "", "store_document", "document:1:0", {"cid": CID_V0}) == derived

    def test_derived_token_is_deterministic(self):
        first = generate_idempotency_key("set_carbon_emission", "carbon_emission:1", {"total_emissions": 5, "unit": "kg"})
        second = generate_idempotency_key("set_carbon_emission", "carbon_emission:1", {"unit": "kg", "total_emissions": 5})
        assert first == second
        assert first.startswith("set_carbon_emission:carbon_emission:1:")

    def test_derived_token_differs_by_payload(self):
        a = generate_idempotency_key("store_document", "document:1:0", {"cid": CID_V0})
        b = generate_idempotency_key("store_document", "document:1:0", {"cid": CID_V1})
        assert a != b

    def test_long_token_truncated(self):
        token = resolve_token("t" * 400, None, "store_document", "document:1:0", {})
        assert len(token) == 255


class TestLogicalKey:
    """Slot strings and record status payloads."""

    def test_document_slot(self):
        assert LogicalKey.document(7, 2).slot == "document:7:2"

    def test_carbon_slot(self):
        assert LogicalKey.carbon_emission(7).slot == "carbon_emission:7"

    @pytest.mark.parametrize("key", [LogicalKey.document(12, 3), LogicalKey.carbon_emission(12)])
    def test_from_slot(self, key):
        assert LogicalKey.from_slot(key.slot) == key

    def test_status_flags(self):
        assert SubmissionStatus.PENDING.is_active
        assert SubmissionStatus.SUBMITTED.is_active
        assert SubmissionStatus.CONFIRMED.is_terminal
        assert SubmissionStatus.FAILED.is_terminal

    @pytest.mark.parametrize("status,error_kind,outcome", [
        ("pending", None, "in_flight"),
        ("submitted", None, "in_flight"),
        ("confirmed", None, "landed"),
        ("failed", "reverted", "not_landed"),
        ("failed", "confirmation_timeout", "unknown"),
    ])
    def test_record_outcome(self, status, error_kind, outcome):
        record = SubmissionRecord(
            id="r1",
            slot="document:1:0",
            entity_id=1,
            record_type="document",
            doc_type=0,
            payload={"cid": CID_V0},
            idempotency_token="tok",
            status=status,
            attempt=0,
            error_kind=error_kind,
        )
        body = record.to_dict()
        assert body["outcome"] == outcome
        assert body["key"] == {"entity_id": 1, "record_type": "document", "doc_type": 0}
        if error_kind:
            assert body["error"]["kind"] == error_kind
        else:
            assert body["error"] is None
