"""
Tests for input validation, identity types and the error taxonomy.
"""

from decimal import Decimal

import pytest

from arbor.errors import ERROR_CODES, ArborError, InvalidAmount, ValidationError
from arbor.hardening import UINT256_MAX, InvariantChecker, Validators, coerce_amount, fraction_digits
from arbor.registry import NodeRef, ResourceKey, ResourceKind


class TestAddresses:
    def test_normalised_to_lower_case(self):
        assert Validators.validate_address("  0x" + "AB" * 20 + " ").unwrap() == "0x" + "ab" * 20

    @pytest.mark.parametrize("value", ["0x1234", "ab" * 21, "0x" + "zz" * 20, 42, None])
    def test_rejected(self, value):
        result = Validators.validate_address(value, "actor")
        assert not result.is_valid
        with pytest.raises(ValidationError) as excinfo:
            result.unwrap()
        assert excinfo.value.field == "actor"


class TestTokenIds:
    @pytest.mark.parametrize("value,expected", [(0, 0), ("17", 17), ("0x10", 16), (UINT256_MAX, UINT256_MAX)])
    def test_accepted(self, value, expected):
        assert Validators.validate_token_id(value).unwrap() == expected

    @pytest.mark.parametrize("value", [-1, UINT256_MAX + 1, True, 1.0, "one"])
    def test_rejected(self, value):
        assert not Validators.validate_token_id(value).is_valid


class TestAmounts:
    def test_strings_and_ints(self):
        assert coerce_amount("1.25") == Decimal("1.25")
        assert coerce_amount(3) == Decimal("3")

    @pytest.mark.parametrize("value", [0, "-0.1", "sNaN", "-Infinity", [], False])
    def test_rejected(self, value):
        with pytest.raises(InvalidAmount):
            coerce_amount(value)

    def test_bounds_and_integrality(self):
        with pytest.raises(InvalidAmount):
            coerce_amount(11, max_value=Decimal("10"))
        with pytest.raises(InvalidAmount):
            coerce_amount("2.5", integral=True)
        assert coerce_amount("2.0", integral=True) == 2

    def test_fractional_digit_bound(self):
        assert fraction_digits(Decimal("1.2500")) == 2
        assert fraction_digits(Decimal("100.0")) == 0
        assert fraction_digits(Decimal("1E+5")) == 0
        assert coerce_amount("0." + "0" * 77 + "1") > 0
        with pytest.raises(InvalidAmount):
            coerce_amount("0." + "0" * 78 + "1")

    def test_invariants(self):
        InvariantChecker.check_non_negative("x", Decimal("0"))
        with pytest.raises(InvalidAmount):
            InvariantChecker.check_non_negative("x", Decimal("-1"))
        with pytest.raises(InvalidAmount):
            InvariantChecker.check_balance_sufficient(Decimal("1"), Decimal("2"))


class TestAnnotations:
    def test_hex_and_bytes(self):
        assert Validators.validate_bytes("0x0102", "annotation").unwrap() == b"\x01\x02"
        assert Validators.validate_bytes(bytearray(b"ab"), "annotation").unwrap() == b"ab"

    def test_rejected(self):
        assert not Validators.validate_bytes("0xzz", "annotation").is_valid
        assert not Validators.validate_bytes(5, "annotation").is_valid
        assert not Validators.validate_bytes(b"abc", "annotation", max_length=2).is_valid


class TestIdentityTypes:
    def test_node_text_form(self):
        node = NodeRef.parse("0x" + "AA" * 20 + ":42")
        assert node == NodeRef("0x" + "aa" * 20, 42)
        assert NodeRef.parse(str(node)) == node
        assert NodeRef.from_dict(node.to_dict()) == node

    @pytest.mark.parametrize("text", ["no-colon", "0x12:1", "0x" + "aa" * 20 + ":x"])
    def test_bad_node_text(self, text):
        with pytest.raises(ValidationError):
            NodeRef.parse(text)

    def test_resource_keys(self):
        usdc = ResourceKey.currency("0x" + "22" * 20)
        sword = ResourceKey.counted("0x" + "33" * 20, "7")
        assert usdc.resource_kind is ResourceKind.FUNGIBLE
        assert sword.asset_id == 7
        assert str(sword) == "0x" + "33" * 20 + "#7"
        assert ResourceKey.from_dict(sword.to_dict()) == sword
        assert ResourceKind.COUNTED_ASSET.is_attachment
        assert not ResourceKind.NON_FUNGIBLE.is_attachment
        with pytest.raises(ValidationError):
            ResourceKey.from_dict({"kind": "non_fungible", "contract": usdc.contract})


class TestErrors:
    def test_codes_are_unique_and_stable(self):
        assert len(ERROR_CODES) == 11
        assert all(issubclass(cls, ArborError) for cls in ERROR_CODES.values())

    def test_to_dict(self):
        error = ValidationError("amount", "bad", 5)
        assert error.to_dict() == {
            "code": "validation_error",
            "message": "amount: bad",
            "details": {"field": "amount"},
        }
