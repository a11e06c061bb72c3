"""
ARBOR Validation and Hardening

Input validation and invariant enforcement for the composition engine:

1. Address, token id and amount validation with normalisation
2. Annotation (opaque bytes) validation
3. Balance and non-negativity invariants

Security Model:
    - All inputs are untrusted until validated
    - Addresses are normalised to lower case before use as identity
    - Amounts are Decimal, finite, and bounded by the uint256 range
    - Amount arithmetic runs under AMOUNT_CONTEXT and never rounds

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Context, Decimal, Inexact, InvalidOperation
from typing import Any, List, Optional

from arbor.errors import InvalidAmount, ValidationError


UINT256_MAX = 2 ** 256 - 1

# Amounts carry at most 78 integer and MAX_FRACTION_DIGITS fractional digits,
# so every sum or difference of two valid amounts is exact under this context.
MAX_FRACTION_DIGITS = 78
AMOUNT_CONTEXT = Context(prec=160, traps=[InvalidOperation, Inexact])


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        """Raise the first ValidationError if validation failed."""
        if not self.is_valid:
            raise self.errors[0]

    def unwrap(self) -> Any:
        """Return the sanitized value or raise."""
        self.raise_if_invalid()
        return self.sanitized_value

    @classmethod
    def success(cls, sanitized_value: Any = None) -> 'ValidationResult':
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> 'ValidationResult':
        return cls(is_valid=False, errors=errors)


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of input validators."""

    HEX40_PATTERN = re.compile(r'^0x[a-f0-9]{40}$')

    MAX_STRING_LENGTH = 4096
    MAX_ANNOTATION_BYTES = 65536

    @classmethod
    def validate_string(
        cls,
        value: Any,
        field_name: str,
        min_length: int = 1,
        max_length: Optional[int] = None,
        pattern: Optional[re.Pattern] = None,
    ) -> ValidationResult:
        """Validate a string value."""
        max_length = max_length or cls.MAX_STRING_LENGTH
        errors = []

        if not isinstance(value, str):
            errors.append(ValidationError(field_name, f"Expected string, got {type(value).__name__}", value))
            return ValidationResult.failure(errors)

        # Sanitize: strip whitespace and null bytes
        sanitized = value.strip().replace('\x00', '')

        if len(sanitized) < min_length:
            errors.append(ValidationError(field_name, f"Too short (min {min_length} chars)", value))

        if len(sanitized) > max_length:
            errors.append(ValidationError(field_name, f"Too long (max {max_length} chars)", value))

        if pattern and not pattern.match(sanitized):
            errors.append(ValidationError(field_name, "Does not match required pattern", value))

        if errors:
            return ValidationResult.failure(errors)
        return ValidationResult.success(sanitized)

    @classmethod
    def validate_address(cls, value: Any, field_name: str = "address") -> ValidationResult:
        """Validate an account or contract address (0x + 40 hex), normalised to lower case."""
        result = cls.validate_string(value, field_name, min_length=42, max_length=42)
        if not result.is_valid:
            return result

        lower = result.sanitized_value.lower()
        if not cls.HEX40_PATTERN.match(lower):
            return ValidationResult.failure([
                ValidationError(field_name, "Must be a valid address (0x + 40 hex)", value)
            ])

        return ValidationResult.success(lower)

    @classmethod
    def validate_token_id(cls, value: Any, field_name: str = "token_id") -> ValidationResult:
        """Validate a uint256 token id. Accepts ints and decimal strings."""
        if isinstance(value, bool):
            return ValidationResult.failure([
                ValidationError(field_name, "Expected integer, got bool", value)
            ])
        if isinstance(value, str):
            try:
                value = int(value.strip(), 0)
            except ValueError:
                return ValidationResult.failure([
                    ValidationError(field_name, "Invalid integer literal", value)
                ])
        if not isinstance(value, int):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected integer, got {type(value).__name__}", value)
            ])
        if value < 0 or value > UINT256_MAX:
            return ValidationResult.failure([
                ValidationError(field_name, "Out of uint256 range", value)
            ])
        return ValidationResult.success(value)

    @classmethod
    def validate_amount(
        cls,
        value: Any,
        field_name: str = "amount",
        min_value: Decimal = Decimal("0"),
        max_value: Decimal = Decimal(UINT256_MAX),
        integral: bool = False,
    ) -> ValidationResult:
        """Validate a quantity and convert it to Decimal."""
        errors = []

        try:
            if isinstance(value, bool):
                raise TypeError
            if isinstance(value, str):
                amount = Decimal(value.strip())
            elif isinstance(value, (int, float)):
                amount = Decimal(str(value))
            elif isinstance(value, Decimal):
                amount = value
            else:
                raise TypeError
        except InvalidOperation:
            errors.append(ValidationError(field_name, "Invalid decimal value", value))
            return ValidationResult.failure(errors)
        except TypeError:
            errors.append(ValidationError(field_name, f"Cannot convert {type(value).__name__} to Decimal", value))
            return ValidationResult.failure(errors)

        # Check for NaN, Inf
        if not amount.is_finite():
            errors.append(ValidationError(field_name, "Must be a finite number", value))
            return ValidationResult.failure(errors)

        if amount < min_value:
            errors.append(ValidationError(field_name, f"Below minimum ({min_value})", value))

        if amount > max_value:
            errors.append(ValidationError(field_name, f"Exceeds maximum ({max_value})", value))

        if integral and amount != amount.to_integral_value():
            errors.append(ValidationError(field_name, "Must be a whole number of units", value))

        if fraction_digits(amount) > MAX_FRACTION_DIGITS:
            errors.append(ValidationError(field_name, f"More than {MAX_FRACTION_DIGITS} fractional digits", value))

        if errors:
            return ValidationResult.failure(errors)

        return ValidationResult.success(amount)

    @classmethod
    def validate_bytes(
        cls,
        value: Any,
        field_name: str,
        min_length: int = 0,
        max_length: int = MAX_ANNOTATION_BYTES,
    ) -> ValidationResult:
        """Validate bytes. Hex strings (with or without 0x) are decoded."""
        errors = []

        if isinstance(value, str):
            text = value[2:] if value.startswith("0x") else value
            try:
                value = bytes.fromhex(text)
            except ValueError:
                errors.append(ValidationError(field_name, "Invalid hex string", value))
                return ValidationResult.failure(errors)

        if isinstance(value, bytearray):
            value = bytes(value)

        if not isinstance(value, bytes):
            errors.append(ValidationError(field_name, f"Expected bytes, got {type(value).__name__}", value))
            return ValidationResult.failure(errors)

        if len(value) < min_length:
            errors.append(ValidationError(field_name, f"Too short (min {min_length} bytes)", value))

        if len(value) > max_length:
            errors.append(ValidationError(field_name, f"Too long (max {max_length} bytes)", value))

        if errors:
            return ValidationResult.failure(errors)

        return ValidationResult.success(value)


def fraction_digits(amount: Decimal) -> int:
    """Number of significant digits after the decimal point."""
    _, digits, exponent = amount.as_tuple()
    if exponent >= 0:
        return 0
    text = "".join(map(str, digits)).rstrip("0")
    return max(0, -exponent - (len(digits) - len(text)))


def coerce_amount(
    value: Any,
    field_name: str = "amount",
    max_value: Decimal = Decimal(UINT256_MAX),
    integral: bool = False,
) -> Decimal:
    """
    Convert a caller-supplied quantity to a strictly positive Decimal.

    Raises InvalidAmount for anything that is not a finite positive number
    within range (and integral, for counted assets).
    """
    result = Validators.validate_amount(
        value, field_name, max_value=max_value, integral=integral,
    )
    if not result.is_valid:
        raise InvalidAmount(result.errors[0].message, amount=value)
    if result.sanitized_value <= 0:
        raise InvalidAmount(f"{field_name}: must be positive", amount=value)
    return result.sanitized_value


# =============================================================================
# STATE INVARIANTS
# =============================================================================

class InvariantChecker:
    """Enforces ledger invariants."""

    @staticmethod
    def check_non_negative(field_name: str, value: Decimal) -> None:
        """Ensure value is non-negative."""
        if value < 0:
            raise InvalidAmount(f"{field_name} cannot be negative: {value}")

    @staticmethod
    def check_balance_sufficient(
        available: Decimal,
        required: Decimal,
        field_name: str = "balance",
    ) -> None:
        """Ensure sufficient balance for operation."""
        if available < required:
            raise InvalidAmount(
                f"Insufficient {field_name}: have {available}, need {required}"
            )
