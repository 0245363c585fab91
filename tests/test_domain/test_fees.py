"""Tests for the fee schedule, settlement split and amount parsing."""

from __future__ import annotations

from decimal import Decimal

import pytest

from channel_escrow.domain.enums import FeePayer
from channel_escrow.domain.exceptions import ValidationError
from channel_escrow.domain.fees import compute_fee, parse_amount, split_settlement


class TestComputeFee:
    @pytest.mark.parametrize(
        ("amount", "expected"),
        [
            ("1.00", "0.00"),
            ("29.99", "0.00"),
            ("30.00", "1.00"),
            ("49.99", "1.00"),
            ("50.00", "2.00"),
            ("299.99", "2.00"),
            ("300.00", "3.00"),
            ("1234.56", "12.35"),
        ],
    )
    def test_tiers(self, amount: str, expected: str) -> None:
        assert compute_fee(Decimal(amount)) == Decimal(expected)

    def test_stablecoin_surcharge(self) -> None:
        assert compute_fee(Decimal("25"), is_stablecoin=True) == Decimal("1.00")
        assert compute_fee(Decimal("40"), is_stablecoin=True) == Decimal("2.00")

    def test_percentage_rounds_half_up(self) -> None:
        # 1% of 300.50 is 3.005
        assert compute_fee(Decimal("300.50")) == Decimal("3.01")


class TestSplitSettlement:
    def test_buyer_pays(self) -> None:
        split = split_settlement(Decimal("40"), Decimal("1.00"), FeePayer.BUYER)
        assert split.buyer_pays_usd == Decimal("41.00")
        assert split.seller_receives_usd == Decimal("40.00")

    def test_seller_pays(self) -> None:
        split = split_settlement(Decimal("40"), Decimal("1.00"), FeePayer.SELLER)
        assert split.buyer_pays_usd == Decimal("40.00")
        assert split.seller_receives_usd == Decimal("39.00")

    def test_split(self) -> None:
        split = split_settlement(Decimal("40"), Decimal("1.00"), FeePayer.SPLIT)
        assert split.buyer_pays_usd == Decimal("40.50")
        assert split.seller_receives_usd == Decimal("39.50")

    @pytest.mark.parametrize("payer", list(FeePayer))
    def test_difference_is_always_the_fee(self, payer: FeePayer) -> None:
        fee = compute_fee(Decimal("1000"))
        split = split_settlement(Decimal("1000"), fee, payer)
        assert split.buyer_pays_usd - split.seller_receives_usd == fee


class TestParseAmount:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("40", "40.00"),
            ("  $40.5 ", "40.50"),
            ("1,250.50", "1250.50"),
            ("0.015", "0.02"),
        ],
    )
    def test_valid(self, raw: str, expected: str) -> None:
        assert parse_amount(raw) == Decimal(expected)

    @pytest.mark.parametrize(
        "raw",
        [
            "forty",
            "",
            "-5",
            "0",
            "NaN",
            "Infinity",
            "0.001",
            "1e30",
            "99999999999999999999999999999",
            "1000000000.01",
        ],
    )
    def test_invalid(self, raw: str) -> None:
        with pytest.raises(ValidationError) as exc_info:
            parse_amount(raw)
        assert exc_info.value.code == "INVALID_AMOUNT"
