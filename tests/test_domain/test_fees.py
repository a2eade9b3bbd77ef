"""Tests for the platform fee split."""

from __future__ import annotations

from decimal import Decimal

import pytest

from talent_escrow.domain.exceptions import ValidationError
from talent_escrow.domain.fees import compute_split, to_money


class TestComputeSplit:
    @pytest.mark.parametrize(
        ("gross", "fee", "net"),
        [
            ("10000", "1500.00", "8500.00"),
            ("12000", "1800.00", "10200.00"),
            ("33.33", "5.00", "28.33"),
            ("0.01", "0.00", "0.01"),
        ],
    )
    def test_reference_amounts_at_fifteen_percent(self, gross: str, fee: str, net: str) -> None:
        split = compute_split(gross, 15)
        assert split.fee == Decimal(fee)
        assert split.net == Decimal(net)
        assert split.fee + split.net == split.gross

    def test_fee_rounds_half_up(self) -> None:
        # 0.10 * 15% = 0.015 -> 0.02
        split = compute_split(Decimal("0.10"), 15)
        assert split.fee == Decimal("0.02")
        assert split.net == Decimal("0.08")

    def test_float_input_goes_through_str(self) -> None:
        split = compute_split(33.33, 15)
        assert split.gross == Decimal("33.33")
        assert split.fee == Decimal("5.00")

    def test_zero_and_full_rates(self) -> None:
        assert compute_split("250", 0).fee == Decimal("0.00")
        full = compute_split("250", 100)
        assert full.fee == Decimal("250.00")
        assert full.net == Decimal("0.00")

    def test_rate_is_echoed(self) -> None:
        split = compute_split("100", "12.5")
        assert split.fee_rate_percent == Decimal("12.5")
        assert split.to_dict()["fee"] == "12.50"

    def test_sum_invariant_over_awkward_amounts(self) -> None:
        for cents in (1, 7, 99, 101, 3333, 123457, 999999):
            gross = Decimal(cents) / 100
            split = compute_split(gross, Decimal("17.5"))
            assert split.fee + split.net == split.gross
            assert split.fee == split.fee.quantize(Decimal("0.01"))


class TestRejectedInputs:
    @pytest.mark.parametrize("bad", ["-1", "NaN", "Infinity", "abc", "10.001"])
    def test_bad_gross(self, bad: str) -> None:
        with pytest.raises(ValidationError):
            compute_split(bad, 15)

    @pytest.mark.parametrize("rate", [-1, 101, "x"])
    def test_bad_rate(self, rate) -> None:  # noqa: ANN001
        with pytest.raises(ValidationError) as exc_info:
            compute_split("100", rate)
        assert exc_info.value.field == "fee_rate_percent"

    def test_bool_is_not_money(self) -> None:
        with pytest.raises(ValidationError):
            to_money(True)
