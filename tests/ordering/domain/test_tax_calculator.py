"""Tests for tax rate resolution and tax line computation."""

from decimal import Decimal

import pytest
from ordering.tax.calculator import (
    REDUCED_RATE,
    Jurisdiction,
    TaxCalculator,
    TaxRate,
    postcode_matches,
)
from shared.money import Money

US_CA = Jurisdiction(country="US", state="CA", postcode="90050", city="Los Angeles")


def _rate(rate_id, rate, **kwargs):
    return TaxRate(id=rate_id, rate=Decimal(rate), **kwargs)


class TestPostcodeMatching:
    @pytest.mark.parametrize(
        "pattern,postcode,expected",
        [
            ("90050", "90050", True),
            ("90001...90099", "90050", True),
            ("90001...90099", "90100", False),
            ("SW1*", "sw1a 1aa", True),
            ("SW1*", "SE1 7PB", False),
            ("90050", "", False),
        ],
    )
    def test_patterns(self, pattern, postcode, expected):
        assert postcode_matches(pattern, postcode) is expected


class TestRateResolution:
    def test_country_code_case_insensitive(self):
        calculator = TaxCalculator([_rate("us", "8", country="us")])
        assert [r.id for r in calculator.rates(Jurisdiction(country="US"))] == ["us"]

    def test_non_matching_country(self):
        calculator = TaxCalculator([_rate("de", "19", country="DE")])
        assert calculator.rates(US_CA) == []

    def test_most_specific_tier_wins_within_priority(self):
        calculator = TaxCalculator(
            [
                _rate("global", "1"),
                _rate("us", "5", country="US"),
                _rate("ca", "7.25", country="US", state="CA"),
            ]
        )
        assert [r.id for r in calculator.rates(US_CA)] == ["ca"]

    def test_postcode_beats_state(self):
        calculator = TaxCalculator(
            [
                _rate("ca", "7.25", country="US", state="CA"),
                _rate("la", "9.5", country="US", postcodes=("90001...90099",)),
            ]
        )
        assert [r.id for r in calculator.rates(US_CA)] == ["la"]

    def test_city_matches_case_insensitively(self):
        calculator = TaxCalculator([_rate("la", "2", country="US", cities=("los angeles",))])
        assert [r.id for r in calculator.rates(US_CA)] == ["la"]

    def test_separate_priorities_stack(self):
        calculator = TaxCalculator(
            [
                _rate("state", "6", country="US", state="CA", priority=1),
                _rate("county", "1", country="US", priority=2),
            ]
        )
        assert [r.id for r in calculator.rates(US_CA)] == ["state", "county"]

    def test_tax_class_filters_rates(self):
        calculator = TaxCalculator(
            [
                _rate("std", "20", country="GB"),
                _rate("reduced", "5", country="GB", tax_class=REDUCED_RATE),
            ]
        )
        gb = Jurisdiction(country="GB")
        assert [r.id for r in calculator.rates(gb, REDUCED_RATE)] == ["reduced"]

    def test_shipping_rates_skip_non_shipping(self):
        calculator = TaxCalculator(
            [
                _rate("a", "5", country="US", priority=1),
                _rate("b", "2", country="US", priority=2, shipping=False),
            ]
        )
        assert [r.id for r in calculator.shipping_rates(US_CA)] == ["a"]


class TestCalculation:
    def test_exclusive_single_rate(self):
        calculator = TaxCalculator()
        lines = calculator.calculate(Money("25.00"), [_rate("us", "8")])

        assert len(lines) == 1
        assert lines[0].amount == Money("2.00")
        assert lines[0].rate_id == "us"

    def test_each_line_rounded_half_up(self):
        calculator = TaxCalculator()
        lines = calculator.calculate(Money("0.625"), [_rate("us", "10")])
        assert lines[0].amount == Money("0.06")

    def test_compound_applies_on_previous_taxes(self):
        calculator = TaxCalculator()
        rates = [
            _rate("gst", "5", priority=1),
            _rate("qst", "9.975", priority=2, compound=True),
        ]
        lines = calculator.calculate(Money("100.00"), rates)

        assert [line.amount for line in lines] == [Money("5.00"), Money("10.47")]
        assert TaxCalculator.total(lines) == Money("15.47")

    def test_inclusive_extracts_tax(self):
        calculator = TaxCalculator()
        lines = calculator.calculate(Money("10.00"), [_rate("us", "8")], inclusive=True)
        assert lines[0].amount == Money("0.74")

    def test_inclusive_compound_extracted_first(self):
        calculator = TaxCalculator(decimals=4)
        rates = [
            _rate("gst", "5", priority=1),
            _rate("qst", "10", priority=2, compound=True),
        ]
        lines = calculator.calculate(Money("115.50"), rates, inclusive=True)
        assert [line.amount for line in lines] == [Money("5.0000"), Money("10.5000")]

    def test_decimals_override(self):
        calculator = TaxCalculator(decimals=2)
        lines = calculator.calculate(Money("0.625"), [_rate("us", "10")], decimals=4)
        assert lines[0].amount == Money("0.0625")

    def test_zero_amount_or_no_rates(self):
        calculator = TaxCalculator()
        assert calculator.calculate(Money.zero(), [_rate("us", "8")]) == []
        assert calculator.calculate(Money("10.00"), []) == []
