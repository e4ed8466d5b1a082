"""Tests du calculateur de Pi (série de Chudnovsky)."""

import asyncio

import pytest

from piservice.core.calculator import (
    MAX_PRECISION,
    ChudnovskySeries,
    SeriesCalculator,
    term_count,
)
from piservice.core.errors import InvalidPrecision

# Pi à 100 décimales (la 101e est un 8)
PI_100 = (
    "3."
    "1415926535897932384626433832795028841971693993751058209749445923078164062862089986280348253421170679"
)


class TestTermCount:
    """Nombre de termes de la série"""

    def test_at_least_one_term(self):
        assert term_count(0) == 1
        assert term_count(1) == 1

    def test_grows_with_precision(self):
        assert term_count(14) == 1
        assert term_count(15) == 2
        assert term_count(1000) == 71


class TestComputeDigits:
    """Mode direct"""

    def setup_method(self):
        self.calculator = SeriesCalculator()

    @pytest.mark.parametrize("precision", [0, -1, -100])
    def test_non_positive_precision_returns_three(self, precision):
        assert self.calculator.compute_digits(precision) == "3"

    def test_ten_decimals(self):
        assert self.calculator.compute_digits(10) == "3.1415926536"

    def test_single_decimal(self):
        assert self.calculator.compute_digits(1) == "3.1"

    @pytest.mark.parametrize("precision", [20, 70, 90])
    def test_matches_reference_when_next_digit_is_low(self, precision):
        assert self.calculator.compute_digits(precision) == PI_100[:precision + 2]

    def test_rounds_half_up_on_last_digit(self):
        # ...3421170679|8 -> ...3421170680
        assert self.calculator.compute_digits(100) == PI_100[:100] + "80"

    def test_format(self):
        value = self.calculator.compute_digits(500)
        assert value.startswith("3.")
        assert len(value) == 502
        assert value[2:].isdigit()

    def test_higher_precision_extends_lower_one(self):
        low = self.calculator.compute_digits(90)
        high = self.calculator.compute_digits(1000)
        assert high[:92] == low

    def test_precision_above_limit_is_rejected(self):
        with pytest.raises(InvalidPrecision) as exc_info:
            self.calculator.compute_digits(MAX_PRECISION + 1)
        assert exc_info.value.limit == MAX_PRECISION

    def test_invalid_precision_is_a_value_error(self):
        with pytest.raises(ValueError):
            self.calculator.compute_digits(MAX_PRECISION + 1)


class TestComputeDigitsAsync:
    """Mode coopératif"""

    def test_same_result_as_direct_mode(self):
        calculator = SeriesCalculator()
        for precision in (0, 10, 250):
            assert asyncio.run(calculator.compute_digits_async(precision)) == calculator.compute_digits(precision)

    def test_yields_to_other_tasks(self):
        """Une tâche concurrente progresse pendant un calcul long."""
        calculator = SeriesCalculator(yield_interval=5)
        ticks = []

        async def ticker(stop: asyncio.Event):
            while not stop.is_set():
                ticks.append(1)
                await asyncio.sleep(0)

        async def scenario():
            stop = asyncio.Event()
            task = asyncio.create_task(ticker(stop))
            await calculator.compute_digits_async(2000)
            stop.set()
            await task

        asyncio.run(scenario())
        # 2000 décimales = 142 termes, soit 28 points de suspension
        assert len(ticks) >= 20


class TestChudnovskySeries:
    """Somme partielle avancée pas à pas"""

    def test_done_after_all_terms(self):
        series = ChudnovskySeries(50)
        assert not series.done
        for _ in range(series.terms):
            series.step()
        assert series.done
        assert series.result() == "3.14159265358979323846264338327950288419716939937511"
