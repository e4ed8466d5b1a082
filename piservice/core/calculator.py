"""Calcul de Pi par la série de Chudnovsky.

Chaque terme de la série apporte ~14.18 chiffres décimaux corrects.
L'arithmétique se fait en `decimal` avec 30 chiffres de garde et un arrondi
half-up à la troncature finale.

Deux modes d'exécution:
- `compute_digits`: bloquant, réservé aux petites précisions
- `compute_digits_async`: coopératif, rend la main à la boucle asyncio tous
  les 5 termes pour ne pas affamer les lectures concurrentes
"""

import asyncio
import math
from decimal import Context, Decimal, MAX_EMAX, MAX_PREC, MIN_EMIN, ROUND_HALF_UP

from piservice.core.errors import InvalidPrecision

DIGITS_PER_TERM = 14.1816474627
GUARD_DIGITS = 30
YIELD_INTERVAL = 5
MAX_PRECISION = MAX_PREC - GUARD_DIGITS

# Constantes de la série
C = 640320
C3 = C ** 3
A = 13591409
B = 545140134
SCALE = 426880
SQRT_ARG = 10005


def term_count(precision: int) -> int:
    """Nombre de termes nécessaires pour `precision` décimales (au moins 1)."""
    return max(1, math.ceil(precision / DIGITS_PER_TERM))


class ChudnovskySeries:
    """Somme partielle de la série, avancée un terme à la fois.

    Le terme multinomial M_k et la puissance (C^3)^k sont mis à jour par
    récurrence: chaque pas coûte un nombre constant de multiplications.
    """

    def __init__(self, precision: int) -> None:
        self.precision = precision
        self.terms = term_count(precision)
        self.k = 0
        self.ctx = Context(
            prec=precision + GUARD_DIGITS,
            rounding=ROUND_HALF_UP,
            Emax=MAX_EMAX,
            Emin=MIN_EMIN
        )
        self._c3 = Decimal(C3)
        self._m = Decimal(1)
        self._sum = Decimal(0)
        self._c3_power = Decimal(1)

    @property
    def done(self) -> bool:
        return self.k >= self.terms

    def step(self) -> None:
        """Ajoute le terme k à la somme puis prépare le terme k+1."""
        ctx = self.ctx
        k = self.k

        term = ctx.divide(ctx.multiply(self._m, Decimal(A + B * k)), self._c3_power)
        if k & 1:
            self._sum = ctx.subtract(self._sum, term)
        else:
            self._sum = ctx.add(self._sum, term)

        # M_{k+1} / M_k = (6k+1)...(6k+6) / ((k+1)^3 (3k+1)(3k+2)(3k+3))
        numerator = (6 * k + 1) * (6 * k + 2) * (6 * k + 3) * (6 * k + 4) * (6 * k + 5) * (6 * k + 6)
        denominator = (k + 1) ** 3 * (3 * k + 1) * (3 * k + 2) * (3 * k + 3)
        self._m = ctx.divide(ctx.multiply(self._m, Decimal(numerator)), Decimal(denominator))

        if k < self.terms - 1:
            self._c3_power = ctx.multiply(self._c3_power, self._c3)

        self.k += 1

    def result(self) -> str:
        """Pi = 426880 * sqrt(10005) / S, arrondi à `precision` décimales."""
        ctx = self.ctx
        pi = ctx.divide(ctx.multiply(Decimal(SCALE), ctx.sqrt(Decimal(SQRT_ARG))), self._sum)
        quantum = Decimal((0, (1,), -self.precision))
        return format(pi.quantize(quantum, rounding=ROUND_HALF_UP, context=ctx), "f")


class SeriesCalculator:
    """Calcule Pi à N décimales. Sans état entre deux appels."""

    def __init__(self, yield_interval: int = YIELD_INTERVAL) -> None:
        self.yield_interval = yield_interval

    def _new_series(self, precision: int) -> ChudnovskySeries:
        if precision > MAX_PRECISION:
            raise InvalidPrecision(precision, MAX_PRECISION)
        return ChudnovskySeries(precision)

    def compute_digits(self, precision: int) -> str:
        """Mode direct (bloquant).

        Args:
            precision: nombre de décimales

        Returns:
            "3" si precision <= 0, sinon "3." suivi de `precision` chiffres
        """
        if precision <= 0:
            return "3"

        series = self._new_series(precision)
        while not series.done:
            series.step()
        return series.result()

    async def compute_digits_async(self, precision: int) -> str:
        """Mode coopératif: rend la main à la boucle tous les `yield_interval` termes."""
        if precision <= 0:
            return "3"

        series = self._new_series(precision)
        while not series.done:
            series.step()
            if series.k % self.yield_interval == 0:
                await asyncio.sleep(0)
        return series.result()
