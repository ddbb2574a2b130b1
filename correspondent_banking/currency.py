"""
Currency and FX Module

Static FX rate table for the correspondent network and Decimal helpers for
monetary amounts. NEVER uses float for monetary values.
"""

from decimal import Decimal, Inexact, InvalidOperation, getcontext, localcontext
from typing import Dict, List, Mapping, Optional, Tuple, Union

from .exceptions import UnknownCurrencyPair

# Set global decimal context for financial precision
getcontext().prec = 28


def parse_amount(value: str) -> Decimal:
    """
    Parse a decimal amount string from a payment instruction.

    Raises:
        ValueError: If the string is not a finite decimal number
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Amount must be a non-empty string")
    try:
        amount = Decimal(value.strip())
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    if not amount.is_finite():
        raise ValueError(f"Amount '{value}' is not a finite number")
    return amount


def decimal_from_json(value: Union[str, int, float, Decimal, None]) -> Decimal:
    """
    Read a persisted amount. Accepts Decimal strings and the JSON numbers
    written by older ledger nodes.
    """
    if value is None:
        return Decimal('0')
    if isinstance(value, Decimal):
        return value
    # str() first so floats keep their shortest repr instead of binary noise
    return Decimal(str(value))


def exact_arithmetic():
    """
    Context in which Decimal operations raise Inexact instead of rounding.

    Balances must move by exactly the posted amounts, so arithmetic that
    does not fit the 28-digit context is refused rather than truncated.
    """
    context = getcontext().copy()
    context.traps[Inexact] = True
    return localcontext(context)


def decimal_places(amount: Decimal) -> int:
    """Significant fractional digits, ignoring trailing zeros"""
    _, digits, exponent = amount.as_tuple()
    while exponent < 0 and len(digits) > 1 and digits[-1] == 0:
        digits = digits[:-1]
        exponent += 1
    return max(0, -exponent)


class FXRateTable:
    """
    Fixed currency-pair conversion factors.

    Only the configured ordered pairs resolve. Same-currency pairs are not
    configured and fail like any other unknown pair. Rates are not derived
    from one another: rate(A, B) * rate(B, A) is generally not 1.
    """

    def __init__(self, rates: Optional[Mapping[str, Union[str, Decimal]]] = None):
        if rates is None:
            from .config import DEFAULT_FX_RATES
            rates = DEFAULT_FX_RATES
        self._rates: Dict[Tuple[str, str], Decimal] = {}
        for pair, factor in rates.items():
            source, target = self._split_pair(pair)
            if source == target:
                raise ValueError(f"Same-currency pair {pair} cannot be configured")
            rate = Decimal(str(factor))
            if rate <= Decimal('0'):
                raise ValueError(f"FX rate for {pair} must be positive")
            self._rates[(source, target)] = rate

    @staticmethod
    def _split_pair(pair: str) -> Tuple[str, str]:
        parts = pair.split("/")
        if len(parts) != 2 or not all(parts):
            raise ValueError(f"Invalid currency pair '{pair}', expected 'SRC/TGT'")
        return parts[0].strip().upper(), parts[1].strip().upper()

    def rate(self, source: str, target: str) -> Decimal:
        """
        Get the conversion factor from source to target currency

        Raises:
            UnknownCurrencyPair: If the ordered pair is not configured
        """
        factor = self._rates.get((source, target))
        if factor is None:
            raise UnknownCurrencyPair(source, target)
        return factor

    def convert(self, amount: Decimal, source: str, target: str) -> Decimal:
        """
        Convert amount at the configured factor, without rounding.

        Raises:
            UnknownCurrencyPair: If the ordered pair is not configured
            decimal.Inexact: If the product does not fit the Decimal context
        """
        factor = self.rate(source, target)
        with exact_arithmetic():
            return amount * factor

    def pairs(self) -> List[Tuple[str, str]]:
        return list(self._rates.keys())

    def currencies(self) -> List[str]:
        seen = set()
        for source, target in self._rates:
            seen.add(source)
            seen.add(target)
        return sorted(seen)

    def to_dict(self) -> Dict[str, str]:
        return {f"{s}/{t}": str(r) for (s, t), r in self._rates.items()}
