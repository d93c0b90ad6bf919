"""Currency conversion from a fixed rate snapshot."""

from typing import Optional


class CurrencyConverter:
    """Converts amounts using rates expressed in a common base currency."""

    def __init__(self, rates: dict[str, float], base: str = "USD"):
        self.base = base.upper()
        self.rates = {code.upper(): rate for code, rate in rates.items()}
        self.rates.setdefault(self.base, 1.0)

    def supports(self, currency: Optional[str]) -> bool:
        return bool(currency) and currency.upper() in self.rates

    def convert(self, amount: float, from_currency: str, to_currency: str) -> float:
        """
        Convert `amount` between two snapshot currencies.

        Raises:
            ValueError: If either currency is not in the snapshot
        """
        src, dst = from_currency.upper(), to_currency.upper()
        if src == dst:
            return amount
        if src not in self.rates or dst not in self.rates:
            raise ValueError(f"No conversion rate for {src} -> {dst}")
        return round(amount * self.rates[src] / self.rates[dst], 2)
