"""
Helpers monétaires: Decimal partout, arrondi unique ROUND_HALF_UP à 2 décimales.
Les montants transmis à Stripe sont des entiers en centimes (minor units).
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

def to_decimal(value: Any) -> Decimal:
    """
    Convertit str|int|float|Decimal en Decimal.
    - float passe par str() pour éviter les artefacts binaires (0.1 -> '0.1').
    - Lève ValueError si la valeur n'est pas un nombre fini.
    """
    if isinstance(value, Decimal):
        d = value
    elif isinstance(value, bool) or value is None:
        raise ValueError(f"Montant invalide: {value!r}")
    else:
        try:
            d = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValueError(f"Montant invalide: {value!r}")
    if not d.is_finite():
        raise ValueError(f"Montant invalide: {value!r}")
    return d

def quantize(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)

def to_minor_units(value: Any) -> int:
    """Montant -> centimes, arrondi half-up (jamais de troncature)."""
    cents = (to_decimal(value) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)

def from_minor_units(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(CENT)

def percentage_of(amount: Any, rate: Any) -> Decimal:
    """rate est un pourcentage (10 => 10 %)."""
    return quantize(to_decimal(amount) * to_decimal(rate) / Decimal(100))

def fmt(value: Any) -> str:
    """Sérialisation stable pour Redis / PostgREST (colonnes numeric)."""
    return f"{quantize(value):.2f}"
