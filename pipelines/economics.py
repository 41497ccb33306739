"""Creation bond arithmetic.

Mirrors the factory contract's integer math: the fee is floor division of the
bond by basis points, and the refundable part is whatever remains. Floats never
enter the calculation.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping

from pipelines.errors import InvalidBondTerms

BPS_DENOMINATOR = 10_000
UINT16_MAX = 65_535
PRICE_DECIMALS = 6


def _require_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidBondTerms(f"{name} must be an integer, got {type(value).__name__}.")
    return value


@dataclass(frozen=True)
class BondTerms:
    """Bond configuration read from the factory."""

    default_bond_amount: int
    creation_penalty_bps: int

    def __post_init__(self) -> None:
        amount = _require_int("default_bond_amount", self.default_bond_amount)
        bps = _require_int("creation_penalty_bps", self.creation_penalty_bps)
        if amount < 0:
            raise InvalidBondTerms("default_bond_amount must be non-negative.")
        if not 0 <= bps <= BPS_DENOMINATOR:
            raise InvalidBondTerms(
                f"creation_penalty_bps must be within 0..{BPS_DENOMINATOR}, got {bps}."
            )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "BondTerms":
        """Build terms from the ``{defaultBondAmount, creationPenaltyBps}`` wire shape."""

        try:
            amount = payload["defaultBondAmount"]
            bps = payload["creationPenaltyBps"]
        except KeyError as exc:
            raise InvalidBondTerms(f"Bond configuration missing {exc.args[0]!r}.") from exc
        # Amounts above 2**53 arrive as decimal strings from JSON encoders.
        if isinstance(amount, str) and amount.isdigit():
            amount = int(amount)
        if isinstance(bps, str) and bps.isdigit():
            bps = int(bps)
        if isinstance(bps, int) and not isinstance(bps, bool) and bps > UINT16_MAX:
            raise InvalidBondTerms(f"creationPenaltyBps {bps} does not fit in uint16.")
        return cls(default_bond_amount=amount, creation_penalty_bps=bps)

    def split(self) -> "BondSplit":
        return compute_bond_split(self.default_bond_amount, self.creation_penalty_bps)


@dataclass(frozen=True)
class BondSplit:
    bond_amount: int
    fee: int
    refundable: int

    def as_dict(self) -> dict[str, str]:
        # Strings keep full precision for smallest-unit amounts in JSON.
        return {
            "bondAmount": str(self.bond_amount),
            "fee": str(self.fee),
            "refundable": str(self.refundable),
        }


def compute_bond_split(bond_amount: int, penalty_bps: int) -> BondSplit:
    """Return the creation fee and refundable remainder for a bond.

    >>> compute_bond_split(1_000_000, 250)
    BondSplit(bond_amount=1000000, fee=25000, refundable=975000)
    """

    terms = BondTerms(default_bond_amount=bond_amount, creation_penalty_bps=penalty_bps)
    fee = terms.default_bond_amount * terms.creation_penalty_bps // BPS_DENOMINATOR
    return BondSplit(
        bond_amount=terms.default_bond_amount,
        fee=fee,
        refundable=terms.default_bond_amount - fee,
    )


def to_base_units(amount: Decimal | int | str, decimals: int = PRICE_DECIMALS) -> int:
    """Scale a decimal price to integer base units.

    >>> to_base_units(Decimal("12.5"))
    12500000
    """

    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    if not value.is_finite():
        raise ValueError(f"Cannot scale non-finite amount {amount!r}.")
    return int((value * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


__all__ = [
    "BondTerms",
    "BondSplit",
    "compute_bond_split",
    "to_base_units",
    "BPS_DENOMINATOR",
    "PRICE_DECIMALS",
]
