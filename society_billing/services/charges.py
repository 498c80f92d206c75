"""Per-member charge calculation for a billing cycle."""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, NamedTuple, Sequence

from society_billing.errors import InvalidPolicyError
from society_billing.models.billing_head import CalculationType
from society_billing.services.periods import ZERO, to_money


@dataclass(frozen=True)
class ChargeHead:
    """One configured charge line.

    ``amount`` is a flat amount for FIXED, a rate per area unit for
    PER_AREA_UNIT and a percent for PERCENTAGE.
    """

    name: str
    calculation_type: CalculationType
    amount: Decimal


class ChargeLine(NamedTuple):
    name: str
    amount: Decimal


@dataclass
class ChargeResult:
    """Ordered breakdown plus subtotal and tax, all in cents."""

    breakdown: list[ChargeLine] = field(default_factory=list)
    subtotal: Decimal = ZERO
    tax: Decimal = ZERO

    def as_json(self) -> list[dict[str, str]]:
        """Breakdown in the shape stored on Bill.charges."""
        return [{"name": line.name, "amount": str(line.amount)} for line in self.breakdown]


def _head_amount(head: ChargeHead, area: Decimal, running_subtotal: Decimal) -> Decimal:
    if head.amount < 0:
        raise InvalidPolicyError(f"Charge head {head.name!r} has negative amount {head.amount}")

    if head.calculation_type == CalculationType.FIXED:
        return to_money(head.amount)
    if head.calculation_type == CalculationType.PER_AREA_UNIT:
        return to_money(area * head.amount)
    if head.calculation_type == CalculationType.PERCENTAGE:
        return to_money(running_subtotal * head.amount / Decimal(100))
    raise InvalidPolicyError(
        f"Unknown calculation type {head.calculation_type!r} for {head.name!r}"
    )


def compute_charges(
    area: Decimal,
    heads: Sequence[ChargeHead],
    service_tax_rate: Decimal,
    ad_hoc_charges: Iterable[tuple[str, Decimal]] = (),
) -> ChargeResult:
    """Compute a member's charge breakdown, subtotal and tax.

    Heads are evaluated in the given order. A PERCENTAGE head applies to the
    subtotal accumulated before it, so moving it changes the result. Ad-hoc
    ``(label, amount)`` pairs are appended after all heads, in caller order.

    Args:
        area: Member's area (for PER_AREA_UNIT heads)
        heads: Active charge heads in evaluation order
        service_tax_rate: Tax percent applied to the subtotal
        ad_hoc_charges: Extra per-cycle lines for this member

    Returns:
        ChargeResult with breakdown, subtotal and tax

    Raises:
        InvalidPolicyError: On negative area, amounts or tax rate, or a
            duplicated line name
    """
    area = Decimal(area)
    if area < 0:
        raise InvalidPolicyError(f"Member area must be non-negative, got {area}")
    service_tax_rate = Decimal(service_tax_rate)
    if service_tax_rate < 0:
        raise InvalidPolicyError(f"Service tax rate must be non-negative, got {service_tax_rate}")

    result = ChargeResult()
    seen: set[str] = set()
    running = ZERO

    def add_line(name: str, amount: Decimal) -> None:
        nonlocal running
        if name in seen:
            raise InvalidPolicyError(f"Duplicate charge line {name!r}")
        seen.add(name)
        result.breakdown.append(ChargeLine(name, amount))
        running += amount

    for head in heads:
        add_line(head.name, _head_amount(head, area, running))

    for label, amount in ad_hoc_charges:
        amount = to_money(amount)
        if amount < 0:
            raise InvalidPolicyError(f"Ad-hoc charge {label!r} has negative amount {amount}")
        add_line(label, amount)

    result.subtotal = to_money(running)
    result.tax = to_money(result.subtotal * service_tax_rate / Decimal(100))
    return result


__all__ = ["ChargeHead", "ChargeLine", "ChargeResult", "compute_charges"]
