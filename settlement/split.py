"""Revenue split between the platform and the tournament organizer.

All amounts are integer minor units. Derived shares are computed as
remainders so that the parts always add back up to the whole:

    platform_fee_amount + organizer_share == total_collected
    payout_1 + payout_2 == organizer_share
"""
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_HALF_UP

from settlement.errors import InvalidAmount, ValidationError

DEFAULT_PLATFORM_FEE_PERCENT = 5
DEFAULT_FIRST_PAYOUT_PERCENT = 30


@dataclass(frozen=True)
class RevenueSplit:
    total_collected: int
    platform_fee_percent: int
    platform_fee_amount: int
    organizer_share: int
    payout_1: int
    payout_2: int

    def to_dict(self) -> dict:
        return asdict(self)


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def percent_of(amount: int, percent) -> int:
    return round_half_up(Decimal(amount) * Decimal(str(percent)) / Decimal(100))


def _check_percent(name: str, value) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, Decimal)) or not 0 <= value <= 100:
        raise ValidationError(f'{name} must be between 0 and 100', **{name: str(value)})


def compute_split(
    total_collected: int,
    platform_fee_percent=DEFAULT_PLATFORM_FEE_PERCENT,
    first_payout_percent=DEFAULT_FIRST_PAYOUT_PERCENT,
) -> RevenueSplit:
    if isinstance(total_collected, bool) or not isinstance(total_collected, int) or total_collected < 0:
        raise InvalidAmount('Total collected must be a non-negative integer', total_collected=total_collected)
    _check_percent('platform_fee_percent', platform_fee_percent)
    _check_percent('first_payout_percent', first_payout_percent)

    platform_fee_amount = percent_of(total_collected, platform_fee_percent)
    organizer_share = total_collected - platform_fee_amount
    payout_1 = percent_of(organizer_share, first_payout_percent)

    return RevenueSplit(
        total_collected=total_collected,
        platform_fee_percent=platform_fee_percent,
        platform_fee_amount=platform_fee_amount,
        organizer_share=organizer_share,
        payout_1=payout_1,
        payout_2=organizer_share - payout_1,
    )
