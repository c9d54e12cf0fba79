from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from statement_intake.modules.extraction.records import (
    CARD_BRANDS,
    CurrentStateRecord,
    ProposedOption,
    ResultStatus,
)

MAX_PLAUSIBLE_RATE_PERCENT = 10.0
FEE_RECONCILE_TOLERANCE_PCT = 1.0
FEE_RECONCILE_TOLERANCE_ABS = 1.0
CARD_SUM_TOLERANCE_PCT = 5.0

WARN_FEES_MISSING = "Volume present but total monthly cost is 0; verify fee computation"
WARN_RATE_HIGH = "Effective rate implausibly high, verify ({rate:.2f}%)"
WARN_NEGATIVE_SAVINGS = "Current appears cheaper than proposed, verify ({kind} option)"
WARN_NO_DATA = "No usable data extracted (volume and transactions are 0)"
WARN_NO_MERCHANT = "Merchant name missing"
WARN_FEES_UNRECONCILED = (
    "Fee breakdown does not reconcile with stated total (components {components:,.2f} "
    "vs stated {stated:,.2f})"
)
WARN_CARD_SUM = (
    "Card breakdown does not match total volume (cards {cards:,.2f} vs total {total:,.2f})"
)


@dataclass(frozen=True)
class ValidationOutcome:
    warnings: list[str] = field(default_factory=list)
    status: ResultStatus = ResultStatus.SUCCESS


def status_for(warning_count: int) -> ResultStatus:
    if warning_count == 0:
        return ResultStatus.SUCCESS
    if warning_count <= 2:
        return ResultStatus.PARTIAL
    return ResultStatus.NEEDS_REVIEW


def validate(
    record: CurrentStateRecord, options: Sequence[ProposedOption] = ()
) -> ValidationOutcome:
    """Run the independent sanity rules over a merged record.

    Rules are independent of each other; status follows the warning count alone.
    """
    warnings: list[str] = []

    volume = record.total_volume
    if volume > 0 and record.total_monthly_cost == 0:
        warnings.append(WARN_FEES_MISSING)

    rate = record.effective_rate_percent
    if rate > MAX_PLAUSIBLE_RATE_PERCENT:
        warnings.append(WARN_RATE_HIGH.format(rate=rate))

    for option in options:
        if (option.monthly_savings or 0.0) < 0:
            warnings.append(WARN_NEGATIVE_SAVINGS.format(kind=option.kind.replace("_", " ")))

    if volume == 0 and record.total_transactions == 0:
        warnings.append(WARN_NO_DATA)

    if not (record.merchant_name or "").strip():
        warnings.append(WARN_NO_MERCHANT)

    components = record.fees.present()
    stated = record.stated_total_fees
    if components and stated is not None:
        component_total = sum(components.values())
        diff = abs(component_total - stated)
        relative_limit = abs(stated) * FEE_RECONCILE_TOLERANCE_PCT / 100
        if diff > FEE_RECONCILE_TOLERANCE_ABS and diff > relative_limit:
            warnings.append(
                WARN_FEES_UNRECONCILED.format(components=component_total, stated=stated)
            )

    card_total = sum(record.card(brand).volume for brand in CARD_BRANDS)
    if volume > 0 and card_total > 0:
        if abs(card_total - volume) / volume * 100 > CARD_SUM_TOLERANCE_PCT:
            warnings.append(WARN_CARD_SUM.format(cards=card_total, total=volume))

    return ValidationOutcome(warnings=warnings, status=status_for(len(warnings)))
