from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import replace
from typing import Literal

from statement_intake.core.logging import get_logger, log_event
from statement_intake.core.numbers import clamp
from statement_intake.modules.extraction.records import (
    CARD_BRANDS,
    FEE_FIELDS,
    IDENTITY_FIELDS,
    CardBreakdown,
    CurrentStateRecord,
    FeeBreakdown,
    MergedResult,
    PageExtractionResult,
    PageTypeHint,
    ProposedOption,
    StructuredRecord,
)
from statement_intake.modules.extraction.validator import ValidationOutcome

logger = get_logger(__name__)

_CARD_FIELDS = ("volume", "transaction_count", "rate_percent", "per_transaction_fee", "total_cost")
_TOTAL_FIELDS = ("total_volume", "total_transactions", "total_monthly_cost")

_LABELS = {
    "total_volume": "total volume",
    "total_transactions": "total transactions",
    "total_monthly_cost": "total monthly cost",
    "volume": "volume",
    "transaction_count": "transaction count",
    "rate_percent": "rate",
    "per_transaction_fee": "per-transaction fee",
    "total_cost": "cost",
}


def _differs(a: float, b: float) -> bool:
    return not math.isclose(a, b, rel_tol=1e-6, abs_tol=0.005)


def _first(*values):
    for value in values:
        if value is not None:
            return value
    return None


def _identity(target: CurrentStateRecord, states: Sequence[CurrentStateRecord]) -> None:
    for name in IDENTITY_FIELDS:
        setattr(target, name, _first(*(getattr(s, name) for s in states)))


def _max_present(values: Iterable[float | None]) -> float | None:
    present = [v for v in values if v is not None and v >= 0]
    return max(present) if present else None


def _max_fees(fee_sets: Sequence[FeeBreakdown]) -> FeeBreakdown:
    fees = FeeBreakdown()
    for name in FEE_FIELDS:
        values = [getattr(f, name) for f in fee_sets if getattr(f, name) is not None]
        if not values:
            continue
        non_zero = [v for v in values if v]
        setattr(fees, name, max(non_zero) if non_zero else 0.0)
    return fees


def _max_cards(states: Sequence[CurrentStateRecord]) -> dict[str, CardBreakdown]:
    cards: dict[str, CardBreakdown] = {}
    for brand in CARD_BRANDS:
        per_brand = [s.card(brand) for s in states]
        cards[brand] = CardBreakdown(
            volume=_max_present(c.volume for c in per_brand) or 0.0,
            transaction_count=_max_present(c.transaction_count for c in per_brand) or 0.0,
            rate_percent=_max_present(c.rate_percent for c in per_brand),
            per_transaction_fee=_max_present(c.per_transaction_fee for c in per_brand),
            total_cost=_max_present(c.total_cost for c in per_brand),
        )
    return cards


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _first_options(records: Sequence[StructuredRecord]):
    ic = _first(*(r.interchange_plus for r in records))
    dp = _first(*(r.dual_pricing for r in records))
    return ic, dp


def combine_pages(page_results: Sequence[PageExtractionResult]) -> StructuredRecord | None:
    """Fold per-page extractions of one document into a single record.

    The first page hinted `summary` supplies the statement totals. Without one, totals
    are rebuilt from the merged card and fee breakdowns so detail pages are never
    double counted.
    """
    pages = sorted(
        (p for p in page_results if p.success and p.data is not None),
        key=lambda p: p.page_index,
    )
    if not pages:
        return None
    records = [p.data for p in pages if p.data is not None]
    states = [r.current for r in records]

    cards = _max_cards(states)
    fees = _max_fees([s.fees for s in states])
    summary = next((p for p in pages if p.page_type_hint == PageTypeHint.SUMMARY), None)

    current = CurrentStateRecord(card_breakdown=cards, fees=fees)
    _identity(current, states)
    if summary is not None and summary.data is not None:
        s = summary.data.current
        current.total_volume = s.total_volume
        current.total_transactions = s.total_transactions
        current.total_monthly_cost = s.total_monthly_cost
        current.stated_total_fees = s.stated_total_fees
    else:
        current.total_volume = sum(c.volume for c in cards.values())
        current.total_transactions = sum(c.transaction_count for c in cards.values())
        current.total_monthly_cost = fees.present_total()
        current.stated_total_fees = _max_present(s.stated_total_fees for s in states)

    ic, dp = _first_options(records)
    return StructuredRecord(
        current=current,
        interchange_plus=ic,
        dual_pricing=dp,
        notes=[n for r in records for n in r.notes],
        confidence=_mean([r.confidence for r in records]),
        source="chunked",
        warnings=[w for r in records for w in r.warnings],
    )


def combine_extractions(records: Sequence[StructuredRecord | None]) -> StructuredRecord | None:
    """Fold several extractions of the same kind (e.g. two statements) into one."""
    present = [r for r in records if r is not None]
    if not present:
        return None
    if len(present) == 1:
        return present[0]

    states = [r.current for r in present]
    current = CurrentStateRecord(
        card_breakdown=_max_cards(states),
        fees=_max_fees([s.fees for s in states]),
        stated_total_fees=_max_present(s.stated_total_fees for s in states),
    )
    _identity(current, states)
    for name in _TOTAL_FIELDS:
        setattr(current, name, _max_present(getattr(s, name) for s in states) or 0.0)

    ic, dp = _first_options(present)
    defaults: list[str] = []
    for r in present:
        defaults.extend(d for d in r.defaults_used if d not in defaults)
    return StructuredRecord(
        current=current,
        interchange_plus=ic,
        dual_pricing=dp,
        notes=[n for r in present for n in r.notes],
        confidence=_mean([r.confidence for r in present]),
        source=present[0].source if len({r.source for r in present}) == 1 else "combined",
        defaults_used=defaults,
        warnings=[w for r in present for w in r.warnings],
    )


class _Precedence:
    def __init__(self, primary_name: str, secondary_name: str):
        self.primary_name = primary_name
        self.secondary_name = secondary_name
        self.warnings: list[str] = []

    def pick(self, label: str, first: float | None, second: float | None) -> float | None:
        if first:
            if second and _differs(first, second):
                self.warnings.append(
                    f"Conflicting {label}: kept {first:,.2f} from {self.primary_name}, "
                    f"discarded {second:,.2f} from {self.secondary_name}"
                )
                log_event(
                    logger,
                    "merge.conflict",
                    field=label,
                    kept=first,
                    kept_source=self.primary_name,
                    discarded=second,
                    discarded_source=self.secondary_name,
                )
            return first
        if second:
            return second
        return _first(first, second)


def _apply_precedence(
    primary: StructuredRecord,
    secondary: StructuredRecord,
    *,
    primary_name: str,
    secondary_name: str,
) -> tuple[CurrentStateRecord, list[str]]:
    p, s = primary.current, secondary.current
    prec = _Precedence(primary_name, secondary_name)

    current = CurrentStateRecord()
    for name in _TOTAL_FIELDS:
        value = prec.pick(_LABELS[name], getattr(p, name), getattr(s, name))
        setattr(current, name, value or 0.0)
    current.stated_total_fees = prec.pick(
        "stated total fees", p.stated_total_fees, s.stated_total_fees
    )

    for brand in CARD_BRANDS:
        pc, sc = p.card(brand), s.card(brand)
        card = CardBreakdown()
        for name in _CARD_FIELDS:
            value = prec.pick(f"{brand} {_LABELS[name]}", getattr(pc, name), getattr(sc, name))
            if name in {"volume", "transaction_count"}:
                value = value or 0.0
            setattr(card, name, value)
        current.card_breakdown[brand] = card

    current.fees = _max_fees([p.fees, s.fees])
    return current, prec.warnings


def merge(
    pricing: StructuredRecord | None = None,
    statement: StructuredRecord | None = None,
    page_results: Sequence[PageExtractionResult] | None = None,
    *,
    document_types_seen: Sequence[str] = (),
    upstream_warnings: Sequence[str] = (),
    pricing_failure: str | None = None,
    prefer: Literal["pricing", "statement"] = "pricing",
) -> MergedResult:
    """Merge pricing, statement and chunked-page extractions into one canonical record.

    Identity fields come from the first source that has them (pricing, then statement,
    then pages). Current-state figures follow `prefer`; every value discarded in a
    conflict is logged and reported as a warning. The returned confidence is the mean
    of the contributing extractions; `finalize` applies the validator penalty.
    """
    page_record = combine_pages(page_results or [])
    statement_like = combine_extractions([statement, page_record])

    contributing = [r for r in (pricing, statement_like) if r is not None]
    warnings: list[str] = list(upstream_warnings)
    for record in contributing:
        warnings.extend(record.warnings)

    if pricing is not None and statement_like is not None:
        if prefer == "statement":
            current, conflicts = _apply_precedence(
                statement_like, pricing, primary_name="statement", secondary_name="pricing"
            )
        else:
            current, conflicts = _apply_precedence(
                pricing, statement_like, primary_name="pricing", secondary_name="statement"
            )
        warnings.extend(conflicts)
    elif contributing:
        current = replace(contributing[0].current)
        current.card_breakdown = dict(contributing[0].current.card_breakdown)
    else:
        current = CurrentStateRecord()

    _identity(current, [r.current for r in (pricing, statement, page_record) if r is not None])

    option_source = None
    if pricing is not None and pricing.options:
        option_source = pricing
    elif statement_like is not None and statement_like.options:
        option_source = statement_like

    options: list[ProposedOption] = []
    if option_source is not None:
        for opt in option_source.options:
            computed = opt.savings_mismatch(current.total_monthly_cost)
            if computed is not None:
                warnings.append(
                    f"Stated monthly savings {opt.monthly_savings:,.2f} for "
                    f"{opt.kind.replace('_', ' ')} differs from computed {computed:,.2f}"
                )
            options.append(opt.with_savings(current.total_monthly_cost))
        for name in option_source.defaults_used:
            warnings.append(f"Default value used for {name.replace('_', ' ')}")

    if pricing is None and pricing_failure and statement_like is not None:
        warnings.append(
            f"Pricing spreadsheet extraction failed ({pricing_failure}); using statement data only"
        )

    seen: list[str] = []
    for label in document_types_seen:
        if label not in seen:
            seen.append(label)

    confidence = _mean([r.confidence for r in contributing])
    log_event(
        logger,
        "merge.complete",
        has_pricing=pricing is not None,
        has_statement=statement is not None,
        page_count=len(page_results or []),
        option_count=len(options),
        warning_count=len(warnings),
        confidence=round(confidence, 1),
    )
    return MergedResult(
        current=current,
        options=options,
        document_types_seen=seen,
        warnings=warnings,
        confidence=int(round(confidence)),
    )


def finalize(merged: MergedResult, outcome: ValidationOutcome) -> MergedResult:
    """Attach validator findings: warnings, status and the confidence penalty."""
    penalty = 10 * len(outcome.warnings)
    return replace(
        merged,
        warnings=[*merged.warnings, *outcome.warnings],
        status=outcome.status,
        confidence=int(clamp(merged.confidence - penalty, 0, 100)),
    )
