from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime

from statement_intake.core.numbers import parse_number
from statement_intake.modules.extraction.records import (
    CardBreakdown,
    CurrentStateRecord,
    DualPricingOption,
    FeeBreakdown,
    InterchangePlusOption,
    StructuredRecord,
)

# Fallbacks for proposal terms the layout does not always print.
DEFAULT_DUAL_PRICING_MONTHLY_FEE = 64.95
DEFAULT_PROPOSED_RATE_PERCENT = 2.0
DEFAULT_PROPOSED_PER_ITEM_FEE = 0.15
DEFAULT_ON_FILE_FEE = 9.95

BRAND_WINDOW_CHARS = 500

# Labels that only appear on proposals; without one of them no option is built.
PROPOSAL_ANCHORS = frozenset(
    {
        "proposed_rate",
        "proposed_per_item_fee",
        "proposed_total",
        "on_file_fee",
        "dual_pricing_monthly_fee",
        "monthly_savings",
        "savings_percent",
        "yearly_savings",
    }
)

_MERCHANT_PATTERNS = (
    r"Prepared For:\s*(.+?)(?:\n|$)",
    r"Statement for:\s*(.+?)(?:\n|$)",
)

_AGENT_PATTERNS = (
    r"Prepared By:\s*(.+?)(?:\n|$)",
    r"Account Executive:\s*(.+?)(?:\n|$)",
)

_BRAND_ANCHORS: dict[str, tuple[str, ...]] = {
    "visa": (r"VS\s+Interchange", r"Visa\s+Interchange"),
    "mastercard": (r"MC\s+Interchange", r"Mastercard\s+Interchange"),
    "discover": (r"Discover",),
    "amex": (r"American\s*Express", r"Amex"),
}

_ITEM_FEE_PREFIX = {
    "visa": r"(?:VS|Visa)",
    "mastercard": r"(?:MC|Mastercard)",
    "discover": r"Discover",
    "amex": r"(?:Amex|American\s*Express)",
}

_VOLUME_RATE_COST_RE = re.compile(r"\$?([\d,]+\.?\d*)\s+(\d+\.?\d*)%\s+\$?([\d,]+\.?\d*)")

_FEE_LINES: tuple[tuple[str, str, str], ...] = (
    ("statement_fee", "monthly_fee", r"Statement\s+Fee\s+\$?([\d,]+\.?\d*)"),
    ("pci_fee", "pci_fee", r"(?:Non\s*PCI|PCI\s+(?:Non-?)?Compliance)\s+\$?([\d,]+\.?\d*)"),
    ("credit_passthrough", "credit_passthrough", r"Credit\s+Pass-?through\s+\$?([\d,]+\.?\d*)"),
    (
        "batch_fee",
        "batch_fee",
        r"(?:Batch\s+Header|Settlement/Batch\s+Fees?)\s+\$?([\d,]+\.?\d*)",
    ),
    ("other_fees", "other", r"Other\s+Fees\s+\$?([\d,]+\.?\d*)"),
)

_DUAL_PRICING_INDICATORS = (
    r"Dual\s+Pricing\s+Monthly",
    r"0\.00%.*TOTAL:.*\$0\.00",
    r"Merchant\s+Discount\s+Rate.*0\.00%",
)


@dataclass(frozen=True)
class HeuristicResult:
    record: StructuredRecord
    matched_anchors: frozenset[str]
    defaults_used: tuple[str, ...]

    @property
    def proposal_type(self) -> str | None:
        return self.record.proposal_type

    @property
    def agent_name(self) -> str | None:
        return self.record.current.agent_name

    @property
    def prepared_date(self) -> date | None:
        return self.record.current.prepared_date

    @property
    def found_proposal(self) -> bool:
        return bool(self.matched_anchors & PROPOSAL_ANCHORS)

    @property
    def found_anything(self) -> bool:
        return bool(self.matched_anchors)


class _Scan:
    def __init__(self, text: str):
        self.text = text
        self.matched: set[str] = set()
        self.defaults: list[str] = []

    def find(self, anchor: str, patterns: tuple[str, ...] | str) -> str | None:
        if isinstance(patterns, str):
            patterns = (patterns,)
        for pattern in patterns:
            value = _find(pattern, self.text)
            if value:
                self.matched.add(anchor)
                return value
        return None

    def number(self, anchor: str, pattern: str) -> float | None:
        raw = self.find(anchor, pattern)
        return parse_number(raw) if raw is not None else None

    def number_or_default(self, anchor: str, pattern: str, default: float) -> float:
        value = self.number(anchor, pattern)
        if value is None:
            self.defaults.append(anchor)
            return default
        return value


def parse_heuristic(text: str) -> HeuristicResult:
    """Deterministic extraction for the legacy statement/proposal layout.

    Every field is located through an ordered list of label patterns where the first
    match wins. Proposal terms are only read when a proposal label is present, so a
    plain statement yields no proposed option. Documents from other families yield
    zeros and no matched anchors.
    """
    scan = _Scan(text or "")

    cards = {brand: _card_data(scan, brand) for brand in _BRAND_ANCHORS}
    cards["debit"] = CardBreakdown()

    fees = FeeBreakdown()
    for anchor, attr, pattern in _FEE_LINES:
        value = scan.number(anchor, pattern)
        if value is not None:
            setattr(fees, attr, value)

    processing = scan.number(
        "total_processing_fees", r"TOTAL\s+PROCESSING\s+FEES:\s+\$?([\d,]+\.?\d*)"
    )
    if processing is not None:
        fees.processor_markup = processing

    current = CurrentStateRecord(
        merchant_name=scan.find("merchant", _MERCHANT_PATTERNS),
        agent_name=scan.find("agent", _AGENT_PATTERNS),
        prepared_date=_prepared_date(scan),
        total_volume=sum(c.volume for c in cards.values()),
        total_transactions=sum(c.transaction_count for c in cards.values()),
        card_breakdown=cards,
        fees=fees,
        total_monthly_cost=fees.present_total(),
    )

    dual = any(re.search(p, scan.text, re.I) for p in _DUAL_PRICING_INDICATORS)
    record = StructuredRecord(current=current, source="heuristic")
    if dual:
        record.dual_pricing = _dual_pricing_option(scan, current)
    else:
        option = _interchange_plus_option(scan, current)
        if scan.matched & PROPOSAL_ANCHORS:
            record.interchange_plus = option
        else:
            scan.defaults.clear()

    data_anchors = {a for a in scan.matched if a not in {"merchant", "agent", "prepared_date"}}
    record.confidence = min(90.0, 30.0 + 8.0 * len(data_anchors)) if data_anchors else 0.0
    record.defaults_used = list(scan.defaults)
    if not scan.matched:
        record.notes.append("No known statement labels found")

    return HeuristicResult(
        record=record,
        matched_anchors=frozenset(scan.matched),
        defaults_used=tuple(scan.defaults),
    )


def _card_data(scan: _Scan, brand: str) -> CardBreakdown:
    card = CardBreakdown()
    for pattern in _BRAND_ANCHORS[brand]:
        m = re.search(pattern, scan.text, re.I)
        if not m:
            continue
        window = scan.text[m.start() : m.start() + BRAND_WINDOW_CHARS]
        triple = _VOLUME_RATE_COST_RE.search(window)
        if triple:
            card.volume = parse_number(triple.group(1))
            card.rate_percent = parse_number(triple.group(2))
            card.total_cost = parse_number(triple.group(3))
            scan.matched.add(f"brand:{brand}")
            break

    fee_re = rf"{_ITEM_FEE_PREFIX[brand]}\s+Item\s+Fee\s+\$?([\d.]+)\s+([\d,]+)\s+\$?([\d.]+)"
    m = re.search(fee_re, scan.text, re.I)
    if m:
        card.per_transaction_fee = parse_number(m.group(1))
        card.transaction_count = parse_number(m.group(2))
        scan.matched.add(f"item_fee:{brand}")
    return card


def _savings(scan: _Scan) -> tuple[float | None, float | None, float | None]:
    monthly = scan.number(
        "monthly_savings",
        r"Estimated\s+Monthly\s+(?:Processing\s+)?Savings\s+(?:over\s+IC\s+)?\$?([\d,]+\.?\d*)",
    )
    percent = scan.number(
        "savings_percent",
        r"Estimated\s+Percentage\s+of\s+Monthly\s+Savings\s+(?:over\s+IC\s+)?([\d.]+)%",
    )
    yearly = scan.number(
        "yearly_savings",
        r"Estimated\s+Yearly\s+(?:Processing\s+)?Savings\s+(?:over\s+IC\s+)?\$?([\d,]+\.?\d*)",
    )
    if yearly is None and monthly is not None:
        yearly = monthly * 12
    return monthly, percent, yearly


def _dual_pricing_option(scan: _Scan, current: CurrentStateRecord) -> DualPricingOption:
    monthly_fee = scan.number_or_default(
        "dual_pricing_monthly_fee",
        r"Dual\s+Pricing\s+Monthly\s+\$?([\d,]+\.?\d*)",
        DEFAULT_DUAL_PRICING_MONTHLY_FEE,
    )
    monthly, percent, yearly = _savings(scan)
    option = DualPricingOption(
        merchant_rate_percent=0.0,
        per_transaction_fee=0.0,
        monthly_program_fee=monthly_fee,
        total_monthly_cost=monthly_fee,
        monthly_savings=monthly,
        annual_savings=yearly,
        savings_percent=percent,
    )
    return option.with_savings(current.total_monthly_cost)


def _interchange_plus_option(scan: _Scan, current: CurrentStateRecord) -> InterchangePlusOption:
    rate = scan.number_or_default(
        "proposed_rate", r"Proposed.*?(\d+\.?\d*)%", DEFAULT_PROPOSED_RATE_PERCENT
    )
    per_item = scan.number_or_default(
        "proposed_per_item_fee",
        r"\$?(0\.\d+)\s+\d+\s+\$?[\d.]+.*?Proposed",
        DEFAULT_PROPOSED_PER_ITEM_FEE,
    )
    proposed_total = scan.number(
        "proposed_total", r"TOTAL:\s+\$?([\d,]+\.?\d*).*?(?:On\s+File|Statement)"
    )
    on_file = scan.number_or_default(
        "on_file_fee", r"On\s+File\s+Fee\s+\$?([\d,]+\.?\d*)", DEFAULT_ON_FILE_FEE
    )
    passthrough = current.fees.credit_passthrough or 0.0

    if proposed_total:
        total = proposed_total + on_file + passthrough
    else:
        total = (
            current.total_volume * rate / 100
            + current.total_transactions * per_item
            + on_file
            + passthrough
        )

    monthly, percent, yearly = _savings(scan)
    option = InterchangePlusOption(
        discount_rate_percent=rate,
        per_transaction_fee=per_item,
        monthly_fees=on_file,
        total_monthly_cost=total,
        monthly_savings=monthly,
        annual_savings=yearly,
        savings_percent=percent,
    )
    return option.with_savings(current.total_monthly_cost)


def _prepared_date(scan: _Scan) -> date | None:
    for pattern, fmt in (
        (r"(\d{1,2}/\d{1,2}/\d{4})\s+\d{1,2}:\d{2}", "%m/%d/%Y"),
        (r"(\d{1,2}/\d{1,2}/\d{4})", "%m/%d/%Y"),
        (r"(\d{4}-\d{2}-\d{2})", "%Y-%m-%d"),
    ):
        raw = _find(pattern, scan.text)
        if not raw:
            continue
        try:
            parsed = datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
        scan.matched.add("prepared_date")
        return parsed
    return None


def _find(pattern: str, text: str) -> str | None:
    m = re.search(pattern, text, re.I)
    if not m:
        return None
    value = m.group(1).strip()
    return value or None
