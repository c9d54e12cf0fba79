from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any

CARD_BRANDS: tuple[str, ...] = ("visa", "mastercard", "discover", "amex", "debit")

FEE_FIELDS: tuple[str, ...] = (
    "interchange",
    "assessments",
    "processor_markup",
    "monthly_fee",
    "pci_fee",
    "batch_fee",
    "credit_passthrough",
    "other",
)

# Who and when: resolved first-non-null across sources, never summed.
IDENTITY_FIELDS: tuple[str, ...] = (
    "merchant_name",
    "processor_name",
    "statement_period",
    "agent_name",
    "prepared_date",
)

_FEE_KEYS = {
    "interchange": "interchange",
    "assessments": "assessments",
    "processor_markup": "processorMarkup",
    "monthly_fee": "monthlyFee",
    "pci_fee": "pciFee",
    "batch_fee": "batchFee",
    "credit_passthrough": "creditPassthrough",
    "other": "otherFees",
}


class DocumentType(str, enum.Enum):
    PROCESSING_STATEMENT = "processing_statement"
    PRICING_SPREADSHEET_INTERCHANGE = "pricing_spreadsheet_interchange"
    PRICING_SPREADSHEET_DUAL_PRICING = "pricing_spreadsheet_dual_pricing"
    PRICING_SPREADSHEET_MIXED = "pricing_spreadsheet_mixed"
    PROPOSAL_DOCUMENT = "proposal_document"
    UNKNOWN = "unknown"

    @property
    def is_pricing_spreadsheet(self) -> bool:
        return self.value.startswith("pricing_spreadsheet")

    @classmethod
    def from_label(cls, label: object) -> DocumentType:
        if not isinstance(label, str):
            return cls.UNKNOWN
        norm = label.strip().lower().replace("-", "_").replace(" ", "_")
        if norm == "proposal_pdf":
            return cls.PROPOSAL_DOCUMENT
        for member in cls:
            if member.value == norm:
                return member
        return cls.UNKNOWN


class PageTypeHint(str, enum.Enum):
    SUMMARY = "summary"
    DETAIL = "detail"
    FEE_BREAKDOWN = "fee_breakdown"
    OTHER = "other"

    @classmethod
    def from_label(cls, label: object) -> PageTypeHint:
        if isinstance(label, str):
            norm = label.strip().lower().replace("-", "_").replace(" ", "_")
            for member in cls:
                if member.value == norm:
                    return member
            if norm in {"fees", "fee", "fee_summary"}:
                return cls.FEE_BREAKDOWN
        return cls.OTHER


class ResultStatus(str, enum.Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    NEEDS_REVIEW = "needs_review"


@dataclass(frozen=True)
class UploadedFile:
    path: str
    mime_type: str
    display_name: str


@dataclass(frozen=True)
class Classification:
    file: UploadedFile
    document_type: DocumentType
    confidence: int
    summary: str


@dataclass
class CardBreakdown:
    volume: float = 0.0
    transaction_count: float = 0.0
    rate_percent: float | None = None
    per_transaction_fee: float | None = None
    total_cost: float | None = None

    def is_empty(self) -> bool:
        return (
            not self.volume
            and not self.transaction_count
            and self.rate_percent is None
            and self.per_transaction_fee is None
            and self.total_cost is None
        )

    def to_dict(self) -> dict[str, float]:
        return {
            "volume": self.volume,
            "transactionCount": self.transaction_count,
            "ratePercent": self.rate_percent or 0.0,
            "perTransactionFee": self.per_transaction_fee or 0.0,
            "totalCost": self.total_cost or 0.0,
        }


@dataclass
class FeeBreakdown:
    interchange: float | None = None
    assessments: float | None = None
    processor_markup: float | None = None
    monthly_fee: float | None = None
    pci_fee: float | None = None
    batch_fee: float | None = None
    credit_passthrough: float | None = None
    other: float | None = None

    def present(self) -> dict[str, float]:
        out: dict[str, float] = {}
        for name in FEE_FIELDS:
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        return out

    def present_total(self) -> float:
        return sum(self.present().values())

    def to_dict(self) -> dict[str, float]:
        return {_FEE_KEYS[name]: getattr(self, name) or 0.0 for name in FEE_FIELDS}


def _empty_cards() -> dict[str, CardBreakdown]:
    return {brand: CardBreakdown() for brand in CARD_BRANDS}


@dataclass
class CurrentStateRecord:
    merchant_name: str | None = None
    processor_name: str | None = None
    statement_period: str | None = None
    agent_name: str | None = None
    prepared_date: date | None = None
    total_volume: float = 0.0
    total_transactions: float = 0.0
    card_breakdown: dict[str, CardBreakdown] = field(default_factory=_empty_cards)
    fees: FeeBreakdown = field(default_factory=FeeBreakdown)
    total_monthly_cost: float = 0.0
    # The document's own "total fees" line, kept for reconciliation against `fees`.
    stated_total_fees: float | None = None

    @property
    def avg_ticket(self) -> float:
        if self.total_transactions > 0:
            return self.total_volume / self.total_transactions
        return 0.0

    @property
    def effective_rate_percent(self) -> float:
        if self.total_volume > 0:
            return self.total_monthly_cost / self.total_volume * 100
        return 0.0

    def card(self, brand: str) -> CardBreakdown:
        return self.card_breakdown.get(brand) or CardBreakdown()

    def has_data(self) -> bool:
        return bool(
            self.total_volume
            or self.total_transactions
            or self.total_monthly_cost
            or any(not c.is_empty() for c in self.card_breakdown.values())
            or self.fees.present()
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "merchantName": self.merchant_name,
            "processorName": self.processor_name,
            "statementPeriod": self.statement_period,
            "agentName": self.agent_name,
            "preparedDate": self.prepared_date.isoformat() if self.prepared_date else None,
            "totalVolume": round(self.total_volume, 2),
            "totalTransactions": self.total_transactions,
            "avgTicket": round(self.avg_ticket, 2),
            "cardBreakdown": {brand: self.card(brand).to_dict() for brand in CARD_BRANDS},
            "fees": self.fees.to_dict(),
            "totalMonthlyCost": round(self.total_monthly_cost, 2),
            "effectiveRatePercent": round(self.effective_rate_percent, 4),
        }


@dataclass
class ProposedOption:
    """Savings projection shared by both pricing models.

    Savings fields stay None until stated by a document or derived from the current
    monthly cost with `with_savings`. Derived savings are recomputed whenever
    `with_savings` sees a new current total; stated ones are kept.
    """

    total_monthly_cost: float = 0.0
    monthly_savings: float | None = None
    annual_savings: float | None = None
    savings_percent: float | None = None
    savings_derived: bool = field(default=False, compare=False)

    kind = "proposed"

    def with_savings(self, current_total: float) -> ProposedOption:
        derived = self.savings_derived or self.monthly_savings is None
        if derived:
            monthly = current_total - self.total_monthly_cost
            annual = monthly * 12
            percent = monthly / current_total * 100 if current_total > 0 else 0.0
        else:
            monthly = self.monthly_savings or 0.0
            annual = self.annual_savings if self.annual_savings is not None else monthly * 12
            percent = self.savings_percent
            if percent is None:
                percent = monthly / current_total * 100 if current_total > 0 else 0.0
        return replace(
            self,
            monthly_savings=monthly,
            annual_savings=annual,
            savings_percent=percent,
            savings_derived=derived,
        )

    def savings_mismatch(self, current_total: float) -> float | None:
        """Computed monthly savings when a stated figure disagrees with it, else None."""
        if self.savings_derived or self.monthly_savings is None:
            return None
        if current_total <= 0 or self.total_monthly_cost <= 0:
            return None
        computed = current_total - self.total_monthly_cost
        if math.isclose(self.monthly_savings, computed, rel_tol=0.01, abs_tol=1.0):
            return None
        return computed

    def _savings_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "totalMonthlyCost": round(self.total_monthly_cost, 2),
            "monthlySavings": round(self.monthly_savings or 0.0, 2),
            "annualSavings": round(self.annual_savings or 0.0, 2),
            "savingsPercent": round(self.savings_percent or 0.0, 2),
        }

    def to_dict(self) -> dict[str, Any]:
        return self._savings_dict()


@dataclass
class InterchangePlusOption(ProposedOption):
    discount_rate_percent: float = 0.0
    per_transaction_fee: float = 0.0
    monthly_fees: float = 0.0

    kind = "interchange_plus"

    def to_dict(self) -> dict[str, Any]:
        out = self._savings_dict()
        out.update(
            {
                "discountRatePercent": self.discount_rate_percent,
                "perTransactionFee": self.per_transaction_fee,
                "monthlyFees": self.monthly_fees,
            }
        )
        return out


@dataclass
class DualPricingOption(ProposedOption):
    merchant_rate_percent: float = 0.0
    per_transaction_fee: float = 0.0
    monthly_program_fee: float = 0.0

    kind = "dual_pricing"

    def to_dict(self) -> dict[str, Any]:
        out = self._savings_dict()
        out.update(
            {
                "merchantRatePercent": self.merchant_rate_percent,
                "perTransactionFee": self.per_transaction_fee,
                "monthlyProgramFee": self.monthly_program_fee,
            }
        )
        return out


@dataclass
class StructuredRecord:
    """Typed extraction result; the only shape extracted data takes inside the pipeline."""

    current: CurrentStateRecord = field(default_factory=CurrentStateRecord)
    interchange_plus: InterchangePlusOption | None = None
    dual_pricing: DualPricingOption | None = None
    page_type_hint: PageTypeHint | None = None
    notes: list[str] = field(default_factory=list)
    confidence: float = 50.0
    source: str = "ai"
    defaults_used: list[str] = field(default_factory=list)
    # Findings to surface on the job result, e.g. reconciliation choices.
    warnings: list[str] = field(default_factory=list)

    @property
    def merchant_name(self) -> str | None:
        return self.current.merchant_name

    @property
    def processor_name(self) -> str | None:
        return self.current.processor_name

    @property
    def statement_period(self) -> str | None:
        return self.current.statement_period

    @property
    def proposal_type(self) -> str | None:
        options = self.options
        return options[0].kind if options else None

    @property
    def options(self) -> list[ProposedOption]:
        out: list[ProposedOption] = []
        if self.interchange_plus is not None:
            out.append(self.interchange_plus)
        if self.dual_pricing is not None:
            out.append(self.dual_pricing)
        return out

    @classmethod
    def failed(cls, note: str) -> StructuredRecord:
        return cls(notes=[note], confidence=0.0)


@dataclass
class PageExtractionResult:
    page_index: int
    success: bool
    data: StructuredRecord | None = None
    page_type_hint: PageTypeHint | None = None
    error: str | None = None
    attempts: int = 0


@dataclass
class MergedResult:
    current: CurrentStateRecord
    options: list[ProposedOption] = field(default_factory=list)
    document_types_seen: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    status: ResultStatus = ResultStatus.SUCCESS
    confidence: int = 0

    def to_dict(self) -> dict[str, Any]:
        out = self.current.to_dict()
        out.update(
            {
                "proposalType": self.options[0].kind if self.options else None,
                "proposedOptions": [opt.to_dict() for opt in self.options],
                "documentTypesSeen": list(self.document_types_seen),
                "warnings": list(self.warnings),
                "status": self.status.value,
                "confidence": self.confidence,
            }
        )
        return out
