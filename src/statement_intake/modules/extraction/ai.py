from __future__ import annotations

import json
import math
from datetime import date
from typing import Any

from statement_intake.core.logging import get_logger, log_event
from statement_intake.core.numbers import clamp, parse_number, parse_optional_number
from statement_intake.modules.extraction.capability import (
    DocumentPart,
    ExtractionCapability,
    ImagePart,
    Part,
    TextPart,
)
from statement_intake.modules.extraction.decoders import DecodedContent, render_sheets
from statement_intake.modules.extraction.errors import ExtractionError
from statement_intake.modules.extraction.parsers.legacy_statement import HeuristicResult
from statement_intake.modules.extraction.records import (
    CARD_BRANDS,
    FEE_FIELDS,
    IDENTITY_FIELDS,
    CardBreakdown,
    CurrentStateRecord,
    DualPricingOption,
    FeeBreakdown,
    InterchangePlusOption,
    PageTypeHint,
    ProposedOption,
    StructuredRecord,
)

logger = get_logger(__name__)

_CURRENT_STATE_SHAPE = """  "merchantName": "Business name or null",
  "processorName": "Current processor or null",
  "statementPeriod": "e.g. 2024-03 or March 2024, or null",
  "currentState": {
    "totalVolume": 50000,
    "totalTransactions": 500,
    "totalFees": 1500,
    "statedTotalFees": 1500,
    "cardBreakdown": {
      "visa": { "volume": 25000, "transactions": 250, "rate": 2.5, "perItemFee": 0.10, "cost": 625 },
      "mastercard": { "volume": 15000, "transactions": 150, "rate": 2.6, "perItemFee": 0.10, "cost": 390 },
      "discover": { "volume": 5000, "transactions": 50, "rate": 2.7, "perItemFee": 0.10, "cost": 135 },
      "amex": { "volume": 5000, "transactions": 50, "rate": 3.5, "perItemFee": 0.10, "cost": 175 },
      "debit": { "volume": 0, "transactions": 0, "rate": null, "perItemFee": null, "cost": null }
    },
    "fees": {
      "interchange": 800,
      "assessments": 100,
      "processorMarkup": 400,
      "monthlyFees": 50,
      "pciFees": 30,
      "batchFees": 10,
      "creditPassthrough": null,
      "otherFees": 20
    }
  },"""

_NUMBER_RULES = """- Extract ACTUAL numbers from the document, not the example values above
- Numbers must be plain JSON numbers (no $, %, or thousands separators)
- Use null for any card or fee field that is not shown; never invent values
- totalFees is everything the merchant paid this period; statedTotalFees is the total fee
  line exactly as printed (null if the document has none)
- Synonyms: "discount fees"/"processing fees" are markup; "dues and assessments" are
  assessments; "statement fee"/"account fee"/"monthly service" are monthlyFees;
  "non-compliance"/"PCI" are pciFees; "batch"/"settlement" are batchFees"""

PRICING_EXTRACTION_PROMPT = f"""Extract ALL pricing and financial data from this document. This is a pricing comparison spreadsheet or proposal.

Return ONLY valid JSON (no markdown, no explanation):
{{
  "proposalType": "interchange_plus or dual_pricing or both",
  "agentName": "Agent who prepared the proposal, or null",
  "preparedDate": "YYYY-MM-DD or null",
{_CURRENT_STATE_SHAPE}
  "interchangePlus": {{
    "discountRate": 0.25,
    "perTransactionFee": 0.10,
    "monthlyFees": 50,
    "totalMonthlyCost": 500,
    "monthlySavings": 1000,
    "annualSavings": 12000
  }},
  "dualPricing": {{
    "merchantRate": 0.00,
    "perTransactionFee": 0.10,
    "monthlyProgramFee": 49.95,
    "totalMonthlyCost": 49.95,
    "monthlySavings": 1450,
    "annualSavings": 17400
  }},
  "extractionNotes": ["Notes about what was found/missing"],
  "confidence": 90
}}

CRITICAL:
{_NUMBER_RULES}
- If only one pricing option is present, only include that section
- Look at ALL pages/sheets"""

STATEMENT_EXTRACTION_PROMPT = f"""Extract the current processing costs from this merchant processing statement.

Return ONLY valid JSON (no markdown, no explanation):
{{
{_CURRENT_STATE_SHAPE}
  "extractionNotes": ["Notes about what was found/missing"],
  "confidence": 90
}}

CRITICAL:
{_NUMBER_RULES}
- Use the statement's summary section for totals when one exists"""

PAGE_EXTRACTION_PROMPT = f"""This is ONE page of a longer merchant processing statement. Extract only what is printed on this page.

Return ONLY valid JSON (no markdown, no explanation):
{{
  "pageType": "summary | detail | fee_breakdown | other",
{_CURRENT_STATE_SHAPE}
  "extractionNotes": ["Notes about what was found/missing"],
  "confidence": 90
}}

CRITICAL:
{_NUMBER_RULES}
- pageType is "summary" when the page shows statement-wide totals, "detail" for per-card
  or per-transaction sections, "fee_breakdown" for itemized fee listings, else "other"
- Leave totals at 0 when this page does not print them"""

_CARD_KEYS = {
    "volume": ("volume", "salesVolume", "amount"),
    "transaction_count": ("transactions", "transactionCount", "count"),
    "rate_percent": ("rate", "ratePercent"),
    "per_transaction_fee": ("perItemFee", "perTransactionFee", "itemFee"),
    "total_cost": ("cost", "totalCost", "fees"),
}

_FEE_KEYS = {
    "interchange": ("interchange", "interchangeFees"),
    "assessments": ("assessments", "duesAndAssessments"),
    "processor_markup": ("processorMarkup", "markup", "discountFees"),
    "monthly_fee": ("monthlyFees", "monthlyFee", "statementFee"),
    "pci_fee": ("pciFees", "pciFee"),
    "batch_fee": ("batchFees", "batchFee"),
    "credit_passthrough": ("creditPassthrough",),
    "other": ("otherFees", "other"),
}


def content_parts(
    content: DecodedContent,
    *,
    file_name: str,
    max_chars: int | None = None,
    max_sheets: int | None = None,
) -> list[Part]:
    if content.kind == "grid":
        text = content.text
        if content.sheets:
            text = render_sheets(content.sheets, max_sheets=max_sheets)
        if max_chars:
            text = text[:max_chars]
        return [TextPart(f"Document Name: {file_name}\n\nSpreadsheet Content:\n{text}")]
    if content.kind == "text":
        text = content.text[:max_chars] if max_chars else content.text
        return [TextPart(f"Document Name: {file_name}\n\nDocument Text:\n{text}")]
    if content.kind == "pdf":
        return [DocumentPart(data=content.body, filename=file_name or "document.pdf")]
    if content.kind == "image":
        return [ImagePart(data=content.body, mime_type=content.mime_type or "image/jpeg")]
    reason = content.reason or "no data"
    raise ExtractionError(f"Cannot extract from {content.kind} content: {reason}")


def extract_structured(
    content: DecodedContent,
    schema_prompt: str,
    capability: ExtractionCapability,
    *,
    file_name: str = "document",
    timeout: float | None = None,
) -> StructuredRecord:
    """Run one schema-constrained extraction and coerce the reply into a StructuredRecord.

    Capability errors propagate to the caller. A reply that holds no JSON object comes
    back as a zero-confidence record carrying a note, never as an exception.
    """
    parts = content_parts(content, file_name=file_name)
    parts.append(TextPart(schema_prompt))
    raw = capability.generate(parts, timeout=timeout)
    return record_from_response(raw, file_name=file_name)


def record_from_response(raw: str, *, file_name: str | None = None) -> StructuredRecord:
    obj = parse_json_object(raw)
    if not isinstance(obj, dict):
        log_event(
            logger,
            "ai.extract.malformed",
            file_name=file_name,
            response_chars=len(raw or ""),
        )
        return StructuredRecord.failed("AI response did not contain a JSON object")
    record = coerce_record(obj)
    log_event(
        logger,
        "ai.extract.success",
        file_name=file_name,
        confidence=record.confidence,
        page_type=record.page_type_hint.value if record.page_type_hint else None,
    )
    return record


def parse_json_object(content: str | None) -> Any:
    c = (content or "").strip()
    if not c:
        return None
    try:
        return json.loads(c)
    except ValueError:
        pass

    # Fallback: the first balanced {...} block, skipping braces inside strings.
    start = c.find("{")
    while start != -1:
        end = _balanced_end(c, start)
        if end is None:
            return None
        try:
            return json.loads(c[start : end + 1])
        except ValueError:
            start = c.find("{", start + 1)
    return None


def _balanced_end(text: str, start: int) -> int | None:
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        ch = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return idx
    return None


def coerce_record(obj: dict[str, Any]) -> StructuredRecord:
    def _dict(value: Any) -> dict[str, Any]:
        return value if isinstance(value, dict) else {}

    def _str(*values: Any) -> str | None:
        for value in values:
            if isinstance(value, str) and value.strip() and value.strip().lower() != "null":
                return value.strip()[:200]
        return None

    def _pick(source: dict[str, Any], keys: tuple[str, ...]) -> Any:
        for key in keys:
            if key in source:
                return source[key]
        return None

    def _date(raw: Any) -> date | None:
        if not isinstance(raw, str):
            return None
        try:
            return date.fromisoformat(raw.strip()[:10])
        except ValueError:
            return None

    def _confidence(raw: Any) -> float:
        if raw is None:
            return 50.0
        value = parse_optional_number(raw)
        if value is None:
            return 50.0
        return clamp(value, 0.0, 100.0)

    state = _dict(obj.get("currentState"))
    merchant_info = _dict(obj.get("merchantInfo"))

    cards: dict[str, CardBreakdown] = {}
    raw_cards = _dict(state.get("cardBreakdown"))
    for brand in CARD_BRANDS:
        raw_card = _dict(raw_cards.get(brand))
        cards[brand] = CardBreakdown(
            volume=parse_number(_pick(raw_card, _CARD_KEYS["volume"])),
            transaction_count=parse_number(_pick(raw_card, _CARD_KEYS["transaction_count"])),
            rate_percent=parse_optional_number(_pick(raw_card, _CARD_KEYS["rate_percent"])),
            per_transaction_fee=parse_optional_number(
                _pick(raw_card, _CARD_KEYS["per_transaction_fee"])
            ),
            total_cost=parse_optional_number(_pick(raw_card, _CARD_KEYS["total_cost"])),
        )

    fees = FeeBreakdown()
    raw_fees = _dict(state.get("fees"))
    for name in FEE_FIELDS:
        setattr(fees, name, parse_optional_number(_pick(raw_fees, _FEE_KEYS[name])))

    current = CurrentStateRecord(
        merchant_name=_str(
            obj.get("merchantName"), state.get("merchantName"), merchant_info.get("name")
        ),
        processor_name=_str(obj.get("processorName"), merchant_info.get("processor")),
        statement_period=_str(obj.get("statementPeriod"), merchant_info.get("statementPeriod")),
        agent_name=_str(obj.get("agentName"), merchant_info.get("agentName")),
        prepared_date=_date(obj.get("preparedDate")),
        total_volume=parse_number(state.get("totalVolume")),
        total_transactions=parse_number(state.get("totalTransactions")),
        card_breakdown=cards,
        fees=fees,
        total_monthly_cost=parse_number(
            state.get("totalFees") if "totalFees" in state else state.get("totalMonthlyCost")
        ),
        stated_total_fees=parse_optional_number(state.get("statedTotalFees")),
    )

    record = StructuredRecord(current=current, source="ai")

    ic = obj.get("interchangePlus")
    if isinstance(ic, dict) and ic:
        record.interchange_plus = InterchangePlusOption(
            discount_rate_percent=parse_number(ic.get("discountRate")),
            per_transaction_fee=parse_number(ic.get("perTransactionFee")),
            monthly_fees=parse_number(ic.get("monthlyFees")),
            total_monthly_cost=parse_number(ic.get("totalMonthlyCost")),
            monthly_savings=parse_optional_number(ic.get("monthlySavings")),
            annual_savings=parse_optional_number(ic.get("annualSavings")),
            savings_percent=parse_optional_number(ic.get("savingsPercent")),
        ).with_savings(current.total_monthly_cost)

    dp = obj.get("dualPricing")
    if isinstance(dp, dict) and dp:
        record.dual_pricing = DualPricingOption(
            merchant_rate_percent=parse_number(dp.get("merchantRate")),
            per_transaction_fee=parse_number(dp.get("perTransactionFee")),
            monthly_program_fee=parse_number(dp.get("monthlyProgramFee")),
            total_monthly_cost=parse_number(dp.get("totalMonthlyCost")),
            monthly_savings=parse_optional_number(dp.get("monthlySavings")),
            annual_savings=parse_optional_number(dp.get("annualSavings")),
            savings_percent=parse_optional_number(dp.get("savingsPercent")),
        ).with_savings(current.total_monthly_cost)

    if "pageType" in obj:
        record.page_type_hint = PageTypeHint.from_label(obj.get("pageType"))

    notes = obj.get("extractionNotes")
    if isinstance(notes, list):
        record.notes = [n.strip()[:300] for n in notes[:20] if isinstance(n, str) and n.strip()]

    record.confidence = _confidence(obj.get("confidence"))
    return record


_FEE_ANCHORS = {
    "monthly_fee": "statement_fee",
    "pci_fee": "pci_fee",
    "credit_passthrough": "credit_passthrough",
    "batch_fee": "batch_fee",
    "other": "other_fees",
    "processor_markup": "total_processing_fees",
}

_IC_DEFAULTS = frozenset({"proposed_rate", "proposed_per_item_fee", "on_file_fee"})
_DP_DEFAULTS = frozenset({"dual_pricing_monthly_fee"})


def _brands_with(state: CurrentStateRecord, attr: str) -> set[str]:
    return {brand for brand in CARD_BRANDS if (getattr(state.card(brand), attr) or 0) > 0}


def _covers(anchors: frozenset[str], prefix: str, ai_brands: set[str]) -> bool:
    matched = {a.split(":", 1)[1] for a in anchors if a.startswith(prefix)}
    return bool(matched) and bool(ai_brands) and ai_brands <= matched


class _TotalsReconciler:
    """Chooses statement-wide totals between the label sums and the AI reading.

    Label sums only stand for the whole statement when their anchors cover it; a partial
    sum is a lower bound, so otherwise the larger of the two readings is kept.
    """

    def __init__(self) -> None:
        self.warnings: list[str] = []

    def pick(self, label: str, labelled: float, ai: float, *, complete: bool) -> float:
        if (complete and labelled) or labelled > ai:
            kept, kept_from, dropped, dropped_from = labelled, "document labels", ai, "AI reading"
        else:
            kept, kept_from, dropped, dropped_from = ai, "AI reading", labelled, "document labels"

        if kept and dropped and not math.isclose(kept, dropped, rel_tol=1e-6, abs_tol=0.005):
            self.warnings.append(
                f"Reconciled {label}: kept {kept:,.2f} from {kept_from}, "
                f"discarded {dropped:,.2f} from {dropped_from}"
            )
            log_event(
                logger,
                "reconcile.conflict",
                field=label,
                kept=kept,
                kept_source=kept_from,
                discarded=dropped,
                discarded_source=dropped_from,
            )
        return kept


def reconcile(heuristic: HeuristicResult, ai: StructuredRecord) -> StructuredRecord:
    """Combine the deterministic and AI readings of one document.

    A per-brand or per-fee heuristic value wins when its own label anchor matched and the
    value is non-zero; the AI record fills every remaining gap. Statement-wide totals
    come from the labels only when the matched anchors cover the whole statement (every
    brand the AI saw, or the printed processing-fee total). Heuristic proposal terms
    lose to any option the AI found unless the document carried proposal labels.
    """
    h = heuristic.record
    anchors = heuristic.matched_anchors

    def _prefer(h_value: float | None, a_value: float | None, anchor: str) -> float | None:
        if anchor in anchors and h_value:
            return h_value
        return a_value if a_value is not None else h_value

    cards: dict[str, CardBreakdown] = {}
    for brand in CARD_BRANDS:
        hc = h.current.card(brand)
        ac = ai.current.card(brand)
        vol_anchor = f"brand:{brand}"
        fee_anchor = f"item_fee:{brand}"
        cards[brand] = CardBreakdown(
            volume=_prefer(hc.volume, ac.volume, vol_anchor) or 0.0,
            transaction_count=_prefer(hc.transaction_count, ac.transaction_count, fee_anchor)
            or 0.0,
            rate_percent=_prefer(hc.rate_percent, ac.rate_percent, vol_anchor),
            per_transaction_fee=_prefer(
                hc.per_transaction_fee, ac.per_transaction_fee, fee_anchor
            ),
            total_cost=_prefer(hc.total_cost, ac.total_cost, vol_anchor),
        )

    fees = FeeBreakdown()
    for name in FEE_FIELDS:
        h_fee = getattr(h.current.fees, name)
        a_fee = getattr(ai.current.fees, name)
        setattr(fees, name, _prefer(h_fee, a_fee, _FEE_ANCHORS.get(name, "")))

    hs, ais = h.current, ai.current
    totals = _TotalsReconciler()
    current = CurrentStateRecord(
        card_breakdown=cards,
        fees=fees,
        total_volume=totals.pick(
            "total volume",
            hs.total_volume,
            ais.total_volume,
            complete=_covers(anchors, "brand:", _brands_with(ais, "volume")),
        ),
        total_transactions=totals.pick(
            "total transactions",
            hs.total_transactions,
            ais.total_transactions,
            complete=_covers(anchors, "item_fee:", _brands_with(ais, "transaction_count")),
        ),
        total_monthly_cost=totals.pick(
            "total monthly cost",
            hs.total_monthly_cost,
            ais.total_monthly_cost,
            complete="total_processing_fees" in anchors,
        ),
        stated_total_fees=ais.stated_total_fees,
    )
    for name in IDENTITY_FIELDS:
        value = getattr(hs, name)
        setattr(current, name, value if value is not None else getattr(ais, name))

    ic = _pick_option(h.interchange_plus, ai.interchange_plus, heuristic.found_proposal)
    dp = _pick_option(h.dual_pricing, ai.dual_pricing, heuristic.found_proposal)

    defaults_used: list[str] = []
    if ic is not None and ic is h.interchange_plus:
        defaults_used.extend(d for d in heuristic.defaults_used if d in _IC_DEFAULTS)
    if dp is not None and dp is h.dual_pricing:
        defaults_used.extend(d for d in heuristic.defaults_used if d in _DP_DEFAULTS)

    return StructuredRecord(
        current=current,
        interchange_plus=(
            ic.with_savings(current.total_monthly_cost) if ic is not None else None
        ),
        dual_pricing=dp.with_savings(current.total_monthly_cost) if dp is not None else None,
        notes=[*h.notes, *ai.notes],
        confidence=max(h.confidence, ai.confidence),
        source="reconciled",
        defaults_used=defaults_used,
        warnings=[*h.warnings, *ai.warnings, *totals.warnings],
    )


def _pick_option(
    h_opt: ProposedOption | None, a_opt: ProposedOption | None, terms_found: bool
) -> ProposedOption | None:
    if h_opt is not None and (terms_found or a_opt is None):
        return h_opt
    return a_opt
