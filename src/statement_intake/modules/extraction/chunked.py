from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field

from statement_intake.core.config import Settings, settings
from statement_intake.core.logging import get_logger, log_event, log_exception, monotonic_ms
from statement_intake.modules.extraction.ai import (
    PAGE_EXTRACTION_PROMPT,
    coerce_record,
    parse_json_object,
)
from statement_intake.modules.extraction.capability import (
    DocumentPart,
    ExtractionCapability,
    TextPart,
)
from statement_intake.modules.extraction.decoders import PdfPage, split_pdf_pages
from statement_intake.modules.extraction.errors import (
    CapabilityConfigurationError,
    CapabilityError,
    ChunkedParseError,
)
from statement_intake.modules.extraction.records import PageExtractionResult, PageTypeHint

logger = get_logger(__name__)

TIMEOUT_NOT_PROCESSED = "not processed: total timeout reached"

ProgressCallback = Callable[[int, str], None]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 1.0
    backoff: float = 2.0
    max_delay_s: float = 8.0

    def delay_for(self, failed_attempts: int) -> float:
        # failed_attempts=1 => base, 2 => base*backoff, ... capped at max_delay_s
        return min(self.max_delay_s, self.base_delay_s * self.backoff ** (failed_attempts - 1))


@dataclass(frozen=True)
class ChunkedParserConfig:
    page_timeout_s: float = 45.0
    total_timeout_s: float = 15 * 60.0
    max_pages: int = 50
    skip_failed_pages: bool = True
    min_successful_pages: int = 1
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_settings(cls, cfg: Settings | None = None) -> ChunkedParserConfig:
        cfg = cfg or settings
        return cls(
            page_timeout_s=float(cfg.chunk_page_timeout_seconds),
            total_timeout_s=float(cfg.chunk_total_timeout_seconds),
            max_pages=int(cfg.chunk_max_pages),
            skip_failed_pages=bool(cfg.chunk_skip_failed_pages),
            min_successful_pages=int(cfg.chunk_min_successful_pages),
            retry=RetryPolicy(
                max_attempts=max(1, int(cfg.chunk_max_retries)),
                base_delay_s=float(cfg.chunk_retry_base_delay_seconds),
                max_delay_s=float(cfg.chunk_retry_max_delay_seconds),
            ),
        )


@dataclass
class ChunkedParseResult:
    page_results: list[PageExtractionResult]
    success: bool
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    timed_out: bool = False

    @property
    def successful_pages(self) -> list[PageExtractionResult]:
        return [p for p in self.page_results if p.success]


class _PageFailure(Exception):
    pass


class ChunkedDocumentParser:
    """Page-by-page extraction for PDFs too large to send in one request.

    Pages run sequentially. Each capability call gets the per-page timeout (shortened to
    whatever remains of the total budget), transient capability errors are retried
    under `RetryPolicy`, and pages that still fail are skipped when
    `skip_failed_pages` is set. `clock` and `sleep` are injectable for tests.
    """

    def __init__(
        self,
        capability: ExtractionCapability,
        config: ChunkedParserConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        splitter: Callable[[bytes], list[PdfPage]] = split_pdf_pages,
    ) -> None:
        self._capability = capability
        self._config = config or ChunkedParserConfig.from_settings()
        self._clock = clock
        self._sleep = sleep
        self._splitter = splitter

    def parse(
        self,
        body: bytes,
        per_page_prompt: str = PAGE_EXTRACTION_PROMPT,
        on_progress: ProgressCallback | None = None,
        *,
        file_name: str = "document.pdf",
    ) -> ChunkedParseResult:
        cfg = self._config
        started = self._clock()
        wall_start = time.monotonic()
        last_percent = 0

        def _report(percent: int, message: str) -> None:
            nonlocal last_percent
            last_percent = max(last_percent, min(100, percent))
            if on_progress is not None:
                on_progress(last_percent, message)

        try:
            pages = self._splitter(body)
        except Exception as e:  # noqa: BLE001
            log_exception(logger, "chunked.split.failure", file_name=file_name)
            raise ChunkedParseError(f"Could not split PDF into pages: {e}") from e

        warnings: list[str] = []
        if len(pages) > cfg.max_pages:
            skipped = len(pages) - cfg.max_pages
            warnings.append(
                f"{file_name}: document has {len(pages)} pages; only the first "
                f"{cfg.max_pages} were processed ({skipped} skipped)"
            )
            pages = pages[: cfg.max_pages]

        total = len(pages)
        log_event(logger, "chunked.start", file_name=file_name, page_count=total)
        if total == 0:
            return ChunkedParseResult(
                page_results=[], success=False, warnings=warnings, errors=["PDF has no pages"]
            )
        _report(0, f"Split document into {total} pages")

        results: list[PageExtractionResult] = []
        errors: list[str] = []
        timed_out = False
        for pos, page in enumerate(pages):
            if self._clock() - started >= cfg.total_timeout_s:
                timed_out = True
                break
            result = self._extract_page(page, started, per_page_prompt)
            results.append(result)
            if not result.success:
                message = f"Page {page.index + 1}: {result.error}"
                errors.append(message)
                if not cfg.skip_failed_pages:
                    log_event(
                        logger,
                        "chunked.abort",
                        file_name=file_name,
                        page_index=page.index,
                        attempts=result.attempts,
                    )
                    raise ChunkedParseError(
                        f"Page {page.index + 1} failed after {result.attempts} attempts: "
                        f"{result.error}"
                    )
            _report(int((pos + 1) * 100 / total), f"Processed page {pos + 1} of {total}")

        if timed_out:
            for page in pages[len(results) :]:
                results.append(
                    PageExtractionResult(
                        page_index=page.index, success=False, error=TIMEOUT_NOT_PROCESSED
                    )
                )
            attempted = sum(1 for r in results if r.error != TIMEOUT_NOT_PROCESSED)
            warnings.append(
                f"{file_name}: total timeout of {cfg.total_timeout_s:g}s reached after "
                f"{attempted} of {total} pages; remaining pages were not processed"
            )

        succeeded = sum(1 for r in results if r.success)
        failed = [r for r in results if not r.success and r.error != TIMEOUT_NOT_PROCESSED]
        if failed:
            numbers = ", ".join(str(r.page_index + 1) for r in failed)
            warnings.append(
                f"{file_name}: {len(failed)} of {total} pages failed and were skipped ({numbers})"
            )

        success = succeeded >= cfg.min_successful_pages
        _report(100, f"Finished {succeeded} of {total} pages")
        log_event(
            logger,
            "chunked.complete",
            file_name=file_name,
            page_count=total,
            succeeded=succeeded,
            failed=len(failed),
            timed_out=timed_out,
            success=success,
            duration_ms=monotonic_ms(wall_start),
        )
        return ChunkedParseResult(
            page_results=results,
            success=success,
            warnings=warnings,
            errors=errors,
            timed_out=timed_out,
        )

    def _extract_page(self, page: PdfPage, started: float, prompt: str) -> PageExtractionResult:
        cfg = self._config
        policy = cfg.retry
        attempts = 0
        last_error = "no attempts made"
        while attempts < policy.max_attempts:
            remaining = cfg.total_timeout_s - (self._clock() - started)
            if remaining <= 0:
                last_error = "total timeout reached"
                break
            attempts += 1
            try:
                record = self._call(page, prompt, timeout=min(cfg.page_timeout_s, remaining))
            except CapabilityConfigurationError:
                raise
            except (CapabilityError, _PageFailure) as e:
                last_error = str(e) or type(e).__name__
                if attempts >= policy.max_attempts:
                    break
                delay = min(policy.delay_for(attempts), max(0.0, remaining))
                log_event(
                    logger,
                    "chunked.page.retry",
                    page_index=page.index,
                    attempt=attempts,
                    delay_s=delay,
                    error_type=type(e).__name__,
                )
                self._sleep(delay)
                continue
            except Exception as e:  # noqa: BLE001
                log_exception(
                    logger, "chunked.page.error", page_index=page.index, attempt=attempts
                )
                last_error = f"{type(e).__name__}: {e}"
                break

            hint = record.page_type_hint or PageTypeHint.OTHER
            return PageExtractionResult(
                page_index=page.index,
                success=True,
                data=record,
                page_type_hint=hint,
                attempts=attempts,
            )

        log_event(
            logger,
            "chunked.page.failed",
            page_index=page.index,
            attempts=attempts,
            error=last_error,
        )
        return PageExtractionResult(
            page_index=page.index, success=False, error=last_error, attempts=attempts
        )

    def _call(self, page: PdfPage, prompt: str, *, timeout: float):
        parts = [
            DocumentPart(data=page.pdf_bytes, filename=f"page-{page.index + 1}.pdf"),
            TextPart(prompt),
        ]
        raw = self._capability.generate(parts, timeout=timeout)
        obj = parse_json_object(raw)
        if not isinstance(obj, dict):
            raise _PageFailure("malformed response: no JSON object")
        return coerce_record(obj)
