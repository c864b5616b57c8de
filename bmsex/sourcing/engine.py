"""
Vendor Sourcing Engine

Chooses a vendor for every part line of an estimate.

Per line:
1. Classify the part (safety-critical parts stay OEM)
2. Ask every allowed vendor for a quote concurrently, each call bounded
   by its own deadline
3. Score the vendors that answered and rank them
4. Flag the decision for approval when the amount is above threshold or
   the classification is uncertain

Lines run on a bounded pool and the whole document runs against a time
budget; lines still running when the budget ends are reported as
``not_sourced_timeout``. A failing vendor only ever affects its own
quote.
"""

import asyncio
import logging
import time
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from bmsex.config.bmsex_config import BMSEXConfig
from bmsex.connectors.base import QuoteRequest, VendorConnector
from bmsex.connectors.registry import VendorRegistry
from bmsex.exceptions import VendorQueryError, VendorTimeoutError
from bmsex.jobs.rate_limiter import RateLimiter
from bmsex.models.estimate import DamageLine, LineType
from bmsex.models.options import PipelineOptions
from bmsex.models.sourcing import (
    DecisionStatus,
    PartClassification,
    QuoteStatus,
    ScoredQuote,
    SourcingDecision,
    SourcingRun,
    SourcingStatistics,
    VehicleDescriptor,
    VendorQuoteResult,
)
from bmsex.processors.bms.normalizer import normalize_part_number
from bmsex.sourcing.classifier import classify_part
from bmsex.sourcing.scoring import ScoringWeights, score_quotes
from bmsex.utils.cache import TTLCache

logger = logging.getLogger(__name__)

QUICK_DELIVERY_DAYS = 3
FALLBACK_ACTIONS = ['substitute_part', 'manual_sourcing']


class VendorSourcingEngine:
    """
    Concurrent multi-vendor sourcing.

    Usage:
        engine = VendorSourcingEngine(VendorRegistry.from_config())
        run = await engine.source(estimate.damage_lines, vehicle, PipelineOptions())
    """

    def __init__(
        self,
        vendors: VendorRegistry,
        config: Optional[BMSEXConfig] = None,
        weights: Optional[ScoringWeights] = None,
        quote_cache: Optional[TTLCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        max_concurrent_lines: Optional[int] = None,
        max_outbound_requests: Optional[int] = None
    ):
        config = config or BMSEXConfig()
        sourcing = config.get('sourcing', {}) or {}

        self.vendors = vendors
        self.weights = weights or ScoringWeights.from_dict(sourcing.get('weights'))
        self.low_confidence_threshold = float(sourcing.get('low_confidence_threshold', 0.6))
        self.max_concurrent_lines = max_concurrent_lines or int(sourcing.get('max_concurrent_lines', 4))
        self.max_outbound_requests = max_outbound_requests or int(sourcing.get('max_outbound_requests', 16))
        self.quote_cache = quote_cache or TTLCache(
            ttl_seconds=float(sourcing.get('quote_cache_ttl_seconds', 900)),
            max_entries=int(sourcing.get('quote_cache_max_entries', 5000))
        )
        self.rate_limiter = rate_limiter or RateLimiter()
        self._outbound: Optional[asyncio.Semaphore] = None
        self._configured_limits: Dict[str, bool] = {}

    async def source(
        self,
        lines: Iterable[DamageLine],
        vehicle: Optional[VehicleDescriptor],
        options: PipelineOptions
    ) -> SourcingRun:
        """
        Source every part line of one document.

        Args:
            lines: Damage lines in document order
            vehicle: Decoded vehicle, if any
            options: Timeouts, threshold and vendor allow-list

        Returns:
            SourcingRun with one decision per line, in line order
        """
        lines = list(lines)
        start = time.monotonic()
        document_deadline = start + options.document_budget
        if self._outbound is None:
            self._outbound = asyncio.Semaphore(self.max_outbound_requests)

        connectors = self.vendors.active(options.preferred_vendor_allow_list)
        self._configure_limits(connectors)
        line_slots = asyncio.Semaphore(self.max_concurrent_lines)

        async def run_line(line: DamageLine) -> SourcingDecision:
            async with line_slots:
                return await self._source_line(line, vehicle, connectors, options, document_deadline)

        tasks: Dict[int, asyncio.Task] = {}
        decisions: Dict[int, SourcingDecision] = {}
        for index, line in enumerate(lines):
            if not self._is_sourceable(line):
                decisions[index] = self._skipped(line)
            else:
                tasks[index] = asyncio.create_task(run_line(line))

        try:
            if tasks:
                _, pending = await asyncio.wait(
                    tasks.values(),
                    timeout=max(0.0, document_deadline - time.monotonic())
                )
                for task in pending:
                    task.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)
        except asyncio.CancelledError:
            # Batch cancel: abort in-flight vendor calls
            for task in tasks.values():
                task.cancel()
            raise

        for index, task in tasks.items():
            line = lines[index]
            if task.cancelled():
                logger.warning(f"Line {line.line_ref} not sourced within the document budget")
                decisions[index] = self._timed_out(line)
            elif task.exception() is not None:
                logger.error(f"Sourcing failed for line {line.line_ref}: {task.exception()}")
                decisions[index] = self._manual(line, None, [], reason="Sourcing failed unexpectedly")
            else:
                decisions[index] = task.result()

        ordered = [decisions[i] for i in range(len(lines))]
        statistics = self._statistics(ordered, start)
        logger.info(
            f"Sourced {statistics.sourced}/{statistics.total_lines} line(s) "
            f"in {statistics.processing_time_ms}ms ({statistics.manual} manual, {statistics.timed_out} timed out)"
        )
        return SourcingRun(vehicle=vehicle, decisions=ordered, statistics=statistics)

    async def _source_line(
        self,
        line: DamageLine,
        vehicle: Optional[VehicleDescriptor],
        connectors: List[VendorConnector],
        options: PipelineOptions,
        document_deadline: float
    ) -> SourcingDecision:
        classification = classify_part(line)
        if not connectors:
            return self._manual(line, classification, [], reason="No vendors are configured for sourcing")

        quotes = await asyncio.gather(*(
            self._query_vendor(connector, line, classification, vehicle, options, document_deadline)
            for connector in connectors
        ))

        ranked = score_quotes(quotes, classification.part_type, self.weights)
        if not ranked:
            return self._manual(line, classification, list(quotes), reason="No vendor returned a quote")

        best = ranked[0]
        extended_price = (best.quote.price * line.quantity).quantize(Decimal('0.01'))

        approval_reasons = []
        if extended_price > options.approval_threshold_amount:
            approval_reasons.append(
                f"Amount {extended_price} exceeds approval threshold {options.approval_threshold_amount}"
            )
        if classification.confidence < self.low_confidence_threshold:
            approval_reasons.append(
                f"Low classification confidence ({classification.confidence:.2f}): {classification.reason}"
            )

        return SourcingDecision(
            line_ref=line.line_ref,
            line_number=line.line_number,
            description=line.description,
            part_number=line.part_number or line.oem_part_number,
            quantity=line.quantity,
            status=DecisionStatus.SOURCED,
            classification=classification,
            recommended_vendor=best,
            ranked_alternatives=ranked[1:],
            quotes=list(quotes),
            reasoning_factors=self._reasoning(best, ranked, classification, connectors),
            requires_approval=bool(approval_reasons),
            approval_reasons=approval_reasons,
            extended_price=extended_price,
        )

    async def _query_vendor(
        self,
        connector: VendorConnector,
        line: DamageLine,
        classification: PartClassification,
        vehicle: Optional[VehicleDescriptor],
        options: PipelineOptions,
        document_deadline: float
    ) -> VendorQuoteResult:
        """One vendor call; every failure becomes a quote-level result"""
        vendor_id = connector.vendor_id
        timeout = connector.config.timeout_seconds or options.per_vendor_timeout
        request = QuoteRequest(
            line_ref=line.line_ref,
            description=line.description,
            part_number=normalize_part_number(line.part_number or line.oem_part_number),
            quantity=line.quantity,
            part_type=classification.part_type,
            category=classification.category,
            vehicle=vehicle,
            deadline=min(time.monotonic() + timeout, document_deadline),
        )

        cache_key = request.cache_key(vendor_id)
        cached = self.quote_cache.get(cache_key)
        if cached is not None:
            return cached.model_copy(update={'line_ref': line.line_ref, 'latency_ms': 0})

        def failed(status: QuoteStatus, error: str) -> VendorQuoteResult:
            return VendorQuoteResult(
                vendor_id=vendor_id,
                vendor_name=connector.config.display_name,
                line_ref=line.line_ref,
                status=status,
                reliability_score=connector.config.reliability_score,
                latency_ms=int((time.monotonic() - started) * 1000),
                error=error,
            )

        started = time.monotonic()
        if not await self.rate_limiter.acquire(vendor_id, timeout=request.remaining()):
            return failed(QuoteStatus.UNAVAILABLE, "Rate limit reached")

        try:
            async with self._outbound:
                remaining = request.remaining()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                result = await asyncio.wait_for(connector.quote(request), timeout=remaining)
        except (asyncio.TimeoutError, VendorTimeoutError):
            logger.warning(f"Vendor {vendor_id} timed out on line {line.line_ref}")
            return failed(QuoteStatus.TIMEOUT, f"No response within {timeout:.2f}s")
        except VendorQueryError as e:
            logger.warning(f"Vendor {vendor_id} failed on line {line.line_ref}: {e}")
            return failed(QuoteStatus.ERROR, str(e))
        except Exception as e:
            logger.warning(f"Unexpected error from vendor {vendor_id} on line {line.line_ref}: {e}")
            return failed(QuoteStatus.ERROR, f"Unexpected vendor error: {type(e).__name__}")

        if result.status == QuoteStatus.OK and result.price is None:
            result = result.model_copy(update={'status': QuoteStatus.UNAVAILABLE})
        if not result.latency_ms:
            result = result.model_copy(update={'latency_ms': int((time.monotonic() - started) * 1000)})
        if result.responded:
            self.quote_cache.set(cache_key, result)
        return result

    def _configure_limits(self, connectors: List[VendorConnector]) -> None:
        for connector in connectors:
            if connector.vendor_id not in self._configured_limits:
                self.rate_limiter.configure(connector.vendor_id, connector.config.rate_limit)
                self._configured_limits[connector.vendor_id] = True

    def _reasoning(
        self,
        best: ScoredQuote,
        ranked: List[ScoredQuote],
        classification: PartClassification,
        connectors: List[VendorConnector]
    ) -> Dict[str, object]:
        prices = [s.quote.price for s in ranked]
        average = sum(prices, Decimal('0')) / len(prices)
        connector = next((c for c in connectors if c.vendor_id == best.vendor_id), None)
        lead = best.quote.lead_time_days
        return {
            'priceCompetitive': best.quote.price <= average,
            'quickDelivery': lead is not None and lead <= QUICK_DELIVERY_DAYS,
            'preferredVendor': bool(connector and connector.config.preferred),
            'typeMatch': best.breakdown.get('part_type', 0.0) >= 1.0,
            'partType': classification.part_type.value,
            'category': classification.category,
            'safetyCritical': classification.safety_critical,
            'respondingVendors': len(ranked),
            'score': best.score,
            'breakdown': dict(best.breakdown),
        }

    @staticmethod
    def _is_sourceable(line: DamageLine) -> bool:
        return line.line_type == LineType.PART and bool(
            line.part_number or line.oem_part_number or line.description
        )

    @staticmethod
    def _base(line: DamageLine) -> Dict[str, object]:
        return {
            'line_ref': line.line_ref,
            'line_number': line.line_number,
            'description': line.description,
            'part_number': line.part_number or line.oem_part_number,
            'quantity': line.quantity,
        }

    def _skipped(self, line: DamageLine) -> SourcingDecision:
        return SourcingDecision(status=DecisionStatus.SKIPPED, **self._base(line))

    def _manual(
        self,
        line: DamageLine,
        classification: Optional[PartClassification],
        quotes: List[VendorQuoteResult],
        reason: str
    ) -> SourcingDecision:
        return SourcingDecision(
            status=DecisionStatus.MANUAL_SOURCING,
            classification=classification,
            quotes=quotes,
            requires_approval=True,
            approval_reasons=[f"{reason}; manual sourcing required"],
            fallback_actions=list(FALLBACK_ACTIONS),
            reasoning_factors={'respondingVendors': 0, 'vendorsQueried': len(quotes)},
            **self._base(line)
        )

    def _timed_out(self, line: DamageLine) -> SourcingDecision:
        return SourcingDecision(
            status=DecisionStatus.NOT_SOURCED_TIMEOUT,
            classification=classify_part(line),
            requires_approval=True,
            approval_reasons=["Not sourced within the document processing budget"],
            fallback_actions=['manual_sourcing'],
            **self._base(line)
        )

    @staticmethod
    def _statistics(decisions: List[SourcingDecision], start: float) -> SourcingStatistics:
        counts = {status: 0 for status in DecisionStatus}
        for decision in decisions:
            counts[decision.status] += 1
        considered = len(decisions) - counts[DecisionStatus.SKIPPED]
        sourced = counts[DecisionStatus.SOURCED]
        return SourcingStatistics(
            total_lines=len(decisions),
            sourced=sourced,
            manual=counts[DecisionStatus.MANUAL_SOURCING],
            timed_out=counts[DecisionStatus.NOT_SOURCED_TIMEOUT],
            skipped=counts[DecisionStatus.SKIPPED],
            requires_approval=sum(1 for d in decisions if d.requires_approval),
            success_rate=round(sourced / considered, 4) if considered else 0.0,
            processing_time_ms=int((time.monotonic() - start) * 1000),
        )
