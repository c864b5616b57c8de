"""
Purchase Order Recommendations

Groups sourced lines by their recommended vendor into one draft purchase
order per vendor. Drafts are recommendations only; issuing them belongs
to a downstream system.

Lines that need approval stay on their vendor's draft, are listed in
``withheld_lines`` and make the whole draft require approval. Lines with
no decision (manual sourcing, timeout, skipped) never reach a draft.
"""

import logging
import re
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, Iterable, List, Optional

from bmsex.config.bmsex_config import BMSEXConfig
from bmsex.connectors.registry import VendorRegistry
from bmsex.models.options import PipelineOptions
from bmsex.models.sourcing import (
    DecisionStatus,
    PurchaseOrderLine,
    PurchaseOrderRecommendation,
    SourcingDecision,
)

logger = logging.getLogger(__name__)

CENTS = Decimal('0.01')

DEFAULT_CATEGORY_MULTIPLIERS = {
    'body': Decimal('1.0'),
    'mechanical': Decimal('1.1'),
    'electrical': Decimal('1.2'),
    'interior': Decimal('0.9'),
}


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


class PurchaseOrderGenerator:
    """
    Builds draft POs from sourcing decisions.

    Usage:
        generator = PurchaseOrderGenerator(vendors=registry)
        drafts = generator.generate(run.decisions, document_id=estimate.document_id, options=options)
    """

    def __init__(
        self,
        vendors: Optional[VendorRegistry] = None,
        config: Optional[BMSEXConfig] = None,
        category_multipliers: Optional[Dict[str, Decimal]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        config = config or BMSEXConfig()
        self.vendors = vendors
        if category_multipliers is None:
            configured = config.get('sourcing.category_markup_multipliers') or {}
            category_multipliers = {
                **DEFAULT_CATEGORY_MULTIPLIERS,
                **{k: Decimal(str(v)) for k, v in configured.items()},
            }
        self.category_multipliers = category_multipliers
        self._clock = clock

    def markup_for(self, category: Optional[str], base_markup: Decimal) -> Decimal:
        multiplier = self.category_multipliers.get(category or 'general', Decimal('1.0'))
        return (base_markup * multiplier).quantize(Decimal('0.0001'), rounding=ROUND_HALF_UP)

    def generate(
        self,
        decisions: Iterable[SourcingDecision],
        document_id: Optional[str] = None,
        options: Optional[PipelineOptions] = None
    ) -> List[PurchaseOrderRecommendation]:
        """
        Group sourced decisions into one draft per vendor.

        Args:
            decisions: Decisions for one document
            document_id: Estimate the drafts belong to
            options: Supplies base markup and approval threshold

        Returns:
            Drafts ordered by vendor id
        """
        options = options or PipelineOptions.from_config()
        by_vendor: Dict[str, List[SourcingDecision]] = defaultdict(list)
        for decision in decisions:
            if decision.status != DecisionStatus.SOURCED or decision.recommended_vendor is None:
                continue
            by_vendor[decision.recommended_vendor.vendor_id].append(decision)

        period = self._clock().strftime('%y%m')
        drafts = []
        for sequence, vendor_id in enumerate(sorted(by_vendor), start=1):
            drafts.append(self._build(
                vendor_id,
                by_vendor[vendor_id],
                po_number=f"PO-{period}-{self._vendor_code(vendor_id)}-{sequence:03d}",
                document_id=document_id,
                options=options,
            ))

        logger.info(
            f"Drafted {len(drafts)} purchase order(s) for {document_id or 'document'}; "
            f"{sum(1 for d in drafts if d.approval_required)} need approval"
        )
        return drafts

    def _build(
        self,
        vendor_id: str,
        decisions: List[SourcingDecision],
        po_number: str,
        document_id: Optional[str],
        options: PipelineOptions
    ) -> PurchaseOrderRecommendation:
        lines = []
        withheld = []
        reasons = []
        for decision in sorted(decisions, key=lambda d: d.line_number):
            quote = decision.recommended_vendor.quote
            category = decision.classification.category if decision.classification else None
            markup = self.markup_for(category, options.base_markup_fraction)
            unit_cost = _money(quote.price)
            unit_price = _money(unit_cost * (1 + markup))
            lines.append(PurchaseOrderLine(
                line_ref=decision.line_ref,
                line_number=decision.line_number,
                part_number=quote.part_number or decision.part_number,
                description=decision.description,
                quantity=decision.quantity,
                unit_cost=unit_cost,
                markup_fraction=markup,
                unit_price=unit_price,
                extended_cost=_money(unit_cost * decision.quantity),
                extended_price=_money(unit_price * decision.quantity),
                requires_approval=decision.requires_approval,
            ))
            if decision.requires_approval:
                withheld.append(decision.line_ref)
                reasons.extend(f"{decision.line_ref}: {reason}" for reason in decision.approval_reasons)

        subtotal = sum((line.extended_cost for line in lines), Decimal('0.00'))
        total = sum((line.extended_price for line in lines), Decimal('0.00'))
        if total > options.approval_threshold_amount:
            reasons.append(f"Order total {total} exceeds approval threshold {options.approval_threshold_amount}")

        first_quote = decisions[0].recommended_vendor.quote
        return PurchaseOrderRecommendation(
            po_number=po_number,
            document_id=document_id,
            vendor_id=vendor_id,
            vendor_name=first_quote.vendor_name,
            lines=lines,
            subtotal=subtotal,
            markup_applied=total - subtotal,
            total_amount=total,
            approval_required=bool(reasons),
            approval_reasons=reasons,
            withheld_lines=withheld,
        )

    def _vendor_code(self, vendor_id: str) -> str:
        connector = self.vendors.get(vendor_id) if self.vendors else None
        if connector is not None:
            return connector.config.po_code
        return re.sub(r'[^A-Za-z0-9]', '', vendor_id).upper()[:6] or 'VND'
