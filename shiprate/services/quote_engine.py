"""
Quote Orchestrator.

Flow for one request:
1. Seller policy (or the default) filters the active service catalog
2. Providers are probed concurrently, each under its own timeout budget:
   serviceability first (when the adapter supports it), then live rates
3. Surviving services pass hard eligibility and are priced on cost and
   sell cards (live rate -> table -> flat fallback)
4. Options are ranked, tagged and stored in a 30 minute quote session

A slow or failing provider only removes its own options; the request as
a whole never fails because of one provider.
"""
import asyncio
import logging
import re
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

from shiprate.config import settings
from shiprate.core.exceptions import ProviderError, ValidationError
from shiprate.couriers.base import Capability, CourierAdapter, RateQuote, RateRequest
from shiprate.couriers.registry import ProviderRegistry
from shiprate.db_types import utcnow
from shiprate.models.catalog import PaymentMode, SelectionMode
from shiprate.models.quote_session import QuoteSession
from shiprate.schemas.catalog import SellerPolicy, ServiceCatalogEntry
from shiprate.schemas.quote import (
    PriceBreakdown, QuoteOption, QuoteRequest, QuoteSessionResponse, lowest_confidence
)
from shiprate.services.catalog_cache import CatalogReader, select_cost_card, select_sell_card
from shiprate.services.policy_filter import apply_policy, check_eligibility, group_by_provider
from shiprate.services.quote_session_store import QuoteSessionStore
from shiprate.services.ranking import rank_options
from shiprate.services.rate_formula import (
    FormulaInput, FormulaResult, RateFormulaResolver, chargeable_weight, round2, to_decimal
)
from shiprate.services.zone_normalizer import zone_lookup_key

logger = logging.getLogger(__name__)

PINCODE_PATTERN = re.compile(r"^\d{6}$")
SHIPMENT_TYPES = ("forward", "reverse")
HUNDRED = Decimal("100")


def option_id_for(provider: str, service_code: str) -> str:
    return f"opt-{provider}-{service_code}"


def validate_quote_request(request: QuoteRequest) -> None:
    """Semantic checks the schema does not express."""
    errors = {}
    if not PINCODE_PATTERN.match(request.origin_pincode or ""):
        errors["origin_pincode"] = "must be a 6-digit pincode"
    if not PINCODE_PATTERN.match(request.destination_pincode or ""):
        errors["destination_pincode"] = "must be a 6-digit pincode"
    if request.weight_kg is None or request.weight_kg <= 0:
        errors["weight_kg"] = "must be greater than 0"
    if request.order_value is not None and request.order_value < 0:
        errors["order_value"] = "must not be negative"
    if request.dimensions is not None:
        dims = request.dimensions
        if any(v is None or v <= 0 for v in (dims.length_cm, dims.width_cm, dims.height_cm)):
            errors["dimensions"] = "length, width and height must all be greater than 0"
    if request.shipment_type not in SHIPMENT_TYPES:
        errors["shipment_type"] = f"must be one of {', '.join(SHIPMENT_TYPES)}"
    elif request.shipment_type == "reverse" and request.payment_mode == PaymentMode.COD:
        errors["payment_mode"] = "reverse shipments cannot be COD"

    if errors:
        raise ValidationError("Invalid quote request", details={"fields": errors})


class ProviderProbe:
    """What one provider told us about this request."""

    def __init__(self, provider: str):
        self.provider = provider
        self.serviceable = True
        self.zone: Optional[str] = None
        # Lane check timed out or errored; options are still offered at low confidence
        self.serviceability_degraded = False
        self.eta_days: Optional[int] = None
        self.live_rates: Dict[str, RateQuote] = {}


class QuoteEngine:
    """
    Usage:
        engine = QuoteEngine(catalog, registry, QuoteSessionStore(db))
        session = await engine.generate_quote(owner_id, seller_id, request)
    """

    def __init__(
        self,
        catalog: CatalogReader,
        registry: ProviderRegistry,
        store: QuoteSessionStore,
        resolver: Optional[RateFormulaResolver] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.catalog = catalog
        self.registry = registry
        self.store = store
        self.resolver = resolver or RateFormulaResolver()
        self.clock = clock

    # ============================================
    # ENTRY POINTS
    # ============================================

    async def generate_quote(
        self,
        owner_id: uuid.UUID,
        seller_id: Optional[uuid.UUID],
        request: QuoteRequest,
    ) -> QuoteSession:
        validate_quote_request(request)
        now = self.clock()

        policy = await self.catalog.get_policy(owner_id, seller_id) or SellerPolicy.default()
        services = apply_policy(policy, await self.catalog.list_services(owner_id))
        groups = group_by_provider(services)

        probes, provider_timeouts, provider_errors = await self._probe_providers(groups, request)

        options: List[QuoteOption] = []
        for provider, provider_services in groups.items():
            probe = probes.get(provider)
            if probe is None or not probe.serviceable:
                continue
            for service in provider_services:
                option = await self._build_option(
                    owner_id, seller_id, policy, service, probe, request, now
                )
                if option is not None:
                    options.append(option)

        ranking = rank_options(options, policy)
        confidence = "medium" if any(provider_timeouts.values()) else "high"

        selected_option_id = None
        if policy.selection_mode == SelectionMode.AUTO:
            selected_option_id = ranking.recommended_option_id

        session = await self.store.create(
            owner_id=owner_id,
            seller_id=seller_id,
            request=request,
            options=ranking.options,
            recommended_option_id=ranking.recommended_option_id,
            provider_timeouts=provider_timeouts,
            provider_errors=provider_errors,
            confidence=confidence,
            selection_mode=policy.selection_mode.value,
            selected_option_id=selected_option_id,
        )
        return session

    async def get_session(self, owner_id: uuid.UUID, session_id: uuid.UUID) -> QuoteSession:
        return await self.store.get(owner_id, session_id)

    # ============================================
    # PROVIDER FAN-OUT
    # ============================================

    async def _probe_providers(
        self,
        groups: Dict[str, List[ServiceCatalogEntry]],
        request: QuoteRequest,
    ) -> Tuple[Dict[str, ProviderProbe], Dict[str, bool], Dict[str, str]]:
        providers = list(groups)
        budgets = [settings.provider_timeout(p) for p in providers]
        results = await asyncio.gather(
            *[
                asyncio.wait_for(
                    self._probe_provider(self.registry.get(p), p, groups[p], request),
                    timeout=budget,
                )
                for p, budget in zip(providers, budgets)
            ],
            return_exceptions=True,
        )

        probes: Dict[str, ProviderProbe] = {}
        provider_timeouts: Dict[str, bool] = {}
        provider_errors: Dict[str, str] = {}
        for provider, budget, result in zip(providers, budgets, results):
            if isinstance(result, asyncio.TimeoutError):
                logger.warning(f"Provider {provider} timed out after {budget}s, skipping")
                provider_timeouts[provider] = True
                provider_errors[provider] = f"timed out after {budget}s"
            elif isinstance(result, Exception):
                message = result.message if isinstance(result, ProviderError) else str(result)
                logger.warning(f"Provider {provider} failed, skipping: {message}")
                provider_timeouts[provider] = True
                provider_errors[provider] = message
            else:
                provider_timeouts[provider] = False
                probes[provider] = result
        return probes, provider_timeouts, provider_errors

    async def _probe_provider(
        self,
        adapter: Optional[CourierAdapter],
        provider: str,
        services: List[ServiceCatalogEntry],
        request: QuoteRequest,
    ) -> ProviderProbe:
        probe = ProviderProbe(provider)
        if adapter is None:
            # No integration registered: table pricing only
            return probe

        lane_budget = settings.serviceability_timeout(provider)
        if adapter.supports(Capability.SERVICEABILITY) and lane_budget > 0:
            try:
                lane = await asyncio.wait_for(
                    adapter.check_serviceability(
                        request.origin_pincode,
                        request.destination_pincode,
                        request.weight_kg,
                        request.payment_mode.value,
                    ),
                    timeout=lane_budget,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Serviceability check for {provider} timed out after {lane_budget}s")
                probe.serviceability_degraded = True
            except ProviderError as e:
                logger.warning(f"Serviceability check for {provider} failed: {e.message}")
                probe.serviceability_degraded = True
            else:
                if not lane.serviceable:
                    probe.serviceable = False
                    return probe
                probe.zone = lane.zone
                probe.eta_days = lane.eta_days
                if lane.confidence == "low":
                    probe.serviceability_degraded = True

        if adapter.supports(Capability.LIVE_RATE):
            for service in services:
                quote = await self._live_rate(adapter, service, request)
                if quote is not None:
                    probe.live_rates[service.code] = quote
        return probe

    async def _live_rate(
        self,
        adapter: CourierAdapter,
        service: ServiceCatalogEntry,
        request: QuoteRequest,
    ) -> Optional[RateQuote]:
        dims = request.dimensions
        try:
            return await adapter.get_rate(RateRequest(
                origin_pincode=request.origin_pincode,
                destination_pincode=request.destination_pincode,
                weight_kg=request.weight_kg,
                payment_mode=request.payment_mode.value,
                order_value=request.order_value,
                service_code=service.code,
                length_cm=dims.length_cm if dims else None,
                width_cm=dims.width_cm if dims else None,
                height_cm=dims.height_cm if dims else None,
            ))
        except ProviderError as e:
            if e.is_not_found_or_unprocessable:
                return None
            raise

    # ============================================
    # PRICING
    # ============================================

    async def _build_option(
        self,
        owner_id: uuid.UUID,
        seller_id: Optional[uuid.UUID],
        policy: SellerPolicy,
        service: ServiceCatalogEntry,
        probe: ProviderProbe,
        request: QuoteRequest,
        now: datetime,
    ) -> Optional[QuoteOption]:
        zone = zone_lookup_key(probe.zone or request.zone)
        eligible, reason = check_eligibility(
            service,
            request.weight_kg,
            request.payment_mode.value,
            request.order_value,
            zone,
        )
        if not eligible:
            logger.debug(f"Service {service.provider}:{service.code} not eligible: {reason}")
            return None

        dims = request.dimensions
        inp = FormulaInput(
            weight_kg=request.weight_kg,
            zone=zone,
            payment_mode=request.payment_mode.value,
            order_value=request.order_value,
            length_cm=dims.length_cm if dims else None,
            width_cm=dims.width_cm if dims else None,
            height_cm=dims.height_cm if dims else None,
        )
        cards = await self.catalog.get_rate_cards(owner_id, service.provider, service.code)

        live = probe.live_rates.get(service.code)
        if live is not None:
            cost = self._live_cost(live, inp, zone)
        else:
            cost = self.resolver.resolve(select_cost_card(cards, now), inp)

        sell_card = select_sell_card(cards, now, seller_id, policy.rate_category.value)
        if sell_card is not None:
            sell = self.resolver.resolve(sell_card, inp)
        else:
            sell = self._markup_sell(cost)

        if live is not None:
            pricing_source = "hybrid" if sell_card is not None else "live"
        else:
            pricing_source = "table"

        confidence = lowest_confidence(cost.confidence, sell.confidence)
        if probe.serviceability_degraded:
            confidence = "low"

        margin = round2(sell.amount - cost.amount)
        margin_percent = round2(margin / sell.amount * HUNDRED) if sell.amount > 0 else Decimal("0")

        eta_max = service.sla_max_days
        if live is not None and live.eta_days:
            eta_max = live.eta_days
        elif probe.eta_days:
            eta_max = probe.eta_days

        return QuoteOption(
            option_id=option_id_for(service.provider, service.code),
            provider=service.provider,
            service_id=service.id,
            service_code=service.code,
            service_name=service.name,
            chargeable_weight_kg=cost.breakdown.chargeable_weight_kg,
            zone=zone,
            cost_amount=cost.amount,
            cost_breakdown=cost.breakdown,
            sell_amount=sell.amount,
            sell_breakdown=sell.breakdown,
            margin_amount=margin,
            margin_percent=margin_percent,
            eta_min_days=service.sla_min_days,
            eta_max_days=eta_max,
            confidence=confidence,
            pricing_source=pricing_source,
        )

    def _live_cost(self, live: RateQuote, inp: FormulaInput, zone: Optional[str]) -> FormulaResult:
        chargeable, actual, volumetric = chargeable_weight(inp)
        amount = round2(live.amount)
        breakdown = PriceBreakdown(
            source="live",
            actual_weight_kg=actual,
            volumetric_weight_kg=volumetric,
            chargeable_weight_kg=chargeable,
            zone=zone,
            base_charge=amount,
            freight_subtotal=amount,
            total=amount,
        )
        return FormulaResult(amount, breakdown, "high")

    def _markup_sell(self, cost: FormulaResult) -> FormulaResult:
        """Sell price without a sell card: cost plus the default markup."""
        markup = to_decimal(settings.DEFAULT_SELL_MARKUP_PERCENT)
        amount = round2(cost.amount * (1 + markup / HUNDRED))
        breakdown = cost.breakdown.model_copy(update={
            "source": "markup",
            "total": amount,
        })
        return FormulaResult(amount, breakdown, cost.confidence)


def build_session_response(session: QuoteSession) -> QuoteSessionResponse:
    options = [QuoteOption.model_validate(o) for o in session.options or []]
    recommendation = None
    if session.recommended_option_id:
        recommendation = next(
            (o for o in options if o.option_id == session.recommended_option_id), None
        )
    return QuoteSessionResponse(
        session_id=session.id,
        options=options,
        recommendation=recommendation,
        recommended_option_id=session.recommended_option_id,
        selected_option_id=session.selected_option_id,
        expires_at=session.expires_at,
        confidence=session.confidence,
        provider_timeouts=session.provider_timeouts or {},
        provider_errors=session.provider_errors or {},
    )
