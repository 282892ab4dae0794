"""Shared fixtures: in-memory database, fake couriers and catalog builders."""
import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from shiprate import models  # noqa: F401
from shiprate.core.exceptions import ProviderError
from shiprate.couriers.base import (
    Capability,
    CourierAdapter,
    RateQuote,
    RateRequest,
    ServiceabilityResult,
    ShipmentBooking,
    ShipmentRequest,
    TrackingEvent,
)
from shiprate.couriers.registry import ProviderRegistry
from shiprate.database import Base, custom_json_dumps
from shiprate.db_types import utcnow
from shiprate.models.catalog import CourierService
from shiprate.schemas.catalog import (
    CodRule,
    RateCard,
    RateCardConfig,
    RoundingPolicy,
    SellerPolicy,
    ServiceCatalogEntry,
    WeightSlab,
    ZoneRule,
)
from shiprate.schemas.quote import PriceBreakdown, QuoteOption, QuoteRequest
from shiprate.services.catalog_cache import CatalogReader
from shiprate.services.quote_session_store import QuoteSessionStore

CARD_START = datetime(2024, 1, 1, tzinfo=timezone.utc)


# ============================================
# DATABASE
# ============================================

@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        json_serializer=custom_json_dumps,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db(engine):
    factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    async with factory() as session:
        yield session


@pytest.fixture
def owner_id():
    return uuid.uuid4()


# ============================================
# FAKE COURIER
# ============================================

class FakeCourierAdapter(CourierAdapter):
    """Scriptable courier: delays, lane answers, live rates and booking failures."""

    def __init__(
        self,
        provider: str,
        capabilities=None,
        delay: float = 0.0,
        lane: Optional[ServiceabilityResult] = None,
        lane_error: Optional[Exception] = None,
        rates: Optional[Dict[str, Decimal]] = None,
        booking_error: Optional[Exception] = None,
        booking_delay: float = 0.0,
    ):
        self.provider = provider
        super().__init__()
        if capabilities is not None:
            self.capabilities = frozenset(capabilities)
        self.delay = delay
        self.lane = lane
        self.lane_error = lane_error
        self.rates = rates or {}
        self.booking_error = booking_error
        self.booking_delay = booking_delay
        self.booked: List[ShipmentRequest] = []
        self.cancelled: List[str] = []

    async def check_serviceability(self, origin_pincode, destination_pincode, weight_kg, payment_mode):
        async def run():
            await asyncio.sleep(self.delay)
            if self.lane_error is not None:
                raise self.lane_error
            return self.lane or ServiceabilityResult(serviceable=True, confidence="high")

        return await self._call("serviceability", run)

    async def get_rate(self, request: RateRequest) -> Optional[RateQuote]:
        async def run():
            amount = self.rates.get(request.service_code)
            if amount is None:
                raise ProviderError(self.provider, "no rate", provider_status=404)
            return RateQuote(amount=Decimal(str(amount)), eta_days=2)

        return await self._call("live_rate", run)

    async def create_shipment(self, request: ShipmentRequest) -> ShipmentBooking:
        async def run():
            await asyncio.sleep(self.booking_delay)
            if self.booking_error is not None:
                raise self.booking_error
            self.booked.append(request)
            return ShipmentBooking(
                tracking_id=f"{self.provider.upper()}{len(self.booked):06d}",
                label_ref=f"https://labels.test/{self.provider}/{len(self.booked)}.pdf",
                carrier_reference={"idempotency_key": request.idempotency_key},
            )

        return await self._call("create_shipment", run)

    async def cancel_shipment(self, tracking_id: str) -> bool:
        self.cancelled.append(tracking_id)
        return True

    async def track(self, tracking_id: str) -> List[TrackingEvent]:
        return [TrackingEvent(status="MANIFESTED")]


LANE_CAPABILITIES = {
    Capability.SERVICEABILITY,
    Capability.CREATE_SHIPMENT,
    Capability.CANCEL_SHIPMENT,
    Capability.TRACK,
}

LIVE_CAPABILITIES = LANE_CAPABILITIES | {Capability.LIVE_RATE}


@pytest.fixture
def registry():
    return ProviderRegistry([
        FakeCourierAdapter("delhivery"),
        FakeCourierAdapter("ekart"),
    ])


# ============================================
# CATALOG
# ============================================

class InMemoryCatalog(CatalogReader):

    def __init__(self, services=None, cards=None, policies=None):
        self.services: List[ServiceCatalogEntry] = list(services or [])
        self.cards: List[RateCard] = list(cards or [])
        self.policies: Dict[uuid.UUID, SellerPolicy] = dict(policies or {})

    async def get_policy(self, owner_id, seller_id):
        if seller_id is None:
            return None
        return self.policies.get(seller_id)

    async def list_services(self, owner_id):
        return [s for s in self.services if s.owner_id == owner_id]

    async def get_rate_cards(self, owner_id, provider, service_code):
        return [
            c for c in self.cards
            if c.owner_id == owner_id and c.provider == provider and c.service_code == service_code
        ]


def basic_config(
    base: str = "40",
    cod: Optional[str] = "20",
    tax: str = "18",
    additional_per_kg: str = "30",
    zone_key: str = "zone_a",
) -> RateCardConfig:
    """One zone, slabs up to 2 kg, flat COD."""
    return RateCardConfig(
        weight_basis="max",
        zone_rules=[
            ZoneRule(
                zone_key=zone_key,
                slabs=[
                    WeightSlab(min_kg=Decimal("0"), max_kg=Decimal("0.5"), charge=Decimal(base)),
                    WeightSlab(min_kg=Decimal("0.5"), max_kg=Decimal("1"), charge=Decimal(base) + 15),
                    WeightSlab(min_kg=Decimal("1"), max_kg=Decimal("2"), charge=Decimal(base) + 30),
                ],
            )
        ],
        rounding=RoundingPolicy(unit=Decimal("0.5"), mode="ceil"),
        additional_per_kg=Decimal(additional_per_kg),
        cod_rule=CodRule(type="flat", amount=Decimal(cod)) if cod is not None else None,
        tax_rate_percent=Decimal(tax),
    )


def make_service(
    owner_id: uuid.UUID,
    provider: str,
    code: str = "surface",
    sla_min_days: int = 3,
    sla_max_days: int = 5,
    **kwargs,
) -> ServiceCatalogEntry:
    return ServiceCatalogEntry(
        id=uuid.uuid4(),
        owner_id=owner_id,
        provider=provider,
        code=code,
        name=f"{provider.title()} {code.title()}",
        sla_min_days=sla_min_days,
        sla_max_days=sla_max_days,
        **kwargs,
    )


def make_card(
    service: ServiceCatalogEntry,
    card_type: str,
    config: Optional[RateCardConfig] = None,
    rate_category: str = "default",
    seller_id: Optional[uuid.UUID] = None,
    effective_from: datetime = CARD_START,
    effective_to: Optional[datetime] = None,
) -> RateCard:
    return RateCard(
        id=uuid.uuid4(),
        owner_id=service.owner_id,
        service_id=service.id,
        provider=service.provider,
        service_code=service.code,
        card_type=card_type,
        rate_category=rate_category,
        seller_id=seller_id,
        effective_from=effective_from,
        effective_to=effective_to,
        config=config or basic_config(),
    )


def make_request(**overrides) -> QuoteRequest:
    data = {
        "origin_pincode": "110001",
        "destination_pincode": "110020",
        "weight_kg": "0.4",
        "payment_mode": "cod",
        "order_value": "1000",
        "zone": "A",
    }
    data.update(overrides)
    return QuoteRequest.model_validate(data)


def make_option(
    provider: str,
    code: str = "surface",
    sell: str = "100",
    cost: str = "80",
    eta_max_days: Optional[int] = 4,
) -> QuoteOption:
    sell_amount = Decimal(sell)
    cost_amount = Decimal(cost)
    margin = sell_amount - cost_amount
    return QuoteOption(
        option_id=f"opt-{provider}-{code}",
        provider=provider,
        service_id=uuid.uuid4(),
        service_code=code,
        service_name=f"{provider.title()} {code.title()}",
        chargeable_weight_kg=Decimal("0.5"),
        zone="zonea",
        cost_amount=cost_amount,
        cost_breakdown=PriceBreakdown(source="table", base_charge=cost_amount, total=cost_amount),
        sell_amount=sell_amount,
        sell_breakdown=PriceBreakdown(source="table", base_charge=sell_amount, total=sell_amount),
        margin_amount=margin,
        margin_percent=(margin / sell_amount * 100).quantize(Decimal("0.01")),
        eta_min_days=1,
        eta_max_days=eta_max_days,
        confidence="medium",
        pricing_source="table",
    )


async def create_session(
    db: AsyncSession,
    owner_id: uuid.UUID,
    options: List[QuoteOption],
    created_at: Optional[datetime] = None,
    seller_id: Optional[uuid.UUID] = None,
):
    """Persist a quote session; ``created_at`` in the past makes it expired."""
    now = created_at or utcnow()
    store = QuoteSessionStore(db, clock=lambda: now)
    session = await store.create(
        owner_id=owner_id,
        seller_id=seller_id,
        request=make_request(),
        options=options,
        recommended_option_id=options[0].option_id if options else None,
        provider_timeouts={o.provider: False for o in options},
        provider_errors={},
        confidence="high",
        selection_mode="manual_with_recommendation",
    )
    await db.commit()
    return session


def expired_at() -> datetime:
    """Creation time whose 30 minute session expired a second ago."""
    return utcnow() - timedelta(minutes=30, seconds=1)


async def seed_service(
    db: AsyncSession,
    owner_id: uuid.UUID,
    provider: str,
    code: str = "surface",
    sla_max_days: int = 5,
) -> CourierService:
    service = CourierService(
        owner_id=owner_id,
        provider=provider,
        code=code,
        name=f"{provider.title()} {code.title()}",
        payment_modes=[],
        zone_support=[],
        sla_min_days=1,
        sla_max_days=sla_max_days,
        is_active=True,
    )
    db.add(service)
    await db.flush()
    return service
