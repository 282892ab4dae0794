"""Read-through catalog cache, card selection and rate card window checks."""
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from shiprate.core.exceptions import ValidationError
from shiprate.models.catalog import SellerCourierPolicy
from shiprate.schemas.catalog import SellerPolicy
from shiprate.services.cache_service import CacheService, InMemoryCache
from shiprate.services.catalog_cache import CatalogCache, select_cost_card, select_sell_card
from shiprate.services.catalog_repository import CatalogRepository
from tests.conftest import CARD_START, basic_config, make_card, make_service, seed_service


class CountingRepository:
    def __init__(self, owner_id):
        self.service = make_service(owner_id, "delhivery")
        self.calls = {"services": 0, "policy": 0, "cards": 0}

    async def list_active_services(self, owner_id):
        self.calls["services"] += 1
        return [self.service]

    async def get_policy(self, owner_id, seller_id):
        self.calls["policy"] += 1
        return None

    async def list_rate_cards(self, owner_id, provider, service_code):
        self.calls["cards"] += 1
        return [make_card(self.service, "cost"), make_card(self.service, "sell")]


@pytest.fixture
def cache():
    return CacheService(InMemoryCache(), namespace="test")


class TestCatalogCache:
    async def test_services_are_read_once(self, cache, owner_id):
        repository = CountingRepository(owner_id)
        catalog = CatalogCache(cache, repository)

        first = await catalog.list_services(owner_id)
        second = await catalog.list_services(owner_id)

        assert repository.calls["services"] == 1
        assert first[0].id == second[0].id

    async def test_cards_are_cached_per_service(self, cache, owner_id):
        repository = CountingRepository(owner_id)
        catalog = CatalogCache(cache, repository)

        cards = await catalog.get_rate_cards(owner_id, "delhivery", "surface")
        await catalog.get_rate_cards(owner_id, "delhivery", "surface")
        await catalog.get_rate_cards(owner_id, "delhivery", "express")

        assert repository.calls["cards"] == 2
        assert {c.card_type for c in cards} == {"cost", "sell"}
        assert cards[0].config.zone_rules[0].zone_key == "zone_a"

    async def test_missing_policy_is_cached(self, cache, owner_id):
        repository = CountingRepository(owner_id)
        catalog = CatalogCache(cache, repository)
        seller_id = uuid.uuid4()

        assert await catalog.get_policy(owner_id, seller_id) is None
        assert await catalog.get_policy(owner_id, seller_id) is None
        assert repository.calls["policy"] == 1

    async def test_owners_do_not_share_entries(self, cache, owner_id):
        repository = CountingRepository(owner_id)
        catalog = CatalogCache(cache, repository)

        await catalog.list_services(owner_id)
        await catalog.list_services(uuid.uuid4())

        assert repository.calls["services"] == 2

    async def test_invalidate_forces_reload(self, cache, owner_id):
        repository = CountingRepository(owner_id)
        catalog = CatalogCache(cache, repository)
        await catalog.list_services(owner_id)
        await catalog.get_rate_cards(owner_id, "delhivery", "surface")

        removed = await catalog.invalidate(owner_id)
        await catalog.list_services(owner_id)

        assert removed == 2
        assert repository.calls["services"] == 2


class TestCardSelection:
    def setup_method(self):
        self.service = make_service(uuid.uuid4(), "delhivery")
        self.now = datetime(2024, 6, 1, tzinfo=timezone.utc)

    def test_latest_effective_cost_card(self):
        old = make_card(self.service, "cost", effective_from=CARD_START)
        new = make_card(self.service, "cost", effective_from=datetime(2024, 5, 1, tzinfo=timezone.utc))
        future = make_card(self.service, "cost", effective_from=datetime(2024, 7, 1, tzinfo=timezone.utc))

        assert select_cost_card([old, new, future], self.now) is new

    def test_window_end_is_exclusive(self):
        card = make_card(self.service, "cost", effective_to=self.now)
        assert select_cost_card([card], self.now) is None
        assert select_cost_card([card], self.now - timedelta(seconds=1)) is card

    def test_sell_card_prefers_seller_custom(self):
        seller_id = uuid.uuid4()
        default = make_card(self.service, "sell")
        custom = make_card(self.service, "sell", rate_category="custom", seller_id=seller_id)

        assert select_sell_card([default, custom], self.now, seller_id) is custom
        assert select_sell_card([default, custom], self.now, uuid.uuid4()) is default

    def test_sell_card_walks_category_chain(self):
        basic = make_card(self.service, "sell", rate_category="basic")
        default = make_card(self.service, "sell")

        assert select_sell_card([basic, default], self.now, category="advanced") is basic
        assert select_sell_card([default], self.now, category="advanced") is default
        assert select_sell_card([], self.now) is None


class TestRepository:
    async def test_overlapping_window_is_rejected(self, db, owner_id):
        service = await seed_service(db, owner_id, "delhivery")
        repository = CatalogRepository(db)
        await repository.add_rate_card(owner_id, service.id, "cost", basic_config(), CARD_START)

        with pytest.raises(ValidationError):
            await repository.add_rate_card(
                owner_id, service.id, "cost", basic_config(),
                datetime(2024, 3, 1, tzinfo=timezone.utc),
            )

    async def test_adjacent_windows_and_other_scopes_are_allowed(self, db, owner_id):
        service = await seed_service(db, owner_id, "delhivery")
        repository = CatalogRepository(db)
        switch = datetime(2024, 3, 1, tzinfo=timezone.utc)

        await repository.add_rate_card(owner_id, service.id, "cost", basic_config(), CARD_START, switch)
        await repository.add_rate_card(owner_id, service.id, "cost", basic_config(base="45"), switch)
        await repository.add_rate_card(owner_id, service.id, "sell", basic_config(), CARD_START)
        await repository.add_rate_card(owner_id, service.id, "sell", basic_config(), CARD_START, rate_category="advanced")

        cards = await repository.list_rate_cards(owner_id, "delhivery", "surface")
        assert len(cards) == 4
        current = select_cost_card(cards, datetime(2024, 6, 1, tzinfo=timezone.utc))
        assert current.config.zone_rules[0].slabs[0].charge == 45

    async def test_policy_and_services_load_as_value_objects(self, db, owner_id):
        await seed_service(db, owner_id, "delhivery")
        await seed_service(db, owner_id, "ekart")
        seller_id = uuid.uuid4()
        db.add(SellerCourierPolicy(
            owner_id=owner_id,
            seller_id=seller_id,
            allowed_providers=["Delhivery"],
            blocked_providers=[],
            allowed_services=[],
            blocked_services=[],
        ))
        await db.flush()
        repository = CatalogRepository(db)

        services = await repository.list_active_services(owner_id)
        policy = await repository.get_policy(owner_id, seller_id)

        assert [s.provider for s in services] == ["delhivery", "ekart"]
        assert isinstance(policy, SellerPolicy)
        assert policy.allowed_providers == ["delhivery"]
        assert await repository.get_policy(owner_id, None) is None
