import uuid
from decimal import Decimal

from shiprate.schemas.catalog import SellerPolicy
from shiprate.services.policy_filter import (
    apply_policy,
    check_eligibility,
    group_by_provider,
    is_provider_allowed,
)
from tests.conftest import make_service

OWNER = uuid.uuid4()


def _services():
    return [
        make_service(OWNER, "delhivery", "surface"),
        make_service(OWNER, "delhivery", "express"),
        make_service(OWNER, "ekart", "surface"),
        make_service(OWNER, "velocity", "standard"),
    ]


class TestPolicy:
    def test_default_policy_allows_everything(self):
        assert len(apply_policy(SellerPolicy.default(), _services())) == 4

    def test_block_wins_over_allow(self):
        policy = SellerPolicy(allowed_providers=["delhivery", "ekart"], blocked_providers=["ekart"])
        assert is_provider_allowed(policy, "delhivery")
        assert not is_provider_allowed(policy, "ekart")
        assert not is_provider_allowed(policy, "velocity")

    def test_provider_codes_are_case_insensitive(self):
        policy = SellerPolicy(blocked_providers=[" Delhivery "])
        providers = {s.provider for s in apply_policy(policy, _services())}
        assert providers == {"ekart", "velocity"}

    def test_service_allow_list_by_qualified_code(self):
        policy = SellerPolicy(allowed_services=["delhivery:express"])
        allowed = apply_policy(policy, _services())
        assert [(s.provider, s.code) for s in allowed] == [("delhivery", "express")]

    def test_service_block_by_bare_code(self):
        policy = SellerPolicy(blocked_services=["surface"])
        allowed = apply_policy(policy, _services())
        assert {s.code for s in allowed} == {"express", "standard"}

    def test_group_keeps_catalog_order(self):
        groups = group_by_provider(_services())
        assert list(groups) == ["delhivery", "ekart", "velocity"]
        assert [s.code for s in groups["delhivery"]] == ["surface", "express"]


class TestEligibility:
    def test_weight_bounds(self):
        service = make_service(OWNER, "ekart", min_weight_kg=Decimal("0.5"), max_weight_kg=Decimal("10"))
        assert check_eligibility(service, Decimal("12"), "prepaid", Decimal("0"), None)[0] is False
        assert check_eligibility(service, Decimal("0.2"), "prepaid", Decimal("0"), None)[0] is False
        assert check_eligibility(service, Decimal("2"), "prepaid", Decimal("0"), None) == (True, None)

    def test_cod_value_limit(self):
        service = make_service(OWNER, "ekart", max_cod_value=Decimal("5000"))
        eligible, reason = check_eligibility(service, Decimal("1"), "cod", Decimal("6000"), None)
        assert eligible is False
        assert "COD" in reason
        assert check_eligibility(service, Decimal("1"), "prepaid", Decimal("6000"), None)[0] is True

    def test_payment_mode_support(self):
        service = make_service(OWNER, "velocity", payment_modes=["prepaid"])
        assert check_eligibility(service, Decimal("1"), "cod", Decimal("100"), None)[0] is False

    def test_zone_support(self):
        service = make_service(OWNER, "velocity", zone_support=["zone_a", "zone_b"])
        assert check_eligibility(service, Decimal("1"), "prepaid", Decimal("0"), "zonea")[0] is True
        assert check_eligibility(service, Decimal("1"), "prepaid", Decimal("0"), "zonee")[0] is False
