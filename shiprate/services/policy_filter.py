"""
Seller policy filtering and hard service eligibility.

Allow/block semantics: block always wins, an empty allow-list means
"everything allowed". Services match on their code or on
``provider:code``.
"""
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from shiprate.models.catalog import PaymentMode
from shiprate.schemas.catalog import SellerPolicy, ServiceCatalogEntry
from shiprate.services.zone_normalizer import zone_supported


def _service_keys(service: ServiceCatalogEntry) -> set:
    code = service.code.strip().lower()
    return {code, f"{service.provider.lower()}:{code}"}


def is_provider_allowed(policy: SellerPolicy, provider: str) -> bool:
    provider = provider.lower()
    if provider in policy.blocked_providers:
        return False
    return not policy.allowed_providers or provider in policy.allowed_providers


def is_service_allowed(policy: SellerPolicy, service: ServiceCatalogEntry) -> bool:
    if not is_provider_allowed(policy, service.provider):
        return False
    keys = _service_keys(service)
    if keys & set(policy.blocked_services):
        return False
    return not policy.allowed_services or bool(keys & set(policy.allowed_services))


def apply_policy(
    policy: SellerPolicy,
    services: List[ServiceCatalogEntry],
) -> List[ServiceCatalogEntry]:
    """Services the seller may be offered, in catalog order."""
    return [s for s in services if is_service_allowed(policy, s)]


def group_by_provider(services: List[ServiceCatalogEntry]) -> Dict[str, List[ServiceCatalogEntry]]:
    groups: Dict[str, List[ServiceCatalogEntry]] = {}
    for service in services:
        groups.setdefault(service.provider, []).append(service)
    return groups


def check_eligibility(
    service: ServiceCatalogEntry,
    weight_kg: Decimal,
    payment_mode: str,
    order_value: Decimal,
    zone: Optional[str],
) -> Tuple[bool, Optional[str]]:
    """
    Hard eligibility of a service for one shipment.

    Returns:
        Tuple of (eligible, reason when not eligible)
    """
    if service.min_weight_kg is not None and weight_kg < service.min_weight_kg:
        return False, f"weight {weight_kg} below minimum {service.min_weight_kg}"
    if service.max_weight_kg is not None and weight_kg > service.max_weight_kg:
        return False, f"weight {weight_kg} above maximum {service.max_weight_kg}"

    if payment_mode == PaymentMode.COD.value:
        if service.max_cod_value is not None and order_value > service.max_cod_value:
            return False, f"COD value {order_value} above {service.max_cod_value}"
    elif service.max_prepaid_value is not None and order_value > service.max_prepaid_value:
        return False, f"prepaid value {order_value} above {service.max_prepaid_value}"

    modes = [m.lower() for m in service.payment_modes]
    if modes and payment_mode not in modes:
        return False, f"payment mode {payment_mode} not supported"

    if not zone_supported(zone, service.zone_support):
        return False, f"zone {zone} not supported"

    return True, None
