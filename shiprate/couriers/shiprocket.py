"""
Shiprocket gateway adapter.

Couriers routed through Shiprocket (Delhivery, Ekart, ...) share one API;
each adapter instance is bound to one provider code and filters the
gateway's courier list by courier name.

Booking is three calls: order create -> AWB assign -> pickup request.
Once the AWB is assigned any later failure is reported with the AWB
attached so the booking saga compensates post-dispatch.

API Docs: https://apidocs.shiprocket.in/
"""
import httpx
import logging
from decimal import Decimal
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from shiprate.config import settings
from shiprate.core.exceptions import ProviderError, ProviderTimeout
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
from shiprate.couriers.circuit_breaker import CircuitBreaker
from shiprate.models.catalog import PaymentMode
from shiprate.services.cache_service import CacheService, get_cache

logger = logging.getLogger(__name__)

SHIPROCKET_TOKEN_TTL = 86400  # 24 hours (token valid for 10 days, refresh daily)


class ShiprocketAdapter(CourierAdapter):
    """
    Usage:
        adapter = ShiprocketAdapter("delhivery", courier_name="Delhivery")
        lane = await adapter.check_serviceability("110001", "560001", Decimal("0.5"), "prepaid")
        booking = await adapter.create_shipment(request)
    """

    capabilities = frozenset({
        Capability.SERVICEABILITY,
        Capability.LIVE_RATE,
        Capability.CREATE_SHIPMENT,
        Capability.CANCEL_SHIPMENT,
        Capability.TRACK,
    })

    def __init__(
        self,
        provider: str,
        courier_name: str,
        base_url: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
        cache: Optional[CacheService] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.provider = provider
        super().__init__(circuit_breaker)
        self.courier_name = courier_name
        self.base_url = (base_url or settings.SHIPROCKET_API_URL).rstrip("/")
        self.email = email if email is not None else settings.SHIPROCKET_EMAIL
        self.password = password if password is not None else settings.SHIPROCKET_PASSWORD
        self.cache = cache or get_cache()
        self.timeout = timeout
        self._transport = transport

    @property
    def _token_cache_key(self) -> str:
        return f"shiprocket:auth_token:{self.email}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self.timeout)

    async def _get_token(self) -> str:
        """Get authentication token (cached across adapters for the same account)."""
        cached_token = await self.cache.get_global(self._token_cache_key)
        if cached_token:
            return cached_token

        async with self._client() as client:
            try:
                response = await client.post(
                    f"{self.base_url}/auth/login",
                    json={"email": self.email, "password": self.password},
                )
            except httpx.TimeoutException:
                raise ProviderTimeout(self.provider, self.timeout)
            except httpx.HTTPError as e:
                raise ProviderError(self.provider, f"Shiprocket auth request failed: {e}")

        if response.status_code != 200:
            logger.error(f"Shiprocket auth failed: {response.text}")
            raise ProviderError(
                self.provider,
                f"Shiprocket authentication failed: {response.status_code}",
                provider_status=response.status_code,
            )

        token = response.json().get("token")
        if not token:
            raise ProviderError(self.provider, "No token in Shiprocket auth response")

        await self.cache.set_global(self._token_cache_key, token, ttl=SHIPROCKET_TOKEN_TTL)
        return token

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
        retry_auth: bool = True,
    ) -> Dict:
        """Make authenticated request to Shiprocket API."""
        token = await self._get_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        url = f"{self.base_url}/{endpoint.lstrip('/')}"

        async with self._client() as client:
            try:
                response = await client.request(
                    method.upper(), url, headers=headers, json=data, params=params
                )
            except httpx.TimeoutException:
                raise ProviderTimeout(self.provider, self.timeout)
            except httpx.HTTPError as e:
                raise ProviderError(self.provider, f"Shiprocket request failed: {e}")

        if response.status_code == 401 and retry_auth:
            # Token revoked or expired early: log in again once
            await self.cache.delete_global(self._token_cache_key)
            return await self._request(method, endpoint, data, params, retry_auth=False)

        if response.status_code >= 400:
            logger.error(f"Shiprocket API error: {response.status_code} - {response.text}")
            try:
                error_data = response.json() if response.text else {}
            except ValueError:
                error_data = {}
            raise ProviderError(
                self.provider,
                error_data.get("message", response.text) or f"HTTP {response.status_code}",
                provider_status=response.status_code,
                details={"errors": error_data.get("errors", {})},
            )

        return response.json() if response.text else {}

    # ==================== COURIER SERVICEABILITY ====================

    async def _available_couriers(
        self,
        origin_pincode: str,
        destination_pincode: str,
        weight_kg: Decimal,
        payment_mode: str,
        order_value: Decimal = Decimal("0"),
    ) -> List[Dict[str, Any]]:
        """Gateway couriers on this lane that belong to this provider."""
        cod = payment_mode == PaymentMode.COD.value
        params = {
            "pickup_postcode": origin_pincode,
            "delivery_postcode": destination_pincode,
            "weight": float(weight_kg),
            "cod": 1 if cod else 0,
        }
        if cod and order_value:
            params["declared_value"] = float(order_value)

        result = await self._request("GET", "/courier/serviceability/", params=params)
        available = result.get("data", {}).get("available_courier_companies", []) or []
        prefix = self.courier_name.lower()
        return [c for c in available if str(c.get("courier_name", "")).lower().startswith(prefix)]

    def _pick_courier(self, couriers: List[Dict[str, Any]], service_code: str) -> Optional[Dict[str, Any]]:
        if not couriers:
            return None
        wanted = service_code.replace("_", " ").lower()
        for courier in couriers:
            if wanted in str(courier.get("courier_name", "")).lower():
                return courier
        return min(couriers, key=lambda c: float(c.get("rate", 0) or 0))

    async def check_serviceability(
        self,
        origin_pincode: str,
        destination_pincode: str,
        weight_kg: Decimal,
        payment_mode: str,
    ) -> ServiceabilityResult:
        async def run():
            couriers = await self._available_couriers(
                origin_pincode, destination_pincode, weight_kg, payment_mode
            )
            if not couriers:
                return ServiceabilityResult(serviceable=False)
            first = couriers[0]
            zone = first.get("zone") or None
            eta = first.get("estimated_delivery_days")
            return ServiceabilityResult(
                serviceable=True,
                zone=zone,
                confidence="high" if zone else "medium",
                eta_days=int(eta) if eta else None,
            )

        return await self._call("serviceability", run)

    async def get_rate(self, request: RateRequest) -> Optional[RateQuote]:
        async def run():
            couriers = await self._available_couriers(
                request.origin_pincode,
                request.destination_pincode,
                request.weight_kg,
                request.payment_mode,
                request.order_value,
            )
            courier = self._pick_courier(couriers, request.service_code)
            if courier is None or courier.get("rate") is None:
                return None
            eta = courier.get("estimated_delivery_days")
            return RateQuote(
                amount=Decimal(str(courier["rate"])),
                eta_days=int(eta) if eta else None,
                raw=courier,
            )

        return await self._call("live_rate", run)

    # ==================== BOOKING ====================

    def _order_payload(self, request: ShipmentRequest) -> Dict[str, Any]:
        pickup = request.pickup_address
        delivery = request.delivery_address
        order_items = [
            {
                "name": item.get("name"),
                "sku": item.get("sku"),
                "units": item.get("units", 1),
                "selling_price": str(item.get("selling_price", 0)),
            }
            for item in request.items
        ]
        payload = {
            "order_id": request.order_reference,
            "order_date": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M"),
            "pickup_location": request.pickup_location or settings.SHIPROCKET_DEFAULT_PICKUP_LOCATION,
            "billing_customer_name": delivery.get("name"),
            "billing_last_name": "",
            "billing_address": delivery.get("address"),
            "billing_address_2": delivery.get("address_2", ""),
            "billing_city": delivery.get("city"),
            "billing_pincode": delivery.get("pincode"),
            "billing_state": delivery.get("state"),
            "billing_country": delivery.get("country", "India"),
            "billing_email": delivery.get("email", ""),
            "billing_phone": delivery.get("phone"),
            "shipping_is_billing": True,
            "order_items": order_items,
            "payment_method": "COD" if request.payment_mode == PaymentMode.COD.value else "Prepaid",
            "sub_total": float(request.order_value),
            "length": float(request.length_cm or 10),
            "breadth": float(request.width_cm or 10),
            "height": float(request.height_cm or 10),
            "weight": float(request.weight_kg),
        }
        if pickup.get("pincode"):
            payload["pickup_postcode"] = pickup.get("pincode")
        return payload

    async def create_shipment(self, request: ShipmentRequest) -> ShipmentBooking:
        async def run():
            couriers = await self._available_couriers(
                request.pickup_address.get("pincode"),
                request.delivery_address.get("pincode"),
                request.weight_kg,
                request.payment_mode,
                request.order_value,
            )
            courier = self._pick_courier(couriers, request.service_code)
            if courier is None:
                raise ProviderError(
                    self.provider,
                    f"No {self.courier_name} courier serves this lane",
                    provider_status=422,
                )

            order = await self._request("POST", "/orders/create/adhoc", data=self._order_payload(request))
            sr_shipment_id = order.get("shipment_id")
            if not sr_shipment_id:
                raise ProviderError(self.provider, "Shiprocket order created without shipment id")

            assign = await self._request("POST", "/courier/assign/awb", data={
                "shipment_id": sr_shipment_id,
                "courier_id": courier.get("courier_company_id"),
            })
            awb_data = assign.get("response", {}).get("data", {})
            awb = awb_data.get("awb_code")
            if not awb:
                raise ProviderError(self.provider, "AWB assignment returned no AWB code")

            logger.info(f"AWB {awb} assigned for Shiprocket shipment {sr_shipment_id}")

            try:
                await self._request("POST", "/courier/generate/pickup", data={
                    "shipment_id": [sr_shipment_id]
                })
            except ProviderError as e:
                raise ProviderError(
                    self.provider,
                    f"Pickup request failed after AWB {awb}: {e.message}",
                    provider_status=e.provider_status,
                    tracking_id=awb,
                )

            label_ref = None
            try:
                label = await self._request("POST", "/courier/generate/label", data={
                    "shipment_id": [sr_shipment_id]
                })
                label_ref = label.get("label_url")
            except ProviderError as e:
                logger.warning(f"Label generation failed for AWB {awb}: {e.message}")

            return ShipmentBooking(
                tracking_id=awb,
                label_ref=label_ref,
                carrier_reference={
                    "gateway": "shiprocket",
                    "order_id": order.get("order_id"),
                    "shipment_id": sr_shipment_id,
                    "courier_id": courier.get("courier_company_id"),
                    "courier_name": courier.get("courier_name"),
                },
            )

        return await self._call("create_shipment", run)

    async def cancel_shipment(self, tracking_id: str) -> bool:
        async def run():
            await self._request("POST", "/orders/cancel/shipment/awbs", data={"awbs": [tracking_id]})
            logger.info(f"Cancelled AWB {tracking_id} via Shiprocket")
            return True

        return await self._call("cancel_shipment", run)

    # ==================== TRACKING ====================

    async def track(self, tracking_id: str) -> List[TrackingEvent]:
        async def run():
            result = await self._request("GET", f"/courier/track/awb/{tracking_id}")
            tracking_data = result.get("tracking_data", {})
            activities = tracking_data.get("shipment_track_activities", []) or []
            return [
                TrackingEvent(
                    status=act.get("sr-status-label") or act.get("activity", ""),
                    occurred_at=act.get("date"),
                    location=act.get("location"),
                    description=act.get("activity"),
                )
                for act in activities
            ]

        return await self._call("track", run)
