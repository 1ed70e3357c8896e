from typing import List, Optional
from motor.motor_asyncio import AsyncIOMotorDatabase

from checkout_service.errors import RegionNotFound
from checkout_service.models import ShippingRegionDB
from checkout_service.money import to_minor


class ShippingRegionRepository:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.regions = db.shipping_regions

    async def get(self, region_id: str) -> Optional[ShippingRegionDB]:
        doc = await self.regions.find_one({"_id": region_id})
        return ShippingRegionDB(**doc) if doc else None

    async def get_by_code(self, code: str) -> Optional[ShippingRegionDB]:
        doc = await self.regions.find_one({"code": code, "active": True})
        return ShippingRegionDB(**doc) if doc else None

    async def list_active(self) -> List[ShippingRegionDB]:
        cursor = self.regions.find({"active": True}).sort("name", 1)
        return [ShippingRegionDB(**doc) async for doc in cursor]

    async def get_by_country(self, country: str) -> Optional[ShippingRegionDB]:
        """Active region listing the ISO country; else an active region with no country list (rest of world)."""
        doc = await self.regions.find_one({"countries": country.upper(), "active": True})
        if doc is None:
            doc = await self.regions.find_one({"countries": {"$size": 0}, "active": True})
        return ShippingRegionDB(**doc) if doc else None


class ShippingCalculator:
    def __init__(self, regions: ShippingRegionRepository):
        self.regions = regions

    @staticmethod
    def cost(region: ShippingRegionDB, subtotal: int) -> int:
        """Shipping cost in minor units for a subtotal in minor units."""
        threshold = region.free_shipping_threshold
        # a zero threshold means "no free shipping", not "always free"
        if threshold and subtotal >= to_minor(threshold):
            return 0
        return to_minor(region.base_cost)

    async def resolve(self, region_id: Optional[str]) -> Optional[ShippingRegionDB]:
        if not region_id:
            return None
        region = await self.regions.get(region_id)
        if region is None or not region.active:
            raise RegionNotFound(f"Shipping region '{region_id}' not found")
        return region

    async def cost_for(self, region_id: Optional[str], subtotal: int) -> int:
        """Cost for an optional region id; no region selected yet prices shipping at zero."""
        region = await self.resolve(region_id)
        if region is None:
            return 0
        return self.cost(region, subtotal)
