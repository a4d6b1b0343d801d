import asyncio
import logging
import os
import secrets
import string
import copy
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from dotenv import load_dotenv
from supabase import create_client, Client

from config import DEFAULT_SHOP, SESSION_CONFIG, get_shop_id
from errors import PersistenceError
from models import OrderDetails, OrderStatus, ShopSettings, check_transition

load_dotenv()

logger = logging.getLogger(__name__)

OrdersCallback = Callable[[List[OrderDetails]], None]
OrderCallback = Callable[[OrderDetails], None]
Unsubscribe = Callable[[], None]


def active_oldest_first(orders: List[OrderDetails]) -> List[OrderDetails]:
    return sorted((o for o in orders if o.status.is_active), key=lambda o: o.order_timestamp)


def _check_status_change(order: OrderDetails, status: OrderStatus, now: Optional[datetime] = None):
    check_transition(
        order.status,
        status,
        placed_at=order.order_timestamp,
        now=now or datetime.now(timezone.utc),
        cancellation_window=SESSION_CONFIG["cancellation_window"],
    )


def generate_admin_key(length: int = 12) -> str:
    chars = string.ascii_letters + string.digits
    return "".join(secrets.choice(chars) for _ in range(length))


def new_shop_settings(shop_id: str) -> ShopSettings:
    """Settings for a shop seen for the first time"""
    data = copy.deepcopy(DEFAULT_SHOP)
    data["shop_info"]["name"] = " ".join(word.capitalize() for word in shop_id.split("_"))
    if not data["shop_info"].get("admin_key"):
        data["shop_info"]["admin_key"] = generate_admin_key()
        logger.info("Generated admin key for new shop [%s] (value not logged)", shop_id)
    return ShopSettings.from_dict(data)


class InMemoryOrderStore:
    """Order store kept in process memory; listeners are pushed synchronously on every change"""

    def __init__(self):
        self.orders: Dict[str, OrderDetails] = {}
        self._next_id = 1
        self._active_listeners: List[OrdersCallback] = []
        self._order_listeners: Dict[str, List[OrderCallback]] = {}

    async def save(self, order: OrderDetails) -> str:
        order_id = str(self._next_id)
        self._next_id += 1
        stored = copy.deepcopy(order)
        stored.id = order_id
        self.orders[order_id] = stored
        self._notify(stored)
        return order_id

    async def update_status(self, order_id: str, status: OrderStatus, now: Optional[datetime] = None):
        order = self.orders.get(order_id)
        if order is None:
            raise PersistenceError(f"Order {order_id} not found")
        _check_status_change(order, status, now)
        order.status = status
        self._notify(order)

    async def get(self, order_id: str) -> Optional[OrderDetails]:
        order = self.orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def get_history(self) -> List[OrderDetails]:
        return sorted((copy.deepcopy(o) for o in self.orders.values()), key=lambda o: o.order_timestamp, reverse=True)

    def listen_active(self, callback: OrdersCallback) -> Unsubscribe:
        self._active_listeners.append(callback)
        callback(active_oldest_first(list(self.orders.values())))
        return lambda: self._active_listeners.remove(callback)

    def listen_one(self, order_id: str, callback: OrderCallback) -> Unsubscribe:
        listeners = self._order_listeners.setdefault(order_id, [])
        listeners.append(callback)
        if order_id in self.orders:
            callback(copy.deepcopy(self.orders[order_id]))
        return lambda: listeners.remove(callback)

    def _notify(self, order: OrderDetails):
        active = active_oldest_first(list(self.orders.values()))
        for callback in list(self._active_listeners):
            callback(active)
        for callback in list(self._order_listeners.get(order.id, [])):
            callback(copy.deepcopy(order))


class SupabaseOrderStore:
    """Orders in the Supabase `orders` table, scoped by shop id"""

    def __init__(self, client: Optional[Client] = None, shop_id: Optional[str] = None, poll_interval: float = 2.0):
        if client is None:
            supabase_url = os.getenv("SUPABASE_URL")
            supabase_key = os.getenv("SUPABASE_ANON_KEY")
            if not supabase_url or not supabase_key:
                raise ValueError("SUPABASE_URL and SUPABASE_ANON_KEY must be set in environment variables")
            client = create_client(supabase_url, supabase_key)

        self.supabase: Client = client
        self.shop_id = shop_id or get_shop_id()
        self.poll_interval = poll_interval

    def _insert(self, record: dict):
        response = self.supabase.table("orders").insert(record).execute()
        if not response.data:
            raise PersistenceError("Order insert returned no rows")
        return str(response.data[0]["id"])

    def _select(self, order_id: Optional[str] = None, limit: Optional[int] = None):
        query = self.supabase.table("orders").select("*").eq("shop_id", self.shop_id)
        if order_id is not None:
            query = query.eq("id", order_id)
        query = query.order("order_timestamp", desc=True)
        if limit:
            query = query.limit(limit)
        return [OrderDetails.from_record(row) for row in query.execute().data]

    async def save(self, order: OrderDetails) -> str:
        record = order.to_record()
        record.pop("id")
        record["shop_id"] = self.shop_id
        try:
            return await asyncio.to_thread(self._insert, record)
        except PersistenceError:
            raise
        except Exception as e:
            logger.error("Error adding order: %s", e)
            raise PersistenceError() from e

    async def get(self, order_id: str) -> Optional[OrderDetails]:
        try:
            rows = await asyncio.to_thread(self._select, order_id)
        except Exception as e:
            logger.error("Error fetching order %s: %s", order_id, e)
            raise PersistenceError() from e
        return rows[0] if rows else None

    async def update_status(self, order_id: str, status: OrderStatus, now: Optional[datetime] = None):
        order = await self.get(order_id)
        if order is None:
            raise PersistenceError(f"Order {order_id} not found")
        _check_status_change(order, status, now)
        try:
            await asyncio.to_thread(
                lambda: self.supabase.table("orders")
                .update({"status": status.value})
                .eq("shop_id", self.shop_id)
                .eq("id", order_id)
                .execute()
            )
        except Exception as e:
            logger.error("Error updating order status: %s", e)
            raise PersistenceError() from e

    async def get_history(self) -> List[OrderDetails]:
        try:
            return await asyncio.to_thread(self._select)
        except Exception as e:
            logger.error("Error fetching order history: %s", e)
            raise PersistenceError() from e

    def listen_active(self, callback: OrdersCallback) -> Unsubscribe:
        async def poll():
            recent = await asyncio.to_thread(self._select, None, 50)
            callback(active_oldest_first(recent))

        return self._poll_forever(poll, "active orders")

    def listen_one(self, order_id: str, callback: OrderCallback) -> Unsubscribe:
        async def poll():
            rows = await asyncio.to_thread(self._select, order_id)
            if rows:
                callback(rows[0])

        return self._poll_forever(poll, f"order {order_id}")

    def _poll_forever(self, poll, label: str) -> Unsubscribe:
        async def loop():
            while True:
                try:
                    await poll()
                except Exception as e:
                    logger.error("Error listening to %s: %s", label, e)
                await asyncio.sleep(self.poll_interval)

        task = asyncio.create_task(loop())
        return task.cancel


class InMemorySettingsStore:
    def __init__(self, settings: Optional[ShopSettings] = None, shop_id: Optional[str] = None):
        self.settings = settings or new_shop_settings(shop_id or get_shop_id())

    async def get(self) -> ShopSettings:
        return copy.deepcopy(self.settings)

    async def save(self, settings: ShopSettings):
        self.settings = copy.deepcopy(settings)


class SupabaseSettingsStore:
    """Shop settings as one JSON document per shop in `shop_settings`"""

    def __init__(self, client: Client, shop_id: Optional[str] = None):
        self.supabase = client
        self.shop_id = shop_id or get_shop_id()

    async def get(self) -> ShopSettings:
        try:
            response = await asyncio.to_thread(
                lambda: self.supabase.table("shop_settings").select("data").eq("shop_id", self.shop_id).execute()
            )
        except Exception as e:
            logger.error("Error fetching settings for shop [%s]: %s", self.shop_id, e)
            raise PersistenceError("Could not load app settings.") from e

        if response.data:
            return ShopSettings.from_dict(response.data[0]["data"])

        logger.info("Shop [%s] not found. Creating new shop instance...", self.shop_id)
        settings = new_shop_settings(self.shop_id)
        await self.save(settings)
        return settings

    async def save(self, settings: ShopSettings):
        try:
            await asyncio.to_thread(
                lambda: self.supabase.table("shop_settings")
                .upsert({"shop_id": self.shop_id, "data": settings.to_dict()})
                .execute()
            )
        except Exception as e:
            logger.error("Error saving settings for shop [%s]: %s", self.shop_id, e)
            raise PersistenceError("Could not save settings.") from e
