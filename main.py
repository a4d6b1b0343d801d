import asyncio
import logging
import os

from supabase import create_client

from config import configure_logging
from flags import LocalFlags
from models import OrderDetails, SessionStatus
from session import LiveSessionController, SessionCallbacks
from store import InMemoryOrderStore, InMemorySettingsStore, SupabaseOrderStore, SupabaseSettingsStore
from tracking import CurrentOrderTracker

logger = logging.getLogger(__name__)


def create_stores():
    """Supabase when configured, otherwise process-memory stores"""
    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_ANON_KEY")
    if url and key:
        client = create_client(url, key)
        return SupabaseOrderStore(client), SupabaseSettingsStore(client)
    logger.warning("SUPABASE_URL/SUPABASE_ANON_KEY not set; orders will only be kept in memory")
    return InMemoryOrderStore(), InMemorySettingsStore()


class VoiceOrderingBot:
    def __init__(self):
        """Console front end for one ordering call"""
        self.order_store, self.settings_store = create_stores()
        self.flags = LocalFlags()
        self.tracker = CurrentOrderTracker(self.order_store, self.flags, on_update=self._on_order_update)
        self.controller = None
        self._ended = asyncio.Event()

    def _on_status(self, status: SessionStatus):
        print(f"[{status.value}]")
        if status in (SessionStatus.IDLE, SessionStatus.ERROR):
            self._ended.set()

    def _on_caption(self, is_user: bool, text: str):
        speaker = "You" if is_user else "Bot"
        print(f"\r{speaker} (live): {text}", end="", flush=True)

    def _on_complete(self, is_user: bool, text: str):
        speaker = "You" if is_user else "Bot"
        print(f"\r{speaker}: {text.strip()}")

    def _on_order_placed(self, order: OrderDetails):
        self.tracker.track(order)
        eta = order.expected_delivery_time.astimezone().strftime("%H:%M") if order.expected_delivery_time else "n/a"
        print(f"Order #{order.id} placed: {', '.join(order.items)} | Rs.{order.total:g} | rider {order.assigned_rider.name} | ETA {eta}")

    def _on_order_update(self, order: OrderDetails):
        print(f"Order #{order.id}: {order.status.value}")

    def _on_error(self, message: str):
        print(f"Error: {message}")

    async def start(self):
        settings = await self.settings_store.get()
        restored = self.tracker.restore()
        if restored:
            print(f"Tracking your order #{restored.id}: {restored.status.value}")

        self.controller = LiveSessionController(
            settings,
            self.order_store,
            self.flags,
            callbacks=SessionCallbacks(
                on_status_change=self._on_status,
                on_transcription_update=self._on_caption,
                on_transcription_complete=self._on_complete,
                on_order_placed=self._on_order_placed,
                on_error=self._on_error,
            ),
        )
        print(f"Welcome to {settings.shop_info.name}. Speak to place your order!")
        if not await self.controller.start():
            return
        await self._ended.wait()

    async def stop(self):
        if self.controller:
            await self.controller.stop()
        self.tracker.stop()


async def run():
    bot = VoiceOrderingBot()
    try:
        await bot.start()
    finally:
        await bot.stop()


if __name__ == "__main__":
    configure_logging()
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        print("\nGoodbye!")
