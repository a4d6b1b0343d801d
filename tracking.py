import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from config import SESSION_CONFIG
from errors import OrderTransitionError, PersistenceError
from flags import LocalFlags
from models import OrderDetails, OrderStatus

logger = logging.getLogger(__name__)


class CurrentOrderTracker:
    """Follows the customer's current order across restarts"""

    def __init__(
        self,
        store,
        flags: LocalFlags,
        on_update: Optional[Callable[[OrderDetails], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        cancellation_window: timedelta = SESSION_CONFIG["cancellation_window"],
    ):
        self.store = store
        self.flags = flags
        self.on_update = on_update
        self.on_error = on_error
        self.cancellation_window = cancellation_window
        self.order: Optional[OrderDetails] = None
        self._unsubscribe = None

    def restore(self) -> Optional[OrderDetails]:
        order = self.flags.load_current_order()
        if order is not None and order.id:
            self.track(order)
        return order

    def track(self, order: OrderDetails):
        self.stop()
        self.order = order
        self.flags.save_current_order(order)
        self._unsubscribe = self.store.listen_one(order.id, self._handle_update)

    def _handle_update(self, order: OrderDetails):
        self.order = order
        if order.status.is_terminal:
            self.flags.clear_current_order()
        else:
            self.flags.save_current_order(order)
        if self.on_update:
            self.on_update(order)

    def time_remaining_for_cancellation(self, now: datetime) -> timedelta:
        if self.order is None or self.order.status != OrderStatus.PLACED:
            return timedelta(0)
        return max(self.cancellation_window - (now - self.order.order_timestamp), timedelta(0))

    def can_cancel(self, now: datetime) -> bool:
        return self.time_remaining_for_cancellation(now) > timedelta(0)

    async def cancel(self, now: datetime) -> bool:
        if self.order is None:
            return False
        try:
            await self.store.update_status(self.order.id, OrderStatus.CANCELED, now=now)
        except (PersistenceError, OrderTransitionError) as e:
            logger.error("Failed to cancel order %s: %s", self.order.id, e)
            if self.on_error:
                self.on_error("Could not cancel order.")
            return False
        return True

    def stop(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
