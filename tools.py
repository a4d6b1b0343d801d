import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from errors import MissingFieldsError, NoRidersError, PersistenceError
from models import OrderDetails, OrderStatus, ShopSettings
from protocol import FunctionCall, ToolResponse
from scheduler import RiderScheduler

logger = logging.getLogger(__name__)

REQUIRED_ORDER_FIELDS = ["customerName", "address", "whatsappNumber", "items", "total", "paymentMethod"]

NO_ACTIVE_ORDER = "No active order found."
ORDER_IN_SYSTEM = "Order is in system. Check screen for status."


def create_function_declarations() -> List[Dict[str, Any]]:
    """Function declarations for Gemini function calling"""
    return [
        {
            "name": "placeOrder",
            "description": "Finalizes the pizza order once the customer has confirmed items, total, payment method, name, address and WhatsApp number.",
            "parameters": {
                "type": "OBJECT",
                "properties": {
                    "customerName": {"type": "STRING", "description": "Customer's name"},
                    "address": {"type": "STRING", "description": "Delivery address"},
                    "whatsappNumber": {"type": "STRING", "description": "Customer's WhatsApp number"},
                    "items": {
                        "type": "ARRAY",
                        "items": {"type": "STRING"},
                        "description": "One line per ordered item, e.g. '1x Large Chicken Tikka'",
                    },
                    "specialInstructions": {"type": "STRING", "description": "Optional special instructions"},
                    "total": {"type": "NUMBER", "description": "Order total in rupees"},
                    "paymentMethod": {"type": "STRING", "description": "'Cash on Delivery' or 'Card'"},
                },
                "required": REQUIRED_ORDER_FIELDS,
            },
        },
        {
            "name": "checkOrderStatus",
            "description": "Checks status of the order placed in this call.",
            "parameters": {"type": "OBJECT", "properties": {}},
        },
    ]


def _missing_fields(args: Dict[str, Any]) -> List[str]:
    missing = []
    for name in REQUIRED_ORDER_FIELDS:
        value = args.get(name)
        if value is None or (isinstance(value, (str, list)) and not value):
            missing.append(name)
    return missing


class ToolDispatcher:
    """Routes model function calls to order placement and status checks"""

    def __init__(
        self,
        settings: ShopSettings,
        scheduler: RiderScheduler,
        store,
        on_order_placed: Optional[Callable[[OrderDetails], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.settings = settings
        self.scheduler = scheduler
        self.store = store
        self.on_order_placed = on_order_placed
        self.on_error = on_error
        self.clock = clock
        self.order_placed = False
        self.current_order_id: Optional[str] = None
        self._placement_lock = asyncio.Lock()
        self._handlers = {
            "placeOrder": self._handle_place_order,
            "checkOrderStatus": self._handle_check_order_status,
        }

    def reset(self):
        self.order_placed = False
        self.current_order_id = None

    async def dispatch(self, call: FunctionCall) -> ToolResponse:
        """Run one function call; always returns exactly one response for it"""
        logger.info("Executing function: %s", call.name)
        handler = self._handlers.get(call.name)
        if handler is None:
            logger.warning("Unknown function requested: %s", call.name)
            return ToolResponse(call.id, call.name, {"error": f"Unknown function: {call.name}"})
        try:
            result = await handler(call.args)
        except Exception as e:
            logger.exception("Error executing %s", call.name)
            result = {"error": f"Error executing {call.name}: {e}"}
        return ToolResponse(call.id, call.name, result)

    async def _handle_place_order(self, args: Dict[str, Any]) -> Dict[str, Any]:
        try:
            order = await self.place_order(args)
        except MissingFieldsError as e:
            return {"error": str(e)}
        except NoRidersError as e:
            logger.error("Order not placed: %s", e)
            return {"error": "Orders cannot be delivered right now. Please ask the customer to call the shop."}
        except PersistenceError as e:
            logger.error("Failed to save order: %s", e)
            if self.on_error:
                self.on_error(PersistenceError.user_message)
            return {"error": "The order could not be saved. Apologize and ask the customer to try again."}
        return {
            "result": "OK",
            "orderId": order.id,
            "assignedRider": order.assigned_rider.name,
            "expectedDeliveryTime": order.expected_delivery_time.isoformat(timespec="minutes"),
        }

    async def _handle_check_order_status(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return {"result": self.check_order_status()}

    async def place_order(self, args: Dict[str, Any]) -> OrderDetails:
        missing = _missing_fields(args)
        if missing:
            raise MissingFieldsError(missing)

        items = [str(item) for item in args["items"]]
        # Rider slot is planned, stored and committed as one step per order
        async with self._placement_lock:
            now = self.clock()
            assignment = self.scheduler.plan(self.settings.riders, len(items), now)
            order = OrderDetails(
                customer_name=str(args["customerName"]),
                address=str(args["address"]),
                whatsapp_number=str(args["whatsappNumber"]),
                items=items,
                total=float(args["total"]),
                payment_method=str(args["paymentMethod"]),
                special_instructions=args.get("specialInstructions") or "None",
                order_timestamp=now,
                expected_delivery_time=assignment.expected_delivery_time,
                assigned_rider=assignment.rider,
                status=OrderStatus.PLACED,
            )
            order.id = await self.store.save(order)
            self.scheduler.commit(assignment)

        self.current_order_id = order.id
        self.order_placed = True
        logger.info("Order %s placed, rider %s", order.id, order.assigned_rider.name)
        if self.on_order_placed:
            try:
                self.on_order_placed(order)
            except Exception:
                logger.exception("on_order_placed callback failed for order %s", order.id)
        return order

    def check_order_status(self) -> str:
        if not self.current_order_id:
            return NO_ACTIVE_ORDER
        return ORDER_IN_SYSTEM
