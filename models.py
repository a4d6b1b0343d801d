from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from errors import OrderTransitionError


class SessionStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class Speaker(str, Enum):
    USER = "user"
    MODEL = "model"


class OrderStatus(str, Enum):
    PLACED = "Order Placed"
    PREPARING = "Preparing"
    OUT_FOR_DELIVERY = "Out for Delivery"
    DELIVERED = "Delivered"
    CANCELED = "Canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELED)

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


ORDER_FLOW = [
    OrderStatus.PLACED,
    OrderStatus.PREPARING,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
]
ACTIVE_STATUSES = (OrderStatus.PLACED, OrderStatus.PREPARING, OrderStatus.OUT_FOR_DELIVERY)


@dataclass
class Message:
    speaker: Speaker
    text: str


@dataclass(frozen=True)
class Rider:
    name: str
    number: str


@dataclass
class WorkingHours:
    start: str = "11:00"
    end: str = "23:00"

    def is_open(self, moment: datetime) -> bool:
        """Check a wall-clock time against the hours; end before start means the shop closes after midnight"""
        start = _parse_hhmm(self.start)
        end = _parse_hhmm(self.end)
        current = moment.hour * 60 + moment.minute
        if end < start:
            return current >= start or current <= end
        return start <= current <= end


def _parse_hhmm(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


@dataclass
class FAQItem:
    question: str
    answer: str


@dataclass
class ShopInfo:
    name: str
    sales_desk_whatsapp: str = ""
    admin_key: str = ""
    working_hours: Optional[WorkingHours] = field(default_factory=WorkingHours)
    about: str = ""
    disclaimer: str = ""
    faqs: List[FAQItem] = field(default_factory=list)


@dataclass
class MenuItem:
    name: str
    # size name -> price, e.g. {"Regular": 950, "Large": 1400}
    sizes: Dict[str, float] = field(default_factory=dict)


@dataclass
class Deal:
    name: str
    description: str
    price: float


@dataclass
class ShopSettings:
    shop_info: ShopInfo
    pizzas: List[MenuItem] = field(default_factory=list)
    drinks: List[MenuItem] = field(default_factory=list)
    deals: List[Deal] = field(default_factory=list)
    riders: List[Rider] = field(default_factory=list)
    allowed_zones: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ShopSettings":
        info = dict(data.get("shop_info") or {})
        hours = info.get("working_hours")
        info["working_hours"] = WorkingHours(**hours) if hours else None
        info["faqs"] = [FAQItem(**faq) for faq in info.get("faqs") or []]
        return cls(
            shop_info=ShopInfo(**info),
            pizzas=[MenuItem(**item) for item in data.get("pizzas") or []],
            drinks=[MenuItem(**item) for item in data.get("drinks") or []],
            deals=[Deal(**deal) for deal in data.get("deals") or []],
            riders=[Rider(**rider) for rider in data.get("riders") or []],
            allowed_zones=list(data.get("allowed_zones") or []),
        )


@dataclass
class OrderDetails:
    customer_name: str
    address: str
    whatsapp_number: str
    items: List[str]
    total: float
    payment_method: str
    order_timestamp: datetime
    assigned_rider: Rider
    expected_delivery_time: Optional[datetime] = None
    special_instructions: str = "None"
    status: OrderStatus = OrderStatus.PLACED
    id: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        """Serialize to a JSON-friendly dict (timestamps as ISO strings)"""
        return {
            "id": self.id,
            "customer_name": self.customer_name,
            "address": self.address,
            "whatsapp_number": self.whatsapp_number,
            "items": list(self.items),
            "total": self.total,
            "payment_method": self.payment_method,
            "special_instructions": self.special_instructions,
            "order_timestamp": self.order_timestamp.isoformat(),
            "expected_delivery_time": (
                self.expected_delivery_time.isoformat() if self.expected_delivery_time else None
            ),
            "assigned_rider": {"name": self.assigned_rider.name, "number": self.assigned_rider.number},
            "status": self.status.value,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "OrderDetails":
        expected = record.get("expected_delivery_time")
        return cls(
            id=str(record["id"]) if record.get("id") is not None else None,
            customer_name=record["customer_name"],
            address=record["address"],
            whatsapp_number=record["whatsapp_number"],
            items=list(record.get("items") or []),
            total=float(record["total"]),
            payment_method=record["payment_method"],
            special_instructions=record.get("special_instructions") or "None",
            order_timestamp=datetime.fromisoformat(record["order_timestamp"]),
            expected_delivery_time=datetime.fromisoformat(expected) if expected else None,
            assigned_rider=Rider(**record["assigned_rider"]),
            status=OrderStatus(record.get("status", OrderStatus.PLACED.value)),
        )


def can_transition(
    current: OrderStatus,
    new: OrderStatus,
    placed_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    cancellation_window: timedelta = timedelta(minutes=5),
) -> bool:
    """Orders only move forward; a freshly placed order may be canceled inside the window"""
    if current.is_terminal:
        return False
    if new == OrderStatus.CANCELED:
        if current != OrderStatus.PLACED:
            return False
        if placed_at is None or now is None:
            return True
        return now - placed_at < cancellation_window
    return ORDER_FLOW.index(new) > ORDER_FLOW.index(current)


def check_transition(current: OrderStatus, new: OrderStatus, **kwargs) -> None:
    if not can_transition(current, new, **kwargs):
        raise OrderTransitionError(current, new)
