import json
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional

from config import SESSION_CONFIG
from models import OrderDetails

logger = logging.getLogger(__name__)

BANNED_UNTIL = "bannedUntil"
CURRENT_ORDER = "currentOrder"


def _epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


class LocalFlags:
    """Durable client-local key-value flags kept in a small JSON file"""

    def __init__(self, path=None):
        self.path = Path(path or os.getenv("LOCAL_FLAGS_PATH", ".voice_order_flags.json"))

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable flags file %s: %s", self.path, e)
            return {}

    def _write(self, data: Dict[str, str]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
        tmp.replace(self.path)

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str):
        data = self._load()
        data[key] = value
        self._write(data)

    def remove(self, key: str):
        data = self._load()
        if data.pop(key, None) is not None:
            self._write(data)

    # --- ban ---

    def banned_until(self) -> Optional[datetime]:
        value = self.get(BANNED_UNTIL)
        if not value:
            return None
        try:
            return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
        except ValueError:
            return None

    def is_banned(self, now: datetime) -> bool:
        until = self.banned_until()
        return until is not None and until > now

    def ban(self, now: datetime, duration: timedelta = SESSION_CONFIG["ban_duration"]) -> datetime:
        until = now + duration
        self.set(BANNED_UNTIL, str(_epoch_ms(until)))
        logger.warning("Client banned until %s", until.isoformat(timespec="minutes"))
        return until

    # --- current order snapshot ---

    def save_current_order(self, order: OrderDetails):
        self.set(CURRENT_ORDER, json.dumps(order.to_record(), ensure_ascii=False))

    def load_current_order(self) -> Optional[OrderDetails]:
        """Restore the snapshot if it is still an active order; drop it otherwise"""
        raw = self.get(CURRENT_ORDER)
        if not raw:
            return None
        try:
            order = OrderDetails.from_record(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Dropping corrupt current order snapshot: %s", e)
            self.remove(CURRENT_ORDER)
            return None
        if not order.status.is_active:
            self.remove(CURRENT_ORDER)
            return None
        return order

    def clear_current_order(self):
        self.remove(CURRENT_ORDER)
