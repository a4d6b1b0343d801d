import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from config import SCHEDULER_CONFIG
from errors import NoRidersError
from models import Rider

logger = logging.getLogger(__name__)


@dataclass
class Assignment:
    rider: Rider
    expected_delivery_time: datetime
    available_at: datetime


class RiderScheduler:
    """Greedy rider assignment over a process-lifetime availability table.

    A fresh scheduler treats every rider as available immediately. The table is
    written only by commit(), once the order is durably stored.
    """

    def __init__(self, rng: Optional[random.Random] = None, **overrides):
        self.rng = rng or random.Random()
        self.settings = {**SCHEDULER_CONFIG, **overrides}
        self.available_at: Dict[Rider, datetime] = {}

    def plan(self, riders: List[Rider], item_count: int, now: datetime) -> Assignment:
        if not riders:
            raise NoRidersError()

        # min() keeps the first rider on ties, so roster order breaks them
        rider = min(riders, key=lambda r: self.available_at.get(r, now))
        effective_available = max(self.available_at.get(rider, now), now)

        prep = self.settings["base_prep"] + item_count * self.settings["per_item_prep"]
        delivery_start = max(now + prep, effective_available)
        travel = self.settings["base_travel"] + self._jitter(self.settings["max_random_travel"])
        expected_delivery = delivery_start + travel
        cooldown = self.settings["base_cooldown"] + self._jitter(self.settings["random_cooldown_range"])

        return Assignment(rider=rider, expected_delivery_time=expected_delivery, available_at=expected_delivery + cooldown)

    def commit(self, assignment: Assignment):
        self.available_at[assignment.rider] = assignment.available_at
        logger.info(
            "Rider %s busy until %s", assignment.rider.name, assignment.available_at.isoformat(timespec="minutes")
        )

    def _jitter(self, span: timedelta) -> timedelta:
        return span * self.rng.random()
