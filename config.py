import logging
import os
from datetime import timedelta
from typing import List

from dotenv import load_dotenv

from models import Deal, MenuItem, ShopSettings

load_dotenv()

MODEL = "gemini-2.5-flash-native-audio-preview-09-2025"

# Available voices in Gemini Live API
VOICE_OPTIONS = ["Puck", "Charon", "Kore", "Fenrir", "Aoede", "Zephyr"]

PLACEHOLDER_KEYS = {"PLACEHOLDER_API_KEY", "PLACEHOLDER_GEMINI_API_KEY"}

AUDIO_CONFIG = {
    "send_sample_rate": 16000,
    "receive_sample_rate": 24000,
    "channels": 1,
    "block_size": 4096,
    "input_mime_type": "audio/pcm;rate=16000",
}

SESSION_CONFIG = {
    "connection_timeout": 10.0,
    "auto_close_delay": 2.0,
    "ban_duration": timedelta(hours=24),
    "cancellation_window": timedelta(minutes=5),
}

TERMINATION_TOKEN = "***TERMINATE_SESSION***"

# Matched case-insensitively against the model's turn after an order is placed
CLOSING_CUES = (
    "goodbye",
    "thank you",
    "allah hafiz",
    "khuda hafiz",
    "شکریہ",
    "اللہ حافظ",
    "خدا حافظ",
    "delivery",
)

SCHEDULER_CONFIG = {
    "base_prep": timedelta(minutes=10),
    "per_item_prep": timedelta(minutes=3),
    "base_travel": timedelta(minutes=15),
    "max_random_travel": timedelta(minutes=10),
    "base_cooldown": timedelta(minutes=5),
    "random_cooldown_range": timedelta(minutes=5),
}

DEFAULT_SHOP_ID = "cheesy_occean"

DEFAULT_SHOP = {
    "shop_info": {
        "name": "New Pizza Shop",
        "sales_desk_whatsapp": "+923000000000",
        "admin_key": "",
        "working_hours": {"start": "11:00", "end": "23:00"},
        "about": "We serve the best pizza in town with fresh ingredients and love.",
        "disclaimer": "Delivery times are estimates. Prices subject to change without notice.",
        "faqs": [
            {"question": "Do you offer home delivery?", "answer": "Yes, we deliver to selected zones."},
            {"question": "Is the meat Halal?", "answer": "Yes, 100% Halal certified."},
        ],
    },
    "pizzas": [
        {"name": "Chicken Tikka", "sizes": {"Regular": 950, "Large": 1400}},
        {"name": "Chicken Fajita", "sizes": {"Regular": 950, "Large": 1400}},
        {"name": "Margherita", "sizes": {"Regular": 850, "Large": 1200}},
        {"name": "Veggie Supreme", "sizes": {"Regular": 900, "Large": 1300}},
    ],
    "drinks": [
        {"name": "Coke", "sizes": {"Regular": 100, "Large": 150}},
        {"name": "Sprite", "sizes": {"Regular": 100, "Large": 150}},
        {"name": "Water", "sizes": {"Small": 60, "Large": 100}},
    ],
    "deals": [
        {"name": "Mega Deal", "description": "1 Large Pizza + 1.5L Drink", "price": 1500},
        {"name": "Family Feast", "description": "2 Large Pizzas + 2 Drinks", "price": 3200},
    ],
    "riders": [
        {"name": "Rider 1", "number": "0300-1111111"},
        {"name": "Rider 2", "number": "0300-2222222"},
    ],
    "allowed_zones": ["Downtown", "Gulshan", "DHA"],
}

SYSTEM_PROMPT = """
You are a friendly and fast AI voice assistant for a pizza shop named "{shop_name}". Your job is to take pizza orders over the phone. You speak English and Urdu and answer in the language the customer uses.

**CRITICAL RULES:**
1. **NO HINDI SCRIPT.** Use Urdu (Nastaliq) or English only.
2. **POLITENESS:** Be polite and keep answers short.
3. **VULGARITY:** Warn strictly if the customer is vulgar. If it is repeated, say Goodbye and output: {token}
4. **IRRELEVANCE:** Warn if the conversation goes off-topic. If it is repeated, output: {token}
5. **CONFIDENCE:** Never guess prices or menu items. If an item is not on the menu, say it is unavailable.

**Menu:**
Pizzas:
{pizzas}
Drinks:
{drinks}
Deals:
{deals}

**Flow:**
1. Greet as "{shop_name}".
2. Answer menu questions.
3. **Ask for Special Instructions**.
4. Confirm order & total.
5. Ask Payment Method, Name, Address, WhatsApp.
6. Call 'placeOrder'.
7. Tell the customer the expected delivery time and say goodbye.

## Available Functions:

1. **placeOrder(customerName, address, whatsappNumber, items, total, paymentMethod, specialInstructions=None):** Finalizes the order.
2. **checkOrderStatus():** Checks the status of the order placed in this call.
"""


def _format_menu_items(items: List[MenuItem]) -> str:
    if not items:
        return "None available"
    return "\n".join(
        f"- {item.name}: " + ", ".join(f"{size} (Rs.{price:g})" for size, price in item.sizes.items())
        for item in items
    )


def _format_deals(deals: List[Deal]) -> str:
    if not deals:
        return "None available"
    return "\n".join(f'- "{deal.name}": {deal.description}, only Rs.{deal.price:g}.' for deal in deals)


def build_system_instruction(settings: ShopSettings) -> str:
    """Render the system prompt for one shop"""
    instruction = SYSTEM_PROMPT.format(
        shop_name=settings.shop_info.name,
        token=TERMINATION_TOKEN,
        pizzas=_format_menu_items(settings.pizzas),
        drinks=_format_menu_items(settings.drinks),
        deals=_format_deals(settings.deals),
    )
    if settings.allowed_zones:
        instruction += f"\n**Delivery Zones:** {', '.join(settings.allowed_zones)}. Politely refuse addresses outside these zones.\n"
    return instruction


def get_shop_id() -> str:
    return os.getenv("SHOP_ID") or DEFAULT_SHOP_ID


def get_client_api_key():
    """Return a usable client-side Gemini key, or None when missing or a placeholder"""
    key = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
    if not key or key in PLACEHOLDER_KEYS:
        return None
    return key


def configure_logging(level=None):
    logging.basicConfig(
        level=(level or os.getenv("LOG_LEVEL", "INFO")).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
