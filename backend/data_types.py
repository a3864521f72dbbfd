"""
Data Types - catalog of placeholder content the populator can generate

Local types are produced by Faker and are deterministic for a given seed.
External types (avatars, product data, Unsplash photos) are fetched by the
Delegate Surface through data_providers; they appear here so the catalog
sent to the UI is complete.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from faker import Faker

logger = logging.getLogger(__name__)

CATEGORY_TEXT = "text"
CATEGORY_NUMBER = "number"
CATEGORY_IMAGE = "image"
CATEGORY_COLOR = "color"
CATEGORIES = (CATEGORY_TEXT, CATEGORY_NUMBER, CATEGORY_IMAGE, CATEGORY_COLOR)

UNKNOWN_DATA_TYPE_VALUE = "Unknown data type"

Generator = Callable[[Faker, Dict[str, Any]], str]


@dataclass(frozen=True)
class DataType:
    id: str
    name: str
    category: str
    generator: Optional[Generator] = None  # None → fetched by an external provider

    @property
    def is_external(self) -> bool:
        return self.generator is None

    def to_payload(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "category": self.category, "external": self.is_external}


# ============================================
# ============ LOCAL GENERATORS ==============
# ============================================

_PRODUCT_ADJECTIVES = ["Ergonomic", "Rustic", "Sleek", "Handcrafted", "Smart", "Practical", "Refined", "Gorgeous"]
_PRODUCT_MATERIALS = ["Steel", "Wooden", "Cotton", "Granite", "Rubber", "Bamboo", "Plastic", "Leather"]
_PRODUCT_NOUNS = ["Chair", "Keyboard", "Lamp", "Backpack", "Watch", "Bottle", "Speaker", "Sneakers"]


def _integer(fake: Faker, options: Dict[str, Any]) -> str:
    low = int(options.get("min", 1))
    high = int(options.get("max", 1000))
    if low > high:
        low, high = high, low
    return str(fake.random_int(min=low, max=high))


def _decimal(fake: Faker, options: Dict[str, Any]) -> str:
    low = float(options.get("min", 0))
    high = float(options.get("max", 100))
    digits = int(options.get("decimals", 2))
    return f"{fake.random.uniform(low, high):.{digits}f}"


def _currency(fake: Faker, options: Dict[str, Any]) -> str:
    symbol = options.get("symbol", "$")
    low = float(options.get("min", 1))
    high = float(options.get("max", 999))
    return f"{symbol}{fake.random.uniform(low, high):.2f}"


def _date(fake: Faker, options: Dict[str, Any]) -> str:
    fmt = options.get("format", "%m/%d/%Y")
    return fake.date_between(start_date="-1y", end_date="today").strftime(fmt)


def _product_name(fake: Faker, options: Dict[str, Any]) -> str:
    return " ".join(
        fake.random_element(words) for words in (_PRODUCT_ADJECTIVES, _PRODUCT_MATERIALS, _PRODUCT_NOUNS)
    )


LOCAL_DATA_TYPES: List[DataType] = [
    # Text types
    DataType("name", "Names", CATEGORY_TEXT, lambda f, o: f.name()),
    DataType("username", "Usernames", CATEGORY_TEXT, lambda f, o: f.user_name()),
    DataType("city", "Cities", CATEGORY_TEXT, lambda f, o: f.city()),
    DataType("country", "Countries", CATEGORY_TEXT, lambda f, o: f.country()),
    DataType("post_title", "Post Titles", CATEGORY_TEXT, lambda f, o: f.sentence().rstrip(".")),
    DataType("description", "Descriptions", CATEGORY_TEXT, lambda f, o: f.paragraph()),
    DataType("lorem", "Lorem Ipsum", CATEGORY_TEXT, lambda f, o: " ".join(f.words(int(o.get("words", 3))))),
    DataType("product_name", "Product Names", CATEGORY_TEXT, _product_name),
    DataType("company", "Company Names", CATEGORY_TEXT, lambda f, o: f.company()),
    DataType("email", "Email Addresses", CATEGORY_TEXT, lambda f, o: f.email()),
    # Number types
    DataType("integer", "Integers", CATEGORY_NUMBER, _integer),
    DataType("decimal", "Decimals", CATEGORY_NUMBER, _decimal),
    DataType("currency", "Currency", CATEGORY_NUMBER, _currency),
    DataType("date", "Dates", CATEGORY_NUMBER, _date),
    DataType("phone", "Phone Numbers", CATEGORY_NUMBER, lambda f, o: f.phone_number()),
    DataType("percentage", "Percentages", CATEGORY_NUMBER, lambda f, o: f"{f.random_int(min=0, max=100)}%"),
    # Image types (URLs built locally)
    DataType(
        "avatar", "Avatars", CATEGORY_IMAGE,
        lambda f, o: f"https://api.dicebear.com/7.x/avataaars/png?seed={f.uuid4()}",
    ),
    DataType(
        "avatar_pravatar", "Avatar (Pravatar)", CATEGORY_IMAGE,
        lambda f, o: f"https://i.pravatar.cc/300?u={f.uuid4()}",
    ),
    DataType(
        "avatar_robohash", "Avatar (RoboHash)", CATEGORY_IMAGE,
        lambda f, o: f"https://robohash.org/{f.uuid4()}.png?size=300x300",
    ),
    DataType(
        "random_image", "Random Images", CATEGORY_IMAGE,
        lambda f, o: f"https://picsum.photos/400/300?random={f.random_int(min=1, max=1000)}",
    ),
    DataType(
        "product_image", "Product Images", CATEGORY_IMAGE,
        lambda f, o: f"https://picsum.photos/seed/{f.word()}-{f.random_int(min=1, max=9999)}/400/300",
    ),
    # Color types
    DataType("hex_color", "Hex Colors", CATEGORY_COLOR, lambda f, o: f.hex_color()),
    DataType("rgb_color", "RGB Colors", CATEGORY_COLOR, lambda f, o: f.rgb_css_color()),
]

UNSPLASH_CATEGORIES: Dict[str, str] = {
    "nature": "nature landscape",
    "people": "people portrait",
    "business": "business office",
    "technology": "technology computer",
    "food": "food cooking",
    "travel": "travel vacation",
    "abstract": "abstract pattern",
    "architecture": "architecture building",
    "sports": "sports fitness",
    "animals": "animals wildlife",
}

EXTERNAL_DATA_TYPES: List[DataType] = [
    DataType("avatar_randomuser", "Avatar (RandomUser)", CATEGORY_IMAGE),
    DataType("product_dummyjson", "Product (DummyJSON)", CATEGORY_TEXT),
    DataType("product_image_dummyjson", "Product Image (DummyJSON)", CATEGORY_IMAGE),
] + [
    DataType(f"unsplash_{key}", f"{key.title()} Photos (Unsplash)", CATEGORY_IMAGE)
    for key in UNSPLASH_CATEGORIES
]

ALL_DATA_TYPES: Dict[str, DataType] = {dt.id: dt for dt in LOCAL_DATA_TYPES + EXTERNAL_DATA_TYPES}


def get_data_type(data_type_id: str) -> Optional[DataType]:
    return ALL_DATA_TYPES.get(data_type_id)


def data_types_by_category() -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {category: [] for category in CATEGORIES}
    for data_type in ALL_DATA_TYPES.values():
        grouped[data_type.category].append(data_type.to_payload())
    return grouped


def is_image_type(data_type_id: str) -> bool:
    data_type = get_data_type(data_type_id)
    if data_type is not None:
        return data_type.category == CATEGORY_IMAGE
    return any(marker in data_type_id for marker in ("image", "avatar", "unsplash"))


def is_color_type(data_type_id: str) -> bool:
    data_type = get_data_type(data_type_id)
    return data_type is not None and data_type.category == CATEGORY_COLOR


class LocalDataGenerator:
    """Faker-backed generator; a fixed seed makes every batch reproducible."""

    def __init__(self, seed: Optional[int] = None, locale: str = "en_US") -> None:
        self.fake = Faker(locale)
        if seed is not None:
            self.fake.seed_instance(seed)

    def supports(self, data_type_id: str) -> bool:
        data_type = get_data_type(data_type_id)
        return data_type is not None and not data_type.is_external

    def generate(self, data_type_id: str, count: int, options: Optional[Dict[str, Any]] = None) -> List[str]:
        data_type = get_data_type(data_type_id)
        if data_type is None or data_type.generator is None:
            logger.warning(f"⚠️ No local generator for '{data_type_id}'")
            return [UNKNOWN_DATA_TYPE_VALUE] * count
        opts = dict(options or {})
        return [str(data_type.generator(self.fake, opts)) for _ in range(count)]
