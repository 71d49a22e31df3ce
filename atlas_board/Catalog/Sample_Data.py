# Sample_Data.py
# Description: Generated test data for the catalog
#
# Imports
import logging
import random
from typing import Dict, Any, List, Optional
#
# Third-Party Imports
#
# Local Imports
from .Catalog_Library import CatalogService
#
#######################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)

REGIONS = {
    "Europe": ["Western Europe", "Northern Europe", "Southern Europe", "Eastern Europe"],
    "Asia": ["Eastern Asia", "South-Eastern Asia", "Southern Asia", "Western Asia"],
    "Africa": ["Northern Africa", "Western Africa", "Eastern Africa", "Southern Africa"],
    "Americas": ["North America", "Central America", "South America", "Caribbean"],
    "Oceania": ["Australia and New Zealand", "Melanesia", "Polynesia"],
}
CURRENCIES = ["EUR", "USD", "JPY", "GBP", "CHF", "AUD", "BRL", "INR", "ZAR", "SEK"]
LANGUAGES = ["English", "French", "Spanish", "German", "Portuguese", "Arabic", "Hindi", "Japanese",
             "Swahili", "Mandarin", "Russian", "Italian"]
SYLLABLES = ["ar", "ba", "co", "del", "en", "fa", "gor", "hi", "ist", "ka", "lan", "mo", "nia", "or",
             "pra", "qu", "ri", "sta", "tu", "vi", "wen", "za"]
WORDS = ["harbour", "festival", "market", "river", "mountain", "museum", "railway", "bakery", "coast",
         "village", "bridge", "cathedral", "desert", "forest", "island", "lake"]
AUTHORS = ["Ada", "Bruno", "Chloe", "Dmitri", "Elena", "Farid", "Greta", "Hiro", "Ines", "Jonas"]


def _make_name(rng: random.Random, parts: int) -> str:
    return "".join(rng.choice(SYLLABLES) for _ in range(parts)).capitalize()


def _sentence(rng: random.Random, words: int) -> str:
    text = " ".join(rng.choice(WORDS) for _ in range(words))
    return text[0].upper() + text[1:] + "."


def generate_country(rng: random.Random) -> Dict[str, Any]:
    region = rng.choice(sorted(REGIONS))
    name = _make_name(rng, rng.randint(2, 3))
    code = name[:2].lower()
    return {
        "name": name,
        "capital": _make_name(rng, 2) + " City",
        "population": rng.randint(50_000, 200_000_000),
        "area": round(rng.uniform(100, 3_000_000), 1),
        "currency": rng.choice(CURRENCIES),
        "languages": rng.sample(LANGUAGES, rng.randint(1, 3)),
        "region": region,
        "subregion": rng.choice(REGIONS[region]),
        "flag": f"https://flagcdn.com/{code}.svg",
    }


def generate_message_fields(rng: random.Random, country_id: str) -> Dict[str, Any]:
    return {
        "title": _sentence(rng, rng.randint(2, 4)).rstrip("."),
        "content": _sentence(rng, rng.randint(6, 14)),
        "countryId": country_id,
        "likes": rng.randint(0, 50),
    }


def generate_comment_fields(rng: random.Random, message_id: str) -> Dict[str, Any]:
    return {
        "content": _sentence(rng, rng.randint(3, 10)),
        "author": rng.choice(AUTHORS),
        "messageId": message_id,
    }


def populate_sample_catalog(service: CatalogService, countries: int = 5, messages_per_country: int = 3,
                            comments_per_message: int = 2, rng: Optional[random.Random] = None) -> Dict[str, List[str]]:
    """
    Fills the catalog with generated documents.

    Returns:
        The created ids per type: `{"country": [...], "message": [...], "comment": [...]}`.
    """
    rng = rng or random.Random()
    created: Dict[str, List[str]] = {"country": [], "message": [], "comment": []}
    for _ in range(countries):
        country = service.create_country(generate_country(rng))
        created["country"].append(country["_id"])
        for _ in range(messages_per_country):
            message = service.create_message(generate_message_fields(rng, country["_id"]))
            created["message"].append(message["_id"])
            for _ in range(comments_per_message):
                comment = service.create_comment(generate_comment_fields(rng, message["_id"]))
                created["comment"].append(comment["_id"])
    logger.info(f"Generated sample catalog: {len(created['country'])} countries, "
                f"{len(created['message'])} messages, {len(created['comment'])} comments")
    return created

#
# End of Sample_Data.py
#######################################################################################################################
