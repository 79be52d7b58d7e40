"""Build standardized ingestion payloads from fetched listings."""

import logging
import re
from decimal import Decimal
from typing import Any, Optional

from listing_tracker.config import settings
from listing_tracker.ingest.base import ListingRecord

logger = logging.getLogger(__name__)

# Italian typology keywords mapped to standard property types (first match wins)
PROPERTY_TYPE_MAP = {
    "appartamento": "apartment",
    "monolocale": "studio",
    "bilocale": "apartment",
    "trilocale": "apartment",
    "villa": "villa",
    "villetta": "villa",
    "casa indipendente": "house",
    "casa": "house",
    "casale": "farmhouse",
    "rustico": "farmhouse",
    "loft": "loft",
    "attico": "penthouse",
    "mansarda": "attic",
    "palazzo": "building",
    "terreno": "land",
    "box": "garage",
    "garage": "garage",
    "posto auto": "parking",
    "ufficio": "office",
    "negozio": "commercial",
    "locale commerciale": "commercial",
    "capannone": "warehouse",
}

AMENITY_KEYWORDS = {
    "has_parking": ("parcheggio", "posto auto", "garage", "box"),
    "has_garden": ("giardino",),
    "has_balcony": ("balcone",),
    "has_terrace": ("terrazzo", "terrazza"),
    "has_pool": ("piscina",),
    "has_elevator": ("ascensore",),
    "has_garage": ("garage", "box auto"),
    "has_basement": ("cantina", "seminterrato"),
    "has_fireplace": ("camino",),
    "is_furnished": ("arredato",),
    "is_new_construction": ("nuova costruzione", "nuovo"),
    "is_luxury": ("lusso", "prestigio"),
}

ENERGY_PATTERN = re.compile(r"classe energetica[:\s]*([A-G][0-9]*)", re.IGNORECASE)
HEATING_PATTERN = re.compile(r"riscaldamento[:\s]*(autonomo|centralizzato|condominiale)", re.IGNORECASE)
CONDITION_PATTERN = re.compile(r"stato[:\s]*(ottimo|buono|da ristrutturare|nuovo)", re.IGNORECASE)
NUMBER_PATTERN = re.compile(r"-?[\d.,]+")

# Property names (lowercase substrings) mapped to detail fields
DETAIL_PROPERTY_NAMES = (
    (("superficie", "surface"), "sqm"),
    (("locali", "rooms"), "rooms"),
    (("bagni", "bathrooms"), "bathrooms"),
    (("camere", "bedrooms"), "bedrooms"),
    (("piano", "floor"), "floor"),
)


def normalize_property_type(typology: Optional[str]) -> str:
    if not typology:
        return "unknown"
    lowered = typology.lower()
    for keyword, standard in PROPERTY_TYPE_MAP.items():
        if keyword in lowered:
            return standard
    return typology


def _number(value: Any) -> Optional[float]:
    """Extract a number from values like 85, "85 m²" or "1.200"."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        match = NUMBER_PATTERN.search(value)
        if match:
            try:
                return float(match.group(0).replace(".", "").replace(",", "."))
            except ValueError:
                return None
    return None


def extract_features(raw: dict) -> list[str]:
    features = [str(f) for f in raw.get("features") or [] if f]
    for prop in raw.get("properties") or []:
        if not isinstance(prop, dict):
            continue
        if prop.get("name") and prop.get("value"):
            features.append(f"{prop['name']}: {prop['value']}")
        else:
            for value in prop.get("values") or []:
                if isinstance(value, dict) and value.get("value"):
                    features.append(str(value["value"]))
    return features


def extract_details(raw: dict) -> dict[str, Any]:
    details: dict[str, Any] = {}
    for field_name, key in (("sqm", "surface"), ("rooms", "rooms"), ("bathrooms", "bathrooms"), ("floor", "floor")):
        if raw.get(key) is not None:
            details[field_name] = _number(raw[key])

    for prop in raw.get("properties") or []:
        if not isinstance(prop, dict):
            continue
        name = (prop.get("name") or "").lower()
        for keywords, field_name in DETAIL_PROPERTY_NAMES:
            if any(k in name for k in keywords):
                if details.get(field_name) is None:
                    details[field_name] = _number(prop.get("value"))
                break

    details["sqm_type"] = "living"
    return details


def extract_amenities(features: list[str]) -> dict[str, bool]:
    text = " ".join(features).lower()
    return {
        amenity: True
        for amenity, keywords in AMENITY_KEYWORDS.items()
        if any(k in text for k in keywords)
    }


def extract_country_specific(features: list[str], typology: Optional[str]) -> dict[str, Any]:
    text = " ".join(features)
    specific: dict[str, Any] = {}

    energy = ENERGY_PATTERN.search(text)
    if energy:
        specific["classe_energetica"] = energy.group(1).upper()
    heating = HEATING_PATTERN.search(text)
    if heating:
        specific["riscaldamento"] = heating.group(1).lower()
    condition = CONDITION_PATTERN.search(text)
    if condition:
        specific["stato"] = condition.group(1).lower()

    if typology:
        specific["tipologia_originale"] = typology
    return specific


def _price_per_sqm(price: Optional[Decimal], sqm: Optional[float]) -> Optional[int]:
    if price is None or not sqm:
        return None
    return round(float(price) / sqm)


def build_standard_property(record: ListingRecord) -> dict[str, Any]:
    """
    Map a listing onto the downstream standardized property schema.

    Args:
        record: Listing returned by the fetcher (raw holds the catalog object)

    Returns:
        JSON-serializable dict
    """
    raw = record.raw or {}
    typology = (raw.get("category") or {}).get("name") or raw.get("typology")
    location = raw.get("location") or {}
    features = extract_features(raw)
    details = extract_details(raw)

    coordinates = None
    if location.get("latitude") is not None and location.get("longitude") is not None:
        coordinates = {"lat": location["latitude"], "lon": location["longitude"]}

    address = ", ".join(p for p in (location.get("microzone"), location.get("macrozone")) if p)

    advertiser = raw.get("advertiser")
    agent = None
    if isinstance(advertiser, dict):
        agent = {
            "name": advertiser.get("name") or "Unknown",
            "phone": advertiser.get("phone"),
            "agency": (advertiser.get("agency") or {}).get("name"),
        }

    standard = {
        "title": record.title or typology,
        "price": float(record.price) if record.price is not None else None,
        "currency": record.currency,
        "property_type": normalize_property_type(typology),
        "transaction_type": record.transaction_type or settings.transaction_type,
        "source_url": record.source_url,
        "location": {
            "address": address or None,
            "city": location.get("city") or location.get("province"),
            "region": location.get("region"),
            "country": settings.portal_country,
            "coordinates": coordinates,
        },
        "details": details,
        "images": list(record.images),
        "description": record.description,
        "description_language": "it",
        "agent": agent,
        "features": features,
        "amenities": extract_amenities(features),
        "price_per_sqm": _price_per_sqm(record.price, details.get("sqm")),
        "country_specific": extract_country_specific(features, typology),
        "status": record.status,
    }

    energy = standard["country_specific"].get("classe_energetica")
    if energy:
        standard["energy_rating"] = energy
    return standard


def build_ingestion_payload(record: ListingRecord) -> dict[str, Any]:
    """Envelope sent to the downstream ingestion endpoint."""
    return {
        "portal": settings.portal_name,
        "portal_id": record.listing_id,
        "country": settings.portal_country,
        "data": build_standard_property(record),
        "raw_data": record.raw,
    }
