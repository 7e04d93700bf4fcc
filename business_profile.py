"""
Business profile: central place to declare brand, product catalog, selling
terminology and customer-type keywords. The oracle prompt and the sales
plugin read from here instead of hardcoding. Swap this out per business.
"""
from __future__ import annotations

from typing import Optional

from common.names import normalize_name

BUSINESS_PROFILE = {
    "brand": "Toque da Terra",
    "products": [
        {
            "name": "Seasoned Salt",
            "aliases": ["seasoned salt", "salt", "seasoning", "spice", "spices"],
            "unit": "jar",
        },
    ],
    "terminology": {
        # "kit" is how sellers count bundles; the quantity stays in kits
        "kit": "1 kit = 20 jars of Seasoned Salt",
        "jar": "a single jar of Seasoned Salt",
    },
    # a word from this list inside a customer name marks it as a BUSINESS
    "business_keywords": [
        "market", "supermarket", "minimarket", "mart", "grocery",
        "bakery", "restaurant", "cafe", "store", "shop", "bar",
        "pharmacy", "drugstore", "station", "gas station", "deli",
        "inc", "ltd", "llc", "co",
    ],
    "salespeople": ["Gabriel", "Miriam", "Leticia"],
}


def normalize_product_name(raw: Optional[str]) -> Optional[str]:
    """Map aliases ("3 kits", "salt") to the catalog name; unknown products pass through."""
    if not raw or not raw.strip():
        return raw
    key = normalize_name(raw)
    words = set(key.split())
    for product in BUSINESS_PROFILE["products"]:
        names = [normalize_name(product["name"])] + [normalize_name(a) for a in product["aliases"]]
        if any(n == key or n in words or (" " in n and n in key) for n in names):
            return product["name"]
    if words & {"kit", "kits", "jar", "jars"}:
        return BUSINESS_PROFILE["products"][0]["name"]
    return " ".join(raw.split())


def detect_customer_type(name: Optional[str]) -> str:
    key = normalize_name(name)
    if not key:
        return "PERSON"
    words = set(key.split())
    for kw in BUSINESS_PROFILE["business_keywords"]:
        if (" " in kw and kw in key) or kw in words:
            return "BUSINESS"
    return "PERSON"


def business_context_text() -> str:
    lines = [f"BUSINESS CONTEXT - {BUSINESS_PROFILE['brand']}:"]
    for p in BUSINESS_PROFILE["products"]:
        lines.append(f"- Product: {p['name']} (sold by {p['unit']}; also called: {', '.join(p['aliases'])})")
    for term, desc in BUSINESS_PROFILE["terminology"].items():
        lines.append(f"- '{term}': {desc}")
    lines.append(f"- Salespeople: {', '.join(BUSINESS_PROFILE['salespeople'])}")
    lines.append("Always report the product with its catalog name.")
    return "\n".join(lines)
