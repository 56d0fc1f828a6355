"""
keyword_categories.py — Static merchant keyword table
======================================================
Loaded once at import and read-only afterwards. Keys are single normalized
words (see helpers._normalize_text); the highest-confidence hit across the
description and merchant name wins, first hit on ties.
"""

from types import MappingProxyType

from helpers import _normalize_text


def _entry(category, subcategory, confidence):
    return MappingProxyType({"category": category, "subcategory": subcategory, "confidence": confidence})


KEYWORD_CATEGORIES = MappingProxyType({
    # Food
    "restaurant": _entry("food", "restaurant", 0.9),
    "mcdo": _entry("food", "fast_food", 0.95),
    "kfc": _entry("food", "fast_food", 0.95),
    "burger": _entry("food", "fast_food", 0.85),
    "pizza": _entry("food", "restaurant", 0.85),
    "sushi": _entry("food", "restaurant", 0.85),
    "supermarche": _entry("food", "groceries", 0.9),
    "carrefour": _entry("food", "groceries", 0.95),
    "auchan": _entry("food", "groceries", 0.95),
    "leclerc": _entry("food", "groceries", 0.95),
    "lidl": _entry("food", "groceries", 0.95),
    "monoprix": _entry("food", "groceries", 0.95),
    "franprix": _entry("food", "groceries", 0.95),
    # Transport
    "uber": _entry("transport", "taxi", 0.95),
    "bolt": _entry("transport", "taxi", 0.95),
    "taxi": _entry("transport", "taxi", 0.9),
    "sncf": _entry("transport", "train", 0.95),
    "train": _entry("transport", "train", 0.9),
    "metro": _entry("transport", "public", 0.9),
    "bus": _entry("transport", "public", 0.9),
    "total": _entry("transport", "fuel", 0.9),
    "shell": _entry("transport", "fuel", 0.9),
    "essence": _entry("transport", "fuel", 0.9),
    "parking": _entry("transport", "parking", 0.9),
    # Shopping
    "amazon": _entry("shopping", "online", 0.95),
    "fnac": _entry("shopping", "electronics", 0.9),
    "darty": _entry("shopping", "electronics", 0.9),
    "boulanger": _entry("shopping", "electronics", 0.9),
    "zara": _entry("shopping", "clothing", 0.9),
    "uniqlo": _entry("shopping", "clothing", 0.9),
    "nike": _entry("shopping", "clothing", 0.9),
    "decathlon": _entry("shopping", "sports", 0.95),
    # Housing
    "edf": _entry("housing", "energy", 0.95),
    "engie": _entry("housing", "energy", 0.95),
    "loyer": _entry("housing", "rent", 0.95),
    # Subscriptions
    "netflix": _entry("subscriptions", "streaming", 0.95),
    "spotify": _entry("subscriptions", "music", 0.95),
    "disney": _entry("subscriptions", "streaming", 0.95),
    "prime": _entry("subscriptions", "streaming", 0.9),
    "youtube": _entry("subscriptions", "streaming", 0.9),
    "canal": _entry("subscriptions", "tv", 0.95),
    "orange": _entry("subscriptions", "telecom", 0.9),
    "sfr": _entry("subscriptions", "telecom", 0.9),
    "bouygues": _entry("subscriptions", "telecom", 0.9),
    "free": _entry("subscriptions", "telecom", 0.9),
    # Health
    "pharmacie": _entry("health", "pharmacy", 0.95),
    "doctolib": _entry("health", "medical", 0.9),
    # Entertainment
    "cinema": _entry("entertainment", "cinema", 0.95),
    "booking": _entry("entertainment", "travel", 0.9),
    "airbnb": _entry("entertainment", "travel", 0.95),
    # Income
    "salaire": _entry("income", "salary", 0.95),
    "virement": _entry("income", "transfer", 0.7),
})


def categorize_by_keywords(description, merchant_name=None, amount=None) -> dict:
    words = _normalize_text(description).split() + _normalize_text(merchant_name).split()

    best, best_word = None, None
    for word in words:
        match = KEYWORD_CATEGORIES.get(word)
        if match and (best is None or match["confidence"] > best["confidence"]):
            best, best_word = match, word

    if best is not None:
        return {
            "category": best["category"],
            "subcategory": best["subcategory"],
            "confidence": best["confidence"],
            "keywords": [best_word],
            "ai_used": False,
        }

    if amount is not None and amount > 0:
        return {"category": "income", "subcategory": "other", "confidence": 0.5, "keywords": [], "ai_used": False}
    return {"category": "other", "subcategory": "unknown", "confidence": 0.3, "keywords": [], "ai_used": False}
