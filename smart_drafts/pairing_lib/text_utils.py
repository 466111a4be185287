"""Normalisation helpers for the text fields produced by the vision step.

This module is the single home for the regex patterns and lookup tables used to
compare two product photos: brand normalisation, token extraction, size
canonicalisation, colour comparison, barcode extraction and category buckets.
"""
from __future__ import annotations

import re
from typing import Iterable, List, Optional, Sequence

# ============================================================================
# Regex Patterns
# ============================================================================

# Corporate and marketing suffixes stripped before brand comparison
# Examples: "Jocko Fuel" -> "jocko", "Acme Inc." -> "acme"
BRAND_SUFFIX_RE = re.compile(
    r"\b(inc|llc|ltd|corp|co|company|brands|supplements|nutrition|wellness|fuel)\b\.?",
    re.IGNORECASE,
)
NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
GENERIC_BRAND_WORDS = {"by", "from", "the", "a", "an"}
UNKNOWN_BRANDS = {"unknown", "n/a", "none", "null"}

# Token splitter used for product/variant/OCR comparisons
TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")

# Size patterns, most specific first
FL_OZ_RE = re.compile(r"(\d*\.?\d+)\s*fl\.?\s*oz", re.IGNORECASE)
OZ_RE = re.compile(r"(\d*\.?\d+)\s*oz\b", re.IGNORECASE)
ML_RE = re.compile(r"(\d*\.?\d+)\s*ml\b", re.IGNORECASE)
LITER_RE = re.compile(r"(\d*\.?\d+)\s*(?:l|liters?|litres?)\b", re.IGNORECASE)
KG_RE = re.compile(r"(\d*\.?\d+)\s*kg\b", re.IGNORECASE)
GRAM_RE = re.compile(r"(\d*\.?\d+)\s*(?:g|grams?)\b", re.IGNORECASE)
LB_RE = re.compile(r"(\d*\.?\d+)\s*(?:lb|lbs|pounds?)\b", re.IGNORECASE)
COUNT_RE = re.compile(
    r"(\d+)\s*(?:ct|count|capsules?|caps|tablets?|tabs|softgels?|gummies|servings|pieces|pcs)\b",
    re.IGNORECASE,
)

# UPC-A printed as 1-5-5-1 groups, or a bare UPC-A, EAN-13 or GTIN-14 run
BARCODE_RE = re.compile(r"(?<!\d)(\d[ -]\d{5}[ -]\d{5}[ -]\d|\d{12,14})(?!\d)")

# INCI ingredient lists and cosmetic usage lines printed on hair/skin back panels
COSMETIC_BACK_CUE_RE = re.compile(
    r"ingredients:|avoid contact|\b(?:6|12|24)\s?m\b|distributed by|apply\b[^.]*\bhair",
    re.IGNORECASE,
)

# Shade modifiers ignored when looking for a "close" colour
SHADE_PREFIX_RE = re.compile(r"^(light|dark|deep|bright|pale|dim|pastel|neon|soft)[- ]", re.IGNORECASE)

# ============================================================================
# Lookup Tables
# ============================================================================

COLOR_ADJACENCY = {
    frozenset({"blue", "navy"}),
    frozenset({"blue", "teal"}),
    frozenset({"teal", "turquoise"}),
    frozenset({"green", "olive"}),
    frozenset({"green", "mint"}),
    frozenset({"yellow", "gold"}),
    frozenset({"orange", "amber"}),
    frozenset({"red", "maroon"}),
    frozenset({"red", "burgundy"}),
    frozenset({"pink", "magenta"}),
    frozenset({"purple", "violet"}),
    frozenset({"purple", "lavender"}),
    frozenset({"gray", "silver"}),
    frozenset({"grey", "silver"}),
    frozenset({"gray", "grey"}),
    frozenset({"brown", "tan"}),
    frozenset({"beige", "tan"}),
    frozenset({"beige", "cream"}),
    frozenset({"white", "cream"}),
    frozenset({"white", "ivory"}),
}

PACKAGING_PATTERNS = [
    ("pouch", re.compile(r"resealable|stand-up|pouch|bag\b", re.IGNORECASE)),
    ("bottle", re.compile(r"dropper|pipette|tincture|\bbottle\b|pump", re.IGNORECASE)),
    ("jar", re.compile(r"\bjar\b", re.IGNORECASE)),
    ("tub", re.compile(r"\btub\b|canister", re.IGNORECASE)),
    ("box", re.compile(r"\bbox\b|carton", re.IGNORECASE)),
    ("sachet", re.compile(r"sachet|packet|stick pack", re.IGNORECASE)),
]

# Ordered: the first bucket whose pattern matches wins
CATEGORY_BUCKETS = [
    ("hair", re.compile(r"hair|shampoo|conditioner", re.IGNORECASE)),
    ("supplement", re.compile(r"supplement|vitamin|mineral|probiotic|multivit", re.IGNORECASE)),
    ("cosmetic", re.compile(r"cosmetic|skin|makeup|beauty|spf|serum|lotion|cream", re.IGNORECASE)),
    ("food", re.compile(r"food|snack|beverage|drink|grocery|coffee|tea\b", re.IGNORECASE)),
    ("accessory", re.compile(r"accessor", re.IGNORECASE)),
]
BUCKET_OTHER = "other"
INCOMPATIBLE_BUCKETS = {
    frozenset({"hair", "supplement"}),
    frozenset({"hair", "food"}),
    frozenset({"cosmetic", "supplement"}),
    frozenset({"cosmetic", "food"}),
}
NEAR_COMPATIBLE_BUCKETS = {frozenset({"food", "supplement"})}


# ============================================================================
# Brand and Tokens
# ============================================================================


def normalize_brand(raw: Optional[str]) -> str:
    """Reduce a brand string to its core lower-case token.

    Examples:
        >>> normalize_brand('Jocko Fuel')
        'jocko'
        >>> normalize_brand('By Brand Name')
        'brand'
        >>> normalize_brand('Unknown')
        ''
    """
    if not raw or raw.strip().lower() in UNKNOWN_BRANDS:
        return ""
    lowered = raw.lower().replace(".", "")
    stripped = BRAND_SUFFIX_RE.sub(" ", lowered)
    normalized = NON_ALNUM_RE.sub(" ", stripped).strip()
    tokens = normalized.split()
    if len(tokens) > 1:
        significant = [token for token in tokens if token not in GENERIC_BRAND_WORDS]
        if significant:
            return significant[0]
    return " ".join(tokens)


def tokenize(text: Optional[str], min_length: int = 1) -> List[str]:
    """Split on anything that is not a lower-case letter or digit."""
    if not text:
        return []
    return [token for token in TOKEN_SPLIT_RE.split(text.lower()) if len(token) >= min_length]


def significant_tokens(text: Optional[str]) -> List[str]:
    """Tokens longer than three characters; short stopwords drop out."""
    return tokenize(text, min_length=4)


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    set_a = set(a)
    set_b = set(b)
    if not set_a or not set_b:
        return 0.0
    union = set_a | set_b
    return len(set_a & set_b) / len(union)


# ============================================================================
# Sizes
# ============================================================================


def _fmt(value: float, unit: str) -> str:
    return f"{int(round(value))}{unit}"


def canonicalize_size(size: Optional[str]) -> Optional[str]:
    """Return a comparable unit+quantity string, or None when nothing parses.

    Examples:
        >>> canonicalize_size('4 fl oz')
        '118ml'
        >>> canonicalize_size('16 oz')
        '454g'
        >>> canonicalize_size('60 Capsules')
        '60ct'
    """
    if not size:
        return None
    text = size.strip()
    match = FL_OZ_RE.search(text)
    if match:
        return _fmt(float(match.group(1)) * 29.573, "ml")
    match = ML_RE.search(text)
    if match:
        return _fmt(float(match.group(1)), "ml")
    match = LITER_RE.search(text)
    if match:
        return _fmt(float(match.group(1)) * 1000, "ml")
    match = KG_RE.search(text)
    if match:
        return _fmt(float(match.group(1)) * 1000, "g")
    match = GRAM_RE.search(text)
    if match:
        return _fmt(float(match.group(1)), "g")
    match = LB_RE.search(text)
    if match:
        return _fmt(float(match.group(1)) * 453.592, "g")
    match = OZ_RE.search(text)
    if match:
        return _fmt(float(match.group(1)) * 28.35, "g")
    match = COUNT_RE.search(text)
    if match:
        return f"{int(match.group(1))}ct"
    return None


# ============================================================================
# Colours and Packaging
# ============================================================================


def normalize_color(color: Optional[str]) -> str:
    if not color:
        return ""
    return re.sub(r"\s+", "-", color.strip().lower())


def _base_color(color: str) -> str:
    return SHADE_PREFIX_RE.sub("", color)


def color_tier(color_a: Optional[str], color_b: Optional[str]) -> str:
    """Classify two dominant colour labels as 'exact', 'close' or 'none'."""
    a = normalize_color(color_a)
    b = normalize_color(color_b)
    if not a or not b:
        return "none"
    if a == b:
        return "exact"
    base_a = _base_color(a)
    base_b = _base_color(b)
    if base_a == base_b:
        return "close"
    if frozenset({base_a, base_b}) in COLOR_ADJACENCY:
        return "close"
    return "none"


def infer_packaging(packaging_type: Optional[str], visual_description: Optional[str]) -> str:
    """Trust an explicit packaging label, otherwise read it off the description."""
    explicit = (packaging_type or "").strip().lower()
    if explicit and explicit != "unknown":
        if explicit in {"dropper-bottle", "dropper bottle"}:
            return "bottle"
        if explicit == "canister":
            return "tub"
        return explicit
    description = visual_description or ""
    for label, pattern in PACKAGING_PATTERNS:
        if pattern.search(description):
            return label
    return "unknown"


# ============================================================================
# Barcodes
# ============================================================================


def extract_barcode(*texts: Optional[str]) -> str:
    """Return the first 12-14 digit run found in the given texts, digits only."""
    for text in texts:
        if not text:
            continue
        match = BARCODE_RE.search(text)
        if match:
            return re.sub(r"\D", "", match.group(1))
    return ""


def has_cosmetic_back_cue(text: Optional[str]) -> bool:
    """True when back-panel text reads like a cosmetic or hair-care label.

    Examples:
        >>> has_cosmetic_back_cue("Ingredients: Aqua, Glycerin")
        True
        >>> has_cosmetic_back_cue("Supplement Facts 12mg zinc")
        False
    """
    return bool(text and COSMETIC_BACK_CUE_RE.search(text))


# ============================================================================
# Categories
# ============================================================================


def category_bucket(category: Optional[str]) -> str:
    """Map a free-text category path onto one of the coarse buckets.

    Examples:
        >>> category_bucket('Health & Beauty > Hair Care > Shampoo')
        'hair'
        >>> category_bucket('Books')
        'other'
    """
    if not category:
        return BUCKET_OTHER
    for bucket, pattern in CATEGORY_BUCKETS:
        if pattern.search(category):
            return bucket
    return BUCKET_OTHER


def bucket_compat(bucket_a: str, bucket_b: str) -> float:
    if bucket_a == BUCKET_OTHER or bucket_b == BUCKET_OTHER:
        return 0.2
    if bucket_a == bucket_b:
        return 1.0
    pair = frozenset({bucket_a, bucket_b})
    if pair in INCOMPATIBLE_BUCKETS:
        return -1.0
    if pair in NEAR_COMPATIBLE_BUCKETS:
        return 0.4
    return 0.0


def category_compat(category_a: Optional[str], category_b: Optional[str]) -> float:
    """Raw compatibility of two category strings.

    1.0 same bucket, 0.2 when either is unclassified, -1.0 for hair/cosmetic vs
    supplement/food, 0.4 for food vs supplement, 0.0 otherwise.
    """
    return bucket_compat(category_bucket(category_a), category_bucket(category_b))


def text_blob(parts: Sequence[Optional[str]]) -> str:
    return " ".join(part for part in parts if part)
