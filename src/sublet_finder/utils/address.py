"""Address normalization utilities."""

import re

from sublet_finder.errors import InputError
from sublet_finder.logging import get_logger
from sublet_finder.models import Property, normalize_postcode

logger = get_logger(__name__)

POSTCODE_PATTERN = re.compile(r"[A-Z]{1,2}[0-9][A-Z0-9]? ?[0-9][A-Z]{2}", re.IGNORECASE)

_BOM = "\ufeff"

# Common street type abbreviations
STREET_TYPES = {
    r"\bst\b": "street",
    r"\brd\b": "road",
    r"\bave\b": "avenue",
    r"\bln\b": "lane",
    r"\bdr\b": "drive",
    r"\bct\b": "court",
    r"\bpl\b": "place",
    r"\bsq\b": "square",
    r"\bgdns?\b": "gardens",
    r"\bterr?\b": "terrace",
    r"\bcres\b": "crescent",
}

# Street type words (for extraction)
STREET_TYPE_WORDS = {
    "street",
    "road",
    "avenue",
    "lane",
    "drive",
    "court",
    "place",
    "square",
    "green",
    "gardens",
    "terrace",
    "crescent",
    "close",
    "mews",
    "park",
    "way",
    "hill",
    "rise",
    "grove",
    "walk",
}


def canonicalize_postcode(raw: str) -> str | None:
    """Return the first UK postcode found in ``raw``, uppercased with single spacing."""
    match = POSTCODE_PATTERN.search(raw)
    if match is None:
        return None
    return normalize_postcode(match.group(0))


def decode_upload(content: bytes) -> str:
    """Decode uploaded file bytes as UTF-8, tolerating a byte-order mark.

    Raises:
        InputError: If the bytes are not valid UTF-8.
    """
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise InputError(f"Upload is not valid UTF-8: {e}") from e


def extract_street_name(address: str) -> str | None:
    """Extract a title-cased street name from an address line.

    Handles:
    - "23 Banavie Road, Glasgow, G11 5AW" -> "Banavie Road"
    - "Flat 2, 14 Mare St" -> "Mare Street"

    Returns None when no part of the address contains a street type word.
    """
    addr = address.lower()

    # Remove flat/unit numbers at start
    addr = re.sub(r"^(flat|unit|apt|apartment)\s*\d+[a-z]?\s*,?\s*", "", addr)

    for abbrev, full in STREET_TYPES.items():
        addr = re.sub(abbrev, full, addr)

    for part in addr.split(","):
        words = part.split()
        if not any(w in STREET_TYPE_WORDS for w in words):
            continue
        part = POSTCODE_PATTERN.sub("", part)
        # Remove leading house numbers and "the"
        part = re.sub(r"^\s*\d+[a-z]?(-\d+[a-z]?)?\s+", "", part)
        part = re.sub(r"^the\s+", "", part.strip())
        name = " ".join(part.split())
        if name:
            return name.title()
    return None


def extract_properties(text: str) -> list[Property]:
    """Extract unique properties from CSV-like text.

    The first line is treated as a header and discarded. Every other
    non-blank line is split on commas and the first field containing a
    postcode wins; the whole trimmed line is kept as the address. Duplicate
    postcodes keep their first occurrence.
    """
    text = text.removeprefix(_BOM)
    lines = [line for line in text.splitlines() if line.strip()]
    if len(lines) <= 1:
        return []

    properties: list[Property] = []
    seen: set[str] = set()
    for line in lines[1:]:
        postcode = None
        for field in line.split(","):
            postcode = canonicalize_postcode(field)
            if postcode:
                break
        if postcode is None or postcode in seen:
            continue
        seen.add(postcode)
        address = line.strip()
        properties.append(
            Property(
                postcode=postcode,
                address=address,
                street_name=extract_street_name(address),
            )
        )

    logger.debug("properties_extracted", lines=len(lines) - 1, properties=len(properties))
    return properties


def extract_properties_from_bytes(content: bytes) -> list[Property]:
    """Decode an uploaded file and extract its properties.

    Undecodable uploads yield an empty list rather than an error.
    """
    try:
        text = decode_upload(content)
    except InputError as e:
        logger.warning("upload_decode_failed", error=str(e))
        return []
    return extract_properties(text)
