"""Detect and convert the date layouts found in bank CSV exports.

Every layout is parsed strictly: the cell has to match the layout's shape
exactly (padded fields stay padded, unpadded fields stay unpadded, month
names are capitalised) and the resulting calendar date has to exist.
Nothing falls back to a looser layout.
"""

import logging
import re
from datetime import datetime

logger = logging.getLogger(__name__)

CANONICAL_FORMAT = "YYYY-MM-DD"

# Order matters: when several layouts explain the samples equally well the
# earlier one wins (ISO, then US, then EU, ...).
COMMON_DATE_FORMATS = [
    "YYYY-MM-DD",
    "MM/DD/YYYY",
    "DD/MM/YYYY",
    "M/D/YYYY",
    "D/M/YYYY",
    "MM-DD-YYYY",
    "DD-MM-YYYY",
    "YYYY/MM/DD",
    "MM/DD/YY",
    "DD/MM/YY",
    "M/D/YY",
    "D/M/YY",
    "MMM DD, YYYY",
    "DD MMM YYYY",
    "MMMM DD, YYYY",
    "DD MMMM YYYY",
]

FORMAT_DESCRIPTIONS = {
    "YYYY-MM-DD": "ISO format (2023-12-25)",
    "MM/DD/YYYY": "US format (12/25/2023)",
    "DD/MM/YYYY": "European format (25/12/2023)",
    "M/D/YYYY": "US format, no leading zeros (12/5/2023)",
    "D/M/YYYY": "European format, no leading zeros (5/12/2023)",
    "MM-DD-YYYY": "US format with dashes (12-25-2023)",
    "DD-MM-YYYY": "European format with dashes (25-12-2023)",
    "YYYY/MM/DD": "ISO with slashes (2023/12/25)",
    "MM/DD/YY": "US short year (12/25/23)",
    "DD/MM/YY": "European short year (25/12/23)",
    "M/D/YY": "US short year, no zeros (12/5/23)",
    "D/M/YY": "European short year, no zeros (5/12/23)",
    "MMM DD, YYYY": "Month name format (Dec 25, 2023)",
    "DD MMM YYYY": "European month name (25 Dec 2023)",
    "MMMM DD, YYYY": "Full month name (December 25, 2023)",
    "DD MMMM YYYY": "European full month (25 December 2023)",
}

# token -> (regex for the strict shape, strptime directive)
_TOKENS = [
    ("YYYY", r"\d{4}", "%Y"),
    ("MMMM", r"[A-Z][a-z]+", "%B"),
    ("MMM", r"[A-Z][a-z]{2}", "%b"),
    ("MM", r"\d{2}", "%m"),
    ("M", r"[1-9]\d?", "%m"),
    ("DD", r"\d{2}", "%d"),
    ("D", r"[1-9]\d?", "%d"),
    ("YY", r"\d{2}", "%y"),
]

_compiled_formats = {}


def _compile_format(date_format):
    compiled = _compiled_formats.get(date_format)
    if compiled is not None:
        return compiled

    regex_parts = []
    strptime_parts = []
    position = 0
    while position < len(date_format):
        for token, token_regex, directive in _TOKENS:
            if date_format.startswith(token, position):
                regex_parts.append(token_regex)
                strptime_parts.append(directive)
                position += len(token)
                break
        else:
            literal = date_format[position]
            regex_parts.append(re.escape(literal))
            strptime_parts.append("%%" if literal == "%" else literal)
            position += 1

    compiled = (re.compile("".join(regex_parts)), "".join(strptime_parts))
    _compiled_formats[date_format] = compiled
    return compiled


def parse_date_strict(value, date_format):
    """Return a ``date`` for ``value`` under ``date_format`` or ``None``."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    pattern, strptime_format = _compile_format(date_format)
    if not pattern.fullmatch(text):
        return None
    try:
        return datetime.strptime(text, strptime_format).date()
    except ValueError:
        return None


def convert_date(value, date_format):
    """Convert ``value`` to canonical ``YYYY-MM-DD``; ``None`` when it does not parse."""
    parsed = parse_date_strict(value, date_format)
    if parsed is None:
        return None
    return parsed.isoformat()


def normalize_stored_date(value):
    """Canonical form of a date read back from storage, unchanged when it is not ISO."""
    return convert_date(value, CANONICAL_FORMAT) or value


def detect_date_format(samples, max_samples=20):
    """Pick the layout that explains the most samples.

    Returns ``{"format", "confidence", "validSamples", "totalSamples"}`` or
    ``None`` when the samples are empty or no layout parses any of them.
    Ties on confidence go to the layout with more valid samples, then to the
    earlier layout in ``COMMON_DATE_FORMATS``.
    """
    if not samples:
        return None

    tested = [str(sample) for sample in list(samples)[:max_samples]]
    if not tested:
        return None

    best = None
    for date_format in COMMON_DATE_FORMATS:
        valid_count = sum(1 for sample in tested if parse_date_strict(sample, date_format) is not None)
        if valid_count == 0:
            continue
        confidence = valid_count / len(tested)
        if (
            best is None
            or confidence > best["confidence"]
            or (confidence == best["confidence"] and valid_count > best["validSamples"])
        ):
            best = {
                "format": date_format,
                "confidence": confidence,
                "validSamples": valid_count,
                "totalSamples": len(tested),
            }

    if best is None:
        logger.debug("No date layout matched %d samples", len(tested))
    else:
        logger.debug(
            "Detected date layout %s (%d/%d samples)",
            best["format"],
            best["validSamples"],
            best["totalSamples"],
        )
    return best


def format_description(date_format):
    return FORMAT_DESCRIPTIONS.get(date_format, f"Custom format ({date_format})")
