import re

MISSING_TOKENS = {"", "-", "–", "n/a", "na", "ikke oppgitt", "*"}

SINGLE_RE = re.compile(r"^\s*(\d{1,3}(?:[.,]\d+)?)\s*%?\s*$")
QUERY_VALUE_RE = re.compile(r"^\s*(\d{1,3}(?:\.\d+)?)\s*$")


def normalize_percentage(raw: str | None) -> float | None:
    """Parse a table cell such as ``5,8``, ``5.8 %`` or ``12%`` into a float."""
    if raw is None:
        return None

    text = raw.replace("\xa0", " ").strip()
    if text.lower() in MISSING_TOKENS:
        return None

    matched = SINGLE_RE.match(text)
    if not matched:
        return None
    value = float(matched.group(1).replace(",", "."))
    if value > 100:
        return None
    return value


def normalize_query_value(raw: str | None) -> float | None:
    """Parse a machine-readable query value (always dot-decimal)."""
    if raw is None:
        return None
    matched = QUERY_VALUE_RE.match(raw)
    if not matched:
        return None
    value = float(matched.group(1))
    if value > 100:
        return None
    return value
