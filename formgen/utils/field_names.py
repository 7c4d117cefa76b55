"""
Field-key normalisation helpers.

AI-generated keys are camelCase while intake forms often submit snake_case, so
every lookup of a client value goes through ``resolve_value``.
"""
from typing import Any, Dict, List, Optional
import re

_WORD_BOUNDARY = re.compile(r"(.)([A-Z][a-z]+)")
_LOWER_UPPER = re.compile(r"([a-z0-9])([A-Z])")
_SEPARATORS = re.compile(r"[\s\-]+")
_NON_ALNUM = re.compile(r"[^a-z0-9]")


def camel_to_snake(name: str) -> str:
    """
    Convert ``propertyAddress`` to ``property_address``.

    Hyphens and spaces become underscores; already-snake keys are returned
    lower-cased.
    """
    name = _SEPARATORS.sub("_", name.strip())
    name = _WORD_BOUNDARY.sub(r"\1_\2", name)
    name = _LOWER_UPPER.sub(r"\1_\2", name)
    return re.sub(r"_+", "_", name).lower()


def snake_to_camel(name: str) -> str:
    """Convert ``property_address`` to ``propertyAddress``.  Keys without separators pass through."""
    parts = [p for p in re.split(r"[_\s\-]+", name.strip()) if p]
    if len(parts) <= 1:
        return name.strip()
    head = parts[0][:1].lower() + parts[0][1:]
    return head + "".join(p[:1].upper() + p[1:] for p in parts[1:])


def normalize_key(name: str) -> str:
    """Case- and punctuation-insensitive form used as the last matching resort."""
    return _NON_ALNUM.sub("", name.lower())


def key_variants(key: str) -> List[str]:
    """Return the exact key followed by its snake_case and camelCase forms, without duplicates."""
    variants: List[str] = []
    for candidate in (key, camel_to_snake(key), snake_to_camel(key)):
        if candidate and candidate not in variants:
            variants.append(candidate)
    return variants


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def resolve_value(key: str, client_data: Dict[str, Any]) -> Optional[Any]:
    """
    Look up the client value for *key*.

    Tries the exact key, then the snake_case and camelCase variants, then any
    client key that matches once case and punctuation are ignored.  Missing and
    blank values both resolve to ``None``.
    """
    if not client_data:
        return None

    for variant in key_variants(key):
        if variant in client_data and not _is_blank(client_data[variant]):
            return client_data[variant]

    wanted = normalize_key(key)
    for data_key, value in client_data.items():
        if normalize_key(str(data_key)) == wanted and not _is_blank(value):
            return value
    return None
