"""Field categories for heritage-site records.

Historical and heritage fields need a specialist's sign-off whenever a
published record changes them; operational fields (schedules, contacts,
media) only need the primary reviewer.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

REQUIRED_FIELDS: tuple[str, ...] = ("name", "location", "classification")

SPECIALIST_FIELDS: frozenset[str] = frozenset(
    {
        "classification",
        "founding_year",
        "founders",
        "historical_background",
        "architectural_style",
        "cultural_significance",
        "preservation_history",
        "restoration_history",
        "architectural_features",
        "heritage_information",
        "heritage_declaration",
    }
)

# Written only by the engine (on validation); never accepted from owners.
ENGINE_FIELDS: frozenset[str] = frozenset({"heritage_validation"})

FIELD_LABELS: dict[str, str] = {
    "name": "Church Name",
    "full_name": "Full Name",
    "location": "Location",
    "municipality": "Municipality",
    "founding_year": "Founding Year",
    "founders": "Founders",
    "key_figures": "Key Figures",
    "historical_background": "Historical Background",
    "description": "Description",
    "architectural_style": "Architectural Style",
    "classification": "Heritage Classification",
    "religious_classification": "Religious Classification",
    "cultural_significance": "Cultural Significance",
    "preservation_history": "Preservation History",
    "restoration_history": "Restoration History",
    "architectural_features": "Architectural Features",
    "heritage_information": "Heritage Information",
    "heritage_declaration": "Heritage Declaration",
    "heritage_validation": "Heritage Validation",
    "coordinates": "Map Coordinates",
    "contact_info": "Contact Information",
    "mass_schedules": "Mass Schedules",
    "assigned_priest": "Assigned Priest",
    "feast_day": "Feast Day",
    "photos": "Photos",
    "documents": "Documents",
    "virtual_tour": "360° Virtual Tour",
    "tags": "Tags",
}


def normalize_value(value: Any) -> Any:
    """Collapse empty-ish values so that None, "", [] and {} compare equal."""
    if value is None:
        return None
    if isinstance(value, str) and value.strip() == "":
        return None
    if isinstance(value, (list, tuple, dict, set)) and len(value) == 0:
        return None
    return value


def diff_fields(current: Mapping[str, Any], patch: Mapping[str, Any]) -> list[str]:
    """Return the sorted patch keys whose value differs from ``current``."""
    changed: list[str] = []
    for key, new_value in patch.items():
        if normalize_value(current.get(key)) != normalize_value(new_value):
            changed.append(key)
    return sorted(changed)


def missing_required(data: Mapping[str, Any], required: Iterable[str] = REQUIRED_FIELDS) -> list[str]:
    """Return required fields that are absent or blank in ``data``."""
    return [name for name in required if normalize_value(data.get(name)) is None]


def touches_specialist_fields(
    changed_fields: Iterable[str],
    specialist_fields: Iterable[str] = SPECIALIST_FIELDS,
) -> bool:
    return bool(set(changed_fields) & set(specialist_fields))


def field_label(field_name: str) -> str:
    """Human-readable label for a field, falling back to the raw name."""
    return FIELD_LABELS.get(field_name, field_name)


def engine_field_changes(current: Mapping[str, Any], data: Mapping[str, Any]) -> list[str]:
    """Engine-managed keys in ``data`` that would change ``current``."""
    return diff_fields(current, {key: data[key] for key in data if key in ENGINE_FIELDS})
