"""Classification of raw Dexcom events into carb and insulin entries."""

import re
from collections import Counter
from typing import Any, Dict, Iterable, Literal, Optional

from pydantic import BaseModel, Field

from glucose_sync.utils.normalization import first_finite_number, normalize_dexcom_time, normalize_string

CARB_KEYWORDS = ("carb", "meal", "food")
INSULIN_KEYWORDS = ("insulin",)
INSULIN_SUBTYPES = ("fastacting", "longacting")
GRAM_UNITS = {"g", "gram", "grams"}
INSULIN_UNITS = {"units", "unit", "u", "iu"}
VALUE_FIELDS = ("value", "amount", "quantity")

MISSING = "none"

EventKind = Literal["carb", "insulin"]


class ClassifiedEvent(BaseModel):
    """A raw provider event with its classification."""

    measured_at: Optional[str] = Field(None, description="Normalized systemTime")
    event_type: Optional[str] = Field(None, description="eventType or recordType as sent")
    event_subtype: Optional[str] = Field(None, description="eventSubType as sent")
    unit: Optional[str] = Field(None, description="Unit as sent")
    value: Optional[float] = Field(None, description="First finite value/amount/quantity")
    kind: Optional[EventKind] = Field(None, description="carb, insulin, or None when neither")
    note: str = Field(..., description="Synthesized note stored with the row")

    @property
    def carbs_grams(self) -> Optional[float]:
        return self.value if self.kind == "carb" else None

    @property
    def insulin_units(self) -> Optional[float]:
        return self.value if self.kind == "insulin" else None


def _squash(value: Optional[str]) -> str:
    # "Fast-Acting" and "fast acting" both become "fastacting"
    return re.sub(r"[\s_\-]+", "", normalize_string(value) or "")


def _event_type(raw: Dict[str, Any]) -> Optional[str]:
    value = raw.get("eventType") or raw.get("recordType")
    return str(value) if value is not None else None


def build_event_note(event_type: Optional[str], event_subtype: Optional[str]) -> str:
    """Note stored with an event row: ``Dexcom Event: <type>[ (<subtype>)]``."""
    note = f"Dexcom Event: {event_type or 'unknown'}"
    if event_subtype:
        note += f" ({event_subtype})"
    return note


def classify_event(raw: Dict[str, Any]) -> ClassifiedEvent:
    """
    Classify a raw Dexcom event.

    Carb when the type or subtype mentions carb, meal or food, or when the
    unit is grams and the type does not mention insulin. Insulin when not
    carb and the type mentions insulin, the unit is an insulin unit, or the
    subtype is fast/long acting. Without a positive value the event is
    neither.
    """
    event_type = _event_type(raw)
    subtype = raw.get("eventSubType")
    subtype = str(subtype) if subtype is not None else None
    unit = raw.get("unit")
    unit = str(unit) if unit is not None else None
    value = first_finite_number(raw, VALUE_FIELDS)

    type_text = normalize_string(event_type) or ""
    subtype_text = normalize_string(subtype) or ""
    unit_text = normalize_string(unit) or ""

    carb_mention = any(k in type_text or k in subtype_text for k in CARB_KEYWORDS)
    insulin_mention = any(k in type_text for k in INSULIN_KEYWORDS)
    insulin_signal = (
        insulin_mention
        or unit_text in INSULIN_UNITS
        or any(k in _squash(subtype) for k in INSULIN_SUBTYPES)
    )

    kind: Optional[EventKind] = None
    if value is not None and value > 0:
        if carb_mention or (unit_text in GRAM_UNITS and not insulin_mention):
            kind = "carb"
        elif insulin_signal:
            kind = "insulin"

    return ClassifiedEvent(
        measured_at=normalize_dexcom_time(raw.get("systemTime")),
        event_type=event_type,
        event_subtype=subtype,
        unit=unit,
        value=value,
        kind=kind,
        note=build_event_note(event_type, subtype),
    )


def event_summary_key(raw: Dict[str, Any]) -> str:
    """Frequency-map key ``<type>|<subtype>|<unit>`` of a raw event."""
    parts = (_event_type(raw), raw.get("eventSubType"), raw.get("unit"))
    return "|".join(str(p) if p not in (None, "") else MISSING for p in parts)


def summarize_events(raw_events: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    """Count raw events by event_summary_key."""
    return dict(Counter(event_summary_key(e) for e in raw_events))
