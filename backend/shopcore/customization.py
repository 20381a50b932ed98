"""
Order-item customization metadata.

Two shapes exist in stored carts and orders:

- legacy_designs: a bare list of design dicts
  [{"name", "price", "size", "location", ...}, ...]
- customization_v2: {"designs": [...], "personalization": {...} | "text",
  "on_request": bool, ...any other keys}

normalize_metadata() maps either shape onto CustomizationMetadata once, at the
checkout boundary. The order core only ever reads `on_request`; designs and
personalization are carried through untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

FORMAT_LEGACY_DESIGNS = "legacy_designs"
FORMAT_CUSTOMIZATION_V2 = "customization_v2"


@dataclass(frozen=True)
class CustomizationMetadata:
    format: str
    designs: tuple = ()
    personalization: Any = None
    on_request: bool = False
    extra: dict = field(default_factory=dict)

    def to_json(self) -> dict:
        data = dict(self.extra)
        data.update({
            "format": self.format,
            "designs": list(self.designs),
            "personalization": self.personalization,
            "on_request": self.on_request,
        })
        return data


def normalize_metadata(raw: Any) -> CustomizationMetadata:
    """
    Migrate any stored/submitted shape to CustomizationMetadata.

    None and empty values become an empty v2 record. Already-normalized
    payloads (carrying "format") round-trip unchanged.
    """
    if raw is None:
        return CustomizationMetadata(format=FORMAT_CUSTOMIZATION_V2)

    if isinstance(raw, (list, tuple)):
        return CustomizationMetadata(
            format=FORMAT_LEGACY_DESIGNS,
            designs=tuple(d for d in raw if isinstance(d, dict)),
        )

    if isinstance(raw, dict):
        extra = {
            k: v for k, v in raw.items()
            if k not in {"format", "designs", "personalization", "on_request"}
        }
        designs = raw.get("designs") or ()
        return CustomizationMetadata(
            format=raw.get("format") or FORMAT_CUSTOMIZATION_V2,
            designs=tuple(d for d in designs if isinstance(d, dict)),
            personalization=raw.get("personalization"),
            on_request=raw.get("on_request") is True,
            extra=extra,
        )

    raise ValueError("custom_metadata must be a list, an object, or null")
