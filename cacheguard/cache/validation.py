"""Validation of freshly fetched data before it replaces cached data.

Upstreams occasionally return glitches (a TVL of 0, a null price, a
payload that is really an error placeholder). The validator compares the
new value with what was cached before; when it flags the new value, the
cache manager patches the suspicious fields from the stale copy instead of
overwriting good data with bad.
"""

import math
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

# Metadata fields added by the cache layer itself
METADATA_PREFIX = "_"
DEGRADED_FLAGS = ("_unavailable", "_stale")


@dataclass
class ValidationResult:
    """Outcome of validating a new value.

    Attributes:
        valid: Whether the value can be cached as-is.
        issues: Human-readable problems found.
        invalid_fields: Top-level fields that should not be trusted.
    """

    valid: bool = True
    issues: list[str] = field(default_factory=list)
    invalid_fields: set[str] = field(default_factory=set)

    def flag(self, issue: str, field_name: str | None = None) -> None:
        """Record a problem, optionally tied to a field."""
        self.valid = False
        self.issues.append(issue)
        if field_name is not None:
            self.invalid_fields.add(field_name)


Validator = Callable[[Any, Any | None, str], ValidationResult]


def is_well_formed(value: Any) -> bool:
    """Whether a single field value is usable.

    None, empty strings and non-finite numbers are not.
    """
    if value is None:
        return False
    if isinstance(value, bool):
        return True
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, str):
        return value.strip() != ""
    return True


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


class DataValidator:
    """Rule-based validator keyed by data type.

    Rules applied to mapping values:
    - degraded placeholders (``_unavailable``/``_stale``) are never valid
    - fields holding None, empty strings or NaN are invalid
    - numeric fields listed for the data type must be non-negative
    - watched numeric fields must not collapse versus the previous value
      (drop to zero, or below ``min_ratio`` of the previous value)

    Example:
        validator = DataValidator()
        result = validator({"tvl": 0}, {"tvl": 1_000_000}, "protocol-tvl")
        assert not result.valid and "tvl" in result.invalid_fields
    """

    DEFAULT_WATCHED_FIELDS: dict[str, tuple[str, ...]] = {
        "token-price": ("price", "usd", "current_price"),
        "protocol-tvl": ("tvl", "totalValueLocked"),
        "market-data": ("market_cap", "total_volume", "current_price", "price"),
        "volume-data": ("volume", "volume_24h"),
    }

    def __init__(
        self,
        watched_fields: Mapping[str, Iterable[str]] | None = None,
        min_ratio: float = 0.1,
    ) -> None:
        """Initialize the validator.

        Args:
            watched_fields: Data type to numeric fields checked for
                negatives and collapses.
            min_ratio: Smallest acceptable new/previous ratio for watched
                fields.
        """
        source = watched_fields if watched_fields is not None else self.DEFAULT_WATCHED_FIELDS
        self.watched_fields = {dt: tuple(fields) for dt, fields in source.items()}
        self.min_ratio = min_ratio

    def __call__(self, new: Any, previous: Any | None, data_type: str) -> ValidationResult:
        result = ValidationResult()

        if new is None:
            result.flag("value is None")
            return result

        if isinstance(new, (list, tuple)):
            if not new and previous:
                result.flag("empty list replaces non-empty data")
            return result

        if not isinstance(new, Mapping):
            if not is_well_formed(new):
                result.flag("value is not well formed")
            return result

        if not new:
            result.flag("empty object")
            return result

        for flag in DEGRADED_FLAGS:
            if new.get(flag):
                result.flag(f"value carries {flag}")

        for name, value in new.items():
            if name.startswith(METADATA_PREFIX):
                continue
            if not is_well_formed(value):
                result.flag(f"{name} is not well formed", name)

        previous_map = previous if isinstance(previous, Mapping) else {}
        for name in self.watched_fields.get(data_type, ()):
            if name not in new:
                continue
            current = _as_number(new[name])
            if current is None:
                continue
            if current < 0:
                result.flag(f"{name} is negative", name)
                continue
            before = _as_number(previous_map.get(name))
            if before is None or before <= 0:
                continue
            if current == 0:
                result.flag(f"{name} dropped to zero from {before}", name)
            elif current / before < self.min_ratio:
                result.flag(f"{name} collapsed from {before} to {current}", name)

        return result


def merge_with_stale(
    new: Mapping[str, Any],
    stale: Mapping[str, Any],
    invalid_fields: Iterable[str] = (),
) -> tuple[dict[str, Any], list[str]]:
    """Patch a suspicious value with well-formed fields from its stale copy.

    New fields win unless they are missing, not well formed, or listed in
    ``invalid_fields``. Cache-layer metadata is never copied from stale.

    Returns:
        The merged mapping and the names of fields taken from stale.
    """
    invalid = set(invalid_fields)
    merged = {k: v for k, v in new.items() if k not in DEGRADED_FLAGS}
    taken: list[str] = []
    for name, stale_value in stale.items():
        if name.startswith(METADATA_PREFIX) or not is_well_formed(stale_value):
            continue
        if name not in new or name in invalid or not is_well_formed(new[name]):
            merged[name] = stale_value
            taken.append(name)
    return merged, taken
