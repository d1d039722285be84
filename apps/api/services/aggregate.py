# ArcGIS の features を farm / 月 / task_type / rotation ごとに集計する

import logging
from datetime import timezone, tzinfo
from typing import Any, Dict, Iterable, List, Optional, Sequence

from gis.dates import decode_date
from gis.layers import AREA_SUM_FIELDS
from services.errors import DecodeError

logger = logging.getLogger(__name__)

# ディメンション値が無い feature はこのキーにまとめる
UNKNOWN = "Unknown"

Feature = Dict[str, Any]


def attributes_of(feature: Feature) -> Dict[str, Any]:
    if not isinstance(feature, dict):
        return {}
    return feature.get("attributes") or {}


def pick_number(attrs: Dict[str, Any], fields: Sequence[str] = AREA_SUM_FIELDS) -> float:
    """
    Value of the first candidate field that is present; absent or null
    contributes 0. Raises DecodeError when the value is not numeric.
    """
    for field in fields:
        value = attrs.get(field)
        if value is None:
            continue
        if isinstance(value, bool):
            raise DecodeError(f"Invalid number in {field}: {value!r}")
        try:
            return float(value)
        except (TypeError, ValueError):
            raise DecodeError(f"Invalid number in {field}: {value!r}")
    return 0.0


def dimension_key(attrs: Dict[str, Any], field: str, default: str = UNKNOWN) -> str:
    value = attrs.get(field)
    if value is None or value == "":
        return default
    return str(value)


def _iter_values(features: Iterable[Feature], value_fields: Sequence[str]):
    for feature in features:
        attrs = attributes_of(feature)
        try:
            area = pick_number(attrs, value_fields)
        except DecodeError as e:
            logger.warning("Skipping feature: %s", e.message)
            continue
        yield attrs, area


def total_of(features: Iterable[Feature], value_fields: Sequence[str] = AREA_SUM_FIELDS) -> float:
    return sum((area for _, area in _iter_values(features, value_fields)), 0.0)


def aggregate_by_dimension(
    features: Iterable[Feature],
    dimension_field: str,
    value_fields: Sequence[str] = AREA_SUM_FIELDS,
) -> Dict[str, float]:
    totals: Dict[str, float] = {}
    for attrs, area in _iter_values(features, value_fields):
        key = dimension_key(attrs, dimension_field)
        totals[key] = totals.get(key, 0.0) + area
    return totals


def aggregate_breakdown(
    features: Iterable[Feature],
    group_field: str,
    farm_field: str = "farm",
    value_fields: Sequence[str] = AREA_SUM_FIELDS,
    default: str = UNKNOWN,
) -> Dict[str, Dict[str, Any]]:
    """{group: {"totalArea": float, "farms": {farm: float}}}"""
    groups: Dict[str, Dict[str, Any]] = {}
    for attrs, area in _iter_values(features, value_fields):
        key = dimension_key(attrs, group_field, default)
        entry = groups.setdefault(key, {"totalArea": 0.0, "farms": {}})
        entry["totalArea"] += area
        farm = dimension_key(attrs, farm_field)
        entry["farms"][farm] = entry["farms"].get(farm, 0.0) + area
    return groups


def aggregate_by_task_type(
    features: Iterable[Feature],
    task_type_field: str = "task_type",
    farm_field: str = "farm",
    value_fields: Sequence[str] = AREA_SUM_FIELDS,
) -> Dict[str, Dict[str, Any]]:
    return aggregate_breakdown(features, task_type_field, farm_field, value_fields)


def aggregate_by_month(
    features: Iterable[Feature],
    date_field: str,
    value_fields: Sequence[str] = AREA_SUM_FIELDS,
    farm_field: str = "farm",
    task_type_field: Optional[str] = None,
    tz: tzinfo = timezone.utc,
) -> List[Dict[str, Any]]:
    """
    Month-ordered series with a running ``cumulativeTotal``.

    Features whose date is missing or cannot be decoded are skipped with a
    warning. When ``task_type_field`` is given each month also carries a
    ``taskTypes`` breakdown instead of a flat ``farms`` map.
    """
    months: Dict[tuple, Dict[str, Any]] = {}

    for attrs, area in _iter_values(features, value_fields):
        raw_date = attrs.get(date_field)
        try:
            date = decode_date(raw_date).astimezone(tz)
        except DecodeError as e:
            logger.warning("Skipping feature with %s=%r: %s", date_field, raw_date, e.message)
            continue

        key = (date.year, date.month)
        entry = months.get(key)
        if entry is None:
            entry = {
                "month": f"{date.year}-{date.month:02d}",
                "year": date.year,
                "monthNumber": date.month,
                "totalArea": 0.0,
            }
            if task_type_field:
                entry["taskTypes"] = {}
            else:
                entry["farms"] = {}
            months[key] = entry

        entry["totalArea"] += area
        farm = dimension_key(attrs, farm_field)
        if task_type_field:
            task_type = dimension_key(attrs, task_type_field)
            bucket = entry["taskTypes"].setdefault(task_type, {"totalArea": 0.0, "farms": {}})
            bucket["totalArea"] += area
            bucket["farms"][farm] = bucket["farms"].get(farm, 0.0) + area
        else:
            entry["farms"][farm] = entry["farms"].get(farm, 0.0) + area

    cumulative = 0.0
    out: List[Dict[str, Any]] = []
    for key in sorted(months):
        entry = months[key]
        cumulative += entry["totalArea"]
        out.append({**entry, "cumulativeTotal": cumulative})
    return out


def latest_value(features: List[Feature], field: str) -> Any:
    if not features:
        return None
    return attributes_of(features[0]).get(field)
