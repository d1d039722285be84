#ArcGIS query パラメータを組み立てる関数（where / outStatistics / groupBy を一括生成）

import json
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from schemas import LandUnitFilters, QuerySpec, StatisticDefinition
from services.errors import ValidationError

# 上位階層から順に条件を並べる
FILTER_PRIORITY = ("pu", "region", "farm", "block", "paddock")

STATISTIC_TYPES = ("SUM", "MAX", "COUNT")

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def escape_value(value: Any) -> str:
    return str(value).replace("'", "''")


def equals(field: str, value: Any) -> str:
    return f"{field} = '{escape_value(value)}'"


def join_conditions(conditions: Sequence[str]) -> str:
    return " AND ".join(conditions) if conditions else "1=1"


def build_where_clause(filters: Union[LandUnitFilters, Mapping[str, Optional[str]], None]) -> str:
    if filters is None:
        return "1=1"
    values = filters.model_dump() if isinstance(filters, LandUnitFilters) else dict(filters)
    conditions = [
        equals(field, values[field])
        for field in FILTER_PRIORITY
        if values.get(field)
    ]
    return join_conditions(conditions)


def build_field_filters(fid: Optional[str] = None, filters: Iterable[str] = ()) -> str:
    """
    ``fid`` と ``field:value`` 形式の filter パラメータから where を作る。
    値側にはコロンを含めてよい。どちらかが空のペアは無視する。
    """
    conditions: List[str] = []
    if fid:
        conditions.append(equals("fid_1", fid))

    for raw in filters:
        raw_field, _, raw_value = raw.partition(":")
        field = raw_field.strip()
        value = raw_value.strip()
        if not field or not value:
            continue
        if not _FIELD_NAME.match(field):
            raise ValidationError(f"Invalid filter field: {field!r}")
        conditions.append(equals(field, value))

    return join_conditions(conditions)


def statistic(statistic_type: str, on_field: str, alias: str) -> StatisticDefinition:
    kind = (statistic_type or "").upper()
    if kind not in STATISTIC_TYPES:
        raise ValidationError(
            f"statisticType must be one of: {', '.join(STATISTIC_TYPES)}"
        )
    return StatisticDefinition(
        statisticType=kind,
        onStatisticField=on_field,
        outStatisticFieldName=alias,
    )


def build_statistics_query(
    statistics: Sequence[StatisticDefinition],
    where: str = "1=1",
    group_by_fields: Optional[Sequence[str]] = None,
    out_fields: Optional[Sequence[str]] = None,
) -> QuerySpec:
    group_by = list(group_by_fields or [])
    fields = list(out_fields) if out_fields is not None else group_by
    return QuerySpec(
        where=where,
        outFields=", ".join(fields) if fields else "*",
        groupByFieldsForStatistics=", ".join(group_by) if group_by else None,
        outStatistics=list(statistics),
        returnGeometry=False,
    )


def build_aggregation_query(
    group_by_fields: Sequence[str],
    statistic_field: str,
    statistic_type: str,
    output_alias: str,
    where: str = "1=1",
) -> QuerySpec:
    return build_statistics_query(
        [statistic(statistic_type, statistic_field, output_alias)],
        where=where,
        group_by_fields=group_by_fields,
    )


def to_query_params(spec: QuerySpec, token: Optional[str] = None) -> Dict[str, str]:
    params: Dict[str, str] = {
        "where": spec.where,
        "outFields": spec.outFields,
        "returnGeometry": "true" if spec.returnGeometry else "false",
        "f": "json",
    }
    if spec.groupByFieldsForStatistics:
        params["groupByFieldsForStatistics"] = spec.groupByFieldsForStatistics
    if spec.outStatistics:
        params["outStatistics"] = json.dumps([s.model_dump() for s in spec.outStatistics])
    if token:
        params["token"] = token
    return params
