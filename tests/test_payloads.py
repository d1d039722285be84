import pytest

from gis.payloads import (
    build_aggregation_query,
    build_field_filters,
    build_statistics_query,
    build_where_clause,
    statistic,
    to_query_params,
)
from schemas import LandUnitFilters
from services.errors import ValidationError


def test_where_clause_without_filters_selects_everything():
    assert build_where_clause(LandUnitFilters()) == "1=1"
    assert build_where_clause({}) == "1=1"
    assert build_where_clause(None) == "1=1"


def test_where_clause_follows_hierarchy_order():
    filters = LandUnitFilters(paddock="P7", farm="F01", pu="PU North")
    where = build_where_clause(filters)
    assert where == "pu = 'PU North' AND farm = 'F01' AND paddock = 'P7'"
    assert where.count(" AND ") == 2


def test_where_clause_all_levels():
    filters = {"pu": "a", "region": "b", "farm": "c", "block": "d", "paddock": "e"}
    assert build_where_clause(filters) == (
        "pu = 'a' AND region = 'b' AND farm = 'c' AND block = 'd' AND paddock = 'e'"
    )


def test_where_clause_escapes_quotes():
    where = build_where_clause({"farm": "O'Brien' OR 1=1 --"})
    assert where == "farm = 'O''Brien'' OR 1=1 --'"


def test_field_filters_with_fid_and_pairs():
    where = build_field_filters("12", ["farm:F01", "block: B:2 ", "bad", ":x", "paddock:"])
    assert where == "fid_1 = '12' AND farm = 'F01' AND block = 'B:2'"


def test_field_filters_empty():
    assert build_field_filters(None, []) == "1=1"


def test_field_filters_reject_non_identifier_field():
    with pytest.raises(ValidationError):
        build_field_filters(None, ["farm = 'x' OR 1:1"])


def test_aggregation_query_shape():
    spec = build_aggregation_query(["farm", "task_type"], "Area_Ha", "sum", "sum_area_ha", where="task_type = 'Felling'")
    assert spec.where == "task_type = 'Felling'"
    assert spec.outFields == "farm, task_type"
    assert spec.groupByFieldsForStatistics == "farm, task_type"
    assert spec.returnGeometry is False
    assert [s.model_dump() for s in spec.outStatistics] == [
        {"statisticType": "SUM", "onStatisticField": "Area_Ha", "outStatisticFieldName": "sum_area_ha"}
    ]


def test_unknown_statistic_type():
    with pytest.raises(ValidationError):
        statistic("AVG", "Area_Ha", "avg_area")


def test_query_params_encode_statistics():
    spec = build_statistics_query([statistic("MAX", "task_date", "max_task_date")], out_fields=["task_date"])
    params = to_query_params(spec, token="abc")
    assert params["where"] == "1=1"
    assert params["outFields"] == "task_date"
    assert params["returnGeometry"] == "false"
    assert params["f"] == "json"
    assert params["token"] == "abc"
    assert "groupByFieldsForStatistics" not in params
    assert '"statisticType": "MAX"' in params["outStatistics"]
