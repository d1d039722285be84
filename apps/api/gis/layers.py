#ArcGIS レイヤーの置き場（サービスルートからの相対パス / Land Unit 階層の定義）

from typing import Any, Dict, List

LAND_CLEARING_AREA = "Land_Clearing/Land_Clearing/MapServer/7"
LAND_CLEARING_PROGRESS = "Land_Clearing/Land_Clearing/MapServer/8"
# latest-date は同じレイヤーの FeatureServer 側を参照する
LAND_CLEARING_PROGRESS_FEATURES = "Land_Clearing/Land_Clearing/FeatureServer/8"

LAND_DEVELOPMENT_PROGRESS = "Land_Development/Land_Development/FeatureServer/17"

LAND_PREPARATION_PROGRESS = "Land_Preparation/Land_Preparation/FeatureServer/7"

PLANTED_AREA = "Planted_Area/Planted_Area/FeatureServer/3"
PLANTED_PROGRESS = "Planted_Area/Planted_Area/FeatureServer/7"

GAP_DETECTION_REPLANTING = "Gap_Detection/MapServer/2"

LAND_UNIT_SERVICE = "Land_Unit/MapServer"

# 面積の集計結果は大文字小文字の揺れがあるため、候補を順に試す
AREA_SUM_FIELDS = ("sum_area_ha", "sum_Area_Ha")

# Land Unit levels, top-down. layerId matches the MapServer layer index.
LANDUNIT_LAYERS: Dict[str, Dict[str, Any]] = {
    "pu": {"layerId": 4, "nameField": "pu", "idField": "pu_id", "parent": None},
    "region": {"layerId": 3, "nameField": "region", "idField": "region_id", "parent": "pu"},
    "farm": {"layerId": 2, "nameField": "farm", "idField": "farm_id", "parent": "region"},
    "block": {"layerId": 1, "nameField": "block", "idField": "block_id", "parent": "farm"},
    "paddock": {"layerId": 0, "nameField": "paddock", "idField": "paddock_id", "parent": "block"},
}


def all_levels() -> List[str]:
    return list(LANDUNIT_LAYERS)


def is_valid_level(level: str) -> bool:
    return level in LANDUNIT_LAYERS


def landunit_layer(level: str) -> str:
    return f"{LAND_UNIT_SERVICE}/{LANDUNIT_LAYERS[level]['layerId']}"
