# apps/api/main.py
import logging
import os
import re
from datetime import timedelta, timezone
from pathlib import Path as FilePath
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response

from settings import settings
from schemas import LandUnitFilters, QuerySpec, TokenResponse
from services.arcgis_token import TokenManager, expires_at_iso
from services.feature_layer import FeatureLayerClient
from services.errors import ArcGISError, DecodeError, ValidationError
from services.aggregate import (
    aggregate_breakdown,
    aggregate_by_dimension,
    aggregate_by_month,
    aggregate_by_task_type,
    attributes_of,
    latest_value,
    total_of,
)
from gis import layers
from gis.dates import decode_date, to_iso
from gis.payloads import (
    build_aggregation_query,
    build_field_filters,
    build_statistics_query,
    build_where_clause,
    equals,
    statistic,
)

# .env 読み込み
load_dotenv()

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

DASHBOARD_TZ = timezone(timedelta(hours=settings.DASHBOARD_UTC_OFFSET_HOURS))
ROTATIONS = ("0", "1")

# プロセス全体で 1 つだけ持つ（ハンドラには Depends で渡す）
token_manager = TokenManager.from_settings()
feature_layer = FeatureLayerClient.from_settings(token_manager)


def get_token_manager() -> TokenManager:
    return token_manager


def get_feature_layer() -> FeatureLayerClient:
    return feature_layer


api_app = FastAPI(title="land-dashboard: ArcGIS token -> statistics")

# CORS（開発中は緩め / 本番は適切に制限してください）
api_app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_origin_regex=".*",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# rawFeatures を返すエンドポイントはレスポンスが大きくなりがち
api_app.add_middleware(
    GZipMiddleware,
    minimum_size=int(os.getenv("GZIP_MINIMUM_SIZE", "1000")),
)


@api_app.exception_handler(ArcGISError)
async def arcgis_error_handler(request: Request, exc: ArcGISError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


def _check_rotation(rotation: str) -> str:
    if rotation not in ROTATIONS:
        raise ValidationError("Rotation must be '0' or '1'")
    return rotation


def _task_type_where(task_type: Optional[str]) -> str:
    return equals("task_type", task_type) if task_type else "1=1"


def _parent_warning(level: str, filters: LandUnitFilters) -> Optional[str]:
    parent = layers.LANDUNIT_LAYERS[level]["parent"]
    if parent and not getattr(filters, parent):
        return f"Warning: Querying {level} without {parent} filter may return many results"
    return None


async def _farm_totals(
    client: FeatureLayerClient,
    layer: str,
    where: str = "1=1",
    statistic_field: str = "Area_Ha",
) -> Dict[str, Any]:
    spec = build_aggregation_query(["farm"], statistic_field, "SUM", "sum_area_ha", where=where)
    features = await client.query_features(layer, spec)
    return {
        "totalArea": total_of(features),
        "farms": aggregate_by_dimension(features, "farm"),
        "rawFeatures": features,
    }


async def _latest_date(client: FeatureLayerClient, layer: str, field: str, where: str = "1=1") -> Dict[str, Any]:
    alias = f"max_{field}"
    spec = build_statistics_query([statistic("MAX", field, alias)], where=where, out_fields=[field])
    features = await client.query_features(layer, spec)
    raw = latest_value(features, alias)
    if not raw:
        return {"success": True, "latestDate": None}
    try:
        latest = decode_date(raw)
    except DecodeError as e:
        logger.warning("Undecodable %s from %s: %s", alias, layer, e.message)
        return {"success": True, "latestDate": None, "timestamp": raw}
    return {"success": True, "latestDate": to_iso(latest), "timestamp": raw}


# ---------------------------
#        Health Check
# ---------------------------
@api_app.get("/healthz")
async def healthz():
    return {
        "ok": True,
        "portal_url": settings.ARCGIS_PORTAL_URL,
        "server_url": settings.ARCGIS_SERVER_URL,
    }


# ---------------------------
#        ArcGIS Token
# ---------------------------
def _token_body(credential, message: Optional[str] = None) -> Dict[str, Any]:
    body = TokenResponse(
        message=message,
        token=credential.token,
        expires=credential.expires,
        expiresAt=expires_at_iso(credential.expires),
        ssl=credential.ssl,
    )
    return body.model_dump(exclude_none=True)


@api_app.get("/arcgis/token")
async def arcgis_token(tm: TokenManager = Depends(get_token_manager)):
    credential = await tm.get_valid_token()
    return JSONResponse(_token_body(credential))


@api_app.post("/arcgis/token/refresh")
async def arcgis_token_refresh(tm: TokenManager = Depends(get_token_manager)):
    tm.invalidate_token()
    credential = await tm.get_valid_token()
    return JSONResponse(_token_body(credential, "Token refreshed successfully"))


@api_app.delete("/arcgis/token")
async def arcgis_token_clear(tm: TokenManager = Depends(get_token_manager)):
    tm.invalidate_token()
    return {"success": True, "message": "Token cache cleared successfully"}


# ---------------------------
#        ArcGIS Proxy
# ---------------------------
_FORWARD_HEADERS = ("last-modified", "etag")
_TOKEN_IN_URL = re.compile(r"token=[^&]+")


@api_app.get("/arcgis-proxy/{path:path}")
async def arcgis_proxy(path: str, request: Request, client: FeatureLayerClient = Depends(get_feature_layer)):
    headers = {
        "User-Agent": request.headers.get("user-agent") or "land-dashboard ArcGIS proxy",
        "Referer": request.headers.get("referer") or settings.REFERER,
    }
    resp = await client.proxy(path, dict(request.query_params), headers)

    if not resp.is_success:
        logger.error("ArcGIS Proxy Error: %s %s", resp.status_code, resp.reason_phrase)
        return JSONResponse(
            status_code=resp.status_code,
            content={
                "success": False,
                "error": f"Failed to fetch from ArcGIS Portal: {resp.status_code} {resp.reason_phrase}",
                "url": _TOKEN_IN_URL.sub("token=***", str(resp.request.url)),
            },
        )

    # iframe 埋め込みを許可し、5 分キャッシュ
    out_headers = {
        "X-Frame-Options": "ALLOWALL",
        "Content-Security-Policy": "frame-ancestors *",
        "Cache-Control": "public, max-age=300",
    }
    for name in _FORWARD_HEADERS:
        value = resp.headers.get(name)
        if value:
            out_headers[name] = value
    return Response(
        content=resp.content,
        status_code=resp.status_code,
        media_type=resp.headers.get("content-type") or "text/html",
        headers=out_headers,
    )


# ---------------------------
#        Land Unit
# ---------------------------
@api_app.get("/landunit/{level}")
async def landunit(
    level: str,
    pu: Optional[str] = None,
    region: Optional[str] = None,
    farm: Optional[str] = None,
    block: Optional[str] = None,
    paddock: Optional[str] = None,
    client: FeatureLayerClient = Depends(get_feature_layer),
):
    """
    階層ごとの Land Unit 一覧。上位階層の値で絞り込める。
    例: /landunit/farm?pu=X&region=Y, /landunit/paddock?block=B1
    """
    if not layers.is_valid_level(level):
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "Invalid level",
                "message": f"Level must be one of: {', '.join(layers.all_levels())}",
                "validLevels": layers.all_levels(),
            },
        )

    filters = LandUnitFilters(
        pu=pu or None,
        region=region or None,
        farm=farm or None,
        block=block or None,
        paddock=paddock or None,
    )
    where = build_where_clause(filters)
    config = layers.LANDUNIT_LAYERS[level]
    logger.info("Querying %s where=%s", level, where)

    features = await client.query_features(layers.landunit_layer(level), QuerySpec(where=where, outFields="*"))
    items = []
    for feature in features:
        attrs = attributes_of(feature)
        items.append({
            "id": attrs.get(config["idField"]),
            "name": attrs.get(config["nameField"]),
            **attrs,
        })

    return {
        "success": True,
        "level": level,
        "count": len(items),
        "filters": filters.model_dump(),
        "warning": _parent_warning(level, filters),
        "data": items,
        "metadata": {
            "layerId": config["layerId"],
            "nameField": config["nameField"],
            "idField": config["idField"],
            "whereClause": where,
        },
    }


# ---------------------------
#        Land Clearing
# ---------------------------
@api_app.get("/land-clearing")
async def land_clearing_all(client: FeatureLayerClient = Depends(get_feature_layer)):
    spec = build_aggregation_query(["farm", "task_type"], "Area_Ha", "SUM", "sum_area_ha")
    features = await client.query_features(layers.LAND_CLEARING_PROGRESS, spec)
    return {
        "success": True,
        "taskTypes": aggregate_by_task_type(features),
        "rawFeatures": features,
    }


@api_app.get("/land-clearing/stats")
async def land_clearing_stats(client: FeatureLayerClient = Depends(get_feature_layer)):
    out = await _farm_totals(client, layers.LAND_CLEARING_AREA)
    return {"success": True, **out}


@api_app.get("/land-clearing/disposal")
async def land_clearing_disposal(client: FeatureLayerClient = Depends(get_feature_layer)):
    out = await _farm_totals(client, layers.LAND_CLEARING_PROGRESS, where=equals("task_type", "Disposal"))
    return {"success": True, "totalDisposal": out["totalArea"], "farms": out["farms"]}


@api_app.get("/land-clearing/latest-date")
async def land_clearing_latest_date(
    task_type: Optional[str] = None,
    client: FeatureLayerClient = Depends(get_feature_layer),
):
    return await _latest_date(
        client, layers.LAND_CLEARING_PROGRESS_FEATURES, "task_date", _task_type_where(task_type)
    )


@api_app.get("/land-clearing/monthly/{task_type}")
async def land_clearing_monthly(task_type: str, client: FeatureLayerClient = Depends(get_feature_layer)):
    spec = build_aggregation_query(
        ["farm", "task_type", "task_date"], "Area_Ha", "SUM", "sum_area_ha",
        where=equals("task_type", task_type),
    )
    features = await client.query_features(layers.LAND_CLEARING_PROGRESS, spec)
    return {
        "success": True,
        "taskType": task_type,
        "monthly": aggregate_by_month(features, "task_date", tz=DASHBOARD_TZ),
        "rawFeatures": features,
    }


@api_app.get("/land-clearing/{task_type}")
async def land_clearing_by_task_type(task_type: str, client: FeatureLayerClient = Depends(get_feature_layer)):
    out = await _farm_totals(client, layers.LAND_CLEARING_PROGRESS, where=equals("task_type", task_type))
    return {"success": True, "taskType": task_type, "totalArea": out["totalArea"], "farms": out["farms"]}


# ---------------------------
#      Land Development
# ---------------------------
@api_app.get("/land-development/monthly")
async def land_development_monthly(
    task_type: Optional[str] = None,
    client: FeatureLayerClient = Depends(get_feature_layer),
):
    spec = build_aggregation_query(
        ["farm", "task_type", "task_date"], "Area_Ha", "SUM", "sum_area_ha",
        where=_task_type_where(task_type),
    )
    features = await client.query_features(layers.LAND_DEVELOPMENT_PROGRESS, spec)
    return {
        "success": True,
        "monthly": aggregate_by_month(features, "task_date", task_type_field="task_type", tz=DASHBOARD_TZ),
        "taskType": task_type or None,
        "rawFeatures": features,
    }


@api_app.get("/land-development/latest-date")
async def land_development_latest_date(
    task_type: Optional[str] = None,
    client: FeatureLayerClient = Depends(get_feature_layer),
):
    return await _latest_date(
        client, layers.LAND_DEVELOPMENT_PROGRESS, "task_date", _task_type_where(task_type)
    )


# ---------------------------
#      Land Preparation
# ---------------------------
@api_app.get("/land-preparation/stats")
async def land_preparation_stats(client: FeatureLayerClient = Depends(get_feature_layer)):
    # このレイヤーだけフィールド名が小文字
    out = await _farm_totals(client, layers.LAND_PREPARATION_PROGRESS, statistic_field="area_ha")
    return {"success": True, **out}


@api_app.get("/land-preparation/latest-date")
async def land_preparation_latest_date(
    task_type: Optional[str] = None,
    client: FeatureLayerClient = Depends(get_feature_layer),
):
    return await _latest_date(
        client, layers.LAND_PREPARATION_PROGRESS, "task_date", _task_type_where(task_type)
    )


# ---------------------------
#          Planted
# ---------------------------
@api_app.get("/planted")
async def planted(client: FeatureLayerClient = Depends(get_feature_layer)):
    spec = build_aggregation_query(["farm", "rotation"], "Area_Ha", "SUM", "sum_area_ha")
    features = await client.query_features(layers.PLANTED_AREA, spec)
    rotations = aggregate_breakdown(features, "rotation", default="0")
    default = rotations.get("0") or {"totalArea": 0.0, "farms": {}}
    return {
        "success": True,
        "rotations": rotations,
        # rotation 0 をデフォルトとして併せて返す
        "totalArea": default["totalArea"],
        "farms": default["farms"],
        "rawFeatures": features,
    }


@api_app.get("/planted/stats")
async def planted_stats(rotation: str = "0", client: FeatureLayerClient = Depends(get_feature_layer)):
    _check_rotation(rotation)
    out = await _farm_totals(client, layers.PLANTED_AREA, where=equals("rotation", rotation))
    return {"success": True, "rotation": rotation, **out}


@api_app.get("/planted/monthly")
async def planted_monthly(rotation: str = "0", client: FeatureLayerClient = Depends(get_feature_layer)):
    _check_rotation(rotation)
    spec = build_aggregation_query(
        ["farm", "plant_date"], "Area_Ha", "SUM", "sum_area_ha",
        where=equals("rotation", rotation),
    )
    features = await client.query_features(layers.PLANTED_AREA, spec)
    return {
        "success": True,
        "rotation": rotation,
        "monthly": aggregate_by_month(features, "plant_date", tz=DASHBOARD_TZ),
        "rawFeatures": features,
    }


@api_app.get("/planted/latest-date")
async def planted_latest_date(client: FeatureLayerClient = Depends(get_feature_layer)):
    return await _latest_date(client, layers.PLANTED_PROGRESS, "plant_date")


@api_app.get("/planted/{rotation}")
async def planted_by_rotation(rotation: str, client: FeatureLayerClient = Depends(get_feature_layer)):
    _check_rotation(rotation)
    out = await _farm_totals(client, layers.PLANTED_AREA, where=equals("rotation", rotation))
    return {"success": True, "rotation": rotation, **out}


# ---------------------------
#        Gap Detection
# ---------------------------
@api_app.get("/gap-detection/replanting")
async def gap_detection_replanting(
    fid: Optional[str] = None,
    filter: List[str] = Query(default=[]),
    client: FeatureLayerClient = Depends(get_feature_layer),
):
    """
    replanting の合計と件数。
    filter は field:value 形式で複数指定可（例: ?filter=farm:F01&filter=block:B2）
    """
    where = build_field_filters(fid, filter)
    spec = build_statistics_query(
        [
            statistic("SUM", "replanting", "total_replanting"),
            statistic("COUNT", "replanting", "replanting_count"),
        ],
        where=where,
        out_fields=[],
    )
    features = await client.query_features(layers.GAP_DETECTION_REPLANTING, spec)
    attrs = attributes_of(features[0]) if features else {}
    total = attrs.get("total_replanting")
    count = attrs.get("replanting_count")
    return {
        "success": True,
        "fid": fid,
        "totalReplanting": total if total is not None else 0,
        "recordCount": count if count is not None else 0,
        "where": where,
    }


app = FastAPI()


@app.get("/healthz")
async def root_healthz():
    return {"ok": True}


app.mount("/api", api_app)


def _resolve_web_dist_dir() -> Optional[FilePath]:
    env_dir = os.getenv("WEB_DIST_DIR")
    candidates: List[FilePath] = []
    if env_dir:
        candidates.append(FilePath(env_dir))
    # Docker image copies the dashboard build next to this file.
    candidates.append(FilePath(__file__).resolve().parent / "web_dist")
    candidates.append(FilePath(__file__).resolve().parents[1] / "web" / "dist")

    for candidate in candidates:
        if (candidate / "index.html").is_file():
            return candidate
    return None


WEB_DIST_DIR = _resolve_web_dist_dir()


@app.get("/", include_in_schema=False)
async def serve_dashboard_index():
    if WEB_DIST_DIR:
        return FileResponse(WEB_DIST_DIR / "index.html")
    return JSONResponse(
        status_code=404,
        content={
            "success": False,
            "error": "Dashboard bundle not found. Build apps/web and provide WEB_DIST_DIR.",
        },
    )


@app.get("/{full_path:path}", include_in_schema=False)
async def serve_dashboard_assets(full_path: str):
    if not WEB_DIST_DIR:
        raise HTTPException(404, {"reason": "not_found"})

    base = WEB_DIST_DIR.resolve()
    candidate = (base / full_path).resolve()
    if candidate != base and base not in candidate.parents:
        raise HTTPException(400, {"reason": "invalid_path"})

    if candidate.is_file():
        return FileResponse(candidate)
    return FileResponse(base / "index.html")
