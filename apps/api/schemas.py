# apps/api/schemas.py
from typing import List, Optional
from pydantic import BaseModel

# ---- ArcGIS token ----
class Credential(BaseModel):
    token: str
    expires: int  # epoch milliseconds
    ssl: bool = False

class TokenResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    token: str
    expires: int
    expiresAt: str
    ssl: bool

# ---- /landunit/{level} ----
class LandUnitFilters(BaseModel):
    pu: Optional[str] = None
    region: Optional[str] = None
    farm: Optional[str] = None
    block: Optional[str] = None
    paddock: Optional[str] = None

# ---- statistics query ----
class StatisticDefinition(BaseModel):
    statisticType: str
    onStatisticField: str
    outStatisticFieldName: str

class QuerySpec(BaseModel):
    where: str = "1=1"
    outFields: str = "*"
    groupByFieldsForStatistics: Optional[str] = None
    outStatistics: List[StatisticDefinition] = []
    returnGeometry: bool = False
