# 環境変数の読み込みと管理
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ArcGIS Enterprise portal (token issuance + proxy target)
    ARCGIS_PORTAL_URL: Optional[str] = None
    ARCGIS_USERNAME: Optional[str] = None
    ARCGIS_PASSWORD: Optional[str] = None

    # referer はキー名の揺れを吸収（フロントの公開 URL を流用する場合あり）
    ARCGIS_REFERER: Optional[str] = None
    NEXT_PUBLIC_APP_URL: Optional[str] = None

    # Feature / Map services root
    ARCGIS_SERVER_URL: str = Field(
        "https://geoportal.mnmsugarhub.com/server/rest/services",
        alias="ARCGIS_SERVER_URL",
    )

    # Token lifecycle
    ARCGIS_TOKEN_EXPIRATION_MINUTES: int = 60
    ARCGIS_TOKEN_REFRESH_THRESHOLD_SEC: int = 300

    # Outbound HTTP
    ARCGIS_HTTP_TIMEOUT: float = 20.0
    ARCGIS_QUERY_RETRIES: int = 1
    ARCGIS_RETRY_BACKOFF_SEC: float = 0.5

    # 月次集計の月境界（現地時間）
    DASHBOARD_UTC_OFFSET_HOURS: float = 7.0

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"
        populate_by_name = True

    @property
    def REFERER(self) -> str:
        return (
            self.ARCGIS_REFERER
            or self.NEXT_PUBLIC_APP_URL
            or "http://localhost:3000"
        )


settings = Settings()
