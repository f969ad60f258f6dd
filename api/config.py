"""API 서버 설정 (환경변수 / .env)."""

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

load_dotenv()


class ApiSettings(BaseSettings):
    environment: str = "development"

    # 외부 스크레이퍼 webhook 공유 시크릿. 비어있으면 검증 생략 (개발 모드)
    webhook_secret: str = Field(default="", validation_alias="WEBHOOK_SECRET")

    jwt_secret_key: str = Field(default="", validation_alias="JWT_SECRET_KEY")
    jwt_algorithm: str = "HS256"
    jwt_expire_hours: int = 24

    allowed_origins: str = "http://localhost:3000"
    jobs_page_size: int = 50

    model_config = {"env_prefix": "API_", "populate_by_name": True}

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


api_settings = ApiSettings()
