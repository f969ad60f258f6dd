"""크롤러 전역 설정."""

from pydantic_settings import BaseSettings


class CrawlerSettings(BaseSettings):
    # 타임아웃
    page_timeout_ms: int = 30_000
    navigation_timeout_ms: int = 15_000

    # 재시도 (브라우저 경로: 2s, 4s, 8s)
    max_retries: int = 3
    browser_retry_base_ms: int = 2_000
    api_retry_base_ms: int = 500

    # 동시성
    max_concurrent_browsers: int = 3

    # 브라우저
    headless: bool = True
    slow_mo_ms: int = 0
    locale: str = "en-US"

    # ── 수집 런 ──
    default_country: str = "US"
    default_limit: int = 100
    batch_size: int = 50
    max_idle_rounds: int = 5
    initial_wait_ms: int = 3_000
    markup_fallback: bool = True

    # 요청 간 지연 (2s + 0~1s 지터)
    request_delay_ms: int = 2_000
    request_jitter_ms: int = 1_000

    # 스크롤 행동
    scroll_viewport_ratio: float = 0.8
    scroll_step_min: int = 3
    scroll_step_max: int = 6
    scroll_step_pause_min_ms: int = 150
    scroll_step_pause_max_ms: int = 500

    # ── 외부 싱크 (webhook) ──
    webhook_url: str = ""
    webhook_secret: str = ""
    scraper_id: str = "adharvest-scraper"
    webhook_timeout_sec: float = 30.0

    model_config = {"env_prefix": "CRAWLER_"}


crawler_settings = CrawlerSettings()


class MetaApiSettings(BaseSettings):
    """Graph API / 외부 아카이브 API 자격증명 (FACEBOOK_ 접두사)."""

    app_id: str = ""
    app_secret: str = ""
    access_token: str = ""
    api_versions: str = "v24.0,v21.0"
    min_request_interval_ms: int = 200
    request_timeout_sec: float = 25.0
    page_size: int = 100
    ad_archive_base_url: str = "https://ad-archive.nexxxt.cloud"

    model_config = {"env_prefix": "FACEBOOK_"}

    @property
    def resolved_token(self) -> str:
        """APP_ID|APP_SECRET 앱 토큰이 있으면 우선."""
        if self.app_id and self.app_secret:
            return f"{self.app_id}|{self.app_secret}"
        return self.access_token.strip()

    @property
    def versions(self) -> list[str]:
        return [v.strip() for v in self.api_versions.split(",") if v.strip()]


meta_api_settings = MetaApiSettings()
