"""크롤러 베이스 클래스: Playwright 브라우저 수명주기 + 런별 세션."""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod

from loguru import logger
from playwright.async_api import Browser, BrowserContext, Page, Response, async_playwright

from crawler.config import crawler_settings
from crawler.harvest_session import ResponseHandler

STEALTH_INIT_SCRIPT = """
    Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
    Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
    if (!window.chrome) window.chrome = {};
    if (!window.chrome.runtime) window.chrome.runtime = { connect: () => {}, sendMessage: () => {} };
"""

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)


class PlaywrightSession:
    """BrowserSession 구현. 런 하나가 컨텍스트 하나를 소유한다."""

    def __init__(
        self,
        context: BrowserContext,
        page: Page,
        *,
        response_filter: str = "graphql",
        more_selector: str = '[role="progressbar"]',
        channel: str = "",
    ):
        self.context = context
        self.page = page
        self.response_filter = response_filter
        self.more_selector = more_selector
        self.channel = channel
        self.settings = crawler_settings
        self._handler: ResponseHandler | None = None
        self._body_tasks: set[asyncio.Task] = set()

    # ── 응답 가로채기 ──

    def on_response(self, handler: ResponseHandler) -> None:
        self._handler = handler
        self.page.on("response", self._on_response)

    def _on_response(self, response: Response):
        if self._handler is None:
            return
        if self.response_filter not in response.url or response.status != 200:
            return
        task = asyncio.create_task(self._read_body(response))
        self._body_tasks.add(task)
        task.add_done_callback(self._body_tasks.discard)

    async def _read_body(self, response: Response):
        try:
            body = await response.text()
        except Exception as e:
            # 페이지 이동 중 body가 사라진 응답
            logger.debug(f"[{self.channel}] response body skip: {e}")
            return
        self._handler(response.url, body)

    async def _settle(self):
        if self._body_tasks:
            await asyncio.gather(*list(self._body_tasks), return_exceptions=True)

    # ── 탐색 ──

    async def navigate(self, url: str) -> None:
        await self.page.goto(url, wait_until="domcontentloaded")

    async def scroll(self) -> None:
        """뷰포트 80%만큼 여러 스텝으로 나눠서 스크롤."""
        s = self.settings
        height = await self.page.evaluate("window.innerHeight")
        distance = int((height or 800) * s.scroll_viewport_ratio)
        steps = random.randint(s.scroll_step_min, s.scroll_step_max)
        per_step = distance // max(steps, 1)

        for _ in range(steps):
            jitter = random.randint(-20, 20)
            await self.page.evaluate(f"window.scrollBy(0, {per_step + jitter})")
            await self.page.wait_for_timeout(
                random.randint(s.scroll_step_pause_min_ms, s.scroll_step_pause_max_ms)
            )

    async def wait(self, ms: int) -> None:
        """base ms + 지터 대기 후, 읽는 중인 응답 body까지 처리."""
        jitter = random.randint(0, self.settings.request_jitter_ms) if ms else 0
        await self.page.wait_for_timeout(ms + jitter)
        await self._settle()

    async def has_more(self) -> bool:
        return await self.page.query_selector(self.more_selector) is not None

    async def page_text(self) -> str:
        return await self.page.inner_text("body")

    async def close(self) -> None:
        await self._settle()
        for p in self.context.pages:
            await p.close()
        await self.context.close()


class BaseCrawler(ABC):
    """브라우저 기반 수집기가 상속하는 베이스 클래스."""

    channel: str = ""  # 하위 클래스에서 override

    def __init__(self):
        self.settings = crawler_settings
        self._playwright = None
        self._browser: Browser | None = None

    # ── Lifecycle ──

    async def start(self):
        """Playwright 브라우저 시작."""
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.settings.headless,
            slow_mo=self.settings.slow_mo_ms or None,
            args=[
                "--disable-blink-features=AutomationControlled",
                "--no-first-run",
                "--no-default-browser-check",
                "--disable-infobars",
            ],
        )
        logger.info(f"[{self.channel}] 브라우저 시작 (headless={self.settings.headless})")

    async def stop(self):
        """브라우저 종료."""
        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
        logger.info(f"[{self.channel}] 브라우저 종료")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *args):
        await self.stop()

    # ── Context / 세션 생성 ──

    async def _create_context(self) -> BrowserContext:
        if self._browser is None:
            raise RuntimeError(f"{type(self).__name__} is not started")
        context = await self._browser.new_context(
            viewport={"width": 1366, "height": 900},
            user_agent=DEFAULT_USER_AGENT,
            locale=self.settings.locale,
        )
        context.set_default_timeout(self.settings.page_timeout_ms)
        context.set_default_navigation_timeout(self.settings.navigation_timeout_ms)
        await context.add_init_script(STEALTH_INIT_SCRIPT)
        return context

    async def open_session(self) -> PlaywrightSession:
        """런마다 새 컨텍스트. 동시 런끼리 세션을 공유하지 않는다."""
        context = await self._create_context()
        try:
            page = await context.new_page()
        except Exception:
            await context.close()
            raise
        return PlaywrightSession(context, page, channel=self.channel)

    # ── 추상 메서드 (하위 클래스에서 구현) ──

    @abstractmethod
    async def scrape_by_term(self, term: str, country: str = "US", limit: int = 100) -> int:
        """검색어 하나 수집. 실제로 수집한 광고 수 반환."""
        ...

    @abstractmethod
    async def scrape_by_page_id(self, page_id: str, limit: int = 100) -> int:
        ...
