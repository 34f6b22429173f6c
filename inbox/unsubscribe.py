import asyncio
import logging
from dataclasses import dataclass

from asgiref.sync import async_to_sync, sync_to_async
from bs4 import BeautifulSoup
from django.utils import timezone
from playwright.async_api import async_playwright

from .ai_services import get_default_model, plan_unsubscribe_actions
from .exceptions import UnsubscribeError
from .models import Email, UnsubscribeJob
from .states import Automated, Failed, MailDeferred

logger = logging.getLogger(__name__)

NAVIGATION_TIMEOUT_MS = 30000
SELECTOR_TIMEOUT_MS = 5000
NETWORK_IDLE_TIMEOUT_MS = 5000
GRACE_DELAY_SECONDS = 2

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/115.0.0.0 Safari/537.36"
)

SUCCESS_PATTERNS = [
    "you've been unsubscribed",
    "you have been unsubscribed",
    "you are now unsubscribed",
    "you have been removed",
    "successfully unsubscribed",
    "unsubscribe successful",
    "unsubscribed from our email list",
    "sorry to see you go",
    "subscription canceled",
    "subscription cancelled",
]

CAPTCHA_PATTERNS = [
    "are you a person or a robot",
    "please complete the captcha",
    "i am not a robot",
    "solve the captcha",
    "robot check",
    "please verify you are human",
    "prove you are not a robot",
]


@dataclass
class UnsubscribeResult:
    success: bool
    message: str
    skipped: bool = False

    def as_dict(self):
        data = {"success": self.success, "message": self.message}
        if self.skipped:
            data["skipped"] = True
        return data


class PlaywrightSession:
    """
    One isolated headless Chromium session.
    """

    def __init__(self, playwright, browser, page):
        self._playwright = playwright
        self._browser = browser
        self._page = page

    @classmethod
    async def launch(cls):
        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.launch(headless=True)
            context = await browser.new_context(
                user_agent=USER_AGENT,
                viewport={"width": 1280, "height": 800},
            )
            page = await context.new_page()
        except Exception:
            await playwright.stop()
            raise
        return cls(playwright, browser, page)

    async def goto(self, url, timeout_ms):
        await self._page.goto(url, timeout=timeout_ms, wait_until="networkidle")

    async def content(self):
        return await self._page.content()

    async def wait_for_selector(self, selector, timeout_ms):
        await self._page.wait_for_selector(selector, timeout=timeout_ms)

    async def click(self, selector):
        await self._page.click(selector)

    async def fill(self, selector, value):
        await self._page.fill(selector, value)

    async def select(self, selector, value):
        await self._page.select_option(selector, value)

    async def wait_for_network_idle(self, timeout_ms):
        await self._page.wait_for_load_state("networkidle", timeout=timeout_ms)

    async def close(self):
        try:
            await self._browser.close()
        finally:
            await self._playwright.stop()


def page_text(html):
    return BeautifulSoup(html or "", "html.parser").get_text(" ").lower()


class UnsubscribeAgent:
    """
    Tries each stored unsubscribe link of a message until one works.

    mailto: links are recorded as deferred work. Web links are opened in a
    fresh browser session, the model is asked for an action plan, and the plan
    is replayed. The session is closed on every exit path of a link attempt.
    """

    def __init__(self, launch_session=PlaywrightSession.launch, model=None,
                 grace_delay=GRACE_DELAY_SECONDS):
        self.launch_session = launch_session
        self.model = model or get_default_model()
        self.grace_delay = grace_delay

    async def attempt(self, email):
        links = list(email.unsubscribe_links or [])
        if not links:
            return UnsubscribeResult(success=True, message="No unsubscribe links found", skipped=True)

        last_error = "no usable link"
        for link in links:
            if link.lower().startswith("mailto:"):
                await self._record(email, MailDeferred(link=link), "deferred",
                                   True, "Unsubscribe email will be sent", link)
                return UnsubscribeResult(success=True, message="Unsubscribe email will be sent")

            try:
                await self._unsubscribe_via_browser(link)
            except Exception as e:
                logger.warning("[UNSUBSCRIBE] Error processing link %s (email %s): %s", link, email.pk, e)
                last_error = str(e) or e.__class__.__name__
                continue

            await self._record(email, Automated(date=timezone.now(), link=link), "completed",
                               True, "Successfully unsubscribed", link)
            logger.info("[UNSUBSCRIBE] SUCCESS on link %s (email %s)", link, email.pk)
            return UnsubscribeResult(success=True, message="Successfully unsubscribed")

        message = "Failed to unsubscribe using available links"
        await self._record(email, Failed(reason=last_error), "failed", False, message, None)
        return UnsubscribeResult(success=False, message=message)

    async def _unsubscribe_via_browser(self, link):
        session = await self.launch_session()
        try:
            await session.goto(link, NAVIGATION_TIMEOUT_MS)
            html = await session.content()
            text = page_text(html)
            if any(pattern in text for pattern in CAPTCHA_PATTERNS):
                raise UnsubscribeError("Captcha detected on unsubscribe page", {"link": link})
            if any(pattern in text for pattern in SUCCESS_PATTERNS):
                logger.info("[UNSUBSCRIBE] Confirmation already shown at %s", link)
                return

            actions = await sync_to_async(plan_unsubscribe_actions)(html, self.model)
            for action in actions:
                await session.wait_for_selector(action.selector, SELECTOR_TIMEOUT_MS)
                if action.type == "click":
                    await session.click(action.selector)
                elif action.type == "input":
                    await session.fill(action.selector, action.value)
                elif action.type == "select":
                    await session.select(action.selector, action.value)
                await session.wait_for_network_idle(NETWORK_IDLE_TIMEOUT_MS)

            await asyncio.sleep(self.grace_delay)
        finally:
            await session.close()

    @sync_to_async
    def _record(self, email, state, job_status, success, message, link):
        email.refresh_from_db(fields=["status"])
        email.unsubscribe_state = state
        email.save(update_fields=["status"])
        result = {"success": success, "message": message}
        if link:
            result["link"] = link
        UnsubscribeJob.objects.create(
            email=email,
            job_status=job_status,
            last_attempted_at=timezone.now(),
            result=result,
        )


def attempt_unsubscribe(email_id, agent=None):
    """
    Attempts to unsubscribe from the mailing list behind a stored message.

    Returns:
        UnsubscribeResult; ``skipped`` is set when the message has no links.
    """
    email = Email.objects.get(pk=email_id)
    if not email.unsubscribe_links:
        logger.info("[UNSUBSCRIBE] No link found for email %s", email_id)
        return UnsubscribeResult(success=True, message="No unsubscribe links found", skipped=True)
    return async_to_sync((agent or UnsubscribeAgent()).attempt)(email)
