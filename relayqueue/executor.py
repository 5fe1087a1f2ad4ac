import base64
import logging
import os
import shutil
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import quote_plus

import psutil
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from .errors import ActionError
from .models import DispatchJob
from .settings import Settings

log = logging.getLogger("executor")

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
]
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
BROWSER_NAMES = ("chromium", "chromium-browser", "google-chrome", "chrome")
# Chromium ignores unknown switches; this one marks which lease a process belongs to
TAG_SWITCH = "--relayqueue-lease"


@contextmanager
def launch_chromium(executable_path: str | None, timeout_ms: float, headless: bool = True, tag: str | None = None):
    """Start one isolated Chromium and close it however the block exits."""
    args = CHROMIUM_ARGS + ([f"{TAG_SWITCH}={tag}"] if tag else [])
    with sync_playwright() as pw:
        browser = pw.chromium.launch(
            executable_path=executable_path,
            headless=headless,
            args=args,
            timeout=timeout_ms,
        )
        try:
            yield browser
        finally:
            browser.close()


def kill_tagged(tag: str) -> int:
    """Kill every process launched with ``tag`` along with its children."""
    switch = f"{TAG_SWITCH}={tag}"
    victims = []
    for proc in psutil.process_iter(["cmdline"]):
        if switch not in (proc.info["cmdline"] or []):
            continue
        try:
            victims.extend(proc.children(recursive=True))
        except psutil.NoSuchProcess:
            continue
        victims.append(proc)
    for proc in victims:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            # exited on its own between listing and kill
            continue
    return len(victims)


@dataclass
class ActionResult:
    target: str
    url: str
    evidence: str | None
    status: str = "SUCCESS"
    captured_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_payload(self) -> dict:
        return {
            "status": self.status,
            "target": self.target,
            "url": self.url,
            "evidence": self.evidence,
            "captured_at": self.captured_at,
        }


class BrowserActionExecutor:
    """Runs one bounded browser action per job.

    A "SUCCESS" only means the scripted navigation finished and a screenshot
    was taken. Nothing here confirms that outreach reached anyone.
    """

    def __init__(self, settings: Settings, launcher=launch_chromium, clock=time.monotonic, killer=kill_tagged):
        self.settings = settings
        self._launcher = launcher
        self._clock = clock
        self._killer = killer

    @staticmethod
    def tag_for(job: DispatchJob) -> str:
        return f"{job.id}.{job.attempt}"

    def target_url(self, job: DispatchJob) -> str:
        query = f"apply to {job.subject} at {job.recipient}"
        return self.settings.search_url_template.format(query=quote_plus(query))

    def is_ready(self) -> bool:
        path = self.settings.browser_executable_path
        if path:
            return os.path.isfile(path) and os.access(path, os.X_OK)
        if any(shutil.which(name) for name in BROWSER_NAMES):
            return True
        cache = os.environ.get("PLAYWRIGHT_BROWSERS_PATH") or Path.home() / ".cache" / "ms-playwright"
        return any(Path(cache).glob("chromium*"))

    def execute(self, job: DispatchJob, timeout: float | None = None) -> ActionResult:
        timeout = timeout or self.settings.action_timeout_seconds
        deadline = self._clock() + timeout

        def remaining_ms() -> float:
            left = deadline - self._clock()
            if left <= 0:
                raise ActionError(f"action timed out after {timeout:g}s")
            return left * 1000

        url = self.target_url(job)
        log.info(
            f"navigating for {job.recipient}",
            extra={"job_id": job.id, "attempt": job.attempt, "event": "action_start"},
        )
        try:
            with self._launcher(
                self.settings.browser_executable_path,
                remaining_ms(),
                headless=self.settings.browser_headless,
                tag=self.tag_for(job),
            ) as browser:
                context = browser.new_context(user_agent=USER_AGENT)
                page = context.new_page()
                page.goto(url, timeout=remaining_ms(), wait_until="domcontentloaded")
                page.wait_for_timeout(min(self.settings.settle_seconds * 1000, remaining_ms()))
                evidence = self._capture(job, page, remaining_ms())
                remaining_ms()
        except ActionError:
            raise
        except PlaywrightError as e:
            raise ActionError(f"browser action failed: {e}") from e
        except Exception as e:
            raise ActionError(f"browser action crashed: {e!r}") from e

        log.info("action finished", extra={"job_id": job.id, "event": "action_success"})
        return ActionResult(target=job.recipient, url=url, evidence=evidence)

    def abort(self, job: DispatchJob) -> int:
        """Force-kill the browser of a job whose caller stopped waiting for it."""
        killed = self._killer(self.tag_for(job))
        log.warning(
            f"force-killed {killed} browser processes",
            extra={"job_id": job.id, "attempt": job.attempt, "event": "action_killed"},
        )
        return killed

    def _capture(self, job: DispatchJob, page, timeout_ms: float) -> str:
        if not self.settings.evidence_dir:
            shot = page.screenshot(type="png", timeout=timeout_ms)
            return base64.b64encode(shot).decode("ascii")
        folder = Path(self.settings.evidence_dir)
        folder.mkdir(parents=True, exist_ok=True)
        path = folder / f"{job.id}-{job.attempt}.png"
        page.screenshot(path=str(path), type="png", timeout=timeout_ms)
        return str(path)
