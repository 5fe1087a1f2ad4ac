import base64
import os
import subprocess
import sys
from pathlib import Path

import pytest

from relayqueue.errors import ActionError
from relayqueue.executor import TAG_SWITCH, BrowserActionExecutor, kill_tagged
from relayqueue.models import DispatchJob, DispatchKind


class StepClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def job():
    return DispatchJob(
        id="job-1",
        recipient="Acme Corp",
        subject="Strategic Application: Backend Engineer",
        body="...",
        kind=DispatchKind.job_application,
        max_attempts=3,
        enqueued_at=0.0,
        attempt=1,
    )


def test_success_captures_evidence_and_closes_browser(settings, job, make_launcher):
    launcher = make_launcher()
    result = BrowserActionExecutor(settings, launcher=launcher).execute(job)

    assert (launcher.launched, launcher.closed) == (1, 1)
    assert result.status == "SUCCESS"
    assert result.target == "Acme Corp"
    assert launcher.visited == [result.url]
    assert "Acme+Corp" in result.url
    assert Path(result.evidence).name == "job-1-1.png"
    assert Path(result.evidence).exists()

    payload = result.to_payload()
    assert payload["status"] == "SUCCESS"
    assert payload["evidence"] == result.evidence


def test_inline_evidence_without_evidence_dir(settings, job, make_launcher):
    settings = settings.model_copy(update={"evidence_dir": None})
    result = BrowserActionExecutor(settings, launcher=make_launcher()).execute(job)
    assert base64.b64decode(result.evidence).startswith(b"\x89PNG")


@pytest.mark.parametrize("step", ["goto", "screenshot"])
def test_failure_is_action_error_and_browser_still_closed(settings, job, make_launcher, step):
    launcher = make_launcher(fail_on=step)
    with pytest.raises(ActionError):
        BrowserActionExecutor(settings, launcher=launcher).execute(job)
    assert (launcher.launched, launcher.closed) == (1, 1)


def test_launch_failure_leaves_nothing_running(settings, job, make_launcher):
    launcher = make_launcher(fail_on="launch")
    with pytest.raises(ActionError, match="Executable"):
        BrowserActionExecutor(settings, launcher=launcher).execute(job)
    assert (launcher.launched, launcher.closed) == (0, 0)


def test_exhausted_budget_times_out_and_tears_down(settings, job, make_launcher):
    clock = StepClock()

    def slow_navigation():
        clock.now += 10

    launcher = make_launcher(on_goto=slow_navigation)
    executor = BrowserActionExecutor(settings, launcher=launcher, clock=clock)
    with pytest.raises(ActionError, match="timed out"):
        executor.execute(job, timeout=5)
    assert (launcher.launched, launcher.closed) == (1, 1)


def test_target_url_uses_template(settings, job):
    settings = settings.model_copy(update={"search_url_template": "https://duckduckgo.com/?q={query}"})
    url = BrowserActionExecutor(settings).target_url(job)
    assert url.startswith("https://duckduckgo.com/?q=apply+to+Strategic+Application")


def test_is_ready_checks_configured_binary(settings, tmp_path):
    binary = tmp_path / "chromium"
    binary.write_text("#!/bin/sh\n")
    os.chmod(binary, 0o755)

    ready = settings.model_copy(update={"browser_executable_path": str(binary)})
    missing = settings.model_copy(update={"browser_executable_path": str(tmp_path / "nope")})
    assert BrowserActionExecutor(ready).is_ready() is True
    assert BrowserActionExecutor(missing).is_ready() is False


def test_browser_is_launched_with_lease_tag(settings, job, make_launcher):
    launcher = make_launcher()
    BrowserActionExecutor(settings, launcher=launcher).execute(job)
    assert launcher.tags == ["job-1.1"]

    job.attempt = 2
    BrowserActionExecutor(settings, launcher=launcher).execute(job)
    assert launcher.tags == ["job-1.1", "job-1.2"]


def test_abort_kills_processes_of_that_attempt(settings, job):
    killed = []

    def killer(tag):
        killed.append(tag)
        return 3

    executor = BrowserActionExecutor(settings, killer=killer)
    assert executor.abort(job) == 3
    assert killed == ["job-1.1"]


def test_kill_tagged_only_hits_matching_processes():
    sleeper = [sys.executable, "-c", "import time; time.sleep(30)"]
    mine = subprocess.Popen(sleeper + [f"{TAG_SWITCH}=job-9.1"])
    other = subprocess.Popen(sleeper + [f"{TAG_SWITCH}=job-9.2"])
    try:
        assert kill_tagged("job-9.1") == 1
        assert mine.wait(timeout=5) != 0
        assert other.poll() is None
    finally:
        for proc in (mine, other):
            proc.kill()
            proc.wait(timeout=5)
