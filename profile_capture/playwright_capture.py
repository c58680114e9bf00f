from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import timedelta
from pathlib import Path
from typing import Any

from profile_capture.capture_config import CaptureConfig, PauseSettings
from profile_capture.capture_run import CaptureOrchestrator
from profile_capture.collaborators import build_default_channel
from profile_capture.field_extractor import detect_site_kind
from profile_capture.metadata_store import JsonFileKeyValueStore, MetadataLifecycleStore, MetadataStoreError
from profile_capture.schemas import CaptureError, CaptureResult, SiteKind
from profile_capture.timing import SCROLL_SETTLE_SPAN, SCROLL_STEP_SPAN, human_pause

logger = logging.getLogger(__name__)

_NAVIGATION_TIMEOUT_MS = 60_000
_MAX_SCROLL_STEPS = 40
_STABLE_HEIGHT_STEPS = 2
_SCROLL_TO_BOTTOM = "() => window.scrollTo(0, document.body.scrollHeight)"
_SCROLL_TO_TOP = "() => window.scrollTo(0, 0)"
_PAGE_HEIGHT = "() => document.body.scrollHeight"


class SessionStateMissingError(CaptureError):
    def __init__(self, *, path: Path) -> None:
        self.path = path
        super().__init__("browser session state file not found", details=str(path))


def resolve_project_path(value: str, *, project_root: Path) -> Path:
    path = Path(value)
    if path.is_absolute():
        return path
    return project_root.joinpath(path)


def open_lifecycle_store(config: CaptureConfig, *, project_root: Path) -> MetadataLifecycleStore:
    return MetadataLifecycleStore(
        JsonFileKeyValueStore(resolve_project_path(config.metadata_store_path, project_root=project_root)),
        retention=timedelta(days=config.retention_days),
    )


def scroll_profile(page: Any, pauses: PauseSettings) -> int:
    """Scroll down until lazy sections stop growing the page, then return to the top.

    Returns the number of scroll steps taken.
    """
    heights: list[int] = []
    for _ in range(_MAX_SCROLL_STEPS):
        try:
            page.evaluate(_SCROLL_TO_BOTTOM)
            page.wait_for_timeout(350)
            human_pause(page, pauses, SCROLL_STEP_SPAN)
            heights.append(int(page.evaluate(_PAGE_HEIGHT)))
        except Exception as exc:
            logger.debug("scrolling stopped early: %s", exc, extra={"stage": "scroll"})
            break
        if _height_settled(heights):
            break

    # the contact trigger and top card sit at the top of the page
    try:
        page.evaluate(_SCROLL_TO_TOP)
    except Exception as exc:
        logger.debug("unable to scroll back to top: %s", exc, extra={"stage": "scroll"})
    page.wait_for_timeout(500)
    human_pause(page, pauses, SCROLL_SETTLE_SPAN)
    return len(heights)


def _height_settled(heights: list[int]) -> bool:
    if len(heights) <= _STABLE_HEIGHT_STEPS:
        return False
    recent = heights[-_STABLE_HEIGHT_STEPS - 1 :]
    return all(later <= earlier for earlier, later in zip(recent, recent[1:]))


def run_capture(
    url: str,
    *,
    config: CaptureConfig,
    project_root: Path,
    site_kind: SiteKind | None = None,
    omitted_fields: Sequence[str] = (),
    headless: bool | None = None,
    pauses: PauseSettings | None = None,
) -> CaptureResult:
    resolved_kind = site_kind or detect_site_kind(url)
    waits = pauses if pauses is not None else config.pauses
    store = open_lifecycle_store(config, project_root=project_root)
    try:
        store.sweep_expired()
        store.trim_to_most_recent(config.max_tracked_captures)
    except MetadataStoreError as exc:
        logger.warning(
            "metadata sweep skipped",
            extra={"stage": "sweep", "status": "degraded", "error": str(exc)},
        )

    session_state_path: Path | None = None
    if config.session_state_path is not None:
        session_state_path = resolve_project_path(config.session_state_path, project_root=project_root)
        if not session_state_path.exists():
            raise SessionStateMissingError(path=session_state_path)

    output_root = resolve_project_path(config.output_root, project_root=project_root)
    launch_headless = config.headless_default if headless is None else headless

    from playwright.sync_api import sync_playwright

    with sync_playwright() as playwright:
        browser = playwright.chromium.launch(headless=launch_headless)
        try:
            if session_state_path is not None:
                context = browser.new_context(storage_state=str(session_state_path))
            else:
                context = browser.new_context()
            page = context.new_page()
            logger.info("opening %s", url, extra={"stage": "navigate"})
            page.goto(url, wait_until="domcontentloaded", timeout=_NAVIGATION_TIMEOUT_MS)
            page.wait_for_timeout(1200)
            human_pause(page, waits)
            scroll_profile(page, waits)

            orchestrator = CaptureOrchestrator(
                page,
                channel=build_default_channel(output_root=output_root, page=page),
                store=store,
                config=config,
                pauses=waits,
            )
            return orchestrator.capture(resolved_kind, omitted_fields)
        finally:
            browser.close()
