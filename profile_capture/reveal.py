from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from profile_capture.capture_config import PauseSettings, RevealSettings
from profile_capture.schemas import (
    CONTACT_MULTI_FIELDS,
    CONTACT_SINGLE_FIELDS,
    CaptureBaseModel,
    ContactInfo,
    ContactStatus,
    RevealState,
    RevealTrace,
    SiteKind,
    StrategyError,
    normalize_optional_text,
)
from profile_capture.selector_chain import FieldRule, SelectorChain, chain, reject_markers
from profile_capture.timing import NO_PAUSES, human_pause, poll_until, settle

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_PHONE_RE = re.compile(r"(?<![\w+(/-])(?:\+|\()?\d[\d \t().-]{6,}\d(?!\w)")
_YEAR_RANGE_RE = re.compile(r"\d{4}\s*[-\u2013]\s*\d{4}")
_URL_RE = re.compile(r"https?://[^\s<>\"']+")
_LINK_TOKEN_RE = re.compile(r"(?:https?://|www\.)\S+|\S*linkedin\.com/\S*", re.IGNORECASE)
_READ_TIMEOUT_MS = 1_500
_MAX_SECTIONS = 24
_MAX_SECTION_VALUES = 20

ContactValues = dict[str, Any]
Strategy = Callable[[Any], ContactValues]


def _strip_scheme_prefix(prefix: str) -> Callable[[str], str | None]:
    def transform(value: str) -> str | None:
        if value.lower().startswith(prefix):
            return value[len(prefix):].split("?", 1)[0]
        return value

    return transform


_NOT_LINKEDIN = reject_markers("linkedin.com")

_LINKEDIN_STRUCTURAL_CHAINS: dict[str, SelectorChain] = {
    "email": chain(
        "email",
        FieldRule("section.ci-email a[href^='mailto:']", attribute="href", transform=_strip_scheme_prefix("mailto:")),
        FieldRule("a[href^='mailto:']", attribute="href", transform=_strip_scheme_prefix("mailto:")),
    ),
    "phone": chain(
        "phone",
        FieldRule("section.ci-phone .t-14.t-black.t-normal"),
        FieldRule("a[href^='tel:']", attribute="href", transform=_strip_scheme_prefix("tel:")),
    ),
    "profile_url": chain(
        "profile_url",
        FieldRule("section.ci-vanity-url a[href]", attribute="href"),
        FieldRule("a[href*='linkedin.com/in/']", attribute="href"),
    ),
    "websites": chain(
        "websites",
        FieldRule("section.ci-websites a[href^='http']", attribute="href", validator=_NOT_LINKEDIN),
        FieldRule("a.pv-contact-info__contact-link[href^='http']", attribute="href", validator=_NOT_LINKEDIN),
    ),
    "birthday": chain(
        "birthday",
        FieldRule("section.ci-birthday .t-14.t-black.t-normal"),
    ),
}

_CONTACTS_STRUCTURAL_CHAINS: dict[str, SelectorChain] = {
    "email": chain(
        "email",
        FieldRule("[data-test-id='contact-details-email'] a[href^='mailto:']", attribute="href",
                  transform=_strip_scheme_prefix("mailto:")),
        FieldRule("a[href^='mailto:']", attribute="href", transform=_strip_scheme_prefix("mailto:")),
    ),
    "phone": chain(
        "phone",
        FieldRule("[data-test-id='contact-details-phone']"),
        FieldRule("a[href^='tel:']", attribute="href", transform=_strip_scheme_prefix("tel:")),
    ),
    "websites": chain(
        "websites",
        FieldRule("[data-test-id='contact-details-website'] a[href^='http']", attribute="href"),
    ),
    "birthday": chain(
        "birthday",
        FieldRule("[data-test-id='contact-details-birthday']"),
    ),
}

_HEADER_FIELD_ALIASES: dict[str, str] = {
    "email": "email",
    "email address": "email",
    "phone": "phone",
    "phone number": "phone",
    "mobile": "phone",
    "website": "websites",
    "websites": "websites",
    "birthday": "birthday",
    "your profile": "profile_url",
    "profile": "profile_url",
    "profile url": "profile_url",
}


@dataclass(frozen=True)
class RevealProfile:
    site_kind: SiteKind
    trigger_selectors: tuple[str, ...]
    container_selectors: tuple[str, ...]
    dismiss_selectors: tuple[str, ...]
    structural_chains: Mapping[str, SelectorChain]
    inline_root_selectors: tuple[str, ...] = ()
    section_selector: str = "section"
    header_selector: str = "h3"
    access_denied_hints: tuple[str, ...] = field(
        default=(
            "sign in to view",
            "join to view",
            "log in to see",
            "upgrade to premium",
            "unlock contact info",
        )
    )


_REVEAL_PROFILES: dict[SiteKind, RevealProfile] = {
    SiteKind.linkedin: RevealProfile(
        site_kind=SiteKind.linkedin,
        trigger_selectors=(
            "a[href*='overlay/contact-info']",
            "#top-card-text-details-contact-info",
            "a:has-text('Contact info')",
            "button:has-text('Contact info')",
        ),
        container_selectors=(
            "[data-test-modal-container]",
            ".artdeco-modal-overlay",
            ".artdeco-modal",
            "div[role='dialog']",
        ),
        dismiss_selectors=(
            ".artdeco-modal__dismiss",
            "[data-test-modal-close-btn]",
            "button[aria-label='Dismiss']",
            "button[aria-label*='Close']",
        ),
        structural_chains=_LINKEDIN_STRUCTURAL_CHAINS,
        inline_root_selectors=("section.pv-contact-info", ".pv-contact-info"),
        section_selector="section.pv-contact-info__contact-type",
    ),
    SiteKind.contacts: RevealProfile(
        site_kind=SiteKind.contacts,
        trigger_selectors=(),
        container_selectors=(),
        dismiss_selectors=(),
        structural_chains=_CONTACTS_STRUCTURAL_CHAINS,
        inline_root_selectors=("div[role='main']", "main", "body"),
        section_selector="[data-test-id^='contact-details-']",
        header_selector="[aria-label], h3",
    ),
}


def reveal_profile_for(site_kind: SiteKind) -> RevealProfile | None:
    return _REVEAL_PROFILES.get(site_kind)


class RevealOutcome(CaptureBaseModel):
    contact_info: ContactInfo
    trace: RevealTrace


def structural_strategy(root: Any, chains: Mapping[str, SelectorChain]) -> ContactValues:
    values: ContactValues = {}
    for field_name, selector_chain in chains.items():
        if field_name in CONTACT_MULTI_FIELDS:
            found = selector_chain.union(root)
            if found:
                values[field_name] = found
        else:
            single = selector_chain.first(root)
            if single is not None:
                values[field_name] = single
    return values


def text_pattern_strategy(root: Any) -> ContactValues:
    text = root.inner_text(timeout=_READ_TIMEOUT_MS) or ""
    values: ContactValues = {}
    email_match = _EMAIL_RE.search(text)
    if email_match is not None:
        values["email"] = email_match.group(0).rstrip(".")
    for match in _PHONE_RE.finditer(_LINK_TOKEN_RE.sub(" ", text)):
        candidate = normalize_optional_text(match.group(0))
        if candidate is None or _YEAR_RANGE_RE.fullmatch(candidate):
            continue
        digits = re.sub(r"\D", "", candidate)
        if 7 <= len(digits) <= 15:
            values["phone"] = candidate
            break
    return values


def section_header_strategy(root: Any, *, section_selector: str, header_selector: str) -> ContactValues:
    values: ContactValues = {}
    sections = root.locator(section_selector)
    count = min(sections.count(), _MAX_SECTIONS)
    for index in range(count):
        section = sections.nth(index)
        header = section.locator(header_selector).first
        if header.count() == 0:
            continue
        label = (normalize_optional_text(header.inner_text(timeout=_READ_TIMEOUT_MS)) or "").lower()
        field_name = _HEADER_FIELD_ALIASES.get(label)
        if field_name is None:
            continue
        section_values = _section_values(section, field_name=field_name, header_text=label)
        if not section_values:
            continue
        if field_name in CONTACT_MULTI_FIELDS:
            values.setdefault(field_name, [])
            values[field_name].extend(v for v in section_values if v not in values[field_name])
        else:
            values.setdefault(field_name, section_values[0])
    return values


def _section_values(section: Any, *, field_name: str, header_text: str) -> list[str]:
    collected: list[str] = []
    links = section.locator("a[href]")
    for index in range(min(links.count(), _MAX_SECTION_VALUES)):
        href = normalize_optional_text(links.nth(index).get_attribute("href", timeout=_READ_TIMEOUT_MS))
        if href is None:
            continue
        if href.lower().startswith("mailto:"):
            href = href[len("mailto:"):]
        elif href.lower().startswith("tel:"):
            href = href[len("tel:"):]
        if field_name == "websites" and "linkedin.com" in href.lower():
            continue
        if href not in collected:
            collected.append(href)
    if collected:
        return collected

    text = section.inner_text(timeout=_READ_TIMEOUT_MS) or ""
    for line in text.splitlines():
        normalized = normalize_optional_text(line)
        if normalized is None or normalized.lower() == header_text:
            continue
        if field_name == "websites":
            collected.extend(match for match in _URL_RE.findall(normalized) if match not in collected)
            continue
        collected.append(normalized)
        break
    return collected


def merge_first_writer_wins(results: Iterable[Mapping[str, Any]]) -> ContactValues:
    """Merge strategy outputs in priority order.

    Single-value fields keep the first non-empty value seen; multi-value fields
    are the de-duplicated union across all strategies.
    """
    merged: ContactValues = {}
    for result in results:
        for field_name in CONTACT_SINGLE_FIELDS:
            value = normalize_optional_text(result.get(field_name))
            if value is not None and field_name not in merged:
                merged[field_name] = value
        for field_name in CONTACT_MULTI_FIELDS:
            values = result.get(field_name) or []
            bucket: list[str] = merged.setdefault(field_name, [])
            for value in values:
                normalized = normalize_optional_text(value)
                if normalized is not None and normalized not in bucket:
                    bucket.append(normalized)
    return {key: value for key, value in merged.items() if value}


class RevealWorkflow:
    """Open a hidden contact panel, read it and always close it again.

    States::

        idle -> triggering -> awaiting_render -> extracting -> dismissing -> done
        idle -> skipped_no_trigger
        awaiting_render -> dismissing -> failed_timeout
    """

    def __init__(
        self,
        profile: RevealProfile,
        *,
        settings: RevealSettings | None = None,
        pauses: PauseSettings = NO_PAUSES,
    ) -> None:
        self._profile = profile
        self._settings = settings or RevealSettings()
        self._pauses = pauses

    def run(self, page: Any) -> RevealOutcome:
        states = [RevealState.idle]
        strategy_errors: list[StrategyError] = []

        trigger = self._locate_first(page, self._profile.trigger_selectors)
        if trigger is None:
            states.append(RevealState.skipped_no_trigger)
            logger.info("no reveal trigger found; reading page inline", extra={"stage": "reveal"})
            values = self._extract_inline(page, strategy_errors)
            return self._outcome(
                states,
                values=values,
                container_text=None,
                strategy_errors=strategy_errors,
            )

        states.append(RevealState.triggering)
        human_pause(page, self._pauses)
        try:
            trigger.click(timeout=self._settings.click_timeout_ms)
        except Exception as exc:
            logger.warning(
                "reveal trigger click failed",
                extra={"stage": "reveal", "status": "trigger-failed", "error": str(exc)},
            )
            dismiss_method = self._dismiss(page, states)
            states.append(RevealState.done)
            return RevealOutcome(
                contact_info=ContactInfo(
                    status=ContactStatus.extraction_error,
                    detail=f"reveal trigger click failed: {exc}",
                ),
                trace=RevealTrace(
                    final_state=RevealState.done,
                    states=states,
                    dismiss_method=dismiss_method,
                ),
            )

        states.append(RevealState.awaiting_render)
        poll = poll_until(
            page,
            lambda: self._visible_container(page) is not None,
            interval_ms=self._settings.poll_interval_ms,
            max_attempts=self._settings.max_poll_attempts,
        )
        if not poll.detected:
            dismiss_method = self._dismiss(page, states)
            states.append(RevealState.failed_timeout)
            budget = self._settings.poll_budget_ms
            logger.warning(
                "reveal container did not render within %dms",
                budget,
                extra={"stage": "reveal", "status": "timeout"},
            )
            return RevealOutcome(
                contact_info=ContactInfo(
                    status=ContactStatus.extraction_error,
                    detail=f"reveal timeout: container not rendered after {poll.attempts} attempt(s) ({budget}ms)",
                ),
                trace=RevealTrace(
                    final_state=RevealState.failed_timeout,
                    states=states,
                    poll_attempts=poll.attempts,
                    dismiss_method=dismiss_method,
                ),
            )

        settle(page, self._settings.render_settle_ms)
        states.append(RevealState.extracting)
        container_text: str | None = None
        values: ContactValues = {}
        container = None
        try:
            container = self._visible_container(page)
            if container is not None:
                values = self.extract_contact_values(container, strategy_errors)
                container_text = _safe_inner_text(container)
        finally:
            dismiss_method = self._dismiss(page, states, container)
        states.append(RevealState.done)
        return self._outcome(
            states,
            values=values,
            container_text=container_text,
            strategy_errors=strategy_errors,
            poll_attempts=poll.attempts,
            dismiss_method=dismiss_method,
        )

    def extract_contact_values(self, root: Any, strategy_errors: list[StrategyError]) -> ContactValues:
        strategies: Sequence[tuple[str, Strategy]] = (
            ("structural", lambda node: structural_strategy(node, self._profile.structural_chains)),
            ("text-pattern", text_pattern_strategy),
            (
                "section-header",
                lambda node: section_header_strategy(
                    node,
                    section_selector=self._profile.section_selector,
                    header_selector=self._profile.header_selector,
                ),
            ),
        )
        results: list[ContactValues] = []
        for name, strategy in strategies:
            try:
                results.append(strategy(root))
            except Exception as exc:
                logger.warning(
                    "contact strategy %s failed",
                    name,
                    extra={"stage": "reveal", "status": "strategy-error", "error": str(exc)},
                )
                strategy_errors.append(
                    StrategyError(
                        strategy=name,
                        error_type=exc.__class__.__name__,
                        error=str(exc) or exc.__class__.__name__,
                    )
                )
        return merge_first_writer_wins(results)

    def _extract_inline(self, page: Any, strategy_errors: list[StrategyError]) -> ContactValues:
        root = self._locate_first(page, self._profile.inline_root_selectors)
        if root is None:
            return {}
        return self.extract_contact_values(root, strategy_errors)

    def _visible_container(self, page: Any) -> Any | None:
        for selector in self._profile.container_selectors:
            try:
                locator = page.locator(selector).first
                if locator.count() > 0 and locator.is_visible():
                    return locator
            except Exception:
                continue
        return None

    def _dismiss(self, page: Any, states: list[RevealState], container: Any | None = None) -> str:
        states.append(RevealState.dismissing)
        method = "escape"
        if container is None:
            container = self._visible_container(page)
        # controls outside a rendered container belong to other overlays
        control = None
        if container is not None:
            control = self._locate_first(container, self._profile.dismiss_selectors)
        if control is not None:
            try:
                control.click(timeout=self._settings.click_timeout_ms)
                method = "control"
            except Exception as exc:
                logger.debug("dismiss control click failed: %s", exc)
        if method == "escape":
            try:
                page.keyboard.press("Escape")
            except Exception as exc:
                method = "failed"
                logger.warning(
                    "unable to dismiss reveal container",
                    extra={"stage": "reveal", "status": "dismiss-failed", "error": str(exc)},
                )
        settle(page, self._settings.dismiss_settle_ms)
        return method

    def _outcome(
        self,
        states: list[RevealState],
        *,
        values: ContactValues,
        container_text: str | None,
        strategy_errors: list[StrategyError],
        poll_attempts: int = 0,
        dismiss_method: str | None = None,
    ) -> RevealOutcome:
        status = ContactStatus.populated if values else ContactStatus.not_found
        detail = None
        if not values and container_text is not None:
            lowered = container_text.lower()
            hint = next((item for item in self._profile.access_denied_hints if item in lowered), None)
            if hint is not None:
                status = ContactStatus.access_denied
                detail = f"reveal container shows an access wall ('{hint}')"
        if status == ContactStatus.not_found and states[-1] == RevealState.skipped_no_trigger:
            detail = "reveal trigger not found"
        logger.info(
            "contact info %s",
            status.value,
            extra={"stage": "reveal", "status": states[-1].value},
        )
        return RevealOutcome(
            contact_info=ContactInfo(status=status, detail=detail, **values),
            trace=RevealTrace(
                final_state=states[-1],
                states=states,
                poll_attempts=poll_attempts,
                dismiss_method=dismiss_method,
                strategy_errors=strategy_errors,
            ),
        )

    @staticmethod
    def _locate_first(page: Any, selectors: Sequence[str]) -> Any | None:
        for selector in selectors:
            try:
                locator = page.locator(selector).first
                if locator.count() > 0:
                    return locator
            except Exception:
                continue
        return None


def _safe_inner_text(locator: Any) -> str | None:
    try:
        return locator.inner_text(timeout=_READ_TIMEOUT_MS)
    except Exception:
        return None
