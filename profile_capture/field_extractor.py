from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from profile_capture.schemas import ProfileFields, SiteKind
from profile_capture.selector_chain import (
    FieldRule,
    SectionRule,
    SelectorChain,
    all_of,
    chain,
    max_length,
    reject_markers,
    require_pattern,
)

logger = logging.getLogger(__name__)

_DISPLAY_NAME_STRIP_RE = re.compile(r"[^a-zA-Z0-9\s]")
_WHITESPACE_RE = re.compile(r"\s+")
_LINKEDIN_TITLE_SUFFIX_RE = re.compile(r"\s*\|\s*linkedin\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class SiteChains:
    single: dict[str, SelectorChain] = field(default_factory=dict)
    sections: dict[str, SectionRule] = field(default_factory=dict)
    union_sections: frozenset[str] = frozenset()


def _linkedin_section(field_name: str, anchor: str, heading: str, *, max_lines: int = 4) -> SectionRule:
    return SectionRule(
        field_name=field_name,
        container_selectors=(
            f"section:has(#{anchor})",
            f"section[id*='{anchor}']",
            f"section[data-section='{anchor}']",
            f"main section:has(h2:has-text('{heading}'))",
        ),
        item_selector="li",
        max_lines=max_lines,
    )


_LINKEDIN_NAME_CHAIN = chain(
    "name",
    FieldRule("h1[data-anonymize='person-name']", validator=max_length(120)),
    FieldRule(".pv-text-details__left-panel h1", validator=max_length(120)),
    FieldRule("h1.break-words", validator=max_length(120)),
    FieldRule(".mt2 h1", validator=max_length(120)),
    FieldRule(".text-heading-xlarge", validator=max_length(120)),
    FieldRule(
        "meta[property='og:title']",
        attribute="content",
        validator=max_length(120),
        transform=lambda value: _LINKEDIN_TITLE_SUFFIX_RE.sub("", value).split(" - ")[0],
    ),
)

_LINKEDIN_CHAINS = SiteChains(
    single={
        "name": _LINKEDIN_NAME_CHAIN,
        "headline": chain(
            "headline",
            *(
                FieldRule(selector, validator=all_of(max_length(200), reject_markers("hashtag")))
                for selector in (
                    ".pv-text-details__left-panel .text-body-medium:first-child",
                    ".pv-top-card--list .text-body-medium:first-child",
                    ".mt2 .text-body-medium",
                    ".text-body-medium.break-words",
                )
            ),
        ),
        "location": chain(
            "location",
            *(
                FieldRule(selector, validator=all_of(max_length(160), reject_markers("Contact info")))
                for selector in (
                    ".pv-text-details__left-panel .text-body-small.inline.t-black--light",
                    ".mt2 .text-body-small.t-black--light",
                    ".text-body-small.inline.t-black--light.break-words",
                )
            ),
        ),
        "about": chain(
            "about",
            "section:has(#about) .inline-show-more-text span[aria-hidden='true']",
            "section:has(#about) .inline-show-more-text",
            "section.summary .inline-show-more-text",
            FieldRule("meta[name='description']", attribute="content"),
        ),
        "connections": chain(
            "connections",
            *(
                FieldRule(selector, validator=all_of(require_pattern(r"\d"), max_length(60)))
                for selector in (
                    ".pv-top-card--list-bullet li:has-text('connections')",
                    "li.text-body-small:has-text('connections')",
                    "a[href*='mynetwork'] span.t-bold",
                )
            ),
        ),
    },
    sections={
        "experience": _linkedin_section("experience", "experience", "Experience"),
        "education": _linkedin_section("education", "education", "Education"),
        "skills": _linkedin_section("skills", "skills", "Skills", max_lines=1),
    },
    union_sections=frozenset({"skills"}),
)

_CONTACTS_CHAINS = SiteChains(
    single={
        "name": chain(
            "name",
            FieldRule("[data-test-id='contact-details-name']", validator=max_length(120)),
            FieldRule("div[role='main'] h2", validator=max_length(120)),
        ),
        "headline": chain(
            "headline",
            FieldRule("[data-test-id='contact-details-job-title']", validator=max_length(200)),
            FieldRule("[data-test-id='contact-details-organization']", validator=max_length(200)),
        ),
        "location": chain(
            "location",
            FieldRule("[data-test-id='contact-details-address']", validator=max_length(200)),
        ),
        "about": chain(
            "about",
            "[data-test-id='contact-details-notes']",
        ),
    },
)

_SITE_CHAINS: dict[SiteKind, SiteChains] = {
    SiteKind.linkedin: _LINKEDIN_CHAINS,
    SiteKind.contacts: _CONTACTS_CHAINS,
    SiteKind.unknown: SiteChains(),
}


def site_chains_for(site_kind: SiteKind) -> SiteChains:
    return _SITE_CHAINS[site_kind]


def extract_fields(site_kind: SiteKind, root: Any) -> ProfileFields:
    chains = site_chains_for(site_kind)
    payload: dict[str, Any] = {}
    for field_name, selector_chain in chains.single.items():
        payload[field_name] = selector_chain.first(root)
    for field_name, section in chains.sections.items():
        payload[field_name] = section.collect(root, union=field_name in chains.union_sections)

    fields = ProfileFields.model_validate(payload)
    located = fields.located()
    logger.info(
        "located %d field(s) for %s: %s",
        len(located),
        site_kind.value,
        ", ".join(sorted(located)) or "none",
        extra={"stage": "extract-fields"},
    )
    return fields


def sanitize_display_name(value: str, *, max_length: int = 50) -> str:
    cleaned = _DISPLAY_NAME_STRIP_RE.sub("", value).strip()
    return _WHITESPACE_RE.sub("_", cleaned)[:max_length].strip("_")


def derive_display_name(
    site_kind: SiteKind,
    root: Any,
    *,
    max_length: int = 50,
    placeholder: str = "Unknown",
) -> str:
    name_chain = site_chains_for(site_kind).single.get("name")
    if name_chain is None:
        return placeholder
    raw_name = name_chain.first(root)
    if raw_name is None:
        return placeholder
    return sanitize_display_name(raw_name, max_length=max_length) or placeholder


def detect_site_kind(url: str | None) -> SiteKind:
    if not url:
        return SiteKind.unknown
    host = urlparse(url.strip()).netloc.lower()
    if host == "linkedin.com" or host.endswith(".linkedin.com"):
        return SiteKind.linkedin
    if host == "contacts.google.com":
        return SiteKind.contacts
    return SiteKind.unknown
