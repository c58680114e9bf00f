from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from profile_capture.schemas import normalize_optional_text

logger = logging.getLogger(__name__)

Validator = Callable[[str], bool]
Transform = Callable[[str], "str | None"]

_READ_TIMEOUT_MS = 1_500
_DEFAULT_UNION_LIMIT = 80
_DEFAULT_IGNORED_PREFIXES = (
    "show all",
    "see all",
    "show more",
    "see more",
)


def max_length(limit: int) -> Validator:
    def validate(value: str) -> bool:
        return len(value) <= limit

    return validate


def reject_markers(*markers: str) -> Validator:
    lowered = tuple(marker.lower() for marker in markers)

    def validate(value: str) -> bool:
        text = value.lower()
        return not any(marker in text for marker in lowered)

    return validate


def require_pattern(pattern: str) -> Validator:
    compiled = re.compile(pattern)

    def validate(value: str) -> bool:
        return compiled.search(value) is not None

    return validate


def all_of(*validators: Validator) -> Validator:
    def validate(value: str) -> bool:
        return all(check(value) for check in validators)

    return validate


@dataclass(frozen=True)
class FieldRule:
    selector: str
    attribute: str | None = None
    validator: Validator | None = None
    transform: Transform | None = None

    def read(self, element: Any) -> str | None:
        if self.attribute is not None:
            raw = element.get_attribute(self.attribute, timeout=_READ_TIMEOUT_MS)
        else:
            raw = element.inner_text(timeout=_READ_TIMEOUT_MS)
        value = normalize_optional_text(raw)
        if value is not None and self.transform is not None:
            value = normalize_optional_text(self.transform(value))
        if value is None:
            return None
        if self.validator is not None and not self.validator(value):
            return None
        return value


@dataclass(frozen=True)
class SelectorChain:
    """Ordered ``FieldRule`` candidates for one field; earlier rules win.

    Lookups never raise. A rule whose selector errors or matches nothing is
    skipped, and a chain with no hit reports ``None`` (or an empty list).
    """

    field_name: str
    rules: tuple[FieldRule, ...]

    def first(self, root: Any) -> str | None:
        for rank, rule in enumerate(self.rules, start=1):
            try:
                locator = root.locator(rule.selector)
                count = locator.count()
            except Exception:
                continue
            for index in range(min(count, _DEFAULT_UNION_LIMIT)):
                try:
                    value = rule.read(locator.nth(index))
                except Exception:
                    continue
                if value is not None:
                    logger.debug("field %s matched rule %d (%s)", self.field_name, rank, rule.selector)
                    return value
        logger.debug("field %s not found after %d rule(s)", self.field_name, len(self.rules))
        return None

    def union(self, root: Any, *, limit: int = _DEFAULT_UNION_LIMIT) -> list[str]:
        values: list[str] = []
        seen: set[str] = set()
        for rule in self.rules:
            try:
                locator = root.locator(rule.selector)
                count = min(locator.count(), limit)
            except Exception:
                continue
            for index in range(count):
                try:
                    value = rule.read(locator.nth(index))
                except Exception:
                    continue
                if value is None or value in seen:
                    continue
                seen.add(value)
                values.append(value)
        return values


def chain(field_name: str, *rules: FieldRule | str) -> SelectorChain:
    resolved = tuple(rule if isinstance(rule, FieldRule) else FieldRule(selector=rule) for rule in rules)
    return SelectorChain(field_name=field_name, rules=resolved)


def flatten_list_item(
    raw_value: str,
    *,
    max_lines: int = 4,
    ignored_prefixes: Sequence[str] = _DEFAULT_IGNORED_PREFIXES,
) -> str | None:
    lines = [normalize_optional_text(line) for line in raw_value.splitlines()]
    cleaned: list[str] = []
    for line in lines:
        # screen-reader duplicates repeat the previous visible line verbatim
        if line is None or (cleaned and cleaned[-1] == line):
            continue
        cleaned.append(line)
    if not cleaned:
        return None
    candidate = " | ".join(cleaned[:max_lines])
    lowered = candidate.lower()
    if any(lowered.startswith(prefix) for prefix in ignored_prefixes):
        return None
    return candidate


@dataclass(frozen=True)
class SectionRule:
    field_name: str
    container_selectors: tuple[str, ...]
    item_selector: str = "li"
    max_lines: int = 4
    max_items: int = _DEFAULT_UNION_LIMIT
    ignored_prefixes: tuple[str, ...] = field(default=_DEFAULT_IGNORED_PREFIXES)

    def collect(self, root: Any, *, union: bool = False) -> list[str]:
        entries: list[str] = []
        seen: set[str] = set()
        for selector in self.container_selectors:
            items = self._collect_from_container(root, selector)
            for item in items:
                if item in seen:
                    continue
                seen.add(item)
                entries.append(item)
            if entries and not union:
                break
        return entries[: self.max_items]

    def _collect_from_container(self, root: Any, selector: str) -> list[str]:
        try:
            container = root.locator(selector).first
            if container.count() == 0:
                return []
            items = container.locator(self.item_selector)
            count = min(items.count(), self.max_items)
        except Exception:
            return []
        values: list[str] = []
        for index in range(count):
            try:
                raw_text = items.nth(index).inner_text(timeout=_READ_TIMEOUT_MS)
            except Exception:
                continue
            value = flatten_list_item(
                raw_text,
                max_lines=self.max_lines,
                ignored_prefixes=self.ignored_prefixes,
            )
            if value is not None:
                values.append(value)
        return values
