from __future__ import annotations

from profile_capture.selector_chain import (
    FieldRule,
    SectionRule,
    all_of,
    chain,
    flatten_list_item,
    max_length,
    reject_markers,
    require_pattern,
)
from profile_capture.tests.page_stubs import StubLookupError, StubNode, StubPage, text_node


def test_first_prefers_highest_ranked_rule() -> None:
    page = StubPage()
    page.add("h1.primary", text_node("Jane Founder"))
    page.add("h1.fallback", text_node("Someone Else"))

    assert chain("name", "h1.primary", "h1.fallback").first(page) == "Jane Founder"


def test_first_falls_through_missing_empty_and_invalid_candidates() -> None:
    page = StubPage()
    page.add("h1.empty", text_node("   \n  "))
    page.add("h1.long", text_node("x" * 300))
    page.add("h1.good", text_node("  Jane\n   Founder  "))
    name_chain = chain(
        "name",
        "h1.missing",
        "h1.empty",
        FieldRule("h1.long", validator=max_length(120)),
        "h1.good",
    )

    assert name_chain.first(page) == "Jane Founder"


def test_first_checks_every_match_of_a_rule_before_moving_on() -> None:
    page = StubPage()
    page.add(".text-body-medium", text_node("#hashtag #startups"), text_node("Founder at Future Labs"))
    headline = chain(
        "headline",
        FieldRule(".text-body-medium", validator=reject_markers("#hashtag")),
    )

    assert headline.first(page) == "Founder at Future Labs"


def test_first_never_raises_on_lookup_or_read_errors() -> None:
    page = StubPage()
    page.broken_selectors.add("h1:bad(")
    page.add("h1.flaky", StubNode(text_error=StubLookupError("detached")))
    page.add("h1.ok", text_node("Jane Founder"))

    assert chain("name", "h1:bad(", "h1.flaky", "h1.ok").first(page) == "Jane Founder"
    assert chain("name", "h1:bad(", "h1.flaky").first(page) is None


def test_attribute_rule_applies_transform_before_validation() -> None:
    page = StubPage()
    page.add("meta[property='og:title']", StubNode(attrs={"content": "Jane Founder - CEO | LinkedIn"}))
    rule = FieldRule(
        "meta[property='og:title']",
        attribute="content",
        validator=max_length(20),
        transform=lambda value: value.split(" - ")[0],
    )

    assert chain("name", rule).first(page) == "Jane Founder"


def test_union_preserves_rank_order_and_deduplicates() -> None:
    page = StubPage()
    page.add("a.primary", text_node("https://futurelabs.example"), text_node("https://blog.example"))
    page.add("a.secondary", text_node("https://blog.example"), text_node("https://jane.example"))

    assert chain("websites", "a.primary", "a.secondary").union(page) == [
        "https://futurelabs.example",
        "https://blog.example",
        "https://jane.example",
    ]


def test_validators_compose() -> None:
    validator = all_of(require_pattern(r"\d"), max_length(20), reject_markers("Contact info"))

    assert validator("500+ connections") is True
    assert validator("connections") is False
    assert validator("500+ connections and many more") is False
    assert validator("12 CONTACT INFO") is False


def test_flatten_list_item_collapses_duplicate_lines_and_limits_length() -> None:
    raw = "Founder\nFounder\nFuture Labs · Full-time\n\nJan 2021 - Present\nRemote\nBuilding tools"

    assert flatten_list_item(raw) == "Founder | Future Labs · Full-time | Jan 2021 - Present | Remote"
    assert flatten_list_item(raw, max_lines=1) == "Founder"
    assert flatten_list_item("Show all 12 experiences") is None
    assert flatten_list_item("  \n ") is None


def _section(*items: str) -> StubNode:
    return StubNode(children={"li": [text_node(item) for item in items]})


def test_section_rule_uses_first_ranked_container_with_items() -> None:
    page = StubPage()
    page.add("section.empty", StubNode())
    page.add("section.primary", _section("Founder\nFuture Labs", "See all 5 experiences"))
    page.add("section.secondary", _section("Engineer\nPrior Co"))
    rule = SectionRule("experience", ("section.missing", "section.empty", "section.primary", "section.secondary"))

    assert rule.collect(page) == ["Founder | Future Labs"]


def test_section_rule_union_merges_all_containers() -> None:
    page = StubPage()
    page.add("section.skills", _section("Python\nEndorsed by 10", "Go"))
    page.add("section.more-skills", _section("Go", "Rust"))
    rule = SectionRule("skills", ("section.skills", "section.more-skills"), max_lines=1)

    assert rule.collect(page, union=True) == ["Python", "Go", "Rust"]
