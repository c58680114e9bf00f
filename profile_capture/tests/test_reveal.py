from __future__ import annotations

from profile_capture.capture_config import RevealSettings
from profile_capture.reveal import (
    RevealWorkflow,
    merge_first_writer_wins,
    reveal_profile_for,
    section_header_strategy,
    text_pattern_strategy,
)
from profile_capture.schemas import ContactStatus, RevealState, SiteKind
from profile_capture.tests.page_stubs import (
    StubLocator,
    StubLookupError,
    StubNode,
    StubPage,
    link_node,
    linkedin_contact_container,
    linkedin_contact_modal,
    text_node,
)

_FAST = RevealSettings(poll_interval_ms=100, max_poll_attempts=20, render_settle_ms=300, dismiss_settle_ms=300)


def _linkedin_workflow() -> RevealWorkflow:
    profile = reveal_profile_for(SiteKind.linkedin)
    assert profile is not None
    return RevealWorkflow(profile, settings=_FAST)


def test_reveal_extracts_contact_info_and_dismisses_container() -> None:
    page = StubPage()
    container = linkedin_contact_container(
        email="jane@futurelabs.example",
        phone="+1 512 555 0100",
        websites=("https://futurelabs.example",),
    )
    linkedin_contact_modal(page, container=container)

    outcome = _linkedin_workflow().run(page)

    assert outcome.contact_info.status == ContactStatus.populated
    assert outcome.contact_info.email == "jane@futurelabs.example"
    assert outcome.contact_info.phone == "+1 512 555 0100"
    assert outcome.contact_info.websites == ["https://futurelabs.example"]
    assert outcome.trace.final_state == RevealState.done
    assert outcome.trace.states == [
        RevealState.idle,
        RevealState.triggering,
        RevealState.awaiting_render,
        RevealState.extracting,
        RevealState.dismissing,
        RevealState.done,
    ]
    assert outcome.trace.dismiss_method == "control"
    assert page.events == ["open-modal", "close-modal"]
    assert page.locator("[data-test-modal-container]").count() == 0


def test_reveal_without_trigger_skips_and_reports_not_found() -> None:
    page = StubPage()

    outcome = _linkedin_workflow().run(page)

    assert outcome.trace.final_state == RevealState.skipped_no_trigger
    assert outcome.trace.states == [RevealState.idle, RevealState.skipped_no_trigger]
    assert outcome.contact_info.status == ContactStatus.not_found
    assert page.keyboard.pressed == []
    assert page.waits == []


def test_reveal_timeout_is_bounded_and_still_dismisses() -> None:
    page = StubPage()
    page.add("a[href*='overlay/contact-info']", StubNode("Contact info"))

    outcome = _linkedin_workflow().run(page)

    assert outcome.trace.final_state == RevealState.failed_timeout
    assert outcome.trace.poll_attempts == 20
    assert RevealState.dismissing in outcome.trace.states
    assert outcome.contact_info.status == ContactStatus.extraction_error
    assert "reveal timeout" in (outcome.contact_info.detail or "")
    assert page.keyboard.pressed == ["Escape"]
    # 20 poll intervals plus the dismiss settle delay
    assert sum(page.waits) == 20 * 100 + 300


def test_reveal_dismiss_leaves_unrelated_page_controls_alone() -> None:
    page = StubPage()
    messaging_close = StubNode("Close your conversation")
    page.add("button[aria-label*='Close']", messaging_close)
    page.add("button[aria-label='Dismiss']", StubNode("Dismiss"))
    page.add("a[href*='overlay/contact-info']", StubNode("Contact info"))

    outcome = _linkedin_workflow().run(page)

    assert outcome.trace.final_state == RevealState.failed_timeout
    assert outcome.trace.dismiss_method == "escape"
    assert messaging_close.clicks == 0
    assert page.keyboard.pressed == ["Escape"]


def test_reveal_dismisses_with_control_inside_rendered_container() -> None:
    page = StubPage()
    messaging_close = StubNode("Close your conversation")
    page.add("button[aria-label*='Close']", messaging_close)
    linkedin_contact_modal(page, container=linkedin_contact_container())

    outcome = _linkedin_workflow().run(page)

    assert outcome.trace.dismiss_method == "control"
    assert messaging_close.clicks == 0
    assert page.events == ["open-modal", "close-modal"]


def test_reveal_waits_for_container_rendered_after_a_few_polls() -> None:
    page = StubPage()
    container = linkedin_contact_container(email="jane@futurelabs.example")
    container.visible = False
    linkedin_contact_modal(page, container=container)
    polls = {"count": 0}
    original_wait = page.wait_for_timeout

    def _wait(value: int) -> None:
        polls["count"] += 1
        if polls["count"] == 3:
            container.visible = True
        original_wait(value)

    page.wait_for_timeout = _wait  # type: ignore[method-assign]

    outcome = _linkedin_workflow().run(page)

    assert outcome.trace.poll_attempts == 4
    assert outcome.trace.final_state == RevealState.done
    assert outcome.contact_info.email == "jane@futurelabs.example"
    assert page.waits[:4] == [100, 100, 100, 300]


def test_reveal_trigger_click_failure_still_dismisses() -> None:
    page = StubPage()
    page.add(
        "a[href*='overlay/contact-info']",
        StubNode("Contact info", click_error=StubLookupError("element is not attached")),
    )

    outcome = _linkedin_workflow().run(page)

    assert outcome.trace.final_state == RevealState.done
    assert outcome.trace.states[-2:] == [RevealState.dismissing, RevealState.done]
    assert outcome.contact_info.status == ContactStatus.extraction_error
    assert "element is not attached" in (outcome.contact_info.detail or "")
    assert page.keyboard.pressed == ["Escape"]


def test_reveal_reports_access_denied_when_panel_is_walled() -> None:
    page = StubPage()
    container = StubNode("Contact Info\nSign in to view Jane's contact info")
    linkedin_contact_modal(page, container=container)

    outcome = _linkedin_workflow().run(page)

    assert outcome.contact_info.status == ContactStatus.access_denied
    assert outcome.trace.final_state == RevealState.done


def test_reveal_reports_not_found_for_empty_panel() -> None:
    page = StubPage()
    container = StubNode("Contact Info\nNo contact details shared")
    linkedin_contact_modal(page, container=container)

    outcome = _linkedin_workflow().run(page)

    assert outcome.contact_info.status == ContactStatus.not_found
    assert outcome.contact_info.values() == {}


def test_reveal_falls_back_to_text_when_structure_is_unrecognized() -> None:
    page = StubPage()
    container = StubNode("Contact Info\nEmail\njane@futurelabs.example\nPhone\n(512) 555-0100 (Mobile)")
    linkedin_contact_modal(page, container=container)

    outcome = _linkedin_workflow().run(page)

    assert outcome.contact_info.status == ContactStatus.populated
    assert outcome.contact_info.email == "jane@futurelabs.example"
    assert outcome.contact_info.phone == "(512) 555-0100"


def test_reveal_records_strategy_failure_without_losing_other_results() -> None:
    page = StubPage()
    container = linkedin_contact_container(email="jane@futurelabs.example")
    container.broken_selectors.add("section.pv-contact-info__contact-type")
    linkedin_contact_modal(page, container=container)

    outcome = _linkedin_workflow().run(page)

    assert outcome.contact_info.email == "jane@futurelabs.example"
    assert [error.strategy for error in outcome.trace.strategy_errors] == ["section-header"]
    assert outcome.trace.strategy_errors[0].error_type == "StubLookupError"


def test_reveal_falls_back_to_escape_when_no_dismiss_control_exists() -> None:
    page = StubPage()
    container = linkedin_contact_container(email="jane@futurelabs.example")

    def _open() -> None:
        page.children["[data-test-modal-container]"] = [container]

    page.add("a[href*='overlay/contact-info']", StubNode("Contact info", on_click=_open))

    outcome = _linkedin_workflow().run(page)

    assert outcome.trace.dismiss_method == "escape"
    assert page.keyboard.pressed == ["Escape"]


def test_contacts_profile_reads_inline_details_without_trigger() -> None:
    page = StubPage(url="https://contacts.google.com/person/c123")
    main = StubNode("Jane Founder\nEmail\njane@futurelabs.example")
    main.add(
        "[data-test-id='contact-details-email'] a[href^='mailto:']",
        link_node("mailto:jane@futurelabs.example"),
    )
    page.add("div[role='main']", main)
    profile = reveal_profile_for(SiteKind.contacts)
    assert profile is not None

    outcome = RevealWorkflow(profile, settings=_FAST).run(page)

    assert outcome.trace.final_state == RevealState.skipped_no_trigger
    assert outcome.contact_info.status == ContactStatus.populated
    assert outcome.contact_info.email == "jane@futurelabs.example"


def test_reveal_profile_is_absent_for_unknown_sites() -> None:
    assert reveal_profile_for(SiteKind.unknown) is None


def test_merge_first_writer_wins_keeps_first_single_values_and_unions_lists() -> None:
    merged = merge_first_writer_wins(
        [
            {"email": "first@futurelabs.example", "websites": ["https://a.example"]},
            {"email": "second@futurelabs.example", "phone": "512 555 0100"},
            {"phone": "999", "websites": ["https://a.example", "https://b.example"]},
        ]
    )

    assert merged == {
        "email": "first@futurelabs.example",
        "phone": "512 555 0100",
        "websites": ["https://a.example", "https://b.example"],
    }
    assert merge_first_writer_wins([{}, {"email": "  "}]) == {}


def test_text_pattern_strategy_ignores_date_ranges() -> None:
    node = StubLocator([StubNode("Founder\n2019-2023\nReach me at jane@futurelabs.example.")])

    assert text_pattern_strategy(node) == {"email": "jane@futurelabs.example"}


def test_text_pattern_strategy_ignores_profile_url_digits() -> None:
    node = StubLocator(
        [
            StubNode(
                "Contact Info\nJane's Profile\nlinkedin.com/in/jane-founder-48213579\n"
                "Connected\nMar 3, 2021\nhttps://futurelabs.example/team/20240117"
            )
        ]
    )

    assert text_pattern_strategy(node) == {}


def test_text_pattern_strategy_still_reads_phone_beside_profile_url() -> None:
    node = StubLocator([StubNode("linkedin.com/in/jane-founder-48213579\nPhone\n(512) 555-0100 (Mobile)")])

    assert text_pattern_strategy(node) == {"phone": "(512) 555-0100"}


def test_section_header_strategy_maps_labels_to_fields() -> None:
    root = StubNode()
    email_section = StubNode("Email\njane@futurelabs.example", children={"h3": [text_node("Email")]})
    website_section = StubNode(
        "Websites",
        children={
            "h3": [text_node("Websites")],
            "a[href]": [
                link_node("https://futurelabs.example"),
                link_node("https://www.linkedin.com/in/jane-founder"),
            ],
        },
    )
    birthday_section = StubNode("Birthday\nMarch 3", children={"h3": [text_node("Birthday")]})
    other_section = StubNode("Interests\nSailing", children={"h3": [text_node("Interests")]})
    root.add("section", email_section, website_section, birthday_section, other_section)

    values = section_header_strategy(root, section_selector="section", header_selector="h3")

    assert values == {
        "email": "jane@futurelabs.example",
        "websites": ["https://futurelabs.example"],
        "birthday": "March 3",
    }
