from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from profile_capture.collaborators import (
    CollaboratorAction,
    CollaboratorChannel,
    CollaboratorRequest,
    CollaboratorResponse,
    FilesystemWriter,
    build_default_channel,
)
from profile_capture.tests.page_stubs import StubPage


def test_filesystem_writer_never_overwrites_existing_files(tmp_path: Path) -> None:
    channel = build_default_channel(output_root=tmp_path)

    first = channel.write("ProfileCapture_20260301/Jane_Founder_101500/metadata.json", b"{}", "application/json")
    second = channel.write("ProfileCapture_20260301/Jane_Founder_101500/metadata.json", b"[]", "application/json")
    third = channel.write("ProfileCapture_20260301/Jane_Founder_101500/metadata.json", b"1", "application/json")

    assert first.success and second.success and third.success
    assert first.identifier == "ProfileCapture_20260301/Jane_Founder_101500/metadata.json"
    assert second.identifier == "ProfileCapture_20260301/Jane_Founder_101500/metadata (1).json"
    assert third.identifier == "ProfileCapture_20260301/Jane_Founder_101500/metadata (2).json"
    folder = tmp_path / "ProfileCapture_20260301" / "Jane_Founder_101500"
    assert (folder / "metadata.json").read_bytes() == b"{}"
    assert (folder / "metadata (1).json").read_bytes() == b"[]"


def test_channel_translates_handler_errors_into_failed_responses(tmp_path: Path) -> None:
    channel = CollaboratorChannel()

    def _broken(request: CollaboratorRequest) -> CollaboratorResponse:
        raise OSError("disk full")

    channel.register(CollaboratorAction.write, _broken)
    response = channel.write("bundle/metadata.json", b"{}", "application/json")

    assert response.success is False
    assert "disk full" in (response.error_detail or "")


def test_channel_rejects_mismatched_correlation_ids() -> None:
    channel = CollaboratorChannel()
    channel.register(
        CollaboratorAction.write,
        lambda request: CollaboratorResponse(correlation_id="stale", success=True, identifier="x"),
    )

    response = channel.write("bundle/metadata.json", b"{}", "application/json")

    assert response.success is False
    assert "does not match" in (response.error_detail or "")


def test_channel_reports_missing_handlers() -> None:
    channel = CollaboratorChannel()

    response = channel.request(CollaboratorAction.visual_capture)

    assert response.success is False
    assert channel.capture_visual() is None


def test_write_requests_must_stay_below_output_root(tmp_path: Path) -> None:
    channel = build_default_channel(output_root=tmp_path)

    assert channel.write("../escape.json", b"{}", "application/json").success is False
    assert channel.write("/etc/escape.json", b"{}", "application/json").success is False
    assert list(tmp_path.iterdir()) == []
    with pytest.raises(ValidationError):
        CollaboratorRequest(correlation_id="c1", action=CollaboratorAction.write, destination_path="../x")


def test_visual_capture_uses_page_screenshot(tmp_path: Path) -> None:
    page = StubPage(screenshot=b"png-bytes")
    channel = build_default_channel(output_root=tmp_path, page=page)

    assert channel.capture_visual() == b"png-bytes"
    assert page.events == ["screenshot"]


def test_visual_capture_failure_returns_none(tmp_path: Path) -> None:
    channel = build_default_channel(output_root=tmp_path, page=StubPage(screenshot=None))

    assert channel.capture_visual() is None


def test_filesystem_writer_requires_payload(tmp_path: Path) -> None:
    writer = FilesystemWriter(tmp_path)

    with pytest.raises(ValueError):
        writer(CollaboratorRequest(correlation_id="c1", action=CollaboratorAction.write, destination_path="a.json"))
