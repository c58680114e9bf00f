from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any

from profile_capture.bundle import ExportBundleAssembler, build_base_path
from profile_capture.capture_config import CaptureConfig, PauseSettings
from profile_capture.collaborators import CollaboratorChannel
from profile_capture.field_extractor import derive_display_name, extract_fields
from profile_capture.metadata_store import MetadataLifecycleStore, new_capture_key
from profile_capture.reveal import RevealWorkflow, reveal_profile_for
from profile_capture.schemas import (
    CaptureIssue,
    CaptureResult,
    CaptureSession,
    ContactInfo,
    ContactStatus,
    IssueKind,
    NoRecordProducibleError,
    ProfileRecord,
    RevealState,
    RevealTrace,
    SiteKind,
)
from profile_capture.timing import NO_PAUSES

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class CaptureOrchestrator:
    """Capture one profile page into an export bundle.

    Only one capture may be in flight per page: the reveal workflow opens and
    closes panels on the shared page, so callers must serialize captures.
    """

    def __init__(
        self,
        page: Any,
        *,
        channel: CollaboratorChannel,
        store: MetadataLifecycleStore,
        config: CaptureConfig | None = None,
        pauses: PauseSettings = NO_PAUSES,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._page = page
        self._channel = channel
        self._store = store
        self._config = config or CaptureConfig()
        self._pauses = pauses
        self._clock = clock
        self._assembler = ExportBundleAssembler(channel)
        self.session_id = str(time.time_ns())
        self.sequence_number = 0
        self.last_session: CaptureSession | None = None

    def capture(self, site_kind: SiteKind, omitted_fields: Sequence[str] = ()) -> CaptureResult:
        self.sequence_number += 1
        captured_at = self._clock()
        capture_id = new_capture_key(captured_at)
        log_extra = {"capture_id": capture_id}
        issues: list[CaptureIssue] = []

        display_name = self._display_name(site_kind)

        try:
            fields = extract_fields(site_kind, self._page)
        except Exception as exc:
            logger.error(
                "structured extraction failed",
                extra={**log_extra, "stage": "extract-fields", "status": "fatal", "error": str(exc)},
            )
            raise NoRecordProducibleError(details=f"{exc.__class__.__name__}: {exc}") from exc

        contact_info, reveal_trace = self._reveal(site_kind, issues, log_extra)

        snapshot: str | None = None
        try:
            snapshot = self._page.content()
        except Exception as exc:
            issues.append(CaptureIssue(kind=IssueKind.snapshot_unavailable, detail=str(exc) or "page.content() failed"))
            logger.warning(
                "page snapshot unavailable",
                extra={**log_extra, "stage": "snapshot", "status": "degraded", "error": str(exc)},
            )

        visual_capture = self._channel.capture_visual()
        if visual_capture is None:
            issues.append(
                CaptureIssue(
                    kind=IssueKind.visual_capture_unavailable,
                    detail="visual capture collaborator returned no image",
                )
            )

        record = ProfileRecord(
            capture_id=capture_id,
            session_id=self.session_id,
            sequence_number=self.sequence_number,
            site_kind=site_kind,
            source_url=_page_url(self._page),
            captured_at=captured_at,
            display_name=display_name,
            fields=fields,
            contact_info=contact_info,
            reveal=reveal_trace,
            raw_structure_snapshot=snapshot,
            visual_capture=visual_capture,
            issues=issues,
        )

        base_path = build_base_path(captured_at, display_name)
        report = self._assembler.assemble(record, base_path, omitted_fields)
        self.last_session = CaptureSession(
            session_id=self.session_id,
            sequence_number=self.sequence_number,
            record=record,
            bundle=report.bundle,
        )

        entry = self._store.new_entry(display_name, base_path, captured_at, key=capture_id)
        try:
            self._store.put(entry)
        except Exception as exc:
            logger.warning(
                "unable to record capture metadata",
                extra={**log_extra, "stage": "metadata", "status": "degraded", "error": str(exc)},
            )

        logger.info(
            "captured %s into %s",
            display_name,
            base_path,
            extra={**log_extra, "stage": "capture", "status": "complete" if report.complete else "partial"},
        )
        return CaptureResult(
            success=True,
            profile_name=display_name,
            bundle_path=base_path,
            capture_id=capture_id,
            contact_status=contact_info.status if contact_info is not None else None,
            failed_artifacts=list(report.failed),
        )

    def _display_name(self, site_kind: SiteKind) -> str:
        try:
            return derive_display_name(
                site_kind,
                self._page,
                max_length=self._config.display_name_max_length,
                placeholder=self._config.placeholder_name,
            )
        except Exception as exc:
            logger.debug("display name lookup failed: %s", exc)
            return self._config.placeholder_name

    def _reveal(
        self,
        site_kind: SiteKind,
        issues: list[CaptureIssue],
        log_extra: dict[str, str],
    ) -> tuple[ContactInfo | None, RevealTrace | None]:
        profile = reveal_profile_for(site_kind)
        if profile is None:
            return None, None

        workflow = RevealWorkflow(profile, settings=self._config.reveal, pauses=self._pauses)
        try:
            outcome = workflow.run(self._page)
        except Exception as exc:
            detail = f"{exc.__class__.__name__}: {exc}"
            issues.append(CaptureIssue(kind=IssueKind.reveal_extraction_error, detail=detail))
            logger.warning(
                "reveal workflow failed",
                extra={**log_extra, "stage": "reveal", "status": "degraded", "error": detail},
            )
            return ContactInfo(status=ContactStatus.extraction_error, detail=detail), None

        trace = outcome.trace
        if trace.final_state == RevealState.failed_timeout:
            issues.append(
                CaptureIssue(kind=IssueKind.reveal_timeout, detail=outcome.contact_info.detail or "reveal timeout")
            )
        elif outcome.contact_info.status == ContactStatus.extraction_error:
            issues.append(
                CaptureIssue(
                    kind=IssueKind.reveal_extraction_error,
                    detail=outcome.contact_info.detail or "reveal extraction failed",
                )
            )
        for error in trace.strategy_errors:
            issues.append(
                CaptureIssue(
                    kind=IssueKind.reveal_extraction_error,
                    detail=f"{error.strategy}: {error.error_type}: {error.error}",
                )
            )
        return outcome.contact_info, trace


def _page_url(page: Any) -> str | None:
    try:
        url = page.url
    except Exception:
        return None
    return url if isinstance(url, str) and url else None
