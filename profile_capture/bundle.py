from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

import yaml
from pydantic import Field

from profile_capture.collaborators import CollaboratorAction, CollaboratorChannel
from profile_capture.schemas import (
    Artifact,
    BundleDeliveryError,
    CaptureBaseModel,
    ExportBundle,
    ProfileRecord,
)

logger = logging.getLogger(__name__)

METADATA_ARTIFACT = "metadata.json"
STRUCTURED_ARTIFACT = "extracted_data.json"
SNAPSHOT_ARTIFACT = "full_page.html"
VISUAL_ARTIFACT = "screenshot.png"
GUIDE_ARTIFACT = "parsing_guide.md"
ARTIFACT_ORDER = (
    METADATA_ARTIFACT,
    STRUCTURED_ARTIFACT,
    SNAPSHOT_ARTIFACT,
    VISUAL_ARTIFACT,
    GUIDE_ARTIFACT,
)
BUNDLE_ROOT_PREFIX = "ProfileCapture_"

_ARTIFACT_DESCRIPTIONS: dict[str, str] = {
    METADATA_ARTIFACT: "Capture context: source URL, timestamps, session, contact status, reveal trace and issues.",
    STRUCTURED_ARTIFACT: "Structured fields located on the page plus revealed contact details.",
    SNAPSHOT_ARTIFACT: "Serialized page structure taken after the contact panel was closed.",
    VISUAL_ARTIFACT: "PNG image of the visible viewport at capture time.",
    GUIDE_ARTIFACT: "This file.",
}


class BundleDeliveryReport(CaptureBaseModel):
    bundle: ExportBundle
    delivered: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    failure_details: dict[str, str] = Field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.failed


def build_base_path(captured_at: datetime, display_name: str) -> str:
    date_folder = f"{BUNDLE_ROOT_PREFIX}{captured_at:%Y%m%d}"
    return f"{date_folder}/{display_name}_{captured_at:%H%M%S}"


def structured_payload(record: ProfileRecord, omitted_fields: Sequence[str] = ()) -> dict[str, Any]:
    omitted = set(omitted_fields)
    payload = {name: value for name, value in record.fields.located().items() if name not in omitted}
    if record.contact_info is not None:
        contact = {name: value for name, value in record.contact_info.values().items() if name not in omitted}
        if contact:
            payload["contact_info"] = contact
    return payload


def metadata_payload(
    record: ProfileRecord,
    base_path: str,
    artifact_names: Sequence[str],
    *,
    omitted_fields: Sequence[str] = (),
) -> dict[str, Any]:
    contact_status = None
    contact_detail = None
    if record.contact_info is not None:
        contact_status = record.contact_info.status.value
        contact_detail = record.contact_info.detail
    return {
        "capture_id": record.capture_id,
        "session_id": record.session_id,
        "sequence_number": record.sequence_number,
        "site_kind": record.site_kind.value,
        "source_url": record.source_url,
        "captured_at": record.captured_at.isoformat(),
        "display_name": record.display_name,
        "bundle_path": base_path,
        "artifacts": list(artifact_names),
        "contact_status": contact_status,
        "contact_detail": contact_detail,
        "absent_fields": record.fields.absent_field_names(),
        "omitted_fields": sorted(set(omitted_fields)),
        "reveal": record.reveal.model_dump(mode="json") if record.reveal is not None else None,
        "issues": [issue.model_dump(mode="json") for issue in record.issues],
    }


def render_parsing_guide(record: ProfileRecord, artifact_names: Sequence[str]) -> str:
    frontmatter = {
        "capture_id": record.capture_id,
        "site_kind": record.site_kind.value,
        "captured_at": record.captured_at.isoformat(),
        "artifacts": list(artifact_names),
    }
    dumped = yaml.safe_dump(frontmatter, sort_keys=False, allow_unicode=False).rstrip()
    located = record.fields.located()

    lines: list[str] = [
        f"---\n{dumped}\n---",
        "",
        f"# Parsing guide: {record.display_name}",
        "",
        "## Files",
        "",
    ]
    for name in artifact_names:
        lines.append(f"- `{name}`: {_ARTIFACT_DESCRIPTIONS.get(name, 'Additional artifact.')}")

    lines.extend(["", "## Structured fields", ""])
    if located:
        for name, value in located.items():
            if isinstance(value, list):
                lines.append(f"- `{name}`: list of {len(value)} entr{'y' if len(value) == 1 else 'ies'}")
            else:
                lines.append(f"- `{name}`: text")
    else:
        lines.append("No structured fields were located; rely on `full_page.html`.")
    absent = record.fields.absent_field_names()
    if absent:
        lines.append("")
        lines.append("Fields not present on the page: " + ", ".join(f"`{name}`" for name in absent) + ".")
    lines.append("")
    lines.append(
        "List entries (experience, education, skills) flatten each item's visible lines "
        "into one string joined by ` | `, keeping at most four lines per item."
    )

    lines.extend(["", "## Contact details", ""])
    if record.contact_info is None:
        lines.append("Contact details are not collected for this site kind.")
    else:
        lines.append(f"Status: `{record.contact_info.status.value}`.")
        if record.contact_info.detail:
            lines.append(f"Detail: {record.contact_info.detail}")
        lines.append("")
        lines.append(
            "`populated` means at least one value was read; `not_found` means the panel "
            "held no contact values; `access_denied` means the site withheld them; "
            "`extraction_error` means the panel could not be opened or read in time."
        )

    if record.issues:
        lines.extend(["", "## Issues", ""])
        for issue in record.issues:
            lines.append(f"- `{issue.kind.value}`: {issue.detail}")

    return "\n".join(lines) + "\n"


def build_export_bundle(
    record: ProfileRecord,
    base_path: str,
    omitted_fields: Sequence[str] = (),
) -> ExportBundle:
    names = [METADATA_ARTIFACT, STRUCTURED_ARTIFACT]
    if record.raw_structure_snapshot is not None:
        names.append(SNAPSHOT_ARTIFACT)
    if record.visual_capture:
        names.append(VISUAL_ARTIFACT)
    names.append(GUIDE_ARTIFACT)

    artifacts: list[Artifact] = []
    for name in names:
        if name == METADATA_ARTIFACT:
            payload = _json_bytes(metadata_payload(record, base_path, names, omitted_fields=omitted_fields))
            artifacts.append(Artifact(name=name, mime_type="application/json", payload=payload))
        elif name == STRUCTURED_ARTIFACT:
            payload = _json_bytes(structured_payload(record, omitted_fields))
            artifacts.append(Artifact(name=name, mime_type="application/json", payload=payload))
        elif name == SNAPSHOT_ARTIFACT:
            payload = (record.raw_structure_snapshot or "").encode("utf-8")
            artifacts.append(Artifact(name=name, mime_type="text/html", payload=payload))
        elif name == VISUAL_ARTIFACT:
            artifacts.append(Artifact(name=name, mime_type="image/png", payload=record.visual_capture or b""))
        else:
            payload = render_parsing_guide(record, names).encode("utf-8")
            artifacts.append(Artifact(name=name, mime_type="text/markdown", payload=payload))
    return ExportBundle(base_path=base_path, artifacts=tuple(artifacts))


class ExportBundleAssembler:
    def __init__(self, channel: CollaboratorChannel) -> None:
        self._channel = channel

    def assemble(
        self,
        record: ProfileRecord,
        base_path: str,
        omitted_fields: Sequence[str] = (),
    ) -> BundleDeliveryReport:
        if not self._channel.supports(CollaboratorAction.write):
            raise BundleDeliveryError(base_path=base_path, details="no write collaborator is available")

        bundle = build_export_bundle(record, base_path, omitted_fields)
        report = BundleDeliveryReport(bundle=bundle)
        for artifact in bundle.artifacts:
            response = self._channel.write(
                f"{bundle.base_path}/{artifact.name}",
                artifact.payload,
                artifact.mime_type,
            )
            if response.success:
                report.delivered.append(response.identifier or artifact.name)
                continue
            detail = response.error_detail or "write failed"
            report.failed.append(artifact.name)
            report.failure_details[artifact.name] = detail
            logger.warning(
                "artifact %s not written",
                artifact.name,
                extra={
                    "stage": "assemble",
                    "status": "artifact-write-failure",
                    "capture_id": record.capture_id,
                    "error": detail,
                },
            )

        if not report.delivered:
            raise BundleDeliveryError(
                base_path=bundle.base_path,
                details="; ".join(f"{name}: {detail}" for name, detail in report.failure_details.items()),
            )
        logger.info(
            "bundle %s: %d artifact(s) written, %d failed",
            bundle.base_path,
            len(report.delivered),
            len(report.failed),
            extra={"stage": "assemble", "status": "complete" if report.complete else "partial",
                   "capture_id": record.capture_id},
        )
        return report


def _json_bytes(payload: dict[str, Any]) -> bytes:
    return (json.dumps(payload, indent=2, sort_keys=True) + "\n").encode("utf-8")
