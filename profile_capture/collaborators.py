from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any

from pydantic import field_validator

from profile_capture.schemas import CaptureBaseModel, normalize_path_token

logger = logging.getLogger(__name__)

_MAX_UNIQUIFY_ATTEMPTS = 1_000


class CollaboratorAction(str, Enum):
    write = "write"
    visual_capture = "visual-capture"


class CollaboratorRequest(CaptureBaseModel):
    correlation_id: str
    action: CollaboratorAction
    destination_path: str | None = None
    payload: bytes | None = None
    mime_type: str | None = None

    @field_validator("destination_path")
    @classmethod
    def validate_destination_path(cls, value: str | None) -> str | None:
        return normalize_path_token(value)


class CollaboratorResponse(CaptureBaseModel):
    correlation_id: str
    success: bool
    identifier: str | None = None
    payload: bytes | None = None
    error_detail: str | None = None


Handler = Callable[[CollaboratorRequest], CollaboratorResponse]


class CollaboratorChannel:
    """Request/response channel to the privileged write and capture services."""

    def __init__(self) -> None:
        self._handlers: dict[CollaboratorAction, Handler] = {}

    def register(self, action: CollaboratorAction, handler: Handler) -> None:
        self._handlers[action] = handler

    def supports(self, action: CollaboratorAction) -> bool:
        return action in self._handlers

    def request(
        self,
        action: CollaboratorAction,
        *,
        destination_path: str | None = None,
        payload: bytes | None = None,
        mime_type: str | None = None,
    ) -> CollaboratorResponse:
        correlation_id = uuid.uuid4().hex
        handler = self._handlers.get(action)
        if handler is None:
            return CollaboratorResponse(
                correlation_id=correlation_id,
                success=False,
                error_detail=f"no collaborator registered for '{action.value}'",
            )
        try:
            request = CollaboratorRequest(
                correlation_id=correlation_id,
                action=action,
                destination_path=destination_path,
                payload=payload,
                mime_type=mime_type,
            )
            response = handler(request)
        except Exception as exc:
            logger.warning(
                "collaborator %s failed",
                action.value,
                extra={"stage": "collaborator", "status": "error", "error": str(exc)},
            )
            return CollaboratorResponse(
                correlation_id=correlation_id,
                success=False,
                error_detail=f"{exc.__class__.__name__}: {exc}",
            )
        if response.correlation_id != correlation_id:
            return CollaboratorResponse(
                correlation_id=correlation_id,
                success=False,
                error_detail=(
                    f"response correlation '{response.correlation_id}' does not match request '{correlation_id}'"
                ),
            )
        return response

    def write(self, destination_path: str, payload: bytes, mime_type: str) -> CollaboratorResponse:
        return self.request(
            CollaboratorAction.write,
            destination_path=destination_path,
            payload=payload,
            mime_type=mime_type,
        )

    def capture_visual(self) -> bytes | None:
        response = self.request(CollaboratorAction.visual_capture)
        if not response.success or not response.payload:
            logger.warning(
                "visual capture unavailable",
                extra={"stage": "visual-capture", "status": "unavailable", "error": response.error_detail or "-"},
            )
            return None
        return response.payload


class FilesystemWriter:
    """Write handler that stores artifacts below ``root`` without overwriting."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def __call__(self, request: CollaboratorRequest) -> CollaboratorResponse:
        if request.destination_path is None:
            raise ValueError("write request requires destination_path")
        if request.payload is None:
            raise ValueError("write request requires payload")
        target = unique_destination(self.root / request.destination_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("xb") as handle:
            handle.write(request.payload)
        identifier = target.relative_to(self.root).as_posix()
        logger.debug("wrote %s (%d bytes)", identifier, len(request.payload))
        return CollaboratorResponse(
            correlation_id=request.correlation_id,
            success=True,
            identifier=identifier,
        )


def unique_destination(path: Path) -> Path:
    if not path.exists():
        return path
    stem = PurePosixPath(path.name).stem
    suffix = "".join(PurePosixPath(path.name).suffixes[-1:])
    for counter in range(1, _MAX_UNIQUIFY_ATTEMPTS + 1):
        candidate = path.with_name(f"{stem} ({counter}){suffix}")
        if not candidate.exists():
            return candidate
    raise FileExistsError(f"no free name for '{path}' after {_MAX_UNIQUIFY_ATTEMPTS} attempts")


class PlaywrightViewCapture:
    """Visual-capture handler backed by ``page.screenshot``."""

    def __init__(self, page: Any, *, full_page: bool = False) -> None:
        self._page = page
        self._full_page = full_page

    def __call__(self, request: CollaboratorRequest) -> CollaboratorResponse:
        image = self._page.screenshot(type="png", full_page=self._full_page)
        return CollaboratorResponse(
            correlation_id=request.correlation_id,
            success=True,
            payload=image,
        )


def build_default_channel(*, output_root: Path, page: Any | None = None) -> CollaboratorChannel:
    channel = CollaboratorChannel()
    channel.register(CollaboratorAction.write, FilesystemWriter(output_root))
    if page is not None:
        channel.register(CollaboratorAction.visual_capture, PlaywrightViewCapture(page))
    return channel
