from __future__ import annotations

import base64
import json
import logging
import os
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx

from obstracker.core.config import FileRelayConfig, config
from obstracker.core.errors import FieldError

logger = logging.getLogger(__name__)

Attachment = Tuple[str, bytes]


class AttachmentRelayError(RuntimeError):
    """The relay endpoint did not accept the attachments."""


def format_file_size(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB"]
    value = float(size)
    idx = 0
    while value >= 1024 and idx < len(units) - 1:
        value /= 1024
        idx += 1
    return f"{round(value, 2):g} {units[idx]}"


def validate_attachment(filename: str, size: int, settings: Optional[FileRelayConfig] = None) -> Optional[FieldError]:
    settings = settings or config.file_relay
    name = (filename or "").strip()
    if not name:
        return FieldError(field="files", message="Uploaded file has no name")
    if size > settings.max_file_size:
        return FieldError(
            field="files",
            message=f'File "{name}" exceeds {format_file_size(settings.max_file_size)} limit',
        )
    ext = os.path.splitext(name)[1].lower()
    if ext not in settings.allowed_extensions:
        return FieldError(
            field="files",
            message=f'File type "{ext or name}" not allowed. Use PDF, Word, or Excel files.',
        )
    return None


def validate_attachments(files: Sequence[Attachment], settings: Optional[FileRelayConfig] = None) -> List[FieldError]:
    errors: List[FieldError] = []
    seen: set[str] = set()
    for name, content in files:
        error = validate_attachment(name, len(content), settings)
        if error is not None:
            errors.append(error)
            continue
        if name in seen:
            errors.append(FieldError(field="files", message=f'File "{name}" is already added'))
        seen.add(name)
    return errors


def encode_attachment(content: bytes) -> str:
    return base64.b64encode(content).decode("ascii")


def build_relay_payload(
    *,
    observation_id: str,
    observation_name: str,
    uploaded_by: str,
    files: Iterable[Attachment],
) -> Dict[str, Any]:
    return {
        "observationId": observation_id,
        "observationName": observation_name or f"OBS_{observation_id}",
        "uploadedBy": uploaded_by,
        "files": [{"fileName": name, "content": encode_attachment(content)} for name, content in files],
    }


def relay_attachments(
    *,
    observation_id: str,
    observation_name: str,
    uploaded_by: str,
    files: Sequence[Attachment],
    settings: Optional[FileRelayConfig] = None,
) -> Optional[Dict[str, Any]]:
    """Posts attachments to the automation endpoint once; raises AttachmentRelayError on failure."""
    if not files:
        return None
    settings = settings or config.file_relay
    if not settings.url:
        raise AttachmentRelayError("File relay URL is not configured")

    payload = build_relay_payload(
        observation_id=observation_id,
        observation_name=observation_name,
        uploaded_by=uploaded_by,
        files=files,
    )
    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    headers = {"Content-Type": "application/json"}

    try:
        response = httpx.post(settings.url, content=body, headers=headers, timeout=settings.timeout_s)
    except httpx.RequestError as exc:
        logger.warning(
            "Attachment relay failed (observation_id=%s files=%s): %s",
            observation_id,
            len(files),
            exc,
        )
        raise AttachmentRelayError(f"File upload failed: {exc}") from exc

    if not 200 <= response.status_code < 300:
        logger.warning(
            "Attachment relay returned HTTP %s (observation_id=%s files=%s)",
            response.status_code,
            observation_id,
            len(files),
        )
        raise AttachmentRelayError(f"File upload failed: {response.status_code} - {response.reason_phrase}")

    logger.info(
        "Attachment relay succeeded (observation_id=%s files=%s code=%s)",
        observation_id,
        len(files),
        response.status_code,
    )
    if not response.content:
        return {}
    try:
        result = response.json()
    except ValueError:
        return {}
    return result if isinstance(result, dict) else {"result": result}
