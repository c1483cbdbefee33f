from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from controller.src.errors import MalformedPayload
from controller.src.models import PushEvent

LOGGER = logging.getLogger(__name__)

REGISTRY_HEADER = "X-Argoos-Registry-Name"
PUSH_ACTIONS = frozenset({"push", "create"})
_MANIFEST_MARKERS = ("manifest", "image.index")


class NotificationTarget(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    repository: str = Field(min_length=1)
    media_type: str | None = Field(default=None, alias="mediaType")
    digest: str | None = None
    tag: str | None = None
    url: str | None = None


class NotificationRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    host: str | None = None


class NotificationRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    action: str = Field(min_length=1)
    target: NotificationTarget
    request: NotificationRequest | None = None


class NotificationEnvelope(BaseModel):
    """Docker distribution notification body: ``{"events": [...]}``."""

    model_config = ConfigDict(extra="ignore")

    events: list[NotificationRecord]


def _is_manifest(media_type: str | None) -> bool:
    if not media_type:
        return True
    return any(marker in media_type for marker in _MANIFEST_MARKERS)


def _registry_origin(record: NotificationRecord, registry_override: str | None) -> str | None:
    override = (registry_override or "").strip()
    if override:
        return override
    if record.request is not None and record.request.host:
        return record.request.host.strip() or None
    return None


def decode_events(
    raw_body: bytes | str, registry_override: str | None = None
) -> tuple[PushEvent, ...]:
    """Decode a registry notification envelope into push events.

    Pull, delete and other non-push records are dropped, as are blob (layer)
    pushes and records naming neither a tag nor a digest.  A structurally
    invalid envelope fails the whole batch with :class:`MalformedPayload`.
    """
    try:
        envelope = NotificationEnvelope.model_validate_json(raw_body)
    except ValidationError as exc:
        raise MalformedPayload(
            f"invalid registry notification ({exc.error_count()} error(s))"
        ) from exc

    events: list[PushEvent] = []
    for record in envelope.events:
        action = record.action.strip().lower()
        if action not in PUSH_ACTIONS:
            LOGGER.debug("Ignoring %s event for %s", action, record.target.repository)
            continue

        target = record.target
        if not _is_manifest(target.media_type):
            LOGGER.debug(
                "Ignoring %s push of %s (%s)", target.repository, target.digest, target.media_type
            )
            continue

        tag = (target.tag or "").strip() or None
        digest = (target.digest or "").strip() or None
        if tag is None and digest is None:
            LOGGER.debug("Ignoring push of %s without tag or digest", target.repository)
            continue

        events.append(
            PushEvent(
                repository=target.repository.strip(),
                tag=tag,
                digest=digest,
                registry=_registry_origin(record, registry_override),
            )
        )
    return tuple(events)
