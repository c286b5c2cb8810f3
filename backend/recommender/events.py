from __future__ import annotations

from typing import Any, Dict, Optional
import logging

from backend.recommender.models import (
    EVENT_METADATA_KEYS,
    ActionKind,
    Clock,
    InteractionEvent,
    Ok,
    RecordResult,
    SoftFailure,
    split_known_keys,
    system_clock,
)
from backend.recommender.store import Store

logger = logging.getLogger(__name__)


def _as_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def build_event(
    user_id: str,
    product_id: str,
    action: ActionKind,
    metadata: Optional[Dict[str, Any]],
    ts: int,
) -> InteractionEvent:
    known, extra = split_known_keys(metadata, EVENT_METADATA_KEYS)
    return InteractionEvent(
        user_id=str(user_id),
        product_id=str(product_id),
        action=ActionKind(action),
        ts=ts,
        session_id=str(known["session_id"]) if known.get("session_id") is not None else None,
        device_type=str(known["device_type"]) if known.get("device_type") is not None else None,
        source=str(known["source"]) if known.get("source") is not None else None,
        duration_ms=_as_int(known.get("duration_ms")),
        metadata=extra,
    )


class EventRecorder:
    """
    append-only writer for interaction events.
    this sits on the side of page renders and checkouts, so `record` never
    raises: any failure comes back as SoftFailure and gets logged here.
    """

    def __init__(self, store: Store, clock: Clock = system_clock):
        self.store = store
        self.clock = clock

    def record(
        self,
        user_id: str,
        product_id: str,
        action: ActionKind | str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> RecordResult:
        if not user_id or not product_id:
            return SoftFailure("user_id and product_id are required")

        try:
            kind = ActionKind(action)
        except ValueError:
            logger.warning("Ignoring event with unknown action %r", action)
            return SoftFailure(f"unknown action: {action}")

        try:
            event = build_event(user_id, product_id, kind, metadata, self.clock())
            self.store.append_event(event)
        except Exception as e:
            # analytics side channel: never let this break the caller
            logger.warning(
                "Failed to record %s event for user=%s product=%s: %s",
                kind.value, user_id, product_id, e,
                exc_info=True,
            )
            return SoftFailure(str(e))

        return Ok()
