from __future__ import annotations

import json
import logging
from typing import Any

try:  # pragma: no cover - optional dependency
    from kafka import KafkaProducer
except ImportError:  # pragma: no cover - fallback when kafka-python absent
    KafkaProducer = None  # type: ignore

from storyreel.config import Settings
from storyreel.models.domain import Job, utcnow


class JobEventPublisher:
    """Publishes job lifecycle events to Kafka so other services can follow progress."""

    def __init__(self, bootstrap_servers: str, topic: str, logger: logging.Logger | None = None) -> None:
        if KafkaProducer is None:
            raise RuntimeError("kafka-python is not installed")
        if not bootstrap_servers:
            raise ValueError("bootstrap_servers is required")
        if not topic:
            raise ValueError("topic is required")
        self._topic = topic
        self._logger = logger or logging.getLogger(__name__)
        self._producer = KafkaProducer(
            bootstrap_servers=bootstrap_servers,
            value_serializer=lambda payload: json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            acks=1,
            linger_ms=5,
        )

    @classmethod
    def from_settings(cls, settings: Settings, logger: logging.Logger | None = None) -> "JobEventPublisher":
        return cls(settings.kafka_bootstrap_servers, settings.kafka_events_topic, logger=logger)

    def publish(self, event: str, job: Job, error: BaseException | None = None) -> None:
        payload = build_event(event, job, error)
        try:
            self._producer.send(self._topic, payload, key=job.id.encode("utf-8"))
        except Exception:
            self._logger.warning(
                "failed to publish job event",
                extra={"job_id": job.id, "event": event, "topic": self._topic},
                exc_info=True,
            )

    def close(self) -> None:
        try:
            self._producer.flush()
            self._producer.close()
        except Exception:
            self._logger.debug("job event publisher close failed", exc_info=True)


def build_event(event: str, job: Job, error: BaseException | None = None) -> dict[str, Any]:
    """Flat lifecycle record; keyed by job id so one job's events stay ordered."""
    payload = job.payload or {}
    return {
        "event": event,
        "job_id": job.id,
        "job_type": job.type,
        "status": job.status(),
        "progress": job.progress,
        "storyboard_id": payload.get("storyboard_id"),
        "user_id": payload.get("user_id"),
        "recurring": job.recurring,
        "fail_reason": job.fail_reason or (str(error) if error is not None else None),
        "occurred_at": utcnow().isoformat(),
    }
