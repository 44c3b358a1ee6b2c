"""prepg3_shared.observability — Structured logs, CloudWatch metrics, operator alerts.

Metrics are fire-and-forget: a failing metrics call is logged and never fails
the operation that emitted it. Operator alerts go to the SNS topic named by
``OPERATOR_ALERT_TOPIC_ARN`` and are always mirrored to the error log.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Optional

from . import config
from .aws_clients import _get_cloudwatch, _get_sns
from .serialization import _now, _now_z

logger = logging.getLogger(__name__)


def _emit_structured_observability(
    *,
    component: str,
    event: str,
    entity_id: Optional[str] = None,
    actor: Optional[str] = None,
    latency_ms: Optional[int] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    payload: Dict[str, Any] = {
        "timestamp": _now_z(),
        "component": component,
        "event": event,
        "entity_id": str(entity_id or ""),
        "actor": str(actor or ""),
        "latency_ms": int(max(0, latency_ms or 0)),
        "error_code": str(error_code or ""),
    }
    if extra:
        payload.update(extra)
    logger.info("[OBSERVABILITY] %s", json.dumps(payload, sort_keys=True, default=str))


class CloudWatchMetrics:
    """``record(name, value, dimensions)`` onto one CloudWatch namespace."""

    def __init__(
        self,
        namespace: Optional[str] = None,
        client_fn: Callable[[], Any] = _get_cloudwatch,
        enabled: Optional[bool] = None,
    ) -> None:
        self.namespace = namespace or config.METRICS_NAMESPACE
        self._client_fn = client_fn
        self.enabled = config.METRICS_ENABLED if enabled is None else enabled

    def record(
        self,
        metric_name: str,
        value: float = 1,
        dimensions: Optional[Dict[str, str]] = None,
        unit: str = "Count",
    ) -> None:
        if not self.enabled:
            return
        datum: Dict[str, Any] = {
            "MetricName": metric_name,
            "Value": value,
            "Unit": unit,
            "Timestamp": _now(),
        }
        if dimensions:
            datum["Dimensions"] = [
                {"Name": str(k), "Value": str(v)} for k, v in sorted(dimensions.items())
            ]
        try:
            self._client_fn().put_metric_data(Namespace=self.namespace, MetricData=[datum])
        except Exception as exc:
            logger.warning("metric %s not recorded: %s", metric_name, exc)


class OperatorAlerts:
    """Operator-facing channel for states that need a human."""

    def __init__(
        self,
        metrics: Optional[CloudWatchMetrics] = None,
        topic_arn: Optional[str] = None,
        client_fn: Callable[[], Any] = _get_sns,
    ) -> None:
        self.metrics = metrics or CloudWatchMetrics()
        self.topic_arn = config.OPERATOR_ALERT_TOPIC_ARN if topic_arn is None else topic_arn
        self._client_fn = client_fn

    def inconsistent_state(self, entity_kind: str, entity_id: str, detail: Dict[str, Any]) -> None:
        payload = {
            "alert": "inconsistent_state",
            "entity_kind": entity_kind,
            "entity_id": entity_id,
            "detail": detail,
            "timestamp": _now_z(),
        }
        logger.error("[OPERATOR_ALERT] %s", json.dumps(payload, sort_keys=True, default=str))
        self.metrics.record("InconsistentState", 1, {"EntityKind": entity_kind})
        if not self.topic_arn:
            return
        try:
            self._client_fn().publish(
                TopicArn=self.topic_arn,
                Subject=f"[prepg3] inconsistent {entity_kind} {entity_id}"[:100],
                Message=json.dumps(payload, sort_keys=True, default=str),
            )
        except Exception as exc:
            logger.error("operator alert publish failed for %s %s: %s", entity_kind, entity_id, exc)
