"""CloudWatch custom metrics for billing lifecycle events and operator alerts.

All functions are fire-and-forget: they catch exceptions internally and log
warnings via structlog. They NEVER raise or block the caller.

Metrics are emitted via boto3 put_metric_data. Since boto3 is synchronous,
calls are dispatched to a ThreadPoolExecutor to avoid blocking the event loop.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime

import boto3
import structlog

from billing_sync.core.config import get_settings

logger = structlog.get_logger(__name__)

_cw_client = None
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="cw-metrics")


def _get_client():
    global _cw_client
    if _cw_client is None:
        _cw_client = boto3.client("cloudwatch", region_name=get_settings().aws_region)
    return _cw_client


def _put_business_event(event_name: str, account_id: str | None = None) -> None:
    """Synchronous put_metric_data for one billing event. Runs in thread pool."""
    dimensions = [{"Name": "Event", "Value": event_name}]
    if account_id:
        dimensions.append({"Name": "AccountId", "Value": account_id})
    try:
        _get_client().put_metric_data(
            Namespace=get_settings().metrics_namespace,
            MetricData=[{
                "MetricName": "EventCount",
                "Dimensions": dimensions,
                "Value": 1.0,
                "Unit": "Count",
                "Timestamp": datetime.now(UTC),
            }],
        )
    except Exception as e:
        logger.warning("business_event_emit_failed", error=str(e), event=event_name)


async def emit_business_event(event_name: str, account_id: str | None = None) -> None:
    """Emit a billing business event metric. Non-blocking, fire-and-forget."""
    if not get_settings().metrics_enabled:
        return
    loop = asyncio.get_running_loop()
    loop.run_in_executor(_executor, _put_business_event, event_name, account_id)
