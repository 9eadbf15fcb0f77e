"""Observability: logging and metrics for the pub-sub engine."""

from kafka_pubsub.observability.logger import get_logger
from kafka_pubsub.observability.metrics import Metrics

__all__ = ["get_logger", "Metrics"]
