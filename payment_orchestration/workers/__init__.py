"""Background workers for async processing."""
from .delivery_worker import DeliveryWorker, start_delivery_worker

__all__ = ["DeliveryWorker", "start_delivery_worker"]
