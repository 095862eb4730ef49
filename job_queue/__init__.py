"""
Delivery Queue — holds sends attempted while the transport session is down.

- Callers ENQUEUE when the connection is not ready
- The delivery service DRAINS the queue each time the connection returns to READY
- In-memory only; queued work does not survive a process restart
"""
from job_queue.delivery_queue import DeliveryQueue, QueuedItem

__all__ = ["DeliveryQueue", "QueuedItem"]
