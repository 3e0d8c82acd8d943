from vnqueue.schemas.queue_entry import QueueEntry, QueueStatus
from vnqueue.schemas.staff import ApiResponse, StaffIdentity

__all__ = ["QueueEntry", "QueueStatus", "ApiResponse", "StaffIdentity"]
