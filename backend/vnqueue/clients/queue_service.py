"""
Queue Service REST client.
"""
import logging
import uuid
from functools import wraps
from typing import List, Optional, Union

import httpx

from vnqueue.clients.base_client import BaseClient, NO_RETRY, RetryConfig
from vnqueue.core.config import settings
from vnqueue.exceptions import (
    APIError,
    PreconditionError,
    QueueCreationError,
    QueueServiceConnectionError,
    QueueServiceError,
    StaffAuthenticationError,
)
from vnqueue.schemas.queue_entry import QueueEntry
from vnqueue.schemas.staff import ApiResponse, StaffIdentity
from vnqueue.services.state_machine import QueueAction

logger = logging.getLogger(__name__)

QueueId = Union[int, str]

PRECONDITION_STATUSES = (400, 404, 409, 422)


def map_service_errors(func):
    """
    Decorator to catch httpx/parsing exceptions and re-raise them as APIError subclasses.
    """
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except APIError:
            raise
        except httpx.TimeoutException as e:
            raise QueueServiceConnectionError(f"Queue service timed out: {e}") from e
        except httpx.TransportError as e:
            raise QueueServiceConnectionError(f"Cannot reach queue service: {e}") from e
        except httpx.HTTPStatusError as e:
            raise QueueServiceError(
                f"Queue service returned {e.response.status_code} for {e.request.url.path}",
                status_code=e.response.status_code,
            ) from e
        except ValueError as e:
            # JSON decoding and pydantic validation errors
            raise QueueServiceError(f"Malformed response from queue service: {e}", status_code=502) from e
    return wrapper


def _error_message(response: httpx.Response, default: str) -> str:
    try:
        body = response.json()
    except ValueError:
        return default
    if isinstance(body, dict):
        return body.get("error") or body.get("message") or default
    return default


class QueueServiceClient(BaseClient):
    """
    Client for the hospital Queue Service.

    The service is the sole authority for queue state. Lookups that find
    nothing return None; staff commands are sent once and never retried.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            base_url or settings.QUEUE_API_URL,
            timeout or settings.REQUEST_TIMEOUT_SECONDS,
            retry_config,
            transport=transport,
        )

    # -------------------------------------------------------------------------
    # Patient lookups
    # -------------------------------------------------------------------------

    @map_service_errors
    async def get_queue_by_vn(self, vn: str) -> Optional[QueueEntry]:
        response = await self._request("GET", f"/api/queue/{vn}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        body = response.json()
        return QueueEntry.model_validate(body) if body else None

    @map_service_errors
    async def get_queue_by_phone(self, phone: str) -> Optional[QueueEntry]:
        response = await self._request("GET", f"/api/queue/phone/{phone}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        body = response.json()
        return QueueEntry.model_validate(body) if body else None

    # -------------------------------------------------------------------------
    # Staff
    # -------------------------------------------------------------------------

    @map_service_errors
    async def staff_login(self, username: str, password: str) -> StaffIdentity:
        response = await self._request(
            "POST",
            "/api/staff/login",
            json={"username": username, "password": password},
            retry_config=NO_RETRY,
        )
        if response.status_code in (400, 401, 403, 404):
            raise StaffAuthenticationError(_error_message(response, StaffAuthenticationError().message))
        response.raise_for_status()
        body = response.json()
        if not body or not body.get("success", True):
            raise StaffAuthenticationError()
        staff = StaffIdentity.model_validate(body)
        logger.info(f"Staff {staff.staff_name} signed in to department {staff.department_id}")
        return staff

    @map_service_errors
    async def get_department_queues(self, department_id: QueueId) -> List[QueueEntry]:
        body = await self.get_json(f"/api/staff/queues/{department_id}")
        entries = []
        for item in body or []:
            entry = QueueEntry.model_validate(item)
            if entry.department_id is None:
                entry = entry.model_copy(update={"department_id": department_id})
            entries.append(entry)
        return entries

    @map_service_errors
    async def send_command(self, queue_id: QueueId, action: QueueAction, staff_name: str) -> ApiResponse:
        """
        Issue one staff command. Each invocation carries a fresh Idempotency-Key
        so the service can drop a duplicate delivery of the same click.
        """
        response = await self._request(
            "POST",
            f"/api/staff/queue/{queue_id}/{action.value}",
            json={"staffName": staff_name},
            headers={"Idempotency-Key": str(uuid.uuid4())},
            retry_config=NO_RETRY,
        )
        if response.status_code in PRECONDITION_STATUSES:
            message = _error_message(response, f"Failed to {action.value} queue {queue_id}.")
            logger.warning(f"{action.value} on queue {queue_id} rejected ({response.status_code}): {message}")
            raise PreconditionError(message, status_code=response.status_code)
        response.raise_for_status()

        result = ApiResponse.model_validate(response.json() or {})
        if not result.success:
            raise PreconditionError(result.message or f"Failed to {action.value} queue {queue_id}.")
        logger.info(f"{action.value} on queue {queue_id} by {staff_name} accepted")
        return result

    async def call_queue(self, queue_id: QueueId, staff_name: str) -> ApiResponse:
        return await self.send_command(queue_id, QueueAction.CALL, staff_name)

    async def mark_arrived(self, queue_id: QueueId, staff_name: str) -> ApiResponse:
        return await self.send_command(queue_id, QueueAction.MARK_ARRIVED, staff_name)

    async def skip_queue(self, queue_id: QueueId, staff_name: str) -> ApiResponse:
        return await self.send_command(queue_id, QueueAction.SKIP, staff_name)

    async def complete_queue(self, queue_id: QueueId, staff_name: str) -> ApiResponse:
        return await self.send_command(queue_id, QueueAction.COMPLETE, staff_name)

    async def recall_queue(self, queue_id: QueueId, staff_name: str) -> ApiResponse:
        return await self.send_command(queue_id, QueueAction.RECALL, staff_name)

    @map_service_errors
    async def create_queue(self, vn: str, staff_id: QueueId) -> ApiResponse:
        response = await self._request(
            "POST",
            "/api/staff/queue/create",
            json={"vn": vn, "staffId": staff_id},
            headers={"Idempotency-Key": str(uuid.uuid4())},
            retry_config=NO_RETRY,
        )
        if response.is_error:
            raise QueueCreationError(
                _error_message(response, QueueCreationError().message),
                status_code=response.status_code,
            )
        result = ApiResponse.model_validate(response.json() or {})
        if not result.success:
            raise QueueCreationError(result.message or QueueCreationError().message)
        logger.info(f"Created queue {result.queue_number} for {vn}")
        return result
