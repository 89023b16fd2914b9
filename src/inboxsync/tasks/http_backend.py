"""HTTP backend for tasks - sends tasks to the worker via HTTP POST.

Used in local/staging environments where intake and worker run as separate
containers on the same network. There is no queue in between: the POST is
the only delivery, and a non-2xx answer is reported as a refused enqueue so
the gateway re-delivers.
"""

import os
from datetime import datetime

import requests
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.id_token import fetch_id_token

from inboxsync.observability.logging import get_logger

logger = get_logger(__name__)

WORKER_BASE_URL = os.environ.get("WORKER_BASE_URL", "http://worker:8000")
INTERNAL_TASK_SECRET = os.environ.get("INTERNAL_TASK_SECRET", "")
HTTP_TIMEOUT = int(os.environ.get("TASKS_HTTP_TIMEOUT", "30"))

# Must match task_auth.LOCAL_DEV_AUDIENCE
_LOCAL_DEV_AUDIENCE = "inboxsync-tasks-local"


def _fetch_oidc_token(audience: str) -> str | None:
    """Fetch a GCP ID token for the given audience.

    Relies on the GCP metadata server or application default credentials.

    Returns:
        Signed ID token string, or None if fetching fails.
    """
    try:
        return fetch_id_token(GoogleRequest(), audience)
    except Exception as e:
        logger.error(
            "failed to fetch OIDC ID token",
            extra={"extra_fields": {"audience": audience, "error": str(e)}},
        )
        return None


def enqueue_http(
    task_id: str,
    url_path: str,
    payload: dict,
    correlation_id: str | None = None,
    schedule_time: datetime | None = None,
) -> bool:
    """Deliver task via HTTP POST to the worker.

    Returns:
        True if the worker answered 2xx, False otherwise.
    """
    if schedule_time is not None:
        logger.warning(
            "HTTP backend does not support scheduled tasks, delivering now",
            extra={"extra_fields": {"task_id": task_id}},
        )

    url = f"{WORKER_BASE_URL}{url_path}"
    headers = {
        "Content-Type": "application/json",
        "X-Correlation-ID": correlation_id or "",
        "X-Task-Id": task_id,
        "X-Task-Attempt": "1",
    }

    # Shared secret for local dev, real OIDC token elsewhere
    if os.environ.get("TASKS_OIDC_AUDIENCE", "") == _LOCAL_DEV_AUDIENCE:
        if INTERNAL_TASK_SECRET:
            headers["X-Internal-Task-Secret"] = INTERNAL_TASK_SECRET
    else:
        token = _fetch_oidc_token(WORKER_BASE_URL)
        if not token:
            logger.error(
                "HTTP task enqueue aborted: OIDC token unavailable",
                extra={"extra_fields": {"task_id": task_id, "url_path": url_path}},
            )
            return False
        headers["Authorization"] = f"Bearer {token}"

    try:
        response = requests.post(
            url,
            json=payload,
            headers=headers,
            timeout=HTTP_TIMEOUT,
        )
        response.raise_for_status()
        logger.info(
            "HTTP task delivered",
            extra={"extra_fields": {"task_id": task_id, "url_path": url_path}},
        )
        return True
    except requests.RequestException as e:
        logger.error(
            "HTTP task delivery failed",
            extra={"extra_fields": {"task_id": task_id, "url": url, "error": str(e)}},
        )
        return False
