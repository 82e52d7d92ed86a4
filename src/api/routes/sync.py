"""Roster sync endpoints."""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status

from api.dependencies import (
    BackgroundTasksRunner,
    build_orchestrator,
    open_connection,
    verify_api_key,
    verify_cron_secret,
)
from api.logging import RequestLog, log_request
from api.models.responses import ErrorCodes, SyncRequestBody
from core.errors import AuthenticationFailed, MissingCredential, UpstreamRateLimited
from services.sync import InlineRunner, SyncRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")

# Failures that mean "the caller must fix something" rather than "serve the cache"
_ERROR_STATUS = {
    MissingCredential.code: status.HTTP_400_BAD_REQUEST,
    AuthenticationFailed.code: status.HTTP_401_UNAUTHORIZED,
    UpstreamRateLimited.code: status.HTTP_429_TOO_MANY_REQUESTS,
}


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _write_log(request_log: RequestLog) -> None:
    try:
        log_request(request_log)
    except Exception as e:
        # Don't fail the request if logging fails
        logger.warning("Could not write request log: %s", e)


@router.post("/sync")
async def sync_endpoint(
    request: Request,
    body: SyncRequestBody,
    background_tasks: BackgroundTasks,
    _api_key: str = Depends(verify_api_key),
):
    """
    Sync one person's roster and return the current entries.

    Calendar reconciliation runs after the response is sent; the response
    reports it as "scheduled".
    """
    request_log = RequestLog(
        endpoint="/v1/sync",
        method="POST",
        client_ip=get_client_ip(request),
        person=body.person,
    )

    conn = open_connection()
    close_after_response = False
    try:
        orchestrator = build_orchestrator(conn, runner=BackgroundTasksRunner(background_tasks))
        result = await orchestrator.sync(
            SyncRequest(
                person=body.person,
                credential=body.credential,
                force=body.force,
                verify=body.verify,
                mutation_limit=body.limit,
            )
        )

        request_log.person = result.person
        request_log.is_live = result.is_live
        request_log.entries_returned = len(result.entries)
        request_log.details.extend(("diagnostic", line) for line in result.diagnostic_log)

        if not result.success and result.error_code in _ERROR_STATUS:
            raise HTTPException(
                status_code=_ERROR_STATUS[result.error_code],
                detail={
                    "error": result.error or result.message,
                    "code": result.error_code,
                    "details": result.diagnostic_log,
                },
            )

        request_log.finish(200, result.error_code, result.error)
        # Background tasks run in order, so this closes after any reconciliation
        background_tasks.add_task(conn.close)
        close_after_response = True
        return result.to_dict()

    except HTTPException as e:
        detail = e.detail if isinstance(e.detail, dict) else {"error": str(e.detail)}
        request_log.finish(e.status_code, detail.get("code"), detail.get("error"))
        raise

    except Exception as e:
        logger.exception("Sync request failed")
        request_log.finish(500, ErrorCodes.INTERNAL_ERROR, str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "error": "Internal server error",
                "code": ErrorCodes.INTERNAL_ERROR,
                "details": [],
            },
        )

    finally:
        if not close_after_response:
            conn.close()
        _write_log(request_log)


@router.post("/sync/batch")
async def batch_sync_endpoint(
    request: Request,
    _cron_secret: str = Depends(verify_cron_secret),
):
    """Scheduled sync of every user whose batch interval has passed."""
    request_log = RequestLog(
        endpoint="/v1/sync/batch",
        method="POST",
        client_ip=get_client_ip(request),
    )

    conn = open_connection()
    try:
        orchestrator = build_orchestrator(conn, runner=InlineRunner())
        results = await orchestrator.run_batch_sync()
        for item in results:
            if item["status"] in ("failed", "error"):
                request_log.details.append(("warning", f"{item['user']}: {item.get('message') or item.get('error')}"))
        request_log.finish(200)
        return {"success": True, "processed": len(results), "results": results}

    except Exception as e:
        logger.exception("Batch sync failed")
        request_log.finish(500, ErrorCodes.INTERNAL_ERROR, str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "error": "Batch sync failed",
                "code": ErrorCodes.INTERNAL_ERROR,
                "details": [str(e)],
            },
        )

    finally:
        conn.close()
        _write_log(request_log)
