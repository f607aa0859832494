"""
Admin Packet Routes
Regeneration, manual retry, intake routing and failure monitoring for staff
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from app.auth.dependencies import require_roles
from app.models.api import ApiResponse
from app.models.packet import NotifyRequest, PacketRecord, RegenerateRequest, RetryRequest, RoutedPackets
from app.models.user import User, UserRole
from app.services.packet_generation_service import PacketGenerationError
from app.services.packet_notification_service import NoAdminRecipientsError
from app.services.packet_store import PacketConflictError, PacketNotFoundError
from app.services.pipeline import PacketPipeline, get_pipeline
from app.utils.audit_logger import log_packet_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/packets", tags=["Admin Packets"])

staff_only = require_roles([UserRole.ADMIN, UserRole.COACH])
admin_only = require_roles([UserRole.ADMIN])


@router.post(
    "/{packet_id}/regenerate",
    response_model=ApiResponse[PacketRecord],
    status_code=status.HTTP_202_ACCEPTED,
)
async def regenerate_packet(
    packet_id: str,
    response: Response,
    request: Optional[RegenerateRequest] = None,
    wait: bool = Query(False, description="Generate synchronously and report failures"),
    current_user: User = Depends(staff_only),
    pipeline: PacketPipeline = Depends(get_pipeline),
):
    """
    Queue a new version of a packet.

    With wait=true the new version is generated in this request. A failure is
    still recorded on the packet and surfaced as 422 (not retryable) or 503
    (retryable, the worker will try again).
    """
    reason = request.reason if request else None
    try:
        new_packet = pipeline.generation.regenerate_packet(packet_id, requested_by=current_user.id, reason=reason)
    except PacketNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Packet not found")
    except PacketConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    if not wait:
        pipeline.worker.enqueue(new_packet.id)
        return ApiResponse(success=True, data=new_packet, message="Packet regeneration queued")

    try:
        loop = asyncio.get_event_loop()
        result = await loop.run_in_executor(None, pipeline.generation.process_packet, new_packet.id, True)
    except PacketGenerationError as e:
        logger.warning(f"Synchronous regeneration of packet {new_packet.id} failed: {e.error_type.value}")
        raise HTTPException(
            status_code=(
                status.HTTP_503_SERVICE_UNAVAILABLE if e.retryable
                else status.HTTP_422_UNPROCESSABLE_ENTITY
            ),
            detail={
                "packet_id": new_packet.id,
                "error_type": e.error_type.value,
                "retryable": e.retryable,
                "message": e.message,
            },
        )

    if not result.claimed:
        # The worker picked the new version up first
        return ApiResponse(
            success=True, data=pipeline.store.get_packet(new_packet.id), message="Packet regeneration queued"
        )

    response.status_code = status.HTTP_200_OK
    return ApiResponse(success=True, data=pipeline.store.get_packet(new_packet.id), message="Packet regenerated")


@router.post(
    "/clients/{client_id}/route",
    response_model=ApiResponse[RoutedPackets],
    status_code=status.HTTP_202_ACCEPTED,
)
async def route_client_packets(
    client_id: str,
    current_user: User = Depends(staff_only),
    pipeline: PacketPipeline = Depends(get_pipeline),
):
    """Create and queue the packets a client's completed intake calls for."""
    try:
        routed = pipeline.routing.route_packets_for_client(client_id)
    except PacketNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")

    log_packet_event(
        action="intake_routed",
        outcome="success",
        user_id=current_user.id,
        username=current_user.email,
        metadata={
            "client_id": client_id,
            "packet_types": [t.value for t in routed.packet_types],
            "created": len(routed.packet_ids),
        },
    )
    return ApiResponse(success=True, data=routed, message=f"{len(routed.packet_ids)} packet(s) queued")


@router.post("/{packet_id}/retry", response_model=ApiResponse[PacketRecord])
async def retry_packet(
    packet_id: str,
    request: Optional[RetryRequest] = None,
    current_user: User = Depends(staff_only),
    pipeline: PacketPipeline = Depends(get_pipeline),
):
    """Put a FAILED packet back in the queue now, ignoring backoff."""
    reset = request.reset_retry_count if request else False
    try:
        packet = pipeline.retry_service.retry_now(packet_id, reset_retry_count=reset)
    except PacketNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Packet not found")
    except PacketConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    log_packet_event(
        action="manual_retry",
        outcome="success",
        packet_id=packet_id,
        user_id=current_user.id,
        username=current_user.email,
        metadata={"reset_retry_count": reset},
    )
    pipeline.worker.enqueue(packet_id)
    return ApiResponse(success=True, data=packet, message="Packet queued for retry")


@router.get("/errors", response_model=ApiResponse[Dict[str, Any]])
async def get_packet_errors(
    time_range: int = Query(24, ge=1, le=720, description="Window in hours"),
    current_user: User = Depends(admin_only),
    pipeline: PacketPipeline = Depends(get_pipeline),
):
    """Failure dashboard: error stats, retry stats and packets needing attention."""
    error_stats = pipeline.error_handler.get_error_stats(window_hours=time_range)
    retry_stats = pipeline.worker.get_retry_stats()
    failed_packets = pipeline.error_handler.get_failed_packets_needing_attention()
    needing_notification = pipeline.notifications.get_packets_needing_notification()

    return ApiResponse(
        success=True,
        data={
            "errorStats": error_stats.model_dump(mode="json"),
            "retryStats": retry_stats.model_dump(mode="json"),
            "failedPackets": [p.model_dump(mode="json") for p in failed_packets],
            "packetsNeedingNotification": len(needing_notification),
            "timeRangeHours": time_range,
        },
    )


@router.post("/errors/notify", response_model=ApiResponse[Dict[str, Any]])
async def notify_packet_errors(
    request: Optional[NotifyRequest] = None,
    current_user: User = Depends(admin_only),
    pipeline: PacketPipeline = Depends(get_pipeline),
):
    """
    Send admin failure notifications.

    - test=true: send a test email to every active admin
    - packet_id: notify about one packet (skipped if already notified)
    - neither: send every outstanding notification
    """
    request = request or NotifyRequest()
    notifications = pipeline.notifications

    if request.test:
        try:
            sent = notifications.send_test_notification()
        except NoAdminRecipientsError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        return ApiResponse(success=True, data={"sent": sent}, message=f"Test notification sent to {sent} admin(s)")

    if request.packet_id:
        if pipeline.store.get_packet(request.packet_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Packet not found")
        sent_one = notifications.notify_admins_of_failure(request.packet_id)
        return ApiResponse(
            success=True,
            data={"sent": 1 if sent_one else 0, "packet_id": request.packet_id},
            message="Notification sent" if sent_one else "No notification needed",
        )

    sent = notifications.process_pending_notifications()
    logger.info(f"Admin {current_user.id} processed pending notifications: {sent} sent")
    return ApiResponse(success=True, data={"sent": sent}, message=f"Sent {sent} notification(s)")
