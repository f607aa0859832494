"""
Packet Routes
Client-facing intake completion, packet status, detail, download and PDF re-rendering
"""
import logging
import re
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Response, status

from app.auth.dependencies import get_current_user, is_staff
from app.models.api import ApiResponse
from app.models.packet import (
    PacketRecord,
    PacketStatus,
    PacketStatusItem,
    PacketStatusResponse,
    PacketStatusSummary,
    RoutedPackets,
    packet_type_display_name,
)
from app.models.user import User
from app.services.packet_generation_service import PacketGenerationService
from app.services.packet_storage import ArtifactNotFoundError, PacketStorageError
from app.services.packet_store import PacketConflictError, PacketNotFoundError
from app.services.pdf_export_service import PDFExportError
from app.services.pipeline import PacketPipeline, get_pipeline
from app.utils.audit_logger import log_packet_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/packets", tags=["Packets"])


def to_status_item(packet: PacketRecord) -> PacketStatusItem:
    return PacketStatusItem(
        id=packet.id,
        type=packet.type,
        status=packet.status,
        version=packet.version,
        retry_count=packet.retry_count,
        has_error=bool(packet.last_error),
        error_message=packet.last_error,
        pdf_url=packet.pdf_url,
        created_at=packet.created_at,
        updated_at=packet.updated_at,
    )


def summarize(packets: List[PacketRecord]) -> PacketStatusSummary:
    total = len(packets)
    completed = sum(1 for p in packets if p.status == PacketStatus.READY)
    return PacketStatusSummary(
        total=total,
        completed=completed,
        failed=sum(1 for p in packets if p.status == PacketStatus.FAILED),
        generating=sum(1 for p in packets if p.status == PacketStatus.GENERATING),
        pending=sum(1 for p in packets if p.status == PacketStatus.PENDING),
        progress=round(completed / total * 100) if total else 0,
    )


def get_accessible_packet(packet_id: str, current_user: User, pipeline: PacketPipeline) -> PacketRecord:
    """Load a packet the current user may see: staff see all, clients only their own."""
    packet = pipeline.store.get_packet(packet_id)
    if packet is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Packet not found")
    if is_staff(current_user):
        return packet
    client = pipeline.store.get_client_by_user(current_user.id)
    if client is None or client.id != packet.client_id:
        # Do not reveal that someone else's packet exists
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Packet not found")
    return packet


def download_filename(packet: PacketRecord, client_name: str) -> str:
    name = re.sub(r"[^A-Za-z0-9_-]+", "_", client_name).strip("_") or "client"
    type_name = packet_type_display_name(packet.type).replace(" ", "_")
    return f"{type_name}-{name}.pdf"


@router.get("/status", response_model=ApiResponse[PacketStatusResponse])
async def get_packet_status(
    current_user: User = Depends(get_current_user),
    pipeline: PacketPipeline = Depends(get_pipeline),
):
    """Current packets (latest version per type) for the signed-in client, with progress summary."""
    client = pipeline.store.get_client_by_user(current_user.id)
    if client is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client profile not found")

    packets = pipeline.store.get_current_packets(client.id)
    return ApiResponse(
        success=True,
        data=PacketStatusResponse(packets=[to_status_item(p) for p in packets], summary=summarize(packets)),
    )


@router.post("/intake-complete", response_model=ApiResponse[RoutedPackets], status_code=status.HTTP_202_ACCEPTED)
async def complete_intake(
    current_user: User = Depends(get_current_user),
    pipeline: PacketPipeline = Depends(get_pipeline),
):
    """Queue the packets the signed-in client's intake calls for."""
    client = pipeline.store.get_client_by_user(current_user.id)
    if client is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client profile not found")

    routed = pipeline.routing.route_packets_for_client(client.id)
    log_packet_event(
        action="intake_routed",
        outcome="success",
        user_id=current_user.id,
        username=current_user.email,
        metadata={
            "client_id": client.id,
            "packet_types": [t.value for t in routed.packet_types],
            "created": len(routed.packet_ids),
        },
    )
    return ApiResponse(success=True, data=routed, message=f"{len(routed.packet_ids)} packet(s) queued")


@router.get("/{packet_id}", response_model=ApiResponse[PacketRecord])
async def get_packet(
    packet_id: str,
    current_user: User = Depends(get_current_user),
    pipeline: PacketPipeline = Depends(get_pipeline),
):
    packet = get_accessible_packet(packet_id, current_user, pipeline)
    return ApiResponse(success=True, data=packet)


@router.get("/{packet_id}/download")
async def download_packet(
    packet_id: str,
    current_user: User = Depends(get_current_user),
    pipeline: PacketPipeline = Depends(get_pipeline),
):
    """Stream the packet PDF. 404 if the packet has no PDF or the artifact is gone."""
    packet = get_accessible_packet(packet_id, current_user, pipeline)
    if not packet.pdf_url:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="PDF not available for this packet")

    try:
        data = pipeline.pdf_export.read_pdf(packet.pdf_url)
    except ArtifactNotFoundError:
        logger.warning(f"PDF artifact missing for packet {packet_id}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="PDF file not found")
    except PacketStorageError as e:
        logger.error(f"Failed to read PDF for packet {packet_id}: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="PDF storage unavailable")

    client = pipeline.store.get_client(packet.client_id)
    filename = download_filename(packet, client.full_name if client else "client")
    return Response(
        content=data,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/{packet_id}/regenerate-pdf", response_model=ApiResponse[PacketRecord])
async def regenerate_packet_pdf(
    packet_id: str,
    current_user: User = Depends(get_current_user),
    pipeline: PacketPipeline = Depends(get_pipeline),
):
    """Re-render the PDF of a READY packet from its stored content."""
    get_accessible_packet(packet_id, current_user, pipeline)
    generation: PacketGenerationService = pipeline.generation
    try:
        packet = generation.regenerate_pdf(packet_id)
    except PacketNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Packet not found")
    except PacketConflictError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except (PDFExportError, PacketStorageError) as e:
        logger.error(f"PDF regeneration failed for packet {packet_id}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to regenerate PDF")

    log_packet_event(
        action="regenerate_pdf",
        outcome="success",
        packet_id=packet_id,
        user_id=current_user.id,
        username=current_user.email,
    )
    return ApiResponse(success=True, data=packet, message="PDF regenerated")
