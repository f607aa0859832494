"""
Packet Models
Enums and Pydantic models for packet generation, errors and retry statistics
"""
from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


class PacketType(str, Enum):
    """Kinds of coaching packets a client can receive"""
    INTRO = "INTRO"
    NUTRITION = "NUTRITION"
    WORKOUT = "WORKOUT"
    PERFORMANCE = "PERFORMANCE"
    YOUTH = "YOUTH"
    RECOVERY = "RECOVERY"
    WELLNESS = "WELLNESS"


PACKET_TYPE_DISPLAY_NAMES = {
    PacketType.INTRO: "Introduction",
    PacketType.NUTRITION: "Nutrition",
    PacketType.WORKOUT: "Workout",
    PacketType.PERFORMANCE: "Performance",
    PacketType.YOUTH: "Youth Training",
    PacketType.RECOVERY: "Recovery",
    PacketType.WELLNESS: "Wellness",
}


def packet_type_display_name(packet_type) -> str:
    try:
        return PACKET_TYPE_DISPLAY_NAMES[PacketType(packet_type)]
    except ValueError:
        return str(packet_type).title()


class ClientType(str, Enum):
    """Program a client signed up for; decides which packets intake produces"""
    NUTRITION_ONLY = "NUTRITION_ONLY"
    WORKOUT_ONLY = "WORKOUT_ONLY"
    FULL_PROGRAM = "FULL_PROGRAM"
    ATHLETE_PERFORMANCE = "ATHLETE_PERFORMANCE"
    YOUTH = "YOUTH"
    GENERAL_WELLNESS = "GENERAL_WELLNESS"
    SPECIAL_SITUATION = "SPECIAL_SITUATION"


class PacketStatus(str, Enum):
    """Packet generation lifecycle"""
    PENDING = "PENDING"
    GENERATING = "GENERATING"
    READY = "READY"
    FAILED = "FAILED"


class PacketErrorType(str, Enum):
    """Failure categories recorded on FAILED packets"""
    TEMPLATE_ERROR = "TEMPLATE_ERROR"
    DATA_ERROR = "DATA_ERROR"
    AI_ERROR = "AI_ERROR"
    EXPORT_ERROR = "EXPORT_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class NotificationType(str, Enum):
    ADMIN_FAILURE = "ADMIN_FAILURE"
    CLIENT_READY = "CLIENT_READY"
    CLIENT_UPDATED = "CLIENT_UPDATED"
    TEST = "TEST"


class PacketRecord(BaseModel):
    """Detached view of a packet row"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    client_id: str
    type: PacketType
    status: PacketStatus
    content: Optional[Dict[str, Any]] = None
    pdf_url: Optional[str] = None
    last_error: Optional[str] = None
    error_type: Optional[PacketErrorType] = None
    retryable: Optional[bool] = None
    retry_count: int = 0
    version: int = 1
    previous_version_id: Optional[str] = None
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ClientRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: Optional[str] = None
    full_name: str
    email: str
    client_type: Optional[str] = None
    intake_responses: Optional[Dict[str, Any]] = None


class UserRecord(BaseModel):
    """Platform user as seen by the notification service"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: Optional[str] = None
    role: str
    status: str = "ACTIVE"
    email_notifications: bool = True
    notify_on_packet_ready: bool = True
    notify_on_packet_update: bool = True


class ErrorClassification(BaseModel):
    error_type: PacketErrorType
    retryable: bool
    message: str


class TopError(BaseModel):
    message: str
    count: int


class RecentError(BaseModel):
    packet_id: str
    client_id: str
    packet_type: PacketType
    error_type: Optional[PacketErrorType] = None
    message: Optional[str] = None
    retry_count: int
    updated_at: datetime


class ErrorStats(BaseModel):
    """Aggregate failure statistics over a time window"""
    window_hours: int
    total_packets: int = 0
    counts_by_status: Dict[str, int] = Field(default_factory=dict)
    failed: int = 0
    failure_rate: float = 0.0
    errors_by_type: Dict[str, int] = Field(default_factory=dict)
    errors_by_packet_type: Dict[str, int] = Field(default_factory=dict)
    top_errors: List[TopError] = Field(default_factory=list)
    recent_errors: List[RecentError] = Field(default_factory=list)


class FailedPacketSummary(BaseModel):
    packet_id: str
    client_id: str
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    packet_type: PacketType
    error_type: Optional[PacketErrorType] = None
    last_error: Optional[str] = None
    retry_count: int
    retryable: Optional[bool] = None
    version: int
    updated_at: datetime


class RetryStats(BaseModel):
    total_failed: int = 0
    awaiting_retry: int = 0
    exhausted: int = 0
    non_retryable: int = 0
    average_retry_count: float = 0.0
    mean_retries_to_success: float = 0.0


class PacketStatusItem(BaseModel):
    id: str
    type: PacketType
    status: PacketStatus
    version: int
    retry_count: int
    has_error: bool
    error_message: Optional[str] = None
    pdf_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PacketStatusSummary(BaseModel):
    total: int
    completed: int
    failed: int
    generating: int
    pending: int
    progress: int


class PacketStatusResponse(BaseModel):
    packets: List[PacketStatusItem]
    summary: PacketStatusSummary


class RegenerateRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class RetryRequest(BaseModel):
    reset_retry_count: bool = False


class NotifyRequest(BaseModel):
    packet_id: Optional[str] = None
    test: bool = False


class RoutedPackets(BaseModel):
    """Outcome of routing a client's completed intake to packets"""
    client_id: str
    client_type: Optional[str] = None
    packet_types: List[PacketType]
    packet_ids: List[str] = Field(default_factory=list)
    skipped_types: List[PacketType] = Field(default_factory=list)
