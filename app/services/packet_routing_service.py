"""
Packet Routing Service
Decides which packets a client needs once intake is complete and creates them
as PENDING rows for the worker.
"""
import logging
from typing import Any, Dict, List, Optional

from app.models.packet import ClientType, PacketType, RoutedPackets
from app.services.packet_store import PacketNotFoundError, PacketStore

logger = logging.getLogger(__name__)

SINGLE_PACKET_PROGRAMS = {
    ClientType.NUTRITION_ONLY: [PacketType.NUTRITION],
    ClientType.WORKOUT_ONLY: [PacketType.WORKOUT],
    ClientType.FULL_PROGRAM: [PacketType.NUTRITION, PacketType.WORKOUT],
    ClientType.YOUTH: [PacketType.YOUTH],
}

WORKOUT_FOCUS = {"strength", "endurance", "mobility"}
NUTRITION_FOCUS = {"weight", "energy"}


def _response(responses: Dict[str, Any], key: str) -> Any:
    """Intake answers arrive with either snake_case or hyphenated keys."""
    if key in responses:
        return responses[key]
    return responses.get(key.replace("_", "-"))


def determine_required_packets(
    client_type: Optional[str], responses: Optional[Dict[str, Any]] = None
) -> List[PacketType]:
    """
    Packet types a client should receive for their program.

    Unknown or missing client types get the intro packet only.
    """
    responses = responses if isinstance(responses, dict) else {}
    try:
        program = ClientType(client_type)
    except ValueError:
        return [PacketType.INTRO]

    if program in SINGLE_PACKET_PROGRAMS:
        return list(SINGLE_PACKET_PROGRAMS[program])

    packets: List[PacketType] = []
    if program == ClientType.ATHLETE_PERFORMANCE:
        packets.append(PacketType.PERFORMANCE)
        if str(_response(responses, "include_nutrition") or "").lower() == "yes":
            packets.append(PacketType.NUTRITION)

    elif program == ClientType.GENERAL_WELLNESS:
        packets.append(PacketType.WELLNESS)
        focus = _response(responses, "wellness_focus")
        focus = {str(f).lower() for f in focus} if isinstance(focus, list) else set()
        if focus & WORKOUT_FOCUS:
            packets.append(PacketType.WORKOUT)
        if focus & NUTRITION_FOCUS:
            packets.append(PacketType.NUTRITION)

    elif program == ClientType.SPECIAL_SITUATION:
        packets.append(PacketType.RECOVERY)
        goals = _response(responses, "recovery_goals")
        if isinstance(goals, str) and "nutrition" in goals.lower():
            packets.append(PacketType.NUTRITION)

    return packets or [PacketType.INTRO]


class PacketRoutingService:

    def __init__(self, store: PacketStore, worker=None):
        self.store = store
        self.worker = worker

    def route_packets_for_client(self, client_id: str) -> RoutedPackets:
        """
        Create the PENDING packets a client's completed intake calls for.

        Types the client already holds a current packet for are skipped, so
        repeating the trigger does not queue duplicates. Changing an existing
        packet goes through regeneration instead.

        Raises:
            PacketNotFoundError: unknown client
        """
        client = self.store.get_client(client_id)
        if client is None:
            raise PacketNotFoundError(f"Client {client_id} not found")

        packet_types = determine_required_packets(client.client_type, client.intake_responses)
        existing = {p.type for p in self.store.get_current_packets(client_id)}

        routed = RoutedPackets(client_id=client_id, client_type=client.client_type, packet_types=packet_types)
        for packet_type in packet_types:
            if packet_type in existing:
                routed.skipped_types.append(packet_type)
                continue
            packet = self.store.create_packet(client_id, packet_type)
            routed.packet_ids.append(packet.id)
            if self.worker is not None:
                self.worker.enqueue(packet.id)

        logger.info(
            f"Routed intake for client {client_id} (type={client.client_type}): "
            f"created={len(routed.packet_ids)}, skipped={[t.value for t in routed.skipped_types]}"
        )
        return routed
