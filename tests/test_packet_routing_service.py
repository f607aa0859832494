"""
Unit tests for packet routing after intake completion
"""
from unittest.mock import MagicMock

import pytest

from app.models.packet import PacketStatus, PacketType
from app.services.packet_routing_service import PacketRoutingService, determine_required_packets
from app.services.packet_store import PacketNotFoundError


class TestDetermineRequiredPackets:

    @pytest.mark.parametrize("client_type, expected", [
        ("NUTRITION_ONLY", [PacketType.NUTRITION]),
        ("WORKOUT_ONLY", [PacketType.WORKOUT]),
        ("FULL_PROGRAM", [PacketType.NUTRITION, PacketType.WORKOUT]),
        ("YOUTH", [PacketType.YOUTH]),
        ("ATHLETE_PERFORMANCE", [PacketType.PERFORMANCE]),
        ("GENERAL_WELLNESS", [PacketType.WELLNESS]),
        ("SPECIAL_SITUATION", [PacketType.RECOVERY]),
        ("SOMETHING_ELSE", [PacketType.INTRO]),
        (None, [PacketType.INTRO]),
    ])
    def test_by_client_type(self, client_type, expected):
        assert determine_required_packets(client_type, {}) == expected

    def test_athlete_with_nutrition(self):
        assert determine_required_packets("ATHLETE_PERFORMANCE", {"include-nutrition": "yes"}) == [
            PacketType.PERFORMANCE, PacketType.NUTRITION,
        ]
        assert determine_required_packets("ATHLETE_PERFORMANCE", {"include_nutrition": "no"}) == [
            PacketType.PERFORMANCE,
        ]

    @pytest.mark.parametrize("focus, expected", [
        (["strength"], [PacketType.WELLNESS, PacketType.WORKOUT]),
        (["mobility", "sleep"], [PacketType.WELLNESS, PacketType.WORKOUT]),
        (["energy"], [PacketType.WELLNESS, PacketType.NUTRITION]),
        (["endurance", "weight"], [PacketType.WELLNESS, PacketType.WORKOUT, PacketType.NUTRITION]),
        (["stress"], [PacketType.WELLNESS]),
        ("strength", [PacketType.WELLNESS]),
    ])
    def test_wellness_focus(self, focus, expected):
        assert determine_required_packets("GENERAL_WELLNESS", {"wellness-focus": focus}) == expected

    def test_recovery_goals_mentioning_nutrition(self):
        responses = {"recovery_goals": "Heal the knee and fix my Nutrition"}
        assert determine_required_packets("SPECIAL_SITUATION", responses) == [
            PacketType.RECOVERY, PacketType.NUTRITION,
        ]
        assert determine_required_packets("SPECIAL_SITUATION", {"recovery-goals": ["nutrition"]}) == [
            PacketType.RECOVERY,
        ]

    def test_malformed_responses_are_ignored(self):
        assert determine_required_packets("ATHLETE_PERFORMANCE", ["yes"]) == [PacketType.PERFORMANCE]


class TestRoutePacketsForClient:

    @pytest.fixture
    def full_program_client(self, store, client_record):
        return store.add_client(client_record.model_copy(update={"client_type": "FULL_PROGRAM"}))

    def test_creates_pending_packets_and_wakes_worker(self, store, full_program_client):
        worker = MagicMock()
        routing = PacketRoutingService(store, worker)

        routed = routing.route_packets_for_client(full_program_client.id)

        assert routed.packet_types == [PacketType.NUTRITION, PacketType.WORKOUT]
        assert len(routed.packet_ids) == 2
        packets = [store.get_packet(pid) for pid in routed.packet_ids]
        assert [p.type for p in packets] == [PacketType.NUTRITION, PacketType.WORKOUT]
        assert all(p.status == PacketStatus.PENDING and p.version == 1 for p in packets)
        assert worker.enqueue.call_count == 2

    def test_repeated_trigger_does_not_duplicate(self, store, full_program_client):
        routing = PacketRoutingService(store)
        routing.route_packets_for_client(full_program_client.id)

        again = routing.route_packets_for_client(full_program_client.id)

        assert again.packet_ids == []
        assert again.skipped_types == [PacketType.NUTRITION, PacketType.WORKOUT]
        assert len(store.list_packets_for_client(full_program_client.id)) == 2

    def test_only_missing_types_are_created(self, store, full_program_client):
        store.create_packet(full_program_client.id, PacketType.NUTRITION)

        routed = PacketRoutingService(store).route_packets_for_client(full_program_client.id)

        assert routed.skipped_types == [PacketType.NUTRITION]
        assert [store.get_packet(pid).type for pid in routed.packet_ids] == [PacketType.WORKOUT]

    def test_unknown_client(self, store):
        with pytest.raises(PacketNotFoundError):
            PacketRoutingService(store).route_packets_for_client("missing")

    def test_routed_packets_are_generated_by_worker(self, pipeline, store, populator, full_program_client):
        pipeline.routing.route_packets_for_client(full_program_client.id)

        stats = pipeline.worker.run_once()

        assert stats["succeeded"] == 2
        assert sorted(populator.calls) == ["NUTRITION", "WORKOUT"]
