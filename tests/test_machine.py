import asyncio
import json

import pytest

from fakes import FakeCapture, FakeTransport, seeded_addresses
from nexzi.errors import (
    InvalidPayload,
    MediaCaptureError,
    NegotiationFailed,
    NotInitialized,
    PermissionDenied,
    SessionBusy,
)
from nexzi.negotiation.machine import BUSY_MESSAGE, BusyPolicy, NegotiationStateMachine, Phase, Role
from nexzi.negotiation.payload import decode_description
from nexzi.rtc.webrtc import ICECandidate, SessionDescription
from nexzi.signaling.channel import InMemorySignalingChannel
from nexzi.signaling.messages import Answer, Busy, Candidate, Disconnect, Offer

REMOTE = "555666777"
OTHER = "222333444"


def make_machine(channel=None, transport=None, capture=None, seed=1, **kwargs):
    return NegotiationStateMachine(
        channel if channel is not None else InMemorySignalingChannel(),
        transport if transport is not None else FakeTransport(),
        capture if capture is not None else FakeCapture(),
        addresses=seeded_addresses(seed),
        **kwargs,
    )


def remote_offer(target: str, sender: str = REMOTE) -> Offer:
    sdp = json.dumps({"kind": "offer", "sends": [], "candidates": []})
    return Offer(target=target, sender=sender, offer=SessionDescription(type="offer", sdp=sdp))


def remote_answer(target: str, sender: str = REMOTE, sends=("video", "audio")) -> Answer:
    sdp = json.dumps({"kind": "answer", "sends": list(sends), "candidates": []})
    return Answer(target=target, sender=sender, answer=SessionDescription(type="answer", sdp=sdp))


def remote_candidate(target: str, value: str, sender: str = REMOTE) -> Candidate:
    return Candidate(target=target, sender=sender, candidate=ICECandidate(candidate=value, sdp_mid="0", sdp_mline_index=0))


def summary(messages):
    return [(message.type, message.target) for message in messages]


def test_connect_publishes_offer_before_queued_candidates() -> None:
    async def scenario():
        channel = InMemorySignalingChannel()
        transport = FakeTransport()
        machine = make_machine(channel, transport)
        await machine.connect_to_remote(REMOTE)
        return machine, channel, transport

    machine, channel, transport = asyncio.run(scenario())

    assert machine.phase is Phase.AWAITING_ANSWER
    assert machine.role is Role.VIEWER
    assert [message.type for message in channel.published] == ["offer", "candidate", "candidate"]
    assert all(message.target == REMOTE for message in channel.published)
    assert all(message.sender == machine.local_address for message in channel.published)
    candidates = [message.candidate.candidate for message in channel.published[1:]]
    assert candidates == [candidate.candidate for candidate in transport.last.gathered]
    assert transport.last.transceivers == [("video", "recvonly"), ("audio", "recvonly")]


def test_connect_rejects_invalid_and_own_address() -> None:
    async def scenario():
        machine = make_machine()
        with pytest.raises(InvalidPayload):
            await machine.connect_to_remote("12ab")
        with pytest.raises(InvalidPayload) as excinfo:
            await machine.connect_to_remote(machine.local_address)
        return machine, excinfo.value

    machine, error = asyncio.run(scenario())

    assert machine.phase is Phase.IDLE
    assert error.user_message == "You cannot connect to your own address."


def test_connect_accepts_grouped_address() -> None:
    async def scenario():
        channel = InMemorySignalingChannel()
        machine = make_machine(channel)
        await machine.connect_to_remote("555 666 777")
        return channel

    channel = asyncio.run(scenario())

    assert channel.published[0].target == REMOTE


def test_connect_while_active_raises_session_busy() -> None:
    async def scenario():
        machine = make_machine()
        await machine.connect_to_remote(REMOTE)
        with pytest.raises(SessionBusy):
            await machine.connect_to_remote(OTHER)
        return machine

    machine = asyncio.run(scenario())

    assert machine.phase is Phase.AWAITING_ANSWER
    assert machine.peer.remote_address == REMOTE


def test_incoming_offer_waits_for_user() -> None:
    async def scenario():
        capture = FakeCapture()
        machine = make_machine(capture=capture)
        await machine.handle_message(remote_offer(machine.local_address))
        return machine, capture

    machine, capture = asyncio.run(scenario())

    assert machine.phase is Phase.AWAITING_USER_ACCEPT
    assert machine.role is Role.SHARER
    assert machine.peer.remote_address == REMOTE
    assert capture.calls == 0


def test_messages_for_other_addresses_are_ignored() -> None:
    async def scenario():
        channel = InMemorySignalingChannel()
        machine = make_machine(channel)
        await machine.handle_message(remote_offer("123123123"))
        await machine.handle_message(Disconnect(target="123123123"))
        return machine, channel

    machine, channel = asyncio.run(scenario())

    assert machine.phase is Phase.IDLE
    assert machine.peer is None
    assert channel.published == []


def test_accept_call_answers_and_connects() -> None:
    async def scenario():
        channel = InMemorySignalingChannel()
        transport = FakeTransport()
        capture = FakeCapture()
        machine = make_machine(channel, transport, capture)
        await machine.handle_message(remote_offer(machine.local_address))
        await machine.accept_call()
        return machine, channel, transport, capture

    machine, channel, transport, capture = asyncio.run(scenario())

    assert machine.phase is Phase.CONNECTED
    assert [message.type for message in channel.published] == ["answer", "candidate", "candidate"]
    assert channel.published[0].target == REMOTE
    assert capture.calls == 1
    assert [track.kind for track in transport.last.tracks] == ["video", "audio"]
    assert machine.peer.local_stream is capture.streams[0]


def test_remote_candidates_are_buffered_until_answer() -> None:
    async def scenario():
        transport = FakeTransport()
        machine = make_machine(transport=transport)
        await machine.connect_to_remote(REMOTE)
        address = machine.local_address
        await machine.handle_message(remote_candidate(address, "candidate:first"))
        await machine.handle_message(remote_candidate(address, "candidate:second"))
        before = list(transport.last.applied_candidates)
        await machine.handle_message(remote_answer(address))
        await machine.handle_message(remote_candidate(address, "candidate:third"))
        await machine.drain()
        return machine, transport, before

    machine, transport, before = asyncio.run(scenario())

    assert before == []
    applied = [candidate.candidate for candidate in transport.last.applied_candidates]
    assert applied == ["candidate:first", "candidate:second", "candidate:third"]
    assert machine.phase is Phase.CONNECTED


def test_unusable_remote_candidate_is_skipped() -> None:
    async def scenario():
        transport = FakeTransport()
        machine = make_machine(transport=transport)
        await machine.handle_message(remote_offer(machine.local_address))
        await machine.handle_message(remote_candidate(machine.local_address, "bad"))
        await machine.handle_message(remote_candidate(machine.local_address, "candidate:good"))
        return machine, transport

    machine, transport = asyncio.run(scenario())

    assert machine.phase is Phase.AWAITING_USER_ACCEPT
    assert [candidate.candidate for candidate in transport.last.applied_candidates] == ["candidate:good"]


def test_candidates_from_unknown_sender_are_dropped() -> None:
    async def scenario():
        transport = FakeTransport()
        machine = make_machine(transport=transport)
        await machine.handle_message(remote_offer(machine.local_address))
        await machine.handle_message(remote_candidate(machine.local_address, "candidate:x", sender=OTHER))
        return transport

    transport = asyncio.run(scenario())

    assert transport.last.applied_candidates == []


def test_viewer_connects_once_media_arrives() -> None:
    async def scenario():
        machine = make_machine()
        await machine.connect_to_remote(REMOTE)
        await machine.handle_message(remote_answer(machine.local_address))
        await machine.drain()
        return machine

    machine = asyncio.run(scenario())

    assert machine.phase is Phase.CONNECTED
    assert [track.kind for track in machine.peer.remote_tracks] == ["video", "audio"]
    assert machine.peer.remote_stream is not None


def test_answer_from_wrong_sender_is_dropped() -> None:
    async def scenario():
        transport = FakeTransport()
        machine = make_machine(transport=transport)
        await machine.connect_to_remote(REMOTE)
        await machine.handle_message(remote_answer(machine.local_address, sender=OTHER))
        await machine.drain()
        return machine, transport

    machine, transport = asyncio.run(scenario())

    assert machine.phase is Phase.AWAITING_ANSWER
    assert transport.last.remote is None


def test_end_session_is_idempotent() -> None:
    async def scenario():
        channel = InMemorySignalingChannel()
        transport = FakeTransport()
        machine = make_machine(channel, transport)
        await machine.connect_to_remote(REMOTE)
        await machine.handle_message(remote_answer(machine.local_address))
        await machine.drain()
        first_address = machine.local_address

        await machine.end_session()
        after_first = (machine.local_address, len(channel.published))
        await machine.end_session()
        after_second = (machine.local_address, len(channel.published))
        return machine, channel, transport, first_address, after_first, after_second

    machine, channel, transport, first_address, after_first, after_second = asyncio.run(scenario())

    assert machine.phase is Phase.IDLE
    assert machine.peer is None
    assert transport.last.closed is True
    assert after_first[0] != first_address
    assert summary(channel.published[-1:]) == [("disconnect", REMOTE)]
    assert after_second == after_first


def test_remote_disconnect_releases_local_media() -> None:
    async def scenario():
        channel = InMemorySignalingChannel()
        capture = FakeCapture()
        machine = make_machine(channel, capture=capture)
        await machine.handle_message(remote_offer(machine.local_address))
        await machine.accept_call()
        published = len(channel.published)
        address = machine.local_address
        await machine.handle_message(Disconnect(target=address))
        return machine, channel, capture, published, address

    machine, channel, capture, published, address = asyncio.run(scenario())

    assert machine.phase is Phase.IDLE
    assert machine.local_address != address
    assert len(channel.published) == published
    assert all(track.stopped for track in capture.streams[0].tracks)


def test_reject_call_then_connect_again() -> None:
    async def scenario():
        channel = InMemorySignalingChannel()
        machine = make_machine(channel)
        address = machine.local_address
        await machine.handle_message(remote_offer(address))
        await machine.reject_call()
        after_reject = machine.phase, machine.local_address, list(channel.published)
        await machine.connect_to_remote(OTHER)
        return machine, address, after_reject

    machine, address, (phase, new_address, published) = asyncio.run(scenario())

    assert phase is Phase.IDLE
    assert new_address != address
    assert summary(published) == [("disconnect", REMOTE)]
    assert published[0].sender == address
    assert machine.phase is Phase.AWAITING_ANSWER
    assert machine.peer.remote_address == OTHER


def test_reject_call_without_incoming_call_is_noop() -> None:
    async def scenario():
        channel = InMemorySignalingChannel()
        machine = make_machine(channel)
        address = machine.local_address
        await machine.reject_call()
        return machine, channel, address

    machine, channel, address = asyncio.run(scenario())

    assert machine.phase is Phase.IDLE
    assert machine.local_address == address
    assert channel.published == []


def test_accept_call_without_incoming_call_raises() -> None:
    async def scenario():
        machine = make_machine()
        with pytest.raises(NotInitialized):
            await machine.accept_call()
        await machine.connect_to_remote(REMOTE)
        with pytest.raises(NotInitialized):
            await machine.accept_call()
        return machine

    machine = asyncio.run(scenario())

    assert machine.phase is Phase.AWAITING_ANSWER


def test_busy_policy_reject_answers_with_busy() -> None:
    async def scenario():
        channel = InMemorySignalingChannel()
        machine = make_machine(channel)
        address = machine.local_address
        await machine.handle_message(remote_offer(address))
        await machine.handle_message(remote_offer(address, sender=OTHER))
        return machine, channel, address

    machine, channel, address = asyncio.run(scenario())

    assert channel.published == [Busy(target=OTHER, sender=address)]
    assert machine.phase is Phase.AWAITING_USER_ACCEPT
    assert machine.peer.remote_address == REMOTE


def test_busy_policy_replace_swaps_the_session() -> None:
    async def scenario():
        channel = InMemorySignalingChannel()
        transport = FakeTransport()
        machine = make_machine(channel, transport, busy_policy=BusyPolicy.REPLACE)
        address = machine.local_address
        await machine.handle_message(remote_offer(address))
        await machine.handle_message(remote_offer(address, sender=OTHER))
        return machine, channel, transport, address

    machine, channel, transport, address = asyncio.run(scenario())

    assert summary(channel.published) == [("disconnect", REMOTE)]
    assert machine.phase is Phase.AWAITING_USER_ACCEPT
    assert machine.peer.remote_address == OTHER
    assert machine.local_address == address
    assert transport.connections[0].closed is True
    assert len(transport.connections) == 2


def test_repeated_offer_from_current_peer_is_dropped() -> None:
    async def scenario():
        channel = InMemorySignalingChannel()
        transport = FakeTransport()
        machine = make_machine(channel, transport)
        await machine.handle_message(remote_offer(machine.local_address))
        await machine.handle_message(remote_offer(machine.local_address))
        return machine, channel, transport

    machine, channel, transport = asyncio.run(scenario())

    assert channel.published == []
    assert len(transport.connections) == 1
    assert machine.phase is Phase.AWAITING_USER_ACCEPT


def test_busy_reply_ends_the_attempt() -> None:
    async def scenario():
        channel = InMemorySignalingChannel()
        machine = make_machine(channel)
        await machine.connect_to_remote(REMOTE)
        address = machine.local_address
        published = len(channel.published)
        await machine.handle_message(Busy(target=address, sender=REMOTE))
        return machine, channel, address, published

    machine, channel, address, published = asyncio.run(scenario())

    assert machine.phase is Phase.IDLE
    assert machine.last_error == BUSY_MESSAGE
    assert machine.local_address != address
    assert len(channel.published) == published


def test_permission_denied_rejects_the_call() -> None:
    async def scenario():
        channel = InMemorySignalingChannel()
        machine = make_machine(channel, capture=FakeCapture(error=PermissionError("denied")))
        await machine.handle_message(remote_offer(machine.local_address))
        with pytest.raises(PermissionDenied):
            await machine.accept_call()
        return machine, channel

    machine, channel = asyncio.run(scenario())

    assert machine.phase is Phase.IDLE
    assert machine.last_error == "Permission to share screen was denied."
    assert summary(channel.published) == [("disconnect", REMOTE)]


def test_capture_failure_has_its_own_message() -> None:
    async def scenario():
        channel = InMemorySignalingChannel()
        machine = make_machine(channel, capture=FakeCapture(error=RuntimeError("no display")))
        await machine.handle_message(remote_offer(machine.local_address))
        with pytest.raises(MediaCaptureError):
            await machine.accept_call()
        return machine, channel

    machine, channel = asyncio.run(scenario())

    assert machine.phase is Phase.IDLE
    assert machine.last_error == "Failed to start screen sharing."
    assert summary(channel.published) == [("disconnect", REMOTE)]


def test_disconnect_during_capture_discards_the_result() -> None:
    async def scenario():
        channel = InMemorySignalingChannel()
        gate = asyncio.Event()
        capture = FakeCapture(gate=gate)
        machine = make_machine(channel, capture=capture)
        address = machine.local_address
        await machine.handle_message(remote_offer(address))
        accepting = asyncio.create_task(machine.accept_call())
        while capture.calls == 0:
            await asyncio.sleep(0)

        await machine.handle_message(Disconnect(target=address))
        gate.set()
        await accepting
        await asyncio.sleep(0)
        return machine, channel, capture

    machine, channel, capture = asyncio.run(scenario())

    assert machine.phase is Phase.IDLE
    assert capture.streams == []
    assert channel.published == []


def test_end_session_during_offer_creation_discards_the_offer() -> None:
    async def scenario():
        channel = InMemorySignalingChannel()
        gate = asyncio.Event()
        machine = make_machine(channel, FakeTransport(create_gate=gate))
        connecting = asyncio.create_task(machine.connect_to_remote(REMOTE))
        while machine.phase is not Phase.CREATING_OFFER:
            await asyncio.sleep(0)
        await asyncio.sleep(0)

        await machine.end_session()
        gate.set()
        await connecting
        return machine, channel

    machine, channel = asyncio.run(scenario())

    assert machine.phase is Phase.IDLE
    assert [message.type for message in channel.published] == ["disconnect"]


def test_gathering_timeout_fails_negotiation() -> None:
    async def scenario():
        machine = make_machine(transport=FakeTransport(complete_gathering=False), gathering_timeout=0.1)
        address = machine.local_address
        with pytest.raises(NegotiationFailed):
            await machine.create_offer()
        return machine, address

    machine, address = asyncio.run(scenario())

    assert machine.phase is Phase.IDLE
    assert machine.last_error == "Failed to negotiate the connection."
    assert machine.local_address != address


def test_transport_failure_tears_down() -> None:
    async def scenario():
        channel = InMemorySignalingChannel()
        transport = FakeTransport()
        machine = make_machine(channel, transport)
        await machine.connect_to_remote(REMOTE)
        await machine.handle_message(remote_answer(machine.local_address))
        await machine.drain()
        transport.last.fail()
        await machine.drain()
        return machine, channel

    machine, channel = asyncio.run(scenario())

    assert machine.phase is Phase.IDLE
    assert machine.last_error == "The connection to the remote device was lost."
    assert summary(channel.published[-1:]) == [("disconnect", REMOTE)]


def test_capture_ended_by_user_ends_session() -> None:
    async def scenario():
        channel = InMemorySignalingChannel()
        capture = FakeCapture()
        machine = make_machine(channel, capture=capture)
        await machine.handle_message(remote_offer(machine.local_address))
        await machine.accept_call()
        capture.streams[0].notify_ended()
        await machine.drain()
        return machine, channel

    machine, channel = asyncio.run(scenario())

    assert machine.phase is Phase.IDLE
    assert machine.last_error is None
    assert summary(channel.published[-1:]) == [("disconnect", REMOTE)]


def test_manual_exchange_connects_without_candidate_messages() -> None:
    async def scenario():
        viewer_channel = InMemorySignalingChannel()
        sharer_channel = InMemorySignalingChannel()
        viewer = make_machine(viewer_channel, seed=1)
        sharer = make_machine(sharer_channel, seed=2)

        offer_code = await viewer.create_offer()
        answer_code = await sharer.create_answer(offer_code)
        await viewer.accept_answer(answer_code)
        await viewer.drain()
        return viewer, sharer, viewer_channel, sharer_channel, offer_code

    viewer, sharer, viewer_channel, sharer_channel, offer_code = asyncio.run(scenario())

    assert viewer.phase is Phase.CONNECTED
    assert sharer.phase is Phase.CONNECTED
    assert viewer_channel.published == []
    assert sharer_channel.published == []
    embedded = json.loads(decode_description(offer_code, expected_type="offer").sdp)
    assert len(embedded["candidates"]) == 2
    assert [track.kind for track in viewer.peer.remote_tracks] == ["video", "audio"]


def test_accept_answer_requires_pending_offer() -> None:
    async def scenario():
        machine = make_machine()
        with pytest.raises(NotInitialized):
            await machine.accept_answer("anything")
        return machine

    machine = asyncio.run(scenario())

    assert machine.phase is Phase.IDLE


def test_accept_answer_rejects_an_offer_code() -> None:
    async def scenario():
        machine = make_machine()
        offer_code = await machine.create_offer()
        with pytest.raises(InvalidPayload) as excinfo:
            await machine.accept_answer(offer_code)
        return machine, excinfo.value

    machine, error = asyncio.run(scenario())

    assert error.user_message == "This is not an answer code."
    assert machine.phase is Phase.IDLE
    assert machine.last_error == "This is not an answer code."


def test_create_answer_rejects_garbage() -> None:
    async def scenario():
        transport = FakeTransport()
        machine = make_machine(transport=transport)
        with pytest.raises(InvalidPayload):
            await machine.create_answer("not a code")
        return machine, transport

    machine, transport = asyncio.run(scenario())

    assert machine.phase is Phase.IDLE
    assert transport.connections == []


def test_observers_see_every_transition() -> None:
    async def scenario():
        machine = make_machine()
        phases = []
        token = machine.subscribe(lambda m: phases.append(m.phase))
        await machine.connect_to_remote(REMOTE)
        machine.unsubscribe(token)
        await machine.end_session()
        return phases

    phases = asyncio.run(scenario())

    assert phases == [Phase.CREATING_OFFER, Phase.AWAITING_ANSWER]


def test_disconnect_from_another_caller_keeps_the_session() -> None:
    async def scenario():
        channel = InMemorySignalingChannel()
        machine = make_machine(channel)
        await machine.handle_message(remote_offer(machine.local_address))
        await machine.accept_call()
        address = machine.local_address
        await machine.handle_message(Disconnect(target=address, sender=OTHER))
        kept = machine.phase, machine.local_address
        await machine.handle_message(Disconnect(target=address, sender=REMOTE))
        return address, kept, machine.phase

    address, kept, phase = asyncio.run(scenario())

    assert kept == (Phase.CONNECTED, address)
    assert phase is Phase.IDLE
