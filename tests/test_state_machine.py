"""Pure transition tests for the peer session state machine."""

from dataclasses import replace

from excavator_teleop.core import ChannelState, Role, StreamInfo, TrackInfo
from excavator_teleop.session import SessionSnapshot, SessionState, events as ev, transition
from excavator_teleop.session.state import (
    AnswerMediaCall,
    CancelMediaRetry,
    ClearLatestFrame,
    CloseDataChannel,
    CloseMedia,
    OpenDataChannel,
    RegisterIdentity,
    ReleaseIdentity,
    SendGreeting,
    StartMediaCall,
    UpdateStatus,
)

PLAYABLE = StreamInfo(tracks=(TrackInfo("video", 640, 480),))


def run(snapshot, *events):
    effects = []
    for event in events:
        result = transition(snapshot, event)
        snapshot = result.snapshot
        effects.extend(result.effects)
    return snapshot, effects


def open_operator():
    snapshot, _ = run(
        SessionSnapshot(role=Role.OPERATOR),
        ev.StartRequested("42"),
        ev.Registered("operator42"),
        ev.DataChannelRequested("ch1"),
        ev.DataChannelOpened("ch1", "machine42"),
    )
    return snapshot


def open_machine():
    snapshot, _ = run(
        SessionSnapshot(role=Role.MACHINE),
        ev.StartRequested("42"),
        ev.Registered("machine42"),
        ev.DataChannelOpened("c1", "operator42"),
    )
    return snapshot


def test_start_registers_role_identity():
    result = transition(SessionSnapshot(role=Role.OPERATOR), ev.StartRequested("42"))

    assert result.state is SessionState.CONNECTING
    assert RegisterIdentity("operator42") in result.effects
    assert result.snapshot.identity_held is True


def test_operator_opens_channel_once_registered():
    snapshot, effects = run(
        SessionSnapshot(role=Role.OPERATOR),
        ev.StartRequested("42"),
        ev.Registered("operator42"),
    )

    assert snapshot.state is SessionState.AWAITING_PEER
    assert OpenDataChannel("machine42") in effects


def test_machine_waits_for_operator_after_registration():
    snapshot, effects = run(
        SessionSnapshot(role=Role.MACHINE),
        ev.StartRequested("42"),
        ev.Registered("machine42"),
    )

    assert snapshot.state is SessionState.AWAITING_PEER
    assert not any(isinstance(effect, OpenDataChannel) for effect in effects)
    assert UpdateStatus(data=ChannelState.DISCONNECTED) in effects


def test_operator_greets_on_open():
    snapshot, effects = run(
        SessionSnapshot(role=Role.OPERATOR),
        ev.StartRequested("42"),
        ev.Registered("operator42"),
        ev.DataChannelRequested("ch1"),
        ev.DataChannelOpened("ch1", "machine42"),
    )

    assert snapshot.state is SessionState.DATA_OPEN
    assert SendGreeting("ch1") in effects
    assert UpdateStatus(data=ChannelState.CONNECTED) in effects


def test_machine_starts_media_on_open():
    snapshot, effects = run(
        SessionSnapshot(role=Role.MACHINE),
        ev.StartRequested("42"),
        ev.Registered("machine42"),
        ev.DataChannelOpened("c1", "operator42"),
    )

    assert snapshot.state is SessionState.DATA_OPEN
    assert StartMediaCall("operator42") in effects


def test_channel_from_unexpected_peer_is_rejected():
    snapshot, _ = run(
        SessionSnapshot(role=Role.MACHINE),
        ev.StartRequested("42"),
        ev.Registered("machine42"),
    )

    result = transition(snapshot, ev.DataChannelOpened("c9", "operator7"))

    assert result.state is SessionState.AWAITING_PEER
    assert result.effects == (CloseDataChannel("c9"),)


def test_new_channel_from_same_peer_supersedes_old_one():
    snapshot = replace(
        open_machine(), state=SessionState.MEDIA_OPEN, media_call="call1"
    )

    result = transition(snapshot, ev.DataChannelOpened("c2", "operator42"))

    assert result.state is SessionState.DATA_OPEN
    assert result.snapshot.data_channel == "c2"
    assert result.snapshot.media_call is None
    assert CloseMedia("call1") in result.effects
    assert CloseDataChannel("c1") in result.effects
    assert StartMediaCall("operator42") in result.effects


def test_inbound_call_is_answered_then_validated():
    snapshot, effects = run(
        open_operator(),
        ev.MediaCallIncoming("call1", "machine42", PLAYABLE),
    )
    assert snapshot.state is SessionState.MEDIA_NEGOTIATING
    assert AnswerMediaCall("call1", PLAYABLE) in effects

    result = transition(snapshot, ev.MediaAccepted("call1", PLAYABLE))
    assert result.state is SessionState.MEDIA_OPEN
    assert UpdateStatus(media=ChannelState.CONNECTED) in result.effects


def test_duplicate_call_is_rejected_without_touching_active_call():
    snapshot, _ = run(
        open_operator(),
        ev.MediaCallIncoming("call1", "machine42", PLAYABLE),
        ev.MediaAccepted("call1", PLAYABLE),
    )

    result = transition(snapshot, ev.MediaCallIncoming("call2", "machine42", PLAYABLE))

    assert result.state is SessionState.MEDIA_OPEN
    assert result.snapshot.media_call == "call1"
    assert result.effects == (CloseMedia("call2"),)


def test_zero_sized_stream_fails_negotiation():
    blank = StreamInfo(tracks=(TrackInfo("video", 0, 0),))
    snapshot, _ = run(open_operator(), ev.MediaCallIncoming("call1", "machine42", blank))

    result = transition(snapshot, ev.MediaAccepted("call1", blank))

    assert result.state is SessionState.DATA_OPEN
    assert result.snapshot.media_call is None
    assert result.snapshot.data_channel == "ch1"
    assert result.snapshot.detail == "stream reported zero frame size"
    assert result.effects == (
        CancelMediaRetry(),
        CloseMedia("call1"),
        UpdateStatus(media=ChannelState.ERROR),
    )


def test_stream_without_video_track_fails_negotiation():
    audio_only = StreamInfo(tracks=(TrackInfo("audio"),))
    snapshot, _ = run(
        open_operator(), ev.MediaCallIncoming("call1", "machine42", audio_only)
    )

    result = transition(snapshot, ev.MediaAccepted("call1", audio_only))

    assert result.state is SessionState.DATA_OPEN
    assert result.snapshot.detail == "stream has no video track"


def test_machine_media_opens_when_call_is_answered():
    snapshot, effects = run(
        open_machine(), ev.MediaCallPlaced("call1"), ev.MediaAnswered("call1")
    )

    assert snapshot.state is SessionState.MEDIA_OPEN
    assert UpdateStatus(media=ChannelState.CONNECTING) in effects
    assert UpdateStatus(media=ChannelState.CONNECTED) in effects


def test_clean_media_close_falls_back_to_data_open():
    snapshot, _ = run(
        open_machine(), ev.MediaCallPlaced("call1"), ev.MediaAnswered("call1")
    )

    result = transition(snapshot, ev.MediaClosed("call1"))

    assert result.state is SessionState.DATA_OPEN
    assert result.effects == (UpdateStatus(media=ChannelState.DISCONNECTED),)


def test_media_error_keeps_the_data_channel():
    snapshot, _ = run(
        open_machine(), ev.MediaCallPlaced("call1"), ev.MediaAnswered("call1")
    )

    result = transition(snapshot, ev.MediaError("call1", "ice failed"))

    assert result.state is SessionState.DATA_OPEN
    assert result.snapshot.data_channel == "c1"
    assert result.snapshot.remote == "operator42"
    assert not any(isinstance(effect, CloseDataChannel) for effect in result.effects)
    assert ClearLatestFrame() not in result.effects
    assert UpdateStatus(media=ChannelState.ERROR) in result.effects

    # A later call can still be placed on the surviving channel.
    again = transition(result.snapshot, ev.MediaCallPlaced("call2"))
    assert again.state is SessionState.MEDIA_NEGOTIATING


def test_stalled_video_reports_connecting_and_recovers():
    snapshot, _ = run(
        open_operator(),
        ev.MediaCallIncoming("call1", "machine42", PLAYABLE),
        ev.MediaAccepted("call1", PLAYABLE),
    )

    stalled = transition(snapshot, ev.MediaStalled("call1"))
    assert stalled.state is SessionState.MEDIA_OPEN
    assert stalled.effects == (UpdateStatus(media=ChannelState.CONNECTING),)
    assert stalled.snapshot.detail == "video stalled"

    resumed = transition(stalled.snapshot, ev.MediaResumed("call1"))
    assert resumed.state is SessionState.MEDIA_OPEN
    assert resumed.effects == (UpdateStatus(media=ChannelState.CONNECTED),)
    assert resumed.snapshot.detail is None


def test_stall_for_another_call_is_ignored():
    snapshot, _ = run(
        open_operator(),
        ev.MediaCallIncoming("call1", "machine42", PLAYABLE),
        ev.MediaAccepted("call1", PLAYABLE),
    )

    result = transition(snapshot, ev.MediaStalled("call9"))

    assert result.snapshot == snapshot
    assert result.effects == ()


def test_media_source_exhaustion_marks_media_error_only():
    result = transition(open_machine(), ev.MediaSourceUnavailable(30))

    assert result.state is SessionState.DATA_OPEN
    assert result.snapshot.data_channel == "c1"
    assert result.effects == (UpdateStatus(media=ChannelState.ERROR),)


def test_machine_returns_to_awaiting_peer_on_clean_close():
    snapshot = replace(open_machine(), state=SessionState.MEDIA_OPEN, media_call="call1")

    result = transition(snapshot, ev.DataChannelClosed("c1"))

    assert result.state is SessionState.AWAITING_PEER
    assert result.snapshot.identity_held is True
    assert CloseMedia("call1") in result.effects
    assert ClearLatestFrame() in result.effects
    assert not any(isinstance(effect, ReleaseIdentity) for effect in result.effects)


def test_operator_treats_data_close_as_error():
    result = transition(open_operator(), ev.DataChannelClosed("ch1"))

    assert result.state is SessionState.ERROR
    assert UpdateStatus(
        data=ChannelState.DISCONNECTED, media=ChannelState.DISCONNECTED
    ) in result.effects


def test_close_of_stale_channel_is_ignored():
    result = transition(open_machine(), ev.DataChannelClosed("old"))

    assert result.state is SessionState.DATA_OPEN
    assert result.effects == ()


def test_data_error_tears_down_dependent_media():
    snapshot = replace(open_operator(), state=SessionState.MEDIA_OPEN, media_call="call1")

    result = transition(snapshot, ev.DataChannelError("ch1", "ice failed"))

    assert result.state is SessionState.ERROR
    assert CloseMedia("call1") in result.effects
    assert CloseDataChannel("ch1") in result.effects
    assert UpdateStatus(
        data=ChannelState.ERROR, media=ChannelState.DISCONNECTED
    ) in result.effects


def test_teardown_releases_in_reverse_order():
    snapshot = replace(open_operator(), state=SessionState.MEDIA_OPEN, media_call="call1")

    result = transition(snapshot, ev.DisconnectRequested())

    kinds = [type(effect) for effect in result.effects]
    assert result.state is SessionState.CLOSED
    assert kinds.index(CloseMedia) < kinds.index(CloseDataChannel) < kinds.index(
        ReleaseIdentity
    )


def test_repeated_disconnect_releases_identity_once():
    snapshot, effects = run(
        open_operator(), ev.DisconnectRequested(), ev.DisconnectRequested()
    )

    assert snapshot.state is SessionState.CLOSED
    assert sum(isinstance(effect, ReleaseIdentity) for effect in effects) == 1


def test_disconnect_from_idle_has_nothing_to_release():
    result = transition(SessionSnapshot(role=Role.MACHINE), ev.DisconnectRequested())

    assert result.state is SessionState.CLOSED
    assert not any(isinstance(effect, ReleaseIdentity) for effect in result.effects)


def test_error_keeps_identity_until_disconnect():
    snapshot, _ = run(
        SessionSnapshot(role=Role.OPERATOR),
        ev.StartRequested("42"),
        ev.SignalingFailed("broker unreachable"),
    )
    assert snapshot.state is SessionState.ERROR
    assert snapshot.identity_held is True

    ignored = transition(snapshot, ev.StartRequested("42"))
    assert ignored.state is SessionState.ERROR
    assert ignored.effects == ()

    result = transition(snapshot, ev.DisconnectRequested())
    assert ReleaseIdentity("operator42") in result.effects


def test_closed_session_can_start_again():
    snapshot, _ = run(open_operator(), ev.DisconnectRequested())

    result = transition(snapshot, ev.StartRequested("42"))

    assert result.state is SessionState.CONNECTING
    assert result.snapshot.data_channel is None


def test_late_media_call_after_close_is_hung_up():
    snapshot, _ = run(open_machine(), ev.DisconnectRequested())

    result = transition(snapshot, ev.MediaCallPlaced("call1"))

    assert result.state is SessionState.CLOSED
    assert result.effects == (CloseMedia("call1"),)
