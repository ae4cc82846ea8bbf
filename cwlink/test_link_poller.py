"""
Tests for the receive loop: cursor handling, framing, peer inference,
reconnect/backoff, and signal sampling.

Most tests drive the poll cycle by hand: the poller's scheduler is
replaced with a recorder so each `await poller._poll()` is one cycle.
"""

import asyncio
from datetime import datetime

import pytest

from cwlink.decode_quality import Confidence
from cwlink.link_poller import (
    UNKNOWN_PEER,
    ConnectionState,
    FldigiPoller,
    PollerCallbacks,
)


class Recorder:
    def __init__(self):
        self.utterances = []
        self.metadata = []
        self.states = []

    def on_utterance(self, text, peer, metadata):
        self.utterances.append((text, peer))
        self.metadata.append(metadata)

    def on_connection_change(self, state):
        self.states.append(state)

    def callbacks(self):
        return PollerCallbacks(on_utterance=self.on_utterance,
                               on_connection_change=self.on_connection_change)


def manual_poller(config, client, recorder, **kwargs):
    """Poller whose timers are recorded instead of armed"""
    poller = FldigiPoller(config, recorder.callbacks(), client=client, **kwargs)
    poller.scheduled = []
    poller._schedule = lambda delay, action: poller.scheduled.append((delay, action.__name__))
    return poller


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def config(make_config):
    return make_config()


# ============================================================
# Connect
# ============================================================

class TestConnect:

    def test_start_syncs_cursor_to_end_of_buffer(self, config, fake_fldigi, recorder):
        fake_fldigi.rx_buffer = "OLD STUFF "

        async def scenario():
            poller = manual_poller(config, fake_fldigi, recorder)
            await poller.start()
            await poller._poll()
            return poller

        poller = asyncio.run(scenario())
        assert poller.rx_offset == 10
        assert poller.state is ConnectionState.CONNECTED
        assert recorder.states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
        assert recorder.utterances == []
        assert poller.scheduled[0] == (0.01, "_poll")

    def test_start_when_fldigi_is_down(self, config, fake_fldigi, recorder):
        fake_fldigi.fail = True

        async def scenario():
            poller = manual_poller(config, fake_fldigi, recorder)
            await poller.start()
            return poller

        poller = asyncio.run(scenario())
        assert recorder.states == [ConnectionState.CONNECTING, ConnectionState.RECONNECTING]
        assert poller.scheduled == [(1.0, "_try_connect")]
        assert poller.running

    def test_fault_on_connect_is_error_state(self, config, fake_fldigi, recorder):
        fake_fldigi.fault_methods = {"fldigi.version"}

        async def scenario():
            poller = manual_poller(config, fake_fldigi, recorder)
            await poller.start()
            return poller

        poller = asyncio.run(scenario())
        assert poller.state is ConnectionState.ERROR
        assert poller.scheduled == [(1.0, "_try_connect")]

    def test_double_start_is_ignored(self, config, fake_fldigi, recorder):
        async def scenario():
            poller = manual_poller(config, fake_fldigi, recorder)
            await poller.start()
            await poller.start()
            return poller

        asyncio.run(scenario())
        assert fake_fldigi.methods().count("fldigi.version") == 1


class TestBackoff:

    def test_doubles_to_cap_and_resets_on_success(self, config, fake_fldigi, recorder):
        fake_fldigi.fail = True

        async def scenario():
            poller = manual_poller(config, fake_fldigi, recorder)
            await poller.start()
            for _ in range(6):
                await poller._try_connect()
            delays = [delay for delay, _ in poller.scheduled]

            fake_fldigi.fail = False
            await poller._try_connect()
            reset_backoff = poller.backoff

            fake_fldigi.fail = True
            await poller._try_connect()
            return delays, reset_backoff, poller.scheduled[-1]

        delays, reset_backoff, after_reset = asyncio.run(scenario())
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]
        assert reset_backoff == 1.0
        assert after_reset == (1.0, "_try_connect")

    def test_reconnects_with_real_timers(self, config, fake_fldigi, recorder):
        fake_fldigi.fail = True

        async def scenario():
            poller = FldigiPoller(config, recorder.callbacks(), client=fake_fldigi, backoff_initial=0.01)
            await poller.start()
            await asyncio.sleep(0.05)
            fake_fldigi.fail = False
            await asyncio.sleep(0.2)
            state = poller.state
            await poller.stop()
            return state

        assert asyncio.run(scenario()) is ConnectionState.CONNECTED
        assert ConnectionState.RECONNECTING in recorder.states


# ============================================================
# Poll cycle
# ============================================================

class TestPoll:

    def test_emits_message_with_peer_and_metadata(self, config, fake_fldigi, recorder):
        async def scenario():
            poller = manual_poller(config, fake_fldigi, recorder)
            await poller.start()
            fake_fldigi.rx_buffer += "CQ CQ DE PA3XYZ K"
            await poller._poll()
            return poller

        poller = asyncio.run(scenario())
        assert recorder.utterances == [("CQ CQ DE PA3XYZ K", "PA3XYZ")]
        metadata = recorder.metadata[0]
        assert metadata.channel == "morse-radio"
        assert metadata.frequency_hz == 7030000.0
        assert metadata.confidence is Confidence.HIGH
        assert datetime.fromisoformat(metadata.timestamp).tzinfo is not None
        assert poller.rx_offset == len("CQ CQ DE PA3XYZ K")
        assert poller.current_peer == UNKNOWN_PEER

    def test_noise_bursts_are_stripped_but_lower_confidence(self, config, fake_fldigi, recorder):
        async def scenario():
            poller = manual_poller(config, fake_fldigi, recorder)
            await poller.start()
            fake_fldigi.rx_buffer += "CQ DE W1AW ~~~ #### K"
            await poller._poll()

        asyncio.run(scenario())
        assert recorder.utterances == [("CQ DE W1AW K", "W1AW")]
        assert recorder.metadata[0].confidence is Confidence.LOW

    def test_noise_only_message_is_dropped(self, config, fake_fldigi, recorder):
        async def scenario():
            poller = manual_poller(config, fake_fldigi, recorder)
            await poller.start()
            fake_fldigi.rx_buffer += "==== ####"
            await poller._poll()
            poller.sentence_buffer.flush()
            return poller

        poller = asyncio.run(scenario())
        assert recorder.utterances == []
        assert poller.current_peer == UNKNOWN_PEER

    def test_reads_only_the_new_slice(self, config, fake_fldigi, recorder):
        fake_fldigi.rx_buffer = "0123456789"

        async def scenario():
            poller = manual_poller(config, fake_fldigi, recorder)
            await poller.start()
            fake_fldigi.rx_buffer += "QRL? K"
            await poller._poll()
            await poller._poll()

        asyncio.run(scenario())
        assert fake_fldigi.params_of("text.get_rx") == [(10, 6)]
        assert recorder.utterances == [("QRL? K", UNKNOWN_PEER)]

    def test_peer_comes_from_whole_message_so_far(self, config, fake_fldigi, recorder):
        async def scenario():
            poller = manual_poller(config, fake_fldigi, recorder)
            await poller.start()
            fake_fldigi.rx_buffer += "W1AW DE PA3"
            await poller._poll()
            partial_peer = poller.current_peer
            fake_fldigi.rx_buffer += "XYZ GM OM KN"
            await poller._poll()
            return partial_peer

        partial_peer = asyncio.run(scenario())
        assert partial_peer == "W1AW"
        assert recorder.utterances == [("W1AW DE PA3XYZ GM OM KN", "PA3XYZ")]

    def test_peer_is_not_inherited_by_next_message(self, config, fake_fldigi, recorder):
        async def scenario():
            poller = manual_poller(config, fake_fldigi, recorder)
            await poller.start()
            fake_fldigi.rx_buffer += "CQ DE PA3XYZ K"
            await poller._poll()
            fake_fldigi.rx_buffer += " TNX FER CALL KN"
            await poller._poll()

        asyncio.run(scenario())
        assert recorder.utterances == [
            ("CQ DE PA3XYZ K", "PA3XYZ"),
            ("TNX FER CALL KN", UNKNOWN_PEER),
        ]

    def test_buffer_shrink_resyncs_and_drops_partial_message(self, config, fake_fldigi, recorder):
        fake_fldigi.rx_buffer = "x" * 50

        async def scenario():
            poller = manual_poller(config, fake_fldigi, recorder)
            await poller.start()
            fake_fldigi.rx_buffer += "HELLO "
            await poller._poll()
            pending_before = poller.sentence_buffer.pending

            fake_fldigi.rx_buffer = "0123456789"
            await poller._poll()
            offset_after_restart = poller.rx_offset
            pending_after = poller.sentence_buffer.pending

            fake_fldigi.rx_buffer += "WORLD K"
            await poller._poll()
            await poller.stop()
            return pending_before, offset_after_restart, pending_after

        pending_before, offset_after_restart, pending_after = asyncio.run(scenario())
        assert pending_before == "HELLO "
        assert offset_after_restart == 10
        assert pending_after == ""
        assert recorder.utterances == [("WORLD K", UNKNOWN_PEER)]

    def test_transport_error_flushes_pending_and_reconnects(self, config, fake_fldigi, recorder):
        async def scenario():
            poller = manual_poller(config, fake_fldigi, recorder)
            await poller.start()
            fake_fldigi.rx_buffer += "PA3XYZ DE W1AW GM"
            await poller._poll()
            fake_fldigi.fail = True
            await poller._poll()
            state_after_error = poller.state
            last_scheduled = poller.scheduled[-1]

            fake_fldigi.fail = False
            await poller._try_connect()
            return poller, state_after_error, last_scheduled

        poller, state_after_error, last_scheduled = asyncio.run(scenario())
        assert state_after_error is ConnectionState.RECONNECTING
        assert recorder.utterances == [("PA3XYZ DE W1AW GM", "W1AW")]
        assert last_scheduled == (1.0, "_try_connect")
        assert poller.state is ConnectionState.CONNECTED
        assert poller.backoff == 1.0
        assert recorder.states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
            ConnectionState.CONNECTED,
        ]

    def test_fault_during_poll_is_error_state(self, config, fake_fldigi, recorder):
        async def scenario():
            poller = manual_poller(config, fake_fldigi, recorder)
            await poller.start()
            fake_fldigi.fault_methods = {"text.get_rx_length"}
            await poller._poll()
            return poller

        poller = asyncio.run(scenario())
        assert poller.state is ConnectionState.ERROR
        assert poller.scheduled[-1] == (1.0, "_try_connect")

    def test_callback_error_does_not_stop_polling(self, config, fake_fldigi):
        def explode(text, peer, metadata):
            raise RuntimeError("host is broken")

        async def scenario():
            poller = FldigiPoller(config, PollerCallbacks(on_utterance=explode), client=fake_fldigi)
            poller.scheduled = []
            poller._schedule = lambda delay, action: poller.scheduled.append((delay, action.__name__))
            await poller.start()
            fake_fldigi.rx_buffer += "CQ DE W1AW K"
            await poller._poll()
            return poller

        poller = asyncio.run(scenario())
        assert poller.state is ConnectionState.CONNECTED
        assert poller.scheduled[-1] == (0.01, "_poll")


class TestSignalMetrics:

    def test_sampled_and_attached_to_metadata(self, config, fake_fldigi, recorder):
        fake_fldigi.wpm = 23
        fake_fldigi.snr = 12.5

        async def scenario():
            poller = manual_poller(config, fake_fldigi, recorder, signal_sample_interval=0.0)
            await poller.start()
            await poller._poll()
            fake_fldigi.rx_buffer += "CQ DE W1AW K"
            await poller._poll()
            return poller

        poller = asyncio.run(scenario())
        assert poller.detected_wpm == 23
        assert poller.snr == 12.5
        assert recorder.metadata[0].detected_wpm == 23
        assert recorder.metadata[0].snr == 12.5

    def test_sampling_failure_keeps_last_values(self, config, fake_fldigi, recorder):
        fake_fldigi.wpm = 23

        async def scenario():
            poller = manual_poller(config, fake_fldigi, recorder, signal_sample_interval=0.0)
            await poller.start()
            await poller._poll()
            fake_fldigi.fail_methods = {"modem.get_wpm"}
            fake_fldigi.wpm = 35
            await poller._poll()
            return poller

        poller = asyncio.run(scenario())
        assert poller.detected_wpm == 23
        assert poller.state is ConnectionState.CONNECTED

    def test_metrics_are_sampled_independently(self, config, fake_fldigi, recorder):
        fake_fldigi.wpm = 23
        fake_fldigi.snr = 8.0

        async def scenario():
            poller = manual_poller(config, fake_fldigi, recorder, signal_sample_interval=0.0)
            await poller.start()
            await poller._poll()
            fake_fldigi.fail_methods = {"modem.get_wpm"}
            fake_fldigi.snr = 14.0
            await poller._poll()
            return poller

        poller = asyncio.run(scenario())
        assert poller.detected_wpm == 23
        assert poller.snr == 14.0

    def test_both_metrics_failing_does_not_break_the_poll(self, config, fake_fldigi, recorder):
        unhandled = []

        async def scenario():
            asyncio.get_running_loop().set_exception_handler(lambda loop, ctx: unhandled.append(ctx))
            poller = manual_poller(config, fake_fldigi, recorder, signal_sample_interval=0.0)
            await poller.start()
            fake_fldigi.fail_methods = {"modem.get_wpm", "modem.get_quality"}
            await poller._poll()
            return poller

        poller = asyncio.run(scenario())
        assert poller.state is ConnectionState.CONNECTED
        assert poller.detected_wpm is None
        assert poller.scheduled[-1][1] == "_poll"
        assert unhandled == []

    def test_non_finite_quality_is_ignored(self, config, fake_fldigi, recorder):
        fake_fldigi.snr = 8.0

        async def scenario():
            poller = manual_poller(config, fake_fldigi, recorder, signal_sample_interval=0.0)
            await poller.start()
            await poller._poll()
            fake_fldigi.snr = float("nan")
            await poller._poll()
            return poller

        assert asyncio.run(scenario()).snr == 8.0

    def test_sampling_has_its_own_cadence(self, config, fake_fldigi, recorder):
        async def scenario():
            poller = manual_poller(config, fake_fldigi, recorder, signal_sample_interval=60.0)
            await poller.start()
            for _ in range(5):
                await poller._poll()

        asyncio.run(scenario())
        assert fake_fldigi.methods().count("modem.get_wpm") == 1


# ============================================================
# Lifecycle with real timers
# ============================================================

class TestLifecycle:

    def test_runs_on_its_own_timers(self, config, fake_fldigi, recorder):
        async def scenario():
            poller = FldigiPoller(config, recorder.callbacks(), client=fake_fldigi)
            await poller.start()
            fake_fldigi.rx_buffer += "CQ CQ DE "
            await asyncio.sleep(0.05)
            fake_fldigi.rx_buffer += "PA3XYZ K"
            await asyncio.sleep(0.1)
            await poller.stop()

        asyncio.run(scenario())
        assert recorder.utterances == [("CQ CQ DE PA3XYZ K", "PA3XYZ")]

    def test_stop_is_idempotent_and_discards_partial(self, config, fake_fldigi, recorder):
        async def scenario():
            poller = FldigiPoller(config, recorder.callbacks(), client=fake_fldigi, silence_threshold=0.05)
            await poller.start()
            fake_fldigi.rx_buffer += "HALF A MESS"
            await asyncio.sleep(0.03)
            await poller.stop()
            await poller.stop()
            polls_at_stop = fake_fldigi.methods().count("text.get_rx_length")
            await asyncio.sleep(0.1)
            return poller, polls_at_stop

        poller, polls_at_stop = asyncio.run(scenario())
        assert not poller.running
        assert poller.state is ConnectionState.DISCONNECTED
        assert recorder.states.count(ConnectionState.DISCONNECTED) == 1
        assert recorder.utterances == []
        assert fake_fldigi.methods().count("text.get_rx_length") == polls_at_stop
