from __future__ import annotations

import threading

from elrs_tx.core.state import (
    ConnectionStatus,
    DeviceConfiguration,
    LiveTelemetry,
    RadioMode,
    RadioState,
)

from conftest import FakeClock


def test_every_update_notifies_once():
    state = RadioState()
    calls = []
    state.subscribe(lambda: calls.append(1))

    state.set_connection_status(ConnectionStatus.CONNECTED)
    state.set_mode(RadioMode.BINDING)
    state.update_telemetry(LiveTelemetry(rssi1=-70))
    state.update_link_stats(rssi1=-60, rssi2=-61, link_quality=99, snr=8, tx_power=25)
    state.update_rssi(-50)
    state.update_link_quality(80)
    state.update_tx_power(100)
    state.update_packet_stats(10, 20, 1)
    state.update_battery(7.4, 0.5)
    state.update_temperature(40)
    state.update_spectrum_data([1, 2])
    state.set_device_configuration(DeviceConfiguration(port="/dev/ttyACM0"))
    state.set_last_error("boom")
    state.reset_statistics()
    assert len(calls) == 14


def test_subscribe_replaces_previous_callback():
    state = RadioState()
    first, second = [], []
    state.subscribe(lambda: first.append(1))
    previous = state.subscribe(lambda: second.append(1))
    assert previous is not None
    state.update_rssi(-80)
    assert first == []
    assert second == [1]
    state.unsubscribe()
    state.update_rssi(-81)
    assert second == [1]


def test_observer_runs_outside_the_lock():
    state = RadioState()
    seen = []
    # Reading state from the callback would deadlock if the lock were held.
    state.subscribe(lambda: seen.append(state.live_telemetry().rssi1))
    state.update_rssi(-77)
    assert seen == [-77]


def test_failing_observer_does_not_break_updates():
    state = RadioState()

    def explode():
        raise RuntimeError("observer bug")

    state.subscribe(explode)
    state.update_link_quality(50)
    assert state.live_telemetry().link_quality == 50


def test_history_is_capped_fifo():
    state = RadioState()
    for value in range(250):
        state.update_rssi(-value)
    history = state.rssi_history(max_points=500)
    assert len(history) == 200
    assert history[0] == -50
    assert history[-1] == -249
    assert state.rssi_history() == history[-100:]
    assert state.rssi_history(max_points=0) == []


def test_link_stats_update_appends_all_histories():
    state = RadioState()
    state.update_link_stats(rssi1=-60, rssi2=-62, link_quality=150, snr=5, tx_power=50)
    assert state.rssi_history() == [-60]
    assert state.link_quality_history() == [100]
    assert state.tx_power_history() == [50]
    assert state.live_telemetry().link_quality == 100


def test_telemetry_freshness_uses_clock():
    clock = FakeClock()
    state = RadioState(clock=clock)
    assert not state.is_telemetry_fresh()
    state.update_rssi(-90)
    assert state.is_telemetry_fresh(5000)
    clock.advance(4.9)
    assert state.is_telemetry_fresh(5000)
    clock.advance(0.2)
    assert not state.is_telemetry_fresh(5000)


def test_spectrum_keeps_newest_bins_and_empty_clears():
    clock = FakeClock()
    state = RadioState(clock=clock)
    state.update_spectrum_data(list(range(300)))
    assert state.spectrum_bin_count() == 256
    assert state.spectrum_data()[0] == 44
    assert state.spectrum_last_update() == clock.now
    state.update_spectrum_data([])
    assert state.spectrum_data() == []
    assert not state.is_spectrum_fresh()


def test_readers_return_copies():
    state = RadioState()
    state.update_spectrum_data([1, 2, 3])
    state.set_device_configuration(DeviceConfiguration(port="/dev/ttyUSB0"))
    state.spectrum_data().append(4)
    state.live_telemetry().rssi1 = 0
    state.device_configuration().port = "changed"
    assert state.spectrum_data() == [1, 2, 3]
    assert state.live_telemetry().rssi1 == -120
    assert state.device_configuration().port == "/dev/ttyUSB0"


def test_packet_loss_and_reset():
    state = RadioState()
    state.update_packet_stats(received=90, transmitted=100, lost=10)
    assert state.packet_loss_rate() == 10.0
    state.update_rssi(-40)
    state.reset_statistics()
    live = state.live_telemetry()
    assert (live.packets_received, live.packets_transmitted, live.packets_lost) == (0, 0, 0)
    assert state.rssi_history() == []
    assert state.packet_loss_rate() == 0.0


def test_labels_errors_and_uptime():
    clock = FakeClock()
    state = RadioState(clock=clock)
    assert state.connection_status_string() == "Disconnected"
    state.set_connection_status(ConnectionStatus.CONNECTING)
    assert state.connection_status_string() == "Connecting..."
    assert state.mode_string() == "Normal"
    assert not state.has_error()
    state.set_last_error("port gone")
    assert state.has_error()
    assert state.last_error == "port gone"
    state.clear_error()
    assert not state.has_error()
    assert not state.is_system_ready()
    state.mark_system_ready()
    assert state.is_system_ready()
    clock.advance(3725)
    assert state.uptime_string() == "01:02:05"


def test_concurrent_updates_are_consistent():
    state = RadioState()
    calls = []
    lock = threading.Lock()

    def observer():
        with lock:
            calls.append(1)

    state.subscribe(observer)

    def writer():
        for value in range(100):
            state.update_link_quality(value)

    threads = [threading.Thread(target=writer) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(calls) == 400
    assert len(state.link_quality_history(max_points=1000)) == 200


def test_freshness_threshold_is_exclusive_for_both_checks():
    clock = FakeClock()
    state = RadioState(clock=clock)
    state.update_rssi(-90)
    state.update_spectrum_data([5, 6])
    clock.advance(1.0)
    assert not state.is_spectrum_fresh(1000)
    assert state.is_telemetry_fresh(1001)
    assert not state.is_telemetry_fresh(1000)
