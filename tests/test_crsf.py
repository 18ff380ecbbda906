from __future__ import annotations

import random

import pytest

from elrs_tx.core import crsf, msp

MID_PAYLOAD = bytes(
    [
        0xE0, 0x03, 0x1F, 0xF8, 0xC0, 0x07, 0x3E, 0xF0, 0x81, 0x0F, 0x7C,
        0xE0, 0x03, 0x1F, 0xF8, 0xC0, 0x07, 0x3E, 0xF0, 0x81, 0x0F, 0x7C,
    ]
)


def _crc8_bitwise(data: bytes) -> int:
    crc = 0
    for byte in data:
        crc ^= byte
        for _ in range(8):
            crc = ((crc << 1) ^ 0xD5) & 0xFF if crc & 0x80 else (crc << 1) & 0xFF
    return crc


def test_crc8_check_value():
    assert crsf.crc8_dvb_s2(b"123456789") == 0xBC
    assert crsf.crc8_dvb_s2(b"") == 0


def test_crc8_matches_bitwise_reference():
    rng = random.Random(7)
    for _ in range(20):
        data = bytes(rng.randrange(256) for _ in range(rng.randrange(1, 40)))
        assert crsf.crc8_dvb_s2(data) == _crc8_bitwise(data)


def test_centred_channels_frame_vector():
    frame = crsf.build_rc_channels_frame([992] * 16)
    assert len(frame) == 26
    assert frame[0] == 0xC8
    assert frame[1] == 24
    assert frame[2] == 0x16
    assert frame[3:25] == MID_PAYLOAD
    assert frame[25] == _crc8_bitwise(frame[1:25])


def test_build_into_reuses_buffer():
    buffer = bytearray(crsf.CRSF_RC_FRAME_SIZE)
    result = crsf.build_rc_channels_frame_into(buffer, [172] * 16)
    assert result is buffer
    assert crsf.unpack_channels(bytes(buffer[3:25])) == [172] * 16
    with pytest.raises(ValueError):
        crsf.build_rc_channels_frame_into(bytearray(10), [992] * 16)


def test_pack_unpack_identity():
    rng = random.Random(11)
    for _ in range(50):
        channels = [rng.randrange(2048) for _ in range(16)]
        assert crsf.unpack_channels(crsf.pack_channels(channels)) == channels


def test_pack_rejects_wrong_channel_count():
    with pytest.raises(ValueError):
        crsf.pack_channels([992] * 15)


@pytest.mark.parametrize(
    "value, expected",
    [(0.0, 992), (-1.0, 172), (1.0, 1811), (-5.0, 172), (5.0, 1811)],
)
def test_map_stick(value, expected):
    assert crsf.map_stick(value) == expected


@pytest.mark.parametrize(
    "value, expected",
    [(0.0, 172), (1.0, 1811), (-0.3, 172), (1.7, 1811)],
)
def test_map_throttle(value, expected):
    assert crsf.map_throttle(value) == expected


def test_map_bool():
    assert crsf.map_bool(True) == 1811
    assert crsf.map_bool(False) == 172


def test_map_stick_is_monotonic():
    values = [crsf.map_stick(step / 50.0 - 1.0) for step in range(101)]
    assert values == sorted(values)


def inbound_rc_frame(payload: bytes = MID_PAYLOAD) -> bytes:
    return crsf.build_frame(crsf.CRSF_ADDRESS_FLIGHT_CONTROLLER, crsf.CRSF_FRAMETYPE_RC_CHANNELS_PACKED, payload)


def test_inbound_frame_crc_excludes_length():
    frame = inbound_rc_frame()
    assert frame[:3] == b"\xc8\x18\x16"
    assert frame[3:25] == MID_PAYLOAD
    assert frame[25] == _crc8_bitwise(frame[2:25])


def test_outbound_rc_frame_is_not_an_inbound_frame():
    # Outbound RC frames checksum [length, type, payload]; inbound ones [type, payload].
    deframer = crsf.CrsfDeframer()
    assert deframer.feed(crsf.build_rc_channels_frame([992] * 16)) == []
    assert deframer.stats.crc_errors >= 1


def test_deframer_resyncs_after_garbage():
    deframer = crsf.CrsfDeframer()
    frames = deframer.feed(bytes([0xFF, 0xFF]) + inbound_rc_frame())
    assert len(frames) == 1
    assert frames[0].frame_type == 0x16
    assert frames[0].address == 0xC8
    assert frames[0].payload == MID_PAYLOAD


def test_deframer_drops_bad_crc_and_recovers():
    good = inbound_rc_frame(crsf.pack_channels([1000] * 16))
    bad = bytearray(good)
    bad[-1] ^= 0xFF
    deframer = crsf.CrsfDeframer()
    frames = deframer.feed(bytes(bad) + good)
    assert [f.payload for f in frames] == [good[3:25]]
    assert deframer.stats.crc_errors >= 1
    assert deframer.stats.frames == 1


def test_deframer_reopens_on_sync_byte_in_length_position():
    deframer = crsf.CrsfDeframer()
    frames = deframer.feed(bytes([0xC8]) + inbound_rc_frame())
    assert len(frames) == 1
    assert deframer.stats.oversize == 1


def test_false_header_does_not_swallow_next_frame():
    good = inbound_rc_frame()
    frames = crsf.CrsfDeframer().feed(bytes([0xEA, 0x05]) + good + good)
    assert [f.payload for f in frames] == [MID_PAYLOAD, MID_PAYLOAD]


def test_msp_reply_ending_in_sync_byte_before_crsf_frame():
    # The reply's last payload byte (0xC8) looks like an address and its
    # checksum (0x04) like a length.
    reply = msp.MSPFrame(0x2D, b"\xa4\x5a\x0a\x14\x07\xc8", msp.DIR_FROM_FC).to_bytes()
    assert reply[-2:] == b"\xc8\x04"
    frames = crsf.CrsfDeframer().feed(reply + inbound_rc_frame())
    assert [(f.frame_type, f.payload) for f in frames] == [(0x16, MID_PAYLOAD)]



def test_deframer_emits_every_frame_between_garbage():
    rng = random.Random(3)
    payloads = [bytes([index, 0x55, 0xAA]) for index in range(5)]
    stream = bytearray()
    for payload in payloads:
        stream += bytes(rng.randrange(0x10, 0x60) for _ in range(7))
        stream += crsf.build_frame(crsf.CRSF_ADDRESS_RADIO_TRANSMITTER, 0x2E, payload)
    frames = crsf.CrsfDeframer().feed(stream)
    assert [f.payload for f in frames] == payloads


def test_build_frame_rejects_oversize_payload():
    with pytest.raises(ValueError):
        crsf.build_frame(0xC8, 0x16, bytes(61))
