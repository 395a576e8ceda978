"""Tests for protocol: image frame chunking, feature reports, input decoding.

Pure functions, no mocks needed.
"""

import pytest

from appdeck.deck_info import DECK_PROFILES, CommandTemplate, DeckType, get_profile
from appdeck.errors import KeyRangeError, SizeMismatchError, UnsupportedFormatError
from appdeck.protocol import (
    IMAGE_COMMAND,
    IMAGE_REPORT_ID,
    check_key,
    clamp_brightness,
    encode_key_image,
    firmware_request,
    flip_pixels,
    pack_brightness_frame,
    pack_command_frame,
    pack_image_frames,
    pack_reset_frame,
    parse_firmware_version,
    parse_image_header,
    unpack_key_states,
)
from appdeck.services.image import ImageService

from conftest import make_firmware_report, make_input_report

MK2 = get_profile(DeckType.MK2)
ORIGINAL = get_profile(DeckType.ORIGINAL)
MINI = get_profile(DeckType.MINI)


def _gradient_tile(profile):
    """Tile whose every pixel is distinct in position (R=x, G=y)."""
    w, h = profile.key_size
    out = bytearray()
    for y in range(h):
        for x in range(w):
            out += bytes((x, y, 7, 255))
    return bytes(out)


# =========================================================================
# Image frames
# =========================================================================

class TestPackImageFrames:
    """Chunked output report frames."""

    def test_two_full_chunks_plus_remainder(self):
        image = bytes(range(256)) * 8   # 2048 bytes, chunk 1016
        frames = pack_image_frames(MK2, 3, image)
        assert len(frames) == 3
        assert [parse_image_header(f)[4] for f in frames] == [1016, 1016, 16]

    def test_every_frame_is_frame_size(self):
        frames = pack_image_frames(MK2, 0, b'\xAA' * 3000)
        assert all(len(f) == 1024 for f in frames)

    def test_header_fields(self):
        frames = pack_image_frames(MK2, 7, b'\x01' * 2000)
        for seq, frame in enumerate(frames):
            report_id, command, key, last, length, sequence = parse_image_header(frame)
            assert report_id == IMAGE_REPORT_ID == 0x02
            assert command == IMAGE_COMMAND == 0x07
            assert key == 7
            assert sequence == seq
            assert last == (seq == len(frames) - 1)

    def test_length_and_sequence_little_endian(self):
        frame = pack_image_frames(MK2, 1, b'\x01' * 300)[0]
        assert frame[:8] == bytes([0x02, 0x07, 0x01, 0x01, 0x2C, 0x01, 0x00, 0x00])

    def test_payload_reassembles(self):
        image = bytes(i % 251 for i in range(5000))
        frames = pack_image_frames(MK2, 2, image)
        hl = MK2.header_length
        joined = b''.join(f[hl:hl + parse_image_header(f)[4]] for f in frames)
        assert joined == image

    def test_tail_zero_padded(self):
        frame = pack_image_frames(MK2, 0, b'\xFF' * 10)[0]
        assert frame[8:18] == b'\xFF' * 10
        assert frame[18:] == bytes(1024 - 18)

    def test_header_padding_on_long_headers(self):
        frame = pack_image_frames(ORIGINAL, 0, b'\xFF' * 4)[0]
        assert len(frame) == 8191
        assert frame[8:16] == bytes(8)
        assert frame[16:20] == b'\xFF' * 4

    def test_exact_multiple_of_chunk(self):
        frames = pack_image_frames(MK2, 0, b'\x01' * (1016 * 2))
        assert len(frames) == 2
        assert parse_image_header(frames[1])[3] is True

    def test_empty_image_single_final_frame(self):
        frames = pack_image_frames(MK2, 0, b'')
        assert len(frames) == 1
        _, _, _, last, length, sequence = parse_image_header(frames[0])
        assert last is True
        assert length == 0
        assert sequence == 0

    def test_key_out_of_range(self):
        with pytest.raises(KeyRangeError):
            pack_image_frames(MK2, 15, b'\x00')

    @pytest.mark.parametrize("profile", DECK_PROFILES.values(), ids=lambda p: p.name)
    @pytest.mark.parametrize("extra", [0, 1, 517])
    def test_frame_properties_every_profile(self, profile, extra):
        image = bytes(i % 253 for i in range(profile.chunk_size * 3 + extra))
        frames = pack_image_frames(profile, profile.key_count - 1, image)
        headers = [parse_image_header(f) for f in frames]
        assert all(len(f) == profile.frame_size for f in frames)
        assert [h[5] for h in headers] == list(range(len(frames)))
        assert sum(h[4] for h in headers) == len(image)
        assert [h[3] for h in headers].count(True) == 1
        assert headers[-1][3] is True
        assert all(h[2] == profile.key_count - 1 for h in headers)


# =========================================================================
# Feature reports
# =========================================================================

class TestCommandFrames:

    def test_reset_mk2(self):
        frame = pack_reset_frame(MK2)
        assert len(frame) == 32
        assert frame[:2] == bytes([0x03, 0x02])
        assert frame[2:] == bytes(30)

    def test_reset_original(self):
        frame = pack_reset_frame(ORIGINAL)
        assert len(frame) == 17
        assert frame[:2] == bytes([0x0B, 0x63])

    def test_brightness_mk2(self):
        frame = pack_brightness_frame(MK2, 40)
        assert frame[:3] == bytes([0x03, 0x08, 40])
        assert len(frame) == 32

    def test_brightness_original(self):
        frame = pack_brightness_frame(ORIGINAL, 75)
        assert frame[:6] == bytes([0x05, 0x55, 0xAA, 0xD1, 0x01, 75])
        assert len(frame) == 17

    @pytest.mark.parametrize("value,expected", [(-5, 0), (0, 0), (55, 55), (100, 100), (250, 100)])
    def test_brightness_clamped(self, value, expected):
        assert clamp_brightness(value) == expected
        assert pack_brightness_frame(MK2, value)[2] == expected

    def test_value_after_offset_and_prefix(self):
        frame = pack_command_frame(CommandTemplate(8, 2, bytes([0x09])), 0x42)
        assert frame == bytes([0x09, 0, 0, 0x42, 0, 0, 0, 0])

    def test_value_beyond_length(self):
        with pytest.raises(SizeMismatchError):
            pack_command_frame(CommandTemplate(2, 1, bytes([0x09])), 1)

    def test_data_longer_than_template(self):
        with pytest.raises(SizeMismatchError):
            pack_command_frame(CommandTemplate(1, 0, bytes([1, 2])))


class TestFirmware:

    def test_request_mk2(self):
        assert firmware_request(MK2) == (0x05, 32)

    def test_request_original(self):
        assert firmware_request(ORIGINAL) == (0x04, 17)

    def test_parse_mk2(self):
        report = make_firmware_report(DeckType.MK2, b"1.00.012")
        assert parse_firmware_version(MK2, report) == "1.00.012"

    def test_parse_original(self):
        report = make_firmware_report(DeckType.ORIGINAL, b"1.0.170133")
        assert parse_firmware_version(ORIGINAL, report) == "1.0.170133"

    def test_parse_without_terminator(self):
        report = bytes([0x05, 0, 0, 0, 0, 0]) + b"3.00.000"
        assert parse_firmware_version(MK2, report) == "3.00.000"

    def test_parse_empty(self):
        assert parse_firmware_version(MK2, bytes(32)) == ""


# =========================================================================
# Input reports
# =========================================================================

class TestUnpackKeyStates:

    def test_no_keys(self):
        assert unpack_key_states(MK2, make_input_report()) == [False] * 15

    def test_pressed_keys_at_offset(self):
        states = unpack_key_states(MK2, make_input_report(pressed=(0, 5, 14)))
        assert [k for k, s in enumerate(states) if s] == [0, 5, 14]

    def test_any_nonzero_is_pressed(self):
        report = bytearray(MK2.input_report_length)
        report[MK2.key_state_offset + 2] = 0x80
        assert unpack_key_states(MK2, bytes(report))[2] is True

    def test_longer_report_accepted(self):
        report = make_input_report(pressed=(1,)) + bytes(100)
        assert unpack_key_states(MK2, report)[1] is True

    def test_original_offset(self):
        report = make_input_report(DeckType.ORIGINAL, pressed=(3,))
        assert report[4] == 1
        assert unpack_key_states(ORIGINAL, report)[3] is True

    def test_short_report(self):
        with pytest.raises(SizeMismatchError):
            unpack_key_states(MK2, bytes(MK2.input_report_length - 1))


class TestCheckKey:

    @pytest.mark.parametrize("key", [-1, 15, 100])
    def test_out_of_range(self, key):
        with pytest.raises(KeyRangeError):
            check_key(MK2, key)

    def test_key_range_error_is_index_error(self):
        with pytest.raises(IndexError):
            check_key(MK2, 15)

    @pytest.mark.parametrize("key", [0, 14])
    def test_in_range(self, key):
        check_key(MK2, key)


# =========================================================================
# Pixels
# =========================================================================

class TestFlipPixels:

    def test_both_axes(self):
        tile = _gradient_tile(MK2)
        flipped = ImageService.to_array(72, 72, flip_pixels(MK2, tile))
        # (0, 0) now holds the pixel from (71, 71)
        assert tuple(flipped[0, 0]) == (71, 71, 7, 255)
        assert tuple(flipped[71, 71]) == (0, 0, 7, 255)

    def test_vertical_only(self):
        tile = _gradient_tile(MINI)
        flipped = ImageService.to_array(80, 80, flip_pixels(MINI, tile))
        assert tuple(flipped[0, 5]) == (5, 79, 7, 255)

    def test_horizontal_only(self):
        profile = get_profile(DeckType.MK2, {"key_flip": [True, False]})
        flipped = ImageService.to_array(72, 72, flip_pixels(profile, _gradient_tile(profile)))
        assert tuple(flipped[5, 0]) == (71, 5, 7, 255)
        assert tuple(flipped[5, 71]) == (0, 5, 7, 255)

    @pytest.mark.parametrize("profile", DECK_PROFILES.values(), ids=lambda p: p.name)
    def test_involution(self, profile):
        tile = _gradient_tile(profile)
        assert flip_pixels(profile, flip_pixels(profile, tile)) == tile

    @pytest.mark.parametrize("flip", [[True, False], [False, True], [True, True]])
    def test_involution_any_flags(self, flip):
        profile = get_profile(DeckType.XL, {"key_flip": flip})
        tile = _gradient_tile(profile)
        assert flip_pixels(profile, tile) != tile
        assert flip_pixels(profile, flip_pixels(profile, tile)) == tile

    def test_no_flags_returns_input(self):
        profile = get_profile(DeckType.MK2, {"key_flip": [False, False]})
        tile = _gradient_tile(profile)
        assert flip_pixels(profile, tile) is tile

    def test_wrong_size(self):
        with pytest.raises(SizeMismatchError):
            flip_pixels(MK2, bytes(10))


class TestEncodeKeyImage:

    def test_jpeg(self):
        data = encode_key_image(MK2, ImageService.solid_color(255, 0, 0, 72, 72))
        assert data[:2] == b'\xFF\xD8'
        decoded = ImageService.decode(data)
        assert (decoded.width, decoded.height) == (72, 72)

    def test_bmp_unsupported(self):
        with pytest.raises(UnsupportedFormatError):
            encode_key_image(ORIGINAL, bytes(ORIGINAL.tile_bytes))

    def test_wrong_size(self):
        with pytest.raises(SizeMismatchError):
            encode_key_image(MK2, bytes(MK2.tile_bytes - 4))
