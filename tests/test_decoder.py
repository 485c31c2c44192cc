import json

import pytest

from src.filmix_gateway.errors import DecodeError
from src.filmix_gateway.services.decoder import (
    DecodeTable,
    decode_playlist,
    decode_value,
    encode_value,
    is_encoded,
)


def test_plain_text_is_returned_unchanged(table):
    assert decode_value("https://cdn.example/playlist.txt", table) == "https://cdn.example/playlist.txt"
    assert decode_value("", table) == ""


def test_decodes_encoded_url(table):
    url = "https://cdn.example/s/playlist.txt?x=1"
    encoded = encode_value(url, table)
    assert encoded.startswith("#2")
    assert is_encoded(encoded)
    assert decode_value(encoded, table) == url


def test_decodes_non_ascii_text(table):
    text = "Українська озвучка"
    assert decode_value(encode_value(text, table), table) == text


@pytest.mark.parametrize("suffix", ["\n", "\r\n", " \t"])
def test_trailing_whitespace_is_ignored(table, suffix):
    url = "https://cdn.example/pl/ukr.txt"
    assert decode_value(encode_value(url, table) + suffix, table) == url


def test_playlist_body_with_line_breaks(table):
    playlist = [{"title": "Season 1", "folder": []}]
    encoded = encode_value(json.dumps(playlist), table)
    wrapped = encoded[:10] + "\n" + encoded[10:] + "\n"
    assert decode_playlist(wrapped, table) == playlist


def test_markers_are_stripped_newest_first():
    table = DecodeTable.from_keys("::", ["a", "b"])
    assert table.markers() == ("::Yg==", "::YQ==")


def test_markers_removed_from_the_middle_of_payload(table):
    url = "https://cdn.example/video/file.mp4"
    body = encode_value(url, table)[2:]
    marker = table.markers()[0]
    # marker may appear anywhere in the payload
    shuffled = "#2" + body[:4] + marker + body[4:]
    assert decode_value(shuffled, table) == url


def test_malformed_base64_raises(table):
    with pytest.raises(DecodeError):
        decode_value("#2@@not-base64@@", table)


def test_invalid_utf8_raises(table):
    # base64 of 0xff 0xfe
    with pytest.raises(DecodeError):
        decode_value("#2//4=", table)


def test_decode_playlist_parses_json(table):
    playlist = [{"title": "Season 1", "folder": []}]
    assert decode_playlist(encode_value(json.dumps(playlist), table), table) == playlist


def test_decode_playlist_rejects_non_json(table):
    with pytest.raises(DecodeError):
        decode_playlist(encode_value("<html>nope</html>", table), table)
