import pytest

from meshbridge.core.errors import InvalidTargetError
from meshbridge.policy.identity import (
    hex_to_node_num,
    looks_like_node_id,
    match_allowlist,
    node_num_to_hex,
    normalize_allow_entry,
    normalize_allowlist,
    normalize_messaging_target,
    normalize_node_id,
)


def test_node_num_hex_conversion() -> None:
    assert node_num_to_hex(2882338817) == "!abcd0001"
    assert node_num_to_hex(1) == "!00000001"
    assert hex_to_node_num("!abcd0001") == 2882338817
    assert hex_to_node_num("ABCD0001") == 2882338817


@pytest.mark.parametrize("bad", ["!xyz", "", "!1ffffffff"])
def test_hex_to_node_num_rejects_invalid(bad: str) -> None:
    with pytest.raises(InvalidTargetError):
        hex_to_node_num(bad)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("!AABBCCDD", "!aabbccdd"),
        ("aabbccdd", "!aabbccdd"),
        ("2864434397", "!aabbccdd"),
        ("!a1b2", "!0000a1b2"),
        ("  Alice ", "alice"),
        ("", ""),
    ],
)
def test_normalize_node_id(raw: str, expected: str) -> None:
    assert normalize_node_id(raw) == expected


def test_all_digit_id_reads_as_decimal_node_number() -> None:
    assert normalize_node_id("00001234") == "!000004d2"
    assert normalize_node_id("!00001234") == "!00001234"
    assert normalize_node_id("0000abcd") == "!0000abcd"


def test_looks_like_node_id() -> None:
    assert looks_like_node_id("!deadbeef")
    assert looks_like_node_id("12345")
    assert not looks_like_node_id("Ops")
    assert not looks_like_node_id("!nothex")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("meshtastic:!DEADBEEF", "!deadbeef"),
        ("user:3735928559", "!deadbeef"),
        ("channel:Ops", "Ops"),
        ("meshtastic:channel:LongFast", "LongFast"),
        ("Ops", "Ops"),
        ("   ", None),
        ("channel:", None),
    ],
)
def test_normalize_messaging_target(raw: str, expected: str | None) -> None:
    assert normalize_messaging_target(raw) == expected


def test_normalize_allow_entries() -> None:
    assert normalize_allow_entry("Meshtastic:!DEADBEEF") == "!deadbeef"
    assert normalize_allow_entry("user:*") == "*"
    assert normalize_allowlist(["", " ", "deadbeef", "*"]) == ["!deadbeef", "*"]


@pytest.mark.parametrize("sender", ["!aabbccdd", "aabbccdd", "2864434397", "!00000001", "x"])
def test_wildcard_admits_every_sender_form(sender: str) -> None:
    match = match_allowlist(["*"], sender)
    assert match.allowed
    assert match.source == "wildcard"


@pytest.mark.parametrize("sender", ["!aabbccdd", "aabbccdd", "2864434397", "!AABBCCDD"])
def test_allowlist_matches_any_form_of_the_same_id(sender: str) -> None:
    assert match_allowlist(["meshtastic:AABBCCDD"], sender).allowed


def test_allowlist_rejects_unknown_sender() -> None:
    assert not match_allowlist(["!0000a1b2"], "!deadbeef").allowed
    assert not match_allowlist([], "!deadbeef").allowed
