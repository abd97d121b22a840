"""Tests for bearer token parsing and token generation."""
import pytest

from agent_sandbox.server.auth import bearer_token, generate_server_token


@pytest.mark.parametrize(
    ("header", "expected"),
    [
        ("Bearer abc", "abc"),
        ("bearer abc ", "abc"),
        ("BEARER  abc", "abc"),
        ("Basic abc", None),
        ("Bearer", None),
        ("Bearer   ", None),
        ("", None),
        (None, None),
    ],
)
def test_bearer_token(header, expected):
    assert bearer_token(header) == expected


def test_generated_tokens_are_unique():
    tokens = {generate_server_token() for _ in range(20)}

    assert len(tokens) == 20
    assert all(len(token) >= 40 for token in tokens)
