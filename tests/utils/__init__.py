"""Test utilities for tokenstream_lite."""

from tests.utils.fake_runtime import (
    BOS_ID,
    EOS_ID,
    SPECIAL_TOKENS,
    FakeContext,
    FakeModel,
    FakeRuntime,
)

__all__ = [
    "BOS_ID",
    "EOS_ID",
    "SPECIAL_TOKENS",
    "FakeContext",
    "FakeModel",
    "FakeRuntime",
]
