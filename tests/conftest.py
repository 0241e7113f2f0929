"""
Pytest configuration and shared fixtures for tokenstream-lite tests.

This module provides reusable fixtures for testing, including:
- A scripted fake runtime (no model download, deterministic output)
- Inference sessions built on the fake runtime
"""

import os

import pytest

from tests.utils.fake_runtime import FakeRuntime
from tokenstream_lite.core.inference_session import InferenceSession


# Force CPU-only testing by disabling CUDA
os.environ["CUDA_VISIBLE_DEVICES"] = ""

MODEL_PATH = "/models/fake-a.gguf"
OTHER_MODEL_PATH = "/models/fake-b.gguf"


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    """
    Fake runtime with the default script ("Hello", ",", " world", "!").

    Returns:
        FakeRuntime: Fresh runtime recording loads, closes and decode calls
    """
    return FakeRuntime()


@pytest.fixture
def session(fake_runtime: FakeRuntime) -> InferenceSession:
    """
    Session on the fake runtime with a 1024-token context.

    The session is freed after the test.
    """
    session = InferenceSession.init(MODEL_PATH, context_size=1024, runtime=fake_runtime)
    yield session
    session.free()


@pytest.fixture(scope="session")
def model_path() -> str:
    return MODEL_PATH


@pytest.fixture(scope="session")
def other_model_path() -> str:
    return OTHER_MODEL_PATH
