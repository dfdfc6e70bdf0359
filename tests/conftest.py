"""Root-level test configuration and shared fixtures.

This conftest.py provides shared fixtures and utilities for all tests.
Module-specific fixtures should be placed in their respective conftest.py files.
"""

import os
from pathlib import Path

import pytest

from conductor.settings import EngineSettings


# ============================================================================
# Shared Settings Fixtures
# ============================================================================


@pytest.fixture
def engine_settings(tmp_path: Path) -> EngineSettings:
    """Engine settings tuned for fast tests.

    Returns:
        EngineSettings with a short scheduler poll and a per-test script cwd
    """
    return EngineSettings(
        max_workers_per_run=4,
        scheduler_poll_seconds=0.05,
        script_working_directory=str(tmp_path),
        script_timeout_ms=10_000,
        webhook_timeout_ms=2_000,
        sub_pipeline_timeout_ms=10_000,
    )


# ============================================================================
# Shared Utility Fixtures
# ============================================================================


@pytest.fixture
def check_env_vars():
    """Check if required environment variables are set.

    Returns:
        Function that takes variable names and skips test if any are missing

    Example:
        def test_agent(check_env_vars):
            check_env_vars("OPENAI_API_KEY", "OPENAI_BASE_URL")
            # Test continues only if both variables are set
    """

    def _check(*var_names):
        missing = [var for var in var_names if not os.getenv(var)]
        if missing:
            pytest.skip(f"Required environment variables not set: {', '.join(missing)}")

    return _check


# ============================================================================
# LLM Mocking Utilities
# ============================================================================


@pytest.fixture
def mock_openai_client():
    """Mock OpenAI client whose chat completions echo the last user message.

    Example:
        def test_dispatch(mock_openai_client):
            dispatcher = OpenAIAgentDispatcher(client=mock_openai_client)
            outcome = dispatcher.dispatch("hello", {})
    """
    from unittest.mock import MagicMock

    from openai.types.chat import ChatCompletion, ChatCompletionMessage
    from openai.types.chat.chat_completion import Choice

    def mock_create(**kwargs):
        messages = kwargs.get("messages", [])
        model = kwargs.get("model", "gpt-4o-mini")
        user_content = ""
        for msg in messages:
            if msg.get("role") == "user":
                user_content = msg.get("content", "")

        return ChatCompletion(
            id="chatcmpl-test",
            object="chat.completion",
            created=0,
            model=model,
            choices=[
                Choice(
                    index=0,
                    finish_reason="stop",
                    message=ChatCompletionMessage(
                        role="assistant", content=f"echo: {user_content}"
                    ),
                )
            ],
        )

    client = MagicMock()
    client.chat.completions.create.side_effect = mock_create
    return client
