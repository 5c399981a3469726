"""
Live smoke checks against the Gemini API.

Skipped unless GEMINI_API_KEY is set.  These validate:
  - the configured model is listed
  - a minimal streamed turn returns at least one valid chunk
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from browseragent.client import GeminiClient
from browseragent.schemas import validate

API_KEY = os.environ.get("GEMINI_API_KEY", "")
TARGET_MODEL = os.environ.get("BROWSERAGENT_SMOKE_MODEL", "gemini-2.5-flash")

skip_live = pytest.mark.skipif(not API_KEY, reason="GEMINI_API_KEY not set")


@skip_live
@pytest.mark.asyncio
async def test_target_model_listed():
    models = await GeminiClient(API_KEY).list_models()
    assert TARGET_MODEL in models


@skip_live
@pytest.mark.asyncio
async def test_minimal_stream():
    contents = [{"role": "user", "parts": [{"text": "Reply with the single word: pong"}]}]
    chunks = [c async for c in GeminiClient(API_KEY).stream_generate(TARGET_MODEL, contents)]
    assert chunks
    text = "".join(
        part.text for chunk in chunks for part in validate("model_response", chunk).parts if hasattr(part, "text")
    )
    assert "pong" in text.lower()
