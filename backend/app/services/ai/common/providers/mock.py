"""Mock provider: deterministic classification replies for tests and fallback."""

from __future__ import annotations

import json
import time

from .base import BaseProvider, ProviderResult

_OPEN_TAG = "<user_data>"
_CLOSE_TAG = "</user_data>"


def _echo_results(prompt: str) -> list[dict]:
    """Echo every submitted comment back as a single Neutral segment."""
    # The data block is the last one; instructions may name the tag earlier.
    start = prompt.rfind(_OPEN_TAG)
    end = prompt.rfind(_CLOSE_TAG)
    if start == -1 or end < start:
        return []
    try:
        items = json.loads(prompt[start + len(_OPEN_TAG) : end])
    except ValueError:
        return []
    if not isinstance(items, list):
        return []

    results = []
    for item in items:
        if not isinstance(item, dict) or "id" not in item:
            continue
        results.append(
            {
                "raw_input_id": item["id"],
                "segments": [
                    {
                        "text": str(item.get("text") or ""),
                        "category_name": None,
                        "sentiment": "Neutral",
                        "is_suggestion": False,
                        "related_unit_name": None,
                    }
                ],
            }
        )
    return results


class MockProvider(BaseProvider):
    name = "mock"

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        model: str = "",
        temperature: float = 0.3,
        max_tokens: int = 1024,
        timeout_seconds: float = 8.0,
        json_mode: bool = False,
    ) -> ProviderResult:
        t0 = time.monotonic()
        text = json.dumps({"results": _echo_results(prompt)}, ensure_ascii=False)
        elapsed = (time.monotonic() - t0) * 1000
        return ProviderResult(
            raw_text=text,
            model=model or "mock-v1",
            provider=self.name,
            prompt_tokens=len(prompt.split()),
            completion_tokens=len(text.split()),
            latency_ms=round(elapsed, 2),
        )
