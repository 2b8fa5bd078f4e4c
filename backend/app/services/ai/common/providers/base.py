"""Abstract base for all AI providers."""

from __future__ import annotations

import abc
from dataclasses import dataclass


@dataclass(frozen=True)
class ProviderResult:
    """Immutable result returned by every provider."""

    raw_text: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


class BaseProvider(abc.ABC):
    """Contract that every AI provider must implement.

    ``json_mode`` asks the vendor for a JSON-only response where the API
    supports it; callers still parse tolerantly because not every model
    honours the flag.
    """

    name: str = "base"

    @abc.abstractmethod
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
        """Send *prompt* and return a ``ProviderResult``.

        Raises ``httpx.HTTPError`` on transport failures and non-2xx replies.
        """
