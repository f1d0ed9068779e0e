from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class TokenUsage:
    prompt: int
    completion: int

    @property
    def total(self) -> int:
        return self.prompt + self.completion

    def as_dict(self) -> dict[str, int]:
        return {"prompt": self.prompt, "completion": self.completion, "total": self.total}


@dataclass
class BackendCallResult:
    # A JSON object for the fixed capabilities; any JSON value or None for passthrough.
    payload: Any
    latency_ms: int
    upstream_status: int
    token_usage: TokenUsage | None = None


def _non_negative_int(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(value, 0)
    if isinstance(value, float):
        return max(int(value), 0)
    return 0


def normalize_token_usage(body: Mapping[str, Any]) -> TokenUsage:
    """Map Ollama or OpenAI-style usage fields to a single shape.

    Ollama reports ``prompt_eval_count``/``eval_count`` at the top level;
    OpenAI-compatible servers nest ``prompt_tokens``/``completion_tokens``
    under ``usage``.  Missing counts are zero.
    """
    usage = body.get("usage")
    if isinstance(usage, Mapping):
        return TokenUsage(
            prompt=_non_negative_int(usage.get("prompt_tokens")),
            completion=_non_negative_int(usage.get("completion_tokens")),
        )
    return TokenUsage(
        prompt=_non_negative_int(body.get("prompt_eval_count")),
        completion=_non_negative_int(body.get("eval_count")),
    )
